import json
import socket
from pathlib import Path

from dumpstate.service import StatusService


def _ask(path: Path, *commands: str) -> list[dict]:
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as conn:
        conn.settimeout(5)
        conn.connect(str(path))
        reader = conn.makefile("r", encoding="utf-8")
        replies = []
        for command in commands:
            conn.sendall(f"{command}\n".encode("utf-8"))
            replies.append(json.loads(reader.readline()))
        reader.close()
        return replies


def test_status_service_answers_queries(tmp_path: Path) -> None:
    path = tmp_path / "dumpstate_status"
    service = StatusService(path, lambda: {"state": "running", "percent": 42})
    service.start()
    try:
        status, start, unknown = _ask(path, "status", "start", "bogus")
    finally:
        service.stop()
    assert status == {"percent": 42, "state": "running"}
    assert "error" in start
    assert unknown == {"error": "unknown command: bogus"}
    assert not path.exists()


def test_status_service_starts_reports(tmp_path: Path) -> None:
    path = tmp_path / "dumpstate_status"
    started: list[int] = []

    def start_report() -> bool:
        if started:
            return False
        started.append(1)
        return True

    service = StatusService(path, lambda: {"state": "idle"}, start_report)
    service.start()
    try:
        first, second = _ask(path, "start", "start")
    finally:
        service.stop()
    assert first == {"started": True}
    assert second == {"error": "a bugreport is already in progress"}
