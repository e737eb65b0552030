import contextlib
from pathlib import Path
from typing import BinaryIO

import psutil

from dumpstate import traces
from dumpstate.consent import ConsentCallback, ConsentGate
from dumpstate.status import RunStatus
from dumpstate.traces import ProcessInfo, PsutilEnumerator, StackTraceCollector

APP_PROCESS = "/system/bin/app_process64"
SURFACEFLINGER = "/system/bin/surfaceflinger"


class FakeEnumerator:
    def __init__(self, processes: list[ProcessInfo]) -> None:
        self._processes = processes

    def processes(self) -> list[ProcessInfo]:
        return list(self._processes)


class FakeBacktraces:
    def __init__(self, failing: set[int] | None = None) -> None:
        self.failing = failing or set()
        self.calls: list[tuple[int, bool, float]] = []

    def dump_backtrace(self, pid: int, managed: bool, timeout: float, out: BinaryIO) -> bool:
        self.calls.append((pid, managed, timeout))
        if pid in self.failing:
            return False
        out.write(f"----- pid {pid} -----\n".encode("utf-8"))
        return True


class DenyingAuthorizer:
    def authorize_report(self, caller_identity: str, callback: ConsentCallback) -> None:
        callback.on_report_denied()

    def cancel_authorization(self, callback: ConsentCallback) -> None:
        pass


def _collector(processes: list[ProcessInfo], backtraces: FakeBacktraces) -> StackTraceCollector:
    return StackTraceCollector(
        FakeEnumerator(processes),
        backtraces,
        managed_executables=[APP_PROCESS],
        native_executables=[SURFACEFLINGER],
        managed_timeout=5.0,
        native_timeout=20.0,
        max_consecutive_failures=3,
    )


def test_classifies_and_uses_per_kind_timeouts(tmp_path: Path) -> None:
    backtraces = FakeBacktraces()
    processes = [
        ProcessInfo(1, APP_PROCESS, is_zygote=True),
        ProcessInfo(10, APP_PROCESS),
        ProcessInfo(20, SURFACEFLINGER),
        ProcessInfo(30, "/system/bin/sh"),
    ]
    result = _collector(processes, backtraces).collect(tmp_path)
    assert result.status == RunStatus.OK
    assert backtraces.calls == [(10, True, 5.0), (20, False, 20.0)]
    assert result.dumped == [10, 20]
    assert result.path is not None and result.path.name.startswith("dumptrace_")
    text = result.path.read_text(encoding="utf-8")
    assert "[dump dalvik stack 10:" in text
    assert "[dump native stack 20:" in text


def test_three_consecutive_failures_abort(tmp_path: Path) -> None:
    backtraces = FakeBacktraces(failing={10, 11, 12})
    processes = [ProcessInfo(pid, APP_PROCESS) for pid in (10, 11, 12, 13, 14)]
    result = _collector(processes, backtraces).collect(tmp_path)
    assert result.aborted
    assert result.failed == [10, 11, 12]
    assert [call[0] for call in backtraces.calls] == [10, 11, 12]
    assert result.path is not None
    text = result.path.read_text(encoding="utf-8")
    assert text.count("Dump failed, likely due to a timeout.") == 3
    assert "ERROR: Too many stack dump failures, exiting." in text


def test_success_resets_failure_count(tmp_path: Path) -> None:
    backtraces = FakeBacktraces(failing={10, 11, 13, 14})
    processes = [ProcessInfo(pid, APP_PROCESS) for pid in (10, 11, 12, 13, 14, 15)]
    result = _collector(processes, backtraces).collect(tmp_path)
    assert not result.aborted
    assert result.dumped == [12, 15]


def test_denied_consent_stops_collection(tmp_path: Path) -> None:
    gate = ConsentGate(DenyingAuthorizer())
    gate.request_authorization("caller", 1000)
    backtraces = FakeBacktraces()
    result = _collector([ProcessInfo(10, APP_PROCESS)], backtraces).collect(tmp_path, gate)
    assert result.status == RunStatus.USER_CONSENT_DENIED
    assert backtraces.calls == []


class FakeProcess:
    def __init__(self, pid: int, exe: str, cmdline: list[str], error: Exception | None = None):
        self.info = {"pid": pid}
        self._exe = exe
        self._cmdline = cmdline
        self._error = error

    def oneshot(self):
        return contextlib.nullcontext()

    def exe(self) -> str:
        if self._error is not None:
            raise self._error
        return self._exe

    def cmdline(self) -> list[str]:
        return self._cmdline


def test_psutil_enumerator_skips_vanished_and_kernel_processes(monkeypatch) -> None:
    listed = [
        FakeProcess(0, "", []),
        FakeProcess(2, "", []),
        FakeProcess(10, APP_PROCESS, ["zygote64"]),
        FakeProcess(11, APP_PROCESS, ["com.example.app"]),
        FakeProcess(12, SURFACEFLINGER, [], error=psutil.NoSuchProcess(12)),
        FakeProcess(13, SURFACEFLINGER, [], error=psutil.AccessDenied(13)),
    ]
    monkeypatch.setattr(traces.psutil, "process_iter", lambda attrs=None: iter(listed))

    assert list(PsutilEnumerator().processes()) == [
        ProcessInfo(10, APP_PROCESS, is_zygote=True),
        ProcessInfo(11, APP_PROCESS, is_zygote=False),
    ]
