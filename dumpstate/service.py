from __future__ import annotations

import json
import logging
import socketserver
import threading
from pathlib import Path
from typing import Any, Callable

LOGGER = logging.getLogger(__name__)


class _StatusHandler(socketserver.StreamRequestHandler):
    """Answers one JSON line per request line.

    ``status`` returns the current snapshot; ``start`` asks for a new report
    when the service was given a way to start one.
    """

    server: "_StatusServer"

    def handle(self) -> None:
        for raw in self.rfile:
            command = raw.decode("utf-8", errors="replace").strip() or "status"
            reply = self.server.dispatch(command)
            self.wfile.write((json.dumps(reply, sort_keys=True) + "\n").encode("utf-8"))
            self.wfile.flush()


class _StatusServer(socketserver.ThreadingUnixStreamServer):
    daemon_threads = True

    def __init__(
        self,
        path: str,
        snapshot: Callable[[], dict[str, Any]],
        start_report: Callable[[], bool] | None,
    ) -> None:
        self.snapshot = snapshot
        self.start_report = start_report
        super().__init__(path, _StatusHandler)

    def dispatch(self, command: str) -> dict[str, Any]:
        if command == "status":
            return self.snapshot()
        if command == "start":
            if self.start_report is None:
                return {"error": "starting reports is not supported"}
            if not self.start_report():
                return {"error": "a bugreport is already in progress"}
            return {"started": True}
        return {"error": f"unknown command: {command}"}


class StatusService:
    def __init__(
        self,
        socket_path: Path,
        snapshot: Callable[[], dict[str, Any]],
        start_report: Callable[[], bool] | None = None,
    ) -> None:
        self.socket_path = socket_path
        self.snapshot = snapshot
        self.start_report = start_report
        self._server: _StatusServer | None = None
        self._thread: threading.Thread | None = None

    def _bind(self) -> _StatusServer:
        self.socket_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.socket_path.unlink()
        except FileNotFoundError:
            pass
        server = _StatusServer(str(self.socket_path), self.snapshot, self.start_report)
        LOGGER.info("Status service listening on %s", self.socket_path)
        return server

    def start(self) -> None:
        if self._server is not None:
            return
        self._server = self._bind()
        self._thread = threading.Thread(
            target=self._server.serve_forever, name="dumpstate-status", daemon=True
        )
        self._thread.start()

    def serve_forever(self) -> None:
        self._server = self._bind()
        try:
            self._server.serve_forever()
        finally:
            self._close()

    def stop(self) -> None:
        if self._server is None:
            return
        if self._thread is not None:
            self._server.shutdown()
            self._thread.join()
            self._thread = None
        self._close()

    def _close(self) -> None:
        if self._server is None:
            return
        self._server.server_close()
        self._server = None
        try:
            self.socket_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            LOGGER.debug("Could not remove %s: %s", self.socket_path, exc)
