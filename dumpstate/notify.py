from __future__ import annotations

import hashlib
import logging
import os
import socket
import time
from pathlib import Path
from typing import BinaryIO, Protocol, TextIO

from dumpstate.runner import CommandOptions, TaskResult, TaskRunner
from dumpstate.status import ListenerError

LOGGER = logging.getLogger(__name__)

ACTION_STARTED = "com.android.internal.intent.action.BUGREPORT_STARTED"
ACTION_FINISHED = "com.android.internal.intent.action.BUGREPORT_FINISHED"
ACTION_REMOTE_FINISHED = "com.android.internal.intent.action.REMOTE_BUGREPORT_FINISHED"
DUMP_PERMISSION = "android.permission.DUMP"
SOCKET_ENV_PREFIX = "ANDROID_SOCKET_"

BROADCAST_OPTIONS = CommandOptions(
    timeout=20.0,
    always=True,
    drop_root=True,
    redirect_stderr=True,
    log_message="Sending broadcast: '%s'",
)
VIBRATE_OPTIONS = CommandOptions(timeout=10.0, always=True, log_message="Vibrate: '%s'")


class Listener(Protocol):
    def on_progress(self, percent: int) -> None: ...

    def on_finished(self) -> None: ...

    def on_error(self, code: ListenerError) -> None: ...


class ControlSocketError(RuntimeError):
    pass


def _listening_socket(name: str, socket_dir: Path) -> socket.socket:
    inherited = os.environ.get(SOCKET_ENV_PREFIX + name)
    if inherited:
        try:
            return socket.socket(fileno=int(inherited))
        except (OSError, ValueError) as exc:
            raise ControlSocketError(f"Invalid inherited socket {name}: {exc}") from exc
    path = socket_dir / name
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        raise ControlSocketError(f"Could not remove stale socket {path}: {exc}") from exc
    server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        socket_dir.mkdir(parents=True, exist_ok=True)
        server.bind(str(path))
    except OSError as exc:
        server.close()
        raise ControlSocketError(f"Could not bind {path}: {exc}") from exc
    return server


def open_socket(name: str, socket_dir: Path, accept_timeout: float | None = None) -> socket.socket:
    """Accept exactly one client on the control socket ``name``.

    The listening socket is closed right after the accept so that a second
    client gets an error instead of queueing.
    """
    server = _listening_socket(name, socket_dir)
    try:
        server.listen(0)
        server.settimeout(accept_timeout)
        connection, _ = server.accept()
    except OSError as exc:
        raise ControlSocketError(f"accept(control socket {name}): {exc}") from exc
    finally:
        server.close()
    connection.settimeout(None)
    return connection


def open_control_socket(
    name: str, socket_dir: Path, accept_timeout: float | None = None
) -> TextIO:
    LOGGER.debug("Opening control socket")
    connection = open_socket(name, socket_dir, accept_timeout)
    handle = connection.makefile("w", encoding="utf-8", buffering=1)
    connection.close()
    return handle


def open_output_socket(
    name: str, socket_dir: Path, accept_timeout: float | None = None
) -> BinaryIO:
    connection = open_socket(name, socket_dir, accept_timeout)
    handle = connection.makefile("wb", buffering=0)
    connection.close()
    return handle


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


class BroadcastSender:
    def __init__(self, runner: TaskRunner) -> None:
        self.runner = runner

    def send(self, action: str, args: list[str]) -> TaskResult:
        command = [
            "/system/bin/cmd", "activity", "broadcast", "--user", "0",
            "--receiver-foreground", "--receiver-include-background", "-a", action,
            *args,
        ]
        return self.runner.run_command("", command, BROADCAST_OPTIONS)

    def send_started(self, name: str, run_id: int, pid: int, max_progress: int) -> TaskResult:
        return self.send(
            ACTION_STARTED,
            [
                "--receiver-permission", DUMP_PERMISSION,
                "--es", "android.intent.extra.NAME", name,
                "--ei", "android.intent.extra.ID", str(run_id),
                "--ei", "android.intent.extra.PID", str(pid),
                "--ei", "android.intent.extra.MAX", str(max_progress),
            ],
        )

    def send_finished(
        self,
        path: Path | None,
        run_id: int,
        pid: int,
        max_progress: int,
        log_path: Path,
        screenshot_path: Path | None = None,
        title: str = "",
        description: str = "",
        remote: bool = False,
    ) -> TaskResult | None:
        if path is None:
            LOGGER.error("Skipping finished broadcast because bugreport could not be generated")
            return None
        LOGGER.info("Final bugreport path: %s", path)
        args = [
            "--receiver-permission", DUMP_PERMISSION,
            "--ei", "android.intent.extra.ID", str(run_id),
            "--ei", "android.intent.extra.PID", str(pid),
            "--ei", "android.intent.extra.MAX", str(max_progress),
            "--es", "android.intent.extra.BUGREPORT", str(path),
            "--es", "android.intent.extra.DUMPSTATE_LOG", str(log_path),
        ]
        if screenshot_path is not None and _non_empty(screenshot_path):
            args += ["--es", "android.intent.extra.SCREENSHOT", str(screenshot_path)]
        if title:
            args += ["--es", "android.intent.extra.TITLE", title]
            if description:
                args += ["--es", "android.intent.extra.DESCRIPTION", description]
        if remote:
            try:
                digest = sha256_file(path)
            except OSError as exc:
                LOGGER.error("Could not hash %s: %s", path, exc)
                digest = ""
            args += ["--es", "android.intent.extra.REMOTE_BUGREPORT_HASH", digest]
            return self.send(ACTION_REMOTE_FINISHED, args)
        return self.send(ACTION_FINISHED, args)


def _non_empty(path: Path) -> bool:
    try:
        return path.stat().st_size > 0
    except OSError:
        return False


def vibrate(runner: TaskRunner, duration_ms: int) -> None:
    runner.run_command(
        "", ["cmd", "vibrator", "vibrate", "-f", str(duration_ms), "dumpstate"], VIBRATE_OPTIONS
    )


def vibrate_finished(runner: TaskRunner, pulses: int = 3) -> None:
    for _ in range(pulses):
        vibrate(runner, 75)
        time.sleep((75 + 50) / 1000)
