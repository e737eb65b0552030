from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import BinaryIO, Sequence

from dumpstate.progress import ProgressReporter
from dumpstate.properties import PropertyStore, is_dry_run, is_user_build

LOGGER = logging.getLogger(__name__)

WEIGHT_FILE = 5
KILL_GRACE_SECONDS = 5.0
COPY_CHUNK = 4096


@dataclass(frozen=True)
class CommandOptions:
    timeout: float = 10.0
    always: bool = False
    as_root: bool = False
    drop_root: bool = False
    redirect_stderr: bool = False
    log_message: str | None = None


DEFAULT = CommandOptions()
DEFAULT_DUMPSYS = CommandOptions(timeout=30.0)
AS_ROOT = CommandOptions(as_root=True)
AS_ROOT_20 = CommandOptions(timeout=20.0, as_root=True)


class TaskStatus(str, Enum):
    OK = "OK"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"
    SKIPPED = "SKIPPED"


@dataclass(frozen=True)
class DumpTask:
    title: str
    command: tuple[str, ...] = ()
    path: str | None = None
    options: CommandOptions = field(default_factory=CommandOptions)

    def __post_init__(self) -> None:
        if bool(self.command) == (self.path is not None):
            raise ValueError("A dump task needs exactly one of command or path")

    @property
    def is_file(self) -> bool:
        return self.path is not None

    @property
    def weight(self) -> int:
        return WEIGHT_FILE if self.is_file else int(self.options.timeout)


@dataclass(frozen=True)
class TaskResult:
    title: str
    status: TaskStatus
    returncode: int | None = None
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == TaskStatus.OK


class DurationReporter:
    def __init__(self, title: str, output: BinaryIO | None = None, verbose: bool = False) -> None:
        self.title = title
        self.output = output
        self.verbose = verbose
        self.started = 0.0
        self.elapsed = 0.0

    def __enter__(self) -> "DurationReporter":
        self.started = time.monotonic()
        return self

    def __exit__(self, *exc_info: object) -> None:
        if not self.title:
            return
        self.elapsed = time.monotonic() - self.started
        if self.elapsed >= 0.5 or self.verbose:
            LOGGER.debug("Duration of '%s': %.2fs", self.title, self.elapsed)
        if self.output is not None:
            line = f"------ {self.elapsed:.3f}s was the duration of '{self.title}' ------\n"
            try:
                self.output.write(line.encode("utf-8"))
            except (OSError, ValueError) as exc:
                LOGGER.debug("Could not write duration footer: %s", exc)


class TaskRunner:
    def __init__(
        self,
        properties: PropertyStore,
        reporter: ProgressReporter | None = None,
        output: BinaryIO | None = None,
        shell_uid: int | None = None,
        shell_gid: int | None = None,
    ) -> None:
        self.properties = properties
        self.reporter = reporter
        self.output: BinaryIO = output if output is not None else sys.stdout.buffer
        self.shell_uid = shell_uid
        self.shell_gid = shell_gid

    def write(self, text: str) -> None:
        try:
            self.output.write(text.encode("utf-8", errors="replace"))
        except (OSError, ValueError) as exc:
            LOGGER.error("Could not write to output: %s", exc)

    def flush(self) -> None:
        try:
            self.output.flush()
        except (OSError, ValueError) as exc:
            LOGGER.debug("Could not flush output: %s", exc)

    def section(self, header: str) -> None:
        bar = "=" * 56
        self.write(f"{bar}\n== {header}\n{bar}\n")

    def run(self, task: DumpTask) -> TaskResult:
        with DurationReporter(task.title, self.output if task.title else None):
            if task.is_file:
                result = self._dump_file(task)
            else:
                result = self._run_command(task)
        if self.reporter is not None:
            self.reporter.update(task.weight)
        return result

    def run_command(
        self, title: str, command: Sequence[str], options: CommandOptions = DEFAULT
    ) -> TaskResult:
        return self.run(DumpTask(title, command=tuple(command), options=options))

    def dump_file(self, title: str, path: str) -> TaskResult:
        return self.run(DumpTask(title, path=path))

    def _run_command(self, task: DumpTask) -> TaskResult:
        options = task.options
        command = list(task.command)
        display = " ".join(command)
        if task.title:
            self.write(f"------ {task.title} ({display}) ------\n")
        if is_dry_run(self.properties) and not options.always:
            return TaskResult(task.title, TaskStatus.SKIPPED)
        if options.as_root:
            if is_user_build(self.properties):
                LOGGER.debug("Skipping '%s' on user build", display)
                return TaskResult(task.title, TaskStatus.SKIPPED)
            if os.geteuid() != 0:
                command = ["su", "root", *command]
        if options.log_message:
            LOGGER.info(options.log_message, display)
        self.flush()

        popen_kwargs: dict[str, object] = {}
        if options.drop_root and os.geteuid() == 0 and self.shell_uid is not None:
            popen_kwargs["user"] = self.shell_uid
            popen_kwargs["group"] = self.shell_gid if self.shell_gid is not None else self.shell_uid
        started = time.monotonic()
        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=self.output,
                stderr=subprocess.STDOUT if options.redirect_stderr else subprocess.PIPE,
                start_new_session=True,
                **popen_kwargs,
            )
        except (OSError, ValueError, subprocess.SubprocessError) as exc:
            self.write(f"*** command '{display}' failed: {exc}\n")
            LOGGER.debug("Could not start '%s': %s", display, exc)
            return TaskResult(task.title, TaskStatus.FAILED)

        try:
            _, stderr = process.communicate(timeout=options.timeout)
        except subprocess.TimeoutExpired:
            elapsed = time.monotonic() - started
            self.write(
                f"*** command '{display}' timed out after {elapsed:.3f}s "
                f"(killing pid {process.pid})\n"
            )
            LOGGER.error("command '%s' timed out after %.3fs", display, elapsed)
            self._terminate(process)
            return TaskResult(task.title, TaskStatus.TIMED_OUT, elapsed=elapsed)
        elapsed = time.monotonic() - started
        if stderr:
            LOGGER.debug("%s stderr: %s", display, stderr.decode("utf-8", "replace").strip())
        if process.returncode != 0:
            self.write(f"*** command '{display}' failed: exit code {process.returncode}\n")
            return TaskResult(task.title, TaskStatus.FAILED, process.returncode, elapsed)
        return TaskResult(task.title, TaskStatus.OK, 0, elapsed)

    def _terminate(self, process: subprocess.Popen) -> None:
        for sig, grace in ((signal.SIGTERM, KILL_GRACE_SECONDS), (signal.SIGKILL, None)):
            try:
                os.killpg(process.pid, sig)
            except ProcessLookupError:
                break
            except PermissionError:
                process.send_signal(sig)
            try:
                process.communicate(timeout=grace)
                return
            except subprocess.TimeoutExpired:
                LOGGER.error("pid %d did not stop after SIGTERM", process.pid)

    def _dump_file(self, task: DumpTask) -> TaskResult:
        assert task.path is not None
        if task.title:
            self.write(f"------ {task.title} ({task.path}) ------\n")
        if is_dry_run(self.properties):
            return TaskResult(task.title, TaskStatus.SKIPPED)
        started = time.monotonic()
        try:
            fd = os.open(task.path, os.O_RDONLY | os.O_NONBLOCK | os.O_CLOEXEC)
        except OSError as exc:
            self.write(f"*** {task.path}: {exc.strerror or exc}\n")
            LOGGER.debug("Unable to open %s: %s", task.path, exc)
            return TaskResult(task.title, TaskStatus.FAILED)
        newline = True
        try:
            self.flush()
            while True:
                try:
                    chunk = os.read(fd, COPY_CHUNK)
                except BlockingIOError:
                    break
                if not chunk:
                    break
                self.output.write(chunk)
                newline = chunk.endswith(b"\n")
        except (OSError, ValueError) as exc:
            self.write(f"*** {task.path}: read error: {exc}\n")
            return TaskResult(task.title, TaskStatus.FAILED)
        finally:
            os.close(fd)
        if not newline:
            self.write("\n")
        return TaskResult(task.title, TaskStatus.OK, 0, time.monotonic() - started)
