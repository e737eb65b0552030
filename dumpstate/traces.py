from __future__ import annotations

import logging
import os
import subprocess
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Callable, Iterable, Iterator, Protocol, Sequence

import psutil

from dumpstate.consent import ConsentGate
from dumpstate.runner import DurationReporter
from dumpstate.status import RunStatus

LOGGER = logging.getLogger(__name__)

ZYGOTE_NAMES = frozenset({"zygote", "zygote64", "webview_zygote", "usap32", "usap64"})


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    exe: str
    is_zygote: bool = False


class ProcessEnumerator(Protocol):
    def processes(self) -> Iterable[ProcessInfo]: ...


class BacktraceCollector(Protocol):
    def dump_backtrace(self, pid: int, managed: bool, timeout: float, out: BinaryIO) -> bool: ...


class PsutilEnumerator:
    def processes(self) -> Iterator[ProcessInfo]:
        for proc in psutil.process_iter(attrs=["pid"]):
            pid = proc.info["pid"]
            if pid <= 0:
                continue
            try:
                with proc.oneshot():
                    exe = proc.exe()
                    cmdline = proc.cmdline()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            if not exe:
                continue
            yield ProcessInfo(pid, exe, bool(cmdline) and cmdline[0] in ZYGOTE_NAMES)


class DebuggerdCollector:
    def __init__(self, executable: str = "debuggerd") -> None:
        self.executable = executable

    def dump_backtrace(self, pid: int, managed: bool, timeout: float, out: BinaryIO) -> bool:
        flag = "-j" if managed else "-b"
        out.flush()
        try:
            completed = subprocess.run(
                [self.executable, flag, str(pid)],
                stdin=subprocess.DEVNULL,
                stdout=out,
                stderr=subprocess.DEVNULL,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            LOGGER.debug("Backtrace of pid %d timed out after %ss", pid, timeout)
            return False
        except OSError as exc:
            LOGGER.debug("Could not run %s: %s", self.executable, exc)
            return False
        return completed.returncode == 0


@dataclass
class TraceCollectionResult:
    status: RunStatus
    path: Path | None = None
    dumped: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    aborted: bool = False


def _write(out: BinaryIO, text: str) -> None:
    out.write(text.encode("utf-8"))
    out.flush()


class StackTraceCollector:
    """Dumps backtraces of interesting processes into one temporary traces file.

    Managed runtimes get a short per-process timeout and allow-listed native
    processes a longer one. A run of consecutive failures is taken as a dead
    backtrace service and ends the loop.
    """

    def __init__(
        self,
        enumerator: ProcessEnumerator,
        collector: BacktraceCollector,
        managed_executables: Sequence[str],
        native_executables: Sequence[str],
        managed_timeout: float = 5.0,
        native_timeout: float = 20.0,
        max_consecutive_failures: int = 3,
        extra_native_pids: Callable[[], Iterable[int]] | None = None,
    ) -> None:
        self.enumerator = enumerator
        self.collector = collector
        self.managed_executables = frozenset(managed_executables)
        self.native_executables = frozenset(native_executables)
        self.managed_timeout = managed_timeout
        self.native_timeout = native_timeout
        self.max_consecutive_failures = max_consecutive_failures
        self.extra_native_pids = extra_native_pids

    def classify(self, process: ProcessInfo, extra_pids: frozenset[int]) -> bool | None:
        """Return True for managed, False for native, None to skip."""
        if process.exe in self.managed_executables:
            return None if process.is_zygote else True
        if process.exe in self.native_executables or process.pid in extra_pids:
            return False
        return None

    def collect(self, directory: Path, consent: ConsentGate | None = None) -> TraceCollectionResult:
        with DurationReporter("DUMP TRACES"):
            try:
                directory.mkdir(parents=True, exist_ok=True)
                fd, name = tempfile.mkstemp(prefix="dumptrace_", dir=directory)
            except OSError as exc:
                LOGGER.error("Could not create traces file in %s: %s", directory, exc)
                return TraceCollectionResult(RunStatus.OK)
            path = Path(name)
            os.chmod(path, 0o666)
            with os.fdopen(fd, "ab") as out:
                result = self._collect_into(out, consent)
            result.path = path
            return result

    def _collect_into(self, out: BinaryIO, consent: ConsentGate | None) -> TraceCollectionResult:
        result = TraceCollectionResult(RunStatus.OK)
        extra_pids = frozenset(self.extra_native_pids() if self.extra_native_pids else ())
        managed_found = False
        failures = 0
        for process in self.enumerator.processes():
            if consent is not None and consent.is_denied():
                result.status = RunStatus.USER_CONSENT_DENIED
                return result
            managed = self.classify(process, extra_pids)
            if managed is None:
                continue
            managed_found = managed_found or managed

            if failures >= self.max_consecutive_failures:
                _write(out, "ERROR: Too many stack dump failures, exiting.\n")
                LOGGER.error("Too many stack dump failures, giving up on traces")
                result.aborted = True
                break

            started = time.monotonic()
            timeout = self.managed_timeout if managed else self.native_timeout
            ok = self.collector.dump_backtrace(process.pid, managed, timeout, out)
            if not ok:
                # Same header and footer as a successful dump.
                _write(
                    out,
                    f"\n---- pid {process.pid} at [unknown] ----\n"
                    "Dump failed, likely due to a timeout.\n"
                    f"---- end {process.pid} ----",
                )
                result.failed.append(process.pid)
                failures += 1
                continue

            failures = 0
            result.dumped.append(process.pid)
            kind = "dalvik" if managed else "native"
            _write(
                out,
                f"[dump {kind} stack {process.pid}: {time.monotonic() - started:.3f}s elapsed]\n",
            )

        if not managed_found:
            LOGGER.error("Warning: no Dalvik processes found to dump stacks")
        return result
