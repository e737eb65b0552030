from __future__ import annotations

import logging
import os
import select
import subprocess
import time
from datetime import datetime
from enum import Enum
from typing import BinaryIO, Protocol, Sequence

from dumpstate.archive import PROTO_DIR, PROTO_EXT, ArchiveError, ArchiveWriter
from dumpstate.consent import ConsentGate
from dumpstate.runner import CommandOptions, DEFAULT_DUMPSYS, DurationReporter, TaskRunner
from dumpstate.status import RunStatus

LOGGER = logging.getLogger(__name__)

CHUNK_SIZE = 4096


class DumpPriority(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    NORMAL = "NORMAL"
    DEFAULT = "DEFAULT"


_PLAIN_PRIORITIES = (DumpPriority.NORMAL, DumpPriority.DEFAULT)


class DumpStream(Protocol):
    def fileno(self) -> int: ...

    def close(self, complete: bool) -> None: ...


class ServiceDumper(Protocol):
    def list_services(self, priority: DumpPriority, proto: bool) -> list[str]: ...

    def open_dump(self, service: str, priority: DumpPriority, proto: bool) -> DumpStream | None: ...


class ProcessDumpStream:
    def __init__(self, process: subprocess.Popen) -> None:
        self.process = process

    def fileno(self) -> int:
        assert self.process.stdout is not None
        return self.process.stdout.fileno()

    def close(self, complete: bool) -> None:
        if not complete and self.process.poll() is None:
            self.process.kill()
        try:
            self.process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            LOGGER.error("dumpsys pid %d did not exit", self.process.pid)
        if self.process.stdout is not None:
            self.process.stdout.close()


class DumpsysServiceDumper:
    def __init__(self, executable: str = "dumpsys", list_timeout: float = 10.0) -> None:
        self.executable = executable
        self.list_timeout = list_timeout

    @staticmethod
    def _args(priority: DumpPriority, proto: bool) -> list[str]:
        args = ["--priority", priority.value]
        if proto:
            args.append("--proto")
        return args

    def list_services(self, priority: DumpPriority, proto: bool) -> list[str]:
        command = [self.executable, "-l", *self._args(priority, proto)]
        try:
            completed = subprocess.run(
                command, capture_output=True, text=True, timeout=self.list_timeout
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            LOGGER.error("Could not list services: %s", exc)
            return []
        services = []
        for line in completed.stdout.splitlines():
            line = line.strip()
            if line and not line.endswith(":"):
                services.append(line)
        return services

    def open_dump(self, service: str, priority: DumpPriority, proto: bool) -> DumpStream | None:
        command = [self.executable, *self._args(priority, proto), service]
        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
            )
        except OSError as exc:
            LOGGER.error("Could not start dump of %s: %s", service, exc)
            return None
        return ProcessDumpStream(process)


def proto_entry_name(service: str, priority: DumpPriority) -> str:
    suffix = {DumpPriority.CRITICAL: "_CRITICAL", DumpPriority.HIGH: "_HIGH"}.get(priority, "")
    return f"{PROTO_DIR}{service}{suffix}{PROTO_EXT}"


def copy_with_deadline(fd: int, out: BinaryIO, timeout: float) -> bool:
    """Copy ``fd`` to ``out`` until EOF; False if ``timeout`` expired first."""
    end = time.monotonic() + timeout
    while True:
        left = end - time.monotonic()
        if left <= 0:
            return False
        ready, _, _ = select.select([fd], [], [], left)
        if not ready:
            return False
        chunk = os.read(fd, CHUNK_SIZE)
        if not chunk:
            return True
        out.write(chunk)


class DumpsysCollector:
    def __init__(
        self,
        dumper: ServiceDumper,
        runner: TaskRunner,
        archive: ArchiveWriter | None = None,
        consent: ConsentGate | None = None,
    ) -> None:
        self.dumper = dumper
        self.runner = runner
        self.archive = archive
        self.consent = consent

    def _denied(self) -> bool:
        return self.consent is not None and self.consent.is_denied()

    def _text_by_priority(
        self, title: str, priority: DumpPriority, timeout: float, service_timeout: float
    ) -> RunStatus:
        started = time.monotonic()
        for service in self.dumper.list_services(priority, proto=False):
            if self._denied():
                return RunStatus.USER_CONSENT_DENIED
            stream = self.dumper.open_dump(service, priority, proto=False)
            if stream is not None:
                label = "" if priority in _PLAIN_PRIORITIES else priority.value + " "
                self.runner.write("-" * 77 + f"\nDUMP OF SERVICE {label}{service}:\n")
                self.runner.flush()
                dump_started = time.monotonic()
                complete = False
                try:
                    complete = copy_with_deadline(
                        stream.fileno(), self.runner.output, service_timeout
                    )
                except OSError as exc:
                    LOGGER.error("Error dumping service %s: %s", service, exc)
                finally:
                    stream.close(complete)
                if not complete:
                    timeout_ms = int(service_timeout * 1000)
                    self.runner.write(
                        f"*** SERVICE '{service}' DUMP TIMEOUT ({timeout_ms}ms) EXPIRED ***\n"
                    )
                ending = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
                self.runner.write(
                    f"--------- {time.monotonic() - dump_started:.3f}s was the duration of "
                    f"dumpsys {service}, ending at: {ending}\n"
                )
            elapsed = time.monotonic() - started
            if elapsed > timeout:
                LOGGER.error("*** command '%s' timed out after %dms", title, int(elapsed * 1000))
                break
        return RunStatus.OK

    def run_text(
        self, title: str, priority: DumpPriority, timeout: float, service_timeout: float
    ) -> RunStatus:
        with DurationReporter(title):
            self.runner.write(f"------ {title} (/system/bin/dumpsys) ------\n")
            return self._text_by_priority(title, priority, timeout, service_timeout)

    def run_text_normal_priority(
        self, title: str, timeout: float, service_timeout: float
    ) -> RunStatus:
        with DurationReporter(title):
            self.runner.write(f"------ {title} (/system/bin/dumpsys) ------\n")
            self._text_by_priority(title, DumpPriority.NORMAL, timeout, service_timeout)
            if self._denied():
                return RunStatus.USER_CONSENT_DENIED
            return self._text_by_priority(title, DumpPriority.DEFAULT, timeout, service_timeout)

    def run_proto(
        self, title: str, priority: DumpPriority, timeout: float, service_timeout: float
    ) -> RunStatus:
        if self.archive is None:
            LOGGER.debug("Not dumping %s because it's not a zipped bugreport", title)
            return RunStatus.OK
        with DurationReporter(title):
            started = time.monotonic()
            for service in self.dumper.list_services(priority, proto=True):
                if self._denied():
                    return RunStatus.USER_CONSENT_DENIED
                stream = self.dumper.open_dump(service, priority, proto=True)
                if stream is not None:
                    complete = False
                    try:
                        self.archive.add_entry_from_fd(
                            proto_entry_name(service, priority), stream.fileno(), service_timeout
                        )
                        complete = True
                    except ArchiveError as exc:
                        LOGGER.error("Unable to add proto dump of %s: %s", service, exc)
                    finally:
                        stream.close(complete)
                elapsed = time.monotonic() - started
                if elapsed > timeout:
                    LOGGER.error(
                        "*** command '%s' timed out after %dms", title, int(elapsed * 1000)
                    )
                    break
        return RunStatus.OK

    def run_critical(self) -> RunStatus:
        self.run_text("DUMPSYS CRITICAL", DumpPriority.CRITICAL, 5.0, 0.5)
        if self._denied():
            return RunStatus.USER_CONSENT_DENIED
        return self.run_proto("DUMPSYS CRITICAL PROTO", DumpPriority.CRITICAL, 5.0, 0.5)

    def run_high(self) -> RunStatus:
        self.run_text("DUMPSYS HIGH", DumpPriority.HIGH, 90.0, 30.0)
        if self._denied():
            return RunStatus.USER_CONSENT_DENIED
        return self.run_proto("DUMPSYS HIGH PROTO", DumpPriority.HIGH, 5.0, 1.0)

    def run_normal(self) -> RunStatus:
        self.run_text_normal_priority("DUMPSYS", 90.0, 10.0)
        if self._denied():
            return RunStatus.USER_CONSENT_DENIED
        return self.run_proto("DUMPSYS PROTO", DumpPriority.NORMAL, 90.0, 10.0)

    def run_service(
        self,
        title: str,
        args: Sequence[str],
        options: CommandOptions = DEFAULT_DUMPSYS,
        service_timeout: float | None = None,
    ) -> None:
        seconds = service_timeout if service_timeout is not None else options.timeout
        timeout_ms = int(seconds * 1000)
        self.runner.run_command(title, ["dumpsys", "-T", str(timeout_ms), *args], options)
