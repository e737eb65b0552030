from __future__ import annotations

import logging
import os
import re
import shutil
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, BinaryIO, Callable, Sequence, TextIO

from dumpstate import sections, tool_logging
from dumpstate.archive import ArchiveError, ArchiveWriter
from dumpstate.board import BoardCollector, BoardDumper
from dumpstate.config import DumpstateConfig
from dumpstate.consent import ConsentAuthorizer, ConsentGate, ConsentResult, Resolution
from dumpstate.dumps import CollectedDumpSet, MountInfoCollector
from dumpstate.dumpsys import DumpsysCollector, DumpsysServiceDumper, ServiceDumper
from dumpstate.notify import (
    BroadcastSender,
    ControlSocketError,
    Listener,
    open_control_socket,
    open_output_socket,
    vibrate,
    vibrate_finished,
)
from dumpstate.options import DumpOptions, resolve_version
from dumpstate.progress import Progress, ProgressReporter
from dumpstate.properties import (
    PROPERTY_LAST_ID,
    PropertyStore,
    SystemPropertyStore,
    get_int,
    is_dry_run,
)
from dumpstate.runner import TaskRunner
from dumpstate.sections import PrivilegeDropError
from dumpstate.service import StatusService
from dumpstate.status import LISTENER_ERRORS, RunStatus
from dumpstate.traces import (
    BacktraceCollector,
    DebuggerdCollector,
    ProcessEnumerator,
    PsutilEnumerator,
    StackTraceCollector,
)

LOGGER = logging.getLogger(__name__)

SOCKET_NAME = "dumpstate"
STATUS_SOCKET_NAME = "dumpstate_status"
# Allowed characters for the suffix property.
SUFFIX_PATTERN = re.compile(r"^[-_a-zA-Z0-9]+$")


@dataclass
class RunContext:
    options: DumpOptions
    config: DumpstateConfig
    properties: PropertyStore
    consent: ConsentGate
    progress: Progress
    reporter: ProgressReporter
    runner: TaskRunner
    dumpsys: DumpsysCollector
    traces: StackTraceCollector
    board: BoardCollector
    broadcasts: BroadcastSender
    internal_dir: Path
    version: str
    pid: int
    now: float
    id: int = 0
    mountinfo: MountInfoCollector = field(default_factory=MountInfoCollector)
    archive: ArchiveWriter | None = None
    base_name: str = ""
    name: str = ""
    path: Path | None = None
    tmp_path: Path | None = None
    log_path: Path | None = None
    screenshot_path: Path | None = None
    control_socket: TextIO | None = None
    do_early_screenshot: bool = False
    kernel_cmdline: str = "(unknown)"
    logcat_since: float | None = None
    dump_traces_path: Path | None = None
    tombstone_data: CollectedDumpSet = field(default_factory=CollectedDumpSet)
    anr_data: CollectedDumpSet = field(default_factory=CollectedDumpSet)
    drop_privileges: Callable[[], bool] | None = None
    screenshot_taker: Callable[[Path], bool] | None = None
    owned_output: BinaryIO | None = None

    def get_path(self, suffix: str) -> Path:
        return self.internal_dir / f"{self.base_name}-{self.name}{suffix}"


@dataclass(frozen=True)
class Phase:
    name: str
    body: Callable[[RunContext], RunStatus]
    slow: bool = False


DEFAULT_PHASES: tuple[Phase, ...] = (
    Phase("CRITICAL_PRIORITY_DUMPS", sections.critical_priority_dumps, slow=True),
    Phase("FIRST_LOG_CAPTURE", sections.first_log_capture),
    Phase("STACK_TRACE_COLLECTION", sections.stack_trace_collection, slow=True),
    Phase("ROOT_ONLY_FILE_COLLECTIONS", sections.root_only_file_collections),
    Phase("DROP_PRIVILEGES", sections.drop_privileges),
    Phase("REMAINING_DUMPS", sections.remaining_dumps, slow=True),
    Phase("SECOND_LOG_CAPTURE", sections.second_log_capture),
)
PHASE_NAMES = frozenset(phase.name for phase in DEFAULT_PHASES)


def _unlink(path: Path | None) -> None:
    if path is None:
        return
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        LOGGER.error("Failed to unlink file (%s): %s", path, exc)


def _copy_file(source: Path, destination: BinaryIO) -> bool:
    try:
        with open(source, "rb") as handle:
            shutil.copyfileobj(handle, destination)
        destination.flush()
    except OSError as exc:
        LOGGER.error("Failed to copy %s to caller: %s", source, exc)
        return False
    return True


class Dumpstate:
    """Runs one bugreport from option validation to completion notification.

    Collaborators that talk to the device are injected; the defaults drive the
    usual command line tools.
    """

    def __init__(
        self,
        options: DumpOptions,
        config: DumpstateConfig | None = None,
        properties: PropertyStore | None = None,
        authorizer: ConsentAuthorizer | None = None,
        listener: Listener | None = None,
        process_enumerator: ProcessEnumerator | None = None,
        backtrace_collector: BacktraceCollector | None = None,
        board_dumper: BoardDumper | None = None,
        service_dumper: ServiceDumper | None = None,
        drop_privileges: Callable[[], bool] | None = None,
        screenshot_taker: Callable[[Path], bool] | None = None,
        phases: Sequence[Phase] = DEFAULT_PHASES,
        output: BinaryIO | None = None,
        pid: int | None = None,
    ) -> None:
        self.options = options
        self.config = config or DumpstateConfig()
        self.properties = properties or SystemPropertyStore()
        self.authorizer = authorizer
        self.listener = listener
        self.process_enumerator = process_enumerator
        self.backtrace_collector = backtrace_collector
        self.board_dumper = board_dumper
        self.service_dumper = service_dumper
        self.drop_privileges = drop_privileges
        self.screenshot_taker = screenshot_taker
        self.phases = tuple(phases)
        self.output = output
        self.pid = os.getpid() if pid is None else pid
        self.context: RunContext | None = None
        self.service: StatusService | None = None
        self._owns_service = False
        self.state = "idle"

    def run(self, calling_identity: str = "") -> RunStatus:
        self.state = "running"
        status = self._run_internal(calling_identity)
        self.state = status.value
        if self.listener is not None:
            if status == RunStatus.OK:
                self.listener.on_finished()
            elif status in LISTENER_ERRORS:
                self.listener.on_error(LISTENER_ERRORS[status])
        return status

    def snapshot(self) -> dict[str, Any]:
        ctx = self.context
        if ctx is None:
            return {"state": self.state}
        return {
            "state": self.state,
            "id": ctx.id,
            "pid": ctx.pid,
            "progress": ctx.progress.progress,
            "max": ctx.progress.max,
            "percent": ctx.progress.percent(),
            "path": str(ctx.path) if ctx.path is not None else None,
        }

    def _create_context(self, version: str) -> RunContext:
        config = self.config
        stats_path = config.stats_path if self.options.output_to_file() else None
        progress = Progress(config.progress.default_max, config.progress.growth_factor, stats_path)
        reporter = ProgressReporter(progress, self.listener)
        output = self.output if self.output is not None else sys.stdout.buffer
        runner = TaskRunner(
            self.properties,
            reporter,
            output,
            config.pipeline.shell_uid,
            config.pipeline.shell_gid,
        )
        consent = ConsentGate(self.authorizer, config.consent.poll_interval_ms)
        traces = config.traces
        board = config.board
        return RunContext(
            options=self.options,
            config=config,
            properties=self.properties,
            consent=consent,
            progress=progress,
            reporter=reporter,
            runner=runner,
            dumpsys=DumpsysCollector(
                self.service_dumper or DumpsysServiceDumper(), runner, None, consent
            ),
            traces=StackTraceCollector(
                self.process_enumerator or PsutilEnumerator(),
                self.backtrace_collector or DebuggerdCollector(),
                traces.managed_executables,
                traces.native_executables,
                traces.managed_timeout,
                traces.native_timeout,
                traces.max_consecutive_failures,
            ),
            board=BoardCollector(
                self.board_dumper,
                self.properties,
                board.files,
                board.completion_timeout,
                board.kill_timeout,
                board.restart_property,
                board.interface_name,
                reporter,
            ),
            broadcasts=BroadcastSender(runner),
            internal_dir=config.output.directory,
            version=version,
            pid=self.pid,
            now=time.time(),
            drop_privileges=self.drop_privileges,
            screenshot_taker=self.screenshot_taker,
        )

    def _next_id(self) -> int:
        run_id = get_int(self.properties, PROPERTY_LAST_ID, 0) + 1
        self.properties.set(PROPERTY_LAST_ID, str(run_id))
        return run_id

    def _run_internal(self, calling_identity: str) -> RunStatus:
        options = self.options
        options.log()
        if not options.validate():
            LOGGER.error("Invalid options specified")
            return RunStatus.INVALID_INPUT
        version = resolve_version(options.version)
        if version is None:
            LOGGER.error(
                "invalid version requested ('%s'); supported values are: ('default', '2.0', '3.0')",
                options.version,
            )
            return RunStatus.INVALID_INPUT

        ctx = self._create_context(version)
        self.context = ctx
        if options.show_header_only:
            sections.print_header(ctx)
            return RunStatus.OK

        if options.bugreport_fd is not None:
            ctx.consent.request_authorization(calling_identity, self.config.consent.timeout_ms)

        ctx.id = self._next_id()
        tool_logging.set_run_id(ctx.id)
        LOGGER.info("begin")
        if options.do_start_service:
            self._start_service()
        if is_dry_run(self.properties):
            LOGGER.info(
                "Running on dry-run mode (to disable it, call 'setprop dumpstate.dry_run false')"
            )
        LOGGER.info(
            "dumpstate info: id=%d, args='%s', extra_options= %s)",
            ctx.id,
            options.args,
            options.extra_options,
        )
        LOGGER.info("bugreport format version: %s", version)
        ctx.do_early_screenshot = options.do_progress_updates

        try:
            return self._collect(ctx)
        finally:
            self._release(ctx)

    def _collect(self, ctx: RunContext) -> RunStatus:
        options = ctx.options
        socket_dir = self.config.output.socket_dir
        try:
            if options.use_socket:
                ctx.owned_output = open_output_socket(SOCKET_NAME, socket_dir)
                ctx.runner.output = ctx.owned_output
            if options.use_control_socket:
                ctx.control_socket = open_control_socket(SOCKET_NAME, socket_dir)
                options.do_progress_updates = True
        except ControlSocketError as exc:
            LOGGER.error("%s", exc)
            return RunStatus.ERROR
        ctx.reporter.enabled = options.do_progress_updates
        ctx.reporter.control_socket = ctx.control_socket

        redirecting = options.output_to_file()
        if redirecting:
            try:
                self._prepare_to_write_to_file(ctx)
            except (ArchiveError, OSError) as exc:
                LOGGER.error("Could not prepare output files: %s", exc)
                return RunStatus.ERROR
            if options.do_progress_updates:
                if options.do_broadcast:
                    ctx.broadcasts.send_started(ctx.name, ctx.id, ctx.pid, ctx.progress.max)
                self._control(ctx, f"BEGIN:{ctx.path}")

        ctx.kernel_cmdline = _read_kernel_cmdline()
        if options.do_vibrate:
            vibrate(ctx.runner, 150)
        if options.do_fb and ctx.do_early_screenshot:
            LOGGER.info("taking early screenshot")
            sections.take_screenshot(ctx)

        if redirecting:
            assert ctx.log_path is not None and ctx.tmp_path is not None
            tool_logging.attach_log_file(ctx.log_path)
            try:
                ctx.owned_output = open(ctx.tmp_path, "ab")
            except OSError as exc:
                LOGGER.error("Could not redirect output to %s: %s", ctx.tmp_path, exc)
                return RunStatus.ERROR
            ctx.runner.output = ctx.owned_output

        sections.print_header(ctx)
        status = self._run_phases(ctx)
        if status != RunStatus.OK:
            if status == RunStatus.USER_CONSENT_DENIED:
                self.handle_user_consent_denied(ctx)
            return status

        if redirecting:
            self._close_output(ctx)
            self._finalize_file(ctx)

        status = RunStatus.OK
        if options.bugreport_fd is not None:
            status = self._copy_bugreport_if_consented(ctx)
            if status not in (RunStatus.OK, RunStatus.USER_CONSENT_TIMED_OUT):
                LOGGER.info("User denied consent. Returning")
                return status
            if options.do_fb and options.screenshot_fd is not None and ctx.screenshot_path:
                if _copy_file(ctx.screenshot_path, options.screenshot_fd):
                    _unlink(ctx.screenshot_path)
            if status == RunStatus.USER_CONSENT_TIMED_OUT:
                LOGGER.info(
                    "Did not receive user consent yet. "
                    "Will not copy the bugreport artifacts to caller."
                )
                ctx.consent.cancel()

        if options.do_vibrate:
            vibrate_finished(ctx.runner)
        if options.do_broadcast:
            ctx.broadcasts.send_finished(
                ctx.path,
                ctx.id,
                ctx.pid,
                ctx.progress.max,
                ctx.log_path or Path(""),
                ctx.screenshot_path if options.do_fb else None,
                options.notification_title,
                options.notification_description,
                options.is_remote_mode,
            )

        LOGGER.debug(
            "Final progress: %d/%d (estimated %d)",
            ctx.progress.progress,
            ctx.progress.max,
            ctx.progress.initial_max,
        )
        ctx.progress.save()
        LOGGER.info("done (id %d)", ctx.id)

        if ctx.consent.is_denied():
            return self.handle_user_consent_denied(ctx)
        if ctx.consent.requested and ctx.consent.result() == ConsentResult.PENDING:
            return RunStatus.USER_CONSENT_TIMED_OUT
        return RunStatus.OK

    def _run_phases(self, ctx: RunContext) -> RunStatus:
        try:
            if ctx.options.telephony_only:
                return sections.telephony_only(ctx)
            if ctx.options.wifi_only:
                return sections.wifi_only(ctx)
            return self._run_default_phases(ctx)
        except PrivilegeDropError as exc:
            LOGGER.error("%s", exc)
            return RunStatus.ERROR

    def _run_default_phases(self, ctx: RunContext) -> RunStatus:
        skipped = set(self.config.pipeline.skip_phases)
        for unknown in sorted(skipped - PHASE_NAMES):
            LOGGER.warning("Ignoring unknown phase in skip list: %s", unknown)
        for phase in self.phases:
            if phase.name in skipped:
                LOGGER.info("Skipping phase %s by configuration", phase.name)
                continue
            if phase.slow and ctx.consent.is_denied():
                return RunStatus.USER_CONSENT_DENIED
            LOGGER.debug("Starting phase %s", phase.name)
            status = phase.body(ctx)
            if status != RunStatus.OK:
                return status
            if phase.slow and ctx.consent.is_denied():
                return RunStatus.USER_CONSENT_DENIED
        return RunStatus.OK

    def _prepare_to_write_to_file(self, ctx: RunContext) -> None:
        ctx.internal_dir = ctx.internal_dir.resolve()
        build_id = self.properties.get("ro.build.id", "UNKNOWN_BUILD")
        device_name = self.properties.get("ro.product.name", "UNKNOWN_DEVICE")
        ctx.base_name = f"bugreport-{device_name}-{build_id}"
        if ctx.options.do_add_date:
            ctx.name = datetime.fromtimestamp(ctx.now).strftime("%Y-%m-%d-%H-%M-%S")
        else:
            ctx.name = "undated"
        if ctx.options.telephony_only:
            ctx.base_name += "-telephony"
        elif ctx.options.wifi_only:
            ctx.base_name += "-wifi"

        if ctx.options.do_fb:
            ctx.screenshot_path = ctx.get_path(".png")
        ctx.tmp_path = ctx.get_path(".tmp")
        ctx.log_path = ctx.get_path(f"-dumpstate_log-{ctx.pid}.txt")
        LOGGER.debug(
            "Bugreport dir: %s Base name: %s Suffix: %s Log path: %s "
            "Temporary path: %s Screenshot path: %s",
            "[fd]" if ctx.options.bugreport_fd is not None else ctx.internal_dir,
            ctx.base_name,
            ctx.name,
            ctx.log_path,
            ctx.tmp_path,
            ctx.screenshot_path,
        )
        ctx.internal_dir.mkdir(parents=True, exist_ok=True)
        if ctx.options.do_zip_file:
            ctx.path = ctx.get_path(".zip")
            ctx.archive = ArchiveWriter(ctx.path, ctx.now)
            ctx.dumpsys.archive = ctx.archive
            ctx.archive.add_text_entry("version.txt", ctx.version)

    def _finish_zip_file(self, ctx: RunContext) -> bool:
        archive = ctx.archive
        assert archive is not None and ctx.tmp_path is not None
        entry_name = f"{ctx.base_name}-{ctx.name}.txt"
        LOGGER.debug("Adding main entry (%s) from %s to .zip bugreport", entry_name, ctx.tmp_path)
        LOGGER.debug(
            "dumpstate id %d finished around %s (%d s)",
            ctx.id,
            datetime.now().strftime("%Y/%m/%d %H:%M:%S"),
            int(time.time() - ctx.now),
        )
        if not archive.add_entry(entry_name, ctx.tmp_path):
            LOGGER.error("Failed to add text entry to .zip file")
            archive.abandon()
            return False
        if not archive.add_text_entry("main_entry.txt", entry_name):
            LOGGER.error("Failed to add main_entry.txt to .zip file")
            archive.abandon()
            return False
        LOGGER.info("dumpstate_log.txt entry on zip file logged up to here")
        tool_logging.flush_log_file()
        if ctx.log_path is None or not archive.add_entry("dumpstate_log.txt", ctx.log_path):
            LOGGER.error("Failed to add dumpstate log to .zip file")
            archive.abandon()
            return False
        try:
            archive.finalize()
        except ArchiveError as exc:
            LOGGER.error("Could not finish zip file: %s", exc)
            return False
        LOGGER.debug("Removing temporary file %s", ctx.tmp_path)
        _unlink(ctx.tmp_path)
        return True

    def _finalize_file(self, ctx: RunContext) -> None:
        suffix = self.properties.get(f"dumpstate.{ctx.pid}.name", "")
        if suffix and not SUFFIX_PATTERN.match(suffix):
            LOGGER.error("invalid suffix provided by user: %s", suffix)
            suffix = ""
        if suffix:
            LOGGER.info("changing suffix from %s to %s", ctx.name, suffix)
            ctx.name = suffix
            if ctx.screenshot_path is not None:
                renamed = ctx.get_path(".png")
                try:
                    os.rename(ctx.screenshot_path, renamed)
                    ctx.screenshot_path = renamed
                except OSError as exc:
                    LOGGER.error("rename(%s, %s): %s", ctx.screenshot_path, renamed, exc)

        do_text_file = True
        if ctx.options.do_zip_file and ctx.archive is not None:
            if self._finish_zip_file(ctx):
                do_text_file = False
                new_path = ctx.get_path(".zip")
                if ctx.path != new_path:
                    LOGGER.debug("Renaming zip file from %s to %s", ctx.path, new_path)
                    try:
                        os.rename(ctx.path, new_path)
                        ctx.path = new_path
                    except OSError as exc:
                        LOGGER.error("rename(%s, %s): %s", ctx.path, new_path, exc)
            else:
                LOGGER.error("Failed to finish zip file; sending text bugreport instead")
        if do_text_file:
            assert ctx.tmp_path is not None
            ctx.path = ctx.get_path(".txt")
            LOGGER.debug("Generating .txt bugreport at %s from %s", ctx.path, ctx.tmp_path)
            try:
                os.rename(ctx.tmp_path, ctx.path)
            except OSError as exc:
                LOGGER.error("rename(%s, %s): %s", ctx.tmp_path, ctx.path, exc)
                ctx.path = None
        if ctx.options.use_control_socket:
            if do_text_file:
                self._control(
                    ctx,
                    f"FAIL:could not create zip file, check {ctx.log_path} for more details",
                )
            else:
                self._control(ctx, f"OK:{ctx.path}")

    def _copy_bugreport_if_consented(self, ctx: RunContext) -> RunStatus:
        gate = ctx.consent
        if gate.result() == ConsentResult.PENDING:
            LOGGER.debug(
                "Did not receive user consent yet; going to wait for %d seconds",
                gate.remaining_ms() // 1000,
            )
        resolution = gate.wait_for_resolution(gate.remaining_ms())
        if resolution == Resolution.DENIED:
            return self.handle_user_consent_denied(ctx)
        if resolution == Resolution.UNRESOLVED:
            return RunStatus.USER_CONSENT_TIMED_OUT
        if ctx.path is None or ctx.options.bugreport_fd is None:
            return RunStatus.ERROR
        if not _copy_file(ctx.path, ctx.options.bugreport_fd):
            return RunStatus.ERROR
        _unlink(ctx.path)
        return RunStatus.OK

    def handle_user_consent_denied(self, ctx: RunContext) -> RunStatus:
        LOGGER.debug("User denied consent; deleting files and returning")
        self.cleanup_files(ctx)
        return RunStatus.USER_CONSENT_DENIED

    def cleanup_files(self, ctx: RunContext) -> None:
        self._close_output(ctx)
        if ctx.archive is not None:
            ctx.archive.abandon()
        _unlink(ctx.tmp_path)
        _unlink(ctx.screenshot_path)
        _unlink(ctx.path)

    def _control(self, ctx: RunContext, message: str) -> None:
        if ctx.control_socket is None:
            return
        try:
            ctx.control_socket.write(message + "\n")
            ctx.control_socket.flush()
        except OSError as exc:
            LOGGER.error("Could not write to control socket: %s", exc)

    def _close_output(self, ctx: RunContext) -> None:
        if ctx.owned_output is None:
            return
        try:
            ctx.owned_output.close()
        except OSError as exc:
            LOGGER.error("Could not close report output: %s", exc)
        ctx.owned_output = None
        ctx.runner.output = self.output if self.output is not None else sys.stdout.buffer

    def _release(self, ctx: RunContext) -> None:
        self._close_output(ctx)
        if ctx.control_socket is not None:
            LOGGER.debug("Closing control socket")
            try:
                ctx.control_socket.close()
            except OSError as exc:
                LOGGER.debug("Could not close control socket: %s", exc)
            ctx.control_socket = None
        if ctx.archive is not None and not ctx.archive.finalized:
            ctx.archive.abandon()
        _unlink(ctx.dump_traces_path)
        ctx.tombstone_data.close()
        ctx.anr_data.close()
        tool_logging.detach_log_file()
        if self._owns_service and self.service is not None:
            self.service.stop()
            self.service = None
            self._owns_service = False

    def _start_service(self) -> None:
        if self.service is not None:
            return
        LOGGER.info("Starting 'dumpstate' service")
        service = StatusService(self.config.output.socket_dir / STATUS_SOCKET_NAME, self.snapshot)
        try:
            service.start()
        except OSError as exc:
            LOGGER.error("Unable to start DumpstateService: %s", exc)
            return
        self.service = service
        self._owns_service = True


def _read_kernel_cmdline() -> str:
    try:
        with open("/proc/cmdline", encoding="utf-8", errors="replace") as handle:
            return handle.readline().strip() or "(unknown)"
    except OSError:
        return "(unknown)"
