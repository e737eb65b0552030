import io
import os
import threading
import time
import zipfile
from pathlib import Path
from typing import BinaryIO, Sequence

import pytest

from dumpstate.config import DumpstateConfig
from dumpstate.consent import ConsentCallback
from dumpstate.dumpsys import DumpPriority
from dumpstate.options import BugreportMode, DumpOptions
from dumpstate.orchestrator import Dumpstate
from dumpstate.properties import InMemoryPropertyStore
from dumpstate.status import ListenerError, RunStatus
from dumpstate.traces import ProcessInfo

PID = 4242
BASE = "bugreport-generic-QP1A"


class PipeStream:
    def __init__(self, payload: bytes) -> None:
        self.read_fd, write_fd = os.pipe()
        os.write(write_fd, payload)
        os.close(write_fd)

    def fileno(self) -> int:
        return self.read_fd

    def close(self, complete: bool) -> None:
        os.close(self.read_fd)


class FakeServiceDumper:
    def list_services(self, priority: DumpPriority, proto: bool) -> list[str]:
        return ["activity"] if priority == DumpPriority.CRITICAL else []

    def open_dump(self, service: str, priority: DumpPriority, proto: bool) -> PipeStream:
        return PipeStream(b"proto" if proto else b"activity state\n")


class FakeEnumerator:
    def __init__(self, processes: Sequence[ProcessInfo] = ()) -> None:
        self._processes = list(processes)

    def processes(self) -> list[ProcessInfo]:
        return list(self._processes)


class FakeBacktraces:
    def __init__(self) -> None:
        self.pids: list[int] = []

    def dump_backtrace(self, pid: int, managed: bool, timeout: float, out: BinaryIO) -> bool:
        self.pids.append(pid)
        out.write(b"backtrace\n")
        return True


class FakeAuthorizer:
    def __init__(self, verdict: str | None) -> None:
        self.verdict = verdict
        self.cancelled = False
        self.callback: ConsentCallback | None = None

    def authorize_report(self, caller_identity: str, callback: ConsentCallback) -> None:
        self.callback = callback
        if self.verdict == "approve":
            callback.on_report_approved()
        elif self.verdict == "deny":
            callback.on_report_denied()

    def cancel_authorization(self, callback: ConsentCallback) -> None:
        self.cancelled = True


class FailingBacktraces(FakeBacktraces):
    def dump_backtrace(self, pid: int, managed: bool, timeout: float, out: BinaryIO) -> bool:
        self.pids.append(pid)
        return False


class DenyingBacktraces(FakeBacktraces):
    def __init__(self, authorizer: FakeAuthorizer) -> None:
        super().__init__()
        self.authorizer = authorizer

    def dump_backtrace(self, pid: int, managed: bool, timeout: float, out: BinaryIO) -> bool:
        assert self.authorizer.callback is not None
        self.authorizer.callback.on_report_denied()
        return super().dump_backtrace(pid, managed, timeout, out)


class HangingBoard:
    def __init__(self) -> None:
        self.release = threading.Event()

    def dump_board(self, slots: Sequence[BinaryIO]) -> bool:
        self.release.wait(5)
        return True


class RecordingListener:
    def __init__(self) -> None:
        self.finished = 0
        self.errors: list[ListenerError] = []
        self.percents: list[int] = []

    def on_progress(self, percent: int) -> None:
        self.percents.append(percent)

    def on_finished(self) -> None:
        self.finished += 1

    def on_error(self, code: ListenerError) -> None:
        self.errors.append(code)


@pytest.fixture
def config(tmp_path: Path) -> DumpstateConfig:
    config = DumpstateConfig()
    config.output.directory = tmp_path / "bugreports"
    config.output.socket_dir = tmp_path / "sockets"
    config.traces.traces_dir = tmp_path / "anr"
    config.traces.tombstones_dir = tmp_path / "tombstones"
    config.traces.managed_executables = ["/system/bin/app_process64"]
    config.board.completion_timeout = 0.1
    config.board.kill_timeout = 0.1
    config.consent.timeout_ms = 200
    config.consent.poll_interval_ms = 10
    return config


@pytest.fixture
def properties() -> InMemoryPropertyStore:
    return InMemoryPropertyStore(
        {
            "dumpstate.dry_run": "true",
            "ro.product.name": "generic",
            "ro.build.id": "QP1A",
        }
    )


def _dumpstate(
    options: DumpOptions,
    config: DumpstateConfig,
    properties: InMemoryPropertyStore,
    **overrides: object,
) -> Dumpstate:
    kwargs: dict[str, object] = {
        "process_enumerator": FakeEnumerator(),
        "backtrace_collector": FakeBacktraces(),
        "service_dumper": FakeServiceDumper(),
        "drop_privileges": lambda: True,
        "output": io.BytesIO(),
        "pid": PID,
    }
    kwargs.update(overrides)
    return Dumpstate(options, config, properties, **kwargs)


def _zip_options(**changes: object) -> DumpOptions:
    options = DumpOptions(do_zip_file=True, do_vibrate=False)
    for key, value in changes.items():
        setattr(options, key, value)
    return options


def test_dry_run_produces_archive(
    config: DumpstateConfig, properties: InMemoryPropertyStore
) -> None:
    listener = RecordingListener()
    dumpstate = _dumpstate(_zip_options(), config, properties, listener=listener)
    assert dumpstate.run() == RunStatus.OK
    assert listener.finished == 1
    assert listener.errors == []

    report = config.output.directory / f"{BASE}-undated.zip"
    with zipfile.ZipFile(report) as handle:
        names = handle.namelist()
        assert handle.read("version.txt") == b"2.0"
        assert handle.read("main_entry.txt") == f"{BASE}-undated.txt".encode()
        main = handle.read(f"{BASE}-undated.txt").decode()
    assert "proto/activity_CRITICAL.proto" in names
    assert "dumpstate_log.txt" in names
    assert "Bugreport format version: 2.0" in main
    assert "DUMP OF SERVICE CRITICAL activity:" in main
    assert not (config.output.directory / f"{BASE}-undated.tmp").exists()
    assert properties.values["dumpstate.last_id"] == "1"
    assert config.stats_path.read_text(encoding="utf-8").startswith("1 ")


def test_run_ids_increase(config: DumpstateConfig, properties: InMemoryPropertyStore) -> None:
    assert _dumpstate(_zip_options(), config, properties).run() == RunStatus.OK
    assert _dumpstate(_zip_options(), config, properties).run() == RunStatus.OK
    assert properties.values["dumpstate.last_id"] == "2"


def test_unresponsive_board_does_not_block(
    config: DumpstateConfig, properties: InMemoryPropertyStore
) -> None:
    board = HangingBoard()
    started = time.monotonic()
    try:
        status = _dumpstate(_zip_options(), config, properties, board_dumper=board).run()
    finally:
        board.release.set()
    assert status == RunStatus.OK
    assert time.monotonic() - started < 30


def test_suffix_property_renames_report(
    config: DumpstateConfig, properties: InMemoryPropertyStore
) -> None:
    properties.set(f"dumpstate.{PID}.name", "custom")
    assert _dumpstate(_zip_options(), config, properties).run() == RunStatus.OK
    report = config.output.directory / f"{BASE}-custom.zip"
    with zipfile.ZipFile(report) as handle:
        assert f"{BASE}-custom.txt" in handle.namelist()
    assert not (config.output.directory / f"{BASE}-undated.zip").exists()


def test_invalid_suffix_is_ignored(
    config: DumpstateConfig, properties: InMemoryPropertyStore
) -> None:
    properties.set(f"dumpstate.{PID}.name", "../escape")
    assert _dumpstate(_zip_options(), config, properties).run() == RunStatus.OK
    assert (config.output.directory / f"{BASE}-undated.zip").exists()


def test_text_report_without_zip(
    config: DumpstateConfig, properties: InMemoryPropertyStore
) -> None:
    options = DumpOptions(do_vibrate=False)
    assert _dumpstate(options, config, properties).run() == RunStatus.OK
    text = (config.output.directory / f"{BASE}-undated.txt").read_text(encoding="utf-8")
    assert "== dumpstate: " in text


def test_split_anr_version_archives_traces(
    config: DumpstateConfig, properties: InMemoryPropertyStore
) -> None:
    config.traces.traces_dir.mkdir(parents=True)
    (config.traces.traces_dir / "anr_2024-01-01").write_text("anr\n", encoding="utf-8")
    config.traces.tombstones_dir.mkdir(parents=True)
    (config.traces.tombstones_dir / "tombstone_00").write_text("crash\n", encoding="utf-8")
    backtraces = FakeBacktraces()
    enumerator = FakeEnumerator([ProcessInfo(10, "/system/bin/app_process64")])
    dumpstate = _dumpstate(
        _zip_options(version="3.0"),
        config,
        properties,
        process_enumerator=enumerator,
        backtrace_collector=backtraces,
    )
    assert dumpstate.run() == RunStatus.OK
    assert backtraces.pids == [10]

    anr_dir = config.traces.traces_dir
    with zipfile.ZipFile(config.output.directory / f"{BASE}-undated.zip") as handle:
        names = handle.namelist()
        assert handle.read("version.txt") == b"3.0"
        assert handle.read(f"FS{anr_dir}/traces-just-now.txt").endswith(b"elapsed]\n")
    assert f"FS{anr_dir / 'anr_2024-01-01'}" in names
    assert f"FS{config.traces.tombstones_dir / 'tombstone_00'}" in names
    assert not any(path.name.startswith("dumptrace_") for path in anr_dir.iterdir())


def test_skipped_phase_is_not_run(
    config: DumpstateConfig, properties: InMemoryPropertyStore
) -> None:
    config.pipeline.skip_phases = ["STACK_TRACE_COLLECTION", "NOT_A_PHASE"]
    backtraces = FakeBacktraces()
    enumerator = FakeEnumerator([ProcessInfo(10, "/system/bin/app_process64")])
    dumpstate = _dumpstate(
        _zip_options(),
        config,
        properties,
        process_enumerator=enumerator,
        backtrace_collector=backtraces,
    )
    assert dumpstate.run() == RunStatus.OK
    assert backtraces.pids == []


def test_consent_denied_removes_artifacts(
    config: DumpstateConfig, properties: InMemoryPropertyStore
) -> None:
    listener = RecordingListener()
    options = DumpOptions.for_caller(BugreportMode.DEFAULT, io.BytesIO())
    options.do_vibrate = False
    dumpstate = _dumpstate(
        options, config, properties, authorizer=FakeAuthorizer("deny"), listener=listener
    )
    assert dumpstate.run() == RunStatus.USER_CONSENT_DENIED
    assert listener.errors == [ListenerError.USER_DENIED_CONSENT]
    leftovers = [path.suffix for path in config.output.directory.iterdir()]
    assert ".zip" not in leftovers
    assert ".tmp" not in leftovers


def test_denial_during_phase_removes_report_and_screenshot(
    config: DumpstateConfig, properties: InMemoryPropertyStore
) -> None:
    authorizer = FakeAuthorizer(None)
    enumerator = FakeEnumerator(
        [ProcessInfo(pid, "/system/bin/app_process64") for pid in (10, 11)]
    )
    screenshots: list[Path] = []

    def take_screenshot(path: Path) -> bool:
        path.write_bytes(b"png")
        screenshots.append(path)
        return True

    options = DumpOptions.for_caller(BugreportMode.DEFAULT, io.BytesIO())
    options.do_vibrate = False
    options.do_fb = True
    options.do_broadcast = True
    options.do_progress_updates = True
    dumpstate = _dumpstate(
        options,
        config,
        properties,
        authorizer=authorizer,
        process_enumerator=enumerator,
        backtrace_collector=DenyingBacktraces(authorizer),
        screenshot_taker=take_screenshot,
    )
    assert dumpstate.run() == RunStatus.USER_CONSENT_DENIED

    assert len(screenshots) == 1
    assert not screenshots[0].exists()
    leftovers = [path.suffix for path in config.output.directory.iterdir()]
    assert ".zip" not in leftovers
    assert ".tmp" not in leftovers
    assert ".png" not in leftovers


def test_trace_failures_do_not_stop_later_phases(
    config: DumpstateConfig, properties: InMemoryPropertyStore
) -> None:
    backtraces = FailingBacktraces()
    enumerator = FakeEnumerator(
        [ProcessInfo(pid, "/system/bin/app_process64") for pid in (10, 11, 12, 13, 14)]
    )
    dumpstate = _dumpstate(
        _zip_options(version="3.0"),
        config,
        properties,
        process_enumerator=enumerator,
        backtrace_collector=backtraces,
    )
    assert dumpstate.run() == RunStatus.OK
    assert backtraces.pids == [10, 11, 12]

    anr_dir = config.traces.traces_dir
    with zipfile.ZipFile(config.output.directory / f"{BASE}-undated.zip") as handle:
        names = handle.namelist()
        traces = handle.read(f"FS{anr_dir}/traces-just-now.txt").decode()
        main = handle.read(f"{BASE}-undated.txt").decode()
    assert "ERROR: Too many stack dump failures, exiting." in traces
    assert "dumpstate_log.txt" in names
    assert "== Android Framework Services" in main
    assert "== dumpstate: done (id 1)" in main


def test_consent_approved_copies_to_caller(
    config: DumpstateConfig, properties: InMemoryPropertyStore
) -> None:
    destination = io.BytesIO()
    options = DumpOptions.for_caller(BugreportMode.DEFAULT, destination)
    options.do_vibrate = False
    dumpstate = _dumpstate(options, config, properties, authorizer=FakeAuthorizer("approve"))
    assert dumpstate.run() == RunStatus.OK

    with zipfile.ZipFile(io.BytesIO(destination.getvalue())) as handle:
        assert "main_entry.txt" in handle.namelist()
    assert not list(config.output.directory.glob("*.zip"))


def test_consent_timeout_keeps_local_report(
    config: DumpstateConfig, properties: InMemoryPropertyStore
) -> None:
    listener = RecordingListener()
    authorizer = FakeAuthorizer(None)
    destination = io.BytesIO()
    options = DumpOptions.for_caller(BugreportMode.DEFAULT, destination)
    options.do_vibrate = False
    dumpstate = _dumpstate(
        options, config, properties, authorizer=authorizer, listener=listener
    )
    assert dumpstate.run() == RunStatus.USER_CONSENT_TIMED_OUT
    assert listener.errors == [ListenerError.USER_CONSENT_TIMED_OUT]
    assert authorizer.cancelled
    assert destination.getvalue() == b""
    assert len(list(config.output.directory.glob("*.zip"))) == 1


def test_invalid_version_is_rejected(
    config: DumpstateConfig, properties: InMemoryPropertyStore
) -> None:
    listener = RecordingListener()
    dumpstate = _dumpstate(_zip_options(version="9.9"), config, properties, listener=listener)
    assert dumpstate.run() == RunStatus.INVALID_INPUT
    assert listener.errors == [ListenerError.INVALID_INPUT]
    assert not config.output.directory.exists()


def test_invalid_option_combination_is_rejected(
    config: DumpstateConfig, properties: InMemoryPropertyStore
) -> None:
    options = DumpOptions(use_control_socket=True, do_vibrate=False)
    assert _dumpstate(options, config, properties).run() == RunStatus.INVALID_INPUT


def test_header_only_prints_header(
    config: DumpstateConfig, properties: InMemoryPropertyStore
) -> None:
    output = io.BytesIO()
    options = DumpOptions(show_header_only=True, do_vibrate=False)
    dumpstate = _dumpstate(options, config, properties, output=output)
    assert dumpstate.run() == RunStatus.OK
    header = output.getvalue().decode()
    assert "Build fingerprint: '(unknown)'" in header
    assert "Bugreport format version: 2.0" in header
    assert "dumpstate.last_id" not in properties.values


def test_privilege_drop_failure_is_fatal(
    config: DumpstateConfig, properties: InMemoryPropertyStore
) -> None:
    listener = RecordingListener()
    dumpstate = _dumpstate(
        _zip_options(), config, properties, drop_privileges=lambda: False, listener=listener
    )
    assert dumpstate.run() == RunStatus.ERROR
    assert listener.errors == [ListenerError.RUNTIME_ERROR]


def test_snapshot_reports_progress(
    config: DumpstateConfig, properties: InMemoryPropertyStore
) -> None:
    dumpstate = _dumpstate(_zip_options(), config, properties)
    assert dumpstate.snapshot() == {"state": "idle"}
    dumpstate.run()
    snapshot = dumpstate.snapshot()
    assert snapshot["state"] == "OK"
    assert snapshot["id"] == 1
    assert snapshot["progress"] > 0
