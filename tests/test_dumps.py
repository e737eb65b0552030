import os
import time
import zipfile
from pathlib import Path

from dumpstate import dumps
from dumpstate.archive import ArchiveWriter
from dumpstate.dumps import (
    ANR_FILE_PREFIX,
    RECENT_WINDOW_SECONDS,
    TOMBSTONE_FILE_PREFIX,
    CollectedDumpSet,
    MountInfoCollector,
)
from dumpstate.properties import InMemoryPropertyStore
from dumpstate.runner import TaskRunner


def _write(path: Path, content: str, mtime: float) -> None:
    path.write_text(content, encoding="utf-8")
    os.utime(path, (mtime, mtime))


def test_scan_orders_newest_first_and_filters(tmp_path: Path) -> None:
    now = time.time()
    _write(tmp_path / "tombstone_00", "old", now - 100)
    _write(tmp_path / "tombstone_01", "new", now - 10)
    _write(tmp_path / "other_file", "skip", now)
    (tmp_path / "tombstone_dir").mkdir()

    dumps = CollectedDumpSet.scan(f"{tmp_path}/", TOMBSTONE_FILE_PREFIX, False, now)
    try:
        assert [Path(entry.name).name for entry in dumps] == ["tombstone_01", "tombstone_00"]
    finally:
        dumps.close()
    assert len(dumps) == 0


def test_scan_drops_stale_files_when_limited(tmp_path: Path) -> None:
    now = time.time()
    _write(tmp_path / "anr_old", "old", now - RECENT_WINDOW_SECONDS - 60)
    _write(tmp_path / "anr_new", "new", now - 60)

    dumps = CollectedDumpSet.scan(str(tmp_path), ANR_FILE_PREFIX, True, now)
    try:
        assert [Path(entry.name).name for entry in dumps] == ["anr_new"]
    finally:
        dumps.close()


def test_scan_missing_directory_is_empty(tmp_path: Path) -> None:
    dumps = CollectedDumpSet.scan(str(tmp_path / "missing"), ANR_FILE_PREFIX, False, 0)
    assert not dumps


def test_add_writes_entries_or_body(tmp_path: Path) -> None:
    now = time.time()
    dump_dir = tmp_path / "anr"
    dump_dir.mkdir()
    _write(dump_dir / "anr_1", "trace one\n", now)
    dumps = CollectedDumpSet.scan(str(dump_dir), ANR_FILE_PREFIX, False, now)
    report = tmp_path / "report.txt"
    archive = ArchiveWriter(tmp_path / "out.zip")
    with report.open("ab") as output:
        runner = TaskRunner(InMemoryPropertyStore(), None, output)
        assert dumps.add(dumps.entries, "VM TRACES AT LAST ANR", False, archive, runner)
        assert dumps.add(dumps.entries, "HISTORICAL ANR", True, archive, runner)
        runner.flush()
    dumps.close()
    archive.finalize()

    text = report.read_text(encoding="utf-8")
    assert f"------ VM TRACES AT LAST ANR ({dump_dir / 'anr_1'}) ------\ntrace one\n" in text
    with zipfile.ZipFile(tmp_path / "out.zip") as handle:
        assert handle.read(f"FS{dump_dir / 'anr_1'}") == b"trace one\n"


def test_add_nothing_reports_false(tmp_path: Path) -> None:
    with (tmp_path / "report.txt").open("ab") as output:
        runner = TaskRunner(InMemoryPropertyStore(), None, output)
        assert CollectedDumpSet().add([], "TOMBSTONE", True, None, runner) is False


def test_mountinfo_deduplicated_by_namespace(tmp_path: Path, monkeypatch) -> None:
    proc = tmp_path / "proc"
    for pid, namespace in ((1, "mnt:[100]"), (2, "mnt:[100]"), (3, "mnt:[200]")):
        (proc / str(pid) / "ns").mkdir(parents=True)
        (proc / str(pid) / "mountinfo").write_text(f"mounts of {pid}\n", encoding="utf-8")
        os.symlink(namespace, proc / str(pid) / "ns" / "mnt")
    monkeypatch.setattr(dumps.psutil, "pids", lambda: [3, 2, 1])

    archive = ArchiveWriter(tmp_path / "out.zip")
    assert MountInfoCollector(proc).collect(archive) == 2
    archive.finalize()
    with zipfile.ZipFile(tmp_path / "out.zip") as handle:
        names = handle.namelist()
    assert names == [f"FS{proc / '1' / 'mountinfo'}", f"FS{proc / '3' / 'mountinfo'}"]


def test_mountinfo_needs_archive(tmp_path: Path) -> None:
    assert MountInfoCollector(tmp_path).collect(None) == 0
