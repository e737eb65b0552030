from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence

import psutil

from dumpstate.archive import ZIP_ROOT_DIR, ArchiveError, ArchiveWriter
from dumpstate.runner import TaskRunner

LOGGER = logging.getLogger(__name__)

TOMBSTONE_FILE_PREFIX = "tombstone_"
ANR_FILE_PREFIX = "anr_"
RECENT_WINDOW_SECONDS = 30 * 60


@dataclass
class DumpData:
    name: str
    fd: int
    mtime: float


class CollectedDumpSet:
    """Open descriptors for dump files in one directory, newest first.

    Descriptors stay open until :meth:`close` so the files can be dumped
    even if they are rotated away meanwhile.
    """

    def __init__(self, entries: Sequence[DumpData] = ()) -> None:
        self.entries = sorted(entries, key=lambda entry: entry.mtime, reverse=True)

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    def __bool__(self) -> bool:
        return bool(self.entries)

    @classmethod
    def scan(
        cls, directory: str, prefix: str, limit_by_mtime: bool, now: float
    ) -> "CollectedDumpSet":
        """Open every regular file in ``directory`` starting with ``prefix``.

        With ``limit_by_mtime`` only files written within the last thirty
        minutes are kept.
        """
        cutoff = now - RECENT_WINDOW_SECONDS
        try:
            names = os.listdir(directory)
        except OSError as exc:
            LOGGER.warning("Unable to open directory %s: %s", directory, exc.strerror or exc)
            return cls()
        entries: list[DumpData] = []
        for base_name in names:
            if not base_name.startswith(prefix):
                continue
            path = os.path.join(directory, base_name)
            try:
                fd = os.open(path, os.O_RDONLY | os.O_CLOEXEC | os.O_NOFOLLOW | os.O_NONBLOCK)
            except OSError as exc:
                LOGGER.warning("Unable to open dump file %s: %s", path, exc.strerror or exc)
                continue
            try:
                st = os.fstat(fd)
            except OSError as exc:
                LOGGER.warning("Unable to stat dump file %s: %s", path, exc.strerror or exc)
                os.close(fd)
                continue
            if not stat.S_ISREG(st.st_mode):
                os.close(fd)
                continue
            if limit_by_mtime and st.st_mtime < cutoff:
                LOGGER.info("Excluding stale dump file: %s", path)
                os.close(fd)
                continue
            entries.append(DumpData(path, fd, st.st_mtime))
        return cls(entries)

    def add(
        self,
        entries: Iterable[DumpData],
        type_name: str,
        add_to_zip: bool,
        archive: ArchiveWriter | None,
        runner: TaskRunner,
    ) -> bool:
        dumped = False
        for entry in entries:
            dumped = True
            try:
                os.lseek(entry.fd, 0, os.SEEK_SET)
            except OSError as exc:
                LOGGER.error("Unable to add %s to zip file, lseek failed: %s", entry.name, exc)
            if archive is not None and add_to_zip:
                try:
                    archive.add_entry_from_fd(ZIP_ROOT_DIR + entry.name, entry.fd)
                except ArchiveError as exc:
                    LOGGER.error("Unable to add %s to zip file: %s", entry.name, exc)
            else:
                runner.write(f"------ {type_name} ({entry.name}) ------\n")
                _copy_fd(entry.fd, runner)
        return dumped

    def close(self) -> None:
        for entry in self.entries:
            try:
                os.close(entry.fd)
            except OSError:
                pass
        self.entries = []


def _copy_fd(fd: int, runner: TaskRunner) -> None:
    runner.flush()
    newline = True
    while True:
        try:
            chunk = os.read(fd, 65536)
        except BlockingIOError:
            break
        except OSError as exc:
            runner.write(f"*** read error: {exc}\n")
            break
        if not chunk:
            break
        runner.output.write(chunk)
        newline = chunk.endswith(b"\n")
    if not newline:
        runner.write("\n")


class MountInfoCollector:
    def __init__(self, proc_root: Path = Path("/proc")) -> None:
        self.proc_root = proc_root
        self.mount_points: set[str] = set()

    def _pids(self) -> list[int]:
        return sorted(psutil.pids())

    def collect(self, archive: ArchiveWriter | None) -> int:
        if archive is None:
            return 0
        self.mount_points.clear()
        for pid in self._pids():
            ns_link = self.proc_root / str(pid) / "ns" / "mnt"
            try:
                namespace = os.readlink(ns_link)
            except OSError as exc:
                LOGGER.error("Unable to read link for %s: %s", ns_link, exc.strerror or exc)
                continue
            if namespace in self.mount_points:
                continue
            path = self.proc_root / str(pid) / "mountinfo"
            if archive.add_entry(ZIP_ROOT_DIR + str(path), path):
                self.mount_points.add(namespace)
            else:
                LOGGER.error("Unable to add mountinfo %s to zip file", path)
        LOGGER.debug("MOUNT INFO: %d entries added to zip file", len(self.mount_points))
        return len(self.mount_points)
