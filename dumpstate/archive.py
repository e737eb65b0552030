from __future__ import annotations

import logging
import os
import select
import stat
import threading
import time
import zipfile
from pathlib import Path
from typing import BinaryIO, Callable

LOGGER = logging.getLogger(__name__)

# Relative directory inside the archive for files copied as-is.
ZIP_ROOT_DIR = "FS"
PROTO_DIR = "proto/"
PROTO_EXT = ".proto"
CHUNK_SIZE = 65536

# Extensions that get an archive rejected by some mail providers.
PROBLEMATIC_FILE_EXTENSIONS = frozenset(
    {
        ".ade", ".adp", ".bat", ".chm", ".cmd", ".com", ".cpl", ".exe", ".hta", ".ins", ".isp",
        ".jar", ".jse", ".lib", ".lnk", ".mde", ".msc", ".msp", ".mst", ".pif", ".scr", ".sct",
        ".shb", ".sys", ".vb", ".vbe", ".vbs", ".vxd", ".wsc", ".wsf", ".wsh",
    }
)


class ArchiveError(RuntimeError):
    pass


class ArchiveTimeoutError(ArchiveError):
    pass


def sanitize_entry_name(name: str) -> str:
    idx = name.rfind(".")
    if idx == -1:
        return name
    if name[idx:].lower() in PROBLEMATIC_FILE_EXTENSIONS:
        renamed = name + ".renamed"
        LOGGER.info("Renaming entry %s to %s", name, renamed)
        return renamed
    return name


def _date_time(timestamp: float) -> tuple[int, ...]:
    # Zip timestamps cannot predate 1980.
    return tuple(time.localtime(max(timestamp, 315532800))[:6])


def get_mtime(fd: int, default: float) -> float:
    try:
        return os.fstat(fd).st_mtime
    except OSError:
        return default


class ArchiveWriter:
    """Streams entries into a single deflated zip file.

    Only one entry may be open at a time. Every entry that was started is
    finished, even when streaming fails, so the archive stays readable.
    """

    def __init__(self, path: Path, now: float | None = None) -> None:
        self.path = path
        self.now = time.time() if now is None else now
        self._writer_lock = threading.Lock()
        self.entries: list[str] = []
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            self._file: BinaryIO | None = open(path, "wb")
        except OSError as exc:
            raise ArchiveError(f"Could not create archive {path}: {exc}") from exc
        self._zip: zipfile.ZipFile | None = zipfile.ZipFile(
            self._file, mode="w", compression=zipfile.ZIP_DEFLATED
        )
        LOGGER.debug("Creating initial .zip file (%s)", path)

    @property
    def finalized(self) -> bool:
        return self._zip is None

    def _acquire(self, entry_name: str) -> zipfile.ZipFile:
        if self._zip is None:
            raise ArchiveError(f"Archive already finalized; cannot add {entry_name}")
        if not self._writer_lock.acquire(blocking=False):
            raise ArchiveError(f"Another entry is open; cannot add {entry_name}")
        return self._zip

    def _entry_info(self, name: str, mtime: float) -> zipfile.ZipInfo:
        info = zipfile.ZipInfo(name, date_time=_date_time(mtime))
        info.compress_type = zipfile.ZIP_DEFLATED
        info.external_attr = 0o644 << 16
        return info

    def add_entry_from_fd(self, entry_name: str, fd: int, timeout: float | None = None) -> int:
        """Copy ``fd`` until EOF into a new entry, returning the byte count.

        With a ``timeout`` every read waits for readiness within the remaining
        budget; on expiry the partial entry is finished and
        :class:`ArchiveTimeoutError` is raised.
        """
        valid_name = sanitize_entry_name(entry_name)
        archive = self._acquire(valid_name)
        written = 0
        try:
            info = self._entry_info(valid_name, get_mtime(fd, self.now))
            try:
                dest = archive.open(info, mode="w")
            except (OSError, ValueError, RuntimeError) as exc:
                raise ArchiveError(f"Could not start entry {valid_name}: {exc}") from exc
            with dest:
                end = time.monotonic() + timeout if timeout and timeout > 0 else None
                while True:
                    if end is not None:
                        left = max(end - time.monotonic(), 0.0)
                        ready, _, _ = select.select([fd], [], [], left)
                        if not ready:
                            LOGGER.error(
                                "Timed out adding from fd to zip entry %s Timeout:%dms",
                                entry_name,
                                int(timeout * 1000),
                            )
                            raise ArchiveTimeoutError(f"Timed out streaming {entry_name}")
                    try:
                        chunk = os.read(fd, CHUNK_SIZE)
                    except BlockingIOError:
                        if end is None:
                            select.select([fd], [], [])
                        continue
                    except OSError as exc:
                        raise ArchiveError(f"read({entry_name}): {exc}") from exc
                    if not chunk:
                        break
                    try:
                        dest.write(chunk)
                    except (OSError, ValueError) as exc:
                        raise ArchiveError(f"Could not write entry {valid_name}: {exc}") from exc
                    written += len(chunk)
            self.entries.append(valid_name)
            return written
        finally:
            self._writer_lock.release()

    def add_entry(self, entry_name: str, entry_path: str | Path) -> bool:
        try:
            fd = os.open(entry_path, os.O_RDONLY | os.O_NONBLOCK | os.O_CLOEXEC)
        except OSError as exc:
            LOGGER.error("open(%s): %s", entry_path, exc.strerror or exc)
            return False
        try:
            self.add_entry_from_fd(entry_name, fd)
            return True
        except ArchiveError as exc:
            LOGGER.error("Unable to add %s to zip file: %s", entry_name, exc)
            return False
        finally:
            os.close(fd)

    def add_text_entry(self, entry_name: str, content: str | bytes) -> bool:
        data = content.encode("utf-8") if isinstance(content, str) else content
        LOGGER.debug("Adding zip text entry %s", entry_name)
        try:
            archive = self._acquire(entry_name)
        except ArchiveError as exc:
            LOGGER.error("%s", exc)
            return False
        try:
            with archive.open(self._entry_info(entry_name, self.now), mode="w") as dest:
                dest.write(data)
            self.entries.append(entry_name)
            return True
        except (OSError, ValueError, RuntimeError) as exc:
            LOGGER.error("Could not write text entry %s: %s", entry_name, exc)
            return False
        finally:
            self._writer_lock.release()

    def add_dir(
        self,
        directory: str | Path,
        recursive: bool,
        on_file: Callable[[], None] | None = None,
    ) -> int:
        LOGGER.debug("Adding dir %s (recursive: %s)", directory, recursive)
        added = 0
        root = str(directory)
        try:
            names = sorted(os.listdir(root))
        except OSError as exc:
            LOGGER.debug("Skipping dir %s: %s", root, exc.strerror or exc)
            return 0
        for name in names:
            path = os.path.join(root, name)
            try:
                mode = os.lstat(path).st_mode
            except OSError:
                continue
            if stat.S_ISDIR(mode):
                if recursive:
                    added += self.add_dir(path, recursive, on_file)
                continue
            if not stat.S_ISREG(mode):
                continue
            if self.add_entry(ZIP_ROOT_DIR + os.path.abspath(path), path):
                added += 1
            if on_file is not None:
                on_file()
        return added

    def finalize(self) -> None:
        if self._zip is None:
            return
        if not self._writer_lock.acquire(blocking=False):
            raise ArchiveError("Cannot finalize while an entry is open")
        try:
            self._zip.close()
            assert self._file is not None
            self._file.close()
        except OSError as exc:
            raise ArchiveError(f"Could not finish archive {self.path}: {exc}") from exc
        finally:
            self._zip = None
            self._file = None
            self._writer_lock.release()

    def abandon(self) -> None:
        if self._zip is None:
            return
        try:
            self.finalize()
        except ArchiveError as exc:
            LOGGER.debug("Ignoring archive close error: %s", exc)
