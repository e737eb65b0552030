from __future__ import annotations

import concurrent.futures
import logging
import os
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Callable, Protocol, Sequence

from dumpstate.archive import ArchiveWriter
from dumpstate.progress import ProgressReporter
from dumpstate.properties import PropertyStore

LOGGER = logging.getLogger(__name__)


class BoardDumper(Protocol):
    def dump_board(self, slots: Sequence[BinaryIO]) -> bool: ...


@dataclass(frozen=True)
class SlotResult:
    name: str
    path: Path
    byte_size: int

    @property
    def usable(self) -> bool:
        return self.byte_size > 0


@dataclass(frozen=True)
class BoardCollectionResult:
    slots: tuple[SlotResult, ...]
    completed: bool
    archived: tuple[str, ...] = ()


def _run_into_future(future: Future, task: Callable[[], bool]) -> None:
    if not future.set_running_or_notify_cancel():
        return
    try:
        future.set_result(task())
    except BaseException as exc:  # noqa: BLE001
        future.set_exception(exc)


class BoardCollector:
    """Runs the vendor board dump on its own thread under two chained deadlines.

    After ``completion_timeout`` the vendor component is asked to restart and
    gets ``kill_timeout`` more seconds; whatever landed in the slots by then
    is archived. The worker thread is a daemon and is never joined.
    """

    def __init__(
        self,
        dumper: BoardDumper | None,
        properties: PropertyStore,
        slot_names: Sequence[str],
        completion_timeout: float = 30.0,
        kill_timeout: float = 10.0,
        restart_property: str = "ctl.interface_restart",
        interface_name: str = "",
        reporter: ProgressReporter | None = None,
    ) -> None:
        self.dumper = dumper
        self.properties = properties
        self.slot_names = list(slot_names)
        self.completion_timeout = completion_timeout
        self.kill_timeout = kill_timeout
        self.restart_property = restart_property
        self.interface_name = interface_name
        self.reporter = reporter

    def collect(self, directory: Path, archive: ArchiveWriter | None) -> BoardCollectionResult:
        if archive is None:
            LOGGER.debug("Not dumping board info because it's not a zipped bugreport")
            return BoardCollectionResult((), completed=False)
        if self.dumper is None:
            LOGGER.error("No board dump implementation")
            return BoardCollectionResult((), completed=False)

        paths = [directory / name for name in self.slot_names]
        handles: list[BinaryIO] = []
        try:
            try:
                for path in paths:
                    LOGGER.info("Calling board dump implementation using path %s", path)
                    path.parent.mkdir(parents=True, exist_ok=True)
                    handles.append(open(path, "wb"))
            except OSError as exc:
                LOGGER.error("Could not open board slot: %s", exc)
                return BoardCollectionResult((), completed=False)
            completed = self._run_bounded(handles)
            slots = self._inspect(paths, handles)
            archived = tuple(
                slot.name
                for slot in slots
                if slot.usable and archive.add_entry(slot.name, slot.path)
            )
            return BoardCollectionResult(slots, completed, archived)
        finally:
            for handle in handles:
                try:
                    handle.close()
                except OSError:
                    pass
            for path in paths:
                try:
                    path.unlink()
                except FileNotFoundError:
                    pass
                except OSError as exc:
                    LOGGER.error("Failed to unlink file (%s): %s", path, exc)

    def _run_bounded(self, handles: list[BinaryIO]) -> bool:
        assert self.dumper is not None
        dumper = self.dumper
        started = time.monotonic()
        future: Future = Future()

        def task() -> bool:
            ok = dumper.dump_board(handles)
            if self.reporter is not None:
                self.reporter.update(int(time.monotonic() - started))
            return ok

        thread = threading.Thread(
            target=_run_into_future, args=(future, task), name="board-dump", daemon=True
        )
        thread.start()

        done = self._wait(future, self.completion_timeout)
        if not done:
            LOGGER.error(
                "Board dump timed out after %ss, restarting vendor component",
                self.completion_timeout,
            )
            if not self.properties.set(self.restart_property, self.interface_name):
                LOGGER.error("Couldn't restart board dump component")
            done = self._wait(future, self.kill_timeout)
            if not done:
                LOGGER.error(
                    "Killing board dump timed out after %ss, continuing; content may be racy",
                    self.kill_timeout,
                )
                return False
        exc = future.exception()
        if exc is not None:
            LOGGER.error("Board dump failed: %s", exc)
            return False
        if not future.result():
            LOGGER.error("Board dump reported failure")
        return True

    @staticmethod
    def _wait(future: Future, timeout: float) -> bool:
        try:
            future.exception(timeout=timeout)
        except concurrent.futures.TimeoutError:
            return False
        return True

    def _inspect(self, paths: list[Path], handles: list[BinaryIO]) -> tuple[SlotResult, ...]:
        slots: list[SlotResult] = []
        for name, path, handle in zip(self.slot_names, paths, handles):
            try:
                handle.flush()
                size = os.fstat(handle.fileno()).st_size
            except (OSError, ValueError) as exc:
                LOGGER.error("Failed to fstat %s: %s", name, exc)
                size = -1
            if size == 0:
                LOGGER.error("Ignoring empty %s", name)
            slots.append(SlotResult(name, path, size))
        return tuple(slots)
