from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, TextIO

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX = 5000
DEFAULT_GROWTH_FACTOR = 1.1
STATS_MAX_N_RUNS = 1000
STATS_MAX_AVERAGE = 100_000


class StatsParseError(ValueError):
    pass


@dataclass(frozen=True)
class StatsRecord:
    runs: int
    average_max: int

    def in_range(self) -> bool:
        return 1 <= self.runs <= STATS_MAX_N_RUNS and 1 <= self.average_max <= STATS_MAX_AVERAGE

    def to_line(self) -> str:
        return f"{self.runs} {self.average_max}\n"


def parse_stats(content: str) -> StatsRecord:
    """Parse ``<runCount> <averageMax>`` from the first line of a stats file."""
    lines = content.splitlines()
    if not lines or not lines[0].strip():
        raise StatsParseError("empty stats file")
    fields = lines[0].split()
    if len(fields) != 2:
        raise StatsParseError(f"expected 2 fields, got {len(fields)}: {lines[0]!r}")
    try:
        runs, average = (int(value) for value in fields)
    except ValueError as exc:
        raise StatsParseError(f"non-integer stats line: {lines[0]!r}") from exc
    return StatsRecord(runs, average)


class Progress:
    def __init__(
        self,
        initial_max: int = DEFAULT_MAX,
        growth_factor: float = DEFAULT_GROWTH_FACTOR,
        path: Path | None = None,
        progress: int = 0,
    ) -> None:
        self.initial_max = initial_max
        self.progress = progress
        self.max = initial_max
        self.growth_factor = growth_factor
        self.n_runs = 0
        self.average_max = 0
        self.path = path
        if path is not None:
            self.load()

    def load(self) -> None:
        assert self.path is not None
        LOGGER.debug("Loading stats from %s", self.path)
        try:
            content = self.path.read_text(encoding="utf-8")
        except OSError:
            LOGGER.info("Could not read stats from %s; using max of %d", self.path, self.max)
            return
        try:
            record = parse_stats(content)
        except StatsParseError as exc:
            LOGGER.error("Invalid stats on file %s: %s. Using max of %d", self.path, exc, self.max)
            return
        # Either field out of range invalidates the whole seed.
        if record.in_range():
            self.n_runs = record.runs
            self.average_max = record.average_max
            self.initial_max = record.average_max
        else:
            LOGGER.error("Invalid stats line on file %s: %s", self.path, record.to_line().strip())
        self.max = self.initial_max
        LOGGER.info(
            "Average max progress: %d in %d runs; estimated max: %d",
            self.average_max,
            self.n_runs,
            self.max,
        )

    def save(self) -> StatsRecord:
        total = self.n_runs * self.average_max + self.progress
        runs = self.n_runs + 1
        record = StatsRecord(runs, math.floor(total / runs))
        LOGGER.info(
            "Saving stats (total=%d, runs=%d, average=%d) on %s",
            total,
            record.runs,
            record.average_max,
            self.path,
        )
        if self.path is None:
            return record
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(record.to_line(), encoding="utf-8")
        except OSError as exc:
            LOGGER.error("Could not save stats on %s: %s", self.path, exc)
        return record

    def inc(self, delta_sec: int) -> bool:
        changed = False
        if delta_sec >= 0:
            self.progress += delta_sec
            if self.progress > self.max:
                old_max = self.max
                self.max = math.floor(self.progress * self.growth_factor)
                LOGGER.debug("Adjusting max progress from %d to %d", old_max, self.max)
                changed = True
        return changed

    def percent(self) -> int:
        if self.max <= 0:
            return 0
        return max(0, min(100, 100 * self.progress // self.max))

    def dump(self, prefix: str = "") -> str:
        return "".join(
            [
                f"{prefix}progress: {self.progress}\n",
                f"{prefix}max: {self.max}\n",
                f"{prefix}initial_max: {self.initial_max}\n",
                f"{prefix}growth_factor: {self.growth_factor:0.2f}\n",
                f"{prefix}path: {self.path or ''}\n",
                f"{prefix}n_runs: {self.n_runs}\n",
                f"{prefix}average_max: {self.average_max}\n",
            ]
        )


class ProgressListener(Protocol):
    def on_progress(self, percent: int) -> None: ...


class ProgressReporter:
    """Feeds task costs into :class:`Progress` and fans out percentage updates.

    Updates may arrive from the board collector thread, hence the lock.
    """

    def __init__(
        self,
        progress: Progress,
        listener: ProgressListener | None = None,
        control_socket: TextIO | None = None,
        enabled: bool = False,
    ) -> None:
        self.progress = progress
        self.listener = listener
        self.control_socket = control_socket
        self.enabled = enabled
        self.last_reported_percent: int | None = None
        self._lock = threading.Lock()

    def update(self, delta_sec: int) -> None:
        with self._lock:
            self.progress.inc(delta_sec)
            if not self.enabled:
                return
            percent = self.progress.percent()
            if self.last_reported_percent is not None and percent <= self.last_reported_percent:
                return
            self.last_reported_percent = percent
            current, maximum = self.progress.progress, self.progress.max
            if self.control_socket is not None:
                try:
                    self.control_socket.write(f"PROGRESS:{current}/{maximum}\n")
                    self.control_socket.flush()
                except OSError as exc:
                    LOGGER.error("Could not write progress to control socket: %s", exc)
            if self.listener is not None:
                if percent % 5 == 0:
                    LOGGER.debug("Setting progress: %d/%d (%d%%)", current, maximum, percent)
                self.listener.on_progress(percent)
