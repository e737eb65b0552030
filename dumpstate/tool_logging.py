from __future__ import annotations

import logging
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s [%(run_id)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_file_handler: logging.FileHandler | None = None


class ContextFilter(logging.Filter):
    def __init__(self, run_id: int | None = None) -> None:
        super().__init__()
        self.run_id = run_id

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = f"id={self.run_id}" if self.run_id is not None else "id=?"
        return True


def _context_filter() -> ContextFilter:
    root = logging.getLogger()
    for existing in root.filters:
        if isinstance(existing, ContextFilter):
            return existing
    context = ContextFilter()
    root.addFilter(context)
    return context


def setup_logging(verbosity: int, run_id: int | None = None) -> None:
    level = logging.INFO if verbosity == 0 else logging.DEBUG
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
    handler.addFilter(_context_filter())
    logging.basicConfig(level=level, handlers=[handler])
    set_run_id(run_id)


def set_run_id(run_id: int | None) -> None:
    _context_filter().run_id = run_id


def attach_log_file(path: Path) -> None:
    """Mirror every log record into ``path`` until :func:`detach_log_file`.

    The file becomes the ``dumpstate_log.txt`` entry of the archive.
    """
    global _file_handler
    detach_log_file()
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
    handler.addFilter(_context_filter())
    handler.setLevel(logging.DEBUG)
    root = logging.getLogger()
    root.addHandler(handler)
    if root.level > logging.DEBUG or root.level == logging.NOTSET:
        root.setLevel(logging.DEBUG)
    _file_handler = handler


def flush_log_file() -> None:
    if _file_handler is not None:
        _file_handler.flush()


def detach_log_file() -> None:
    global _file_handler
    if _file_handler is None:
        return
    logging.getLogger().removeHandler(_file_handler)
    _file_handler.close()
    _file_handler = None
