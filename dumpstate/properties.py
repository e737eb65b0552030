from __future__ import annotations

import logging
import subprocess
from typing import Protocol

LOGGER = logging.getLogger(__name__)

PROPERTY_EXTRA_OPTIONS = "dumpstate.options"
PROPERTY_LAST_ID = "dumpstate.last_id"
PROPERTY_EXTRA_TITLE = "dumpstate.options.title"
PROPERTY_EXTRA_DESCRIPTION = "dumpstate.options.description"
PROPERTY_DRY_RUN = "dumpstate.dry_run"
PROPERTY_BUILD_TYPE = "ro.build.type"


class PropertyStore(Protocol):
    def get(self, key: str, default: str = "") -> str: ...

    def set(self, key: str, value: str) -> bool: ...


def get_int(store: PropertyStore, key: str, default: int = 0) -> int:
    value = store.get(key, "")
    try:
        return int(value)
    except ValueError:
        return default


def get_bool(store: PropertyStore, key: str, default: bool = False) -> bool:
    value = store.get(key, "").strip().lower()
    if value in {"1", "y", "yes", "on", "true"}:
        return True
    if value in {"0", "n", "no", "off", "false"}:
        return False
    return default


def is_dry_run(store: PropertyStore) -> bool:
    return get_bool(store, PROPERTY_DRY_RUN)


def is_user_build(store: PropertyStore) -> bool:
    return store.get(PROPERTY_BUILD_TYPE, "") == "user"


class InMemoryPropertyStore:
    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self.values: dict[str, str] = dict(initial or {})

    def get(self, key: str, default: str = "") -> str:
        value = self.values.get(key, "")
        return value if value else default

    def set(self, key: str, value: str) -> bool:
        self.values[key] = value
        return True


class SystemPropertyStore:
    def __init__(self, timeout: int = 5) -> None:
        self.timeout = timeout

    def _run(self, args: list[str]) -> subprocess.CompletedProcess[str] | None:
        LOGGER.debug("Property command: %s", " ".join(args))
        try:
            return subprocess.run(args, capture_output=True, text=True, timeout=self.timeout)
        except (OSError, subprocess.TimeoutExpired) as exc:
            LOGGER.debug("Property command failed: %s", exc)
            return None

    def get(self, key: str, default: str = "") -> str:
        result = self._run(["getprop", key])
        if result is None or result.returncode != 0:
            return default
        value = result.stdout.strip()
        return value if value else default

    def set(self, key: str, value: str) -> bool:
        result = self._run(["setprop", key, value])
        if result is None or result.returncode != 0:
            LOGGER.error("setprop %s failed", key)
            return False
        return True
