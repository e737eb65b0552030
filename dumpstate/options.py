from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from enum import Enum
from typing import BinaryIO

from dumpstate.properties import (
    PROPERTY_EXTRA_DESCRIPTION,
    PROPERTY_EXTRA_OPTIONS,
    PROPERTY_EXTRA_TITLE,
    PropertyStore,
)

LOGGER = logging.getLogger(__name__)

VERSION_CURRENT = "2.0"
VERSION_SPLIT_ANR = "3.0"
VERSION_DEFAULT = "default"


class BugreportMode(str, Enum):
    FULL = "BUGREPORT_FULL"
    INTERACTIVE = "BUGREPORT_INTERACTIVE"
    REMOTE = "BUGREPORT_REMOTE"
    WEAR = "BUGREPORT_WEAR"
    TELEPHONY = "BUGREPORT_TELEPHONY"
    WIFI = "BUGREPORT_WIFI"
    DEFAULT = "BUGREPORT_DEFAULT"


EXTRA_OPTION_MODES: dict[str, BugreportMode] = {
    "bugreportplus": BugreportMode.INTERACTIVE,
    "bugreportfull": BugreportMode.FULL,
    "bugreportremote": BugreportMode.REMOTE,
    "bugreportwear": BugreportMode.WEAR,
    "bugreporttelephony": BugreportMode.TELEPHONY,
    "bugreportwifi": BugreportMode.WIFI,
}


def resolve_version(version: str) -> str | None:
    """Map a requested format version to a supported one, or None."""
    if version == VERSION_DEFAULT:
        return VERSION_CURRENT
    if version in (VERSION_CURRENT, VERSION_SPLIT_ANR):
        return version
    return None


@dataclass
class DumpOptions:
    do_add_date: bool = False
    do_zip_file: bool = False
    do_vibrate: bool = True
    use_socket: bool = False
    use_control_socket: bool = False
    do_fb: bool = False
    do_broadcast: bool = False
    is_remote_mode: bool = False
    show_header_only: bool = False
    do_start_service: bool = False
    telephony_only: bool = False
    wifi_only: bool = False
    do_progress_updates: bool = False
    bugreport_fd: BinaryIO | None = None
    screenshot_fd: BinaryIO | None = None
    extra_options: str = ""
    args: str = ""
    notification_title: str = ""
    notification_description: str = ""
    version: str = VERSION_DEFAULT

    def output_to_file(self) -> bool:
        return not self.use_socket

    def validate(self) -> bool:
        if self.bugreport_fd is not None and not self.do_zip_file:
            return False
        needs_file = (
            self.do_zip_file or self.do_add_date or self.do_progress_updates or self.do_broadcast
        )
        if needs_file and not self.output_to_file():
            return False
        if self.use_control_socket and not self.do_zip_file:
            return False
        if self.do_progress_updates and not self.do_broadcast:
            return False
        if self.is_remote_mode and (
            self.do_progress_updates
            or not self.do_broadcast
            or not self.do_zip_file
            or not self.do_add_date
        ):
            return False
        return True

    def log(self) -> None:
        for item in fields(self):
            value = getattr(self, item.name)
            if item.name in ("bugreport_fd", "screenshot_fd"):
                value = "set" if value is not None else "none"
            LOGGER.info("%s: %s", item.name, value)

    @classmethod
    def for_caller(
        cls,
        mode: BugreportMode,
        bugreport_fd: BinaryIO,
        screenshot_fd: BinaryIO | None = None,
    ) -> "DumpOptions":
        options = cls(do_add_date=True, do_zip_file=True)
        options.bugreport_fd = bugreport_fd
        options.screenshot_fd = screenshot_fd
        set_options_from_mode(mode, options)
        return options


def set_options_from_mode(mode: BugreportMode, options: DumpOptions) -> None:
    options.extra_options = mode.value
    if mode == BugreportMode.FULL:
        options.do_broadcast = True
        options.do_fb = True
    elif mode == BugreportMode.INTERACTIVE:
        options.do_start_service = True
        options.do_progress_updates = True
        options.do_fb = False
        options.do_broadcast = True
    elif mode == BugreportMode.REMOTE:
        options.do_vibrate = False
        options.is_remote_mode = True
        options.do_fb = False
        options.do_broadcast = True
    elif mode == BugreportMode.WEAR:
        options.do_start_service = True
        options.do_progress_updates = True
        options.do_zip_file = True
        options.do_fb = True
        options.do_broadcast = True
    elif mode == BugreportMode.TELEPHONY:
        options.telephony_only = True
        options.do_fb = False
        options.do_broadcast = True
    elif mode == BugreportMode.WIFI:
        options.wifi_only = True
        options.do_zip_file = True
        options.do_fb = False
        options.do_broadcast = True


def mode_from_properties(properties: PropertyStore) -> BugreportMode:
    extra = properties.get(PROPERTY_EXTRA_OPTIONS, "")
    if not extra:
        return BugreportMode.DEFAULT
    mode = EXTRA_OPTION_MODES.get(extra)
    if mode is None:
        LOGGER.error("Unknown extra option: %s", extra)
        mode = BugreportMode.DEFAULT
    properties.set(PROPERTY_EXTRA_OPTIONS, "")
    return mode


def set_options_from_properties(properties: PropertyStore, options: DumpOptions) -> None:
    set_options_from_mode(mode_from_properties(properties), options)
    title = properties.get(PROPERTY_EXTRA_TITLE, "")
    if not title:
        return
    options.notification_title = title
    properties.set(PROPERTY_EXTRA_TITLE, "")
    description = properties.get(PROPERTY_EXTRA_DESCRIPTION, "")
    if description:
        options.notification_description = description
        properties.set(PROPERTY_EXTRA_DESCRIPTION, "")
    LOGGER.debug("notification (title: %s, description: %s)", title, description)
