from __future__ import annotations

from enum import Enum, IntEnum


class RunStatus(str, Enum):
    OK = "OK"
    HELP = "HELP"
    INVALID_INPUT = "INVALID_INPUT"
    ERROR = "ERROR"
    USER_CONSENT_DENIED = "USER_CONSENT_DENIED"
    USER_CONSENT_TIMED_OUT = "USER_CONSENT_TIMED_OUT"


class ListenerError(IntEnum):
    INVALID_INPUT = 1
    RUNTIME_ERROR = 2
    USER_DENIED_CONSENT = 3
    USER_CONSENT_TIMED_OUT = 4


EXIT_CODES: dict[RunStatus, int] = {
    RunStatus.OK: 0,
    RunStatus.HELP: 0,
    RunStatus.INVALID_INPUT: 1,
    RunStatus.ERROR: 2,
    RunStatus.USER_CONSENT_DENIED: 2,
    RunStatus.USER_CONSENT_TIMED_OUT: 2,
}

LISTENER_ERRORS: dict[RunStatus, ListenerError] = {
    RunStatus.INVALID_INPUT: ListenerError.INVALID_INPUT,
    RunStatus.ERROR: ListenerError.RUNTIME_ERROR,
    RunStatus.USER_CONSENT_DENIED: ListenerError.USER_DENIED_CONSENT,
    RunStatus.USER_CONSENT_TIMED_OUT: ListenerError.USER_CONSENT_TIMED_OUT,
}


def exit_code_for(status: RunStatus) -> int:
    return EXIT_CODES[status]
