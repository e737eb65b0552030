from dumpstate.status import LISTENER_ERRORS, ListenerError, RunStatus, exit_code_for


def test_exit_codes() -> None:
    assert exit_code_for(RunStatus.OK) == 0
    assert exit_code_for(RunStatus.HELP) == 0
    assert exit_code_for(RunStatus.INVALID_INPUT) == 1
    assert exit_code_for(RunStatus.ERROR) == 2
    assert exit_code_for(RunStatus.USER_CONSENT_DENIED) == 2
    assert exit_code_for(RunStatus.USER_CONSENT_TIMED_OUT) == 2


def test_listener_errors_cover_failures_only() -> None:
    assert RunStatus.OK not in LISTENER_ERRORS
    assert RunStatus.HELP not in LISTENER_ERRORS
    assert LISTENER_ERRORS[RunStatus.USER_CONSENT_DENIED] == ListenerError.USER_DENIED_CONSENT
    assert int(LISTENER_ERRORS[RunStatus.USER_CONSENT_TIMED_OUT]) == 4
