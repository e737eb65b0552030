import threading

from dumpstate.consent import ConsentCallback, ConsentGate, ConsentResult, Resolution


class FakeAuthorizer:
    def __init__(self, verdict: str | None = None) -> None:
        self.verdict = verdict
        self.callbacks: list[ConsentCallback] = []
        self.cancelled: list[ConsentCallback] = []

    def authorize_report(self, caller_identity: str, callback: ConsentCallback) -> None:
        self.callbacks.append(callback)
        if self.verdict == "approve":
            callback.on_report_approved()
        elif self.verdict == "deny":
            callback.on_report_denied()

    def cancel_authorization(self, callback: ConsentCallback) -> None:
        self.cancelled.append(callback)


def test_unrequested_gate_is_pending_and_not_denied() -> None:
    gate = ConsentGate(FakeAuthorizer())
    assert gate.requested is False
    assert gate.result() == ConsentResult.PENDING
    assert gate.is_denied() is False
    assert gate.wait_for_resolution(10) == Resolution.UNRESOLVED


def test_first_verdict_wins() -> None:
    authorizer = FakeAuthorizer("deny")
    gate = ConsentGate(authorizer)
    gate.request_authorization("com.example.caller", 30_000)
    authorizer.callbacks[0].on_report_approved()
    assert gate.result() == ConsentResult.DENIED
    assert gate.is_denied()
    assert gate.wait_for_resolution(0) == Resolution.DENIED


def test_wait_returns_when_approved_from_another_thread() -> None:
    authorizer = FakeAuthorizer()
    gate = ConsentGate(authorizer, poll_interval_ms=1000)
    gate.request_authorization("caller", 30_000)
    timer = threading.Timer(0.05, authorizer.callbacks[0].on_report_approved)
    timer.start()
    try:
        assert gate.wait_for_resolution(5_000) == Resolution.APPROVED
    finally:
        timer.cancel()


def test_wait_times_out_and_cancel_reaches_authorizer() -> None:
    authorizer = FakeAuthorizer()
    gate = ConsentGate(authorizer, poll_interval_ms=10)
    gate.request_authorization("caller", 50)
    assert gate.wait_for_resolution(gate.remaining_ms()) == Resolution.UNRESOLVED
    assert gate.remaining_ms() == 0
    gate.cancel()
    assert authorizer.cancelled == authorizer.callbacks


def test_missing_authorizer_leaves_request_pending() -> None:
    gate = ConsentGate(None)
    gate.request_authorization("caller", 1000)
    assert gate.requested
    assert gate.result() == ConsentResult.PENDING
    gate.cancel()
