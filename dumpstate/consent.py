from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

LOGGER = logging.getLogger(__name__)


class ConsentResult(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DENIED = "DENIED"


class Resolution(str, Enum):
    APPROVED = "APPROVED"
    DENIED = "DENIED"
    UNRESOLVED = "UNRESOLVED"


@dataclass
class ConsentRequest:
    caller_identity: str
    requested_at: float
    timeout_ms: int
    result: ConsentResult = ConsentResult.PENDING

    def elapsed_ms(self, now: float | None = None) -> int:
        current = time.monotonic() if now is None else now
        return int((current - self.requested_at) * 1000)

    def timed_out(self, now: float | None = None) -> bool:
        return self.result == ConsentResult.PENDING and self.elapsed_ms(now) >= self.timeout_ms


class ConsentCallback:
    """Receives the asynchronous verdict of the authorizer.

    The first terminal verdict wins; later calls are ignored.
    """

    def __init__(self, request: ConsentRequest) -> None:
        self.request = request
        self._lock = threading.Lock()
        self._resolved = threading.Event()

    def on_report_approved(self) -> None:
        self._resolve(ConsentResult.APPROVED)

    def on_report_denied(self) -> None:
        self._resolve(ConsentResult.DENIED)

    def _resolve(self, result: ConsentResult) -> None:
        with self._lock:
            if self.request.result != ConsentResult.PENDING:
                LOGGER.debug(
                    "Ignoring consent %s; already %s", result.value, self.request.result.value
                )
                return
            self.request.result = result
        if result == ConsentResult.APPROVED:
            LOGGER.debug("User approved consent to share bugreport")
        else:
            LOGGER.warning("User denied consent to share bugreport")
        self._resolved.set()

    def get_result(self) -> ConsentResult:
        with self._lock:
            return self.request.result

    def wait(self, timeout: float) -> bool:
        return self._resolved.wait(timeout)


class ConsentAuthorizer(Protocol):
    def authorize_report(self, caller_identity: str, callback: ConsentCallback) -> None: ...

    def cancel_authorization(self, callback: ConsentCallback) -> None: ...


@dataclass
class ConsentGate:
    authorizer: ConsentAuthorizer | None
    poll_interval_ms: int = 500
    callback: ConsentCallback | None = field(default=None, init=False)

    @property
    def requested(self) -> bool:
        return self.callback is not None

    def request_authorization(self, caller_identity: str, timeout_ms: int) -> None:
        request = ConsentRequest(caller_identity, time.monotonic(), timeout_ms)
        self.callback = ConsentCallback(request)
        if self.authorizer is None:
            LOGGER.debug("Unable to check user consent; authorization service unavailable")
            return
        LOGGER.debug("Checking user consent for %s", caller_identity)
        try:
            self.authorizer.authorize_report(caller_identity, self.callback)
        except Exception as exc:  # noqa: BLE001
            LOGGER.error("Consent request failed: %s", exc)

    def result(self) -> ConsentResult:
        if self.callback is None:
            return ConsentResult.PENDING
        return self.callback.get_result()

    def is_denied(self) -> bool:
        return self.callback is not None and self.result() == ConsentResult.DENIED

    def elapsed_ms(self) -> int:
        if self.callback is None:
            return 0
        return self.callback.request.elapsed_ms()

    def remaining_ms(self) -> int:
        if self.callback is None:
            return 0
        return max(self.callback.request.timeout_ms - self.elapsed_ms(), 0)

    def wait_for_resolution(self, remaining_ms: int) -> Resolution:
        if self.callback is None:
            return Resolution.UNRESOLVED
        deadline = time.monotonic() + max(remaining_ms, 0) / 1000
        interval = max(self.poll_interval_ms, 1) / 1000
        while True:
            result = self.result()
            if result == ConsentResult.APPROVED:
                return Resolution.APPROVED
            if result == ConsentResult.DENIED:
                return Resolution.DENIED
            left = deadline - time.monotonic()
            if left <= 0:
                return Resolution.UNRESOLVED
            self.callback.wait(min(interval, left))

    def cancel(self) -> None:
        if self.callback is None:
            return
        if self.authorizer is None:
            LOGGER.debug("Unable to cancel user consent; authorization service unavailable")
            return
        LOGGER.debug("Canceling user consent request")
        try:
            self.authorizer.cancel_authorization(self.callback)
        except Exception as exc:  # noqa: BLE001
            LOGGER.error("Consent cancellation failed: %s", exc)
