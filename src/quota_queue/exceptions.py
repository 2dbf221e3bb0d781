"""Scheduler and provider exceptions."""

from collections.abc import Iterable
from enum import StrEnum

DEFAULT_RATE_LIMIT_STATUS_CODES = frozenset({429, 430})


class QuotaQueueError(Exception):
    """Base exception for quota-queue errors."""

    pass


class AdmissionRejectReason(StrEnum):
    """Why a request was refused or dropped before dispatch."""

    EXCLUSIVE_MODE = "exclusive_mode"
    CLEARED = "cleared"
    SHUTDOWN = "shutdown"


class AdmissionRejected(QuotaQueueError):
    """Raised when a request is refused at admission or canceled while queued."""

    def __init__(self, message: str, reason: AdmissionRejectReason) -> None:
        super().__init__(message)
        self.reason = reason


class ProviderError(QuotaQueueError):
    """Raised by a unit of work when the external provider call fails."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderRateLimited(ProviderError):
    """Raised when the provider rejects a call for exceeding its quota.

    Drives the scheduler's backoff escalation.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = 430,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


class WorkCancelled(QuotaQueueError):
    """Raised to the caller when a unit of work cancelled itself mid-dispatch.

    The original ``asyncio.CancelledError`` is kept as ``__cause__``.
    """

    def __init__(self, description: str) -> None:
        super().__init__(f"Unit of work '{description}' was cancelled during dispatch")
        self.description = description


class RequestNotFound(QuotaQueueError):
    """Raised when a status lookup targets an unknown or evicted request."""

    def __init__(self, request_id: str) -> None:
        super().__init__(f"Request {request_id} not found")
        self.request_id = request_id


def is_rate_limit_error(
    error: BaseException,
    status_codes: Iterable[int] = DEFAULT_RATE_LIMIT_STATUS_CODES,
) -> bool:
    """Classify an exception as a provider rate-limit rejection.

    Any exception exposing a ``status_code`` attribute in ``status_codes``
    counts, so HTTP client errors can be passed through unwrapped.
    """
    if isinstance(error, ProviderRateLimited):
        return True
    status_code = getattr(error, "status_code", None)
    return isinstance(status_code, int) and status_code in set(status_codes)
