"""Pydantic read models for scheduler status and observability.

These are point-in-time views handed to collaborators (status endpoints,
CLI output); they hold no references to live scheduler state.
"""

from typing import Any, Self

from pydantic import BaseModel, Field, computed_field

from .queue import RequestPriority, RequestState, WorkItem


class RequestStatus(BaseModel):
    """Lifecycle view of a single request for polling callers."""

    request_id: str = Field(description="Scheduler-assigned request id")
    state: RequestState = Field(description="pending, in_flight, done or failed")
    priority: RequestPriority = Field(description="Priority the request was admitted with")
    description: str = Field(description="Human-readable request label")
    correlation_id: str | None = Field(default=None, description="Critical correlation token")
    result: Any = Field(default=None, description="Result of the unit of work once done")
    error: str | None = Field(default=None, description="Error message once failed")
    error_type: str | None = Field(default=None, description="Exception class name once failed")
    estimated_wait_ms: int = Field(ge=0, description="Expected wait before dispatch (0 unless pending)")

    # Monotonic clock readings (seconds)
    enqueued_at: float
    started_at: float | None = None
    finished_at: float | None = None

    @classmethod
    def from_item(cls, item: WorkItem, estimated_wait_ms: int = 0) -> Self:
        """Build a status view from a tracked WorkItem."""
        return cls(
            request_id=item.id,
            state=item.state,
            priority=item.priority,
            description=item.description,
            correlation_id=item.correlation_id,
            result=item.result,
            error=str(item.error) if item.error is not None else None,
            error_type=type(item.error).__name__ if item.error is not None else None,
            estimated_wait_ms=estimated_wait_ms,
            enqueued_at=item.enqueued_at,
            started_at=item.started_at,
            finished_at=item.finished_at,
        )


class BackoffState(BaseModel):
    """Backoff state of the rate limiter."""

    consecutive_failures: int = Field(ge=0)
    current_backoff_ms: int = Field(ge=0)
    effective_interval_ms: int = Field(ge=0)
    time_until_next_ms: int = Field(ge=0)


class PauseFlags(BaseModel):
    """Pause and mode flags that gate dispatch and admission."""

    global_pause: bool = Field(description="A user-critical request is in flight")
    global_pause_reason: str | None = Field(default=None)
    scheduler_paused: bool = Field(description="Administrative pause")
    exclusive_mode: bool = Field(description="Only critical requests are admitted")
    waiting_for_exclusive_request: bool = Field(
        description="Exclusive mode is waiting on its correlated critical request"
    )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def dispatch_blocked(self) -> bool:
        """True if queued work cannot currently dispatch."""
        return self.global_pause or self.scheduler_paused


class QueueSnapshot(BaseModel):
    """Point-in-time view of the scheduler for status/metrics endpoints."""

    length: int = Field(ge=0, description="Pending requests in queue")
    per_priority_counts: dict[str, int] = Field(description="Pending requests by priority name")
    in_flight: bool = Field(description="A unit of work is executing")
    oldest_pending_age_ms: int | None = Field(
        default=None, description="Age of the longest-waiting request (None if empty)"
    )
    last_dispatch_age_ms: int | None = Field(
        default=None, description="Milliseconds since the last dispatch (None if never)"
    )
    total_submitted: int = Field(ge=0)
    total_dispatched: int = Field(ge=0, description="Units of work completed successfully")
    total_failed: int = Field(ge=0)
    total_rejected: int = Field(ge=0, description="Requests refused or canceled before dispatch")
    is_running: bool
    backoff: BackoffState
    pauses: PauseFlags

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_idle(self) -> bool:
        """True if nothing is queued or executing."""
        return self.length == 0 and not self.in_flight
