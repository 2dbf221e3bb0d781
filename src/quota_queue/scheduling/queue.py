"""Priority queue of pending work items.

Items are ordered by (priority, sequence): lower priority values first,
then strict FIFO by admission order within a level.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass, field
from enum import IntEnum, StrEnum
from typing import Any

UnitOfWork = Callable[[], Awaitable[Any]]


class RequestPriority(IntEnum):
    """Priority levels for request scheduling.

    Lower values = higher priority (executed first).
    """

    USER_CRITICAL = -20  # Bypasses the queue, pauses everything else
    CRITICAL = -10  # Allowed through exclusive mode
    USER = 0  # User-initiated requests
    SYSTEM = 10  # Background/periodic jobs

    @property
    def is_critical(self) -> bool:
        """True for levels that may run during exclusive mode."""
        return self <= RequestPriority.CRITICAL


class RequestState(StrEnum):
    """Lifecycle state of a request."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """True once the request has finished."""
        return self in (RequestState.DONE, RequestState.FAILED)


@dataclass(order=True)
class WorkItem:
    """A request waiting to be, or being, executed.

    Ordering is by (priority, sequence) for heapq.
    """

    # Fields used for ordering (must come first for dataclass ordering)
    priority: RequestPriority = field(compare=True)
    sequence: int = field(compare=True)

    # Non-ordering fields
    id: str = field(compare=False)
    work: UnitOfWork | None = field(compare=False, repr=False)
    description: str = field(compare=False)
    enqueued_at: float = field(compare=False)
    is_critical: bool = field(default=False, compare=False)
    correlation_id: str | None = field(default=None, compare=False)
    state: RequestState = field(default=RequestState.PENDING, compare=False)
    started_at: float | None = field(default=None, compare=False)
    finished_at: float | None = field(default=None, compare=False)
    result: Any = field(default=None, compare=False, repr=False)
    error: BaseException | None = field(default=None, compare=False)
    future: asyncio.Future[Any] | None = field(default=None, compare=False, repr=False)

    def mark_in_flight(self, now: float) -> UnitOfWork:
        """Transition to IN_FLIGHT and hand the unit of work to the caller.

        The item releases its reference so the work is owned by the dispatcher.
        """
        if self.state is not RequestState.PENDING or self.work is None:
            raise RuntimeError(f"Request {self.id[:8]} is not pending ({self.state})")
        work = self.work
        self.work = None
        self.state = RequestState.IN_FLIGHT
        self.started_at = now
        return work

    def mark_done(self, result: Any, now: float) -> None:
        """Record a successful outcome and resolve the caller's future."""
        self._finish(RequestState.DONE, now)
        self.result = result
        if self.future is not None and not self.future.done():
            self.future.set_result(result)

    def mark_failed(self, error: BaseException, now: float) -> None:
        """Record a failure and reject the caller's future."""
        self._finish(RequestState.FAILED, now)
        self.work = None
        self.error = error
        if self.future is None or self.future.done():
            return
        if isinstance(error, asyncio.CancelledError):
            self.future.cancel()
        else:
            self.future.set_exception(error)

    def _finish(self, state: RequestState, now: float) -> None:
        if self.state.is_terminal:
            raise RuntimeError(f"Request {self.id[:8]} already finished ({self.state})")
        self.state = state
        self.finished_at = now


class PriorityQueue:
    """Heap-backed queue of pending WorkItems.

    Not thread-safe: all access happens on the scheduler's event loop.
    """

    def __init__(self) -> None:
        self._heap: list[WorkItem] = []
        self._sequence = itertools.count()

    def __len__(self) -> int:
        return len(self._heap)

    def __bool__(self) -> bool:
        return bool(self._heap)

    def __iter__(self) -> Iterator[WorkItem]:
        """Iterate pending items in dispatch order."""
        return iter(sorted(self._heap))

    def next_sequence(self) -> int:
        """Reserve the next admission sequence number."""
        return next(self._sequence)

    def push(self, item: WorkItem) -> None:
        heapq.heappush(self._heap, item)

    def pop(self) -> WorkItem:
        """Remove and return the highest-priority item.

        Raises:
            IndexError: If the queue is empty
        """
        return heapq.heappop(self._heap)

    def peek(self) -> WorkItem | None:
        return self._heap[0] if self._heap else None

    def remove_where(self, predicate: Callable[[WorkItem], bool]) -> list[WorkItem]:
        """Remove every item matching ``predicate``.

        Returns:
            Removed items in dispatch order
        """
        removed = [item for item in self._heap if predicate(item)]
        if removed:
            self._heap = [item for item in self._heap if not predicate(item)]
            heapq.heapify(self._heap)
        return sorted(removed)

    def drain(self) -> list[WorkItem]:
        """Remove and return all items in dispatch order."""
        items = sorted(self._heap)
        self._heap = []
        return items

    def position(self, item: WorkItem) -> int:
        """Number of queued items that dispatch before ``item``."""
        return sum(1 for other in self._heap if other < item)

    def position_for(self, priority: RequestPriority) -> int:
        """Number of queued items that would dispatch before a new ``priority`` item."""
        return sum(1 for other in self._heap if other.priority <= priority)

    def counts_by_priority(self) -> dict[RequestPriority, int]:
        counts = {priority: 0 for priority in RequestPriority}
        for item in self._heap:
            counts[item.priority] += 1
        return counts

    def oldest_enqueued_at(self) -> float | None:
        """Admission time of the longest-waiting item (any priority)."""
        if not self._heap:
            return None
        return min(item.enqueued_at for item in self._heap)
