"""Request scheduling for a quota-constrained provider.

Components:
- RateLimiter: Fixed-interval pacing with exponential backoff
- PriorityQueue: Pending requests ordered by priority, then arrival
- RequestStatusRegistry: Bounded status lookups for polling callers
- RequestScheduler: Single-flight dispatch loop and admission API
"""

from .limiter import RateLimiter
from .queue import PriorityQueue, RequestPriority, RequestState, UnitOfWork, WorkItem
from .registry import RequestStatusRegistry
from .scheduler import RequestHandle, RequestScheduler
from .schemas import BackoffState, PauseFlags, QueueSnapshot, RequestStatus

__all__ = [
    # Pacing
    "RateLimiter",
    # Queue
    "PriorityQueue",
    "RequestPriority",
    "RequestState",
    "UnitOfWork",
    "WorkItem",
    # Status
    "RequestStatusRegistry",
    "RequestStatus",
    "QueueSnapshot",
    "BackoffState",
    "PauseFlags",
    # Scheduling
    "RequestHandle",
    "RequestScheduler",
]
