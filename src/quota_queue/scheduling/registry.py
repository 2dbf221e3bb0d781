"""Request status registry with bounded retention.

Every admitted request is tracked by id so callers can poll its state.
Finished requests are kept for a retention window and capped by count;
pending and in-flight requests are never evicted.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict

from quota_queue.config import RegistryConfig, get_settings
from quota_queue.exceptions import RequestNotFound

from .limiter import Clock
from .queue import WorkItem

logger = logging.getLogger(__name__)


class RequestStatusRegistry:
    """Maps request ids to their WorkItem for asynchronous status lookups."""

    def __init__(
        self,
        config: RegistryConfig | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        """Initialize the registry.

        Args:
            config: Optional retention configuration (uses settings if not provided)
            clock: Monotonic time source in seconds
        """
        self._config = config or get_settings().registry
        self._clock = clock

        self._records: dict[str, WorkItem] = {}
        # Finished ids in completion order -> finished_at
        self._finished: OrderedDict[str, float] = OrderedDict()
        self._total_evicted = 0

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._records

    @property
    def total_evicted(self) -> int:
        return self._total_evicted

    def track(self, item: WorkItem) -> None:
        """Start tracking a newly admitted request."""
        self._records[item.id] = item
        if item.state.is_terminal:
            self.mark_finished(item)

    def mark_finished(self, item: WorkItem) -> None:
        """Move a request into the retention window once it is terminal."""
        if item.id not in self._records:
            self._records[item.id] = item
        finished_at = item.finished_at if item.finished_at is not None else self._clock()
        self._finished[item.id] = finished_at
        self._finished.move_to_end(item.id)
        self.prune()

    def get(self, request_id: str) -> WorkItem:
        """Look up a request by id.

        Raises:
            RequestNotFound: If the id is unknown or already evicted
        """
        self.prune()
        try:
            return self._records[request_id]
        except KeyError:
            raise RequestNotFound(request_id) from None

    def prune(self) -> int:
        """Evict finished requests past retention or over the record cap.

        Returns:
            Number of records evicted
        """
        cutoff = self._clock() - self._config.retention_seconds
        evicted = 0

        while self._finished:
            request_id, finished_at = next(iter(self._finished.items()))
            over_cap = len(self._finished) > self._config.max_records
            if not over_cap and finished_at > cutoff:
                break
            self._finished.popitem(last=False)
            self._records.pop(request_id, None)
            evicted += 1

        if evicted:
            self._total_evicted += evicted
            logger.debug("Evicted %d finished request records", evicted)
        return evicted
