"""Fixed-interval rate limiting with exponential backoff.

The provider allows one call per fixed interval. After a rate-limit
rejection the limiter escalates a backoff delay:

    current_backoff = min(max_backoff, base_backoff * 2 ** consecutive_failures)

The effective interval between two dispatches is the larger of the fixed
interval and the current backoff. A success resets the backoff to base.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable

from quota_queue.config import SchedulerConfig, get_settings
from quota_queue.exceptions import is_rate_limit_error

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class RateLimiter:
    """Tracks dispatch timing and backoff state for a single provider quota.

    All times are in seconds on a monotonic clock; public ``*_ms`` accessors
    convert for reporting. The limiter holds state only: it never sleeps.

    Usage:
        limiter = RateLimiter(SchedulerConfig(interval_ms=60000))

        delay = limiter.time_until_next()
        if delay > 0:
            await asyncio.sleep(delay)

        limiter.record_dispatch()
        try:
            result = await call_provider()
        except Exception as e:
            limiter.record_failure(e)
            raise
        limiter.record_success()
    """

    def __init__(
        self,
        config: SchedulerConfig | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        """Initialize the rate limiter.

        Args:
            config: Optional scheduler configuration (uses settings if not provided)
            clock: Monotonic time source in seconds (injectable for tests)
        """
        self._config = config or get_settings().scheduler
        self._clock = clock
        self._rate_limit_codes = frozenset(self._config.rate_limit_status_codes)

        self._last_dispatch_at: float | None = None
        self._consecutive_failures = 0
        self._current_backoff_ms = self._config.base_backoff_ms

        self._total_dispatched = 0
        self._total_failed = 0

    @property
    def config(self) -> SchedulerConfig:
        """Get the scheduler configuration."""
        return self._config

    def now(self) -> float:
        """Current time on the limiter's clock."""
        return self._clock()

    # -------------------------------------------------------------------------
    # Delay Calculation
    # -------------------------------------------------------------------------
    @property
    def effective_interval_ms(self) -> int:
        """Larger of the fixed interval and the current backoff."""
        return max(self._config.interval_ms, self._current_backoff_ms)

    def time_until_next(self) -> float:
        """Seconds until the next dispatch is permitted (0 = now).

        Returns 0 if nothing has been dispatched yet.
        """
        if self._last_dispatch_at is None:
            return 0.0
        elapsed = self._clock() - self._last_dispatch_at
        return max(0.0, self.effective_interval_ms / 1000 - elapsed)

    def time_until_next_ms(self) -> int:
        """Milliseconds until the next dispatch is permitted, rounded up."""
        return math.ceil(self.time_until_next() * 1000)

    def can_dispatch(self) -> bool:
        """True if a dispatch may start now."""
        return self.time_until_next() <= 0

    # -------------------------------------------------------------------------
    # Dispatch Lifecycle
    # -------------------------------------------------------------------------
    def record_dispatch(self) -> None:
        """Record that a unit of work is starting against the provider."""
        self._last_dispatch_at = self._clock()

    def record_success(self) -> None:
        """Record a successful call and reset backoff to base."""
        if self._consecutive_failures:
            logger.info(
                "Provider call succeeded, resetting backoff (was %dms after %d failures)",
                self._current_backoff_ms,
                self._consecutive_failures,
            )
        self._consecutive_failures = 0
        self._current_backoff_ms = self._config.base_backoff_ms
        self._total_dispatched += 1

    def record_failure(self, error: BaseException) -> bool:
        """Record a failed call, escalating backoff on rate-limit errors.

        Args:
            error: Exception raised by the unit of work

        Returns:
            True if the error was classified as a rate-limit rejection
        """
        self._total_failed += 1
        if not is_rate_limit_error(error, self._rate_limit_codes):
            return False

        self._consecutive_failures += 1
        self._current_backoff_ms = min(
            self._config.max_backoff_ms,
            self._config.base_backoff_ms * 2**self._consecutive_failures,
        )
        logger.warning(
            "Provider rate limit hit, backoff now %dms (consecutive failures: %d)",
            self._current_backoff_ms,
            self._consecutive_failures,
        )
        return True

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------
    @property
    def last_dispatch_at(self) -> float | None:
        """Clock time of the last dispatch start (None = never)."""
        return self._last_dispatch_at

    @property
    def consecutive_failures(self) -> int:
        """Consecutive rate-limit failures since the last success."""
        return self._consecutive_failures

    @property
    def current_backoff_ms(self) -> int:
        """Current backoff delay in milliseconds."""
        return self._current_backoff_ms

    @property
    def total_dispatched(self) -> int:
        """Units of work that completed successfully."""
        return self._total_dispatched

    @property
    def total_failed(self) -> int:
        """Units of work that failed."""
        return self._total_failed

    def estimate_wait_ms(self, position: int) -> int:
        """Estimated wait for the item at ``position`` in dispatch order.

        Args:
            position: Number of queued items that will dispatch first

        Returns:
            Milliseconds until that item is expected to start
        """
        return self.time_until_next_ms() + max(0, position) * self.effective_interval_ms

