"""Single-flight request scheduler with priorities and exclusive mode.

This module serializes every call to a quota-constrained provider through
one worker task. The worker waits until the RateLimiter permits the next
dispatch, pops the highest-priority pending request, runs it, records the
outcome, and repeats while work remains.

Features:
- Priority queue (USER_CRITICAL < CRITICAL < USER < SYSTEM), FIFO within a level
- At most one unit of work in flight at any instant
- Exponential backoff on provider rate-limit errors
- Exclusive mode: only critical requests are admitted and kept
- User-critical requests bypass the queue and pause all other dispatch
- Status registry for asynchronous polling
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Generator
from types import TracebackType
from typing import TYPE_CHECKING, Any

from quota_queue.config import SchedulerConfig, get_settings
from quota_queue.exceptions import AdmissionRejected, AdmissionRejectReason, WorkCancelled
from quota_queue.logging import bind_request

from .limiter import RateLimiter
from .queue import PriorityQueue, RequestPriority, RequestState, UnitOfWork, WorkItem
from .registry import RequestStatusRegistry
from .schemas import BackoffState, PauseFlags, QueueSnapshot, RequestStatus

if TYPE_CHECKING:
    from loguru import Logger

logger = logging.getLogger(__name__)


class RequestHandle:
    """Awaitable handle for an admitted request.

    Awaiting the handle returns the unit of work's result or raises its
    error. Cancelling the awaiting task does not cancel the request.
    """

    def __init__(self, item: WorkItem) -> None:
        self._item = item

    @property
    def request_id(self) -> str:
        return self._item.id

    @property
    def state(self) -> RequestState:
        return self._item.state

    @property
    def description(self) -> str:
        return self._item.description

    @property
    def future(self) -> asyncio.Future[Any]:
        assert self._item.future is not None
        return self._item.future

    def done(self) -> bool:
        return self.future.done()

    def result(self) -> Any:
        """Result of a finished request (raises its error if it failed)."""
        return self.future.result()

    def __await__(self) -> Generator[Any, None, Any]:
        return asyncio.shield(self.future).__await__()

    def __repr__(self) -> str:
        return f"RequestHandle({self._item.id[:8]}, {self._item.state.value})"


class RequestScheduler:
    """Rate-limited, priority-aware scheduler for a single provider quota.

    One instance is owned by the application's composition root and passed
    to every collaborator. All methods must be called from its event loop.

    Usage:
        scheduler = RequestScheduler()
        await scheduler.start()

        # Submit and wait for result
        stats = await scheduler.submit(
            fetch_stats, RequestPriority.SYSTEM, "dashboard stats"
        )

        # Or keep a handle and poll
        handle = scheduler.enqueue(fetch_tx, RequestPriority.USER, "tx abc123")
        scheduler.get_status(handle.request_id)

        await scheduler.shutdown()
    """

    def __init__(
        self,
        limiter: RateLimiter | None = None,
        registry: RequestStatusRegistry | None = None,
        config: SchedulerConfig | None = None,
    ) -> None:
        """Initialize the request scheduler.

        Args:
            limiter: RateLimiter holding dispatch/backoff state (built from config if omitted)
            registry: Status registry for polling (built from settings if omitted)
            config: Optional scheduler configuration (uses limiter's or settings if omitted)
        """
        if config is None:
            config = limiter.config if limiter is not None else get_settings().scheduler
        self._config = config
        self._limiter = limiter or RateLimiter(config)
        self._registry = registry or RequestStatusRegistry()

        self._queue = PriorityQueue()

        # Single-flight slot shared by the worker and user-critical requests
        self._dispatch_lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._in_flight: WorkItem | None = None

        # Lifecycle
        self._running = False
        self._closed = False
        self._worker_task: asyncio.Task[None] | None = None

        # Mode flags
        self._exclusive_mode = False
        self._waiting_for_exclusive = False
        self._expected_correlation_id: str | None = None
        self._exclusive_released = asyncio.Event()
        self._user_critical_active = 0
        self._global_pause_reason: str | None = None
        self._scheduler_paused = False

        # Statistics
        self._total_submitted = 0
        self._total_rejected = 0

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------
    async def start(self) -> None:
        """Start the dispatch worker. Idempotent."""
        if self._running:
            return

        self._running = True
        self._closed = False
        self._worker_task = asyncio.create_task(self._worker_loop(), name="quota-queue-worker")
        logger.info(
            "Request scheduler started (interval=%dms, backoff=%d-%dms)",
            self._config.interval_ms,
            self._config.base_backoff_ms,
            self._config.max_backoff_ms,
        )

    async def shutdown(self, wait: bool = True, timeout: float | None = None) -> None:
        """Stop the scheduler.

        New admissions are refused immediately. A request already in flight
        always runs to completion, even with ``wait=False``. Requests still
        queued when the worker stops are rejected with AdmissionRejected(SHUTDOWN).

        The queue is not drained while dispatch is paused, since it could
        not make progress.

        Args:
            wait: If True, let queued requests dispatch first
            timeout: Maximum seconds to wait for the drain, and again for
                the in-flight request (defaults to config)
        """
        if timeout is None:
            timeout = self._config.shutdown_timeout_seconds
        self._closed = True
        loop = asyncio.get_running_loop()

        if wait and self._running and self._queue:
            if self.is_dispatch_blocked:
                logger.info("Dispatch is paused, not draining %d pending requests", len(self._queue))
            else:
                logger.info("Waiting for %d pending requests...", len(self._queue))
                deadline = loop.time() + timeout
                while self._queue and not self.is_dispatch_blocked and loop.time() < deadline:
                    await asyncio.sleep(0.01)

        # The worker exits after its current dispatch, if any
        self._running = False
        self._wake()

        if self._worker_task:
            try:
                await asyncio.wait_for(asyncio.shield(self._worker_task), timeout)
            except TimeoutError:
                logger.warning(
                    "In-flight request did not finish within %.1fs, cancelling worker", timeout
                )
                self._worker_task.cancel()
                try:
                    await self._worker_task
                except asyncio.CancelledError:
                    pass
            self._worker_task = None

        leftover = self.clear_queue(AdmissionRejectReason.SHUTDOWN)
        logger.info(
            "Request scheduler stopped (dispatched=%d, failed=%d, dropped=%d)",
            self._limiter.total_dispatched,
            self._limiter.total_failed,
            leftover,
        )

    async def __aenter__(self) -> RequestScheduler:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.shutdown(wait=exc_type is None)

    @property
    def is_running(self) -> bool:
        """Whether the dispatch worker is running."""
        return self._running

    # -------------------------------------------------------------------------
    # Admission
    # -------------------------------------------------------------------------
    def enqueue(
        self,
        work: UnitOfWork,
        priority: RequestPriority = RequestPriority.SYSTEM,
        description: str = "API request",
    ) -> RequestHandle:
        """Admit a request into the queue without waiting for it.

        Args:
            work: No-argument async callable performing the provider call
            priority: USER or SYSTEM (CRITICAL is also accepted)
            description: Human-readable label for logs and status

        Returns:
            Handle that resolves when the request completes

        Raises:
            AdmissionRejected: If exclusive mode is active and the priority is
                not critical, or the scheduler has been shut down
            ValueError: If priority is USER_CRITICAL
        """
        priority = RequestPriority(priority)
        if priority is RequestPriority.USER_CRITICAL:
            raise ValueError("USER_CRITICAL requests bypass the queue; use submit_user_critical()")

        if self._exclusive_mode and not priority.is_critical:
            self._total_rejected += 1
            logger.debug("Rejecting request '%s' due to exclusive mode", description)
            raise AdmissionRejected(
                "API request rejected: scheduler is in exclusive mode",
                AdmissionRejectReason.EXCLUSIVE_MODE,
            )

        item = self._admit(work, priority, description, is_critical=priority.is_critical)
        return RequestHandle(item)

    async def submit(
        self,
        work: UnitOfWork,
        priority: RequestPriority = RequestPriority.SYSTEM,
        description: str = "API request",
        timeout: float | None = None,
    ) -> Any:
        """Admit a request and wait for its result.

        Args:
            work: No-argument async callable performing the provider call
            priority: USER or SYSTEM (CRITICAL is also accepted)
            description: Human-readable label for logs and status
            timeout: Optional seconds to wait; the request itself keeps running

        Returns:
            Result of the unit of work

        Raises:
            AdmissionRejected: If the request is refused or canceled before dispatch
            TimeoutError: If timeout exceeded
            Exception: Any exception from the unit of work
        """
        handle = self.enqueue(work, priority, description)
        if timeout is not None:
            return await asyncio.wait_for(asyncio.shield(handle.future), timeout)
        return await handle

    def submit_critical(
        self,
        work: UnitOfWork,
        description: str,
        correlation_id: str | None = None,
    ) -> RequestHandle:
        """Admit a critical request; always accepted, even in exclusive mode.

        Args:
            work: No-argument async callable performing the provider call
            description: Human-readable label for logs and status
            correlation_id: Token matched against the exclusive-mode expectation

        Returns:
            Handle that resolves when the request completes
        """
        if (
            correlation_id is not None
            and self._waiting_for_exclusive
            and self._expected_correlation_id is None
        ):
            self._expected_correlation_id = correlation_id

        logger.info("Adding CRITICAL request to queue: %s", description)
        item = self._admit(
            work,
            RequestPriority.CRITICAL,
            description,
            is_critical=True,
            correlation_id=correlation_id,
        )
        return RequestHandle(item)

    async def submit_user_critical(self, work: UnitOfWork, description: str) -> Any:
        """Run a request immediately, pausing all queued dispatch until it ends.

        The request skips queue ordering but still waits for any in-flight
        request and for the limiter's interval, and it updates the same
        dispatch/backoff state as the worker.

        Args:
            work: No-argument async callable performing the provider call
            description: Human-readable label for logs and status

        Returns:
            Result of the unit of work

        Raises:
            AdmissionRejected: If the scheduler has been shut down
            Exception: Any exception from the unit of work
        """
        self._check_open(description)
        item = self._new_item(
            work, RequestPriority.USER_CRITICAL, description, is_critical=True, with_future=False
        )
        self._registry.track(item)
        self._total_submitted += 1

        self._set_global_pause(description)
        try:
            async with self._dispatch_lock:
                delay = self._limiter.time_until_next()
                if delay > 0:
                    logger.debug(
                        "Throttling USER CRITICAL request '%s', waiting %.0fms", description, delay * 1000
                    )
                    await asyncio.sleep(delay)
                await self._execute(item)
        except asyncio.CancelledError as e:
            if not item.state.is_terminal:
                item.mark_failed(e, self._limiter.now())
                self._registry.mark_finished(item)
            raise
        finally:
            self._clear_global_pause()

        if item.state is RequestState.FAILED:
            assert item.error is not None
            raise item.error
        return item.result

    def _admit(
        self,
        work: UnitOfWork,
        priority: RequestPriority,
        description: str,
        *,
        is_critical: bool,
        correlation_id: str | None = None,
    ) -> WorkItem:
        self._check_open(description)
        item = self._new_item(
            work, priority, description, is_critical=is_critical, correlation_id=correlation_id
        )
        self._queue.push(item)
        self._registry.track(item)
        self._total_submitted += 1

        logger.debug(
            "Enqueued request %s '%s' (priority=%s, queue_size=%d)",
            item.id[:8],
            description,
            priority.name,
            len(self._queue),
        )
        self._wake()
        return item

    def _new_item(
        self,
        work: UnitOfWork,
        priority: RequestPriority,
        description: str,
        *,
        is_critical: bool,
        correlation_id: str | None = None,
        with_future: bool = True,
    ) -> WorkItem:
        future: asyncio.Future[Any] | None = None
        if with_future:
            future = asyncio.get_running_loop().create_future()
            # Fire-and-forget handles must not warn about unretrieved errors
            future.add_done_callback(_consume_exception)

        return WorkItem(
            priority=priority,
            sequence=self._queue.next_sequence(),
            id=str(uuid.uuid4()),
            work=work,
            description=description,
            enqueued_at=self._limiter.now(),
            is_critical=is_critical,
            correlation_id=correlation_id,
            future=future,
        )

    def _check_open(self, description: str) -> None:
        if self._closed:
            self._total_rejected += 1
            logger.debug("Rejecting request '%s': scheduler is shut down", description)
            raise AdmissionRejected(
                "API request rejected: scheduler is shut down",
                AdmissionRejectReason.SHUTDOWN,
            )

    def _reject(self, item: WorkItem, error: AdmissionRejected) -> None:
        item.mark_failed(error, self._limiter.now())
        self._registry.mark_finished(item)
        self._total_rejected += 1

    def clear_queue(
        self,
        reason: AdmissionRejectReason = AdmissionRejectReason.CLEARED,
    ) -> int:
        """Reject every pending request.

        Returns:
            Number of requests rejected
        """
        items = self._queue.drain()
        for item in items:
            self._reject(item, AdmissionRejected(f"Request canceled: queue {reason.value}", reason))
        if items:
            logger.info("Cleared %d pending requests (%s)", len(items), reason.value)
        return len(items)

    # -------------------------------------------------------------------------
    # Exclusive Mode
    # -------------------------------------------------------------------------
    def enter_exclusive_mode(
        self,
        preserve_user_priority_items: bool = False,
        expected_correlation_id: str | None = None,
    ) -> int:
        """Admit and keep only critical requests until exit_exclusive_mode().

        Every queued request that is neither critical nor (when preserving)
        USER priority is rejected with AdmissionRejected(EXCLUSIVE_MODE).

        Args:
            preserve_user_priority_items: Keep queued USER requests
            expected_correlation_id: Correlation token of the critical request
                this exclusive section is waiting for

        Returns:
            Number of queued requests canceled
        """
        self._exclusive_mode = True
        self._waiting_for_exclusive = True
        self._expected_correlation_id = expected_correlation_id
        self._exclusive_released.clear()
        logger.info(
            "Entering exclusive mode%s",
            " (preserving user requests)" if preserve_user_priority_items else "",
        )

        def should_cancel(item: WorkItem) -> bool:
            if item.is_critical:
                return False
            return not (preserve_user_priority_items and item.priority is RequestPriority.USER)

        removed = self._queue.remove_where(should_cancel)
        for item in removed:
            self._reject(
                item,
                AdmissionRejected(
                    "Request canceled: scheduler entered exclusive mode",
                    AdmissionRejectReason.EXCLUSIVE_MODE,
                ),
            )

        logger.info("Removed %d non-critical requests from queue", len(removed))
        self._wake()
        return len(removed)

    def exit_exclusive_mode(self) -> None:
        """Return to normal admission and resume dispatch of remaining requests."""
        self._exclusive_mode = False
        self._waiting_for_exclusive = False
        self._expected_correlation_id = None
        self._exclusive_released.set()
        logger.info("Exiting exclusive mode")
        self._wake()

    async def wait_for_exclusive_request(self, timeout: float | None = None) -> bool:
        """Wait until the correlated critical request has finished.

        Returns:
            True if released (or nothing is awaited), False on timeout
        """
        if not self._waiting_for_exclusive:
            return True
        try:
            await asyncio.wait_for(self._exclusive_released.wait(), timeout)
        except TimeoutError:
            return False
        return True

    def _check_exclusive_correlation(self, item: WorkItem) -> None:
        if not (self._waiting_for_exclusive and item.is_critical):
            return
        if item.correlation_id is None or item.correlation_id != self._expected_correlation_id:
            return

        self._waiting_for_exclusive = False
        self._exclusive_released.set()
        # Exclusive mode itself stays on until exit_exclusive_mode()
        logger.info(
            "Exclusive request %s finished (%s)", item.correlation_id, item.state.value
        )

    # -------------------------------------------------------------------------
    # Pause Flags
    # -------------------------------------------------------------------------
    def pause_scheduler(self) -> None:
        """Administratively pause dispatch of queued work and periodic jobs."""
        self._scheduler_paused = True
        logger.info("Scheduler paused")

    def resume_scheduler(self) -> None:
        """Lift the administrative pause."""
        self._scheduler_paused = False
        logger.info("Scheduler resumed")
        self._wake()

    def _set_global_pause(self, reason: str) -> None:
        self._user_critical_active += 1
        self._global_pause_reason = reason
        logger.info("GLOBAL PAUSE activated for: %s", reason)

    def _clear_global_pause(self) -> None:
        self._user_critical_active -= 1
        if self._user_critical_active == 0:
            logger.info("GLOBAL PAUSE deactivated (was: %s)", self._global_pause_reason)
            self._global_pause_reason = None
            self._wake()

    @property
    def is_globally_paused(self) -> bool:
        """True while a user-critical request is running or waiting to run."""
        return self._user_critical_active > 0

    @property
    def is_scheduler_paused(self) -> bool:
        return self._scheduler_paused

    @property
    def is_exclusive_mode(self) -> bool:
        return self._exclusive_mode

    @property
    def waiting_for_exclusive_request(self) -> bool:
        return self._waiting_for_exclusive

    @property
    def is_dispatch_blocked(self) -> bool:
        """True if queued work may not dispatch right now."""
        return self.is_globally_paused or self._scheduler_paused

    # -------------------------------------------------------------------------
    # Worker Loop
    # -------------------------------------------------------------------------
    def _wake(self) -> None:
        self._wakeup.set()

    async def _sleep_until_woken(self, timeout: float | None = None) -> None:
        self._wakeup.clear()
        if timeout is None:
            await self._wakeup.wait()
            return
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout)
        except TimeoutError:
            pass

    async def _worker_loop(self) -> None:
        """Main worker loop that processes the queue."""
        while self._running:
            try:
                if not self._queue or self.is_dispatch_blocked:
                    await self._sleep_until_woken()
                    continue

                delay = self._limiter.time_until_next()
                if delay > 0:
                    logger.debug(
                        "Throttling dispatch, waiting %.0fms (backoff: %dms)",
                        delay * 1000,
                        self._limiter.current_backoff_ms,
                    )
                    # Re-evaluated on wake-up: pauses or new items may change the plan
                    await self._sleep_until_woken(delay)
                    continue

                async with self._dispatch_lock:
                    # A user-critical request may have run while we waited for the slot
                    if (
                        not self._running
                        or not self._queue
                        or self.is_dispatch_blocked
                        or not self._limiter.can_dispatch()
                    ):
                        continue
                    item = self._queue.pop()
                    await self._execute(item)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Unexpected error in scheduler worker loop")

    async def _execute(self, item: WorkItem) -> None:
        """Dispatch one request; the caller must hold the dispatch lock."""
        request_logger = bind_request(item.id, item.description, item.priority.name)
        now = self._limiter.now()
        work = item.mark_in_flight(now)
        self._in_flight = item
        self._limiter.record_dispatch()

        request_logger.debug(
            "Dispatching {priority} request (waited {waited:.2f}s)",
            priority=item.priority.name,
            waited=now - item.enqueued_at,
        )

        try:
            result = await work()
        except asyncio.CancelledError as e:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                # The dispatching task itself is being cancelled
                item.mark_failed(e, self._limiter.now())
                raise
            error = WorkCancelled(item.description)
            error.__cause__ = e
            self._record_failure(item, error, request_logger)
        except Exception as e:
            self._record_failure(item, e, request_logger)
        else:
            self._limiter.record_success()
            item.mark_done(result, self._limiter.now())
            request_logger.debug("Request completed successfully")
        finally:
            self._in_flight = None
            if item.state.is_terminal:
                self._registry.mark_finished(item)
                self._check_exclusive_correlation(item)

    def _record_failure(self, item: WorkItem, error: Exception, request_logger: Logger) -> None:
        rate_limited = self._limiter.record_failure(error)
        item.mark_failed(error, self._limiter.now())
        request_logger.warning(
            "Request failed{suffix}: {error}",
            suffix=" (rate limited)" if rate_limited else "",
            error=error,
        )

    # -------------------------------------------------------------------------
    # Query Methods
    # -------------------------------------------------------------------------
    @property
    def limiter(self) -> RateLimiter:
        return self._limiter

    @property
    def registry(self) -> RequestStatusRegistry:
        return self._registry

    @property
    def queue_size(self) -> int:
        """Number of pending requests in queue."""
        return len(self._queue)

    @property
    def in_flight(self) -> bool:
        """True while a unit of work is executing."""
        return self._in_flight is not None

    @property
    def is_idle(self) -> bool:
        """True if no pending or in-flight requests."""
        return not self._queue and self._in_flight is None

    def get_status(self, request_id: str) -> RequestStatus:
        """Lifecycle status of a request.

        Raises:
            RequestNotFound: If the id is unknown or already evicted
        """
        item = self._registry.get(request_id)
        return RequestStatus.from_item(item, self._estimated_wait_for(item))

    def get_estimated_wait(self, request_id: str) -> int:
        """Estimated milliseconds until a request dispatches (0 unless pending).

        Raises:
            RequestNotFound: If the id is unknown or already evicted
        """
        return self._estimated_wait_for(self._registry.get(request_id))

    def estimate_wait_for_new_request(
        self,
        priority: RequestPriority = RequestPriority.USER,
    ) -> int:
        """Estimated milliseconds a request admitted now at ``priority`` would wait."""
        return self._limiter.estimate_wait_ms(self._queue.position_for(priority))

    def time_until_next_dispatch_ms(self) -> int:
        """Milliseconds until the limiter permits the next dispatch."""
        return self._limiter.time_until_next_ms()

    def _estimated_wait_for(self, item: WorkItem) -> int:
        if item.state is not RequestState.PENDING:
            return 0
        return self._limiter.estimate_wait_ms(self._queue.position(item))

    def get_queue_snapshot(self) -> QueueSnapshot:
        """Point-in-time view for status/metrics endpoints."""
        now = self._limiter.now()
        oldest = self._queue.oldest_enqueued_at()
        last_dispatch = self._limiter.last_dispatch_at

        return QueueSnapshot(
            length=len(self._queue),
            per_priority_counts={
                priority.name: count for priority, count in self._queue.counts_by_priority().items()
            },
            in_flight=self._in_flight is not None,
            oldest_pending_age_ms=int((now - oldest) * 1000) if oldest is not None else None,
            last_dispatch_age_ms=(
                int((now - last_dispatch) * 1000) if last_dispatch is not None else None
            ),
            total_submitted=self._total_submitted,
            total_dispatched=self._limiter.total_dispatched,
            total_failed=self._limiter.total_failed,
            total_rejected=self._total_rejected,
            is_running=self._running,
            backoff=BackoffState(
                consecutive_failures=self._limiter.consecutive_failures,
                current_backoff_ms=self._limiter.current_backoff_ms,
                effective_interval_ms=self._limiter.effective_interval_ms,
                time_until_next_ms=self._limiter.time_until_next_ms(),
            ),
            pauses=PauseFlags(
                global_pause=self.is_globally_paused,
                global_pause_reason=self._global_pause_reason,
                scheduler_paused=self._scheduler_paused,
                exclusive_mode=self._exclusive_mode,
                waiting_for_exclusive_request=self._waiting_for_exclusive,
            ),
        )


def _consume_exception(future: asyncio.Future[Any]) -> None:
    if not future.cancelled():
        future.exception()
