"""Periodic background jobs submitted through the scheduler.

Each job runs on a fixed interval. Before submitting, the runner skips the
run when dispatch is paused (global or administrative) or when nobody is
viewing the page the job refreshes. Job failures are logged and reported,
never raised out of the runner.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Protocol

from quota_queue.config import JobsConfig, get_settings
from quota_queue.logging import get_logger
from quota_queue.scheduling import RequestPriority, RequestScheduler, UnitOfWork

logger = get_logger(__name__)


class PageActivityOracle(Protocol):
    """Answers whether any user is currently viewing a page type."""

    def is_page_active(self, page_type: str) -> bool: ...


class JobOutcome(StrEnum):
    """Result of a single periodic run."""

    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED_PAUSED = "skipped_paused"
    SKIPPED_INACTIVE = "skipped_inactive"


@dataclass
class PeriodicJob:
    """A unit of work submitted at SYSTEM priority on a fixed schedule."""

    name: str
    interval_seconds: float
    work: UnitOfWork
    page_type: str | None = None
    """Skip the run unless this page type is active (None = always run)."""

    description: str | None = None
    initial_delay_seconds: float = 0.0

    runs: dict[JobOutcome, int] = field(
        default_factory=lambda: {outcome: 0 for outcome in JobOutcome}
    )

    @property
    def label(self) -> str:
        return self.description or f"periodic {self.name}"


class PeriodicJobRunner:
    """Drives PeriodicJobs against a RequestScheduler.

    Usage:
        runner = PeriodicJobRunner(scheduler, page_tracker)
        runner.add_job(PeriodicJob("stats", 60, fetch_stats, page_type="home"))
        await runner.start()
        ...
        await runner.shutdown()
    """

    def __init__(
        self,
        scheduler: RequestScheduler,
        oracle: PageActivityOracle | None = None,
    ) -> None:
        self._scheduler = scheduler
        self._oracle = oracle
        self._jobs: dict[str, PeriodicJob] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def jobs(self) -> list[PeriodicJob]:
        return list(self._jobs.values())

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks.values())

    def add_job(self, job: PeriodicJob) -> None:
        """Register a job; it starts with the runner (or now, if already running)."""
        if job.name in self._jobs:
            raise ValueError(f"Job '{job.name}' is already registered")
        self._jobs[job.name] = job
        if self._tasks:
            self._spawn(job)

    async def start(self) -> None:
        """Start one timer task per registered job. Idempotent."""
        if self._tasks:
            return
        for job in self._jobs.values():
            self._spawn(job)
        logger.info("Periodic job runner started ({} jobs)", len(self._jobs))

    async def shutdown(self) -> None:
        """Cancel job timers. A run already submitted finishes in the scheduler."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Periodic job runner stopped")

    def _spawn(self, job: PeriodicJob) -> None:
        self._tasks[job.name] = asyncio.create_task(self._run_forever(job), name=f"job-{job.name}")

    async def _run_forever(self, job: PeriodicJob) -> None:
        if job.initial_delay_seconds > 0:
            await asyncio.sleep(job.initial_delay_seconds)
        while True:
            try:
                await self.run_once(job)
            except Exception:
                # Keep the timer alive; the next run starts on schedule
                logger.exception("Unexpected error in periodic job {}", job.name)
            await asyncio.sleep(job.interval_seconds)

    async def run_once(self, job: PeriodicJob) -> JobOutcome:
        """Run a job once, honoring pause flags and page activity."""
        with logger.contextualize(job=job.name):
            outcome = await self._run(job)
        job.runs[outcome] += 1
        return outcome

    async def _run(self, job: PeriodicJob) -> JobOutcome:
        scheduler = self._scheduler
        if scheduler.is_globally_paused or scheduler.is_scheduler_paused:
            logger.info("Skipping scheduled {} due to system pause", job.name)
            return JobOutcome.SKIPPED_PAUSED

        if job.page_type is not None and self._oracle is not None:
            try:
                active = self._oracle.is_page_active(job.page_type)
            except Exception as e:
                logger.error("Page activity check for {} failed: {}", job.name, e)
                return JobOutcome.FAILED
            if not active:
                logger.info(
                    "Skipping {} as no users are viewing the {} page", job.name, job.page_type
                )
                return JobOutcome.SKIPPED_INACTIVE

        logger.debug("Queueing {}", job.label)
        try:
            await scheduler.submit(job.work, RequestPriority.SYSTEM, job.label)
        except Exception as e:
            logger.error("Scheduled {} failed: {}", job.name, e)
            return JobOutcome.FAILED
        return JobOutcome.COMPLETED


def build_dashboard_runner(
    scheduler: RequestScheduler,
    oracle: PageActivityOracle,
    fetch_stats: UnitOfWork,
    fetch_transactions: UnitOfWork,
    config: JobsConfig | None = None,
) -> PeriodicJobRunner:
    """Runner with the two dashboard refresh jobs.

    Stats refresh while the home page is viewed; transactions refresh while
    the transactions page is viewed.
    """
    config = config or get_settings().jobs
    runner = PeriodicJobRunner(scheduler, oracle)
    runner.add_job(
        PeriodicJob(
            name="stats",
            interval_seconds=config.stats_interval_seconds,
            work=fetch_stats,
            page_type="home",
            description="periodic stats fetch",
            initial_delay_seconds=config.startup_delay_seconds,
        )
    )
    runner.add_job(
        PeriodicJob(
            name="transactions",
            interval_seconds=config.transactions_interval_seconds,
            work=fetch_transactions,
            page_type="transactions",
            description="periodic transactions fetch",
            initial_delay_seconds=config.transactions_interval_seconds,
        )
    )
    return runner
