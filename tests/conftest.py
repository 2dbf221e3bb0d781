"""Pytest configuration and shared fixtures.

Usage Guide:
- For limiter/registry state tests: use `fake_clock` with explicit configs
- For dispatch tests: use `scheduler` (started, millisecond interval) and
  `RecordingProvider` from tests.fixtures.providers
"""

from collections.abc import AsyncGenerator

import pytest

from quota_queue.config import RegistryConfig, SchedulerConfig
from quota_queue.scheduling import RateLimiter, RequestScheduler, RequestStatusRegistry
from tests.fixtures.providers import FakeClock, RecordingProvider
from tests.fixtures.timing import BASE_BACKOFF_MS, INTERVAL_MS, MAX_BACKOFF_MS


@pytest.fixture
def fake_clock() -> FakeClock:
    """Manually advanced clock for deterministic state tests."""
    return FakeClock()


@pytest.fixture
def scheduler_config() -> SchedulerConfig:
    """Scheduler config with millisecond timings."""
    return SchedulerConfig(
        interval_ms=INTERVAL_MS,
        base_backoff_ms=BASE_BACKOFF_MS,
        max_backoff_ms=MAX_BACKOFF_MS,
        shutdown_timeout_seconds=5.0,
    )


@pytest.fixture
def registry_config() -> RegistryConfig:
    return RegistryConfig(retention_seconds=60.0, max_records=100)


@pytest.fixture
def make_scheduler(scheduler_config: SchedulerConfig, registry_config: RegistryConfig):
    """Factory for unstarted schedulers sharing the test configs."""

    def _make(config: SchedulerConfig | None = None) -> RequestScheduler:
        config = config or scheduler_config
        return RequestScheduler(RateLimiter(config), RequestStatusRegistry(registry_config))

    return _make


@pytest.fixture
async def scheduler(make_scheduler) -> AsyncGenerator[RequestScheduler, None]:
    """A started scheduler, shut down without draining after the test."""
    scheduler = make_scheduler()
    await scheduler.start()
    yield scheduler
    await scheduler.shutdown(wait=False)


@pytest.fixture
def provider() -> RecordingProvider:
    """Provider stub with a short call latency."""
    return RecordingProvider(latency=0.005)
