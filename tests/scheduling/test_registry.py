"""Tests for RequestStatusRegistry retention and lookups."""

import pytest

from quota_queue.config import RegistryConfig
from quota_queue.exceptions import RequestNotFound
from quota_queue.scheduling.queue import RequestPriority, RequestState, WorkItem
from quota_queue.scheduling.registry import RequestStatusRegistry
from tests.fixtures.providers import FakeClock


async def noop() -> None:
    return None


def make_item(request_id: str, sequence: int = 0) -> WorkItem:
    return WorkItem(
        priority=RequestPriority.USER,
        sequence=sequence,
        id=request_id,
        work=noop,
        description=request_id,
        enqueued_at=0.0,
    )


def finish(registry: RequestStatusRegistry, item: WorkItem, clock: FakeClock) -> None:
    """Run an item to DONE and notify the registry."""
    item.mark_in_flight(clock())
    item.mark_done(item.id, clock())
    registry.mark_finished(item)


@pytest.fixture
def registry(fake_clock: FakeClock) -> RequestStatusRegistry:
    return RequestStatusRegistry(
        RegistryConfig(retention_seconds=60.0, max_records=3),
        clock=fake_clock,
    )


class TestLookup:
    """Tests for tracking and lookup."""

    def test_tracked_item_is_found(self, registry: RequestStatusRegistry) -> None:
        item = make_item("req-1")
        registry.track(item)

        assert "req-1" in registry
        assert registry.get("req-1") is item
        assert len(registry) == 1

    def test_unknown_id_raises(self, registry: RequestStatusRegistry) -> None:
        with pytest.raises(RequestNotFound, match="Request missing not found") as exc_info:
            registry.get("missing")
        assert exc_info.value.request_id == "missing"

    def test_lookup_reflects_live_state(
        self, registry: RequestStatusRegistry, fake_clock: FakeClock
    ) -> None:
        """The registry holds the item itself, so state changes are visible."""
        item = make_item("req-1")
        registry.track(item)

        item.mark_in_flight(fake_clock())
        assert registry.get("req-1").state is RequestState.IN_FLIGHT


class TestRetention:
    """Tests for eviction of finished records."""

    def test_finished_record_kept_within_retention(
        self, registry: RequestStatusRegistry, fake_clock: FakeClock
    ) -> None:
        item = make_item("req-1")
        registry.track(item)
        finish(registry, item, fake_clock)

        fake_clock.advance(59)
        assert registry.get("req-1").state is RequestState.DONE

    def test_finished_record_evicted_after_retention(
        self, registry: RequestStatusRegistry, fake_clock: FakeClock
    ) -> None:
        item = make_item("req-1")
        registry.track(item)
        finish(registry, item, fake_clock)

        fake_clock.advance(61)

        with pytest.raises(RequestNotFound):
            registry.get("req-1")
        assert registry.total_evicted == 1

    def test_pending_never_evicted(
        self, registry: RequestStatusRegistry, fake_clock: FakeClock
    ) -> None:
        """Only finished records age out."""
        pending = make_item("pending")
        registry.track(pending)

        fake_clock.advance(3600)
        assert registry.prune() == 0
        assert registry.get("pending") is pending

    def test_cap_evicts_oldest_finished_first(
        self, registry: RequestStatusRegistry, fake_clock: FakeClock
    ) -> None:
        """Over max_records, the earliest finished records go first."""
        pending = make_item("pending", sequence=99)
        registry.track(pending)

        for i in range(5):
            item = make_item(f"req-{i}", sequence=i)
            registry.track(item)
            fake_clock.advance(1)
            finish(registry, item, fake_clock)

        assert "req-0" not in registry
        assert "req-1" not in registry
        assert all(f"req-{i}" in registry for i in (2, 3, 4))
        assert "pending" in registry
        assert registry.total_evicted == 2

    def test_already_terminal_item_enters_retention(
        self, registry: RequestStatusRegistry, fake_clock: FakeClock
    ) -> None:
        """Tracking a finished item starts its retention window immediately."""
        item = make_item("req-1")
        item.mark_failed(RuntimeError("rejected"), fake_clock())
        registry.track(item)

        fake_clock.advance(61)
        assert registry.prune() == 1
