"""Scheduler simulation against a fake rate-limited provider."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Annotated, Any

import typer
from rich.table import Table

from quota_queue.cli.common import OutputFormat, OutputFormatOption, console, run_async_command
from quota_queue.config import RegistryConfig, SchedulerConfig
from quota_queue.exceptions import AdmissionRejected, ProviderRateLimited
from quota_queue.scheduling import (
    QueueSnapshot,
    RateLimiter,
    RequestPriority,
    RequestScheduler,
    RequestStatusRegistry,
)


@dataclass
class DispatchRecord:
    """One call observed by the fake provider."""

    label: str
    started_ms: int
    rate_limited: bool


@dataclass
class FakeProvider:
    """Provider stub that rejects every Nth call with a rate-limit error."""

    latency_ms: int = 10
    rate_limit_every: int = 0
    calls: list[DispatchRecord] = field(default_factory=list)
    _origin: float | None = None

    def work(self, label: str) -> Any:
        async def call() -> dict[str, Any]:
            loop = asyncio.get_running_loop()
            if self._origin is None:
                self._origin = loop.time()
            started_ms = int((loop.time() - self._origin) * 1000)
            number = len(self.calls) + 1
            rate_limited = self.rate_limit_every > 0 and number % self.rate_limit_every == 0
            self.calls.append(DispatchRecord(label, started_ms, rate_limited))

            await asyncio.sleep(self.latency_ms / 1000)
            if rate_limited:
                raise ProviderRateLimited(f"{label}: provider returned 430")
            return {"label": label, "call": number}

        return call


@dataclass
class SimulationResult:
    calls: list[DispatchRecord]
    outcomes: dict[str, str]
    snapshot: QueueSnapshot


async def run_simulation(
    *,
    interval_ms: int,
    system: int,
    user: int,
    critical: int,
    user_critical: bool,
    exclusive: bool,
    rate_limit_every: int,
    latency_ms: int,
) -> SimulationResult:
    """Submit a scripted mix of requests and wait for all of them to settle."""
    config = SchedulerConfig(
        interval_ms=interval_ms,
        base_backoff_ms=max(1, interval_ms // 4),
        max_backoff_ms=max(1, interval_ms * 8),
    )
    scheduler = RequestScheduler(
        RateLimiter(config),
        RequestStatusRegistry(RegistryConfig(retention_seconds=3600)),
    )
    provider = FakeProvider(latency_ms=latency_ms, rate_limit_every=rate_limit_every)
    handles: dict[str, Any] = {}

    async with scheduler:
        for i in range(system):
            label = f"system-{i + 1}"
            handles[label] = scheduler.enqueue(provider.work(label), RequestPriority.SYSTEM, label)
        for i in range(user):
            label = f"user-{i + 1}"
            handles[label] = scheduler.enqueue(provider.work(label), RequestPriority.USER, label)

        if exclusive:
            scheduler.enter_exclusive_mode(
                expected_correlation_id="critical-1" if critical else None
            )
        for i in range(critical):
            label = f"critical-{i + 1}"
            handles[label] = scheduler.submit_critical(
                provider.work(label), label, correlation_id=label
            )

        waiters: list[Any] = [asyncio.ensure_future(_settle(handle)) for handle in handles.values()]
        if user_critical:
            waiters.append(
                asyncio.ensure_future(
                    _settle(
                        scheduler.submit_user_critical(
                            provider.work("user-critical"), "user-critical"
                        )
                    )
                )
            )
        if exclusive:
            if critical:
                await scheduler.wait_for_exclusive_request()
            scheduler.exit_exclusive_mode()
        await asyncio.gather(*waiters)

        outcomes = {
            label: scheduler.get_status(handle.request_id).state.value
            for label, handle in handles.items()
        }
        snapshot = scheduler.get_queue_snapshot()

    return SimulationResult(calls=provider.calls, outcomes=outcomes, snapshot=snapshot)


async def _settle(awaitable: Any) -> None:
    try:
        await awaitable
    except (AdmissionRejected, ProviderRateLimited):
        pass


def simulate(
    interval_ms: Annotated[
        int, typer.Option("--interval-ms", "-i", min=1, help="Milliseconds between dispatches")
    ] = 200,
    system: Annotated[int, typer.Option("--system", min=0, help="SYSTEM requests to queue")] = 3,
    user: Annotated[int, typer.Option("--user", min=0, help="USER requests to queue")] = 2,
    critical: Annotated[int, typer.Option("--critical", min=0, help="CRITICAL requests")] = 0,
    user_critical: Annotated[
        bool, typer.Option("--user-critical", help="Also run one user-critical request")
    ] = False,
    exclusive: Annotated[
        bool,
        typer.Option("--exclusive", help="Enter exclusive mode before the critical requests"),
    ] = False,
    rate_limit_every: Annotated[
        int, typer.Option("--rate-limit-every", min=0, help="Reject every Nth call (0 = never)")
    ] = 0,
    latency_ms: Annotated[int, typer.Option("--latency-ms", min=0, help="Fake call latency")] = 10,
    output_format: OutputFormatOption = OutputFormat.TEXT,
) -> None:
    """Simulate scheduler behavior against a fake rate-limited provider.

    Examples:
        quotaq simulate
        quotaq simulate --system 5 --user 2 --rate-limit-every 3
        quotaq simulate --critical 1 --exclusive -f json
    """
    result = run_async_command(
        run_simulation(
            interval_ms=interval_ms,
            system=system,
            user=user,
            critical=critical,
            user_critical=user_critical,
            exclusive=exclusive,
            rate_limit_every=rate_limit_every,
            latency_ms=latency_ms,
        ),
        error_prefix="Simulation failed",
    )

    if output_format == OutputFormat.JSON:
        payload = {
            "calls": [
                {"label": c.label, "started_ms": c.started_ms, "rate_limited": c.rate_limited}
                for c in result.calls
            ],
            "outcomes": result.outcomes,
            "snapshot": result.snapshot.model_dump(mode="json"),
        }
        console.print_json(json.dumps(payload))
        return

    table = Table(title="Dispatch order")
    table.add_column("#", style="dim")
    table.add_column("Request", style="cyan")
    table.add_column("Started (ms)", justify="right")
    table.add_column("Outcome")
    for number, call in enumerate(result.calls, start=1):
        outcome = "[yellow]rate limited[/yellow]" if call.rate_limited else "[green]ok[/green]"
        table.add_row(str(number), call.label, str(call.started_ms), outcome)
    console.print(table)

    dispatched = {call.label for call in result.calls}
    rejected = [label for label in result.outcomes if label not in dispatched]
    if rejected:
        console.print(f"[yellow]Rejected before dispatch:[/yellow] {', '.join(rejected)}")

    snapshot = result.snapshot
    console.print(
        f"Dispatched: {snapshot.total_dispatched}  Failed: {snapshot.total_failed}  "
        f"Rejected: {snapshot.total_rejected}  "
        f"Backoff: {snapshot.backoff.current_backoff_ms}ms "
        f"({snapshot.backoff.consecutive_failures} consecutive failures)"
    )
