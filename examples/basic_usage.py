"""Example demonstrating resilient execution against a flaky service.

A simulated backend fails a few calls, goes down for a while and then comes
back. The engine retries transient failures, parks work while the service is
unavailable and replays it once the probe sees the service again.
"""

import asyncio
import random

from resilio import (
    EngineConfig,
    EventBus,
    ProbeResult,
    QueueDrainedEvent,
    ResilientEngine,
    ServiceLostEvent,
    ServiceRestoredEvent,
)
from resilio.alerts import Alert
from resilio.availability import AvailabilityConfig
from resilio.notifications import LogAlertChannel


class FlakyBackend:
    """Backend whose availability is toggled by the example."""

    def __init__(self) -> None:
        self.up = True
        self.calls = 0

    async def health(self) -> ProbeResult:
        await asyncio.sleep(0.01)
        if self.up:
            return ProbeResult.success(latency_ms=10)
        return ProbeResult.failure(error="HTTP 503")

    async def save(self, item: str) -> str:
        self.calls += 1
        await asyncio.sleep(0.01)
        if not self.up:
            raise ConnectionError("connection refused")
        if random.random() < 0.3:
            raise ConnectionError("connection reset by peer")
        return f"saved:{item}"


async def retry_example(engine: ResilientEngine, backend: FlakyBackend) -> None:
    """Transient failures are retried transparently."""
    print("=== Retry Example ===\n")

    for i in range(3):
        result = await engine.execute(lambda i=i: backend.save(f"item-{i}"), operation="save")
        print(f"Result: {result}")

    print(f"Backend calls: {backend.calls}")


async def outage_example(engine: ResilientEngine, backend: FlakyBackend) -> None:
    """Work submitted during an outage is replayed on recovery."""
    print("\n=== Outage Example ===\n")

    backend.up = False
    await engine.monitor.check()
    print(f"Status: {engine.monitor.status.value}")

    pending = asyncio.ensure_future(
        engine.execute(lambda: backend.save("offline-item"), operation="save")
    )
    await asyncio.sleep(1.5)
    print(f"Queued operations: {len(engine.queue)}")

    backend.up = True
    await engine.monitor.check()
    print(f"Status: {engine.monitor.status.value}")
    print(f"Replayed result: {await pending}")


async def describe_example(engine: ResilientEngine) -> None:
    """Structured failure descriptions for presenting errors."""
    print("\n=== Describe Failure Example ===\n")

    for error in (
        ConnectionError("network unreachable"),
        ValueError("Invalid login credentials"),
        {"status": 503, "message": "Service Unavailable"},
    ):
        print(f"{error!r}: {engine.describe_failure(error).to_dict()}")


async def main() -> None:
    backend = FlakyBackend()
    bus = EventBus()
    bus.subscribe(ServiceLostEvent, lambda e: print(f"[event] service lost ({e.status.value})"))
    bus.subscribe(
        ServiceRestoredEvent,
        lambda e: print(f"[event] service restored after {e.downtime_ms:.0f} ms"),
    )
    bus.subscribe(
        QueueDrainedEvent,
        lambda e: print(f"[event] queue drained: {len(e.succeeded)} ok, {len(e.failed)} failed"),
    )

    config = EngineConfig(availability=AvailabilityConfig(check_interval_ms=60_000))
    async with ResilientEngine(config=config, probe=backend.health, bus=bus) as engine:
        engine.add_channel(LogAlertChannel())

        def on_alert(alert: Alert) -> None:
            print(f"[alert] {alert.severity.value}: {alert.type}")

        engine.alerts.register_handler("*", on_alert)

        await retry_example(engine, backend)
        await outage_example(engine, backend)
        await describe_example(engine)

        print(f"\nAnalytics: {engine.analytics.rate_in_window(60_000).to_dict()}")


if __name__ == "__main__":
    asyncio.run(main())
