"""Tests for the client-side health monitor."""

import asyncio

import httpx

from progress_sync.health_monitor import HealthMonitor
from progress_sync.metrics import get_metrics
from progress_sync.models import HealthState

from .conftest import liveness_response, make_client


class _Server:
    """Scripted liveness responses: 'up', 'store_down' or 'down'."""

    def __init__(self, *script):
        self.script = list(script)
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/health"
        mode = self.script[min(self.calls, len(self.script) - 1)]
        self.calls += 1
        if mode == "down":
            raise httpx.ConnectError("connection refused", request=request)
        if mode == "timeout":
            raise httpx.ReadTimeout("timed out", request=request)
        if mode == "garbled":
            raise httpx.DecodingError("corrupt gzip stream", request=request)
        if mode == "crash":
            raise RuntimeError("transport bug")
        return liveness_response(store_reachable=(mode == "up"))


async def _record_transitions(monitor):
    seen = []

    async def listener(previous, current):
        seen.append((previous, current))

    monitor.subscribe(listener)
    return seen


async def test_starts_unknown_then_available():
    monitor = HealthMonitor(make_client(_Server("up")))
    assert monitor.state is HealthState.UNKNOWN
    assert await monitor.probe() is HealthState.AVAILABLE


async def test_single_failure_flips_and_single_success_recovers():
    monitor = HealthMonitor(make_client(_Server("up", "down", "up")))
    seen = await _record_transitions(monitor)

    await monitor.probe()
    await monitor.probe()
    assert monitor.state is HealthState.UNAVAILABLE
    await monitor.probe()
    assert monitor.state is HealthState.AVAILABLE

    assert seen == [
        (HealthState.UNKNOWN, HealthState.AVAILABLE),
        (HealthState.AVAILABLE, HealthState.UNAVAILABLE),
        (HealthState.UNAVAILABLE, HealthState.AVAILABLE),
    ]


async def test_events_only_on_actual_transition():
    monitor = HealthMonitor(make_client(_Server("up", "up", "up")))
    seen = await _record_transitions(monitor)
    for _ in range(3):
        await monitor.probe()
    assert len(seen) == 1
    assert get_metrics()["probes_ok"] == 3


async def test_store_unreachable_and_timeout_count_as_unavailable():
    monitor = HealthMonitor(make_client(_Server("store_down")))
    assert await monitor.probe() is HealthState.UNAVAILABLE

    monitor = HealthMonitor(make_client(_Server("timeout")))
    assert await monitor.probe() is HealthState.UNAVAILABLE
    assert get_metrics()["probes_failed"] == 2


async def test_failing_listener_does_not_block_others():
    monitor = HealthMonitor(make_client(_Server("up")))
    calls = []

    async def broken(previous, current):
        raise RuntimeError("boom")

    async def healthy(previous, current):
        calls.append(current)

    monitor.subscribe(broken)
    monitor.subscribe(healthy)
    await monitor.probe()
    assert calls == [HealthState.AVAILABLE]


async def test_run_probes_eagerly_and_on_interval():
    server = _Server("up")
    monitor = HealthMonitor(make_client(server), interval_seconds=0.01)

    monitor.start()
    await asyncio.sleep(0.05)
    await monitor.stop()

    assert server.calls >= 2
    assert monitor.state is HealthState.AVAILABLE


async def test_undecodable_liveness_response_is_unavailable():
    monitor = HealthMonitor(make_client(_Server("up", "garbled")))
    await monitor.probe()
    assert await monitor.probe() is HealthState.UNAVAILABLE
    assert get_metrics()["probes_failed"] == 1


async def test_run_keeps_probing_after_unexpected_error():
    server = _Server("crash", "up")
    monitor = HealthMonitor(make_client(server), interval_seconds=0.01)
    seen = await _record_transitions(monitor)

    task = monitor.start()
    await asyncio.sleep(0.05)
    assert not task.done()
    await monitor.stop()

    assert server.calls >= 2
    assert seen[:2] == [
        (HealthState.UNKNOWN, HealthState.UNAVAILABLE),
        (HealthState.UNAVAILABLE, HealthState.AVAILABLE),
    ]
    assert monitor.state is HealthState.AVAILABLE
