"""Client-side health monitor.

Probes the server's liveness endpoint once eagerly and then on a fixed
interval. One failed probe flips the state to Unavailable and one successful
probe flips it back; listeners only hear about actual transitions. Save
outcomes never touch the state.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from .api_client import SaveApiClient
from .errors import TransientDeliveryError
from .metrics import record_probe
from .models import HealthState

logger = logging.getLogger(__name__)

HealthListener = Callable[[HealthState, HealthState], Awaitable[None]]


class HealthMonitor:
    def __init__(self, client: SaveApiClient, *, interval_seconds: float = 30.0) -> None:
        self.client = client
        self.interval_seconds = interval_seconds
        self._state = HealthState.UNKNOWN
        self._listeners: list[HealthListener] = []
        self._shutdown = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def state(self) -> HealthState:
        return self._state

    def subscribe(self, listener: HealthListener) -> None:
        """Register an async callback receiving (previous, current) on each transition."""
        self._listeners.append(listener)

    async def probe(self) -> HealthState:
        try:
            status_code, body = await self.client.fetch_liveness()
            available = (
                status_code == 200
                and body.get("ok") is True
                and body.get("storeReachable") is True
            )
            if not available:
                logger.info(
                    "Liveness probe unhealthy (status=%d, storeReachable=%s)",
                    status_code,
                    body.get("storeReachable"),
                )
        except TransientDeliveryError as exc:
            logger.info("Liveness probe failed: %s", exc.message)
            available = False

        record_probe(available)
        await self._transition(HealthState.AVAILABLE if available else HealthState.UNAVAILABLE)
        return self._state

    async def _transition(self, new_state: HealthState) -> None:
        previous = self._state
        if new_state == previous:
            return
        self._state = new_state
        logger.warning(
            "Health state changed: %s -> %s",
            previous.value,
            new_state.value,
            extra={"sync_health_previous": previous.value, "sync_health_current": new_state.value},
        )
        for listener in list(self._listeners):
            try:
                await listener(previous, new_state)
            except Exception:
                logger.exception("Health listener %r failed", listener)

    async def _probe_guarded(self) -> None:
        """probe() for the loop: an unexpected failure counts as Unavailable."""
        try:
            await self.probe()
        except Exception:
            logger.exception("Liveness probe raised unexpectedly")
            record_probe(False)
            await self._transition(HealthState.UNAVAILABLE)

    async def run(self) -> None:
        """Probe now, then every interval until stop() is called."""
        await self._probe_guarded()
        while not self._shutdown.is_set():
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=self.interval_seconds)
                break  # shutdown was set
            except TimeoutError:
                pass
            await self._probe_guarded()
        logger.info("Health monitor stopped")

    def start(self) -> asyncio.Task[None]:
        if self._task is None or self._task.done():
            self._shutdown.clear()
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        self._shutdown.set()
        if self._task is not None:
            await self._task
            self._task = None
