"""Client-side save pipeline.

Per user: Idle -> Saving -> Idle (acknowledged) | Queued (retry budget spent).
Queued -> Saving happens only on a health recovery edge or a manual retry.

Everything runs on one asyncio loop and the busy check-and-set has no await
between them, so a plain set is enough to keep one delivery in flight per
user. A save already in flight is never cancelled by a health transition;
only the next submission is gated.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from .api_client import SaveApiClient
from .errors import PersistenceError, TransientDeliveryError, ValidationError
from .health_monitor import HealthMonitor
from .models import (
    HealthState,
    PipelineState,
    QueuedSave,
    SaveIntent,
    SaveOutcome,
    new_correlation_id,
)
from .save_queue import DurableSaveQueue

logger = logging.getLogger(__name__)

# Wait before attempt 1, 2, 3
BACKOFF_SECONDS: tuple[float, ...] = (0.0, 2.0, 4.0)

SAVED_LOCALLY_MESSAGE = (
    "Progress saved locally; it will sync automatically once the server is reachable."
)

REJECT_BUSY = "busy"
REJECT_UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class SubmitResult:
    accepted: bool
    reason: str | None = None
    outcome: SaveOutcome | None = None


class SavePipeline:
    def __init__(
        self,
        client: SaveApiClient,
        queue: DurableSaveQueue,
        monitor: HealthMonitor,
        *,
        backoff_seconds: tuple[float, ...] = BACKOFF_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if not backoff_seconds:
            raise ValueError("backoff_seconds must allow at least one attempt")
        self.client = client
        self.queue = queue
        self.monitor = monitor
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._in_flight: set[str] = set()
        self._states: dict[str, PipelineState] = {
            entry.user_id: PipelineState.QUEUED for entry in queue.entries()
        }
        self._drain_task: asyncio.Task[int] | None = None
        monitor.subscribe(self._on_health_change)

    def state(self, user_id: str) -> PipelineState:
        return self._states.get(user_id, PipelineState.IDLE)

    def is_busy(self, user_id: str) -> bool:
        return user_id in self._in_flight

    async def submit(self, intent: SaveIntent) -> SubmitResult:
        return await self._submit(intent, replay=None)

    async def _submit(self, intent: SaveIntent, replay: QueuedSave | None) -> SubmitResult:
        user_id = intent.user_id
        if user_id in self._in_flight:
            logger.info("Save for user %s rejected: busy", user_id, extra={"sync_user_id": user_id})
            return SubmitResult(accepted=False, reason=REJECT_BUSY)

        if self.monitor.state == HealthState.UNAVAILABLE:
            if replay is None:
                queued = QueuedSave.from_intent(intent)
                self.queue.put(queued)
                self._states[user_id] = PipelineState.QUEUED
                logger.info(
                    "Server unavailable; save for user %s queued",
                    user_id,
                    extra={"sync_user_id": user_id, "sync_correlation_id": queued.correlation_id},
                )
            return SubmitResult(accepted=False, reason=REJECT_UNAVAILABLE)

        self._in_flight.add(user_id)
        self._states[user_id] = PipelineState.SAVING
        try:
            outcome = await self._deliver(intent, replay)
        except BaseException:
            self._states[user_id] = (
                PipelineState.QUEUED if self.queue.get(user_id) else PipelineState.IDLE
            )
            raise
        finally:
            self._in_flight.discard(user_id)
        return SubmitResult(accepted=True, outcome=outcome)

    async def _deliver(self, intent: SaveIntent, replay: QueuedSave | None) -> SaveOutcome:
        user_id = intent.user_id
        correlation_id = replay.correlation_id if replay else new_correlation_id()
        prior_attempts = replay.attempt_count if replay else 0
        t0 = time.monotonic()
        attempts = 0
        last_error: TransientDeliveryError | None = None

        for delay in self.backoff_seconds:
            if delay > 0:
                await self._sleep(delay)
            attempts += 1
            log_extra = {
                "sync_user_id": user_id,
                "sync_correlation_id": correlation_id,
                "sync_attempt": attempts,
                "sync_total_attempts": prior_attempts + attempts,
            }
            try:
                result = await self.client.post_save(intent, correlation_id)
            except TransientDeliveryError as exc:
                last_error = exc
                logger.warning(
                    "Save attempt %d/%d for user %s failed: %s",
                    attempts,
                    len(self.backoff_seconds),
                    user_id,
                    exc.message,
                    extra=log_extra,
                )
                continue
            except (ValidationError, PersistenceError) as exc:
                return self._surface_failure(intent, replay, exc, attempts, t0, log_extra)

            duration_ms = (time.monotonic() - t0) * 1000
            self.queue.remove(user_id)
            self._states[user_id] = PipelineState.IDLE
            logger.info(
                "Save for user %s acknowledged (server correlation %s)",
                user_id,
                result.correlation_id,
                extra={
                    **log_extra,
                    "sync_server_correlation_id": result.correlation_id,
                    "sync_duration_ms": round(duration_ms, 1),
                },
            )
            return SaveOutcome(
                success=True,
                server_correlation_id=result.correlation_id,
                applied_count=result.applied_count,
                duration_ms=duration_ms,
                attempts=attempts,
            )

        total_attempts = prior_attempts + attempts
        if replay is not None:
            self._record_replay_attempts(replay, total_attempts)
        else:
            self.queue.put(
                QueuedSave.from_intent(
                    intent, attempt_count=total_attempts, correlation_id=correlation_id
                )
            )
        self._states[user_id] = (
            PipelineState.QUEUED if self.queue.get(user_id) else PipelineState.IDLE
        )
        duration_ms = (time.monotonic() - t0) * 1000
        logger.error(
            "Save for user %s queued after %d attempts (%d cumulative): %s",
            user_id,
            attempts,
            total_attempts,
            last_error.message if last_error else "unknown",
            extra={
                "sync_user_id": user_id,
                "sync_correlation_id": correlation_id,
                "sync_total_attempts": total_attempts,
                "sync_duration_ms": round(duration_ms, 1),
            },
        )
        return SaveOutcome(
            success=False,
            duration_ms=duration_ms,
            error_kind="transient",
            attempts=attempts,
            message=SAVED_LOCALLY_MESSAGE,
        )

    def _record_replay_attempts(self, replay: QueuedSave, total_attempts: int) -> None:
        """Persist the cumulative count unless the entry was discarded meanwhile."""
        current = self.queue.get(replay.user_id)
        if current is None or current.correlation_id != replay.correlation_id:
            return
        replay.attempt_count = total_attempts
        self.queue.update(replay)

    def _surface_failure(
        self,
        intent: SaveIntent,
        replay: QueuedSave | None,
        exc: ValidationError | PersistenceError,
        attempts: int,
        started: float,
        log_extra: dict[str, object],
    ) -> SaveOutcome:
        user_id = intent.user_id
        if replay is not None and isinstance(exc, ValidationError):
            # A malformed save can never succeed on replay
            self.queue.remove(user_id, replay.correlation_id)
        elif replay is not None:
            self._record_replay_attempts(replay, replay.attempt_count + attempts)
        still_queued = self.queue.get(user_id) is not None
        self._states[user_id] = PipelineState.QUEUED if still_queued else PipelineState.IDLE
        logger.error(
            "Save for user %s failed (%s): %s",
            user_id,
            exc.error_kind,
            exc.message,
            extra=log_extra,
        )
        return SaveOutcome(
            success=False,
            duration_ms=(time.monotonic() - started) * 1000,
            error_kind=exc.error_kind,
            attempts=attempts,
            message=exc.message,
        )

    async def drain_queue(self) -> int:
        """Replay queued saves oldest first. Returns how many were acknowledged."""
        acknowledged = 0
        for entry in self.queue.entries():
            if self.monitor.state == HealthState.UNAVAILABLE:
                logger.info("Queue drain paused: server unavailable")
                break
            # Superseded or cleared since the snapshot was taken
            current = self.queue.get(entry.user_id)
            if current is None or current.correlation_id != entry.correlation_id:
                continue
            logger.info(
                "Replaying queued save for user %s (attempts so far: %d)",
                entry.user_id,
                entry.attempt_count,
                extra={
                    "sync_user_id": entry.user_id,
                    "sync_correlation_id": entry.correlation_id,
                    "sync_total_attempts": entry.attempt_count,
                },
            )
            result = await self._submit(entry.to_intent(), replay=entry)
            if result.outcome is not None and result.outcome.success:
                acknowledged += 1
        return acknowledged

    def _start_drain(self) -> asyncio.Task[int]:
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self.drain_queue())
        return self._drain_task

    async def _on_health_change(self, previous: HealthState, current: HealthState) -> None:
        if current == HealthState.AVAILABLE and len(self.queue):
            logger.info(
                "Server available (was %s); draining %d queued save(s)",
                previous.value,
                len(self.queue),
            )
            self._start_drain()

    async def retry_queued(self) -> int:
        """Manual retry trigger: drain now, joining a drain already running."""
        if self._drain_task is not None and not self._drain_task.done():
            await self._drain_task
        return await self._start_drain()

    async def wait_for_drain(self) -> None:
        if self._drain_task is not None:
            await self._drain_task

    def discard_queued(self, user_id: str) -> bool:
        """Explicit user action: drop the user's queued save."""
        removed = self.queue.remove(user_id)
        if removed:
            self._states[user_id] = PipelineState.IDLE
            logger.info("Queued save for user %s discarded", user_id, extra={"sync_user_id": user_id})
        return removed
