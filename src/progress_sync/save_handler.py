"""Save endpoint handler.

Validates a save submission, logs the delta against the stored set, and
applies it as an atomic full-set replacement. Each invocation gets a
server-side correlation id that is independent of anything the client sends;
the client's id is only logged next to it so both sides' logs can be joined.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Protocol

import psycopg

from .contracts import parse_save_request, parse_user_request, validate_user_id
from .errors import PersistenceError, ValidationError
from .metrics import record_save_applied, record_save_failed, record_save_rejected
from .models import SaveResult, new_correlation_id
from .store import ProgressWrite, StoredProgress

logger = logging.getLogger(__name__)


class ProgressStore(Protocol):
    async def ping(self) -> bool: ...

    async def replace_completed(
        self,
        user_id: str,
        item_ids: list[str] | tuple[str, ...],
        *,
        correlation_id: str | None = None,
    ) -> ProgressWrite: ...

    async def get_progress(self, user_id: str) -> StoredProgress: ...


class SaveEndpointHandler:
    def __init__(self, store: ProgressStore) -> None:
        self.store = store

    async def handle(self, payload: Any) -> SaveResult:
        """Apply one save submission. Raises ValidationError or PersistenceError."""
        correlation_id = new_correlation_id()
        t0 = time.monotonic()
        logger.info(
            "Save request received",
            extra={"sync_correlation_id": correlation_id},
        )

        try:
            request = parse_save_request(payload)
        except ValidationError as exc:
            record_save_rejected()
            logger.warning(
                "Save request rejected: %s",
                exc.message,
                extra={
                    "sync_correlation_id": correlation_id,
                    "sync_error_kind": exc.error_kind,
                    "sync_details": exc.details,
                    "sync_duration_ms": round((time.monotonic() - t0) * 1000, 1),
                },
            )
            raise

        return await self._apply(
            request.user_id,
            request.completed_item_ids,
            correlation_id=correlation_id,
            client_correlation_id=request.client_correlation_id,
            started=t0,
        )

    async def reset(self, payload: Any) -> SaveResult:
        """Clear a user's completed set (full replacement with the empty set)."""
        correlation_id = new_correlation_id()
        t0 = time.monotonic()
        try:
            request = parse_user_request(payload)
        except ValidationError:
            record_save_rejected()
            raise
        logger.info(
            "Progress reset requested",
            extra={"sync_correlation_id": correlation_id, "sync_user_id": request.user_id},
        )
        return await self._apply(
            request.user_id, [], correlation_id=correlation_id, started=t0
        )

    async def _apply(
        self,
        user_id: str,
        item_ids: list[str],
        *,
        correlation_id: str,
        started: float,
        client_correlation_id: str | None = None,
    ) -> SaveResult:
        log_extra: dict[str, Any] = {
            "sync_correlation_id": correlation_id,
            "sync_client_correlation_id": client_correlation_id,
            "sync_user_id": user_id,
        }
        try:
            write = await self.store.replace_completed(
                user_id, item_ids, correlation_id=correlation_id
            )
        except psycopg.Error as exc:
            duration_ms = (time.monotonic() - started) * 1000
            record_save_failed()
            logger.critical(
                "Save for user %s failed to persist",
                user_id,
                exc_info=True,
                extra={**log_extra, "sync_duration_ms": round(duration_ms, 1)},
            )
            raise PersistenceError(
                "progress could not be persisted",
                details={"correlationId": correlation_id},
            ) from exc

        duration_ms = (time.monotonic() - started) * 1000
        record_save_applied(duration_ms)
        logger.info(
            "Save delta for user %s: +%d -%d",
            user_id,
            len(write.added),
            len(write.removed),
            extra={
                **log_extra,
                "sync_added": list(write.added),
                "sync_removed": list(write.removed),
            },
        )
        logger.info(
            "Save applied for user %s (%d items)",
            user_id,
            len(item_ids),
            extra={**log_extra, "sync_duration_ms": round(duration_ms, 1)},
        )
        return SaveResult(
            correlation_id=correlation_id,
            applied_count=len(item_ids),
            added=write.added,
            removed=write.removed,
        )

    async def get_progress(self, user_id: str | None) -> StoredProgress:
        validate_user_id(user_id)
        try:
            return await self.store.get_progress(user_id)  # type: ignore[arg-type]
        except psycopg.Error as exc:
            logger.error("Progress read failed for user %s", user_id, exc_info=True)
            raise PersistenceError("progress could not be read") from exc

    async def status(self) -> dict[str, Any]:
        """Liveness side channel. Touches no per-user data."""
        store_reachable = await self.store.ping()
        return {
            "ok": True,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "storeReachable": store_reachable,
        }
