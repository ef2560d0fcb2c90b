"""Core data model shared by the server and client components."""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_correlation_id() -> str:
    return uuid.uuid4().hex


class HealthState(str, enum.Enum):
    UNKNOWN = "unknown"
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"


class PipelineState(str, enum.Enum):
    IDLE = "idle"
    SAVING = "saving"
    QUEUED = "queued"


class MatchMethod(str, enum.Enum):
    EXACT_ID = "exact_id"
    EXACT_NAME = "exact_name"
    CASE_INSENSITIVE_NAME = "case_insensitive_name"
    NORMALIZED_NAME = "normalized_name"
    NONE = "none"


@dataclass(frozen=True)
class SaveIntent:
    """Target completed-item set for one user. Full replacement, not a delta."""

    user_id: str
    completed_item_ids: tuple[str, ...]
    client_timestamp: float = field(default_factory=lambda: time.time() * 1000)

    def to_request(self, correlation_id: str | None = None) -> dict[str, Any]:
        body: dict[str, Any] = {
            "userId": self.user_id,
            "completedItemIds": list(self.completed_item_ids),
            "clientTimestamp": self.client_timestamp,
        }
        if correlation_id:
            body["clientCorrelationId"] = correlation_id
        return body


@dataclass
class QueuedSave:
    """A SaveIntent waiting in the durable local queue.

    client_timestamp is when the user made the change and is replayed
    unchanged. Records without it replay with a fresh stamp.
    """

    correlation_id: str
    user_id: str
    completed_item_ids: tuple[str, ...]
    enqueued_at: str
    attempt_count: int = 0
    client_timestamp: float | None = None

    @classmethod
    def from_intent(
        cls,
        intent: SaveIntent,
        *,
        attempt_count: int = 0,
        correlation_id: str | None = None,
    ) -> "QueuedSave":
        return cls(
            correlation_id=correlation_id or new_correlation_id(),
            user_id=intent.user_id,
            completed_item_ids=tuple(intent.completed_item_ids),
            enqueued_at=utc_now().isoformat(),
            attempt_count=attempt_count,
            client_timestamp=intent.client_timestamp,
        )

    def to_intent(self) -> SaveIntent:
        if self.client_timestamp is None:
            return SaveIntent(user_id=self.user_id, completed_item_ids=self.completed_item_ids)
        return SaveIntent(
            user_id=self.user_id,
            completed_item_ids=self.completed_item_ids,
            client_timestamp=self.client_timestamp,
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "correlationId": self.correlation_id,
            "userId": self.user_id,
            "completedItemIds": list(self.completed_item_ids),
            "enqueuedAt": self.enqueued_at,
            "attemptCount": self.attempt_count,
            "clientTimestamp": self.client_timestamp,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "QueuedSave":
        client_timestamp = record.get("clientTimestamp")
        return cls(
            correlation_id=str(record["correlationId"]),
            user_id=str(record["userId"]),
            completed_item_ids=tuple(str(i) for i in record["completedItemIds"]),
            enqueued_at=str(record["enqueuedAt"]),
            attempt_count=int(record.get("attemptCount", 0)),
            client_timestamp=float(client_timestamp) if client_timestamp is not None else None,
        )


@dataclass(frozen=True)
class SaveOutcome:
    """Result of one pipeline pass. Never persisted."""

    success: bool
    server_correlation_id: str | None = None
    applied_count: int = 0
    duration_ms: float = 0.0
    error_kind: str | None = None
    attempts: int = 0
    message: str = ""


@dataclass(frozen=True)
class SaveResult:
    """What the save endpoint returns for an accepted save."""

    correlation_id: str
    applied_count: int
    added: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()

    def to_payload(self) -> dict[str, Any]:
        return {"correlationId": self.correlation_id, "appliedCount": self.applied_count}


@dataclass(frozen=True)
class CatalogRecord:
    id: str
    name: str


@dataclass(frozen=True)
class QuestFixSpec:
    display_name: str
    known_id: str
    patch: dict[str, Any]


@dataclass(frozen=True)
class QuestFixResult:
    display_name: str
    known_id: str
    resolved_id: str | None
    match_method: MatchMethod
    id_drifted: bool
    applied: bool
    failure_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "displayName": self.display_name,
            "knownId": self.known_id,
            "resolvedId": self.resolved_id,
            "matchMethod": self.match_method.value,
            "idDrifted": self.id_drifted,
            "applied": self.applied,
            "failureReason": self.failure_reason,
        }


@dataclass(frozen=True)
class FixRunStatus:
    ran_at: datetime
    total: int
    successful: int
    failed: int
    id_changes: int
    failures: tuple[dict[str, str], ...]
    results: tuple[QuestFixResult, ...] = ()

    @classmethod
    def from_results(
        cls, results: list[QuestFixResult], ran_at: datetime | None = None
    ) -> "FixRunStatus":
        failures = tuple(
            {"displayName": r.display_name, "failureReason": r.failure_reason or "unknown"}
            for r in results
            if not r.applied
        )
        return cls(
            ran_at=ran_at or utc_now(),
            total=len(results),
            successful=sum(1 for r in results if r.applied),
            failed=len(failures),
            id_changes=sum(1 for r in results if r.id_drifted),
            failures=failures,
            results=tuple(results),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "ranAt": self.ran_at.isoformat(),
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "idChanges": self.id_changes,
            "failures": [dict(f) for f in self.failures],
            "idDrifts": [
                {
                    "displayName": r.display_name,
                    "knownId": r.known_id,
                    "resolvedId": r.resolved_id,
                }
                for r in self.results
                if r.id_drifted
            ],
        }


def compute_delta(
    previous: list[str] | tuple[str, ...], target: list[str] | tuple[str, ...]
) -> tuple[tuple[str, ...], tuple[str, ...]]:
    """Symmetric difference split into (added, removed), order preserved."""
    previous_set = set(previous)
    target_set = set(target)
    added = tuple(i for i in target if i not in previous_set)
    removed = tuple(i for i in previous if i not in target_set)
    return added, removed
