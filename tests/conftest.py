"""Shared fixtures: in-memory store, mock HTTP transports, recorded sleeps."""

from __future__ import annotations

from typing import Any

import httpx
import pytest

from progress_sync.api_client import SaveApiClient
from progress_sync.metrics import reset_metrics
from progress_sync.models import CatalogRecord, compute_delta
from progress_sync.store import PATCHABLE_QUEST_COLUMNS, ProgressWrite, StoredProgress

BASE_URL = "http://sync.test"


class InMemoryProgressStore:
    """Dict-backed stand-in for PostgresProgressStore with the same contract."""

    def __init__(self, catalog: list[CatalogRecord] | None = None) -> None:
        self.progress: dict[str, tuple[str, ...]] = {}
        self.catalog: dict[str, dict[str, Any]] = {
            r.id: {"name": r.name} for r in (catalog or [])
        }
        self.activities: list[tuple[str, str, str]] = []
        self.reachable = True
        self.fail_writes_with: Exception | None = None
        self.patches: list[tuple[str, dict[str, Any]]] = []

    async def ping(self) -> bool:
        return self.reachable

    async def replace_completed(self, user_id, item_ids, *, correlation_id=None) -> ProgressWrite:
        if self.fail_writes_with is not None:
            raise self.fail_writes_with
        target = tuple(item_ids)
        previous = self.progress.get(user_id, ())
        added, removed = compute_delta(previous, target)
        self.progress[user_id] = target
        for quest_id in added:
            if quest_id in self.catalog:
                self.activities.append((user_id, quest_id, "completed"))
        for quest_id in removed:
            if quest_id in self.catalog:
                self.activities.append((user_id, quest_id, "uncompleted"))
        return ProgressWrite(
            previous=previous,
            added=added,
            removed=removed,
            total_completed=len(target),
            completion_rate=0.0,
        )

    async def get_progress(self, user_id: str) -> StoredProgress:
        items = self.progress.setdefault(user_id, ())
        return StoredProgress(
            user_id=user_id,
            completed_item_ids=items,
            total_completed=len(items),
            completion_rate=0.0,
        )

    async def load_catalog(self) -> list[CatalogRecord]:
        return [CatalogRecord(id=k, name=v["name"]) for k, v in self.catalog.items()]

    async def apply_quest_patch(self, quest_id: str, patch: dict[str, Any]) -> int:
        unknown = set(patch) - PATCHABLE_QUEST_COLUMNS
        if unknown:
            raise ValueError(f"patch touches non-patchable columns: {sorted(unknown)}")
        if quest_id not in self.catalog:
            return 0
        self.catalog[quest_id].update(patch)
        self.patches.append((quest_id, dict(patch)))
        return 1


@pytest.fixture(autouse=True)
def _fresh_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def store():
    return InMemoryProgressStore()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    return _sleep


def make_client(handler) -> SaveApiClient:
    """SaveApiClient whose requests are answered by `handler` (sync or async)."""
    return SaveApiClient(BASE_URL, transport=httpx.MockTransport(handler))


def liveness_response(*, ok: bool = True, store_reachable: bool = True) -> httpx.Response:
    return httpx.Response(
        200 if store_reachable else 503,
        json={"ok": ok, "timestamp": "2026-01-01T00:00:00+00:00", "storeReachable": store_reachable},
    )
