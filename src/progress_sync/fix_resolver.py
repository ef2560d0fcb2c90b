"""Catalog fix resolver.

Runs once at start-up over the static quest fixes. Each fix is resolved to
a live catalog record through an ordered chain of matchers (exact id, exact
name, case-insensitive name, normalized name); the first hit wins. A fix
whose record re-keyed upstream is still applied against the live id and
reported as drift. A fix that matches nothing is reported and skipped. One
miss never aborts the batch, and nothing here is fatal to start-up.

The aggregate FixRunStatus is published exactly once per process to a
FixStatusHolder; the health surface only ever reads it.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from .errors import ResolutionMiss
from .models import CatalogRecord, FixRunStatus, MatchMethod, QuestFixResult, QuestFixSpec

logger = logging.getLogger(__name__)


class CatalogStore(Protocol):
    async def load_catalog(self) -> list[CatalogRecord]: ...

    async def apply_quest_patch(self, quest_id: str, patch: dict[str, Any]) -> int: ...


def normalize_name(name: str) -> str:
    """Lowercase and keep only letters and digits."""
    return "".join(ch for ch in name.lower() if ch.isalnum())


@dataclass(frozen=True)
class CatalogIndex:
    by_id: dict[str, CatalogRecord]
    by_name: dict[str, CatalogRecord]
    by_casefold: dict[str, CatalogRecord]
    by_normalized: dict[str, CatalogRecord]

    @classmethod
    def build(cls, records: list[CatalogRecord]) -> "CatalogIndex":
        by_id: dict[str, CatalogRecord] = {}
        by_name: dict[str, CatalogRecord] = {}
        by_casefold: dict[str, CatalogRecord] = {}
        by_normalized: dict[str, CatalogRecord] = {}
        # First record wins on name collisions
        for record in records:
            by_id.setdefault(record.id, record)
            by_name.setdefault(record.name, record)
            by_casefold.setdefault(record.name.casefold(), record)
            normalized = normalize_name(record.name)
            if normalized:
                by_normalized.setdefault(normalized, record)
        return cls(by_id, by_name, by_casefold, by_normalized)


Matcher = Callable[[CatalogIndex, QuestFixSpec], CatalogRecord | None]


def _match_exact_id(index: CatalogIndex, spec: QuestFixSpec) -> CatalogRecord | None:
    return index.by_id.get(spec.known_id)


def _match_exact_name(index: CatalogIndex, spec: QuestFixSpec) -> CatalogRecord | None:
    return index.by_name.get(spec.display_name)


def _match_case_insensitive(index: CatalogIndex, spec: QuestFixSpec) -> CatalogRecord | None:
    return index.by_casefold.get(spec.display_name.casefold())


def _match_normalized(index: CatalogIndex, spec: QuestFixSpec) -> CatalogRecord | None:
    normalized = normalize_name(spec.display_name)
    if not normalized:
        return None
    return index.by_normalized.get(normalized)


MATCHERS: tuple[tuple[MatchMethod, Matcher], ...] = (
    (MatchMethod.EXACT_ID, _match_exact_id),
    (MatchMethod.EXACT_NAME, _match_exact_name),
    (MatchMethod.CASE_INSENSITIVE_NAME, _match_case_insensitive),
    (MatchMethod.NORMALIZED_NAME, _match_normalized),
)


def match_record(
    index: CatalogIndex, spec: QuestFixSpec
) -> tuple[MatchMethod, CatalogRecord]:
    """Return the first matcher hit, or raise ResolutionMiss."""
    for method, matcher in MATCHERS:
        record = matcher(index, spec)
        if record is not None:
            return method, record
    raise ResolutionMiss(
        f"no catalog record matched {spec.display_name!r} (known id {spec.known_id})"
    )


class FixStatusHolder:
    """Single-writer holder for the process's FixRunStatus."""

    def __init__(self) -> None:
        self._status: FixRunStatus | None = None

    @property
    def status(self) -> FixRunStatus | None:
        return self._status

    def publish(self, status: FixRunStatus) -> None:
        if self._status is not None:
            raise RuntimeError("FixRunStatus already published for this process")
        self._status = status


async def _resolve_one(
    store: CatalogStore, index: CatalogIndex, spec: QuestFixSpec
) -> QuestFixResult:
    try:
        method, record = match_record(index, spec)
    except ResolutionMiss as miss:
        logger.warning(
            "Quest fix unresolved: %s",
            miss.message,
            extra={"sync_fix_name": spec.display_name, "sync_error_kind": miss.error_kind},
        )
        return QuestFixResult(
            display_name=spec.display_name,
            known_id=spec.known_id,
            resolved_id=None,
            match_method=MatchMethod.NONE,
            id_drifted=False,
            applied=False,
            failure_reason=miss.message,
        )

    drifted = record.id != spec.known_id
    if drifted:
        logger.warning(
            "Quest id drift for %r: known=%s live=%s (matched by %s)",
            spec.display_name,
            spec.known_id,
            record.id,
            method.value,
        )

    try:
        updated = await store.apply_quest_patch(record.id, spec.patch)
    except Exception as exc:
        logger.error("Quest fix for %r failed to apply", spec.display_name, exc_info=True)
        return QuestFixResult(
            display_name=spec.display_name,
            known_id=spec.known_id,
            resolved_id=record.id,
            match_method=method,
            id_drifted=drifted,
            applied=False,
            failure_reason=f"patch failed: {exc}",
        )

    if updated == 0:
        return QuestFixResult(
            display_name=spec.display_name,
            known_id=spec.known_id,
            resolved_id=record.id,
            match_method=method,
            id_drifted=drifted,
            applied=False,
            failure_reason=f"catalog record {record.id} disappeared before patch",
        )

    logger.info(
        "Quest fix applied to %r (id=%s, matched by %s)",
        spec.display_name,
        record.id,
        method.value,
    )
    return QuestFixResult(
        display_name=spec.display_name,
        known_id=spec.known_id,
        resolved_id=record.id,
        match_method=method,
        id_drifted=drifted,
        applied=True,
    )


async def resolve_quest_fixes(
    store: CatalogStore,
    specs: list[QuestFixSpec],
    holder: FixStatusHolder,
) -> FixRunStatus:
    """Resolve and apply every fix, then publish the run status once."""
    results: list[QuestFixResult] = []
    try:
        records = await store.load_catalog()
    except Exception as exc:
        logger.error("Quest catalog could not be loaded; all fixes skipped", exc_info=True)
        results = [
            QuestFixResult(
                display_name=spec.display_name,
                known_id=spec.known_id,
                resolved_id=None,
                match_method=MatchMethod.NONE,
                id_drifted=False,
                applied=False,
                failure_reason=f"catalog unavailable: {exc}",
            )
            for spec in specs
        ]
    else:
        index = CatalogIndex.build(records)
        for spec in specs:
            results.append(await _resolve_one(store, index, spec))

    status = FixRunStatus.from_results(results)
    holder.publish(status)
    logger.info(
        "Quest fixes: %d/%d applied, %d failed, %d id changes",
        status.successful,
        status.total,
        status.failed,
        status.id_changes,
    )
    return status
