"""PostgreSQL persistent store for user progress and the quest catalog.

Every progress write is a full-set replacement inside one transaction,
serialized per user with pg_advisory_xact_lock (transaction-scoped,
auto-releases on commit/rollback). Concurrent writes for the same user are
therefore last-write-wins and can never interleave into a merged set.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Json

from .models import CatalogRecord, compute_delta

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS quests (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        trader TEXT,
        level INTEGER NOT NULL DEFAULT 1,
        map_name TEXT,
        required_items JSONB NOT NULL DEFAULT '[]'::jsonb,
        required_for_kappa BOOLEAN NOT NULL DEFAULT FALSE,
        wiki_link TEXT,
        objectives JSONB NOT NULL DEFAULT '[]'::jsonb,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_progress (
        user_id TEXT PRIMARY KEY,
        completed_item_ids JSONB NOT NULL DEFAULT '[]'::jsonb,
        total_completed INTEGER NOT NULL DEFAULT 0,
        completion_rate DOUBLE PRECISION NOT NULL DEFAULT 0,
        last_quest_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS quest_activities (
        id BIGSERIAL PRIMARY KEY,
        user_id TEXT NOT NULL,
        quest_id TEXT NOT NULL,
        quest_name TEXT NOT NULL,
        action TEXT NOT NULL,
        correlation_id TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS quest_activities_user_idx ON quest_activities (user_id, created_at)",
)

# Columns a quest fix may overwrite
PATCHABLE_QUEST_COLUMNS: frozenset[str] = frozenset({
    "name",
    "trader",
    "level",
    "map_name",
    "required_items",
    "required_for_kappa",
    "wiki_link",
    "objectives",
})
_JSON_QUEST_COLUMNS = frozenset({"required_items", "objectives"})


@dataclass(frozen=True)
class ProgressWrite:
    """Outcome of one atomic replacement."""

    previous: tuple[str, ...]
    added: tuple[str, ...]
    removed: tuple[str, ...]
    total_completed: int
    completion_rate: float


@dataclass(frozen=True)
class StoredProgress:
    user_id: str
    completed_item_ids: tuple[str, ...]
    total_completed: int
    completion_rate: float
    last_quest_at: Any = None
    updated_at: Any = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "completedItemIds": list(self.completed_item_ids),
            "totalCompleted": self.total_completed,
            "completionRate": round(self.completion_rate, 2),
            "lastQuestAt": self.last_quest_at.isoformat() if self.last_quest_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


async def ensure_schema(conn: psycopg.AsyncConnection[Any]) -> None:
    """Create tables on first start. Idempotent."""
    for statement in SCHEMA_STATEMENTS:
        await conn.execute(statement)
    await conn.commit()


async def _acquire_user_lock(
    conn: psycopg.AsyncConnection[Any], user_id: str
) -> None:
    """Serialize all progress writes for the same user."""
    await conn.execute(
        "SELECT pg_advisory_xact_lock(hashtext(%s)::bigint)",
        (str(user_id),),
    )


async def count_required_quests(conn: psycopg.AsyncConnection[Any]) -> int:
    async with conn.cursor() as cur:
        await cur.execute("SELECT COUNT(*) FROM quests WHERE required_for_kappa")
        row = await cur.fetchone()
    return int(row[0]) if row else 0


def completion_rate(completed_count: int, required_total: int) -> float:
    if required_total <= 0:
        return 0.0
    return (completed_count / required_total) * 100


async def fetch_completed_items(
    conn: psycopg.AsyncConnection[Any], user_id: str, *, for_update: bool = False
) -> tuple[str, ...] | None:
    query = "SELECT completed_item_ids FROM user_progress WHERE user_id = %s"
    if for_update:
        query += " FOR UPDATE"
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(query, (user_id,))
        row = await cur.fetchone()
    if row is None:
        return None
    return tuple(str(i) for i in (row["completed_item_ids"] or []))


async def _record_activities(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    quest_ids: tuple[str, ...],
    action: str,
    correlation_id: str | None,
) -> None:
    # Only ids known to the catalog produce activity rows
    if not quest_ids:
        return
    await conn.execute(
        """
        INSERT INTO quest_activities (user_id, quest_id, quest_name, action, correlation_id)
        SELECT %s, q.id, q.name, %s, %s
        FROM quests q
        WHERE q.id = ANY(%s)
        """,
        (user_id, action, correlation_id, list(quest_ids)),
    )


async def replace_completed_items(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    item_ids: list[str] | tuple[str, ...],
    *,
    correlation_id: str | None = None,
) -> ProgressWrite:
    """Atomically replace a user's completed set. Never merges."""
    target = tuple(item_ids)
    async with conn.transaction():
        await _acquire_user_lock(conn, user_id)
        previous = await fetch_completed_items(conn, user_id, for_update=True) or ()
        added, removed = compute_delta(previous, target)
        required_total = await count_required_quests(conn)
        rate = completion_rate(len(target), required_total)

        await conn.execute(
            """
            INSERT INTO user_progress (
                user_id, completed_item_ids, total_completed, completion_rate, last_quest_at
            )
            VALUES (%s, %s, %s, %s, CASE WHEN %s > 0 THEN NOW() ELSE NULL END)
            ON CONFLICT (user_id) DO UPDATE SET
                completed_item_ids = EXCLUDED.completed_item_ids,
                total_completed = EXCLUDED.total_completed,
                completion_rate = EXCLUDED.completion_rate,
                last_quest_at = CASE
                    WHEN %s THEN NOW()
                    ELSE user_progress.last_quest_at
                END,
                updated_at = NOW()
            """,
            (user_id, Json(list(target)), len(target), rate, len(target), bool(added)),
        )
        await _record_activities(conn, user_id, added, "completed", correlation_id)
        await _record_activities(conn, user_id, removed, "uncompleted", correlation_id)

    return ProgressWrite(
        previous=previous,
        added=added,
        removed=removed,
        total_completed=len(target),
        completion_rate=rate,
    )


async def fetch_progress(
    conn: psycopg.AsyncConnection[Any], user_id: str
) -> StoredProgress:
    """Read a user's progress, creating an empty row on first access."""
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            INSERT INTO user_progress (user_id) VALUES (%s)
            ON CONFLICT (user_id) DO NOTHING
            """,
            (user_id,),
        )
        await cur.execute(
            """
            SELECT user_id, completed_item_ids, total_completed, completion_rate,
                   last_quest_at, updated_at
            FROM user_progress
            WHERE user_id = %s
            """,
            (user_id,),
        )
        row = await cur.fetchone()
    await conn.commit()
    if row is None:
        return StoredProgress(user_id=user_id, completed_item_ids=(), total_completed=0, completion_rate=0.0)
    return StoredProgress(
        user_id=row["user_id"],
        completed_item_ids=tuple(str(i) for i in (row["completed_item_ids"] or [])),
        total_completed=int(row["total_completed"]),
        completion_rate=float(row["completion_rate"]),
        last_quest_at=row["last_quest_at"],
        updated_at=row["updated_at"],
    )


async def load_catalog(conn: psycopg.AsyncConnection[Any]) -> list[CatalogRecord]:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute("SELECT id, name FROM quests ORDER BY id")
        rows = await cur.fetchall()
    return [CatalogRecord(id=str(r["id"]), name=str(r["name"])) for r in rows]


async def apply_quest_patch(
    conn: psycopg.AsyncConnection[Any], quest_id: str, patch: dict[str, Any]
) -> int:
    """Overwrite whitelisted columns of one catalog record. Returns rowcount."""
    unknown = sorted(set(patch) - PATCHABLE_QUEST_COLUMNS)
    if unknown:
        raise ValueError(f"patch touches non-patchable columns: {unknown}")
    if not patch:
        raise ValueError("patch must not be empty")

    columns = sorted(patch)
    assignments = sql.SQL(", ").join(
        sql.SQL("{} = %s").format(sql.Identifier(column)) for column in columns
    )
    values = [
        Json(patch[column]) if column in _JSON_QUEST_COLUMNS else patch[column]
        for column in columns
    ]
    query = sql.SQL("UPDATE quests SET {}, updated_at = NOW() WHERE id = %s").format(assignments)
    async with conn.transaction():
        async with conn.cursor() as cur:
            await cur.execute(query, (*values, quest_id))
            return cur.rowcount


class PostgresProgressStore:
    """Connection-per-operation facade used by the save handler and resolver."""

    def __init__(self, database_url: str, *, timeout_seconds: float = 2.0) -> None:
        self.database_url = database_url
        self.timeout_seconds = timeout_seconds

    async def _connect(self) -> psycopg.AsyncConnection[Any]:
        return await psycopg.AsyncConnection.connect(self.database_url)

    async def ping(self) -> bool:
        """Try SELECT 1 within the store timeout. Never raises."""
        try:
            async with asyncio.timeout(self.timeout_seconds):
                async with await psycopg.AsyncConnection.connect(
                    self.database_url, autocommit=True
                ) as conn:
                    await conn.execute("SELECT 1")
            return True
        except Exception:
            logger.debug("Store ping failed", exc_info=True)
            return False

    async def ensure_schema(self) -> None:
        async with await self._connect() as conn:
            await ensure_schema(conn)

    async def replace_completed(
        self,
        user_id: str,
        item_ids: list[str] | tuple[str, ...],
        *,
        correlation_id: str | None = None,
    ) -> ProgressWrite:
        async with await self._connect() as conn:
            return await replace_completed_items(
                conn, user_id, item_ids, correlation_id=correlation_id
            )

    async def get_progress(self, user_id: str) -> StoredProgress:
        async with await self._connect() as conn:
            return await fetch_progress(conn, user_id)

    async def load_catalog(self) -> list[CatalogRecord]:
        async with await self._connect() as conn:
            return await load_catalog(conn)

    async def apply_quest_patch(self, quest_id: str, patch: dict[str, Any]) -> int:
        async with await self._connect() as conn:
            return await apply_quest_patch(conn, quest_id, patch)
