"""Durable local save queue.

A JSON file holding at most one pending save per user, in enqueue order.
A newer intent for a user supersedes the older entry and moves to the back
of the queue. Entries never expire; they leave the queue only on a confirmed
server acknowledgment or an explicit discard.

Writes go through a temp file + os.replace so a crash mid-write leaves the
previous queue intact.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from .models import QueuedSave

logger = logging.getLogger(__name__)

QUEUE_FILE_VERSION = 1


def _atomic_write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(content, encoding="utf-8")
    os.replace(tmp, path)


class DurableSaveQueue:
    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._entries: list[QueuedSave] = self._load()

    def _load(self) -> list[QueuedSave]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            entries = [QueuedSave.from_record(r) for r in raw.get("entries", [])]
        except (OSError, ValueError, KeyError, TypeError, AttributeError):
            corrupt = self.path.with_suffix(self.path.suffix + ".corrupt")
            logger.error(
                "Save queue at %s is unreadable; moved aside to %s",
                self.path,
                corrupt,
                exc_info=True,
            )
            os.replace(self.path, corrupt)
            return []

        # One entry per user: keep the last one written
        latest: dict[str, QueuedSave] = {}
        for entry in entries:
            latest.pop(entry.user_id, None)
            latest[entry.user_id] = entry
        if entries:
            logger.info("Loaded %d queued save(s) from %s", len(latest), self.path)
        return list(latest.values())

    def _persist(self) -> None:
        payload = {
            "version": QUEUE_FILE_VERSION,
            "entries": [entry.to_record() for entry in self._entries],
        }
        _atomic_write(self.path, json.dumps(payload, indent=2))

    def __len__(self) -> int:
        return len(self._entries)

    def entries(self) -> list[QueuedSave]:
        """Snapshot, oldest first."""
        return list(self._entries)

    def get(self, user_id: str) -> QueuedSave | None:
        for entry in self._entries:
            if entry.user_id == user_id:
                return entry
        return None

    def put(self, entry: QueuedSave) -> None:
        """Enqueue, superseding any older entry for the same user."""
        superseded = self.get(entry.user_id)
        self._entries = [e for e in self._entries if e.user_id != entry.user_id]
        self._entries.append(entry)
        self._persist()
        if superseded is not None:
            logger.info(
                "Queued save for user %s superseded %s",
                entry.user_id,
                superseded.correlation_id,
                extra={"sync_correlation_id": entry.correlation_id, "sync_user_id": entry.user_id},
            )

    def update(self, entry: QueuedSave) -> None:
        """Rewrite an existing entry in place (keeps its queue position)."""
        for i, existing in enumerate(self._entries):
            if existing.correlation_id == entry.correlation_id:
                self._entries[i] = entry
                self._persist()
                return
        self.put(entry)

    def remove(self, user_id: str, correlation_id: str | None = None) -> bool:
        """Drop the user's entry; with correlation_id, only if it still matches."""
        kept = [
            e
            for e in self._entries
            if not (
                e.user_id == user_id
                and (correlation_id is None or e.correlation_id == correlation_id)
            )
        ]
        if len(kept) == len(self._entries):
            return False
        self._entries = kept
        self._persist()
        return True
