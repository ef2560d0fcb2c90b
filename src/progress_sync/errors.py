"""Stable error taxonomy for saves and catalog fixes."""

from __future__ import annotations

from typing import Literal

ErrorKind = Literal[
    "validation",
    "transient",
    "persistence",
    "resolution_miss",
    "other",
]

ERROR_KINDS: tuple[ErrorKind, ...] = (
    "validation",
    "transient",
    "persistence",
    "resolution_miss",
    "other",
)


class SyncError(Exception):
    """Base class for all progress sync failures."""

    error_kind: ErrorKind = "other"

    def __init__(self, message: str, *, details: dict[str, object] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {"error": self.message, "errorKind": self.error_kind}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(SyncError):
    """Malformed request. Rejected wholesale, never retried."""

    error_kind = "validation"


class TransientDeliveryError(SyncError):
    """Timeout, refused connection or 5xx. Retried, then queued."""

    error_kind = "transient"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.status_code = status_code


class PersistenceError(SyncError):
    """Store rejected a valid write. Surfaced, not retried by the handler."""

    error_kind = "persistence"


class ResolutionMiss(SyncError):
    """No catalog record matched a quest fix. Non-fatal."""

    error_kind = "resolution_miss"


def classify_status_code(status_code: int, error_kind: str | None = None) -> ErrorKind:
    """Map an HTTP response from the save endpoint to an error kind.

    A server-declared errorKind wins for statuses the server can produce with
    a body; otherwise the status code decides.
    """
    normalized = str(error_kind or "").strip().lower()
    if normalized in ("validation", "persistence"):
        return normalized  # type: ignore[return-value]
    if status_code in (400, 413, 422):
        return "validation"
    if status_code in (408, 429) or status_code >= 500:
        return "transient"
    return "other"
