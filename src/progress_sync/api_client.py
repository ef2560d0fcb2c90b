"""Thin async HTTP client for the save endpoint and the liveness probe."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .errors import (
    PersistenceError,
    TransientDeliveryError,
    ValidationError,
    classify_status_code,
)
from .models import SaveIntent, SaveResult

logger = logging.getLogger(__name__)


class SaveApiClient:
    """Wraps httpx.AsyncClient; maps every failure onto the error taxonomy."""

    def __init__(
        self,
        base_url: str,
        *,
        save_timeout: float = 10.0,
        probe_timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.save_timeout = save_timeout
        self.probe_timeout = probe_timeout
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    async def __aenter__(self) -> SaveApiClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def post_save(self, intent: SaveIntent, correlation_id: str) -> SaveResult:
        """Deliver one save. Raises TransientDeliveryError, ValidationError or PersistenceError."""
        try:
            response = await self._client.post(
                "/api/progress",
                json=intent.to_request(correlation_id),
                timeout=self.save_timeout,
            )
        except httpx.TimeoutException as exc:
            raise TransientDeliveryError(f"save timed out after {self.save_timeout}s") from exc
        except httpx.HTTPError as exc:
            raise TransientDeliveryError(f"save request failed: {exc!r}") from exc

        body = _json_or_empty(response)
        if response.is_success:
            try:
                return SaveResult(
                    correlation_id=str(body["correlationId"]),
                    applied_count=int(body["appliedCount"]),
                )
            except (KeyError, TypeError, ValueError) as exc:
                raise TransientDeliveryError(
                    "save response missing correlationId/appliedCount",
                    status_code=response.status_code,
                ) from exc

        message = str(body.get("error") or f"HTTP {response.status_code}")
        kind = classify_status_code(response.status_code, body.get("errorKind"))
        if kind == "validation":
            raise ValidationError(message, details=body.get("details") or {})
        if kind == "persistence":
            raise PersistenceError(message, details=body.get("details") or {})
        raise TransientDeliveryError(message, status_code=response.status_code)

    async def fetch_liveness(self) -> tuple[int, dict[str, Any]]:
        """GET /health with the short probe timeout."""
        try:
            response = await self._client.get("/health", timeout=self.probe_timeout)
        except httpx.TimeoutException as exc:
            raise TransientDeliveryError(f"probe timed out after {self.probe_timeout}s") from exc
        except httpx.HTTPError as exc:
            raise TransientDeliveryError(f"probe request failed: {exc!r}") from exc
        return response.status_code, _json_or_empty(response)


def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
