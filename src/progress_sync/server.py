"""Minimal async HTTP server for the save endpoint, liveness and reports.

Uses raw asyncio.start_server, one request per connection, JSON bodies.
"""

import asyncio
import json
import logging
from typing import Any
from urllib.parse import parse_qs, urlsplit

from .errors import SyncError, ValidationError
from .fix_resolver import FixStatusHolder
from .health_report import build_health_report
from .save_handler import SaveEndpointHandler

logger = logging.getLogger(__name__)

MAX_BODY_BYTES = 1024 * 1024
_READ_TIMEOUT_SECONDS = 5

_REASONS = {
    200: "OK",
    400: "Bad Request",
    404: "Not Found",
    405: "Method Not Allowed",
    413: "Payload Too Large",
    500: "Internal Server Error",
    503: "Service Unavailable",
}


def _status_for(exc: SyncError) -> int:
    # PersistenceError and anything unexpected are server-side
    return 400 if isinstance(exc, ValidationError) else 500


class ProgressSyncApp:
    """Routes parsed requests to the save handler and the status surfaces."""

    def __init__(self, handler: SaveEndpointHandler, fix_status: FixStatusHolder) -> None:
        self.handler = handler
        self.fix_status = fix_status

    async def dispatch(
        self, method: str, target: str, body: bytes
    ) -> tuple[int, dict[str, Any]]:
        parts = urlsplit(target)
        path = parts.path.rstrip("/") or "/"
        query = parse_qs(parts.query)

        try:
            if path == "/health":
                if method != "GET":
                    return 405, {"error": "method_not_allowed", "errorKind": "bad_request"}
                liveness = await self.handler.status()
                return (200 if liveness["storeReachable"] else 503), liveness

            if path == "/api/health":
                liveness = await self.handler.status()
                report = build_health_report(liveness, self.fix_status.status)
                return (503 if report["level"] == "error" else 200), report

            if path == "/api/fix-status":
                status = self.fix_status.status
                if status is None:
                    return 503, {"error": "fix_run_pending", "errorKind": "not_ready"}
                return 200, status.to_dict()

            if path == "/api/progress" and method == "POST":
                result = await self.handler.handle(_decode_json(body))
                return 200, result.to_payload()

            if path == "/api/progress" and method == "GET":
                user_id = (query.get("userId") or [None])[0]
                progress = await self.handler.get_progress(user_id)
                return 200, progress.to_payload()

            if path == "/api/reset-progress" and method == "POST":
                result = await self.handler.reset(_decode_json(body))
                return 200, result.to_payload()
        except SyncError as exc:
            return _status_for(exc), exc.to_payload()

        return 404, {"error": "not_found", "errorKind": "not_found"}


def _decode_json(body: bytes) -> Any:
    if not body:
        raise ValidationError("request body is required")
    try:
        return json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationError(f"request body is not valid JSON: {exc}") from exc


def _render(status: int, payload: dict[str, Any]) -> bytes:
    body = json.dumps(payload, default=str).encode("utf-8")
    head = (
        f"HTTP/1.1 {status} {_REASONS.get(status, 'Unknown')}\r\n"
        "Content-Type: application/json\r\n"
        f"Content-Length: {len(body)}\r\n"
        "Connection: close\r\n\r\n"
    )
    return head.encode("ascii") + body


async def _read_request(reader: asyncio.StreamReader) -> tuple[str, str, bytes] | int:
    """Parse request line, headers and body. Returns an error status on failure."""
    request_line = await asyncio.wait_for(reader.readline(), timeout=_READ_TIMEOUT_SECONDS)
    parts = request_line.decode("latin-1").strip().split()
    if len(parts) < 2:
        return 400
    method, target = parts[0].upper(), parts[1]

    content_length = 0
    while True:
        line = await asyncio.wait_for(reader.readline(), timeout=_READ_TIMEOUT_SECONDS)
        if line in (b"\r\n", b"\n", b""):
            break
        name, _, value = line.decode("latin-1").partition(":")
        if name.strip().lower() == "content-length":
            try:
                content_length = int(value.strip())
            except ValueError:
                return 400

    if content_length > MAX_BODY_BYTES:
        return 413
    body = b""
    if content_length > 0:
        body = await asyncio.wait_for(
            reader.readexactly(content_length), timeout=_READ_TIMEOUT_SECONDS
        )
    return method, target, body


async def _handle_connection(
    app: ProgressSyncApp,
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
) -> None:
    try:
        parsed = await _read_request(reader)
        if isinstance(parsed, int):
            status, payload = parsed, {"error": _REASONS[parsed].lower(), "errorKind": "validation"}
        else:
            method, target, body = parsed
            status, payload = await app.dispatch(method, target, body)
        writer.write(_render(status, payload))
        await writer.drain()
    except Exception:
        logger.exception("Request handling failed")
        try:
            writer.write(_render(500, {"error": "internal_error", "errorKind": "other"}))
            await writer.drain()
        except ConnectionError:
            pass
    finally:
        writer.close()
        await writer.wait_closed()


async def start_server(app: ProgressSyncApp, host: str, port: int) -> asyncio.Server:
    """Start the HTTP server. Returns the asyncio.Server for lifecycle management."""

    async def handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        await _handle_connection(app, reader, writer)

    server = await asyncio.start_server(handler, host, port)
    logger.info("Progress sync server listening on %s:%d", host, port)
    return server
