"""Tests for HTTP routing and the raw asyncio server."""

import asyncio
import json

import httpx
import psycopg
import pytest

from progress_sync.fix_resolver import FixStatusHolder
from progress_sync.health_monitor import HealthMonitor
from progress_sync.models import FixRunStatus, MatchMethod, QuestFixResult, SaveIntent
from progress_sync.save_handler import SaveEndpointHandler
from progress_sync.save_pipeline import SavePipeline
from progress_sync.save_queue import DurableSaveQueue
from progress_sync.server import MAX_BODY_BYTES, ProgressSyncApp, start_server

from .conftest import make_client


def _result(name="Debut", drifted=False, applied=True):
    return QuestFixResult(
        display_name=name,
        known_id="old",
        resolved_id="new" if drifted else "old",
        match_method=MatchMethod.NORMALIZED_NAME if drifted else MatchMethod.EXACT_ID,
        id_drifted=drifted,
        applied=applied,
        failure_reason=None if applied else "no catalog record matched",
    )


@pytest.fixture
def holder():
    return FixStatusHolder()


@pytest.fixture
def app(store, holder):
    return ProgressSyncApp(SaveEndpointHandler(store), holder)


def _body(payload):
    return json.dumps(payload).encode()


class TestLiveness:
    async def test_ok(self, app):
        status, payload = await app.dispatch("GET", "/health", b"")
        assert status == 200
        assert payload["ok"] is True and payload["storeReachable"] is True

    async def test_store_unreachable_is_503(self, app, store):
        store.reachable = False
        status, payload = await app.dispatch("GET", "/health", b"")
        assert status == 503
        assert payload["storeReachable"] is False

    async def test_method_not_allowed(self, app):
        status, _ = await app.dispatch("POST", "/health", b"")
        assert status == 405


class TestReports:
    async def test_fix_status_pending_until_published(self, app, holder):
        status, payload = await app.dispatch("GET", "/api/fix-status", b"")
        assert status == 503
        assert payload["error"] == "fix_run_pending"

        holder.publish(FixRunStatus.from_results([_result()]))
        status, payload = await app.dispatch("GET", "/api/fix-status", b"")
        assert status == 200
        assert payload["total"] == 1 and payload["successful"] == 1

    async def test_aggregate_level_degraded_on_drift(self, app, holder):
        holder.publish(FixRunStatus.from_results([_result(drifted=True)]))
        status, payload = await app.dispatch("GET", "/api/health", b"")
        assert status == 200
        assert payload["level"] == "degraded"
        assert payload["fixStatus"]["idChanges"] == 1
        assert "saves_applied" in payload["metrics"]

    async def test_aggregate_level_error_when_store_down(self, app, store):
        store.reachable = False
        status, payload = await app.dispatch("GET", "/api/health", b"")
        assert status == 503
        assert payload["level"] == "error"


class TestProgressRoutes:
    async def test_save_then_read(self, app):
        status, payload = await app.dispatch(
            "POST", "/api/progress", _body({"userId": "u1", "completedItemIds": ["a", "b"]})
        )
        assert status == 200
        assert payload["appliedCount"] == 2
        assert payload["correlationId"]

        status, payload = await app.dispatch("GET", "/api/progress?userId=u1", b"")
        assert status == 200
        assert payload["completedItemIds"] == ["a", "b"]
        assert payload["totalCompleted"] == 2

    async def test_invalid_save_is_400_validation(self, app, store):
        status, payload = await app.dispatch(
            "POST", "/api/progress", _body({"userId": "u1", "completedItemIds": ["ok", "b a d"]})
        )
        assert status == 400
        assert payload["errorKind"] == "validation"
        assert payload["details"]["errors"]
        assert "u1" not in store.progress

    async def test_non_json_body_is_400(self, app):
        status, payload = await app.dispatch("POST", "/api/progress", b"{nope")
        assert status == 400
        assert payload["errorKind"] == "validation"

    async def test_persistence_failure_is_500(self, app, store):
        store.fail_writes_with = psycopg.OperationalError("connection lost")
        status, payload = await app.dispatch(
            "POST", "/api/progress", _body({"userId": "u1", "completedItemIds": ["a"]})
        )
        assert status == 500
        assert payload["errorKind"] == "persistence"

    async def test_get_without_user_is_400(self, app):
        status, _ = await app.dispatch("GET", "/api/progress", b"")
        assert status == 400

    async def test_reset(self, app, store):
        await app.dispatch("POST", "/api/progress", _body({"userId": "u1", "completedItemIds": ["a"]}))
        status, payload = await app.dispatch("POST", "/api/reset-progress", _body({"userId": "u1"}))
        assert status == 200
        assert payload["appliedCount"] == 0
        assert store.progress["u1"] == ()

    async def test_unknown_route_is_404(self, app):
        status, _ = await app.dispatch("GET", "/api/nothing", b"")
        assert status == 404


async def test_pipeline_against_endpoint_add_then_remove(app, tmp_path, store):
    """Client pipeline posting straight into the endpoint handler."""

    async def route(request: httpx.Request) -> httpx.Response:
        status, payload = await app.dispatch(
            request.method, request.url.raw_path.decode(), request.content
        )
        return httpx.Response(status, json=payload)

    client = make_client(route)
    monitor = HealthMonitor(client)
    pipeline = SavePipeline(client, DurableSaveQueue(tmp_path / "queue.json"), monitor)

    first = await pipeline.submit(SaveIntent(user_id="u1", completed_item_ids=("a", "b")))
    assert first.outcome.success and first.outcome.applied_count == 2

    second = await pipeline.submit(SaveIntent(user_id="u1", completed_item_ids=("a",)))
    assert second.outcome.success and second.outcome.applied_count == 1

    status, payload = await app.dispatch("GET", "/api/progress?userId=u1", b"")
    assert status == 200 and payload["completedItemIds"] == ["a"]
    await client.aclose()


class TestSocketServer:
    async def test_round_trip_over_tcp(self, app):
        server = await start_server(app, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{port}") as client:
                saved = await client.post(
                    "/api/progress", json={"userId": "u1", "completedItemIds": ["a"]}
                )
                health = await client.get("/health")
        finally:
            server.close()
            await server.wait_closed()

        assert saved.status_code == 200
        assert saved.json()["appliedCount"] == 1
        assert health.status_code == 200
        assert health.json()["storeReachable"] is True

    async def test_oversized_body_is_413(self, app):
        server = await start_server(app, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", port)
            writer.write(
                b"POST /api/progress HTTP/1.1\r\n"
                b"Host: localhost\r\n"
                + f"Content-Length: {MAX_BODY_BYTES + 1}\r\n\r\n".encode()
            )
            await writer.drain()
            response = await reader.read()
            writer.close()
            await writer.wait_closed()
        finally:
            server.close()
            await server.wait_closed()

        assert response.startswith(b"HTTP/1.1 413")
        assert b'"errorKind": "validation"' in response
