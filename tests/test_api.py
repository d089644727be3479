"""Tests for REST API endpoints and the HTTP SDK."""

from __future__ import annotations

import json
import time
from collections import deque

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

import plannerai.api.app as api_module
from plannerai.api.app import app
from plannerai.config import settings
from plannerai.core.ai_logger import AiLogger, DatabaseLogSink, MemoryLogSink
from plannerai.core.dispatcher import ToolDispatcher
from plannerai.core.tool_registry import registry
from plannerai.sdk import PlannerClient

USER = "api-user"


@pytest_asyncio.fixture
async def client(repository, tracker, session_factory):
    """ASGI client against a dispatcher backed by this test's database."""
    db_sink = DatabaseLogSink(session_factory)
    app.state.dispatcher = ToolDispatcher(
        repository,
        tracker=tracker,
        ai_logger=AiLogger(sinks=[MemoryLogSink(), db_sink]),
        retry_backoff_seconds=0.0,
    )

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    await db_sink.flush()
    app.state.dispatcher = None


def dispatch_body(tool_name, parameters, conversation_id="c1"):
    return {
        "toolName": tool_name,
        "parameters": parameters,
        "userId": USER,
        "conversationId": conversation_id,
    }


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_list_tools(client):
    resp = await client.get("/api/v1/tools")
    assert resp.status_code == 200
    data = resp.json()
    assert data["count"] == len(registry.names())
    assert {t["name"] for t in data["tools"]} >= {"create_task", "search_entities", "get_statistics"}

    resp = await client.get("/api/v1/tools", params={"format": "function"})
    [first, *_] = resp.json()["tools"]
    assert first["type"] == "function"
    assert "parameters" in first["function"]


@pytest.mark.asyncio
async def test_list_tools_rejects_unknown_format(client):
    resp = await client.get("/api/v1/tools", params={"format": "xml"})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_dispatch_create_and_search(client):
    resp = await client.post(
        "/api/v1/tools/dispatch",
        json=dispatch_body("create_task", {"tasks": [{"title": "Team meeting prep", "priority": "high"}]}),
    )
    assert resp.status_code == 200
    assert resp.json()["success"] is True

    resp = await client.post(
        "/api/v1/tools/dispatch",
        json=dispatch_body("search_entities", {"query": "meeting"}),
    )
    data = resp.json()
    assert data["success"] is True
    assert [t["title"] for t in data["data"]["task"]] == ["Team meeting prep"]


@pytest.mark.asyncio
async def test_dispatch_failure_is_still_200(client):
    resp = await client.post(
        "/api/v1/tools/dispatch",
        json=dispatch_body("create_task", {"tasks": []}),
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is False
    assert data["error"]["kind"] == "validation_error"


@pytest.mark.asyncio
async def test_dispatch_turn_runs_in_order(client):
    resp = await client.post(
        "/api/v1/tools/dispatch-turn",
        json={
            "userId": USER,
            "conversationId": "turn-1",
            "calls": [
                {"toolName": "create_task", "parameters": {"tasks": [{"title": "Renew passport"}]}},
                {
                    "toolName": "update_task",
                    "parameters": {"taskIdentifier": "it", "updates": {"status": "done"}},
                },
            ],
        },
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["count"] == 2
    assert [r["success"] for r in data["results"]] == [True, True]
    assert data["results"][1]["data"]["updated"]["status"] == "done"


@pytest.mark.asyncio
async def test_dispatch_turn_rejects_non_object_parameters(client):
    resp = await client.post(
        "/api/v1/tools/dispatch-turn",
        json={"userId": USER, "calls": [{"toolName": "create_task", "parameters": "oops"}]},
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_logs_memory_and_db(client):
    await client.post("/api/v1/tools/dispatch", json=dispatch_body("search_entities", {"query": "x"}))

    memory = (await client.get("/api/v1/logs", params={"tool_name": "search_entities"})).json()
    assert memory["source"] == "memory"
    assert memory["count"] >= 2
    assert memory["failedWrites"] == 0
    assert memory["events"][0]["message"] == "Tool called: search_entities"

    db = (await client.get("/api/v1/logs", params={"source": "db", "conversation_id": "c1"})).json()
    assert db["source"] == "db"
    assert any(e["message"].startswith("Tool result: search_entities") for e in db["events"])


@pytest.mark.asyncio
async def test_replay_endpoint(client):
    await client.post("/api/v1/tools/dispatch", json=dispatch_body("query_entities", {"entityTypes": ["task"]}))

    resp = await client.post(
        "/api/v1/replay",
        json={"userId": USER, "conversationId": "c1", "targetConversationId": "c1-replay"},
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["replayConversationId"] == "c1-replay"
    assert data["calls"] == 1
    assert data["diverged"] == 0

    missing = await client.post("/api/v1/replay", json={"userId": USER, "conversationId": "nope"})
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_dispatcher_missing_returns_503(client):
    app.state.dispatcher = None
    resp = await client.post("/api/v1/tools/dispatch", json=dispatch_body("query_entities", {}))
    assert resp.status_code == 503


@pytest.mark.asyncio
async def test_api_key_required_when_configured(client, monkeypatch):
    monkeypatch.setattr(settings, "api_key", "s3cret")

    denied = await client.get("/api/v1/tools")
    allowed = await client.get("/api/v1/tools", headers={"Authorization": "Bearer s3cret"})
    health = await client.get("/health")

    assert denied.status_code == 401
    assert allowed.status_code == 200
    assert health.status_code == 200


def test_sdk_sends_identity_and_auth():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"success": True, "data": {"ok": 1}})

    with PlannerClient(
        "http://planner.test/",
        api_key="k",
        user_id="u1",
        conversation_id="c1",
        transport=httpx.MockTransport(handler),
    ) as sdk:
        result = sdk.dispatch("query_entities", {"entityTypes": ["note"]})
        sdk.dispatch("query_entities", conversation_id="other")

    assert result["data"] == {"ok": 1}
    first, second = seen
    assert first.url.path == "/api/v1/tools/dispatch"
    assert first.headers["Authorization"] == "Bearer k"
    assert json.loads(first.content) == {
        "toolName": "query_entities",
        "parameters": {"entityTypes": ["note"]},
        "userId": "u1",
        "conversationId": "c1",
    }
    assert json.loads(second.content)["conversationId"] == "other"


def test_sdk_error_carries_detail():
    transport = httpx.MockTransport(lambda request: httpx.Response(401, json={"detail": "Invalid or missing API key"}))
    with PlannerClient("http://planner.test", transport=transport) as sdk:
        with pytest.raises(httpx.HTTPStatusError) as exc_info:
            sdk.list_tools()
    assert "Invalid or missing API key" in str(exc_info.value)
    assert exc_info.value.response.status_code == 401


@pytest.mark.asyncio
async def test_health_reports_dispatcher_ready(client):
    assert (await client.get("/health")).json()["dispatcher"] == "ready"


@pytest.mark.asyncio
async def test_rate_limit_is_per_user(client, monkeypatch):
    monkeypatch.setattr(settings, "rate_limit", 2)
    alice = {"X-User-Id": "rate-alice"}
    bob = {"X-User-Id": "rate-bob"}

    codes = [(await client.get("/api/v1/tools", headers=alice)).status_code for _ in range(3)]
    other = await client.get("/api/v1/tools", headers=bob)

    assert codes == [200, 200, 429]
    assert other.status_code == 200
    limited = await client.get("/api/v1/tools", headers=alice)
    assert int(limited.headers["Retry-After"]) >= 1


@pytest.mark.asyncio
async def test_rate_limit_forgets_idle_callers(client, monkeypatch):
    monkeypatch.setattr(settings, "rate_limit", 5)
    monkeypatch.setattr(api_module, "_recent_requests", {})
    stale = time.monotonic() - api_module.RATE_WINDOW_SECONDS - 1
    for n in range(3):
        api_module._recent_requests[f"user:gone-{n}"] = deque([stale])

    resp = await client.get("/api/v1/tools", headers={"X-User-Id": "rate-carol"})

    assert resp.status_code == 200
    assert list(api_module._recent_requests) == ["user:rate-carol"]
