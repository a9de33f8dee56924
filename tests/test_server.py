"""HTTP surface tests against the FastAPI app with fake backends."""

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from openai import APITimeoutError

from rental_agent.agent import RentalChatAgent
from server import app

from .conftest import FakeChatClient, assistant_message


@pytest.fixture
def chat_client() -> FakeChatClient:
    return FakeChatClient()


@pytest.fixture
def agent(search_service, session_store, chat_client) -> RentalChatAgent:
    agent = RentalChatAgent(search_service, session_store, llm_client=chat_client)
    # ASGITransport does not run the lifespan, so the agent is installed directly.
    app.state.agent = agent
    yield agent
    del app.state.agent


def http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_chat_returns_reply_and_context(agent, chat_client) -> None:
    chat_client.replies.append(assistant_message("Welcome!"))
    async with http_client() as client:
        response = await client.post("/chat", json={"message": "hello", "session_id": "s1"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "Welcome!"
    assert body["session_id"] == "s1"
    assert body["context"] == {
        "tool_calls_made": 0,
        "has_rental_results": False,
        "search_metadata": {"search_performed": False},
    }


@pytest.mark.asyncio
async def test_chat_validation_error_is_400(agent) -> None:
    async with http_client() as client:
        response = await client.post("/chat", json={"message": "  "})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_chat_retryable_upstream_error_is_503(agent, chat_client) -> None:
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    chat_client.replies.append(APITimeoutError(request=request))
    async with http_client() as client:
        response = await client.post("/chat", json={"message": "hello", "session_id": "s1"})

    assert response.status_code == 503
    assert response.json()["detail"]["session_id"] == "s1"


@pytest.mark.asyncio
async def test_search_endpoint_passes_extra_params_as_filters(agent, rental_store) -> None:
    async with http_client() as client:
        response = await client.get("/search", params={"q": "beach", "location": "Porto", "limit": 5})

    assert response.status_code == 200
    body = response.json()
    assert body["filters"] == {"location": "Porto"}
    assert body["count"] == 3
    assert [r["id"] for r in body["results"]] == ["a1", "a2", "b1"]
    assert rental_store.vector_calls[0]["filter"] == {"address.market": {"$eq": "Porto"}}


@pytest.mark.asyncio
async def test_search_endpoint_maps_failures(agent, rental_store, failing_vector_error) -> None:
    async with http_client() as client:
        bad_limit = await client.get("/search", params={"q": "beach", "limit": 0})
        rental_store.vector_error = failing_vector_error
        upstream = await client.get("/search", params={"q": "beach"})

    assert bad_limit.status_code == 400
    assert upstream.status_code == 502


@pytest.mark.asyncio
async def test_history_endpoints(agent, session_store) -> None:
    await session_store.append_message("s1", "user", "hi")
    async with http_client() as client:
        history = await client.get("/chat/history/s1")
        invalid = await client.get("/chat/history/bad!id")
        deleted = await client.delete("/chat/history/s1")
        missing = await client.delete("/chat/history/s1")

    assert history.status_code == 200
    assert [m["content"] for m in history.json()["messages"]] == ["hi"]
    assert invalid.status_code == 400
    assert deleted.json() == {"success": True, "session_id": "s1"}
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_stats_and_health(agent, session_store) -> None:
    await session_store.append_message("s1", "user", "hi")
    async with http_client() as client:
        stats = await client.get("/chat/stats")
        health = await client.get("/health")

    assert stats.json() == {"total_sessions": 1, "total_messages": 1, "avg_messages_per_session": 1}
    assert health.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_user_identity_comes_from_the_auth_header(agent, chat_client, conversations) -> None:
    chat_client.replies.extend([assistant_message("Hi u1"), assistant_message("Hi again")])
    async with http_client() as client:
        await client.post("/chat", json={"message": "hello", "session_id": "s1"}, headers={"X-User-Id": "u1"})
        await client.post("/chat", json={"message": "hello", "session_id": "s2", "user_id": "spoofed"})

    owners = {d["session_id"]: d["owner_user_id"] for d in conversations.docs}
    assert owners == {"s1": "u1", "s2": None}


@pytest.mark.asyncio
async def test_cleanup_purges_sessions_older_than_days_old(agent, session_store, conversations) -> None:
    await session_store.append_message("old", "user", "hi")
    await session_store.append_message("fresh", "user", "hi")
    conversations.docs[0]["metadata"]["last_activity"] = datetime.now(timezone.utc) - timedelta(days=10)

    async with http_client() as client:
        response = await client.post("/chat/cleanup", json={"days_old": 7})
        invalid = await client.post("/chat/cleanup", json={"days_old": 0})

    assert response.status_code == 200
    assert response.json() == {"success": True, "deleted_count": 1, "days_old": 7}
    assert [d["session_id"] for d in conversations.docs] == ["fresh"]
    assert invalid.status_code == 422


@pytest.mark.asyncio
async def test_chat_stream_sends_server_sent_events(agent, chat_client) -> None:
    chat_client.replies.append(assistant_message("Welcome to Porto!"))
    async with http_client() as client:
        response = await client.post(
            "/chat/stream", json={"message": "hello", "session_id": "s1"}, headers={"X-User-Id": "u1"}
        )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    events = [
        json.loads(line[len("data: "):])
        for line in response.text.split("\n\n")
        if line.startswith("data: ")
    ]
    assert events[0] == {"type": "session", "session_id": "s1"}
    assert "".join(e["content"] for e in events if e["type"] == "text") == "Welcome to Porto!"
    assert events[-1]["type"] == "done"
    assert events[-1]["message"] == "Welcome to Porto!"


@pytest.mark.asyncio
async def test_startup_creates_session_indexes(monkeypatch, search_service, session_store, conversations) -> None:
    import server

    agent = RentalChatAgent(search_service, session_store, llm_client=FakeChatClient())
    monkeypatch.setattr(server, "create_agent", lambda: agent)
    monkeypatch.setattr(server, "close_clients", lambda: None)

    async with server.lifespan(app):
        assert app.state.agent is agent
    del app.state.agent

    assert ("session_id", {"unique": True}) in conversations.indexes
