"""
Tests for the HTTP surface. The app's proxy global is swapped for one wired
to a temp store and a mock upstream; the startup lifespan is not run.
"""

import httpx
import pytest
from fastapi.testclient import TestClient

from chatrelay import main
from chatrelay.storage.models import ChatMessage
from conftest import content_frame, make_proxy, parse_sse, sse_body


@pytest.fixture
def client(store, seeded, accountant, monkeypatch):
    def handler(request):
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=sse_body(content_frame("Hello"), content_frame(" world")),
        )

    monkeypatch.setattr(main, "proxy", make_proxy(store, accountant, handler))
    return TestClient(main.app)


def test_chat_message_streams_events(client, seeded):
    resp = client.post("/api/chat/message", json={
        "user_id": seeded["user"].id,
        "role_id": seeded["role"].id,
        "model_id": seeded["model"].id,
        "chat_id": "web-1",
        "content": "hi",
    })

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.headers["cache-control"] == "no-cache"
    events = parse_sse(resp.text)
    assert [e["type"] for e in events] == ["start", "message_delta", "message_delta", "end"]


def test_chat_message_invalid_body(client):
    resp = client.post("/api/chat/message", json={"content": "no chat id"})
    assert resp.status_code == 400
    assert resp.json()["code"] == 1


def test_chat_message_invalid_json(client):
    resp = client.post(
        "/api/chat/message",
        content=b"{not json",
        headers={"content-type": "application/json"},
    )
    assert resp.status_code == 400


def test_stop_always_succeeds(client):
    resp = client.get("/api/chat/stop", params={"session_id": "unknown"})
    assert resp.json() == {"code": 0, "message": "success"}
    assert client.get("/api/chat/stop").json()["code"] == 0


def test_tokens_for_text(client):
    resp = client.post("/api/chat/tokens", json={"text": "count these four words", "model": "gpt-4o"})
    assert resp.json() == {"code": 0, "message": "success", "data": 4}


def test_tokens_for_last_message(client, store, seeded):
    store.save_message(ChatMessage(user_id=seeded["user"].id, chat_id="c1", content="x", tokens=17))
    resp = client.post("/api/chat/tokens", json={"chat_id": "c1", "user_id": seeded["user"].id})
    assert resp.json()["data"] == 17


def test_tokens_for_missing_chat(client, seeded):
    resp = client.post("/api/chat/tokens", json={"chat_id": "nope", "user_id": seeded["user"].id})
    assert resp.status_code == 400
    assert resp.json()["code"] == 1


def test_health(client):
    resp = client.get("/api/health")
    assert resp.json()["status"] == "ok"
    assert resp.json()["active_sessions"] == 0


def test_tokens_rejects_non_integer_user(client):
    resp = client.post("/api/chat/tokens", json={"chat_id": "c1", "user_id": "abc"})
    assert resp.status_code == 400
    assert resp.json()["message"] == "user_id must be an integer"
