"""
API contract integration tests.

Uses FastAPI TestClient, no running server required. The gateway dependency
is overridden with the scripted stub from conftest.
Tests cover /api/v1 routes, the relay error bodies and the centralised error
envelope.
"""
import pytest
from fastapi.testclient import TestClient

from cloud_app.clients import ConfigurationError, get_gateway
from cloud_app.main import app
from cloud_app.relay import RATE_LIMIT_MESSAGE, UNAVAILABLE_MESSAGE, USAGE_LIMIT_MESSAGE
from cloud_protocol.sse import reassemble
from gateway_stub import sse_chunks

client = TestClient(app)


@pytest.fixture
def use_stub(gateway):
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield gateway
    app.dependency_overrides.clear()


def chat_payload(text="Hello", **extra):
    return {"messages": [{"role": "user", "content": text}], **extra}


def test_health():
    response = client.get("/api/v1/health")
    assert response.status_code == 200
    assert response.json() == {"ok": True}


def test_config():
    response = client.get("/api/v1/config")
    assert response.status_code == 200
    data = response.json()

    assert set(data["models"]) == {"chat", "image", "search"}
    assert data["features"]["image_generation"] is True
    assert data["max_gallery_images"] == 5


class TestChat:
    def test_streams_upstream_bytes(self, use_stub, stub):
        response = client.post("/api/v1/chat", json=chat_payload())
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.content == b"".join(stub.stream_chunks)
        assert "x-conversation-id" not in response.headers

    def test_legacy_route(self, use_stub):
        response = client.post("/chat", json=chat_payload())
        assert response.status_code == 200
        assert reassemble([response.content]).content == "Hello there!"

    def test_validation_error(self, use_stub):
        response = client.post("/api/v1/chat", json={"webSearchEnabled": True})
        assert response.status_code == 422

        data = response.json()
        assert data["error"]["code"] == "VALIDATION_ERROR"
        assert "message" in data["error"]
        assert "details" in data["error"]

    def test_empty_message_list_rejected(self, use_stub):
        response = client.post("/api/v1/chat", json={"messages": []})
        assert response.status_code == 422

    def test_bad_content_part_rejected(self, use_stub):
        payload = {"messages": [{"role": "user", "content": [{"type": "video", "url": "x"}]}]}
        assert client.post("/api/v1/chat", json=payload).status_code == 422

    @pytest.mark.parametrize("upstream,status,message", [
        (429, 429, RATE_LIMIT_MESSAGE),
        (402, 402, USAGE_LIMIT_MESSAGE),
        (500, 500, UNAVAILABLE_MESSAGE),
        (418, 500, UNAVAILABLE_MESSAGE),
    ])
    def test_upstream_errors(self, use_stub, stub, upstream, status, message):
        stub.stream_status = upstream
        response = client.post("/api/v1/chat", json=chat_payload())
        assert response.status_code == status
        assert response.json() == {"error": message}

    def test_missing_api_key(self):
        def broken_gateway():
            raise ConfigurationError("AI_GATEWAY_API_KEY is not configured")

        app.dependency_overrides[get_gateway] = broken_gateway
        try:
            response = client.post("/api/v1/chat", json=chat_payload())
        finally:
            app.dependency_overrides.clear()
        assert response.status_code == 500
        assert response.json() == {"error": "AI_GATEWAY_API_KEY is not configured"}

    def test_web_search_flag_reaches_gateway(self, use_stub, stub):
        client.post("/api/v1/chat", json=chat_payload(webSearchEnabled=True))
        assert stub.stream_requests[0]["tools"] == [{"googleSearch": {}}]


class TestPersistence:
    def test_guest_chat_creates_conversation(self, use_stub, stub, fresh_db):
        stub.stream_chunks = sse_chunks("Hi ", "Ada")
        response = client.post("/api/v1/chat", json=chat_payload("Hello, who are you?", guestId="g1"))
        assert response.status_code == 200
        cid = response.headers["x-conversation-id"]

        conv = fresh_db.get_conversation(cid)
        assert conv["guest_id"] == "g1"
        assert conv["title"] == "Hello, who are you?"

        messages = fresh_db.get_messages(cid)
        assert [(m["role"], m["content"]) for m in messages] == [
            ("user", "Hello, who are you?"),
            ("assistant", "Hi Ada"),
        ]

    def test_empty_reply_is_not_saved(self, use_stub, stub, fresh_db):
        stub.stream_chunks = sse_chunks()
        response = client.post("/api/v1/chat", json=chat_payload(guestId="g1"))
        cid = response.headers["x-conversation-id"]
        assert [m["role"] for m in fresh_db.get_messages(cid)] == ["user"]

    def test_continue_conversation(self, use_stub, fresh_db):
        cid = fresh_db.create_conversation(guest_id="g1", title="t")
        response = client.post("/api/v1/chat", json=chat_payload(conversationId=cid, guestId="g1"))
        assert response.headers["x-conversation-id"] == cid
        assert len(fresh_db.get_messages(cid)) == 2

    def test_foreign_conversation_forbidden(self, use_stub, stub, fresh_db):
        cid = fresh_db.create_conversation(guest_id="owner")
        response = client.post("/api/v1/chat", json=chat_payload(conversationId=cid, guestId="intruder"))
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "ACCESS_DENIED"
        assert stub.requests == []
        assert fresh_db.get_messages(cid) == []

    def test_unknown_conversation(self, use_stub, fresh_db):
        response = client.post("/api/v1/chat", json=chat_payload(conversationId="nope"))
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_refused_turns_leave_no_orphans(self, use_stub, stub, fresh_db):
        stub.stream_status = 429
        for _ in range(3):
            response = client.post("/api/v1/chat", json=chat_payload(guestId="g1"))
            assert response.status_code == 429
            assert "x-conversation-id" not in response.headers

        listed = client.get("/api/v1/conversations", params={"guest_id": "g1"}).json()
        assert listed == {"conversations": []}

        stub.stream_status = 200
        response = client.post("/api/v1/chat", json=chat_payload(guestId="g1"))
        cid = response.headers["x-conversation-id"]
        assert [m["role"] for m in fresh_db.get_messages(cid)] == ["user", "assistant"]


class TestConversationRoutes:
    def test_list_requires_guest(self, fresh_db):
        assert client.get("/api/v1/conversations").json() == {"conversations": []}

    def test_list_for_guest(self, fresh_db):
        cid = fresh_db.create_conversation(guest_id="g1", title="Weather")
        data = client.get("/api/v1/conversations", params={"guest_id": "g1"}).json()
        assert [c["id"] for c in data["conversations"]] == [cid]
        assert data["conversations"][0]["title"] == "Weather"

    def test_messages_include_display_and_blocks(self, fresh_db):
        cid = fresh_db.create_conversation(guest_id="g1")
        fresh_db.create_message(cid, "user", "What's the weather in Paris?")
        fresh_db.create_message(
            cid, "assistant",
            'It\'s lovely! [WEATHER_DATA]{"location":"Paris, France","temperature":18,'
            '"condition":"Partly cloudy","humidity":60,"windSpeed":10,"icon":"2"}[/WEATHER_DATA]',
        )
        fresh_db.create_message(cid, "user", [{"type": "text", "text": "and this?"},
                                              {"type": "image_url", "image_url": {"url": "https://x/y.png"}}])

        response = client.get(f"/api/v1/conversations/{cid}/messages", params={"guest_id": "g1"})
        assert response.status_code == 200
        messages = response.json()["messages"]

        assert messages[0]["display"] == "What's the weather in Paris?"
        assert messages[0]["blocks"] == []
        assert messages[1]["display"] == "It's lovely!"
        assert messages[1]["blocks"][0]["kind"] == "weather"
        assert messages[1]["blocks"][0]["payload"]["temperature"] == 18
        assert messages[2]["display"] == "and this?"

    def test_messages_forbidden_for_other_guest(self, fresh_db):
        cid = fresh_db.create_conversation(guest_id="g1")
        response = client.get(f"/api/v1/conversations/{cid}/messages", params={"guest_id": "g2"})
        assert response.status_code == 403

    def test_delete(self, fresh_db):
        cid = fresh_db.create_conversation(guest_id="g1")
        assert client.delete(f"/api/v1/conversations/{cid}", params={"guest_id": "g2"}).status_code == 403
        response = client.delete(f"/api/v1/conversations/{cid}", params={"guest_id": "g1"})
        assert response.json() == {"status": "deleted"}
        assert fresh_db.get_conversation(cid) is None
