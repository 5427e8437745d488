"""
End-to-end scenarios: CloudChatClient → FastAPI app (ASGI) → scripted gateway.

Each scenario drives the full turn: classify → dispatch → compose → relay →
reassemble → extract.
"""
import json

import httpx
import pytest

from cloud_app.client import ChatOptions, CloudChatClient
from cloud_app.clients import get_gateway
from cloud_app.main import app
from cloud_protocol.intent import classify
from cloud_protocol.markers import extract
from cloud_protocol.models import ChatTurn, Intent, Role, StreamState
from cloud_protocol.sse import encode_delta, DONE_FRAME
from gateway_stub import completion_json, sse_chunks

pytestmark = pytest.mark.anyio

PARIS_REPLY = (
    "It's lovely! [WEATHER_DATA]{\"location\":\"Paris, France\",\"temperature\":18,"
    "\"condition\":\"Partly cloudy\",\"humidity\":60,\"windSpeed\":10,\"icon\":\"2\"}[/WEATHER_DATA]"
)

PANDA_URLS = [f"https://upload.wikimedia.org/red_panda_{i}.jpg" for i in range(5)]


@pytest.fixture
def asgi_http(gateway):
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://cloud.test")
    app.dependency_overrides.clear()


@pytest.fixture
def chat_client(asgi_http):
    return CloudChatClient("http://cloud.test", http_client=asgi_http)


def user(text):
    return [ChatTurn(role=Role.USER, content=text)]


def system_prompt_of(request_body):
    first = request_body["messages"][0]
    assert first["role"] == "system"
    return first["content"]


async def test_paris_weather(chat_client, stub):
    # Deltas cut through the marker and the JSON payload
    stub.stream_chunks = sse_chunks(PARIS_REPLY[:20], PARIS_REPLY[20:57], PARIS_REPLY[57:])

    message = await chat_client.send(user("What's the weather in Paris?"))
    assert message.ok

    result = extract(message.content)
    assert result.clean_text == "It's lovely!"
    assert len(result.blocks) == 1
    assert result.weather.temperature == 18
    assert result.weather.location == "Paris, France"


async def test_paris_weather_with_byte_level_splits(chat_client, stub):
    raw = encode_delta(PARIS_REPLY) + DONE_FRAME
    stub.stream_chunks = [raw[i:i + 7] for i in range(0, len(raw), 7)]

    message = await chat_client.send(user("What's the weather in Paris?"))
    assert message.content == PARIS_REPLY


async def test_red_panda_search(chat_client, stub):
    turns = user("show me pictures of red pandas")
    assert classify(turns) == Intent.image_search("red pandas")

    stub.search_body = completion_json(json.dumps(PANDA_URLS))
    stub.stream_chunks = sse_chunks(
        f"[IMAGE_GALLERY]{json.dumps(PANDA_URLS)}[/IMAGE_GALLERY]\n",
        "Red pandas are small arboreal mammals.",
    )

    message = await chat_client.send(turns, ChatOptions(cloud_plus_enabled=True))

    assert len(stub.search_requests) == 1
    assert "red pandas" in stub.search_requests[0]["messages"][0]["content"]

    prompt = system_prompt_of(stub.stream_requests[0])
    assert f"[IMAGE_GALLERY]{json.dumps(PANDA_URLS)}[/IMAGE_GALLERY]" in prompt
    assert [prompt.index(u) for u in PANDA_URLS] == sorted(prompt.index(u) for u in PANDA_URLS)

    result = extract(message.content)
    assert result.gallery == PANDA_URLS
    assert result.clean_text == "Red pandas are small arboreal mammals."


async def test_search_without_cloud_plus_is_plain_chat(chat_client, stub):
    await chat_client.send(user("show me pictures of red pandas"), ChatOptions(cloud_plus_enabled=False))
    assert stub.search_requests == []
    assert "IMAGE RESULTS" not in system_prompt_of(stub.stream_requests[0])


async def test_generation_success_is_single_frame(chat_client, stub):
    message = await chat_client.send(user("generate an image of a sunset"), ChatOptions(cloud_plus_enabled=True))

    assert stub.stream_requests == []
    assert stub.image_requests[0]["modalities"] == ["image", "text"]

    result = extract(message.content)
    assert result.ai_image.url == "https://img.test/generated.png"
    assert result.ai_image.prompt == "a sunset"
    assert result.clean_text == "Here's your generated image! ✨"


async def test_generation_failure_falls_back_to_streamed_chat(asgi_http, stub):
    stub.image_status = 500
    stub.image_body = {"error": {"message": "model overloaded"}}
    stub.stream_chunks = sse_chunks("I couldn't draw that, ", "but here is ", "a description.")

    async with asgi_http.stream("POST", "/chat", json={
        "messages": [{"role": "user", "content": "generate an image of a sunset"}],
        "cloudPlusEnabled": True,
    }) as response:
        assert response.status_code == 200
        body = b"".join([chunk async for chunk in response.aiter_bytes()])
    frames = [f for f in body.split(b"\n\n") if f]

    assert len(stub.image_requests) == 1
    assert len(stub.stream_requests) == 1
    assert len(frames) == 4
    assert "[AI_GENERATED_IMAGE]" not in body.decode()


async def test_rate_limit_reaches_client(chat_client, stub):
    stub.stream_status = 429
    message = await chat_client.send(user("hi"))
    assert message.state == StreamState.ERRORED
    assert message.status_code == 429
    assert message.content == "Rate limit exceeded. Please try again later."
