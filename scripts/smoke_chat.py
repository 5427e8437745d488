#!/usr/bin/env python3
"""
Smoke test against a running relay.

Usage:
    python scripts/smoke_chat.py [BASE_URL]
"""
import sys
import uuid

import requests

from cloud_protocol.markers import extract
from cloud_protocol.sse import reassemble

BASE_URL = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8000"


def stream_chat(payload):
    response = requests.post(f"{BASE_URL}/chat", json=payload, stream=True, timeout=120)
    if response.status_code != 200:
        print(f"❌ /chat failed: {response.status_code}")
        print(response.text)
        sys.exit(1)
    message = reassemble(response.iter_content(chunk_size=None))
    return response.headers.get("X-Conversation-Id"), message


def main():
    print("🧪 Starting Cloud Smoke Test...\n")

    health = requests.get(f"{BASE_URL}/health", timeout=10)
    if health.status_code != 200 or not health.json().get("ok"):
        print(f"❌ Health check failed: {health.status_code}")
        sys.exit(1)
    print("✅ Health OK")

    guest_id = f"smoke-{uuid.uuid4().hex[:8]}"

    print("📝 Turn 1: 'Hello, who made you?'")
    conversation_id, message = stream_chat({
        "messages": [{"role": "user", "content": "Hello, who made you?"}],
        "guestId": guest_id,
    })
    if not message.ok:
        print(f"❌ Turn 1 returned fallback: {message.content}")
        sys.exit(1)
    print(f"✅ Turn 1 successful! Conversation ID: {conversation_id}")
    print(f"📄 Answer preview: {message.content[:150]}...\n")

    print("📝 Turn 2: 'What's the weather in Paris?'")
    _, message = stream_chat({
        "messages": [
            {"role": "user", "content": "Hello, who made you?"},
            {"role": "assistant", "content": message.content},
            {"role": "user", "content": "What's the weather in Paris?"},
        ],
        "conversationId": conversation_id,
        "guestId": guest_id,
    })
    result = extract(message.content)
    if result.weather:
        print(f"✅ Weather block: {result.weather.location} {result.weather.temperature}°C {result.weather.condition}")
    else:
        print("⚠️  No weather block in reply (model did not follow the protocol)")
    print(f"📄 Text: {result.clean_text[:150]}\n")

    history = requests.get(f"{BASE_URL}/conversations/{conversation_id}/messages",
                           params={"guest_id": guest_id}, timeout=10)
    count = len(history.json().get("messages", []))
    print(f"✅ Stored messages: {count}")

    requests.delete(f"{BASE_URL}/conversations/{conversation_id}", params={"guest_id": guest_id}, timeout=10)
    print("🧹 Conversation deleted")
    print("\n🎉 Smoke test passed!")


if __name__ == "__main__":
    main()
