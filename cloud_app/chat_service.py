import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, List, Optional

from pydantic import BaseModel, Field

from cloud_app.capabilities import dispatch
from cloud_app.clients import Gateway
from cloud_app.database import (
    create_conversation,
    get_conversation,
    create_message,
    update_conversation_title,
    generate_title_from_message,
    conversation_belongs_to_guest,
)
from cloud_app.prompt_builder import compose_system_prompt
from cloud_app.relay import UpstreamStream, open_upstream_stream
from cloud_protocol.intent import classify
from cloud_protocol.markers import strip_markers
from cloud_protocol.models import (
    ChatFlags,
    ChatTurn,
    Intent,
    Role,
    TemperatureUnit,
    UserPreferences,
)
from cloud_protocol.sse import StreamReassembler

logger = logging.getLogger(__name__)


class ConversationNotFoundError(LookupError):
    pass


class ConversationAccessError(PermissionError):
    pass


class ChatRequest(BaseModel):
    messages: List[ChatTurn] = Field(..., min_length=1)
    webSearchEnabled: bool = False
    systemContext: Optional[str] = None
    userPreferences: Optional[UserPreferences] = None
    isCreator: bool = False
    temperatureUnit: TemperatureUnit = TemperatureUnit.CELSIUS
    labContext: Optional[str] = None
    cloudPlusEnabled: bool = False
    conversationId: Optional[str] = None
    guestId: Optional[str] = None

    def flags(self) -> ChatFlags:
        return ChatFlags(
            web_search_enabled=self.webSearchEnabled,
            cloud_plus_enabled=self.cloudPlusEnabled,
            is_creator=self.isCreator,
            temperature_unit=self.temperatureUnit,
        )


@dataclass
class ChatStream:
    body: AsyncIterable[bytes]
    conversation_id: Optional[str]
    intent: Intent
    upstream: Optional[UpstreamStream] = None

    async def aclose(self) -> None:
        """Release the upstream response even if the body was never iterated."""
        if self.upstream is not None:
            await self.upstream.aclose()


# ── Persistence ───────────────────────────────────────────────────────

def _stored_content(turn: ChatTurn):
    if isinstance(turn.content, str):
        return turn.content
    return [part.model_dump() for part in turn.content]


def _check_conversation(request: ChatRequest) -> None:
    """Reject unknown or foreign conversation ids before any gateway call."""
    conversation_id = request.conversationId
    if not conversation_id:
        return
    if not get_conversation(conversation_id):
        raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
    if not conversation_belongs_to_guest(conversation_id, request.guestId):
        raise ConversationAccessError(f"Access denied to conversation {conversation_id}")


def _save_user_turn(request: ChatRequest) -> Optional[str]:
    """Create the conversation if needed and save the new user turn."""
    conversation_id = request.conversationId
    last = request.messages[-1]

    if not conversation_id:
        if not request.guestId:
            return None
        conversation_id = create_conversation(guest_id=request.guestId)
        title = generate_title_from_message(strip_markers(last.text(), placeholders=False))
        update_conversation_title(conversation_id, title)
        logger.info(f"[STORE] new conversation {conversation_id} for guest {request.guestId}")

    if last.role == Role.USER:
        create_message(conversation_id, Role.USER.value, _stored_content(last))
    return conversation_id


async def _single_chunk(body: bytes) -> AsyncIterator[bytes]:
    yield body


async def _save_reply(body: AsyncIterable[bytes], conversation_id: str) -> AsyncIterator[bytes]:
    """Pass bytes through untouched while assembling the reply for the store."""
    reassembler = StreamReassembler()
    async for chunk in body:
        reassembler.feed(chunk)
        yield chunk

    message = reassembler.finish()
    if message.ok and message.content:
        await asyncio.to_thread(create_message, conversation_id, Role.ASSISTANT.value, message.content)
    else:
        logger.info(f"[STORE] no assistant text to save for {conversation_id}")


# ── Pipeline ──────────────────────────────────────────────────────────

async def handle_chat(request: ChatRequest, gateway: Gateway) -> ChatStream:
    """
    One chat turn: classify → dispatch → compose → relay, strictly in order.

    Raises UpstreamError when the gateway refuses the streaming call, and
    ConversationNotFoundError / ConversationAccessError for bad history ids.
    Nothing is written to the store unless the reply body is in hand, so a
    refused turn can be retried without leaving a conversation behind.
    Store calls run in a worker thread.
    """
    await asyncio.to_thread(_check_conversation, request)
    flags = request.flags()

    intent = classify(request.messages)
    outcome = await dispatch(intent, request.messages, gateway, flags)
    logger.info(f"[PIPELINE] intent={intent.kind.value} outcome={outcome.kind}")

    upstream: Optional[UpstreamStream] = None
    if outcome.is_synthetic:
        body = _single_chunk(outcome.body)
    else:
        system_prompt = compose_system_prompt(
            flags,
            preferences=request.userPreferences,
            image_urls=outcome.image_urls,
            lab_context=request.labContext,
            system_context=request.systemContext,
        )
        upstream = await open_upstream_stream(
            gateway, request.messages, system_prompt, tools_enabled=flags.web_search_enabled
        )
        body = upstream

    try:
        conversation_id = await asyncio.to_thread(_save_user_turn, request)
    except sqlite3.Error:
        if upstream is not None:
            await upstream.aclose()
        raise

    if conversation_id:
        body = _save_reply(body, conversation_id)
    return ChatStream(body=body, conversation_id=conversation_id, intent=intent, upstream=upstream)
