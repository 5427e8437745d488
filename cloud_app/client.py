"""
Streaming client for the chat relay.

Posts a conversation, folds the SSE response into one assistant message and
reports every intermediate text through `on_update`.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import httpx

from cloud_protocol.models import (
    AssembledMessage,
    ChatTurn,
    StreamState,
    TemperatureUnit,
    UserPreferences,
)
from cloud_protocol.sse import TRANSPORT_ERROR_MESSAGE, StreamReassembler

logger = logging.getLogger(__name__)


RATE_LIMITED_NOTICE = "Too many requests. Please wait a moment."
USAGE_LIMIT_NOTICE = "Please add credits to continue using Cloud."
DEFAULT_FAILURE = "Failed to get response"


class ClientBusyError(RuntimeError):
    """A send is already in flight on this client."""


@dataclass
class ChatOptions:
    web_search_enabled: bool = False
    cloud_plus_enabled: bool = False
    is_creator: bool = False
    temperature_unit: TemperatureUnit = TemperatureUnit.CELSIUS
    preferences: Optional[UserPreferences] = None
    lab_context: Optional[str] = None
    system_context: Optional[str] = None
    conversation_id: Optional[str] = None
    guest_id: Optional[str] = None

    def to_body(self, turns: List[ChatTurn]) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "messages": [t.model_dump(mode="json") for t in turns],
            "webSearchEnabled": self.web_search_enabled,
            "cloudPlusEnabled": self.cloud_plus_enabled,
            "isCreator": self.is_creator,
            "temperatureUnit": self.temperature_unit.value,
        }
        optional = {
            "userPreferences": self.preferences.model_dump(exclude_none=True) if self.preferences else None,
            "labContext": self.lab_context,
            "systemContext": self.system_context,
            "conversationId": self.conversation_id,
            "guestId": self.guest_id,
        }
        body.update({k: v for k, v in optional.items() if v})
        return body


def _error_text(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return DEFAULT_FAILURE
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict):
        error = error.get("message")
    return error if isinstance(error, str) and error else DEFAULT_FAILURE


def status_notice(status_code: Optional[int]) -> Optional[str]:
    """Short user-facing hint for the two quota statuses."""
    if status_code == 429:
        return RATE_LIMITED_NOTICE
    if status_code == 402:
        return USAGE_LIMIT_NOTICE
    return None


class CloudChatClient:
    def __init__(self, base_url: str, http_client: Optional[httpx.AsyncClient] = None, timeout: float = 120.0):
        self.base_url = base_url.rstrip("/")
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_http = http_client is None
        self.is_loading = False
        self.conversation_id: Optional[str] = None

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> "CloudChatClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def send(
        self,
        turns: List[ChatTurn],
        options: Optional[ChatOptions] = None,
        on_update: Optional[Callable[[str], None]] = None,
    ) -> AssembledMessage:
        """
        Send the conversation and stream the reply.

        Never raises for server or transport failures: those come back as an
        ERRORED message. Raises ClientBusyError if a send is already running.
        """
        if self.is_loading:
            raise ClientBusyError("a message is already being sent")
        options = options or ChatOptions()
        self.is_loading = True
        reassembler = StreamReassembler(on_update=on_update)
        try:
            async with self._http.stream(
                "POST", f"{self.base_url}/chat", json=options.to_body(turns)
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    error = _error_text(response)
                    logger.warning(f"[CLIENT] chat failed {response.status_code}: {error}")
                    return AssembledMessage(
                        content=error,
                        state=StreamState.ERRORED,
                        substituted=True,
                        error=error,
                        status_code=response.status_code,
                    )

                conversation_id = response.headers.get("X-Conversation-Id")
                if conversation_id:
                    self.conversation_id = conversation_id

                # Read to the end even after [DONE] so the server can finish saving
                async for chunk in response.aiter_bytes():
                    reassembler.feed(chunk)
            return reassembler.finish()
        except httpx.HTTPError as e:
            message = reassembler.fail(e)
            message.error = str(e) or TRANSPORT_ERROR_MESSAGE
            return message
        finally:
            self.is_loading = False
