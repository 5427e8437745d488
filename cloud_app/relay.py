"""
Upstream relay: one streaming chat completion, bytes forwarded unmodified.
"""
import logging
from contextlib import AsyncExitStack
from typing import AsyncIterator, Sequence

import httpx
from openai import APIError, APIStatusError

from cloud_app.clients import Gateway
from cloud_protocol.models import ChatTurn

logger = logging.getLogger(__name__)


RATE_LIMIT_MESSAGE = "Rate limit exceeded. Please try again later."
USAGE_LIMIT_MESSAGE = "Usage limit reached. Please add credits to continue."
UNAVAILABLE_MESSAGE = "AI service temporarily unavailable"

WEB_SEARCH_TOOLS = [{"googleSearch": {}}]


class UpstreamError(Exception):
    """Gateway refused or failed the request; carries the caller-visible status."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


def map_upstream_status(status_code: int) -> UpstreamError:
    if status_code == 429:
        return UpstreamError(429, RATE_LIMIT_MESSAGE)
    if status_code == 402:
        return UpstreamError(402, USAGE_LIMIT_MESSAGE)
    return UpstreamError(500, UNAVAILABLE_MESSAGE)


def build_messages(turns: Sequence[ChatTurn], system_prompt: str) -> list:
    return [{"role": "system", "content": system_prompt}] + [t.to_gateway() for t in turns]


async def open_upstream_stream(
    gateway: Gateway,
    turns: Sequence[ChatTurn],
    system_prompt: str,
    tools_enabled: bool = False,
) -> "UpstreamStream":
    """
    Open the streaming completion and return its raw byte stream.

    The request is sent before this returns, so a refused call raises
    UpstreamError here rather than inside the iterator. Single attempt.
    """
    extra_body = {"tools": WEB_SEARCH_TOOLS} if tools_enabled else None
    stack = AsyncExitStack()
    try:
        response = await stack.enter_async_context(
            gateway.client.chat.completions.with_streaming_response.create(
                model=gateway.config.chat_model,
                messages=build_messages(turns, system_prompt),
                stream=True,
                extra_body=extra_body,
            )
        )
    except APIStatusError as e:
        await stack.aclose()
        logger.error(f"[RELAY] gateway error {e.status_code}: {e.message}")
        raise map_upstream_status(e.status_code) from e
    except APIError as e:
        await stack.aclose()
        logger.error(f"[RELAY] gateway unreachable: {type(e).__name__}: {e}")
        raise UpstreamError(500, UNAVAILABLE_MESSAGE) from e

    logger.info(f"[RELAY] streaming {len(turns)} turn(s), web search: {tools_enabled}")
    return UpstreamStream(response, stack)


class UpstreamStream:
    """
    Raw SSE bytes of an opened upstream response.

    Iterating to the end closes the response. A stream that is abandoned
    before or during iteration must be closed with aclose(), which is safe
    to call more than once.
    """

    def __init__(self, response, stack: AsyncExitStack):
        self.response = response
        self._stack = stack

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._forward()

    async def _forward(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self.response.iter_bytes():
                yield chunk
        except httpx.HTTPError as e:
            logger.error(f"[RELAY] upstream stream broke: {type(e).__name__}: {e}")
            raise
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        await self._stack.aclose()
