"""
Capability dispatcher: image generation and image search.

Both capabilities are auxiliary. Any failure is logged and degrades to the
plain chat path; nothing raised here reaches the caller.
"""
import json
import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from openai import APIError
from pydantic import BaseModel, Field, ValidationError

from cloud_app.clients import Gateway
from cloud_protocol.markers import AI_IMAGE_TAG, AI_PROMPT_TAG, compose_marker
from cloud_protocol.models import AIImage, ChatFlags, ChatTurn, Intent, IntentKind
from cloud_protocol.sse import single_shot_stream

logger = logging.getLogger(__name__)


GENERATION_CAPTION = "Here's your generated image! ✨"

_JSON_ARRAY_RE = re.compile(r"\[[\s\S]*?\]")


class UpstreamShapeError(ValueError):
    """The gateway answered 2xx but the body lacks the fields we need."""


# ── Response schemas ──────────────────────────────────────────────────

class _ImageUrl(BaseModel):
    url: str = Field(min_length=1)


class _GeneratedImage(BaseModel):
    image_url: _ImageUrl


class _ImageMessage(BaseModel):
    content: Optional[str] = None
    images: List[_GeneratedImage] = Field(min_length=1)


class _ImageChoice(BaseModel):
    message: _ImageMessage


class ImageGenerationResponse(BaseModel):
    choices: List[_ImageChoice] = Field(min_length=1)

    @property
    def first_image_url(self) -> str:
        return self.choices[0].message.images[0].image_url.url


def parse_generation_response(payload) -> str:
    """First image URL of an image-modality completion, or UpstreamShapeError."""
    try:
        return ImageGenerationResponse.model_validate(payload).first_image_url
    except ValidationError as e:
        raise UpstreamShapeError(f"image response missing fields: {e.error_count()} error(s)") from e


# ── Outcome ───────────────────────────────────────────────────────────

@dataclass
class DispatchOutcome:
    """
    synthetic: `body` is a complete SSE stream to return as-is.
    plain: continue to prompt composition + relay, with `image_urls` (maybe empty).
    """
    kind: str
    body: Optional[bytes] = None
    image: Optional[AIImage] = None
    image_urls: List[str] = field(default_factory=list)

    @classmethod
    def plain(cls, image_urls: Optional[List[str]] = None) -> "DispatchOutcome":
        return cls(kind="plain", image_urls=list(image_urls or []))

    @classmethod
    def synthetic(cls, body: bytes, image: AIImage) -> "DispatchOutcome":
        return cls(kind="synthetic", body=body, image=image)

    @property
    def is_synthetic(self) -> bool:
        return self.kind == "synthetic"


# ── Image generation ──────────────────────────────────────────────────

async def generate_image(gateway: Gateway, prompt: str) -> Optional[AIImage]:
    try:
        raw = await gateway.client.chat.completions.with_raw_response.create(
            model=gateway.config.image_model,
            messages=[{"role": "user", "content": f"Generate an image: {prompt}"}],
            extra_body={"modalities": ["image", "text"]},
        )
        url = parse_generation_response(raw.http_response.json())
    except APIError as e:
        logger.warning(f"[DISPATCH] image generation failed upstream: {type(e).__name__}: {e}")
        return None
    except ValueError as e:  # UpstreamShapeError or a non-JSON body
        logger.warning(f"[DISPATCH] image generation returned no image: {e}")
        return None

    logger.info(f"[DISPATCH] image generated for prompt {prompt[:60]!r}")
    return AIImage(url=url, prompt=prompt)


def build_generation_reply(image: AIImage) -> str:
    return (
        f"{compose_marker(AI_IMAGE_TAG, image.url)}\n"
        f"{compose_marker(AI_PROMPT_TAG, image.prompt)}\n\n"
        f"{GENERATION_CAPTION}"
    )


# ── Image search ──────────────────────────────────────────────────────

def build_search_prompt(query: str, limit: int) -> str:
    return (
        f"Find up to {limit} direct image URLs showing: {query}.\n"
        "Prefer stable, publicly hosted sources such as Wikimedia Commons, Unsplash or Pexels. "
        "Each URL must point directly at an image file.\n"
        "Return ONLY a JSON array of URL strings, with no other text. "
        'Example: ["https://upload.wikimedia.org/...jpg", "https://images.unsplash.com/..."]'
    )


def parse_image_urls(text: str, limit: int) -> List[str]:
    """First [...] in the text, parsed, filtered to http(s) strings, truncated."""
    match = _JSON_ARRAY_RE.search(text or "")
    if not match:
        logger.warning("[DISPATCH] image search answer holds no JSON array")
        return []
    try:
        data = json.loads(match.group(0))
    except ValueError as e:
        logger.warning(f"[DISPATCH] image search array is not JSON: {e}")
        return []
    if not isinstance(data, list):
        return []
    urls = [u for u in data if isinstance(u, str) and u.startswith("http")]
    return urls[:limit]


async def search_images(gateway: Gateway, query: str) -> List[str]:
    limit = gateway.config.max_gallery_images
    try:
        completion = await gateway.client.chat.completions.create(
            model=gateway.config.search_model,
            messages=[{"role": "user", "content": build_search_prompt(query, limit)}],
        )
    except APIError as e:
        logger.warning(f"[DISPATCH] image search failed upstream: {type(e).__name__}: {e}")
        return []

    try:
        text = completion.choices[0].message.content or ""
    except (AttributeError, IndexError, TypeError):
        logger.warning("[DISPATCH] image search answer has no message content")
        return []

    urls = parse_image_urls(text, limit)
    logger.info(f"[DISPATCH] image search {query!r} → {len(urls)} url(s)")
    return urls


# ── Dispatch ──────────────────────────────────────────────────────────

async def dispatch(
    intent: Intent,
    turns: Sequence[ChatTurn],
    gateway: Gateway,
    flags: ChatFlags,
) -> DispatchOutcome:
    if not flags.cloud_plus_enabled or intent.kind == IntentKind.NONE:
        return DispatchOutcome.plain()

    if intent.kind == IntentKind.IMAGE_GENERATION:
        image = await generate_image(gateway, intent.query)
        if image is None:
            logger.info("[DISPATCH] generation degraded to plain chat")
            return DispatchOutcome.plain()
        return DispatchOutcome.synthetic(single_shot_stream(build_generation_reply(image)), image)

    urls = await search_images(gateway, intent.query)
    return DispatchOutcome.plain(urls)
