"""
In-band marker protocol.

The model (and the synthesized image-generation reply) embeds structured
payloads inside the plain-text answer:

    [WEATHER_DATA]{"location": ..., "temperature": ..., ...}[/WEATHER_DATA]
    [IMAGE_GALLERY]["https://...", ...][/IMAGE_GALLERY]
    [AI_GENERATED_IMAGE]<url>[/AI_GENERATED_IMAGE]
    [AI_IMAGE_PROMPT]<text>[/AI_IMAGE_PROMPT]

extract() pulls valid blocks out of the text and leaves anything it cannot
parse exactly where it was (fail open).
"""
import json
import logging
import re
from typing import Any, List, Optional, Tuple

from pydantic import ValidationError

from cloud_protocol.models import (
    AIImage,
    ExtractionResult,
    MarkerBlock,
    MarkerKind,
    WeatherData,
)

logger = logging.getLogger(__name__)


WEATHER_TAG = "WEATHER_DATA"
GALLERY_TAG = "IMAGE_GALLERY"
AI_IMAGE_TAG = "AI_GENERATED_IMAGE"
AI_PROMPT_TAG = "AI_IMAGE_PROMPT"

IMAGE_GENERATED_PLACEHOLDER = "[Image generated]"
IMAGES_FOUND_PLACEHOLDER = "[Images found]"


def _span_pattern(tag: str) -> "re.Pattern[str]":
    return re.compile(rf"\[{tag}\]([\s\S]*?)\[/{tag}\]")


_WEATHER_RE = _span_pattern(WEATHER_TAG)
_GALLERY_RE = _span_pattern(GALLERY_TAG)
_AI_IMAGE_RE = _span_pattern(AI_IMAGE_TAG)
_AI_PROMPT_RE = _span_pattern(AI_PROMPT_TAG)

_IMAGE_URL_RE = re.compile(r"^(?:https?://\S+|data:image/[\w.+-]+;base64,\S+)$")


def compose_marker(tag: str, payload: Any) -> str:
    """Wrap a payload in [TAG]...[/TAG]. Strings are embedded verbatim."""
    body = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
    return f"[{tag}]{body}[/{tag}]"


# ── Payload parsers (parsed value, or None to pass through raw) ───────

def parse_weather(raw: str) -> Optional[WeatherData]:
    try:
        data = json.loads(raw)
    except ValueError as e:
        logger.warning(f"[MARKERS] weather payload is not JSON: {e}")
        return None
    if not isinstance(data, dict):
        logger.warning("[MARKERS] weather payload is not an object")
        return None
    try:
        weather = WeatherData.model_validate(data)
    except ValidationError as e:
        logger.warning(f"[MARKERS] weather payload rejected: {e.error_count()} error(s)")
        return None
    if not weather.is_known_condition:
        logger.info(f"[MARKERS] weather condition outside vocabulary: {weather.condition!r}")
    return weather


def parse_gallery(raw: str) -> Optional[List[str]]:
    try:
        data = json.loads(raw)
    except ValueError as e:
        logger.warning(f"[MARKERS] gallery payload is not JSON: {e}")
        return None
    if not isinstance(data, list):
        logger.warning("[MARKERS] gallery payload is not an array")
        return None
    return [url for url in data if isinstance(url, str)]


def parse_ai_image_url(raw: str) -> Optional[str]:
    url = raw.strip()
    if not _IMAGE_URL_RE.match(url):
        logger.warning(f"[MARKERS] generated image marker holds no usable URL: {url[:60]!r}")
        return None
    return url


# ── Extraction ────────────────────────────────────────────────────────

def _extract_kind(text: str, pattern, parse) -> Tuple[str, list]:
    """Remove every span of one kind whose payload parses; keep the others."""
    found = []

    def _replace(match: "re.Match[str]") -> str:
        value = parse(match.group(1))
        if value is None:
            return match.group(0)
        found.append(value)
        return ""

    return pattern.sub(_replace, text), found


def _extract_ai_images(text: str) -> Tuple[str, List[AIImage]]:
    images: List[AIImage] = []

    def _replace(match: "re.Match[str]") -> str:
        url = parse_ai_image_url(match.group(1))
        if url is None:
            return match.group(0)
        images.append(AIImage(url=url))
        return ""

    text = _AI_IMAGE_RE.sub(_replace, text)
    if not images:
        return text, images

    # The prompt sibling only travels with an extracted image
    prompt_match = _AI_PROMPT_RE.search(text)
    if prompt_match:
        images[0].prompt = prompt_match.group(1).strip()
        text = _AI_PROMPT_RE.sub("", text)
    return text, images


def _extract_pass(text: str) -> Tuple[str, List[MarkerBlock]]:
    blocks: List[MarkerBlock] = []

    text, images = _extract_ai_images(text)
    blocks.extend(MarkerBlock(kind=MarkerKind.AI_IMAGE, payload=img) for img in images)

    text, galleries = _extract_kind(text, _GALLERY_RE, parse_gallery)
    blocks.extend(MarkerBlock(kind=MarkerKind.IMAGE_GALLERY, payload=urls) for urls in galleries)

    text, reports = _extract_kind(text, _WEATHER_RE, parse_weather)
    blocks.extend(MarkerBlock(kind=MarkerKind.WEATHER, payload=w) for w in reports)

    return text, blocks


def extract(text: str) -> ExtractionResult:
    """
    Split a reassembled reply into display text and marker blocks.

    Each marker kind is handled independently. A span whose payload fails to
    parse is left in the text untouched and produces no block. Passes repeat
    until one finds nothing, since removing an inner span can make an outer
    span of another kind valid; running extract() on its own output is
    therefore a no-op.
    """
    blocks: List[MarkerBlock] = []
    while True:
        text, found = _extract_pass(text)
        if not found:
            break
        blocks.extend(found)
    return ExtractionResult(clean_text=text.strip(), blocks=blocks)


def strip_markers(text: str, placeholders: bool = True) -> str:
    """
    Flatten all marker spans for plain-text output, valid or not.

    With placeholders, generated images and galleries leave a short note
    behind; prompts and weather payloads are dropped.
    """
    image_note = IMAGE_GENERATED_PLACEHOLDER if placeholders else ""
    gallery_note = IMAGES_FOUND_PLACEHOLDER if placeholders else ""
    text = _AI_IMAGE_RE.sub(image_note, text)
    text = _AI_PROMPT_RE.sub("", text)
    text = _GALLERY_RE.sub(gallery_note, text)
    text = _WEATHER_RE.sub("", text)
    return text.strip()
