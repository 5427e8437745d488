"""
Gateway client and shared configuration for the app.

Import from here instead of reading the environment in other modules:
    from cloud_app.clients import get_gateway, Gateway, CHAT_MODEL, MAX_GALLERY_IMAGES, ...
"""
import logging
import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
from openai import AsyncOpenAI

load_dotenv()

logger = logging.getLogger(__name__)

# ── Gateway config ────────────────────────────────────────────────────
AI_GATEWAY_URL = os.getenv("AI_GATEWAY_URL", "https://ai.gateway.lovable.dev/v1")
UPSTREAM_TIMEOUT = float(os.getenv("UPSTREAM_TIMEOUT", "60"))

# ── Model config ──────────────────────────────────────────────────────
CHAT_MODEL = os.getenv("CHAT_MODEL", "google/gemini-2.5-flash")
IMAGE_MODEL = os.getenv("IMAGE_MODEL", "google/gemini-2.5-flash-image-preview")
SEARCH_MODEL = os.getenv("SEARCH_MODEL", CHAT_MODEL)

# ── Capability config ─────────────────────────────────────────────────
MAX_GALLERY_IMAGES = int(os.getenv("MAX_GALLERY_IMAGES", "5"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


class ConfigurationError(RuntimeError):
    """Deployment defect, e.g. no gateway API key. Never retried."""


@dataclass(frozen=True)
class GatewayConfig:
    base_url: str
    api_key: str
    chat_model: str = CHAT_MODEL
    image_model: str = IMAGE_MODEL
    search_model: str = SEARCH_MODEL
    timeout: float = UPSTREAM_TIMEOUT
    max_gallery_images: int = MAX_GALLERY_IMAGES


@dataclass(frozen=True)
class Gateway:
    config: GatewayConfig
    client: AsyncOpenAI


def load_gateway_config() -> GatewayConfig:
    api_key = os.getenv("AI_GATEWAY_API_KEY")
    if not api_key:
        logger.error("[CONFIG] AI_GATEWAY_API_KEY is not configured")
        raise ConfigurationError("AI_GATEWAY_API_KEY is not configured")
    return GatewayConfig(base_url=AI_GATEWAY_URL, api_key=api_key)


def build_gateway(config: GatewayConfig, http_client=None) -> Gateway:
    # Single attempt per call; retry is left to the user
    client = AsyncOpenAI(
        api_key=config.api_key,
        base_url=config.base_url,
        timeout=config.timeout,
        max_retries=0,
        http_client=http_client,
    )
    return Gateway(config=config, client=client)


@lru_cache(maxsize=1)
def get_gateway() -> Gateway:
    """Process-wide gateway, built on first use. Also the FastAPI dependency."""
    return build_gateway(load_gateway_config())
