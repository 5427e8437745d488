"""
Pydantic data models for the Cloud chat protocol.
"""
from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Annotated, List, Optional, Dict, Any, Union, Literal

from pydantic import BaseModel, Field, field_validator


# ── Conversation turns ─────────────────────────────────────────────────

class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"          # Only ever built by the relay


class ImageUrl(BaseModel):
    url: str


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str = ""


class ImageUrlPart(BaseModel):
    type: Literal["image_url"] = "image_url"
    image_url: ImageUrl


ContentPart = Annotated[Union[TextPart, ImageUrlPart], Field(discriminator="type")]


class ChatTurn(BaseModel):
    """One message of a conversation, as sent by the client."""
    role: Role
    content: Union[str, List[ContentPart]]

    def text(self) -> str:
        """String content, or the first text part of a multi-part turn."""
        if isinstance(self.content, str):
            return self.content
        for part in self.content:
            if isinstance(part, TextPart):
                return part.text
        return ""

    def to_gateway(self) -> Dict[str, Any]:
        if isinstance(self.content, str):
            return {"role": self.role.value, "content": self.content}
        return {
            "role": self.role.value,
            "content": [part.model_dump() for part in self.content],
        }


# ── Intent ─────────────────────────────────────────────────────────────

class IntentKind(str, Enum):
    NONE = "NONE"
    IMAGE_SEARCH = "IMAGE_SEARCH"
    IMAGE_GENERATION = "IMAGE_GENERATION"


@dataclass(frozen=True)
class Intent:
    kind: IntentKind = IntentKind.NONE
    query: str = ""

    @classmethod
    def none(cls) -> "Intent":
        return cls()

    @classmethod
    def image_search(cls, query: str) -> "Intent":
        return cls(IntentKind.IMAGE_SEARCH, query)

    @classmethod
    def image_generation(cls, prompt: str) -> "Intent":
        return cls(IntentKind.IMAGE_GENERATION, prompt)


# ── Marker payloads ────────────────────────────────────────────────────

# WMO weather-code vocabulary used by the weather provider.
WEATHER_CONDITIONS = (
    "Clear sky",
    "Mainly clear",
    "Partly cloudy",
    "Overcast",
    "Foggy",
    "Depositing rime fog",
    "Light drizzle",
    "Moderate drizzle",
    "Dense drizzle",
    "Light freezing drizzle",
    "Dense freezing drizzle",
    "Slight rain",
    "Moderate rain",
    "Heavy rain",
    "Light freezing rain",
    "Heavy freezing rain",
    "Slight snow fall",
    "Moderate snow fall",
    "Heavy snow fall",
    "Snow grains",
    "Slight rain showers",
    "Moderate rain showers",
    "Violent rain showers",
    "Slight snow showers",
    "Heavy snow showers",
    "Thunderstorm",
    "Thunderstorm with slight hail",
    "Thunderstorm with heavy hail",
)


class WeatherData(BaseModel):
    location: str
    temperature: float         # Always Celsius on the wire
    condition: str
    humidity: float
    windSpeed: float
    icon: str

    @field_validator("icon", mode="before")
    @classmethod
    def _icon_to_str(cls, v: Any) -> Any:
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v

    @property
    def is_known_condition(self) -> bool:
        return self.condition in WEATHER_CONDITIONS


class AIImage(BaseModel):
    url: str
    prompt: str = ""


class MarkerKind(str, Enum):
    WEATHER = "weather"
    IMAGE_GALLERY = "imageGallery"
    AI_IMAGE = "aiImage"


class MarkerBlock(BaseModel):
    kind: MarkerKind
    payload: Union[WeatherData, AIImage, List[str]]


class ExtractionResult(BaseModel):
    clean_text: str
    blocks: List[MarkerBlock] = Field(default_factory=list)

    def _first(self, kind: MarkerKind):
        for block in self.blocks:
            if block.kind == kind:
                return block.payload
        return None

    @property
    def weather(self) -> Optional[WeatherData]:
        return self._first(MarkerKind.WEATHER)

    @property
    def gallery(self) -> Optional[List[str]]:
        return self._first(MarkerKind.IMAGE_GALLERY)

    @property
    def ai_image(self) -> Optional[AIImage]:
        return self._first(MarkerKind.AI_IMAGE)


# ── Streaming ──────────────────────────────────────────────────────────

class StreamState(str, Enum):
    IDLE = "idle"
    BUFFERING = "buffering"
    DONE = "done"
    ERRORED = "errored"


class AssembledMessage(BaseModel):
    """Final outcome of one streamed assistant turn."""
    content: str
    state: StreamState
    substituted: bool = False          # content is a fixed fallback message
    error: Optional[str] = None
    status_code: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.state == StreamState.DONE and not self.substituted


# ── Request options ────────────────────────────────────────────────────

class TemperatureUnit(str, Enum):
    CELSIUS = "celsius"
    FAHRENHEIT = "fahrenheit"


class UserPreferences(BaseModel):
    userName: Optional[str] = None
    pronouns: Optional[str] = None


@dataclass(frozen=True)
class ChatFlags:
    """Per-request switches that shape dispatch, prompt and relay."""
    web_search_enabled: bool = False
    cloud_plus_enabled: bool = False
    is_creator: bool = False
    temperature_unit: TemperatureUnit = TemperatureUnit.CELSIUS
