"""
System prompt composition for the chat relay.

compose_system_prompt() concatenates fixed fragments in a fixed order. It is a
pure function: identical inputs always give byte-identical output.
"""
import json
from typing import List, Optional, Tuple

from cloud_protocol.markers import GALLERY_TAG, WEATHER_TAG
from cloud_protocol.models import (
    ChatFlags,
    TemperatureUnit,
    UserPreferences,
    WEATHER_CONDITIONS,
)


BASE_PERSONA = (
    "You are Cloud, a helpful and friendly AI assistant created by Panagiotis. "
    "When anyone asks who made you, who created you, or who your creator is, "
    "always respond that you were made by Panagiotis."
)

DEFAULT_USER_NAME = "User"
UNSET_PRONOUNS = "prefer not to say"

CREATOR_FRAGMENT = (
    "You are speaking with your creator. Be extra warm, friendly, and appreciative. "
    "Address them as your creator and show gratitude for creating you."
)

TEMPERATURE_FRAGMENTS = {
    TemperatureUnit.CELSIUS: (
        "Always give temperatures in Celsius (°C) in your written answers."
    ),
    TemperatureUnit.FAHRENHEIT: (
        "Always give temperatures in Fahrenheit (°F) in your written answers."
    ),
}

WEB_SEARCH_FRAGMENT = (
    "You have access to current web information. When users ask questions, search the web "
    "for the most up-to-date information and cite your sources. Be conversational but informative."
)

BUILT_IN_KNOWLEDGE_FRAGMENT = (
    "Answer from your built-in knowledge. You provide clear, concise, and accurate responses. "
    "Be conversational but informative."
)

_WEATHER_EXAMPLE = (
    '{"location": "City, Country", "temperature": 18, "condition": "Partly cloudy", '
    '"humidity": 60, "windSpeed": 10, "icon": "2"}'
)


# ── Fragments ─────────────────────────────────────────────────────────

def build_name_fragment(preferences: Optional[UserPreferences]) -> Optional[str]:
    if not preferences or not preferences.userName:
        return None
    name = preferences.userName.strip()
    if not name or name == DEFAULT_USER_NAME:
        return None
    return f"The user's name is {name}. Address them by name when appropriate."


def build_pronoun_fragment(preferences: Optional[UserPreferences]) -> Optional[str]:
    if not preferences or not preferences.pronouns:
        return None
    pronouns = preferences.pronouns.strip()
    if not pronouns or pronouns.lower() == UNSET_PRONOUNS:
        return None
    return f"The user's pronouns are {pronouns}. Use them when referring to the user."


def build_gallery_fragment(image_urls: List[str]) -> Optional[str]:
    """Instruct the model to open its reply with the gallery marker."""
    if not image_urls:
        return None
    urls = json.dumps(image_urls)
    return (
        "IMAGE RESULTS: Images were found for the user's request. "
        "You MUST begin your reply with the following line, exactly as written, "
        "as the very first content of your answer:\n"
        f"[{GALLERY_TAG}]{urls}[/{GALLERY_TAG}]\n"
        "After that line, describe what the images show in natural language. "
        "Do not list the URLs again."
    )


def build_lab_fragment(lab_context: Optional[str]) -> Optional[str]:
    if not lab_context or not lab_context.strip():
        return None
    return (
        "KNOWLEDGE BASE: The user has attached the following reference material. "
        "Use it to answer when it is relevant and prefer it over general knowledge.\n"
        f"{lab_context}"
    )


def build_weather_fragment() -> str:
    conditions = ", ".join(f'"{c}"' for c in WEATHER_CONDITIONS)
    return (
        "WEATHER PROTOCOL: Whenever the user asks about the weather anywhere, include exactly one "
        f"[{WEATHER_TAG}]...[/{WEATHER_TAG}] block in your reply containing a single JSON object "
        "with these fields: location (string), temperature (number, degrees Celsius), "
        "condition (string), humidity (number, percent), windSpeed (number, km/h), icon (string).\n"
        f"Example: [{WEATHER_TAG}]{_WEATHER_EXAMPLE}[/{WEATHER_TAG}]\n"
        f"condition MUST be one of: {conditions}.\n"
        "If you do not have live weather data, give a plausible estimate for the location and "
        "season and say clearly in your text that the values are estimates."
    )


def build_lab_context(name: Optional[str], entries: List[Tuple[str, str, str, Optional[str]]]) -> str:
    """
    Assemble knowledge-base entries into one delimited context block.

    entries: (type, title, content, source_url) tuples, in display order.
    """
    if not entries:
        return ""
    lines = [f"[LAB CONTEXT: {name or 'Knowledge Base'}]", ""]
    for entry_type, title, content, url in entries:
        lines.append(f"--- {entry_type.upper()}: {title} ---")
        if url:
            lines.append(f"Source: {url}")
        lines.append(content)
        lines.append("")
    lines.append("[END LAB CONTEXT]")
    return "\n".join(lines) + "\n"


# ── Composition ───────────────────────────────────────────────────────

def compose_system_prompt(
    flags: ChatFlags,
    preferences: Optional[UserPreferences] = None,
    image_urls: Optional[List[str]] = None,
    lab_context: Optional[str] = None,
    system_context: Optional[str] = None,
) -> str:
    fragments = [
        BASE_PERSONA,
        build_name_fragment(preferences),
        build_pronoun_fragment(preferences),
        CREATOR_FRAGMENT if flags.is_creator else None,
        TEMPERATURE_FRAGMENTS[flags.temperature_unit],
        build_gallery_fragment(image_urls or []),
        system_context.strip() if system_context and system_context.strip() else None,
        build_lab_fragment(lab_context),
        build_weather_fragment(),
        WEB_SEARCH_FRAGMENT if flags.web_search_enabled else BUILT_IN_KNOWLEDGE_FRAGMENT,
    ]
    return "\n\n".join(f for f in fragments if f)
