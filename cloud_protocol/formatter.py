"""
Plain-text rendering of extracted marker blocks.

Used by the terminal client; a browser client would render the same blocks
as widgets.
"""
import math
from typing import List

from cloud_protocol.models import AIImage, ExtractionResult, TemperatureUnit, WeatherData


_CONDITION_ICONS = [
    (("thunder", "lightning"), "⛈"),
    (("rain", "drizzle"), "🌧"),
    (("snow", "sleet"), "🌨"),
    (("cloud", "overcast"), "☁"),
    (("clear", "sunny"), "☀"),
]


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def format_temperature(celsius: float, unit: TemperatureUnit = TemperatureUnit.CELSIUS) -> str:
    if unit == TemperatureUnit.FAHRENHEIT:
        return f"{_round_half_up(celsius * 9 / 5 + 32)}°F"
    return f"{_round_half_up(celsius)}°C"


def condition_icon(condition: str) -> str:
    lowered = condition.lower()
    for keywords, icon in _CONDITION_ICONS:
        if any(k in lowered for k in keywords):
            return icon
    return "☁"


def format_weather(weather: WeatherData, unit: TemperatureUnit = TemperatureUnit.CELSIUS) -> str:
    lines = [
        f"{condition_icon(weather.condition)}  {weather.location}",
        f"   {format_temperature(weather.temperature, unit)}  {weather.condition}",
        f"   Humidity {_round_half_up(weather.humidity)}%  ·  Wind {_round_half_up(weather.windSpeed)} km/h",
    ]
    return "\n".join(lines)


def format_gallery(urls: List[str]) -> str:
    if not urls:
        return ""
    lines = [f"Images ({len(urls)}):"]
    lines.extend(f"  {i}. {url}" for i, url in enumerate(urls, 1))
    return "\n".join(lines)


def format_ai_image(image: AIImage) -> str:
    lines = ["Generated image:"]
    if image.prompt:
        lines.append(f"  prompt: {image.prompt}")
    url = image.url
    if url.startswith("data:"):
        url = url[:48] + "…"
    lines.append(f"  {url}")
    return "\n".join(lines)


def format_reply(result: ExtractionResult, unit: TemperatureUnit = TemperatureUnit.CELSIUS) -> str:
    """Widgets first (gallery, generated image), then prose, then weather."""
    sections = []
    if result.gallery:
        sections.append(format_gallery(result.gallery))
    if result.ai_image:
        sections.append(format_ai_image(result.ai_image))
    if result.clean_text:
        sections.append(result.clean_text)
    if result.weather:
        sections.append(format_weather(result.weather, unit))
    return "\n\n".join(sections)
