"""
Terminal chat with Cloud.

Usage:
    cloud-chat --url http://localhost:8000 --web-search --unit fahrenheit
    cloud-chat --lab notes.md --lab faq.txt --no-cloud-plus
"""
import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

from cloud_app.client import ChatOptions, CloudChatClient, status_notice
from cloud_app.clients import CHAT_MODEL
from cloud_app.prompt_builder import build_lab_context
from cloud_protocol.formatter import format_reply
from cloud_protocol.markers import extract
from cloud_protocol.models import ChatTurn, Role, TemperatureUnit, UserPreferences
from cloud_protocol.sse import upsert_assistant_turn


VERSION = "1.0.0"

BANNER = [
    "═══════════════════════════════════════════════════════",
    "  CLOUD AI - CLI MODE",
    "═══════════════════════════════════════════════════════",
    "",
    "Type your message and press Enter to chat.",
    "Type 'help' for available commands.",
    "Type 'clear' to clear the conversation.",
    "Type 'exit' to close the CLI.",
    "",
]

HELP = [
    "Available commands:",
    "  help    - Show this help message",
    "  clear   - Start a new conversation",
    "  exit    - Close the CLI",
    "  about   - About Cloud AI",
    "",
    "Or just type any message to chat with Cloud!",
]


def about_lines(model: str = CHAT_MODEL) -> List[str]:
    return [
        "╔══════════════════════════════════════╗",
        "║         CLOUD AI - CLI MODE          ║",
        "╠══════════════════════════════════════╣",
        f"  Version: {VERSION}",
        "  Creator: Panagiotis",
        f"  Model:   {model}",
        "╚══════════════════════════════════════╝",
    ]


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="cloud-chat", description="Chat with Cloud from the terminal.")
    ap.add_argument("--url", default="http://localhost:8000", help="Base URL of the chat relay")
    ap.add_argument("--web-search", action="store_true", help="Let the model search the web")
    ap.add_argument("--no-cloud-plus", action="store_true", help="Disable image search and generation")
    ap.add_argument("--unit", choices=[u.value for u in TemperatureUnit], default=TemperatureUnit.CELSIUS.value)
    ap.add_argument("--name", help="Your name, used by the assistant")
    ap.add_argument("--pronouns", help="Your pronouns")
    ap.add_argument("--creator", action="store_true", help="Introduce yourself as Cloud's creator")
    ap.add_argument("--guest-id", help="Save the conversation under this guest id")
    ap.add_argument("--lab", action="append", default=[], metavar="FILE",
                    help="Attach a text file as knowledge base (repeatable)")
    return ap


def load_lab_context(paths: List[str]) -> Optional[str]:
    entries = []
    for raw in paths:
        path = Path(raw)
        entries.append(("file", path.name, path.read_text(encoding="utf-8"), None))
    return build_lab_context("Local files", entries) or None


def options_from_args(args: argparse.Namespace) -> ChatOptions:
    preferences = None
    if args.name or args.pronouns:
        preferences = UserPreferences(userName=args.name, pronouns=args.pronouns)
    return ChatOptions(
        web_search_enabled=args.web_search,
        cloud_plus_enabled=not args.no_cloud_plus,
        is_creator=args.creator,
        temperature_unit=TemperatureUnit(args.unit),
        preferences=preferences,
        lab_context=load_lab_context(args.lab),
        guest_id=args.guest_id,
    )


async def repl(args: argparse.Namespace) -> int:
    options = options_from_args(args)
    unit = options.temperature_unit
    turns: List[ChatTurn] = []

    print("\n".join(BANNER))
    async with CloudChatClient(args.url) as client:
        while True:
            try:
                line = input("$ ")
            except (EOFError, KeyboardInterrupt):
                print()
                return 0

            command = line.strip().lower()
            if not command:
                continue
            if command == "exit":
                return 0
            if command == "help":
                print("\n".join(HELP))
                continue
            if command == "about":
                print("\n".join(about_lines()))
                continue
            if command == "clear":
                turns = []
                client.conversation_id = None
                print("Conversation cleared. Ready for input...")
                continue

            turns.append(ChatTurn(role=Role.USER, content=line.strip()))
            options.conversation_id = client.conversation_id
            print("Processing...")
            message = await client.send(turns, options)

            if not message.ok and message.status_code:
                turns.pop()
                notice = status_notice(message.status_code)
                print(f"Error: {message.error}" + (f" ({notice})" if notice else ""))
                continue

            upsert_assistant_turn(turns, message.content)
            print()
            print(format_reply(extract(message.content), unit))
            print()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    return asyncio.run(repl(args))


if __name__ == "__main__":
    sys.exit(main())
