"""
Intent classification for the latest user turn.

Decides whether a message is plain chat, a web image search or an AI image
generation request. Rules are evaluated strictly in the order of INTENT_RULES;
the first match wins. Generation rules come first so that
"generate an image of a cat" never falls into the broader search grammar.
"""
import logging
import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from cloud_protocol.models import ChatTurn, Intent, Role

logger = logging.getLogger(__name__)


_GEN_VERB = r"(?:generate|create|make|draw|design)"
_GEN_NOUN = r"(?:image|picture|artwork|art|illustration)s?"
_GEN_PREP = r"(?:of|for|showing|with)"

_SEARCH_VERB = r"(?:show|find|get)"
_SEARCH_NOUN = r"(?:images?|pictures?|photos?)"
_SEARCH_PREP = r"(?:of|for)"

_TRAILING_PUNCT = re.compile(r"[\s.!?]+$")


@dataclass(frozen=True)
class IntentRule:
    name: str
    pattern: "re.Pattern[str]"
    build: Callable[["re.Match[str]", str], Intent]


def _subject(match: "re.Match[str]") -> str:
    return _TRAILING_PUNCT.sub("", match.group("subject")).strip()


def _generation_with_subject(match, text: str) -> Intent:
    return Intent.image_generation(_subject(match))


def _generation_bare(match, text: str) -> Intent:
    # No subject: the whole message becomes the prompt
    return Intent.image_generation(text.strip())


def _search(match, text: str) -> Intent:
    return Intent.image_search(_subject(match))


INTENT_RULES: List[IntentRule] = [
    IntentRule(
        "generation-with-subject",
        re.compile(
            rf"\b{_GEN_VERB}\s+(?:me\s+)?(?:an?\s+)?{_GEN_NOUN}\s+(?:{_GEN_PREP}\s+)?(?P<subject>(?!{_GEN_PREP}\W*$)\S.*)",
            re.IGNORECASE | re.DOTALL,
        ),
        _generation_with_subject,
    ),
    IntentRule(
        "generation-bare",
        re.compile(
            rf"\b{_GEN_VERB}\s+(?:me\s+)?(?:an?\s+)?{_GEN_NOUN}\b",
            re.IGNORECASE,
        ),
        _generation_bare,
    ),
    IntentRule(
        "search-with-verb",
        re.compile(
            rf"\b{_SEARCH_VERB}\s+(?:me\s+)?(?:some\s+)?{_SEARCH_NOUN}\s+{_SEARCH_PREP}\s+(?P<subject>\S.*)",
            re.IGNORECASE | re.DOTALL,
        ),
        _search,
    ),
    IntentRule(
        "search-bare",
        re.compile(
            rf"\b{_SEARCH_NOUN}\s+{_SEARCH_PREP}\s+(?P<subject>\S.*)",
            re.IGNORECASE | re.DOTALL,
        ),
        _search,
    ),
]


def last_user_text(turns: Sequence[ChatTurn]) -> Optional[str]:
    """Text of the final turn, or None if it is missing or not from the user."""
    if not turns:
        return None
    last = turns[-1]
    if last.role != Role.USER:
        return None
    return last.text()


def classify_text(text: str) -> Intent:
    for rule in INTENT_RULES:
        match = rule.pattern.search(text)
        if not match:
            continue
        intent = rule.build(match, text)
        if not intent.query:
            # Subject was only punctuation; let a later rule have a go
            continue
        logger.debug(f"[INTENT] rule={rule.name} → {intent.kind.value} {intent.query!r}")
        return intent
    return Intent.none()


def classify(turns: Sequence[ChatTurn]) -> Intent:
    """
    Classify the latest turn of a conversation.

    Only the final turn is inspected; if it is missing or not authored by the
    user, no intent is inferred.
    """
    text = last_user_text(turns)
    if text is None:
        return Intent.none()
    return classify_text(text)
