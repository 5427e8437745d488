"""
Intent classifier tests.

Pins the rule order (generation before search), the bare-noun fallback and
the "only the final user turn counts" contract.
"""
import pytest

from cloud_protocol.intent import INTENT_RULES, classify, classify_text, last_user_text
from cloud_protocol.models import ChatTurn, Intent, IntentKind, Role


def user(content):
    return ChatTurn(role=Role.USER, content=content)


def assistant(content):
    return ChatTurn(role=Role.ASSISTANT, content=content)


class TestPrecedence:
    def test_generation_beats_search(self):
        assert classify([user("generate an image of a sunset")]) == Intent.image_generation("a sunset")

    def test_rule_order_is_generation_first(self):
        names = [r.name for r in INTENT_RULES]
        assert names.index("generation-with-subject") < names.index("search-with-verb")
        assert names.index("generation-bare") < names.index("search-bare")

    def test_search_grammar_alone_would_have_matched(self):
        """The search rules do match the generation phrase; order is what decides."""
        search_rule = next(r for r in INTENT_RULES if r.name == "search-bare")
        assert search_rule.pattern.search("generate an image of a sunset")


class TestGeneration:
    @pytest.mark.parametrize("text,prompt", [
        ("generate an image of a sunset", "a sunset"),
        ("Create a picture of a dragon flying over mountains", "a dragon flying over mountains"),
        ("draw me an illustration showing a cozy cabin", "a cozy cabin"),
        ("make art with neon colors!", "neon colors"),
        ("Design an artwork for my band poster.", "my band poster"),
        ("please generate images of cats", "cats"),
    ])
    def test_subject_becomes_prompt(self, text, prompt):
        assert classify_text(text) == Intent.image_generation(prompt)

    @pytest.mark.parametrize("text", [
        "generate an image",
        "Draw me a picture",
        "create an illustration!",
        "generate an image of",
    ])
    def test_bare_request_uses_whole_message(self, text):
        intent = classify_text(text)
        assert intent.kind == IntentKind.IMAGE_GENERATION
        assert intent.query == text.strip()

    def test_bare_noun_fallback_exact(self):
        assert classify([user("generate an image")]) == Intent.image_generation("generate an image")

    def test_case_insensitive(self):
        assert classify_text("GENERATE AN IMAGE OF A FOX") == Intent.image_generation("A FOX")


class TestSearch:
    @pytest.mark.parametrize("text,query", [
        ("show me pictures of red pandas", "red pandas"),
        ("Find some photos of the Eiffel Tower?", "the Eiffel Tower"),
        ("get images for wedding cakes", "wedding cakes"),
        ("images of Santorini", "Santorini"),
        ("I'd love to see photos of northern lights.", "northern lights"),
    ])
    def test_subject_becomes_query(self, text, query):
        assert classify_text(text) == Intent.image_search(query)

    def test_search_needs_preposition(self):
        assert classify_text("show me pictures") == Intent.none()


class TestNoIntent:
    @pytest.mark.parametrize("text", [
        "What's the weather in Paris?",
        "Tell me a joke",
        "How do I make pasta?",
        "",
    ])
    def test_plain_chat(self, text):
        assert classify_text(text) == Intent.none()

    def test_empty_turn_list(self):
        assert classify([]) == Intent.none()

    def test_last_turn_from_assistant(self):
        turns = [user("generate an image of a cat"), assistant("Here it is")]
        assert classify(turns) == Intent.none()

    def test_only_last_turn_inspected(self):
        turns = [user("show me pictures of dogs"), assistant("Sure"), user("thanks!")]
        assert classify(turns) == Intent.none()


class TestMultipartContent:
    def test_first_text_part_is_used(self):
        turn = ChatTurn.model_validate({
            "role": "user",
            "content": [
                {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}},
                {"type": "text", "text": "generate an image of this in watercolor"},
                {"type": "text", "text": "ignored"},
            ],
        })
        assert classify([turn]) == Intent.image_generation("this in watercolor")

    def test_no_text_part_means_empty(self):
        turn = ChatTurn.model_validate({
            "role": "user",
            "content": [{"type": "image_url", "image_url": {"url": "https://x.test/a.png"}}],
        })
        assert last_user_text([turn]) == ""
        assert classify([turn]) == Intent.none()
