"""Tests for the rule-based intent classifier."""

import pytest

from concierge.conversation.intent_classifier import (
    DEFAULT_RULES,
    ClassifierInput,
    IntentClassifier,
)
from concierge.schemas.conversation_schema import Intent


def _text(text: str, pending=None) -> ClassifierInput:
    meta = {"pending_intent": pending} if pending else {}
    return ClassifierInput(text=text, meta=meta)


class TestDeterminism:
    @pytest.mark.parametrize("text", [
        "where is my order GG-10421?",
        "purple unicorn rainbow",
        "show me vintage rings under $900",
    ])
    def test_same_input_same_intent(self, classifier, text):
        results = {classifier.classify(_text(text)) for _ in range(5)}
        assert len(results) == 1

    def test_fresh_instances_agree(self):
        text = "I need a refund for my necklace"
        assert IntentClassifier().classify(_text(text)) == IntentClassifier().classify(_text(text))


class TestPrecedence:
    def test_explicit_intent_beats_text(self, classifier):
        inp = ClassifierInput(text="where is my order?", explicit_intent=Intent.CSAT)
        result = classifier.detect(inp)
        assert result.intent == Intent.CSAT
        assert result.source == "explicit"

    @pytest.mark.parametrize("text,expected", [
        ("rate this and talk to a stylist", Intent.CSAT),
        ("talk to a stylist about a refund", Intent.STYLIST_CONTACT),
        ("track my refund", Intent.RETURN_EXCHANGE),
        ("text me when it's shipped", Intent.TRACK_ORDER),
        ("text me about my capsule", Intent.ORDER_UPDATES),
        ("reserve a ring size consult", Intent.CAPSULE_RESERVE),
        ("resize and clean my ring", Intent.SIZING_REPAIRS),
        ("warranty on klarna purchases", Intent.CARE_WARRANTY),
        ("financing for rings", Intent.FINANCING),
    ])
    def test_earlier_rule_wins(self, classifier, text, expected):
        assert classifier.classify(_text(text)) == expected

    def test_rule_order_is_configurable(self):
        reversed_rules = tuple(reversed(DEFAULT_RULES))
        assert IntentClassifier(rules=reversed_rules).classify(_text("track my refund")) == Intent.TRACK_ORDER

    def test_reports_matching_rule(self, classifier):
        result = classifier.detect(_text("can I exchange this?"))
        assert result.source == "rule"
        assert result.rule == "returns"


class TestUnknown:
    def test_nonsense_is_unknown(self, classifier):
        result = classifier.detect(_text("purple unicorn rainbow"))
        assert result.intent == Intent.UNKNOWN
        assert result.source == "none"

    def test_empty_text_is_unknown(self, classifier):
        assert classifier.classify(ClassifierInput(text="   ")) == Intent.UNKNOWN

    def test_no_text_no_intent_is_unknown(self, classifier):
        assert classifier.classify(ClassifierInput()) == Intent.UNKNOWN


class TestCommands:
    def test_track_command(self, classifier):
        result = classifier.detect(_text("/track gg-10421"))
        assert result.intent == Intent.TRACK_ORDER
        assert result.source == "command"
        assert result.entities == {"orderId": "GG-10421"}

    def test_gift_command_sets_budget_and_tag(self, classifier):
        result = classifier.detect(_text("/gift $300"))
        assert result.intent == Intent.FIND_PRODUCT
        assert result.entities == {"styleTags": ["gift"], "budgetMax": 300.0}

    def test_size_command(self, classifier):
        result = classifier.detect(_text("/size 7"))
        assert result.intent == Intent.SIZING_REPAIRS
        assert result.entities == {"ringSize": 7.0}

    def test_unregistered_command_falls_through(self, classifier):
        assert classifier.classify(_text("/dance now")) == Intent.UNKNOWN


class TestContextualFollowUp:
    def test_bare_order_number_while_awaiting_lookup(self, classifier):
        result = classifier.detect(_text("GG-10421", pending=Intent.TRACK_ORDER))
        assert result.intent == Intent.TRACK_ORDER
        assert result.source == "context"
        assert result.entities["orderId"] == "GG-10421"

    def test_bare_order_number_without_context_is_unknown(self, classifier):
        assert classifier.classify(_text("GG-10421")) == Intent.UNKNOWN

    def test_bare_rating_while_awaiting_csat(self, classifier):
        result = classifier.detect(_text("4", pending=Intent.CSAT))
        assert result.intent == Intent.CSAT
        assert result.entities["rating"] == 4

    def test_email_while_awaiting_contact(self, classifier):
        result = classifier.detect(_text("ava@example.com", pending=Intent.STYLIST_CONTACT))
        assert result.intent == Intent.STYLIST_CONTACT
        assert result.entities["email"] == "ava@example.com"

    def test_rule_match_beats_context(self, classifier):
        assert classifier.classify(_text("talk to a stylist", pending=Intent.CSAT)) == Intent.STYLIST_CONTACT

    def test_irrelevant_entity_does_not_claim(self, classifier):
        assert classifier.classify(_text("4", pending=Intent.TRACK_ORDER)) == Intent.UNKNOWN


class TestEntityExtraction:
    def test_shopping_filters(self, classifier):
        entities = classifier.extract_entities(
            "I want a vintage rose gold ring under $1,200 that's ready to ship"
        )
        assert entities["category"] == "ring"
        assert entities["metal"] == "rose gold"
        assert entities["styleTags"] == ["vintage"]
        assert entities["budgetMax"] == 1200.0
        assert entities["readyToShip"] is True

    def test_budget_range(self, classifier):
        entities = classifier.extract_entities("something between $300 and $800")
        assert entities["budgetMin"] == 300.0
        assert entities["budgetMax"] == 800.0

    def test_budget_shorthand(self, classifier):
        assert classifier.extract_entities("under 2k")["budgetMax"] == 2000.0

    def test_return_reason(self, classifier):
        assert classifier.extract_entities("it's too small")["reason"] == "wrong_size"

    def test_email_and_zip(self, classifier):
        entities = classifier.extract_entities("my email is Sam.Okafor@example.com and zip 10003")
        assert entities["email"] == "sam.okafor@example.com"
        assert entities["zip"] == "10003"

    def test_nothing_to_extract(self, classifier):
        assert classifier.extract_entities("purple unicorn rainbow") == {}
