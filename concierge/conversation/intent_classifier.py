"""
Deterministic intent classification without any model inference.

Precedence, highest first:
1. An explicit intent from a UI chip or button.
2. A command shortcut (``/track <id>``, ``/gift <amount>``, ``/size <n>``).
3. The ordered rule table, first match wins. Rule order is part of the
   contract: several patterns can match the same utterance.
4. A contextual follow-up: when the session is waiting on a specific
   input and the text carries a matching entity.
5. ``unknown``.

Usage:
    classifier = IntentClassifier()
    classifier.classify(ClassifierInput(text="where is my order?"))
    # -> Intent.TRACK_ORDER
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from concierge.schemas.conversation_schema import Intent
from concierge.utils import EMAIL_RE, PHONE_RE

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IntentRule:
    """One (intent, pattern) entry of the ordered rule table."""

    name: str
    intent: Intent
    pattern: str

    def matches(self, folded_text: str) -> bool:
        return re.search(self.pattern, folded_text) is not None


def _parse_amount(raw: str) -> Optional[float]:
    cleaned = raw.replace("$", "").replace(",", "").strip().lower()
    multiplier = 1000.0 if cleaned.endswith("k") else 1.0
    cleaned = cleaned.rstrip("k")
    try:
        value = float(cleaned) * multiplier
    except ValueError:
        return None
    return value if value >= 0 else None


def _track_command(arg: str) -> dict[str, Any]:
    return {"orderId": arg.upper()}


def _gift_command(arg: str) -> dict[str, Any]:
    payload: dict[str, Any] = {"styleTags": ["gift"]}
    amount = _parse_amount(arg)
    if amount is not None:
        payload["budgetMax"] = amount
    return payload


def _size_command(arg: str) -> dict[str, Any]:
    try:
        return {"ringSize": float(arg)}
    except ValueError:
        return {}


@dataclass(frozen=True)
class CommandShortcut:
    command: str
    intent: Intent
    parse: Callable[[str], dict[str, Any]]


DEFAULT_COMMANDS: tuple[CommandShortcut, ...] = (
    CommandShortcut("track", Intent.TRACK_ORDER, _track_command),
    CommandShortcut("gift", Intent.FIND_PRODUCT, _gift_command),
    CommandShortcut("size", Intent.SIZING_REPAIRS, _size_command),
)

DEFAULT_RULES: tuple[IntentRule, ...] = (
    IntentRule(
        "csat_feedback", Intent.CSAT,
        r"\b(rate|rating|feedback|survey)\b|\b[1-5]\s*(/\s*5|out of 5|stars?)\b",
    ),
    IntentRule(
        "stylist_handoff", Intent.STYLIST_CONTACT,
        r"\b(stylist|human|real person|representative|call me|talk to|speak (to|with))\b",
    ),
    IntentRule(
        "returns", Intent.RETURN_EXCHANGE,
        r"\b(returns?|refund|exchange|send (it |them )?back|rma)\b",
    ),
    IntentRule(
        "order_tracking", Intent.TRACK_ORDER,
        r"\b(track|tracking|where('s| is) my|order status|shipped|shipping status|delivery)\b",
    ),
    IntentRule(
        "order_updates", Intent.ORDER_UPDATES,
        r"\b(text me|sms|notify me|send me updates)\b",
    ),
    IntentRule(
        "capsule", Intent.CAPSULE_RESERVE,
        r"\b(capsule|reserve|put (it |them )?on hold|hold (it|them|these|this)|custom design|bespoke)\b",
    ),
    IntentRule(
        "sizing", Intent.SIZING_REPAIRS,
        r"\b(resize|resizing|ring size|sizing|repairs?|fix)\b",
    ),
    IntentRule(
        "care", Intent.CARE_WARRANTY,
        r"\b(care|clean|cleaning|warranty|tarnish\w*|polish)\b",
    ),
    IntentRule(
        "financing", Intent.FINANCING,
        r"\b(financ\w*|installments?|payment plans?|afterpay|klarna|affirm)\b",
    ),
    IntentRule(
        "shopping", Intent.FIND_PRODUCT,
        r"\b(rings?|necklaces?|earrings?|bracelets?|pendants?|gifts?|show me|looking for"
        r"|find|recommend\w*|shop|browse|jewel\w*)\b",
    ),
)

CATEGORY_TERMS: dict[str, str] = {
    "earring": "earrings", "earrings": "earrings", "studs": "earrings",
    "ring": "ring", "rings": "ring", "band": "ring",
    "necklace": "necklace", "necklaces": "necklace", "chain": "necklace",
    "pendant": "pendant", "pendants": "pendant",
    "bracelet": "bracelet", "bracelets": "bracelet", "bangle": "bracelet",
}
METAL_TERMS: tuple[str, ...] = (
    "yellow gold", "white gold", "rose gold", "platinum", "silver", "gold",
)
STONE_TERMS: tuple[str, ...] = (
    "lab diamond", "diamond", "sapphire", "emerald", "ruby", "pearl", "moissanite",
)
STYLE_TERMS: tuple[str, ...] = (
    "art deco", "minimalist", "vintage", "modern", "classic", "bold",
    "dainty", "boho", "stackable", "gift", "custom", "bespoke",
)
RETURN_REASONS: tuple[tuple[str, str], ...] = (
    (r"\b(too (small|big|tight|loose)|wrong size|doesn'?t fit)\b", "wrong_size"),
    (r"\b(damaged|broken|defect\w*|scratched)\b", "damaged"),
    (r"\bchanged my mind\b", "changed_mind"),
    (r"\bnot as (expected|described|pictured)\b", "not_as_described"),
)

_ORDER_RE = re.compile(
    r"(?:\b(?:order|order number|order no\.?)\s*#?\s*|#\s*)([a-z]{0,4}-?\d{4,})\b"
    r"|\b([a-z]{2,4}-\d{4,})\b",
    re.IGNORECASE,
)
_ZIP_RE = re.compile(r"\bzip(?:\s*code)?\s*:?\s*(\d{5})\b", re.IGNORECASE)
_RATING_RE = re.compile(r"^\s*([1-5])\s*(?:/\s*5|out of 5|stars?)?\s*[.!]?\s*$|\b([1-5])\s*(?:/\s*5|out of 5|stars?)\b")
_BUDGET_RANGE_RE = re.compile(r"between\s*\$?\s*(\d[\d,]*k?)\s*(?:and|-)\s*\$?\s*(\d[\d,]*k?)")
_BUDGET_MAX_RE = re.compile(
    r"\b(?:under|below|less than|up to|max(?:imum)?|budget(?: of| is)?)\s*\$?\s*(\d[\d,]*(?:\.\d+)?k?)"
)
_READY_RE = re.compile(r"\b(ready[- ]to[- ]ship|ships? (fast|quickly|today|now)|in stock)\b")
_COMMAND_RE = re.compile(r"^/(\w+)\s+(\S+)")

# Entities that let a pending flow claim an otherwise unmatched utterance.
_CONTEXT_ENTITIES: dict[Intent, tuple[str, ...]] = {
    Intent.TRACK_ORDER: ("orderId", "email"),
    Intent.RETURN_EXCHANGE: ("orderId", "reason"),
    Intent.STYLIST_CONTACT: ("email", "phone"),
    Intent.CSAT: ("rating",),
    Intent.FIND_PRODUCT: (
        "category", "metal", "stone", "styleTags", "budgetMin", "budgetMax", "readyToShip",
    ),
}


@dataclass(frozen=True)
class ClassifierInput:
    text: Optional[str] = None
    explicit_intent: Optional[Intent] = None
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Classification:
    """Intent plus how it was reached and any entities lifted from the text."""

    intent: Intent
    source: str
    rule: Optional[str] = None
    entities: dict[str, Any] = field(default_factory=dict)


class IntentClassifier:
    """Pure, total utterance classifier driven by an explicit rule table."""

    def __init__(
        self,
        rules: tuple[IntentRule, ...] = DEFAULT_RULES,
        commands: tuple[CommandShortcut, ...] = DEFAULT_COMMANDS,
    ) -> None:
        self._rules = tuple(rules)
        self._commands = {c.command: c for c in commands}

    @property
    def rules(self) -> tuple[IntentRule, ...]:
        return self._rules

    def classify(self, inp: ClassifierInput) -> Intent:
        return self.detect(inp).intent

    def detect(self, inp: ClassifierInput) -> Classification:
        if inp.explicit_intent is not None:
            return Classification(intent=inp.explicit_intent, source="explicit")

        text = (inp.text or "").strip()
        if not text:
            return Classification(intent=Intent.UNKNOWN, source="none")

        command = self._match_command(text)
        if command is not None:
            return command

        folded = text.casefold()
        entities = self.extract_entities(text)
        for rule in self._rules:
            if rule.matches(folded):
                logger.debug("Rule '%s' matched -> %s", rule.name, rule.intent.value)
                return Classification(
                    intent=rule.intent, source="rule", rule=rule.name, entities=entities
                )

        pending = inp.meta.get("pending_intent")
        if isinstance(pending, Intent):
            wanted = _CONTEXT_ENTITIES.get(pending, ())
            if any(key in entities for key in wanted):
                return Classification(intent=pending, source="context", entities=entities)

        return Classification(intent=Intent.UNKNOWN, source="none", entities=entities)

    def _match_command(self, text: str) -> Optional[Classification]:
        match = _COMMAND_RE.match(text)
        if not match:
            return None
        shortcut = self._commands.get(match.group(1).lower())
        if shortcut is None:
            return None
        return Classification(
            intent=shortcut.intent,
            source="command",
            rule=f"/{shortcut.command}",
            entities=shortcut.parse(match.group(2)),
        )

    def extract_entities(self, text: str) -> dict[str, Any]:
        """Lift order numbers, contact details, ratings, and filters from text."""
        folded = text.casefold()
        entities: dict[str, Any] = {}

        order = _ORDER_RE.search(text)
        if order:
            entities["orderId"] = (order.group(1) or order.group(2)).upper()
        email = EMAIL_RE.search(text)
        if email:
            entities["email"] = email.group(0).lower()
        elif PHONE_RE.search(text) and "orderId" not in entities:
            entities["phone"] = PHONE_RE.search(text).group(0)
        zip_code = _ZIP_RE.search(text)
        if zip_code:
            entities["zip"] = zip_code.group(1)
        rating = _RATING_RE.search(folded)
        if rating:
            entities["rating"] = int(rating.group(1) or rating.group(2))

        for pattern, reason in RETURN_REASONS:
            if re.search(pattern, folded):
                entities["reason"] = reason
                break

        for term in sorted(CATEGORY_TERMS, key=len, reverse=True):
            if re.search(rf"\b{re.escape(term)}\b", folded):
                entities["category"] = CATEGORY_TERMS[term]
                break
        for term in METAL_TERMS:
            if re.search(rf"\b{re.escape(term)}\b", folded):
                entities["metal"] = term
                break
        for term in STONE_TERMS:
            if re.search(rf"\b{re.escape(term)}\b", folded):
                entities["stone"] = term
                break
        styles = [t for t in STYLE_TERMS if re.search(rf"\b{re.escape(t)}\b", folded)]
        if styles:
            entities["styleTags"] = styles

        budget_range = _BUDGET_RANGE_RE.search(folded)
        if budget_range:
            low, high = _parse_amount(budget_range.group(1)), _parse_amount(budget_range.group(2))
            if low is not None and high is not None:
                entities["budgetMin"], entities["budgetMax"] = min(low, high), max(low, high)
        else:
            budget = _BUDGET_MAX_RE.search(folded)
            if budget:
                amount = _parse_amount(budget.group(1))
                if amount is not None:
                    entities["budgetMax"] = amount
        if _READY_RE.search(folded):
            entities["readyToShip"] = True
        return entities
