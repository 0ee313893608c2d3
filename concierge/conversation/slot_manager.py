"""
Slot definitions, validation, and form construction for every flow.

Each flow needs a small set of fields before it may emit a side-effecting
action: an order number for lookups and returns, an email for stylist
tickets, a rating for CSAT, and filters for product search. The manager
is stateless; collected values live on the session and in the payload.

Usage:
    slots = SlotManager()
    ok, value = slots.validate("email", "Ava@Example.com")   # (True, "ava@example.com")
    form = slots.form_for("order_lookup", "Find your order", ["order_id"])
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Optional

from concierge.config import CsatConfig, settings
from concierge.schemas.conversation_schema import FormField, FormSpec
from concierge.utils import is_valid_email, normalize_email, normalize_phone

logger = logging.getLogger(__name__)

MIN_NAME_LENGTH = 2
MIN_PHONE_DIGITS = 7
MAX_PHONE_DIGITS = 15
ORDER_ID_PATTERN = re.compile(r"^[A-Z]{0,4}-?\d{4,}$")
ZIP_PATTERN = re.compile(r"^\d{5}(-\d{4})?$")
RETURN_REASON_CODES = ("wrong_size", "damaged", "changed_mind", "not_as_described", "other")


def _validate_name(value: Any) -> bool:
    return isinstance(value, str) and len(value.strip()) >= MIN_NAME_LENGTH


def _validate_email(value: Any) -> bool:
    return isinstance(value, str) and is_valid_email(value)


def _validate_phone(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    digits = re.sub(r"[^\d]", "", value)
    return MIN_PHONE_DIGITS <= len(digits) <= MAX_PHONE_DIGITS


def _validate_order_id(value: Any) -> bool:
    return isinstance(value, str) and bool(ORDER_ID_PATTERN.match(value.strip().upper()))


def _validate_zip(value: Any) -> bool:
    return isinstance(value, str) and bool(ZIP_PATTERN.match(value.strip()))


def _validate_reason(value: Any) -> bool:
    return isinstance(value, str) and value.strip().lower() in RETURN_REASON_CODES


def _rating_validator(scale: CsatConfig) -> Callable[[Any], bool]:
    def validate(value: Any) -> bool:
        if isinstance(value, bool):
            return False
        try:
            rating = int(value)
        except (TypeError, ValueError):
            return False
        if isinstance(value, float) and not value.is_integer():
            return False
        return scale.min_rating <= rating <= scale.max_rating

    return validate


def _normalize_rating(value: Any) -> int:
    return int(value)


@dataclass(frozen=True)
class SlotDefinition:
    """Schema for a single field a flow may need to collect."""

    name: str
    display_name: str
    validator: Optional[Callable[[Any], bool]] = None
    normalizer: Optional[Callable[[Any], Any]] = None


class SlotManager:
    """Validates field values and builds the forms that request missing ones."""

    SLOT_DEFINITIONS: tuple[SlotDefinition, ...] = (
        SlotDefinition("name", "name", _validate_name, lambda v: v.strip().title()),
        SlotDefinition("email", "email", _validate_email, normalize_email),
        SlotDefinition("phone", "phone number", _validate_phone, normalize_phone),
        SlotDefinition("order_id", "order number", _validate_order_id, lambda v: v.strip().upper()),
        SlotDefinition("zip", "billing zip code", _validate_zip, lambda v: v.strip()),
        SlotDefinition("reason", "return reason", _validate_reason, lambda v: v.strip().lower()),
        SlotDefinition("category", "jewelry type"),
        SlotDefinition("budget_min", "minimum budget"),
        SlotDefinition("budget_max", "budget"),
        SlotDefinition("metal", "metal"),
        SlotDefinition("stone", "stone"),
        SlotDefinition("style_tags", "style"),
        SlotDefinition("ready_to_ship", "ready to ship"),
    )

    def __init__(self, csat: Optional[CsatConfig] = None) -> None:
        scale = csat or settings.csat
        rating = SlotDefinition("rating", "rating", _rating_validator(scale), _normalize_rating)
        self._definitions = {d.name: d for d in (*self.SLOT_DEFINITIONS, rating)}

    def has(self, name: str) -> bool:
        return name in self._definitions

    def get_definition(self, name: str) -> SlotDefinition:
        try:
            return self._definitions[name]
        except KeyError:
            raise ValueError(f"Unknown slot: {name}") from None

    def validate(self, name: str, value: Any) -> tuple[bool, Any]:
        """
        Validate and normalize one value.

        Returns:
            (True, normalized_value) on success, (False, message) otherwise.
        """
        defn = self.get_definition(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            return False, f"Please share your {defn.display_name}."
        if defn.validator and not defn.validator(value):
            logger.debug("Slot '%s' failed validation", name)
            return False, f"That {defn.display_name} doesn't look right."
        normalized = defn.normalizer(value) if defn.normalizer else value
        return True, normalized

    def display_names(self, names: list[str]) -> list[str]:
        return [self.get_definition(n).display_name for n in names]

    def form_for(
        self,
        form_id: str,
        title: str,
        names: list[str],
        prefill: Optional[dict[str, Any]] = None,
        optional: tuple[str, ...] = (),
    ) -> FormSpec:
        """Build the widget form that asks for ``names``."""
        fields = [
            FormField(
                name=n,
                label=self.get_definition(n).display_name.capitalize(),
                required=n not in optional,
            )
            for n in names
        ]
        return FormSpec(form_id=form_id, title=title, fields=fields, prefill=prefill or {})
