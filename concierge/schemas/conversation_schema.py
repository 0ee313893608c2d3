"""Request/response envelope and the finite intent and state vocabularies."""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from concierge.errors import ErrorCode


class Intent(str, Enum):
    FIND_PRODUCT = "find_product"
    TRACK_ORDER = "track_order"
    RETURN_EXCHANGE = "return_exchange"
    CAPSULE_RESERVE = "capsule_reserve"
    STYLIST_CONTACT = "stylist_contact"
    CSAT = "csat"
    SIZING_REPAIRS = "sizing_repairs"
    CARE_WARRANTY = "care_warranty"
    FINANCING = "financing"
    SHORTLIST_ADD = "shortlist_add"
    SHORTLIST_REMOVE = "shortlist_remove"
    SHORTLIST_CLEAR = "shortlist_clear"
    SHORTLIST_ESCALATE = "shortlist_escalate"
    ORDER_UPDATES = "order_updates"
    UNKNOWN = "unknown"


class ConversationState(str, Enum):
    """All states a session can be in. There is no terminal success state."""

    WELCOME = "welcome"
    COLLECTING_PREFERENCES = "collecting_preferences"
    SHOWING_RECOMMENDATIONS = "showing_recommendations"
    AWAITING_ORDER_LOOKUP = "awaiting_order_lookup"
    ORDER_STATUS = "order_status"
    AWAITING_RETURN_DETAILS = "awaiting_return_details"
    AWAITING_CONTACT_INFO = "awaiting_contact_info"
    AWAITING_CSAT = "awaiting_csat"
    CAPSULE_HELD = "capsule_held"
    PROVIDING_INFO = "providing_info"
    TERMINAL_ERROR = "terminal_error"


class _Envelope(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ConciergeRequest(_Envelope):
    """Inbound turn: free text, a UI chip/button intent, or both."""

    session_id: str = Field(min_length=1)
    text: Optional[str] = None
    explicit_intent: Optional[Intent] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    request_id: Optional[str] = None
    idempotency_key: Optional[str] = None


class ErrorPayload(_Envelope):
    code: ErrorCode
    message: str
    field: Optional[str] = None


class QuickAction(_Envelope):
    intent: Intent
    label: str


class ProductCard(_Envelope):
    product_id: str
    title: str
    price: float
    score: float
    ships_in_days: int
    ready_to_ship: bool
    slug: Optional[str] = None


class OfferPayload(_Envelope):
    kind: str = "capsule_reserve"
    headline: str
    description: str
    ttl_hours: int


class FormField(_Envelope):
    name: str
    label: str
    required: bool = True


class FormSpec(_Envelope):
    form_id: str
    title: str
    fields: list[FormField] = Field(default_factory=list)
    prefill: dict[str, Any] = Field(default_factory=dict)


class ConciergeResponse(_Envelope):
    """Outbound turn rendered by the widget."""

    request_id: str
    session_id: str
    intent: Intent
    state: ConversationState
    messages: list[str] = Field(default_factory=list)
    cards: list[ProductCard] = Field(default_factory=list)
    offer: Optional[OfferPayload] = None
    form: Optional[FormSpec] = None
    quick_actions: list[QuickAction] = Field(default_factory=list)
    ui_hints: dict[str, Any] = Field(default_factory=dict)
    data: dict[str, Any] = Field(default_factory=dict)
    error: Optional[ErrorPayload] = None
    notice: Optional[ErrorPayload] = None
