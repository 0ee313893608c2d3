from concierge.schemas.analytics_schema import AnalyticsEvent
from concierge.schemas.conversation_schema import (
    ConciergeRequest,
    ConciergeResponse,
    ConversationState,
    ErrorPayload,
    Intent,
)
from concierge.schemas.product_schema import Preferences, Product
from concierge.schemas.session_schema import CapsuleHold, ContactInfo, LastOrderRef, Session

__all__ = [
    "AnalyticsEvent",
    "CapsuleHold",
    "ConciergeRequest",
    "ConciergeResponse",
    "ContactInfo",
    "ConversationState",
    "ErrorPayload",
    "Intent",
    "LastOrderRef",
    "Preferences",
    "Product",
    "Session",
]
