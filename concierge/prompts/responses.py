"""
Pre-authored concierge copy.

Every message the widget can render lives here so that each path, error
paths included, produces a deterministic response. Store-specific values
are injected from configuration.
"""

from concierge.config import settings
from concierge.schemas.conversation_schema import Intent, QuickAction

_biz = settings.business

QUICK_START: tuple[QuickAction, ...] = (
    QuickAction(intent=Intent.FIND_PRODUCT, label="Find a piece"),
    QuickAction(intent=Intent.TRACK_ORDER, label="Track my order"),
    QuickAction(intent=Intent.RETURN_EXCHANGE, label="Returns & resizing"),
    QuickAction(intent=Intent.CAPSULE_RESERVE, label="Reserve a capsule"),
    QuickAction(intent=Intent.STYLIST_CONTACT, label="Talk to a stylist"),
)

MESSAGES: dict[str, str] = {
    "unknown": "Got it. Pick what you need and I'll route you quickly.",
    "unknown_repeat": (
        "I want to be sure I'm helping with the right thing. "
        "Choose one below, or I can bring in a stylist."
    ),
    "ask_filters": "Happy to help you find something. Tell me your {fields}.",
    "recommendations": "Here are {count} pieces picked for you.",
    "no_recommendations": (
        "Nothing matches those filters right now. Try widening your budget "
        "or removing a filter."
    ),
    "ask_order_lookup": "Share your order number, or the email and zip code on the order.",
    "order_status": "Order {order_number} is {status}.",
    "order_not_found": "I couldn't find that order. Double-check the number, or try your email and zip code.",
    "ask_return_order": "I need an order number first so I can file the return with the studio.",
    "return_created": "Your return for order {order_number} is filed. RMA {rma_id}; your prepaid label is ready.",
    "return_duplicate": "That return is already filed. RMA {rma_id} is still active.",
    "capsule_ineligible": (
        "Capsule holds are for two or more saved pieces or a custom design. "
        "Save another favourite and I'll hold them for you."
    ),
    "capsule_reserved": "Your capsule is on hold for {hours} hours. Reference {capsule_id}.",
    "capsule_existing": "You already have capsule {capsule_id} on hold until {expires_at}.",
    "capsule_offer_headline": "Hold your favourites",
    "capsule_offer_body": "Reserve your shortlist for {hours} hours while you decide.",
    "ask_contact": "A stylist can take it from here. What's the best email to reach you?",
    "ticket_created": (
        f"A stylist will reach out within {_biz.stylist_sla_hours} hours. "
        "Your ticket is {ticket_id}."
    ),
    "ask_csat": "How did we do? Rate this chat from 1 to 5.",
    "csat_thanks": "Thanks for the feedback!",
    "csat_escalated": "Sorry we missed the mark. I've asked a stylist to follow up personally.",
    "csat_ask_contact": "Sorry we missed the mark. Share your email and a stylist will follow up personally.",
    "shortlist_saved": "Saved to your shortlist. You now have {count} item{plural} saved.",
    "shortlist_already": "That piece is already on your shortlist.",
    "shortlist_removed": "Removed from your shortlist. You have {count} item{plural} saved.",
    "shortlist_not_found": "That piece isn't on your shortlist.",
    "shortlist_cleared": "Cleared your shortlist. Save any new pieces you like.",
    "shortlist_empty": "Your shortlist is already empty.",
    "updates_subscribed": "Perfect, I'll text studio milestones for order {order_number}.",
    "updates_need_order": "Tap “Track my order” first so I know which order to follow.",
    "info_sizing_repairs": (
        "We offer free resizing within 60 days and lifetime repairs. "
        "Start a return or exchange to send a piece to the studio."
    ),
    "info_care_warranty": (
        "Every piece carries a lifetime warranty on craftsmanship. Clean with warm "
        "water and a soft brush, and store pieces separately."
    ),
    "info_financing": "Pay over time with 0% APR installments at checkout on orders over $250.",
    "duplicate_action": "Looks like that was already submitted, so nothing new was created.",
    "validation_error": "That {field} doesn't look right. Mind checking it?",
    "service_error": "I ran into a snag reaching the studio. Mind trying that again?",
    "fallback": "Something went sideways on my end. Try one of these quick actions.",
}


def render(key: str, **values: object) -> str:
    """Format a pre-authored message."""
    return MESSAGES[key].format(**values)
