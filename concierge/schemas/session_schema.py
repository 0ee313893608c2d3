"""Per-session conversation record owned by the session store."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from concierge.schemas.conversation_schema import ConversationState, Intent
from concierge.schemas.product_schema import Preferences


@dataclass
class LastOrderRef:
    """Order context carried between turns so returns never re-prompt."""

    order_id: str
    order_number: str
    email_hint: Optional[str] = None
    status: Optional[str] = None


@dataclass
class CapsuleHold:
    capsule_id: str
    created_at: datetime
    expires_at: datetime
    item_ids: list[str] = field(default_factory=list)

    def is_active(self, now: datetime) -> bool:
        # Expired strictly after expires_at.
        return now <= self.expires_at


@dataclass
class ContactInfo:
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class Session:
    """
    Mutable per-session data.

    Owned by SessionStore and mutated only inside ``apply_turn``. The
    state machine receives a snapshot copy and never writes to it.
    """

    id: str
    state: ConversationState = ConversationState.WELCOME
    preferences: Preferences = field(default_factory=Preferences)
    shortlist: list[str] = field(default_factory=list)
    last_order_ref: Optional[LastOrderRef] = None
    capsule_hold: Optional[CapsuleHold] = None
    contact: Optional[ContactInfo] = None
    inspiration_uploaded: bool = False
    last_intent: Optional[Intent] = None
    miss_count: int = 0
    turn_count: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_activity_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def active_capsule_hold(self, now: datetime) -> Optional[CapsuleHold]:
        """The capsule hold, or None once it has expired even if not purged."""
        if self.capsule_hold is not None and self.capsule_hold.is_active(now):
            return self.capsule_hold
        return None

    def add_to_shortlist(self, product_id: str) -> bool:
        """Append if absent. Returns True when the shortlist changed."""
        if product_id in self.shortlist:
            return False
        self.shortlist.append(product_id)
        return True

    def remove_from_shortlist(self, product_id: str) -> bool:
        """Drop one item, keeping the order of the rest. Returns True when it was present."""
        if product_id not in self.shortlist:
            return False
        self.shortlist = [p for p in self.shortlist if p != product_id]
        return True
