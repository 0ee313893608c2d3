"""
Re-entrant conversation state machine for the concierge.

The machine never mutates the session it is handed. ``transition`` is a
pure function of (state, intent, payload, session snapshot, now) that
returns the next state, the ordered actions to perform, and the session
deltas the orchestrator should commit once those actions succeed.

Any state accepts any intent: a session mid-return can pivot to product
search. There is no terminal success state. Unknown intents keep the
current state and answer with the quick-start options.

Usage:
    sm = ConversationStateMachine()
    result = sm.transition(ConversationState.WELCOME, Intent.TRACK_ORDER, {}, session, now)
    assert result.next_state == ConversationState.AWAITING_ORDER_LOOKUP
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

import pydantic
from pydantic.alias_generators import to_camel

from concierge.config import CapsuleConfig, CatalogConfig, CsatConfig, SessionConfig, settings
from concierge.conversation.offer_trigger import OfferTriggerEvaluator
from concierge.conversation.slot_manager import SlotManager
from concierge.errors import ConciergeError, StateInvariantError, ValidationError
from concierge.schemas.conversation_schema import ConversationState, Intent
from concierge.schemas.product_schema import Preferences
from concierge.schemas.session_schema import ContactInfo, Session
from concierge.utils import stable_hash

logger = logging.getLogger(__name__)


class ActionType(str, Enum):
    """Everything a transition can ask the orchestrator to do."""

    RESPOND = "respond"
    REQUEST_FIELDS = "request_fields"
    SHOW_QUICK_START = "show_quick_start"
    RUN_RECOMMENDATION = "run_recommendation"
    LOOKUP_ORDER = "lookup_order"
    CREATE_RETURN = "create_return"
    RESERVE_CAPSULE = "reserve_capsule"
    CREATE_STYLIST_TICKET = "create_stylist_ticket"
    RECORD_CSAT = "record_csat"
    SUBSCRIBE_ORDER_UPDATES = "subscribe_order_updates"

    @property
    def is_mutating(self) -> bool:
        return self in _MUTATING

    @property
    def is_external(self) -> bool:
        return self in _MUTATING or self in _READS


_MUTATING = frozenset({
    ActionType.CREATE_RETURN,
    ActionType.RESERVE_CAPSULE,
    ActionType.CREATE_STYLIST_TICKET,
    ActionType.RECORD_CSAT,
    ActionType.SUBSCRIBE_ORDER_UPDATES,
})
_READS = frozenset({ActionType.RUN_RECOMMENDATION, ActionType.LOOKUP_ORDER})

# States that wait on one flow's input, used for contextual follow-ups.
PENDING_INTENTS: dict[ConversationState, Intent] = {
    ConversationState.COLLECTING_PREFERENCES: Intent.FIND_PRODUCT,
    ConversationState.AWAITING_ORDER_LOOKUP: Intent.TRACK_ORDER,
    ConversationState.AWAITING_RETURN_DETAILS: Intent.RETURN_EXCHANGE,
    ConversationState.AWAITING_CONTACT_INFO: Intent.STYLIST_CONTACT,
    ConversationState.AWAITING_CSAT: Intent.CSAT,
}

INFO_INTENTS: dict[Intent, str] = {
    Intent.SIZING_REPAIRS: "info_sizing_repairs",
    Intent.CARE_WARRANTY: "info_care_warranty",
    Intent.FINANCING: "info_financing",
}

DEFAULT_RETURN_REASON = "other"

# Ticket reasons are closed codes; anything else the shopper typed rides
# along as a note for the stylist and is never emitted or logged.
STYLIST_TOPICS = frozenset({
    "stylist_request",
    "custom_design",
    "sizing",
    "order_issue",
    "gift_advice",
    "shortlist_review",
})
DEFAULT_STYLIST_TOPIC = "stylist_request"


def _topic_token(raw: str) -> str:
    return raw.strip().lower().replace("-", "_").replace(" ", "_")


def stylist_topic(raw: Any) -> str:
    """Map a requested topic onto a known code, falling back to ``stylist_request``."""
    if not isinstance(raw, str):
        return DEFAULT_STYLIST_TOPIC
    code = _topic_token(raw)
    return code if code in STYLIST_TOPICS else DEFAULT_STYLIST_TOPIC


def make_dedup_key(
    session_id: str,
    action_type: ActionType,
    token: Optional[str],
    payload: dict[str, Any],
) -> str:
    """Deterministic, non-empty key from the session, action, and token or payload."""
    basis = token if token else stable_hash(payload)
    return f"{action_type.value}:{stable_hash([session_id, action_type.value, basis])}"


@dataclass(frozen=True)
class Action:
    type: ActionType
    payload: dict[str, Any] = field(default_factory=dict)
    dedup_key: Optional[str] = None


@dataclass(frozen=True)
class SessionDelta:
    """Session changes to commit only if every external action succeeded."""

    preferences: Optional[Preferences] = None
    shortlist_add: tuple[str, ...] = ()
    shortlist_remove: tuple[str, ...] = ()
    shortlist_clear: bool = False
    contact: Optional[ContactInfo] = None
    inspiration_uploaded: Optional[bool] = None


@dataclass(frozen=True)
class TransitionResult:
    next_state: ConversationState
    actions: tuple[Action, ...] = ()
    delta: SessionDelta = field(default_factory=SessionDelta)
    error: Optional[ConciergeError] = None

    def external_actions(self) -> list[Action]:
        return [a for a in self.actions if a.type.is_external]


def _respond(key: str, **values: Any) -> Action:
    return Action(ActionType.RESPOND, {"key": key, "values": values})


def _request_fields(
    form_id: str,
    title: str,
    fields: list[str],
    prefill: Optional[dict[str, Any]] = None,
    optional: tuple[str, ...] = (),
) -> Action:
    return Action(
        ActionType.REQUEST_FIELDS,
        {
            "form_id": form_id,
            "title": title,
            "fields": fields,
            "prefill": prefill or {},
            "optional": list(optional),
        },
    )


class ConversationStateMachine:
    """Pure transition function plus the handler table that backs it."""

    def __init__(
        self,
        catalog: Optional[CatalogConfig] = None,
        capsule: Optional[CapsuleConfig] = None,
        csat: Optional[CsatConfig] = None,
        session: Optional[SessionConfig] = None,
        offers: Optional[OfferTriggerEvaluator] = None,
        slots: Optional[SlotManager] = None,
    ) -> None:
        self._catalog = catalog or settings.catalog
        self._capsule = capsule or settings.capsule
        self._csat = csat or settings.csat
        self._session = session or settings.session
        self._offers = offers or OfferTriggerEvaluator(self._capsule)
        self._slots = slots or SlotManager(csat=self._csat)
        self._handlers: dict[Intent, Callable[..., TransitionResult]] = {
            Intent.FIND_PRODUCT: self._find_product,
            Intent.TRACK_ORDER: self._track_order,
            Intent.RETURN_EXCHANGE: self._return_exchange,
            Intent.CAPSULE_RESERVE: self._capsule_reserve,
            Intent.STYLIST_CONTACT: self._stylist_contact,
            Intent.CSAT: self._csat_rating,
            Intent.SHORTLIST_ADD: self._shortlist_add,
            Intent.SHORTLIST_REMOVE: self._shortlist_remove,
            Intent.SHORTLIST_CLEAR: self._shortlist_clear,
            Intent.SHORTLIST_ESCALATE: self._shortlist_escalate,
            Intent.ORDER_UPDATES: self._order_updates,
            Intent.SIZING_REPAIRS: self._info,
            Intent.CARE_WARRANTY: self._info,
            Intent.FINANCING: self._info,
            Intent.UNKNOWN: self._unknown,
        }

    @staticmethod
    def pending_intent(state: ConversationState) -> Optional[Intent]:
        return PENDING_INTENTS.get(state)

    def transition(
        self,
        state: ConversationState,
        intent: Intent,
        payload: dict[str, Any],
        session: Session,
        now: datetime,
    ) -> TransitionResult:
        """
        Compute the next state and actions for one turn.

        Never raises. An impossible state/intent combination yields a
        TERMINAL_ERROR result carrying a StateInvariantError.
        """
        handler = self._handlers.get(intent)
        if handler is None or not isinstance(state, ConversationState):
            logger.error("No transition for state=%r intent=%r", state, intent)
            return TransitionResult(
                next_state=ConversationState.TERMINAL_ERROR,
                actions=(Action(ActionType.SHOW_QUICK_START, {"emphasize_human": True}),),
                error=StateInvariantError(f"No transition for {state!r} with {intent!r}"),
            )
        result = handler(state=state, intent=intent, payload=payload, session=session, now=now)
        logger.debug(
            "Transition: %s -> %s (intent: %s, actions: %s)",
            state.value, result.next_state.value, intent.value,
            [a.type.value for a in result.actions],
        )
        return result

    # -- helpers -----------------------------------------------------------

    def _key(self, session: Session, action_type: ActionType, payload: dict[str, Any],
             token: Optional[str]) -> str:
        return make_dedup_key(session.id, action_type, token, payload)

    def _invalid(
        self,
        next_state: ConversationState,
        slot: str,
        form: Optional[Action] = None,
    ) -> TransitionResult:
        display = self._slots.get_definition(slot).display_name if self._slots.has(slot) else slot
        actions = [_respond("validation_error", field=display)]
        if form is not None:
            actions.append(form)
        return TransitionResult(
            next_state=next_state,
            actions=tuple(actions),
            error=ValidationError(slot),
        )

    @staticmethod
    def _preference_update(payload: dict[str, Any]) -> dict[str, Any]:
        source: dict[str, Any] = {}
        filters = payload.get("filters")
        if isinstance(filters, dict):
            source.update(filters)
        source.update(payload)
        picked: dict[str, Any] = {}
        for name in Preferences.model_fields:
            for key in (to_camel(name), name):
                if key in source and source[key] is not None:
                    picked[name] = source[key]
                    break
        return picked

    # -- handlers ----------------------------------------------------------

    def _find_product(self, state, intent, payload, session, now) -> TransitionResult:
        try:
            update = Preferences.model_validate(self._preference_update(payload))
        except pydantic.ValidationError as exc:
            bad = str(exc.errors()[0]["loc"][0]) if exc.errors() else "budget_max"
            return self._invalid(ConversationState.COLLECTING_PREFERENCES, bad)

        merged = session.preferences.merged(update)
        inspiration = True if payload.get("inspirationUploaded") else None
        delta = SessionDelta(preferences=merged, inspiration_uploaded=inspiration)
        missing = merged.missing(self._catalog.required_filters)
        if missing:
            fields = " and ".join(self._slots.display_names(missing))
            return TransitionResult(
                next_state=ConversationState.COLLECTING_PREFERENCES,
                actions=(
                    _respond("ask_filters", fields=fields),
                    _request_fields(
                        "product_filters", "What are you looking for?", missing,
                        prefill=merged.model_dump(exclude_none=True),
                    ),
                ),
                delta=delta,
            )
        return TransitionResult(
            next_state=ConversationState.SHOWING_RECOMMENDATIONS,
            actions=(
                Action(ActionType.RUN_RECOMMENDATION, {"preferences": merged.model_dump()}),
            ),
            delta=delta,
        )

    def _track_order(self, state, intent, payload, session, now) -> TransitionResult:
        lookup_form = _request_fields(
            "order_lookup", "Find your order", ["order_id", "email", "zip"],
            optional=("email", "zip"),
        )
        awaiting = ConversationState.AWAITING_ORDER_LOOKUP
        order_id = payload.get("orderId") or payload.get("orderNumber")
        if order_id:
            ok, value = self._slots.validate("order_id", order_id)
            if not ok:
                return self._invalid(awaiting, "order_id", lookup_form)
            return TransitionResult(
                next_state=ConversationState.ORDER_STATUS,
                actions=(Action(ActionType.LOOKUP_ORDER, {"order_id": value}),),
            )

        email, zip_code = payload.get("email"), payload.get("zip")
        if email and zip_code:
            ok_email, email_value = self._slots.validate("email", email)
            if not ok_email:
                return self._invalid(awaiting, "email", lookup_form)
            ok_zip, zip_value = self._slots.validate("zip", str(zip_code))
            if not ok_zip:
                return self._invalid(awaiting, "zip", lookup_form)
            return TransitionResult(
                next_state=ConversationState.ORDER_STATUS,
                actions=(Action(ActionType.LOOKUP_ORDER, {"email": email_value, "zip": zip_value}),),
            )

        return TransitionResult(
            next_state=awaiting,
            actions=(_respond("ask_order_lookup"), lookup_form),
        )

    def _return_exchange(self, state, intent, payload, session, now) -> TransitionResult:
        awaiting = ConversationState.AWAITING_RETURN_DETAILS
        return_form = _request_fields(
            "return_details", "Start a return", ["order_id", "reason"], optional=("reason",),
        )
        order_id = payload.get("orderId") or payload.get("orderNumber")
        order_number: Optional[str] = None
        if order_id:
            ok, value = self._slots.validate("order_id", order_id)
            if not ok:
                return self._invalid(awaiting, "order_id", return_form)
            order_id = order_number = value
        elif session.last_order_ref is not None:
            # Carry the looked-up order forward instead of re-prompting.
            order_id = session.last_order_ref.order_id
            order_number = session.last_order_ref.order_number

        if not order_id:
            return TransitionResult(
                next_state=awaiting,
                actions=(_respond("ask_return_order"), return_form),
            )

        reason = payload.get("reason") or DEFAULT_RETURN_REASON
        ok, reason_value = self._slots.validate("reason", reason)
        if not ok:
            return self._invalid(awaiting, "reason", return_form)

        action_payload = {
            "order_id": order_id,
            "order_number": order_number or order_id,
            "reason": reason_value,
        }
        key = self._key(
            session, ActionType.CREATE_RETURN,
            {"order_id": order_id, "reason": reason_value},
            payload.get("idempotencyKey"),
        )
        return TransitionResult(
            next_state=ConversationState.AWAITING_CSAT,
            actions=(Action(ActionType.CREATE_RETURN, action_payload, key),),
        )

    def _capsule_reserve(self, state, intent, payload, session, now) -> TransitionResult:
        hold = session.active_capsule_hold(now)
        if hold is not None:
            return TransitionResult(
                next_state=ConversationState.CAPSULE_HELD,
                actions=(
                    _respond(
                        "capsule_existing",
                        capsule_id=hold.capsule_id,
                        expires_at=hold.expires_at.isoformat(),
                    ),
                ),
            )

        inspiration = bool(payload.get("inspirationUploaded"))
        eligible = (
            self._offers.should_offer(session)
            or inspiration
            or bool(payload.get("customDesign"))
            or self._offers.mentions_bespoke(payload.get("utterance"))
        )
        if not eligible:
            return TransitionResult(
                next_state=state,
                actions=(_respond("capsule_ineligible"),),
            )

        item_ids = list(session.shortlist)
        action_payload = {
            "session_id": session.id,
            "item_ids": item_ids,
            "ttl_hours": self._capsule.hold_ttl_hours,
        }
        key = self._key(
            session, ActionType.RESERVE_CAPSULE,
            {"item_ids": sorted(item_ids)},
            payload.get("idempotencyKey"),
        )
        return TransitionResult(
            next_state=ConversationState.CAPSULE_HELD,
            actions=(Action(ActionType.RESERVE_CAPSULE, action_payload, key),),
            delta=SessionDelta(inspiration_uploaded=True if inspiration else None),
        )

    def _merged_contact(self, payload: dict[str, Any], session: Session) -> ContactInfo:
        known = session.contact or ContactInfo()
        return ContactInfo(
            name=payload.get("name") or known.name,
            email=payload.get("email") or known.email,
            phone=payload.get("phone") or known.phone,
        )

    def _validated_contact(
        self, payload: dict[str, Any], session: Session
    ) -> tuple[Optional[ContactInfo], Optional[str]]:
        """Returns (contact, None) or (None, failing_slot)."""
        raw = self._merged_contact(payload, session)
        values: dict[str, Optional[str]] = {}
        for slot in ("name", "email", "phone"):
            value = getattr(raw, slot)
            if value is None:
                values[slot] = None
                continue
            ok, normalized = self._slots.validate(slot, value)
            if not ok:
                return None, slot
            values[slot] = normalized
        return ContactInfo(**values), None

    def _ticket_action(
        self,
        session: Session,
        contact: ContactInfo,
        context: dict[str, Any],
        token: Optional[str],
    ) -> Action:
        order = session.last_order_ref
        action_payload = {
            "name": contact.name or "Guest",
            "email": contact.email,
            "phone": contact.phone,
            "context": {
                **context,
                "shortlist": list(session.shortlist),
                "order_number": order.order_number if order else None,
            },
        }
        key = self._key(
            session, ActionType.CREATE_STYLIST_TICKET,
            {"email": contact.email, "context": context},
            token,
        )
        return Action(ActionType.CREATE_STYLIST_TICKET, action_payload, key)

    def _contact_form(self, prefill: Optional[dict[str, Any]] = None) -> Action:
        return _request_fields(
            "stylist_contact", "Talk to a stylist", ["name", "email", "phone"],
            prefill=prefill, optional=("name", "phone"),
        )

    def _stylist_contact(self, state, intent, payload, session, now) -> TransitionResult:
        awaiting = ConversationState.AWAITING_CONTACT_INFO
        contact, bad_slot = self._validated_contact(payload, session)
        if bad_slot is not None:
            return self._invalid(awaiting, bad_slot, self._contact_form())
        if not contact.email:
            prefill = {k: v for k, v in (("name", contact.name), ("phone", contact.phone)) if v}
            return TransitionResult(
                next_state=awaiting,
                actions=(_respond("ask_contact"), self._contact_form(prefill)),
                delta=SessionDelta(contact=contact),
            )
        raw_topic = payload.get("topic")
        context: dict[str, Any] = {"reason": stylist_topic(raw_topic), "source": payload.get("source")}
        typed = raw_topic.strip() if isinstance(raw_topic, str) else ""
        if typed and _topic_token(typed) not in STYLIST_TOPICS:
            context["note"] = typed
        return TransitionResult(
            next_state=ConversationState.AWAITING_CSAT,
            actions=(self._ticket_action(session, contact, context, payload.get("idempotencyKey")),),
            delta=SessionDelta(contact=contact),
        )

    def _csat_rating(self, state, intent, payload, session, now) -> TransitionResult:
        awaiting = ConversationState.AWAITING_CSAT
        rating_form = _request_fields("csat", "Rate this chat", ["rating"])
        raw = payload.get("rating")
        if raw is None:
            return TransitionResult(next_state=awaiting, actions=(_respond("ask_csat"), rating_form))
        ok, rating = self._slots.validate("rating", raw)
        if not ok:
            return self._invalid(awaiting, "rating", rating_form)

        comment = payload.get("comment")
        token = payload.get("idempotencyKey")
        csat_payload = {"session_id": session.id, "rating": rating, "comment": comment}
        csat_key = self._key(
            session, ActionType.RECORD_CSAT,
            {"rating": rating, "comment": stable_hash(comment) if comment else None},
            token,
        )
        actions = [Action(ActionType.RECORD_CSAT, csat_payload, csat_key)]

        if rating >= self._csat.negative_threshold:
            actions.append(_respond("csat_thanks"))
            return TransitionResult(next_state=ConversationState.WELCOME, actions=tuple(actions))

        # Negative rating escalates within the same turn.
        contact, bad_slot = self._validated_contact(payload, session)
        if contact is not None and contact.email:
            escalation = self._ticket_action(
                session, contact, {"reason": "csat_escalation", "rating": rating},
                f"{csat_key}:escalation",
            )
            actions.extend((_respond("csat_escalated"), escalation))
            return TransitionResult(
                next_state=ConversationState.WELCOME,
                actions=tuple(actions),
                delta=SessionDelta(contact=contact),
            )
        actions.extend((_respond("csat_ask_contact"), self._contact_form()))
        return TransitionResult(
            next_state=ConversationState.AWAITING_CONTACT_INFO,
            actions=tuple(actions),
        )

    @staticmethod
    def _product_id(payload: dict[str, Any]) -> Optional[str]:
        product = payload.get("product")
        product_id = payload.get("productId") or (product.get("id") if isinstance(product, dict) else None)
        return product_id if isinstance(product_id, str) and product_id else None

    @staticmethod
    def _missing_product(state: ConversationState) -> TransitionResult:
        return TransitionResult(
            next_state=state,
            actions=(_respond("validation_error", field="product"),),
            error=ValidationError("product_id"),
        )

    def _shortlist_add(self, state, intent, payload, session, now) -> TransitionResult:
        product_id = self._product_id(payload)
        if product_id is None:
            return self._missing_product(state)
        if product_id in session.shortlist:
            return TransitionResult(next_state=state, actions=(_respond("shortlist_already"),))
        count = len(session.shortlist) + 1
        return TransitionResult(
            next_state=state,
            actions=(_respond("shortlist_saved", count=count, plural="" if count == 1 else "s"),),
            delta=SessionDelta(shortlist_add=(product_id,)),
        )

    def _shortlist_remove(self, state, intent, payload, session, now) -> TransitionResult:
        product_id = self._product_id(payload)
        if product_id is None:
            return self._missing_product(state)
        if product_id not in session.shortlist:
            return TransitionResult(next_state=state, actions=(_respond("shortlist_not_found"),))
        count = len(session.shortlist) - 1
        return TransitionResult(
            next_state=state,
            actions=(_respond("shortlist_removed", count=count, plural="" if count == 1 else "s"),),
            delta=SessionDelta(shortlist_remove=(product_id,)),
        )

    def _shortlist_clear(self, state, intent, payload, session, now) -> TransitionResult:
        if not session.shortlist:
            return TransitionResult(next_state=state, actions=(_respond("shortlist_empty"),))
        return TransitionResult(
            next_state=state,
            actions=(_respond("shortlist_cleared"),),
            delta=SessionDelta(shortlist_clear=True),
        )

    def _shortlist_escalate(self, state, intent, payload, session, now) -> TransitionResult:
        """Hand the saved pieces to a stylist; the ticket context carries the shortlist."""
        routed = {**payload, "topic": "shortlist_review", "source": "shortlist"}
        return self._stylist_contact(state, intent, routed, session, now)

    def _order_updates(self, state, intent, payload, session, now) -> TransitionResult:
        order = session.last_order_ref
        if order is None:
            return TransitionResult(
                next_state=state,
                actions=(_respond("updates_need_order"),),
            )
        action_payload = {"order_id": order.order_id, "order_number": order.order_number, "channel": "sms"}
        key = self._key(
            session, ActionType.SUBSCRIBE_ORDER_UPDATES,
            {"order_id": order.order_id, "channel": "sms"},
            payload.get("idempotencyKey"),
        )
        return TransitionResult(
            next_state=ConversationState.ORDER_STATUS,
            actions=(Action(ActionType.SUBSCRIBE_ORDER_UPDATES, action_payload, key),),
        )

    def _info(self, state, intent, payload, session, now) -> TransitionResult:
        return TransitionResult(
            next_state=ConversationState.PROVIDING_INFO,
            actions=(_respond(INFO_INTENTS[intent]),),
        )

    def _unknown(self, state, intent, payload, session, now) -> TransitionResult:
        misses = session.miss_count + 1
        emphasize_human = misses >= self._session.misses_before_human
        return TransitionResult(
            next_state=state,
            actions=(
                _respond("unknown_repeat" if emphasize_human else "unknown"),
                Action(ActionType.SHOW_QUICK_START, {"emphasize_human": emphasize_human}),
            ),
        )
