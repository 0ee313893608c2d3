"""
Per-request turn handler.

One turn runs classify -> transition -> dispatch -> persist -> emit under
the session's exclusive lock. Mutating actions go through the idempotency
guard, so a retried request returns the original result with a
``DUPLICATE_ACTION`` notice instead of creating a second record. Session
deltas are committed only when every external action in the turn
succeeded; a failed turn leaves the session exactly as it was, apart from
the turn bookkeeping.

Usage:
    orchestrator = build_default_orchestrator()
    response = orchestrator.handle(ConciergeRequest(session_id="s1", text="where is my order?"))
"""

import dataclasses
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from concierge.analytics import AnalyticsEmitter, InMemoryAnalyticsSink, TurnRecord
from concierge.config import CapsuleConfig, CatalogConfig, CsatConfig, settings
from concierge.conversation.intent_classifier import ClassifierInput, IntentClassifier
from concierge.conversation.offer_trigger import OfferTriggerEvaluator
from concierge.conversation.recommender import RecommendationEngine
from concierge.conversation.slot_manager import SlotManager
from concierge.conversation.state_machine import (
    Action,
    ActionType,
    ConversationStateMachine,
    TransitionResult,
)
from concierge.dispatcher import ActionDispatcher, ActionResult
from concierge.errors import (
    ConciergeError,
    DuplicateActionError,
    ErrorCode,
    NotFoundError,
    StateInvariantError,
    ValidationError,
)
from concierge.idempotency import IdempotencyGuard
from concierge.logging_context import bind_request, get_request_logger
from concierge.prompts.responses import QUICK_START, render
from concierge.schemas.conversation_schema import (
    ConciergeRequest,
    ConciergeResponse,
    ConversationState,
    ErrorPayload,
    FormSpec,
    Intent,
    OfferPayload,
    ProductCard,
    QuickAction,
)
from concierge.schemas.product_schema import Preferences
from concierge.schemas.session_schema import CapsuleHold, LastOrderRef, Session
from concierge.session_store import SessionStore
from concierge.tools.capsules import InMemoryCapsuleStore
from concierge.tools.catalog import InMemoryCatalog
from concierge.tools.csat import InMemoryCsatProvider
from concierge.tools.orders import InMemoryOrderProvider
from concierge.tools.returns import InMemoryReturnsProvider
from concierge.tools.ticketing import InMemoryTicketingProvider
from concierge.utils import mask_email

logger = get_request_logger(__name__)

Clock = Callable[[], datetime]

ORDER_FOLLOW_UPS: tuple[QuickAction, ...] = (
    QuickAction(intent=Intent.ORDER_UPDATES, label="Text me updates"),
    QuickAction(intent=Intent.RETURN_EXCHANGE, label="Start a return"),
)


@dataclass
class _TurnDraft:
    """Response pieces accumulated while rendering one turn."""

    messages: list[str] = field(default_factory=list)
    cards: list[ProductCard] = field(default_factory=list)
    form: Optional[FormSpec] = None
    quick_actions: list[QuickAction] = field(default_factory=list)
    ui_hints: dict[str, Any] = field(default_factory=dict)
    data: dict[str, Any] = field(default_factory=dict)
    error: Optional[ErrorPayload] = None
    notice: Optional[ErrorPayload] = None

    def show_quick_start(self, emphasize_human: bool = False) -> None:
        self.quick_actions = list(QUICK_START)
        self.ui_hints["emphasizeHuman"] = emphasize_human


def _error_payload(error: ConciergeError, message: str) -> ErrorPayload:
    return ErrorPayload(
        code=error.code,
        message=message,
        field=error.field if isinstance(error, ValidationError) else None,
    )


class RequestOrchestrator:
    """Stateless request handler over the shared session store and dedup cache."""

    def __init__(
        self,
        sessions: SessionStore,
        guard: IdempotencyGuard,
        dispatcher: ActionDispatcher,
        analytics: AnalyticsEmitter,
        classifier: Optional[IntentClassifier] = None,
        machine: Optional[ConversationStateMachine] = None,
        recommender: Optional[RecommendationEngine] = None,
        offers: Optional[OfferTriggerEvaluator] = None,
        slots: Optional[SlotManager] = None,
        clock: Optional[Clock] = None,
        catalog: Optional[CatalogConfig] = None,
        capsule: Optional[CapsuleConfig] = None,
        csat: Optional[CsatConfig] = None,
    ) -> None:
        self._sessions = sessions
        self._guard = guard
        self._dispatcher = dispatcher
        self._analytics = analytics
        self._classifier = classifier or IntentClassifier()
        self._catalog = catalog or settings.catalog
        self._capsule = capsule or settings.capsule
        csat = csat or settings.csat
        self._slots = slots or SlotManager(csat=csat)
        self._offers = offers or OfferTriggerEvaluator(self._capsule)
        self._machine = machine or ConversationStateMachine(
            catalog=self._catalog, capsule=self._capsule, csat=csat,
            offers=self._offers, slots=self._slots,
        )
        self._recommender = recommender or RecommendationEngine()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def sessions(self) -> SessionStore:
        return self._sessions

    def handle(self, request: ConciergeRequest) -> ConciergeResponse:
        """Process one inbound turn. Never raises for user or collaborator input."""
        request_id = request.request_id or f"req-{uuid.uuid4().hex[:12]}"
        bind_request(request_id, request.session_id)
        try:
            response, record = self._sessions.apply_turn(
                request.session_id, lambda session: self._run_turn(request, request_id, session)
            )
        except Exception:
            # Nothing was committed; answer with the generic recovery response.
            logger.exception("Turn failed for session %s", request.session_id[:8])
            response = self._fallback_response(request, request_id)
            self._analytics.emit_turn(self._fallback_record(request, response))
            return response

        self._analytics.emit_turn(record)
        return response

    # -- turn --------------------------------------------------------------

    def _run_turn(
        self, request: ConciergeRequest, request_id: str, session: Session
    ) -> tuple[ConciergeResponse, TurnRecord]:
        now = self._clock()
        from_state = session.state
        classification = self._classifier.detect(
            ClassifierInput(
                text=request.text,
                explicit_intent=request.explicit_intent,
                meta={"pending_intent": self._machine.pending_intent(from_state)},
            )
        )
        intent = classification.intent
        payload: dict[str, Any] = {**classification.entities, **request.payload}
        if request.text:
            payload.setdefault("utterance", request.text)
        if request.idempotency_key:
            payload["idempotencyKey"] = request.idempotency_key
        logger.info(
            "Turn: state=%s intent=%s source=%s", from_state.value, intent.value, classification.source
        )

        result = self._machine.transition(from_state, intent, payload, session, now)
        draft = _TurnDraft()
        results = self._run_external_actions(result)
        failed = next((r for r in results if not r.ok), None)

        if failed is not None:
            next_state = self._render_failure(failed, from_state, draft)
        else:
            next_state = result.next_state
            self._render_actions(result, results, session, now, draft)
            self._apply_delta(result, session)
            if result.error is not None:
                self._render_transition_error(result.error, draft)
            if next_state == ConversationState.AWAITING_CSAT and draft.form is None:
                draft.messages.append(render("ask_csat"))
                draft.form = self._slots.form_for("csat", "Rate this chat", ["rating"])

        offer = self._maybe_offer(intent, session, now)
        if any(r.duplicate for r in results):
            draft.notice = ErrorPayload(
                code=ErrorCode.DUPLICATE_ACTION, message=render("duplicate_action")
            )
        if not draft.messages:
            draft.messages.append(render("fallback"))
            draft.show_quick_start()

        session.state = next_state
        session.last_intent = intent
        session.miss_count = session.miss_count + 1 if intent == Intent.UNKNOWN else 0
        if session.shortlist or intent in (Intent.SHORTLIST_REMOVE, Intent.SHORTLIST_CLEAR):
            draft.data.setdefault("shortlist", list(session.shortlist))

        response = ConciergeResponse(
            request_id=request_id,
            session_id=session.id,
            intent=intent,
            state=next_state,
            messages=draft.messages,
            cards=draft.cards,
            offer=offer,
            form=draft.form,
            quick_actions=draft.quick_actions,
            ui_hints=draft.ui_hints,
            data=draft.data,
            error=draft.error,
            notice=draft.notice,
        )
        record = TurnRecord(
            request_id=request_id,
            session_id=session.id,
            intent=intent,
            source=classification.source,
            rule=classification.rule,
            from_state=from_state,
            to_state=next_state,
            results=results,
            card_count=len(draft.cards),
            offer_shown=offer is not None,
            emphasize_human=bool(draft.ui_hints.get("emphasizeHuman")),
            error_code=draft.error.code.value if draft.error else None,
        )
        return response, record

    def _run_external_actions(self, result: TransitionResult) -> list[ActionResult]:
        """Dispatch in order, stopping at the first failure."""
        results: list[ActionResult] = []
        for action in result.external_actions():
            outcome = self._execute(action)
            results.append(outcome)
            if not outcome.ok:
                break
        return results

    def _execute(self, action: Action) -> ActionResult:
        if not action.type.is_mutating:
            return self._dispatcher.dispatch(action)
        if not action.dedup_key:
            logger.error("Mutating action %s has no dedup key", action.type.value)
            return ActionResult.failure(
                action, StateInvariantError(f"{action.type.value} is missing its dedup key")
            )
        guarded = self._guard.execute(
            action.dedup_key,
            lambda: self._dispatcher.dispatch(action),
            cache_if=lambda r: r.ok,
        )
        if not guarded.duplicate:
            return guarded.value
        original: ActionResult = guarded.value
        return dataclasses.replace(
            original,
            action=action,
            duplicate=True,
            error=DuplicateActionError("Action already processed", original=original.data),
        )

    # -- rendering ---------------------------------------------------------

    def _render_actions(
        self,
        result: TransitionResult,
        results: list[ActionResult],
        session: Session,
        now: datetime,
        draft: _TurnDraft,
    ) -> None:
        outcomes = iter(results)
        for action in result.actions:
            if action.type == ActionType.RESPOND:
                draft.messages.append(render(action.payload["key"], **action.payload["values"]))
            elif action.type == ActionType.REQUEST_FIELDS:
                p = action.payload
                draft.form = self._slots.form_for(
                    p["form_id"], p["title"], p["fields"], p["prefill"], tuple(p["optional"])
                )
            elif action.type == ActionType.SHOW_QUICK_START:
                draft.show_quick_start(bool(action.payload.get("emphasize_human")))
            else:
                self._render_result(next(outcomes), session, now, draft)

    def _render_result(
        self, outcome: ActionResult, session: Session, now: datetime, draft: _TurnDraft
    ) -> None:
        action, data = outcome.action, outcome.data
        kind = action.type

        if kind == ActionType.RUN_RECOMMENDATION:
            prefs = Preferences.model_validate(action.payload.get("preferences") or {})
            ranked = self._recommender.rank_scored(data.get("products", []), prefs)
            draft.cards = [
                ProductCard(
                    product_id=s.product.id,
                    title=s.product.title,
                    price=s.product.price,
                    score=round(s.score, 4),
                    ships_in_days=s.product.ship_days,
                    ready_to_ship=s.product.ready_to_ship,
                    slug=s.product.slug,
                )
                for s in ranked
            ]
            if ranked:
                draft.messages.append(render("recommendations", count=len(ranked)))
            else:
                draft.messages.append(render("no_recommendations"))
                draft.form = self._slots.form_for(
                    "product_filters", "Adjust your search",
                    list(self._catalog.required_filters),
                    prefill=prefs.model_dump(exclude_none=True),
                )

        elif kind == ActionType.LOOKUP_ORDER:
            session.last_order_ref = LastOrderRef(
                order_id=data["order_id"],
                order_number=data["order_number"],
                email_hint=mask_email(data["email"]) if data.get("email") else None,
                status=data.get("status"),
            )
            draft.messages.append(
                render("order_status", order_number=data["order_number"], status=data["status"])
            )
            draft.data["order"] = {
                "orderNumber": data["order_number"],
                "status": data["status"],
                "eta": data.get("eta"),
                "emailHint": session.last_order_ref.email_hint,
            }
            draft.quick_actions = list(ORDER_FOLLOW_UPS)

        elif kind == ActionType.CREATE_RETURN:
            order_number = action.payload.get("order_number") or action.payload["order_id"]
            if outcome.duplicate:
                draft.messages.append(render("return_duplicate", rma_id=data["rma_id"]))
            else:
                draft.messages.append(
                    render("return_created", order_number=order_number, rma_id=data["rma_id"])
                )
            draft.data["return"] = {"rmaId": data["rma_id"], "labelUrl": data.get("label_url")}

        elif kind == ActionType.RESERVE_CAPSULE:
            session.capsule_hold = CapsuleHold(
                capsule_id=data["capsule_id"],
                created_at=data["created_at"],
                expires_at=data["expires_at"],
                item_ids=list(data.get("item_ids", [])),
            )
            draft.messages.append(
                render(
                    "capsule_reserved",
                    hours=action.payload.get("ttl_hours", self._capsule.hold_ttl_hours),
                    capsule_id=data["capsule_id"],
                )
            )
            draft.data["capsule"] = {
                "capsuleId": data["capsule_id"],
                "expiresAt": data["expires_at"].isoformat(),
                "itemIds": list(data.get("item_ids", [])),
            }

        elif kind == ActionType.CREATE_STYLIST_TICKET:
            draft.messages.append(render("ticket_created", ticket_id=data["ticket_id"]))
            draft.data["ticket"] = {"ticketId": data["ticket_id"]}

        elif kind == ActionType.RECORD_CSAT:
            draft.data["csat"] = {"csatId": data["csat_id"], "rating": action.payload["rating"]}

        elif kind == ActionType.SUBSCRIBE_ORDER_UPDATES:
            draft.messages.append(
                render("updates_subscribed", order_number=action.payload["order_number"])
            )
            draft.data["subscription"] = {"subscriptionId": data["subscription_id"]}

    def _render_failure(
        self, failed: ActionResult, from_state: ConversationState, draft: _TurnDraft
    ) -> ConversationState:
        """Render a failed action. Returns the state the session stays in."""
        error = failed.error or StateInvariantError("Action failed without an error")
        if isinstance(error, NotFoundError):
            message = render("order_not_found")
            draft.messages.append(message)
            draft.form = self._slots.form_for(
                "order_lookup", "Find your order", ["order_id", "email", "zip"],
                optional=("email", "zip"),
            )
            draft.error = _error_payload(error, message)
            return ConversationState.AWAITING_ORDER_LOOKUP

        key = "fallback" if isinstance(error, StateInvariantError) else "service_error"
        message = render(key)
        draft.messages.append(message)
        draft.show_quick_start(emphasize_human=True)
        draft.error = _error_payload(error, message)
        logger.warning("Action %s failed: %s", failed.action.type.value, error.code.value)
        return from_state

    def _render_transition_error(self, error: ConciergeError, draft: _TurnDraft) -> None:
        if isinstance(error, ValidationError):
            draft.error = _error_payload(error, draft.messages[0] if draft.messages else error.message)
            return
        message = render("fallback")
        if message not in draft.messages:
            draft.messages.append(message)
        draft.error = _error_payload(error, message)

    # -- session -----------------------------------------------------------

    @staticmethod
    def _apply_delta(result: TransitionResult, session: Session) -> None:
        delta = result.delta
        if delta.preferences is not None:
            session.preferences = delta.preferences
        if delta.shortlist_clear:
            session.shortlist = []
        for product_id in delta.shortlist_remove:
            session.remove_from_shortlist(product_id)
        for product_id in delta.shortlist_add:
            session.add_to_shortlist(product_id)
        if delta.contact is not None:
            session.contact = delta.contact
        if delta.inspiration_uploaded:
            session.inspiration_uploaded = True

    def _maybe_offer(self, intent: Intent, session: Session, now: datetime) -> Optional[OfferPayload]:
        if intent == Intent.CAPSULE_RESERVE or session.active_capsule_hold(now) is not None:
            return None
        if not self._offers.should_offer(session):
            return None
        hours = self._capsule.hold_ttl_hours
        return OfferPayload(
            headline=render("capsule_offer_headline"),
            description=render("capsule_offer_body", hours=hours),
            ttl_hours=hours,
        )

    def _fallback_response(self, request: ConciergeRequest, request_id: str) -> ConciergeResponse:
        message = render("fallback")
        return ConciergeResponse(
            request_id=request_id,
            session_id=request.session_id,
            intent=request.explicit_intent or Intent.UNKNOWN,
            state=ConversationState.TERMINAL_ERROR,
            messages=[message],
            quick_actions=list(QUICK_START),
            ui_hints={"emphasizeHuman": True},
            error=ErrorPayload(code=ErrorCode.STATE_INVARIANT, message=message),
        )

    def _fallback_record(self, request: ConciergeRequest, response: ConciergeResponse) -> TurnRecord:
        session = self._sessions.get(request.session_id)
        return TurnRecord(
            request_id=response.request_id,
            session_id=request.session_id,
            intent=response.intent,
            source="explicit" if request.explicit_intent else "none",
            from_state=session.state if session is not None else ConversationState.WELCOME,
            to_state=response.state,
            emphasize_human=True,
            error_code=ErrorCode.STATE_INVARIANT.value,
        )


@dataclass
class InMemoryCollaborators:
    """The full set of in-memory collaborators, sharing one clock."""

    catalog: InMemoryCatalog
    orders: InMemoryOrderProvider
    returns: InMemoryReturnsProvider
    tickets: InMemoryTicketingProvider
    capsules: InMemoryCapsuleStore
    csat: InMemoryCsatProvider
    analytics: InMemoryAnalyticsSink

    @classmethod
    def create(cls, clock: Optional[Clock] = None) -> "InMemoryCollaborators":
        return cls(
            catalog=InMemoryCatalog(),
            orders=InMemoryOrderProvider(),
            returns=InMemoryReturnsProvider(),
            tickets=InMemoryTicketingProvider(),
            capsules=InMemoryCapsuleStore(clock=clock),
            csat=InMemoryCsatProvider(),
            analytics=InMemoryAnalyticsSink(),
        )

    def reset(self) -> None:
        for fake in (self.catalog, self.orders, self.returns, self.tickets,
                     self.capsules, self.csat, self.analytics):
            fake.reset()


def build_default_orchestrator(
    collaborators: Optional[InMemoryCollaborators] = None,
    clock: Optional[Clock] = None,
) -> RequestOrchestrator:
    """Wire the engine against in-memory collaborators."""
    fakes = collaborators or InMemoryCollaborators.create(clock=clock)
    dispatcher = ActionDispatcher(
        catalog=fakes.catalog,
        orders=fakes.orders,
        returns=fakes.returns,
        tickets=fakes.tickets,
        capsules=fakes.capsules,
        csat=fakes.csat,
    )
    return RequestOrchestrator(
        sessions=SessionStore(clock=clock),
        guard=IdempotencyGuard(clock=clock),
        dispatcher=dispatcher,
        analytics=AnalyticsEmitter(fakes.analytics, clock=clock),
        clock=clock,
    )
