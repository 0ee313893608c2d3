"""
Turn-level analytics with at-least-once delivery.

``AnalyticsEmitter.emit_turn`` converts one processed turn into 1..N
``AnalyticsEvent`` records, each correlated by request and session id.
Properties pass an allowlist: emails, phones, and free-text comments are
dropped and order numbers are replaced by a salted hash.

Events sit in an outbox until the sink accepts them. A failed publish
leaves the event queued for the next flush, so a sink outage produces
duplicates downstream rather than gaps.
"""

import logging
import re
import threading
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol

from concierge.config import AnalyticsConfig, CsatConfig, settings
from concierge.conversation.state_machine import ActionType
from concierge.dispatcher import ActionResult
from concierge.schemas.analytics_schema import AnalyticsEvent, PropertyValue
from concierge.schemas.conversation_schema import ConversationState, Intent
from concierge.tools.base import FaultInjector
from concierge.utils import contains_pii, hash_identifier

logger = logging.getLogger(__name__)

ALLOWED_PROPERTIES = frozenset({
    "intent", "source", "rule", "from_state", "to_state", "action_type", "ok",
    "duplicate", "error_code", "reason", "rating", "item_count", "card_count",
    "escalation", "channel", "emphasize_human", "miss_count", "order_hash",
})
_ORDER_FIELDS = ("order_number", "order_id")
# String properties must be codes; free text never leaves the process.
_CODE_RE = re.compile(r"^[A-Za-z0-9_/:.-]{1,64}$")


class AnalyticsSink(Protocol):
    def publish(self, event: AnalyticsEvent) -> None: ...


class InMemoryAnalyticsSink(FaultInjector):
    """Collects published events for tests and the console demo."""

    def __init__(self) -> None:
        super().__init__()
        self._events: list[AnalyticsEvent] = []

    def publish(self, event: AnalyticsEvent) -> None:
        self._enter()
        self._events.append(event)

    @property
    def events(self) -> list[AnalyticsEvent]:
        return list(self._events)

    def reset(self) -> None:
        self._events.clear()
        self.reset_faults()


@dataclass
class TurnRecord:
    """Everything the emitter needs to know about one finished turn."""

    request_id: str
    session_id: str
    intent: Intent
    source: str
    from_state: ConversationState
    to_state: ConversationState
    results: list[ActionResult] = field(default_factory=list)
    rule: Optional[str] = None
    card_count: int = 0
    offer_shown: bool = False
    emphasize_human: bool = False
    error_code: Optional[str] = None


class AnalyticsEmitter:
    def __init__(
        self,
        sink: AnalyticsSink,
        config: Optional[AnalyticsConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._sink = sink
        self._config = config or settings.analytics
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._outbox: deque[AnalyticsEvent] = deque()
        self._lock = threading.Lock()

    def scrub(self, properties: dict[str, Any]) -> dict[str, PropertyValue]:
        """Apply the property allowlist, hash order identifiers and keep only code-like strings."""
        clean: dict[str, PropertyValue] = {}
        for name in _ORDER_FIELDS:
            value = properties.get(name)
            if value:
                clean["order_hash"] = hash_identifier(str(value), self._config.hash_salt)
                break
        for name, value in properties.items():
            if name not in ALLOWED_PROPERTIES or name in clean:
                continue
            if hasattr(value, "value"):
                value = value.value
            if value is not None and not isinstance(value, (str, int, float, bool)):
                continue
            if isinstance(value, str) and (contains_pii(value) or not _CODE_RE.match(value)):
                continue
            clean[name] = value
        return clean

    def _event(self, name: str, turn: TurnRecord, properties: dict[str, Any]) -> AnalyticsEvent:
        return AnalyticsEvent(
            name=name,
            session_id=turn.session_id,
            request_id=turn.request_id,
            intent=turn.intent.value,
            timestamp=self._clock(),
            properties=self.scrub(properties),
        )

    def build_events(self, turn: TurnRecord) -> list[AnalyticsEvent]:
        events = [
            self._event("concierge_turn", turn, {
                "source": turn.source,
                "rule": turn.rule,
                "from_state": turn.from_state,
                "to_state": turn.to_state,
                "error_code": turn.error_code,
                "emphasize_human": turn.emphasize_human,
            })
        ]
        for result in turn.results:
            payload = result.action.payload
            props: dict[str, Any] = {
                "action_type": result.action.type,
                "ok": result.ok,
                "duplicate": result.duplicate,
                "error_code": result.error.code if result.error and not result.duplicate else None,
                "order_number": payload.get("order_number") or payload.get("order_id"),
                "reason": payload.get("reason"),
                "channel": payload.get("channel"),
            }
            if result.action.type == ActionType.RECORD_CSAT:
                props["rating"] = payload.get("rating")
            if result.action.type == ActionType.RESERVE_CAPSULE:
                props["item_count"] = len(payload.get("item_ids", []))
            if result.action.type == ActionType.CREATE_STYLIST_TICKET:
                reason = (payload.get("context") or {}).get("reason")
                props["reason"] = reason
                props["escalation"] = reason == "csat_escalation"
            events.append(self._event("concierge_action", turn, props))
        if turn.card_count:
            events.append(self._event("recommendations_shown", turn, {"card_count": turn.card_count}))
        if turn.offer_shown:
            events.append(self._event("capsule_offer_shown", turn, {}))
        return events

    def emit_turn(self, turn: TurnRecord) -> list[AnalyticsEvent]:
        """Queue this turn's events and try to deliver everything pending."""
        events = self.build_events(turn)
        with self._lock:
            self._outbox.extend(events)
            overflow = len(self._outbox) - self._config.outbox_limit
            for _ in range(max(0, overflow)):
                dropped = self._outbox.popleft()
                logger.error("Analytics outbox full; dropped %s", dropped.name)
        self.flush()
        return events

    def flush(self) -> int:
        """Publish queued events in order. Returns how many were delivered."""
        delivered = 0
        with self._lock:
            while self._outbox:
                event = self._outbox[0]
                try:
                    self._sink.publish(event)
                except Exception as exc:
                    # Sink outages must never fail the turn; keep the event for retry.
                    logger.warning(
                        "Analytics publish failed (%s); %d events pending", exc, len(self._outbox)
                    )
                    break
                self._outbox.popleft()
                delivered += 1
        return delivered

    @property
    def pending(self) -> int:
        return len(self._outbox)


def summarize_events(
    events: list[AnalyticsEvent], csat: Optional[CsatConfig] = None
) -> dict[str, Any]:
    """
    Dashboard rollup over a batch of events.

    Returns intent counts per turn, the CSAT distribution with percentages,
    and counts of escalations, duplicate actions, and failed actions.
    """
    scale = csat or settings.csat
    intents: Counter[str] = Counter()
    ratings: Counter[int] = Counter()
    escalations = duplicates = errors = 0
    for event in events:
        props = event.properties
        if event.name == "concierge_turn":
            intents[event.intent or Intent.UNKNOWN.value] += 1
            continue
        if event.name != "concierge_action":
            continue
        if props.get("duplicate"):
            duplicates += 1
        elif props.get("ok") is False:
            errors += 1
        if props.get("action_type") == ActionType.RECORD_CSAT.value and props.get("ok"):
            rating = props.get("rating")
            if isinstance(rating, int):
                ratings[rating] += 1
        if props.get("escalation") and props.get("ok"):
            escalations += 1

    total_ratings = sum(ratings.values())
    distribution = [
        {
            "score": score,
            "count": ratings[score],
            "percentage": round(100.0 * ratings[score] / total_ratings, 1) if total_ratings else 0.0,
        }
        for score in range(scale.min_rating, scale.max_rating + 1)
    ]
    average = (
        round(sum(s * c for s, c in ratings.items()) / total_ratings, 2) if total_ratings else None
    )
    return {
        "turns": sum(intents.values()),
        "intents": dict(intents),
        "csat": {"responses": total_ratings, "average": average, "distribution": distribution},
        "escalations": escalations,
        "duplicates": duplicates,
        "errors": errors,
    }
