"""End-to-end turn scenarios against the in-memory collaborators."""

import threading
import time
from datetime import timedelta

from concierge.analytics import AnalyticsEmitter
from concierge.config import CapsuleConfig, CatalogConfig, CsatConfig
from concierge.conversation.intent_classifier import IntentClassifier
from concierge.dispatcher import ActionDispatcher
from concierge.errors import ErrorCode
from concierge.idempotency import IdempotencyGuard
from concierge.orchestrator import RequestOrchestrator
from concierge.schemas.conversation_schema import ConciergeRequest, ConversationState, Intent
from concierge.session_store import SessionStore
from concierge.tools.base import ProviderError


def _say(orchestrator, text, session_id="sess-1", **kwargs):
    return orchestrator.handle(ConciergeRequest(session_id=session_id, text=text, **kwargs))


def _press(orchestrator, intent, payload=None, session_id="sess-1", **kwargs):
    return orchestrator.handle(
        ConciergeRequest(session_id=session_id, explicit_intent=intent, payload=payload or {}, **kwargs)
    )


class _BrokenClassifier(IntentClassifier):
    def detect(self, inp):
        raise RuntimeError("classifier exploded")


def _build(fakes, clock, **kwargs):
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
        **kwargs,
    )


class TestCapsuleReservation:
    def test_two_item_shortlist_reserves_for_48_hours(self, orchestrator, fakes, clock):
        _press(orchestrator, Intent.SHORTLIST_ADD, {"productId": "p-aurora-solitaire"})
        _press(orchestrator, Intent.SHORTLIST_ADD, {"productId": "p-stack-trio"})

        response = _press(orchestrator, Intent.CAPSULE_RESERVE)

        capsule = response.data["capsule"]
        assert capsule["capsuleId"].startswith("CAP-")
        assert capsule["expiresAt"] == (clock.now + timedelta(hours=48)).isoformat()
        assert response.state == ConversationState.CAPSULE_HELD
        session = orchestrator.sessions.get("sess-1")
        assert session.capsule_hold.capsule_id == capsule["capsuleId"]
        assert session.capsule_hold.expires_at - clock.now == timedelta(hours=48)
        assert len(fakes.capsules.created) == 1

    def test_repeat_request_reuses_active_hold(self, orchestrator, fakes, clock):
        _press(orchestrator, Intent.SHORTLIST_ADD, {"productId": "p1"})
        _press(orchestrator, Intent.SHORTLIST_ADD, {"productId": "p2"})
        first = _press(orchestrator, Intent.CAPSULE_RESERVE)
        clock.advance(hours=2)
        second = _say(orchestrator, "hold these please")
        assert first.data["capsule"]["capsuleId"] in second.messages[0]
        assert len(fakes.capsules.created) == 1

    def test_offer_shown_once_trigger_met(self, orchestrator):
        first = _press(orchestrator, Intent.SHORTLIST_ADD, {"productId": "p1"})
        second = _press(orchestrator, Intent.SHORTLIST_ADD, {"productId": "p2"})
        assert first.offer is None
        assert second.offer is not None
        assert second.offer.ttl_hours == 48

    def test_no_offer_while_hold_active(self, orchestrator):
        _press(orchestrator, Intent.SHORTLIST_ADD, {"productId": "p1"})
        _press(orchestrator, Intent.SHORTLIST_ADD, {"productId": "p2"})
        _press(orchestrator, Intent.CAPSULE_RESERVE)
        response = _press(orchestrator, Intent.SHORTLIST_ADD, {"productId": "p3"})
        assert response.offer is None


class TestDuplicateReturn:
    def test_same_key_returns_original_rma(self, orchestrator, fakes):
        payload = {"orderId": "GG-10421", "reason": "wrong_size"}
        first = _press(orchestrator, Intent.RETURN_EXCHANGE, payload)
        second = _press(orchestrator, Intent.RETURN_EXCHANGE, payload)

        assert first.notice is None
        assert second.data["return"]["rmaId"] == first.data["return"]["rmaId"]
        assert second.notice.code == ErrorCode.DUPLICATE_ACTION
        assert len(fakes.returns.created) == 1
        assert fakes.returns.calls == 1

    def test_explicit_idempotency_key_replay(self, orchestrator, fakes):
        payload = {"orderId": "GG-10421", "reason": "damaged"}
        first = _press(orchestrator, Intent.RETURN_EXCHANGE, payload, idempotency_key="retry-7")
        second = _press(orchestrator, Intent.RETURN_EXCHANGE, payload, idempotency_key="retry-7")
        assert second.data["return"] == first.data["return"]
        assert second.notice.code == ErrorCode.DUPLICATE_ACTION
        assert fakes.returns.calls == 1

    def test_second_session_gets_existing_rma(self, orchestrator, fakes):
        payload = {"orderId": "GG-10421", "reason": "wrong_size"}
        first = _press(orchestrator, Intent.RETURN_EXCHANGE, payload, session_id="tab-a")
        second = _press(orchestrator, Intent.RETURN_EXCHANGE, payload, session_id="tab-b")
        assert second.data["return"]["rmaId"] == first.data["return"]["rmaId"]
        assert second.notice.code == ErrorCode.DUPLICATE_ACTION
        assert len(fakes.returns.created) == 1

    def test_concurrent_retries_create_one_rma(self, orchestrator, fakes):
        fakes.returns.delay_calls(0.05)
        barrier = threading.Barrier(4)
        responses = []

        def worker():
            barrier.wait()
            responses.append(
                _press(
                    orchestrator, Intent.RETURN_EXCHANGE,
                    {"orderId": "GG-10421", "reason": "damaged"}, idempotency_key="same",
                )
            )

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        assert len(fakes.returns.created) == 1
        assert len({r.data["return"]["rmaId"] for r in responses}) == 1
        assert sum(1 for r in responses if r.notice is None) == 1


class TestContextCarryOver:
    def test_return_after_lookup_uses_order(self, orchestrator, fakes):
        lookup = _say(orchestrator, "where is my order GG-10588?")
        assert lookup.state == ConversationState.ORDER_STATUS
        assert lookup.data["order"]["emailHint"] == "s***@example.com"

        response = _say(orchestrator, "I want to return it, it arrived damaged")

        created = fakes.returns.created
        assert len(created) == 1
        assert created[0]["order_id"] == "GG-10588"
        assert created[0]["reason"] == "damaged"
        assert response.form.form_id == "csat"
        assert response.state == ConversationState.AWAITING_CSAT

    def test_multi_turn_preferences(self, orchestrator):
        first = _say(orchestrator, "show me rings")
        assert first.state == ConversationState.COLLECTING_PREFERENCES
        assert [f.name for f in first.form.fields] == ["budget_max"]

        second = _say(orchestrator, "under $1500, something classic")
        assert second.state == ConversationState.SHOWING_RECOMMENDATIONS
        assert second.cards
        assert all(c.price <= 1500 for c in second.cards)
        assert second.cards[0].product_id == "p-aurora-solitaire"


class TestCsatEscalation:
    def test_low_rating_records_and_escalates_same_turn(self, orchestrator, fakes):
        _press(orchestrator, Intent.STYLIST_CONTACT, {"email": "ava.reyes@example.com"})
        response = _say(orchestrator, "2 out of 5")

        assert fakes.csat.created[0]["rating"] == 2
        tickets = fakes.tickets.created
        assert len(tickets) == 2
        assert tickets[-1]["context"]["reason"] == "csat_escalation"
        assert "ticket" in response.data
        assert response.state == ConversationState.WELCOME

    def test_low_rating_without_contact_asks(self, orchestrator, fakes):
        response = _press(orchestrator, Intent.CSAT, {"rating": 1})
        assert len(fakes.csat.created) == 1
        assert fakes.tickets.created == []
        assert response.state == ConversationState.AWAITING_CONTACT_INFO
        assert response.form.form_id == "stylist_contact"

        follow_up = _say(orchestrator, "ava@example.com")
        assert follow_up.intent == Intent.STYLIST_CONTACT
        assert len(fakes.tickets.created) == 1

    def test_good_rating_thanks(self, orchestrator, fakes):
        response = _press(orchestrator, Intent.CSAT, {"rating": 5})
        assert fakes.tickets.created == []
        assert response.state == ConversationState.WELCOME


class TestUnknownIntent:
    def test_fallback_keeps_state(self, orchestrator):
        _say(orchestrator, "where is my order GG-10421?")
        response = _say(orchestrator, "purple unicorn rainbow")
        assert response.intent == Intent.UNKNOWN
        assert response.state == ConversationState.ORDER_STATUS
        assert len(response.quick_actions) == 5
        assert response.ui_hints["emphasizeHuman"] is False
        assert orchestrator.sessions.get("sess-1").state == ConversationState.ORDER_STATUS

    def test_second_miss_emphasizes_human(self, orchestrator):
        _say(orchestrator, "purple unicorn rainbow")
        response = _say(orchestrator, "banana telescope")
        assert response.ui_hints["emphasizeHuman"] is True
        assert orchestrator.sessions.get("sess-1").miss_count == 2

    def test_recognized_intent_resets_misses(self, orchestrator):
        _say(orchestrator, "purple unicorn rainbow")
        _say(orchestrator, "how do I clean silver?")
        assert orchestrator.sessions.get("sess-1").miss_count == 0


class TestFailures:
    def test_order_not_found(self, orchestrator):
        response = _say(orchestrator, "/track GG-99999")
        assert response.error.code == ErrorCode.NOT_FOUND
        assert response.form.form_id == "order_lookup"
        assert response.state == ConversationState.AWAITING_ORDER_LOOKUP

    def test_collaborator_outage_leaves_session_untouched(self, orchestrator, fakes):
        _press(orchestrator, Intent.SHORTLIST_ADD, {"productId": "p1"})
        _press(orchestrator, Intent.SHORTLIST_ADD, {"productId": "p2"})
        fakes.capsules.fail_next(ProviderError("503"))

        response = _press(orchestrator, Intent.CAPSULE_RESERVE)

        assert response.error.code == ErrorCode.EXTERNAL_SERVICE_ERROR
        assert response.quick_actions
        session = orchestrator.sessions.get("sess-1")
        assert session.capsule_hold is None
        assert session.state == ConversationState.WELCOME
        assert response.state == ConversationState.WELCOME

    def test_failed_mutation_can_be_retried(self, orchestrator, fakes):
        fakes.returns.fail_next(ProviderError("503"))
        payload = {"orderId": "GG-10421", "reason": "wrong_size"}
        failed = _press(orchestrator, Intent.RETURN_EXCHANGE, payload)
        retried = _press(orchestrator, Intent.RETURN_EXCHANGE, payload)
        assert failed.error.code == ErrorCode.EXTERNAL_SERVICE_ERROR
        assert retried.error is None
        assert retried.notice is None
        assert len(fakes.returns.created) == 1

    def test_validation_error_names_field(self, orchestrator):
        response = _press(orchestrator, Intent.TRACK_ORDER, {"orderId": "nope"})
        assert response.error.code == ErrorCode.VALIDATION_ERROR
        assert response.error.field == "order_id"

    def test_analytics_sink_outage_does_not_fail_turn(self, orchestrator, fakes):
        fakes.analytics.fail_next(ProviderError("down"))
        response = _say(orchestrator, "where is my order GG-10421?")
        assert response.error is None
        _say(orchestrator, "thanks")
        assert any(e.name == "concierge_turn" for e in fakes.analytics.events)


class TestAnalyticsIntegration:
    def test_events_carry_request_id_and_no_pii(self, orchestrator, fakes):
        response = _say(orchestrator, "where is my order GG-10588?", request_id="req-fixed")
        events = [e for e in fakes.analytics.events if e.request_id == "req-fixed"]
        assert events
        assert all(e.session_id == "sess-1" for e in events)
        dumped = " ".join(e.model_dump_json() for e in events)
        assert "GG-10588" not in dumped
        assert "sam.okafor" not in dumped
        assert response.request_id == "req-fixed"


class TestInDoubtRetry:
    def test_resend_after_timeout_creates_one_ticket(self, orchestrator, fakes):
        fakes.tickets.delay_calls(0.5)
        payload = {"email": "ava.reyes@example.com"}
        first = _press(orchestrator, Intent.STYLIST_CONTACT, payload, idempotency_key="k1")
        assert first.error.code == ErrorCode.EXTERNAL_SERVICE_ERROR

        time.sleep(0.4)
        fakes.tickets.delay_calls(0)
        second = _press(orchestrator, Intent.STYLIST_CONTACT, payload, idempotency_key="k1")

        assert second.error is None
        assert second.data["ticket"]["ticketId"].startswith("TCK-")
        assert len(fakes.tickets.created) == 1
        assert fakes.tickets.calls == 1

    def test_immediate_resend_waits_for_the_first_call(self, orchestrator, fakes):
        fakes.returns.delay_calls(0.5)
        payload = {"orderId": "GG-10421", "reason": "wrong_size"}
        first = _press(orchestrator, Intent.RETURN_EXCHANGE, payload)
        second = _press(orchestrator, Intent.RETURN_EXCHANGE, payload)
        third = _press(orchestrator, Intent.RETURN_EXCHANGE, payload)

        assert first.error.code == ErrorCode.EXTERNAL_SERVICE_ERROR
        assert second.error is None
        assert third.data["return"] == second.data["return"]
        assert third.notice.code == ErrorCode.DUPLICATE_ACTION
        assert len(fakes.returns.created) == 1


class TestStylistTopics:
    def test_free_text_topic_never_reaches_analytics(self, orchestrator, fakes):
        topic = "my husband hates the ring he bought"
        response = _press(
            orchestrator, Intent.STYLIST_CONTACT,
            {"email": "ava.reyes@example.com", "topic": topic},
        )
        assert response.error is None
        ticket = fakes.tickets.created[0]
        assert ticket["context"]["reason"] == "stylist_request"
        dumped = " ".join(e.model_dump_json() for e in fakes.analytics.events)
        assert "husband" not in dumped
        actions = [e for e in fakes.analytics.events if e.name == "concierge_action"]
        assert actions[0].properties["reason"] == "stylist_request"

    def test_known_topic_is_emitted_as_code(self, orchestrator, fakes):
        _press(orchestrator, Intent.STYLIST_CONTACT, {"email": "ava@example.com", "topic": "gift advice"})
        actions = [e for e in fakes.analytics.events if e.name == "concierge_action"]
        assert actions[0].properties["reason"] == "gift_advice"


class TestShortlistEditing:
    def test_remove_keeps_order_and_withdraws_offer(self, orchestrator):
        for product_id in ("p1", "p2", "p3"):
            _press(orchestrator, Intent.SHORTLIST_ADD, {"productId": product_id})

        response = _press(orchestrator, Intent.SHORTLIST_REMOVE, {"productId": "p2"})
        assert response.data["shortlist"] == ["p1", "p3"]
        assert response.offer is not None

        response = _press(orchestrator, Intent.SHORTLIST_REMOVE, {"productId": "p1"})
        assert response.data["shortlist"] == ["p3"]
        assert response.offer is None
        assert orchestrator.sessions.get("sess-1").shortlist == ["p3"]

    def test_clear_empties_shortlist(self, orchestrator):
        _press(orchestrator, Intent.SHORTLIST_ADD, {"productId": "p1"})
        _press(orchestrator, Intent.SHORTLIST_ADD, {"productId": "p2"})

        response = _press(orchestrator, Intent.SHORTLIST_CLEAR)

        assert response.data["shortlist"] == []
        assert response.offer is None
        assert orchestrator.sessions.get("sess-1").shortlist == []

    def test_escalate_sends_shortlist_to_stylist(self, orchestrator, fakes):
        _press(orchestrator, Intent.SHORTLIST_ADD, {"productId": "p1"})
        _press(orchestrator, Intent.SHORTLIST_ADD, {"productId": "p2"})

        response = _press(orchestrator, Intent.SHORTLIST_ESCALATE, {"email": "ava@example.com"})

        assert "ticket" in response.data
        context = fakes.tickets.created[0]["context"]
        assert context["reason"] == "shortlist_review"
        assert context["shortlist"] == ["p1", "p2"]


class TestInjectedConfig:
    def test_csat_scale_reaches_validation(self, fakes, clock):
        orchestrator = _build(fakes, clock, csat=CsatConfig(min_rating=1, max_rating=10, negative_threshold=6))
        response = _press(orchestrator, Intent.CSAT, {"rating": 8})
        assert response.error is None
        assert fakes.csat.created[0]["rating"] == 8

    def test_capsule_config_drives_offer(self, fakes, clock):
        capsule = CapsuleConfig(hold_ttl_hours=12, min_shortlist=3, bespoke_keywords=("bespoke",))
        orchestrator = _build(fakes, clock, capsule=capsule)
        _press(orchestrator, Intent.SHORTLIST_ADD, {"productId": "p1"})
        second = _press(orchestrator, Intent.SHORTLIST_ADD, {"productId": "p2"})
        third = _press(orchestrator, Intent.SHORTLIST_ADD, {"productId": "p3"})
        assert second.offer is None
        assert third.offer.ttl_hours == 12

    def test_catalog_filters_reach_the_machine(self, fakes, clock):
        orchestrator = _build(fakes, clock, catalog=CatalogConfig(required_filters=("category",), top_k=6))
        response = _say(orchestrator, "show me rings")
        assert response.state == ConversationState.SHOWING_RECOMMENDATIONS
        assert response.cards


class TestUnexpectedFailure:
    def test_fallback_turn_is_still_emitted(self, fakes, clock):
        orchestrator = _build(fakes, clock, classifier=_BrokenClassifier())
        response = _say(orchestrator, "hello", request_id="req-broken")

        assert response.state == ConversationState.TERMINAL_ERROR
        assert response.error.code == ErrorCode.STATE_INVARIANT
        turns = [e for e in fakes.analytics.events if e.name == "concierge_turn"]
        assert len(turns) == 1
        assert turns[0].request_id == "req-broken"
        assert turns[0].properties["error_code"] == "STATE_INVARIANT"
        assert turns[0].properties["to_state"] == "terminal_error"
        assert turns[0].properties["emphasize_human"] is True
