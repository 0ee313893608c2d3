"""Shared test fixtures and helpers."""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from concierge.config import DispatcherConfig
from concierge.conversation.intent_classifier import IntentClassifier
from concierge.conversation.offer_trigger import OfferTriggerEvaluator
from concierge.conversation.recommender import RecommendationEngine
from concierge.conversation.slot_manager import SlotManager
from concierge.conversation.state_machine import ConversationStateMachine
from concierge.dispatcher import ActionDispatcher
from concierge.orchestrator import InMemoryCollaborators, build_default_orchestrator
from concierge.schemas.conversation_schema import ConversationState
from concierge.schemas.product_schema import Preferences, Product
from concierge.schemas.session_schema import Session

T0 = datetime(2025, 4, 1, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def classifier():
    return IntentClassifier()


@pytest.fixture
def slot_manager():
    return SlotManager()


@pytest.fixture
def state_machine():
    return ConversationStateMachine()


@pytest.fixture
def recommender():
    return RecommendationEngine()


@pytest.fixture
def offers():
    return OfferTriggerEvaluator()


@pytest.fixture
def fakes(clock):
    return InMemoryCollaborators.create(clock=clock)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def dispatcher(fakes, sleeps):
    d = ActionDispatcher(
        catalog=fakes.catalog,
        orders=fakes.orders,
        returns=fakes.returns,
        tickets=fakes.tickets,
        capsules=fakes.capsules,
        csat=fakes.csat,
        config=DispatcherConfig(timeout_ms=200, read_retries=1, retry_backoff_ms=10, max_workers=4),
        sleep=sleeps.append,
    )
    yield d
    d.shutdown()


@pytest.fixture
def orchestrator(fakes, clock):
    return build_default_orchestrator(fakes, clock=clock)


def make_product(
    product_id: str = "p-1",
    category: str = "ring",
    price: float = 500.0,
    tags: tuple[str, ...] = (),
    bestseller: float = 0.5,
    margin: float = 0.5,
    ship_days: int = 5,
    in_stock: bool = True,
    ready_to_ship: bool = False,
    metal: Optional[str] = None,
    stone: Optional[str] = None,
) -> Product:
    """Helper to create a Product with neutral defaults."""
    return Product(
        id=product_id,
        title=product_id.replace("-", " ").title(),
        category=category,
        metal=metal,
        stone=stone,
        price=price,
        in_stock=in_stock,
        ship_days=ship_days,
        tags=tags,
        bestseller_score=bestseller,
        margin_score=margin,
        ready_to_ship=ready_to_ship,
    )


def make_session(
    session_id: str = "sess-test",
    state: ConversationState = ConversationState.WELCOME,
    shortlist: Optional[list[str]] = None,
    preferences: Optional[Preferences] = None,
    **kwargs,
) -> Session:
    """Helper to create a Session snapshot with sensible defaults."""
    return Session(
        id=session_id,
        state=state,
        shortlist=list(shortlist or []),
        preferences=preferences or Preferences(),
        created_at=T0,
        last_activity_at=T0,
        **kwargs,
    )
