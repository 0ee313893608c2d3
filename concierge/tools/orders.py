"""
Mock order system.

In production this would call the order service (Shopify, a custom OMS)
by order number, or by email plus billing zip.
"""

import logging
import uuid
from typing import Optional, TypedDict

from concierge.tools.base import FaultInjector
from concierge.utils import normalize_email

logger = logging.getLogger(__name__)


class OrderRecord(TypedDict):
    order_id: str
    order_number: str
    email: str
    zip: str
    status: str
    eta: str
    items: list[str]


class OrderStatus(TypedDict):
    """Lookup result returned to the engine."""

    order_id: str
    order_number: str
    email: str
    status: str
    eta: str


class Subscription(TypedDict):
    subscription_id: str
    order_id: str
    channel: str


_SEED_ORDERS: tuple[OrderRecord, ...] = (
    {
        "order_id": "GG-10421",
        "order_number": "GG-10421",
        "email": "ava.reyes@example.com",
        "zip": "94110",
        "status": "in the studio for polishing",
        "eta": "2025-04-18",
        "items": ["p-aurora-solitaire"],
    },
    {
        "order_id": "GG-10588",
        "order_number": "GG-10588",
        "email": "sam.okafor@example.com",
        "zip": "10003",
        "status": "shipped",
        "eta": "2025-04-09",
        "items": ["p-luna-pendant", "p-stack-trio"],
    },
)


class InMemoryOrderProvider(FaultInjector):
    def __init__(self) -> None:
        super().__init__()
        self._orders: dict[str, OrderRecord] = {}
        self._subscriptions: dict[str, Subscription] = {}
        self.reset()

    def _to_status(self, record: OrderRecord) -> OrderStatus:
        return {
            "order_id": record["order_id"],
            "order_number": record["order_number"],
            "email": record["email"],
            "status": record["status"],
            "eta": record["eta"],
        }

    def lookup(
        self,
        order_id: Optional[str] = None,
        email: Optional[str] = None,
        zip_code: Optional[str] = None,
    ) -> Optional[OrderStatus]:
        """Find an order by id, or by email and zip. Returns None if not found."""
        self._enter()
        if order_id:
            record = self._orders.get(order_id.upper())
            return self._to_status(record) if record else None
        if email and zip_code:
            wanted = normalize_email(email)
            for record in self._orders.values():
                if record["email"] == wanted and record["zip"] == zip_code:
                    return self._to_status(record)
        return None

    def subscribe_updates(self, order_id: str, channel: str) -> Subscription:
        self._enter()
        subscription: Subscription = {
            "subscription_id": f"SUB-{uuid.uuid4().hex[:6].upper()}",
            "order_id": order_id,
            "channel": channel,
        }
        self._subscriptions[subscription["subscription_id"]] = subscription
        logger.info("Order update subscription created: %s", subscription["subscription_id"])
        return subscription

    @property
    def subscriptions(self) -> list[Subscription]:
        return list(self._subscriptions.values())

    def reset(self) -> None:
        self._orders = {o["order_id"]: dict(o) for o in _SEED_ORDERS}  # type: ignore[misc]
        self._subscriptions.clear()
        self.reset_faults()
