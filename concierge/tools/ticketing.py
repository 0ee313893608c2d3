"""
Mock CRM ticketing.

In production this would open a ticket in the support desk (Zendesk,
Gorgias) and route it to the stylist queue.
"""

import logging
import uuid
from typing import Any, Optional, TypedDict

from concierge.tools.base import FaultInjector

logger = logging.getLogger(__name__)


class TicketRecord(TypedDict):
    ticket_id: str
    name: str
    email: str
    phone: Optional[str]
    context: dict[str, Any]


class InMemoryTicketingProvider(FaultInjector):
    def __init__(self) -> None:
        super().__init__()
        self._tickets: dict[str, TicketRecord] = {}

    def create_ticket(
        self,
        name: str,
        email: str,
        phone: Optional[str],
        context: dict[str, Any],
    ) -> TicketRecord:
        self._enter()
        ticket: TicketRecord = {
            "ticket_id": f"TCK-{uuid.uuid4().hex[:6].upper()}",
            "name": name,
            "email": email,
            "phone": phone,
            "context": dict(context),
        }
        self._tickets[ticket["ticket_id"]] = ticket
        logger.info("Stylist ticket created: %s (reason: %s)", ticket["ticket_id"], context.get("reason"))
        return ticket

    @property
    def created(self) -> list[TicketRecord]:
        return list(self._tickets.values())

    def reset(self) -> None:
        self._tickets.clear()
        self.reset_faults()
