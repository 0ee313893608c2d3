"""
Mock returns (RMA) system.

Refuses to open a second RMA for the same order and reason, mirroring the
conflict a real returns backend answers with.
"""

import logging
import uuid
from typing import TypedDict

from concierge.tools.base import FaultInjector, ProviderConflict

logger = logging.getLogger(__name__)

LABEL_BASE_URL = "https://returns.glowglitch.com/labels"


class ReturnRecord(TypedDict):
    rma_id: str
    label_url: str
    order_id: str
    reason: str


class InMemoryReturnsProvider(FaultInjector):
    def __init__(self) -> None:
        super().__init__()
        self._returns: dict[tuple[str, str], ReturnRecord] = {}

    def create_return(self, order_id: str, reason: str) -> ReturnRecord:
        """
        Open an RMA.

        Raises:
            ProviderConflict: If an RMA already exists for this order and reason.
        """
        self._enter()
        existing = self._returns.get((order_id, reason))
        if existing is not None:
            raise ProviderConflict(f"RMA already open for {order_id}", dict(existing))

        rma_id = f"RMA-{uuid.uuid4().hex[:8].upper()}"
        record: ReturnRecord = {
            "rma_id": rma_id,
            "label_url": f"{LABEL_BASE_URL}/{rma_id}.pdf",
            "order_id": order_id,
            "reason": reason,
        }
        self._returns[(order_id, reason)] = record
        logger.info("RMA created: %s (%s)", rma_id, reason)
        return record

    @property
    def created(self) -> list[ReturnRecord]:
        return list(self._returns.values())

    def reset(self) -> None:
        self._returns.clear()
        self.reset_faults()
