"""
Mock capsule reservation store.

A capsule hold reserves price and inventory for a session's shortlisted
items for a fixed window (48 hours by default).
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, TypedDict

from concierge.config import settings
from concierge.tools.base import FaultInjector

logger = logging.getLogger(__name__)


class CapsuleRecord(TypedDict):
    capsule_id: str
    session_id: str
    item_ids: list[str]
    created_at: datetime
    expires_at: datetime


class InMemoryCapsuleStore(FaultInjector):
    def __init__(
        self,
        clock: Optional[Callable[[], datetime]] = None,
        ttl: Optional[timedelta] = None,
    ) -> None:
        super().__init__()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._ttl = ttl or timedelta(hours=settings.capsule.hold_ttl_hours)
        self._capsules: dict[str, CapsuleRecord] = {}

    def reserve(self, session_id: str, item_ids: list[str]) -> CapsuleRecord:
        self._enter()
        now = self._clock()
        record: CapsuleRecord = {
            "capsule_id": f"CAP-{uuid.uuid4().hex[:6].upper()}",
            "session_id": session_id,
            "item_ids": list(item_ids),
            "created_at": now,
            "expires_at": now + self._ttl,
        }
        self._capsules[record["capsule_id"]] = record
        logger.info("Capsule reserved: %s (%d items)", record["capsule_id"], len(item_ids))
        return record

    @property
    def created(self) -> list[CapsuleRecord]:
        return list(self._capsules.values())

    def reset(self) -> None:
        self._capsules.clear()
        self.reset_faults()
