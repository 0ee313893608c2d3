"""Mock customer-satisfaction store."""

import logging
import uuid
from typing import Optional, TypedDict

from concierge.tools.base import FaultInjector

logger = logging.getLogger(__name__)


class CsatRecord(TypedDict):
    csat_id: str
    session_id: str
    rating: int
    comment: Optional[str]


class InMemoryCsatProvider(FaultInjector):
    def __init__(self) -> None:
        super().__init__()
        self._ratings: list[CsatRecord] = []

    def record(self, session_id: str, rating: int, comment: Optional[str]) -> CsatRecord:
        self._enter()
        record: CsatRecord = {
            "csat_id": f"CSAT-{uuid.uuid4().hex[:6].upper()}",
            "session_id": session_id,
            "rating": rating,
            "comment": comment,
        }
        self._ratings.append(record)
        logger.info("CSAT recorded: %s (rating %d)", record["csat_id"], rating)
        return record

    @property
    def created(self) -> list[CsatRecord]:
        return list(self._ratings)

    def reset(self) -> None:
        self._ratings.clear()
        self.reset_faults()
