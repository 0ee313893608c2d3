"""
Session store with single-writer-per-session turns.

``apply_turn(session_id, mutate_fn)`` serializes concurrent turns for the
same session (two browser tabs, a retried request) so state, preference,
and shortlist updates never interleave. Turns for different sessions run
fully in parallel. Sessions are created implicitly on first access and
expire by last-activity TTL, either lazily on access or via
``sweep_expired``.

``mutate_fn`` works on a copy; the copy replaces the stored session only
if ``mutate_fn`` returns normally.

For production this would sit on a shared store (Redis or Postgres with
row locks); the in-memory version provides the same interface.
"""

import copy
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, TypeVar

from concierge.config import settings
from concierge.schemas.session_schema import Session

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _SessionSlot:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class SessionStore:
    """In-memory keyed session arena."""

    def __init__(self, ttl: Optional[timedelta] = None, clock: Optional[Clock] = None) -> None:
        self._ttl = ttl or timedelta(days=settings.session.ttl_days)
        self._clock = clock or _utcnow
        self._sessions: dict[str, Session] = {}
        self._slots: dict[str, _SessionSlot] = {}
        self._registry_lock = threading.Lock()

    def _acquire_slot(self, session_id: str) -> _SessionSlot:
        with self._registry_lock:
            slot = self._slots.setdefault(session_id, _SessionSlot())
            slot.users += 1
            return slot

    def _release_slot(self, session_id: str, slot: _SessionSlot) -> None:
        with self._registry_lock:
            slot.users -= 1
            if slot.users == 0:
                self._slots.pop(session_id, None)

    def _is_expired(self, session: Session, now: datetime) -> bool:
        return now - session.last_activity_at > self._ttl

    def _load_or_create(self, session_id: str, now: datetime) -> Session:
        session = self._sessions.get(session_id)
        if session is not None and self._is_expired(session, now):
            logger.info("Session %s expired; starting fresh", session_id[:8])
            session = None
        if session is None:
            session = Session(id=session_id, created_at=now, last_activity_at=now)
            logger.debug("Session created: %s", session_id[:8])
        return session

    def apply_turn(self, session_id: str, mutate_fn: Callable[[Session], T]) -> T:
        """
        Run ``mutate_fn`` against the session under its exclusive lock.

        Raises:
            ValueError: If ``session_id`` is empty.
        """
        if not session_id:
            raise ValueError("session_id must be non-empty")

        slot = self._acquire_slot(session_id)
        try:
            with slot.lock:
                now = self._clock()
                working = copy.deepcopy(self._load_or_create(session_id, now))
                result = mutate_fn(working)
                working.last_activity_at = now
                working.turn_count += 1
                self._sessions[session_id] = working
                return result
        finally:
            self._release_slot(session_id, slot)

    def get(self, session_id: str) -> Optional[Session]:
        """Snapshot copy of a live session, or None."""
        session = self._sessions.get(session_id)
        if session is None or self._is_expired(session, self._clock()):
            return None
        return copy.deepcopy(session)

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """Purge sessions idle longer than the TTL. Returns how many were removed."""
        now = now or self._clock()
        removed = 0
        with self._registry_lock:
            for session_id in [s for s, sess in self._sessions.items() if self._is_expired(sess, now)]:
                if session_id in self._slots:
                    continue
                del self._sessions[session_id]
                removed += 1
        if removed:
            logger.info("Session sweep removed %d expired sessions", removed)
        return removed

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
