"""
At-most-once execution of state-mutating actions.

``IdempotencyGuard.execute(key, fn)`` runs ``fn`` the first time a key is
seen and caches its result for the retention window. A repeat call with
the same key returns the cached result without calling ``fn`` again and
flags it as a duplicate. Concurrent callers with the same key serialize
on a per-key lock, so ``fn`` never races itself. Different keys proceed
in parallel.

Results the caller marks as not cacheable (failed collaborator calls) are
not stored, so a later retry with the same key may run ``fn`` again.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Generic, Optional, TypeVar

from concierge.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class GuardedResult(Generic[T]):
    key: str
    value: T
    duplicate: bool


@dataclass
class _CacheEntry:
    value: Any
    expires_at: datetime


class _KeySlot:
    """Per-key lock plus a count of threads currently using it."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class IdempotencyGuard:
    """In-process dedup cache with per-key single-flight execution."""

    def __init__(
        self,
        retention: Optional[timedelta] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._retention = retention or timedelta(hours=settings.idempotency.retention_hours)
        self._clock = clock or _utcnow
        self._entries: dict[str, _CacheEntry] = {}
        self._slots: dict[str, _KeySlot] = {}
        self._registry_lock = threading.Lock()

    def _acquire_slot(self, key: str) -> _KeySlot:
        with self._registry_lock:
            slot = self._slots.setdefault(key, _KeySlot())
            slot.users += 1
            return slot

    def _release_slot(self, key: str, slot: _KeySlot) -> None:
        with self._registry_lock:
            slot.users -= 1
            if slot.users == 0 and key not in self._entries:
                self._slots.pop(key, None)

    def _live_entry(self, key: str, now: datetime) -> Optional[_CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if now > entry.expires_at:
            self._entries.pop(key, None)
            return None
        return entry

    def execute(
        self,
        key: str,
        fn: Callable[[], T],
        cache_if: Callable[[T], bool] = lambda _: True,
    ) -> GuardedResult[T]:
        """
        Run ``fn`` at most once per key within the retention window.

        Raises:
            ValueError: If ``key`` is empty.
        """
        if not key:
            raise ValueError("Idempotency key must be non-empty")

        slot = self._acquire_slot(key)
        try:
            with slot.lock:
                entry = self._live_entry(key, self._clock())
                if entry is not None:
                    logger.info("Idempotency cache HIT for %s", key)
                    return GuardedResult(key=key, value=entry.value, duplicate=True)

                value = fn()
                if cache_if(value):
                    self._entries[key] = _CacheEntry(
                        value=value, expires_at=self._clock() + self._retention
                    )
                    logger.info("Idempotency cache SET for %s", key)
                else:
                    logger.info("Result for %s not cached; key stays open for retry", key)
                return GuardedResult(key=key, value=value, duplicate=False)
        finally:
            self._release_slot(key, slot)

    def peek(self, key: str) -> Optional[Any]:
        """Return the cached value for ``key`` if still retained."""
        entry = self._live_entry(key, self._clock())
        return entry.value if entry is not None else None

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """Drop entries past retention. Returns how many were removed."""
        now = now or self._clock()
        removed = 0
        with self._registry_lock:
            for key in [k for k, e in self._entries.items() if now > e.expires_at]:
                slot = self._slots.get(key)
                if slot is not None and slot.users:
                    continue
                del self._entries[key]
                self._slots.pop(key, None)
                removed += 1
        if removed:
            logger.info("Idempotency sweep removed %d expired keys", removed)
        return removed

    def __len__(self) -> int:
        return len(self._entries)
