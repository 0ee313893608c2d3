"""
Collaborator contracts and shared fault injection for the in-memory fakes.

Real deployments plug in HTTP clients for the catalog, order, returns,
ticketing, capsule, and CSAT services. Each client raises ``ProviderError``
(5xx), ``ProviderTimeout``, or ``ProviderConflict`` and the dispatcher turns
those into values.
"""

import threading
import time
from typing import Any, Optional, Protocol

from concierge.schemas.product_schema import Product


class ProviderError(Exception):
    """A collaborator answered with a server-side failure."""


class ProviderTimeout(ProviderError):
    """A collaborator did not answer in time."""


class ProviderConflict(ProviderError):
    """The collaborator already holds an equivalent record."""

    def __init__(self, message: str, existing: dict[str, Any]) -> None:
        super().__init__(message)
        self.existing = existing


class CatalogProvider(Protocol):
    def search(self, filters: dict[str, Any]) -> list[Product]: ...


class OrderProvider(Protocol):
    def lookup(
        self,
        order_id: Optional[str] = None,
        email: Optional[str] = None,
        zip_code: Optional[str] = None,
    ) -> Optional[dict[str, Any]]: ...

    def subscribe_updates(self, order_id: str, channel: str) -> dict[str, Any]: ...


class ReturnsProvider(Protocol):
    def create_return(self, order_id: str, reason: str) -> dict[str, Any]: ...


class TicketingProvider(Protocol):
    def create_ticket(
        self,
        name: str,
        email: str,
        phone: Optional[str],
        context: dict[str, Any],
    ) -> dict[str, Any]: ...


class CapsuleStore(Protocol):
    def reserve(self, session_id: str, item_ids: list[str]) -> dict[str, Any]: ...


class CsatProvider(Protocol):
    def record(self, session_id: str, rating: int, comment: Optional[str]) -> dict[str, Any]: ...


class FaultInjector:
    """Lets tests make the next N calls fail or stall."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._failures: list[Exception] = []
        self._delay_s = 0.0
        self.calls = 0

    def fail_next(self, error: Optional[Exception] = None, times: int = 1) -> None:
        with self._lock:
            self._failures.extend([error or ProviderError("injected failure")] * times)

    def delay_calls(self, seconds: float) -> None:
        self._delay_s = seconds

    def _enter(self) -> None:
        with self._lock:
            self.calls += 1
            failure = self._failures.pop(0) if self._failures else None
        if self._delay_s:
            time.sleep(self._delay_s)
        if failure is not None:
            raise failure

    def reset_faults(self) -> None:
        with self._lock:
            self._failures.clear()
            self._delay_s = 0.0
            self.calls = 0
