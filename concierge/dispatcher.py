"""
Maps each external action to exactly one collaborator call.

Every call is bounded by the collaborator timeout. Collaborator errors are
turned into ``ActionResult`` values carrying the engine's error taxonomy,
so nothing raw escapes to the orchestrator. Idempotent reads (catalog
search, order lookup) are retried with backoff; mutating calls never are.

A mutating call that times out is in doubt: the collaborator may still
commit it. Its future is parked under the action's dedup key, and a later
dispatch with the same key waits on that future instead of calling the
collaborator a second time.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Optional

from concierge.config import DispatcherConfig, settings
from concierge.conversation.state_machine import Action, ActionType
from concierge.errors import (
    ConciergeError,
    DuplicateActionError,
    ExternalServiceError,
    NotFoundError,
    StateInvariantError,
)
from concierge.tools.base import (
    CapsuleStore,
    CatalogProvider,
    CsatProvider,
    OrderProvider,
    ProviderConflict,
    ProviderError,
    ProviderTimeout,
    ReturnsProvider,
    TicketingProvider,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActionResult:
    """Outcome of one dispatched action. Failures are values, not exceptions."""

    action: Action
    ok: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: Optional[ConciergeError] = None
    duplicate: bool = False

    @classmethod
    def success(cls, action: Action, data: dict[str, Any]) -> "ActionResult":
        return cls(action=action, ok=True, data=data)

    @classmethod
    def failure(cls, action: Action, error: ConciergeError) -> "ActionResult":
        return cls(action=action, ok=False, error=error)


class ActionDispatcher:
    """Runs external actions against the configured collaborators."""

    def __init__(
        self,
        catalog: CatalogProvider,
        orders: OrderProvider,
        returns: ReturnsProvider,
        tickets: TicketingProvider,
        capsules: CapsuleStore,
        csat: CsatProvider,
        config: Optional[DispatcherConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
        in_doubt_retention: Optional[timedelta] = None,
    ) -> None:
        self._catalog = catalog
        self._orders = orders
        self._returns = returns
        self._tickets = tickets
        self._capsules = capsules
        self._csat = csat
        self._config = config or settings.dispatcher
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(
            max_workers=self._config.max_workers, thread_name_prefix="collaborator"
        )
        retention = (
            in_doubt_retention
            if in_doubt_retention is not None
            else timedelta(hours=settings.idempotency.retention_hours)
        )
        self._in_doubt_ttl_s = retention.total_seconds()
        # dedup key -> (future, monotonic time it was parked)
        self._in_doubt: dict[str, tuple[Future, float]] = {}
        self._in_doubt_lock = threading.Lock()
        self._handlers: dict[ActionType, Callable[[Action], dict[str, Any]]] = {
            ActionType.RUN_RECOMMENDATION: self._search_catalog,
            ActionType.LOOKUP_ORDER: self._lookup_order,
            ActionType.CREATE_RETURN: self._create_return,
            ActionType.RESERVE_CAPSULE: self._reserve_capsule,
            ActionType.CREATE_STYLIST_TICKET: self._create_ticket,
            ActionType.RECORD_CSAT: self._record_csat,
            ActionType.SUBSCRIBE_ORDER_UPDATES: self._subscribe_updates,
        }

    # -- public ------------------------------------------------------------

    def dispatch(self, action: Action) -> ActionResult:
        """Run one action. Never raises."""
        handler = self._handlers.get(action.type)
        if handler is None:
            logger.error("Action %s has no collaborator", action.type.value)
            return ActionResult.failure(
                action, StateInvariantError(f"{action.type.value} is not dispatchable")
            )

        attempts = 1 if action.type.is_mutating else 1 + self._config.read_retries
        attempt = 0
        while True:
            attempt += 1
            try:
                data = handler(action)
                return ActionResult.success(action, data)
            except ProviderConflict as exc:
                logger.info("Collaborator reported duplicate for %s", action.type.value)
                return ActionResult(
                    action=action,
                    ok=True,
                    data=exc.existing,
                    error=DuplicateActionError(str(exc), original=exc.existing),
                    duplicate=True,
                )
            except NotFoundError as exc:
                return ActionResult.failure(action, exc)
            except ProviderError as exc:
                timed_out = isinstance(exc, ProviderTimeout)
                logger.warning(
                    "%s %s (attempt %d/%d)",
                    action.type.value,
                    "timed out" if timed_out else "failed",
                    attempt, attempts,
                )
                if attempt >= attempts:
                    return ActionResult.failure(
                        action, ExternalServiceError(f"{action.type.value} unavailable")
                    )
                self._sleep(self._config.retry_backoff_ms * attempt / 1000.0)
            except Exception:
                # Collaborator boundary: anything unexpected becomes a failure value.
                logger.exception("Unexpected collaborator error for %s", action.type.value)
                return ActionResult.failure(
                    action, ExternalServiceError(f"{action.type.value} unavailable")
                )

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)

    @property
    def in_doubt(self) -> int:
        """Number of timed-out mutating calls not yet claimed by a retry."""
        with self._in_doubt_lock:
            return len(self._in_doubt)

    # -- bounded call ------------------------------------------------------

    def _call(
        self,
        fn: Callable[..., Any],
        *args: Any,
        key: Optional[str] = None,
        **kwargs: Any,
    ) -> Any:
        """
        Run a collaborator call with the configured timeout.

        With ``key`` set (mutating calls), a timed-out future is parked under
        the key and the next call with that key waits on it instead of
        submitting ``fn`` again.
        """
        future = self._claim_in_doubt(key) if key else None
        if future is None:
            future = self._executor.submit(fn, *args, **kwargs)
        else:
            logger.info("Rejoining in-doubt %s call", key.split(":", 1)[0])
        try:
            return future.result(timeout=self._config.timeout_ms / 1000.0)
        except FuturesTimeout:
            if key:
                with self._in_doubt_lock:
                    self._in_doubt[key] = (future, time.monotonic())
            name = getattr(fn, "__name__", "call")
            raise ProviderTimeout(f"{name} exceeded {self._config.timeout_ms}ms") from None

    def _claim_in_doubt(self, key: str) -> Optional[Future]:
        now = time.monotonic()
        with self._in_doubt_lock:
            expired = [k for k, (_, parked) in self._in_doubt.items() if now - parked > self._in_doubt_ttl_s]
            for stale in expired:
                del self._in_doubt[stale]
            entry = self._in_doubt.pop(key, None)
        return entry[0] if entry else None

    # -- handlers ----------------------------------------------------------

    def _search_catalog(self, action: Action) -> dict[str, Any]:
        preferences = action.payload.get("preferences") or {}
        products = self._call(self._catalog.search, preferences)
        return {"products": list(products)}

    def _lookup_order(self, action: Action) -> dict[str, Any]:
        payload = action.payload
        status = self._call(
            self._orders.lookup,
            order_id=payload.get("order_id"),
            email=payload.get("email"),
            zip_code=payload.get("zip"),
        )
        if status is None:
            raise NotFoundError("No order matched the lookup")
        return dict(status)

    def _create_return(self, action: Action) -> dict[str, Any]:
        p = action.payload
        return dict(self._call(
            self._returns.create_return, p["order_id"], p["reason"], key=action.dedup_key,
        ))

    def _reserve_capsule(self, action: Action) -> dict[str, Any]:
        p = action.payload
        return dict(self._call(
            self._capsules.reserve, p["session_id"], p["item_ids"], key=action.dedup_key,
        ))

    def _create_ticket(self, action: Action) -> dict[str, Any]:
        p = action.payload
        return dict(self._call(
            self._tickets.create_ticket,
            p["name"], p["email"], p.get("phone"), p.get("context", {}),
            key=action.dedup_key,
        ))

    def _record_csat(self, action: Action) -> dict[str, Any]:
        p = action.payload
        return dict(self._call(
            self._csat.record, p["session_id"], p["rating"], p.get("comment"),
            key=action.dedup_key,
        ))

    def _subscribe_updates(self, action: Action) -> dict[str, Any]:
        p = action.payload
        return dict(self._call(
            self._orders.subscribe_updates, p["order_id"], p.get("channel", "sms"),
            key=action.dedup_key,
        ))
