"""Correlation logging context for tracing a turn across modules.

Provides a request-aware logger that attaches the request id and the
session id to every log record, so one chat turn can be followed from
classification through dispatch and analytics.

Usage:
    from concierge.logging_context import get_request_logger, bind_request

    bind_request("req-abc123", "sess-42")
    logger = get_request_logger(__name__)
    logger.info("Dispatching action")  # record.request_id == "req-abc123"
"""

import logging
from contextvars import ContextVar

_request_id: ContextVar[str] = ContextVar("request_id", default="NO_REQUEST_ID")
_session_id: ContextVar[str] = ContextVar("session_id", default="NO_SESSION_ID")


def bind_request(request_id: str, session_id: str) -> None:
    """Set the correlation ids for the current context."""
    _request_id.set(request_id)
    _session_id.set(session_id)


class RequestContextFilter(logging.Filter):
    """Injects request_id and session_id into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id.get()  # type: ignore[attr-defined]
        record.session_id = _session_id.get()  # type: ignore[attr-defined]
        return True


def get_request_logger(name: str) -> logging.Logger:
    """Return a logger with the RequestContextFilter attached.

    Formatters can then include ``%(request_id)s`` and ``%(session_id)s``.
    """
    logger = logging.getLogger(name)
    if not any(isinstance(f, RequestContextFilter) for f in logger.filters):
        logger.addFilter(RequestContextFilter())
    return logger
