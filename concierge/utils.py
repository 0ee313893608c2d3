"""Shared utilities used across the concierge engine."""

import hashlib
import json
import re
from typing import Any

EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
PHONE_RE = re.compile(r"\+?\d[\d\s().-]{6,}\d")


def normalize_phone(value: str) -> str:
    """Normalize a phone number by stripping everything except digits and a leading +.

    Examples:
        >>> normalize_phone("(415) 555-0134")
        '4155550134'
        >>> normalize_phone("+1 415 555 0134")
        '+14155550134'
    """
    value = value.strip()
    if value.startswith("+"):
        return "+" + re.sub(r"[^\d]", "", value[1:])
    return re.sub(r"[^\d]", "", value)


def normalize_email(value: str) -> str:
    return value.strip().lower()


def is_valid_email(value: str) -> bool:
    return bool(EMAIL_RE.fullmatch(value.strip()))


def mask_email(value: str) -> str:
    """Reduce an email to a display snippet such as ``j***@example.com``."""
    local, _, domain = normalize_email(value).partition("@")
    if not domain:
        return "***"
    return f"{local[:1]}***@{domain}"


def hash_identifier(value: str, salt: str) -> str:
    """Salted SHA256 of an identifier, truncated for event payloads."""
    digest = hashlib.sha256(f"{salt}:{value}".encode()).hexdigest()
    return digest[:16]


def stable_hash(payload: Any) -> str:
    """Deterministic hash of a JSON-serialisable payload.

    Keys are sorted so that logically equal payloads hash the same.
    """
    canonical = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()[:24]


def contains_pii(value: str) -> bool:
    """True if the text carries something that looks like an email or phone."""
    return bool(EMAIL_RE.search(value) or PHONE_RE.search(value))
