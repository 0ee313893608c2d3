"""
Centralized configuration with environment variable overrides.

Thresholds, weights, TTLs, and collaborator timeouts live here. The
classifier rule table and ranking weights are handed to their components
at construction time; nothing in the engine reads a hidden module global.
"""

import logging
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _safe_int(env_var: str, default: str) -> int:
    """Parse an integer from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return int(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid integer for {env_var}: {raw!r}"
        ) from None


def _safe_float(env_var: str, default: str) -> float:
    """Parse a float from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return float(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid float for {env_var}: {raw!r}"
        ) from None


def _safe_list(env_var: str, default: str) -> tuple[str, ...]:
    """Parse a comma-separated env var into a tuple of lowercase items."""
    raw = os.getenv(env_var, default)
    return tuple(item.strip().lower() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class BusinessConfig:
    """Store-facing copy values."""

    name: str = os.getenv("STORE_NAME", "GlowGlitch Studio")
    concierge_name: str = os.getenv("CONCIERGE_NAME", "Aurora")
    support_email: str = os.getenv("SUPPORT_EMAIL", "studio@glowglitch.com")
    stylist_sla_hours: int = _safe_int("STYLIST_SLA_HOURS", "24")


@dataclass(frozen=True)
class CatalogConfig:
    """Product search settings."""

    required_filters: tuple[str, ...] = _safe_list("REQUIRED_PRODUCT_FILTERS", "category,budget_max")
    top_k: int = _safe_int("RECOMMENDATION_TOP_K", "6")


@dataclass(frozen=True)
class RankingWeights:
    """Soft-ranking weights for the recommendation score."""

    style: float = _safe_float("RANK_WEIGHT_STYLE", "0.5")
    bestseller: float = _safe_float("RANK_WEIGHT_BESTSELLER", "0.3")
    margin: float = _safe_float("RANK_WEIGHT_MARGIN", "0.1")
    price: float = _safe_float("RANK_WEIGHT_PRICE", "0.1")
    ship_bonus: float = _safe_float("RANK_SHIP_BONUS", "0.2")
    fast_ship_days: int = _safe_int("RANK_FAST_SHIP_DAYS", "2")
    style_divisor: int = _safe_int("RANK_STYLE_DIVISOR", "3")


@dataclass(frozen=True)
class CapsuleConfig:
    """Capsule hold eligibility and lifetime."""

    hold_ttl_hours: int = _safe_int("CAPSULE_HOLD_TTL_HOURS", "48")
    min_shortlist: int = _safe_int("CAPSULE_MIN_SHORTLIST", "2")
    bespoke_keywords: tuple[str, ...] = _safe_list(
        "CAPSULE_BESPOKE_KEYWORDS", "custom,bespoke,custom design,one of a kind,made to order"
    )


@dataclass(frozen=True)
class CsatConfig:
    """Satisfaction scale and escalation threshold."""

    min_rating: int = _safe_int("CSAT_MIN_RATING", "1")
    max_rating: int = _safe_int("CSAT_MAX_RATING", "5")
    negative_threshold: int = _safe_int("CSAT_NEGATIVE_THRESHOLD", "3")


@dataclass(frozen=True)
class SessionConfig:
    """Session retention and disambiguation behaviour."""

    ttl_days: int = _safe_int("SESSION_TTL_DAYS", "30")
    misses_before_human: int = _safe_int("MISSES_BEFORE_HUMAN", "2")


@dataclass(frozen=True)
class IdempotencyConfig:
    """Dedup cache retention."""

    retention_hours: int = _safe_int("IDEMPOTENCY_RETENTION_HOURS", "24")


@dataclass(frozen=True)
class DispatcherConfig:
    """Bounds for calls against external collaborators."""

    timeout_ms: int = _safe_int("COLLABORATOR_TIMEOUT_MS", "300")
    read_retries: int = _safe_int("COLLABORATOR_READ_RETRIES", "1")
    retry_backoff_ms: int = _safe_int("COLLABORATOR_RETRY_BACKOFF_MS", "50")
    max_workers: int = _safe_int("COLLABORATOR_MAX_WORKERS", "8")


@dataclass(frozen=True)
class AnalyticsConfig:
    """Analytics hashing and outbox settings."""

    hash_salt: str = os.getenv("ANALYTICS_HASH_SALT", "glowglitch-concierge")
    outbox_limit: int = _safe_int("ANALYTICS_OUTBOX_LIMIT", "1000")


@dataclass(frozen=True)
class AppConfig:
    """Root configuration aggregating all sub-configs."""

    business: BusinessConfig = field(default_factory=BusinessConfig)
    catalog: CatalogConfig = field(default_factory=CatalogConfig)
    ranking: RankingWeights = field(default_factory=RankingWeights)
    capsule: CapsuleConfig = field(default_factory=CapsuleConfig)
    csat: CsatConfig = field(default_factory=CsatConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    idempotency: IdempotencyConfig = field(default_factory=IdempotencyConfig)
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    analytics: AnalyticsConfig = field(default_factory=AnalyticsConfig)
    log_level: str = os.getenv("LOG_LEVEL", "INFO")


_KNOWN_FILTERS = {"category", "budget_min", "budget_max", "metal", "stone", "style_tags", "ready_to_ship"}


def _validate_config(config: AppConfig) -> None:
    """Validate configuration values are within acceptable ranges."""
    unknown = set(config.catalog.required_filters) - _KNOWN_FILTERS
    if unknown:
        raise ValueError(
            f"REQUIRED_PRODUCT_FILTERS contains unknown fields: {sorted(unknown)}"
        )
    if config.catalog.top_k < 1:
        raise ValueError(f"RECOMMENDATION_TOP_K must be >= 1, got {config.catalog.top_k}")

    for weight_name, weight_value in [
        ("RANK_WEIGHT_STYLE", config.ranking.style),
        ("RANK_WEIGHT_BESTSELLER", config.ranking.bestseller),
        ("RANK_WEIGHT_MARGIN", config.ranking.margin),
        ("RANK_WEIGHT_PRICE", config.ranking.price),
        ("RANK_SHIP_BONUS", config.ranking.ship_bonus),
    ]:
        if weight_value < 0:
            raise ValueError(f"{weight_name} must be >= 0, got {weight_value}")
    if config.ranking.style_divisor < 1:
        raise ValueError(
            f"RANK_STYLE_DIVISOR must be >= 1, got {config.ranking.style_divisor}"
        )

    if config.capsule.hold_ttl_hours < 1:
        raise ValueError(
            f"CAPSULE_HOLD_TTL_HOURS must be >= 1, got {config.capsule.hold_ttl_hours}"
        )
    if config.capsule.min_shortlist < 1:
        raise ValueError(
            f"CAPSULE_MIN_SHORTLIST must be >= 1, got {config.capsule.min_shortlist}"
        )

    csat = config.csat
    if csat.min_rating >= csat.max_rating:
        raise ValueError(
            f"CSAT_MIN_RATING must be < CSAT_MAX_RATING, got {csat.min_rating}..{csat.max_rating}"
        )
    if not csat.min_rating <= csat.negative_threshold <= csat.max_rating:
        raise ValueError(
            "CSAT_NEGATIVE_THRESHOLD must be within the rating scale, "
            f"got {csat.negative_threshold}"
        )

    if config.session.ttl_days < 1:
        raise ValueError(f"SESSION_TTL_DAYS must be >= 1, got {config.session.ttl_days}")
    if config.idempotency.retention_hours < 1:
        raise ValueError(
            "IDEMPOTENCY_RETENTION_HOURS must be >= 1, "
            f"got {config.idempotency.retention_hours}"
        )
    if config.dispatcher.timeout_ms <= 0:
        raise ValueError(
            f"COLLABORATOR_TIMEOUT_MS must be > 0, got {config.dispatcher.timeout_ms}"
        )
    if config.dispatcher.read_retries < 0:
        raise ValueError(
            f"COLLABORATOR_READ_RETRIES must be >= 0, got {config.dispatcher.read_retries}"
        )
    if not config.analytics.hash_salt:
        raise ValueError("ANALYTICS_HASH_SALT must not be empty")


def load_config() -> AppConfig:
    """Load and validate application configuration."""
    config = AppConfig()
    _validate_config(config)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logger.info("Configuration loaded for '%s'", config.business.name)
    return config


# Singleton instance
settings = load_config()
