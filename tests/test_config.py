"""Tests for configuration loading and validation."""

from dataclasses import replace

import pytest

from concierge.config import (
    AnalyticsConfig,
    AppConfig,
    CapsuleConfig,
    CatalogConfig,
    CsatConfig,
    DispatcherConfig,
    RankingWeights,
    _validate_config,
    settings,
)


class TestConfigValidation:
    def test_default_config_passes_validation(self):
        _validate_config(AppConfig())  # should not raise

    def test_default_capsule_window_is_48_hours(self):
        assert AppConfig().capsule.hold_ttl_hours == 48

    def test_unknown_required_filter(self):
        config = replace(AppConfig(), catalog=CatalogConfig(required_filters=("category", "colour")))
        with pytest.raises(ValueError, match="REQUIRED_PRODUCT_FILTERS"):
            _validate_config(config)

    def test_top_k_must_be_positive(self):
        config = replace(AppConfig(), catalog=CatalogConfig(top_k=0))
        with pytest.raises(ValueError, match="RECOMMENDATION_TOP_K"):
            _validate_config(config)

    def test_negative_weight(self):
        config = replace(AppConfig(), ranking=RankingWeights(margin=-0.1))
        with pytest.raises(ValueError, match="RANK_WEIGHT_MARGIN"):
            _validate_config(config)

    def test_style_divisor_floor(self):
        config = replace(AppConfig(), ranking=RankingWeights(style_divisor=0))
        with pytest.raises(ValueError, match="RANK_STYLE_DIVISOR"):
            _validate_config(config)

    def test_capsule_ttl_must_be_positive(self):
        config = replace(AppConfig(), capsule=CapsuleConfig(hold_ttl_hours=0))
        with pytest.raises(ValueError, match="CAPSULE_HOLD_TTL_HOURS"):
            _validate_config(config)

    def test_csat_threshold_outside_scale(self):
        config = replace(AppConfig(), csat=CsatConfig(min_rating=1, max_rating=5, negative_threshold=7))
        with pytest.raises(ValueError, match="CSAT_NEGATIVE_THRESHOLD"):
            _validate_config(config)

    def test_csat_scale_inverted(self):
        config = replace(AppConfig(), csat=CsatConfig(min_rating=5, max_rating=1, negative_threshold=3))
        with pytest.raises(ValueError, match="CSAT_MIN_RATING"):
            _validate_config(config)

    def test_collaborator_timeout_must_be_positive(self):
        config = replace(AppConfig(), dispatcher=DispatcherConfig(timeout_ms=0))
        with pytest.raises(ValueError, match="COLLABORATOR_TIMEOUT_MS"):
            _validate_config(config)

    def test_negative_read_retries(self):
        config = replace(AppConfig(), dispatcher=DispatcherConfig(read_retries=-1))
        with pytest.raises(ValueError, match="COLLABORATOR_READ_RETRIES"):
            _validate_config(config)

    def test_empty_hash_salt(self):
        config = replace(AppConfig(), analytics=AnalyticsConfig(hash_salt=""))
        with pytest.raises(ValueError, match="ANALYTICS_HASH_SALT"):
            _validate_config(config)


class TestSettingsSingleton:
    def test_settings_loaded(self):
        assert settings.business.name
        assert "category" in settings.catalog.required_filters
        assert settings.dispatcher.timeout_ms > 0

    def test_config_is_frozen(self):
        with pytest.raises(Exception):
            settings.capsule.hold_ttl_hours = 1  # type: ignore[misc]
