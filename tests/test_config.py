"""
Tests for Settings and startup validation
"""

import pytest

from fixbot.config import Settings, validate_settings
from fixbot.errors import ConfigurationError


def make_settings(**overrides):
    return Settings(_env_file=None, **overrides)


class TestSettings:

    def test_defaults(self):
        config = make_settings()

        assert config.processing_mode == "inline"
        assert config.processing_timeout_seconds == 30.0
        assert config.queued_processing_timeout_seconds == 240.0
        assert config.dlq_max_retries == 3
        assert config.dlq_backoff_base == 5
        assert config.dedup_cache_ttl_seconds == 1800

    def test_environment_variables_override(self, monkeypatch):
        monkeypatch.setenv("RATE_LIMIT_PER_MINUTE", "7")
        monkeypatch.setenv("PROCESSING_MODE", "queue")

        config = make_settings()

        assert config.rate_limit_per_minute == 7
        assert config.processing_mode == "queue"


class TestValidateSettings:

    def test_defaults_are_valid(self):
        validate_settings(make_settings(environment="development"))

    def test_unknown_processing_mode(self):
        with pytest.raises(ConfigurationError, match="processing_mode"):
            validate_settings(make_settings(processing_mode="batch"))

    def test_queue_mode_requires_redis(self):
        with pytest.raises(ConfigurationError, match="REDIS_URL"):
            validate_settings(make_settings(processing_mode="queue", redis_url=None))

        validate_settings(make_settings(processing_mode="queue", redis_url="redis://localhost:6379/0"))

    def test_production_requires_database_and_secret(self):
        with pytest.raises(ConfigurationError) as exc_info:
            validate_settings(make_settings(environment="production"))

        assert "DATABASE_URL" in exc_info.value.message
        assert "WHATSAPP_APP_SECRET" in exc_info.value.message

    def test_limits_must_be_positive(self):
        with pytest.raises(ConfigurationError, match="rate_limit_per_minute"):
            validate_settings(make_settings(rate_limit_per_minute=0))
