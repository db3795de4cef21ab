"""
Unit tests for Pydantic Settings configuration.

Tests settings loading and validation.
"""

import pytest

from billing_sync.config.settings import Settings, get_settings


class TestSettings:
    """Tests for Settings configuration."""

    def test_settings_loads_from_env(self):
        """conftest sets the Stripe keys before settings are first read."""
        settings = get_settings()

        assert settings.stripe_secret_key == "sk_test_dummy"
        assert settings.stripe_webhook_secret == "whsec_test_secret"
        assert settings.environment == "testing"

    def test_settings_has_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.stripe_webhook_tolerance_seconds == 300
        assert settings.drift_tolerance_seconds == 5
        assert settings.checkout_poll_attempts >= 1
        assert settings.provider_timeout_seconds > 0
        assert settings.admin_user_ids == []

    def test_is_production_property(self):
        settings = get_settings()

        assert settings.is_production is False
        assert settings.is_development is False

    def test_allowed_origins_includes_localhost(self):
        settings = get_settings()

        assert "http://localhost:5173" in settings.allowed_origins
        assert "http://localhost:3000" in settings.allowed_origins


class TestProductionValidation:

    def test_production_requires_webhook_secret(self):
        with pytest.raises(ValueError, match="STRIPE_WEBHOOK_SECRET"):
            Settings(
                _env_file=None,
                environment="production",
                stripe_secret_key="sk_live_x",
                stripe_webhook_secret=None,
            )

    def test_production_requires_secret_key(self):
        with pytest.raises(ValueError, match="STRIPE_SECRET_KEY"):
            Settings(
                _env_file=None,
                environment="production",
                stripe_secret_key=None,
                stripe_webhook_secret="whsec_live",
            )

    def test_production_with_keys(self):
        settings = Settings(
            _env_file=None,
            environment="Production",
            stripe_secret_key="sk_live_x",
            stripe_webhook_secret="whsec_live",
        )

        assert settings.is_production is True

    def test_development_without_keys(self, monkeypatch):
        monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
        monkeypatch.delenv("STRIPE_WEBHOOK_SECRET", raising=False)

        settings = Settings(_env_file=None, environment="development")

        assert settings.stripe_secret_key is None
        assert settings.is_development is True
