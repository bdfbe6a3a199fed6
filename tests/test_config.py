"""Tests for application configuration."""

import pytest
from pydantic import ValidationError

from sitebuilder.config import Environment, Settings, get_settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "ENVIRONMENT",
        "DEBUG",
        "JWT_SECRET",
        "WEBHOOK_MAX_ATTEMPTS",
        "WEBHOOK_TIMEOUT_SECONDS",
        "API_KEY_BCRYPT_ROUNDS",
    ):
        monkeypatch.delenv(name, raising=False)


class TestSettings:
    """Test Settings model and validation."""

    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.environment == Environment.DEV
        assert settings.debug is True  # Auto-set from DEV environment
        assert settings.webhook_timeout_seconds == 30.0
        assert settings.webhook_max_attempts == 4
        assert settings.webhook_retry_sweep_interval_seconds == 0
        assert settings.api_key_bcrypt_rounds == 10

    def test_production_rejects_default_jwt_secret(self):
        with pytest.raises((RuntimeError, ValidationError), match="PRODUCTION STARTUP BLOCKED"):
            Settings(_env_file=None, environment=Environment.PROD)

    def test_production_with_real_secret(self):
        settings = Settings(
            _env_file=None,
            environment=Environment.PROD,
            jwt_secret="3f1c9a0e7b2d4c58a6e1f0b9d8c7a6e5",
        )
        assert settings.is_prod is True
        assert settings.is_dev is False
        assert settings.debug is False
        assert settings.api_key_environment == "live"

    @pytest.mark.parametrize("environment", [Environment.DEV, Environment.TEST])
    def test_non_production_environments(self, environment):
        settings = Settings(_env_file=None, environment=environment)
        assert settings.is_dev is True
        assert settings.is_prod is False
        assert settings.api_key_environment == "test"

    def test_reads_environment_variables(self, monkeypatch):
        monkeypatch.setenv("WEBHOOK_MAX_ATTEMPTS", "6")
        monkeypatch.setenv("API_KEY_BCRYPT_ROUNDS", "12")

        settings = Settings(_env_file=None)

        assert settings.webhook_max_attempts == 6
        assert settings.api_key_bcrypt_rounds == 12

    @pytest.mark.parametrize(
        "overrides",
        [
            {"webhook_timeout_seconds": 0},
            {"webhook_timeout_seconds": 500},
            {"webhook_max_attempts": 0},
            {"api_key_bcrypt_rounds": 3},
            {"background_worker_concurrency": 0},
        ],
    )
    def test_out_of_range_values_rejected(self, overrides):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **overrides)

    def test_get_settings_is_cached(self):
        get_settings.cache_clear()
        try:
            assert get_settings() is get_settings()
        finally:
            get_settings.cache_clear()
