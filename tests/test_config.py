"""Tests for environment-driven settings."""

from decimal import Decimal

import pytest

from paystructure_engine.config import Settings

ENV_KEYS = [
    "DATABASE_URL",
    "ENGINE_VERSION",
    "WORKER_POOL_SIZE",
    "EXCHANGE_RATE_TIMEOUT_SECONDS",
    "APPROVAL_EXPIRATION_HOURS",
    "DIVISION_EPSILON",
    "DEFAULT_BASE_CURRENCY",
]


@pytest.fixture
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


class TestSettings:
    """Settings.from_env defaults and validation."""

    def test_defaults(self, clean_env):
        settings = Settings.from_env()

        assert settings.worker_pool_size == 8
        assert settings.exchange_rate_timeout_seconds == 10.0
        assert settings.approval_expiration_hours == 72
        assert settings.division_epsilon == Decimal("0.000001")
        assert settings.default_base_currency == "SRD"

    def test_overrides(self, clean_env):
        clean_env.setenv("WORKER_POOL_SIZE", "2")
        clean_env.setenv("EXCHANGE_RATE_TIMEOUT_SECONDS", "2.5")
        clean_env.setenv("DEFAULT_BASE_CURRENCY", "usd")

        settings = Settings.from_env()

        assert settings.worker_pool_size == 2
        assert settings.exchange_rate_timeout_seconds == 2.5
        assert settings.default_base_currency == "USD"

    @pytest.mark.parametrize(
        "key, value",
        [
            ("WORKER_POOL_SIZE", "eight"),
            ("WORKER_POOL_SIZE", "0"),
            ("APPROVAL_EXPIRATION_HOURS", "-1"),
            ("DIVISION_EPSILON", "tiny"),
        ],
    )
    def test_invalid_values(self, clean_env, key, value):
        clean_env.setenv(key, value)

        with pytest.raises(ValueError, match=key):
            Settings.from_env()
