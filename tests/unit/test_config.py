"""Unit tests for configuration management."""

import os
from collections.abc import Generator

import pytest
from pydantic import ValidationError

from services.shared.config import DEFAULT_ASSET_MINT, Settings, get_settings


@pytest.fixture
def clean_env() -> Generator[None, None, None]:
    """Clean environment variables before and after test."""
    original_env = dict(os.environ)
    env_vars = [k for k in os.environ if k.startswith("APP_") or k.startswith("app_")]
    for var in env_vars:
        del os.environ[var]
    yield
    os.environ.clear()
    os.environ.update(original_env)


def test_settings_defaults(clean_env: None) -> None:
    """Test that settings have correct default values."""
    settings = Settings(_env_file=None)

    assert settings.environment == "development"
    assert settings.log_level == "INFO"
    assert settings.service_name == "invoice-reconciliation-service"
    assert settings.service_version == "0.1.0"
    assert settings.store_backend == "memory"
    assert settings.asset_mint == DEFAULT_ASSET_MINT
    assert settings.asset_decimals == 6


def test_reconciliation_defaults(clean_env: None) -> None:
    """Test lifecycle and matching defaults."""
    settings = Settings(_env_file=None)

    assert settings.invoice_ttl_seconds == 600
    assert settings.invoice_extend_seconds == 120
    assert settings.clock_skew_guard_seconds == 30
    assert settings.amount_tolerance_units == 1
    assert settings.key_generation_attempts == 3
    assert settings.poll_signature_limit == 10
    assert settings.stream_timeout_seconds == 900.0
    assert settings.stream_keepalive_seconds == 15.0
    assert settings.webhook_secret == ""
    assert settings.debug_secret == ""


def test_settings_from_env_vars(clean_env: None) -> None:
    """Test that settings can be overridden via environment variables."""
    os.environ["APP_ENVIRONMENT"] = "production"
    os.environ["APP_LOG_LEVEL"] = "ERROR"
    os.environ["APP_STORE_BACKEND"] = "redis"
    os.environ["APP_WEBHOOK_SECRET"] = "hook-secret"
    os.environ["APP_POLL_BUDGET_SECONDS"] = "2.5"

    settings = Settings(_env_file=None)

    assert settings.environment == "production"
    assert settings.log_level == "ERROR"
    assert settings.store_backend == "redis"
    assert settings.webhook_secret == "hook-secret"
    assert settings.poll_budget_seconds == 2.5


def test_settings_case_insensitive(clean_env: None) -> None:
    """Test that environment variables are case insensitive."""
    os.environ["app_log_level"] = "DEBUG"

    settings = Settings(_env_file=None)

    assert settings.log_level == "DEBUG"


def test_invalid_store_backend_rejected(clean_env: None) -> None:
    """Test that unknown store backends fail validation."""
    with pytest.raises(ValidationError):
        Settings(_env_file=None, store_backend="postgres")


def test_non_positive_ttl_rejected(clean_env: None) -> None:
    """Test that a zero invoice TTL fails validation."""
    with pytest.raises(ValidationError):
        Settings(_env_file=None, invoice_ttl_seconds=0)


def test_get_settings_factory() -> None:
    """Test that factory function returns Settings instance."""
    settings = get_settings()

    assert isinstance(settings, Settings)
    assert settings.service_name == "invoice-reconciliation-service"
