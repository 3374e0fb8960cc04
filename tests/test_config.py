"""
Tests for settings validation and logging helpers.
"""

import pytest
from pydantic import ValidationError as PydanticValidationError

from formation_engine.core.config import Settings
from formation_engine.core.logging_config import get_log_level, redact_sensitive


def test_production_requires_explicit_encryption_key(monkeypatch):
    monkeypatch.delenv("ENCRYPTION_KEY", raising=False)

    with pytest.raises(PydanticValidationError, match="ENCRYPTION_KEY"):
        Settings(_env_file=None, environment="production")


def test_production_accepts_key_from_environment(monkeypatch):
    monkeypatch.setenv("ENCRYPTION_KEY", "0f" * 32)

    settings = Settings(_env_file=None, environment="production")

    assert settings.encryption_key == "0f" * 32


def test_unknown_storage_backend_rejected():
    with pytest.raises(PydanticValidationError, match="STORAGE_BACKEND"):
        Settings(_env_file=None, storage_backend="postgres")


@pytest.mark.parametrize(
    "environment, explicit, expected",
    [
        ("production", None, "INFO"),
        ("development", None, "DEBUG"),
        ("test", None, "WARNING"),
        ("production", "error", "ERROR"),
    ],
)
def test_log_level_defaults(monkeypatch, environment, explicit, expected):
    monkeypatch.delenv("LOG_LEVEL", raising=False)

    assert get_log_level(environment, explicit) == expected


def test_sensitive_values_redacted_from_log_events():
    """Tax ids and payment instruments never reach the renderer."""
    event = redact_sensitive(
        None,
        "info",
        {"event": "shareholder_added", "tax_id": "123-45-6789", "instrument": "pm_card", "session_id": "s-1"},
    )

    assert event["tax_id"] == "[REDACTED]"
    assert event["instrument"] == "[REDACTED]"
    assert event["session_id"] == "s-1"
