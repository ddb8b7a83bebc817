"""
Tests for environment-driven settings.
"""
import logging
import pytest

from pydantic import ValidationError

from recordkit.config import RecordKitSettings, configure_logging, get_settings

ENV_NAMES = [
    "RECORDKIT_FLOAT_TOLERANCE", "RECORDKIT_SOFT_ACTIVE_FIELD", "RECORDKIT_IMMUTABLE_FIELDS",
    "RECORDKIT_PASSIVE_FIELDS", "RECORDKIT_SUPPRESS_EMPTY_UPDATES", "RECORDKIT_DEFAULT_ACTOR",
    "RECORDKIT_LOG_LEVEL",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_defaults():
    settings = RecordKitSettings.from_env()
    assert settings.float_tolerance == 1e-6
    assert settings.soft_active_field == "active"
    assert settings.immutable_fields == ["created_on", "created_by"]
    assert settings.passive_fields == ["updated", "updated_by"]
    assert settings.suppress_empty_updates is False
    assert settings.default_actor == "system"
    assert settings.log_level == "WARNING"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("RECORDKIT_FLOAT_TOLERANCE", "0.01")
    monkeypatch.setenv("RECORDKIT_SOFT_ACTIVE_FIELD", "is_active")
    monkeypatch.setenv("RECORDKIT_IMMUTABLE_FIELDS", "created_on, inserted_by ,")
    monkeypatch.setenv("RECORDKIT_PASSIVE_FIELDS", "")
    monkeypatch.setenv("RECORDKIT_SUPPRESS_EMPTY_UPDATES", "Yes")
    monkeypatch.setenv("RECORDKIT_DEFAULT_ACTOR", "batch")
    monkeypatch.setenv("RECORDKIT_LOG_LEVEL", "debug")

    settings = RecordKitSettings.from_env()
    assert settings.float_tolerance == 0.01
    assert settings.soft_active_field == "is_active"
    assert settings.immutable_fields == ["created_on", "inserted_by"]
    assert settings.passive_fields == []
    assert settings.suppress_empty_updates is True
    assert settings.default_actor == "batch"
    assert settings.log_level == "DEBUG"


def test_get_settings_is_memoized():
    assert get_settings() is get_settings()


def test_invalid_values_rejected():
    with pytest.raises(ValidationError):
        RecordKitSettings(float_tolerance=-1)
    with pytest.raises(ValidationError):
        RecordKitSettings(default_actor="x" * 51)


def test_configure_logging(monkeypatch):
    calls = {}
    monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: calls.update(kwargs))
    configure_logging(RecordKitSettings(log_level="info"))
    assert calls["level"] == logging.INFO
