from __future__ import annotations

import os

from inbox_web.config import get_settings, runtime_secret_issues


def _set_env(name: str, value: str | None) -> str | None:
    previous = os.environ.get(name)
    if value is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = value
    return previous


def _restore_env(name: str, previous: str | None) -> None:
    if previous is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = previous


def test_get_settings_defaults() -> None:
    names = [
        "CONVERSATION_CACHE_TTL_SECONDS",
        "FREE_WINDOW_HOURS",
        "AGENT_IDENTITY_PREFIXES",
        "RUNTIME_SECRET_GUARD_MODE",
        "LOCAL_STORE_BACKEND",
    ]
    previous = {name: _set_env(name, None) for name in names}
    try:
        settings = get_settings()
        assert settings.conversation_cache_ttl_seconds == 30.0
        assert settings.participant_cache_ttl_seconds == 60.0
        assert settings.message_cache_ttl_seconds == 15.0
        assert settings.free_window_hours == 24.0
        assert settings.agent_identity_prefixes == ("agent-", "agent_", "admin-", "admin_")
        assert settings.runtime_secret_guard_mode == "warn"
        assert settings.local_store_backend == "inmemory"
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_get_settings_reads_overrides() -> None:
    previous = {
        "CONVERSATION_CACHE_TTL_SECONDS": _set_env("CONVERSATION_CACHE_TTL_SECONDS", "5"),
        "AGENT_IDENTITY_PREFIXES": _set_env("AGENT_IDENTITY_PREFIXES", "staff-, ops_"),
        "RUNTIME_SECRET_GUARD_MODE": _set_env("RUNTIME_SECRET_GUARD_MODE", "ENFORCE"),
        "INBOX_NUMBERS_CONFIG": _set_env("INBOX_NUMBERS_CONFIG", '{"numbers": [{"id": "a", "number": "+15551110000"}]}'),
        "PROVIDER_MAX_RETRIES": _set_env("PROVIDER_MAX_RETRIES", "not-a-number"),
    }
    try:
        settings = get_settings()
        assert settings.conversation_cache_ttl_seconds == 5.0
        assert settings.agent_identity_prefixes == ("staff-", "ops_")
        assert settings.runtime_secret_guard_mode == "enforce"
        assert settings.numbers[0].routing_address == "whatsapp:+15551110000"
        assert settings.provider_max_retries == 3
    finally:
        for key, value in previous.items():
            _restore_env(key, value)


def test_missing_credentials_are_reported() -> None:
    previous = {
        "TWILIO_ACCOUNT_SID": _set_env("TWILIO_ACCOUNT_SID", None),
        "TWILIO_AUTH_TOKEN": _set_env("TWILIO_AUTH_TOKEN", None),
    }
    try:
        issues = runtime_secret_issues(get_settings())
        assert "TWILIO_ACCOUNT_SID is not set" in issues
        assert "TWILIO_AUTH_TOKEN is not set" in issues
    finally:
        for key, value in previous.items():
            _restore_env(key, value)


def test_malformed_account_sid_and_missing_database_url() -> None:
    previous = {
        "TWILIO_ACCOUNT_SID": _set_env("TWILIO_ACCOUNT_SID", "SK123"),
        "TWILIO_AUTH_TOKEN": _set_env("TWILIO_AUTH_TOKEN", "token"),
        "LOCAL_STORE_BACKEND": _set_env("LOCAL_STORE_BACKEND", "postgres"),
        "DATABASE_URL": _set_env("DATABASE_URL", None),
    }
    try:
        issues = runtime_secret_issues(get_settings())
        assert issues == (
            "TWILIO_ACCOUNT_SID must start with 'AC'",
            "DATABASE_URL is required for LOCAL_STORE_BACKEND=postgres",
        )
    finally:
        for key, value in previous.items():
            _restore_env(key, value)


def test_valid_configuration_has_no_issues() -> None:
    previous = {
        "TWILIO_ACCOUNT_SID": _set_env("TWILIO_ACCOUNT_SID", "AC0123456789"),
        "TWILIO_AUTH_TOKEN": _set_env("TWILIO_AUTH_TOKEN", "token"),
        "LOCAL_STORE_BACKEND": _set_env("LOCAL_STORE_BACKEND", "inmemory"),
    }
    try:
        assert runtime_secret_issues(get_settings()) == ()
    finally:
        for key, value in previous.items():
            _restore_env(key, value)
