from __future__ import annotations

import logging
import os

import pytest
from fastapi.testclient import TestClient

from inbox_web import api as api_module
from inbox_web.main import create_app
from inbox_web.remote import TransientNetworkError

from fakes import FakeProvider, make_runtime


def _set_env(overrides: dict[str, str | None]) -> dict[str, str | None]:
    previous: dict[str, str | None] = {}
    for key, value in overrides.items():
        previous[key] = os.environ.get(key)
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    return previous


def _restore_env(previous: dict[str, str | None]) -> None:
    for key, value in previous.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


def _base_runtime_secret_env() -> dict[str, str]:
    return {
        "TWILIO_ACCOUNT_SID": "AC0123456789abcdef0123456789abcdef",
        "TWILIO_AUTH_TOKEN": "prod-auth-token-001",
        "RUNTIME_SECRET_GUARD_MODE": "enforce",
        "LOCAL_STORE_BACKEND": "inmemory",
        "STARTUP_PROBE_ENABLED": "false",
        "WHATSAPP_NUMBER_1": "+15551110000",
    }


def test_create_app_starts_with_complete_secrets() -> None:
    previous = _set_env(_base_runtime_secret_env())
    try:
        app = create_app()
        assert app.title == "WhatsApp Inbox Web"
        assert app.state.settings.numbers[0].routing_address == "whatsapp:+15551110000"
    finally:
        _restore_env(previous)


def test_create_app_blocks_without_auth_token_in_enforce_mode() -> None:
    previous = _set_env({**_base_runtime_secret_env(), "TWILIO_AUTH_TOKEN": None})
    try:
        with pytest.raises(RuntimeError) as exc_info:
            create_app()
        message = str(exc_info.value)
        assert "TWILIO_AUTH_TOKEN is not set" in message
        assert "RUNTIME_SECRET_GUARD_MODE=warn" in message
    finally:
        _restore_env(previous)


def test_create_app_warns_in_warn_mode(caplog: pytest.LogCaptureFixture) -> None:
    previous = _set_env(
        {
            **_base_runtime_secret_env(),
            "RUNTIME_SECRET_GUARD_MODE": "warn",
            "TWILIO_ACCOUNT_SID": None,
            "WHATSAPP_NUMBER_1": None,
        }
    )
    try:
        with caplog.at_level(logging.WARNING, logger="inbox_web.main"):
            create_app()
        assert "TWILIO_ACCOUNT_SID is not set" in caplog.text
        assert "no WhatsApp numbers configured" in caplog.text
    finally:
        _restore_env(previous)


def test_startup_probe_runs_and_tolerates_network_failure(caplog: pytest.LogCaptureFixture) -> None:
    previous = _set_env({**_base_runtime_secret_env(), "STARTUP_PROBE_ENABLED": "true"})
    original_runtime = api_module.runtime
    provider = FakeProvider()
    provider.failures["probe"] = [TransientNetworkError("getaddrinfo failed")]
    api_module.runtime = make_runtime(provider)
    try:
        with caplog.at_level(logging.WARNING, logger="inbox_web.remote"):
            with TestClient(create_app()) as client:
                response = client.get("/api/v1/inbox/numbers")
        assert response.status_code == 200
        assert provider.calls["probe"] == 1
        assert "provider connectivity probe failed" in caplog.text
    finally:
        api_module.runtime = original_runtime
        _restore_env(previous)
