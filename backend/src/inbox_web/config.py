from __future__ import annotations

import json
import os
from dataclasses import dataclass, field

DEFAULT_AGENT_PREFIXES = ("agent-", "agent_", "admin-", "admin_")
DEFAULT_MEDIA_PROXY_TEMPLATE = (
    "/api/media/{media_sid}?conversationSid={conversation_sid}"
    "&chatServiceSid={chat_service_sid}&messageSid={message_sid}"
)


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_csv_tuple(value: str | None) -> tuple[str, ...]:
    if value is None:
        return ()
    items = [item.strip() for item in value.split(",")]
    return tuple(item for item in items if item)


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


@dataclass(frozen=True)
class ConfiguredNumber:
    number_id: str
    routing_address: str
    name: str
    department: str


def _with_channel_prefix(value: str) -> str:
    cleaned = value.strip()
    if ":" in cleaned:
        return cleaned
    return f"whatsapp:{cleaned}"


def parse_numbers_config(raw_json: str | None, environ: dict[str, str] | None = None) -> tuple[ConfiguredNumber, ...]:
    """Load the configured business lines.

    ``INBOX_NUMBERS_CONFIG`` wins when present; otherwise ``WHATSAPP_NUMBER_1``
    through ``WHATSAPP_NUMBER_10`` are read. Bare numbers get the
    ``whatsapp:`` channel prefix, the form the provider reports on participant
    bindings; values that already carry a scheme are kept verbatim.
    """
    env = os.environ if environ is None else environ
    if raw_json is not None and raw_json.strip():
        try:
            parsed = json.loads(raw_json)
        except json.JSONDecodeError as exc:
            raise ValueError(f"INBOX_NUMBERS_CONFIG is not valid JSON: {exc.msg}") from exc
        entries = parsed.get("numbers") if isinstance(parsed, dict) else None
        if not isinstance(entries, list):
            raise ValueError("INBOX_NUMBERS_CONFIG must be an object with a 'numbers' list")
        numbers: list[ConfiguredNumber] = []
        for index, entry in enumerate(entries, start=1):
            if not isinstance(entry, dict) or not str(entry.get("number", "")).strip():
                raise ValueError(f"INBOX_NUMBERS_CONFIG entry {index} is missing 'number'")
            if not entry.get("isActive", True):
                continue
            numbers.append(
                ConfiguredNumber(
                    number_id=str(entry.get("id") or index),
                    routing_address=_with_channel_prefix(str(entry["number"])),
                    name=str(entry.get("name") or f"Number {index}"),
                    department=str(entry.get("department") or "General"),
                )
            )
        return tuple(numbers)

    fallback: list[ConfiguredNumber] = []
    for index in range(1, 11):
        value = env.get(f"WHATSAPP_NUMBER_{index}")
        if not value or not value.strip():
            continue
        fallback.append(
            ConfiguredNumber(
                number_id=str(index),
                routing_address=_with_channel_prefix(value),
                name=f"Number {index}",
                department="General",
            )
        )
    return tuple(fallback)


@dataclass(frozen=True)
class Settings:
    app_name: str = "WhatsApp Inbox Web"
    api_prefix: str = "/api/v1"
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    provider_base_url: str = "https://conversations.twilio.com/v1"
    provider_timeout_seconds: float = 10.0
    provider_max_retries: int = 3
    provider_backoff_base_seconds: float = 1.0
    conversation_service_sid: str = ""
    conversation_cache_ttl_seconds: float = 30.0
    participant_cache_ttl_seconds: float = 60.0
    message_cache_ttl_seconds: float = 15.0
    numbers: tuple[ConfiguredNumber, ...] = field(default_factory=tuple)
    agent_identity_prefixes: tuple[str, ...] = DEFAULT_AGENT_PREFIXES
    free_window_hours: float = 24.0
    media_proxy_template: str = DEFAULT_MEDIA_PROXY_TEMPLATE
    default_agent_id: str = "admin_001"
    local_store_backend: str = "inmemory"
    database_url: str = ""
    startup_probe_enabled: bool = True
    runtime_secret_guard_mode: str = "warn"


def get_settings() -> Settings:
    prefixes = _as_csv_tuple(os.getenv("AGENT_IDENTITY_PREFIXES"))
    return Settings(
        app_name=os.getenv("INBOX_APP_NAME", "WhatsApp Inbox Web"),
        api_prefix=os.getenv("INBOX_API_PREFIX", "/api/v1"),
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        provider_base_url=os.getenv("PROVIDER_BASE_URL", "https://conversations.twilio.com/v1"),
        provider_timeout_seconds=_as_float(os.getenv("PROVIDER_TIMEOUT_SECONDS"), 10.0),
        provider_max_retries=_as_int(os.getenv("PROVIDER_MAX_RETRIES"), 3),
        provider_backoff_base_seconds=_as_float(os.getenv("PROVIDER_BACKOFF_BASE_SECONDS"), 1.0),
        conversation_service_sid=os.getenv("TWILIO_CONVERSATION_SERVICE_SID", ""),
        conversation_cache_ttl_seconds=_as_float(os.getenv("CONVERSATION_CACHE_TTL_SECONDS"), 30.0),
        participant_cache_ttl_seconds=_as_float(os.getenv("PARTICIPANT_CACHE_TTL_SECONDS"), 60.0),
        message_cache_ttl_seconds=_as_float(os.getenv("MESSAGE_CACHE_TTL_SECONDS"), 15.0),
        numbers=parse_numbers_config(os.getenv("INBOX_NUMBERS_CONFIG")),
        agent_identity_prefixes=prefixes or DEFAULT_AGENT_PREFIXES,
        free_window_hours=_as_float(os.getenv("FREE_WINDOW_HOURS"), 24.0),
        media_proxy_template=os.getenv("MEDIA_PROXY_URL_TEMPLATE", DEFAULT_MEDIA_PROXY_TEMPLATE),
        default_agent_id=os.getenv("DEFAULT_AGENT_ID", "admin_001"),
        local_store_backend=os.getenv("LOCAL_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        startup_probe_enabled=_as_bool(os.getenv("STARTUP_PROBE_ENABLED"), True),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    sid = settings.twilio_account_sid.strip()
    if not sid:
        issues.append("TWILIO_ACCOUNT_SID is not set")
    elif not sid.startswith("AC"):
        issues.append("TWILIO_ACCOUNT_SID must start with 'AC'")
    if not settings.twilio_auth_token.strip():
        issues.append("TWILIO_AUTH_TOKEN is not set")
    backend = settings.local_store_backend.strip().lower()
    if backend in {"postgres", "sqlalchemy"} and not settings.database_url.strip():
        issues.append(f"DATABASE_URL is required for LOCAL_STORE_BACKEND={backend}")
    return tuple(issues)
