from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Generic, Literal, Mapping, Protocol, TypeVar
from urllib.parse import parse_qs, urlparse

import httpx

from .remote import ProviderError, TransientNetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")

MessageOrder = Literal["asc", "desc"]


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class DisplayAttributes:
    display_name: str | None = None
    email: str | None = None
    phone: str | None = None
    role: str | None = None
    media_type: str | None = None
    media_url: str | None = None
    media_content_type: str | None = None
    media_filename: str | None = None

    @classmethod
    def parse(cls, raw: str | Mapping[str, Any] | None) -> DisplayAttributes:
        """Parse the provider's free-form ``attributes`` JSON string.

        Unknown keys are ignored and anything that is not a JSON object yields an
        empty instance, so callers never deal with the raw blob.
        """
        if raw is None:
            return cls()
        if isinstance(raw, str):
            if not raw.strip():
                return cls()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                logger.debug("ignoring unparseable attributes blob: %r", raw[:80])
                return cls()
        else:
            data = raw
        if not isinstance(data, Mapping):
            return cls()
        return cls(
            display_name=_clean(data.get("display_name") or data.get("displayName")),
            email=_clean(data.get("email")),
            phone=_clean(data.get("phone")),
            role=_clean(data.get("role")),
            media_type=_clean(data.get("media_type") or data.get("mediaType")),
            media_url=_clean(data.get("media_url") or data.get("mediaUrl")),
            media_content_type=_clean(data.get("media_content_type") or data.get("mediaContentType")),
            media_filename=_clean(data.get("media_filename") or data.get("mediaFilename")),
        )


@dataclass(frozen=True)
class MessagingBinding:
    address: str | None = None
    proxy_address: str | None = None
    name: str | None = None


@dataclass(frozen=True)
class ProviderParticipant:
    sid: str
    identity: str | None = None
    binding: MessagingBinding | None = None
    attributes: DisplayAttributes = field(default_factory=DisplayAttributes)


@dataclass(frozen=True)
class ProviderConversation:
    sid: str
    friendly_name: str | None = None
    unique_name: str | None = None
    chat_service_sid: str | None = None
    state: str | None = None
    date_created: datetime | None = None
    date_updated: datetime | None = None


@dataclass(frozen=True)
class ProviderMedia:
    sid: str
    content_type: str | None = None
    filename: str | None = None
    size: int | None = None


@dataclass(frozen=True)
class ProviderMessage:
    sid: str
    conversation_sid: str
    author: str | None = None
    body: str | None = None
    index: int | None = None
    date_created: datetime | None = None
    chat_service_sid: str | None = None
    attributes: DisplayAttributes = field(default_factory=DisplayAttributes)
    media: tuple[ProviderMedia, ...] = ()


@dataclass(frozen=True)
class ProviderPage(Generic[T]):
    items: tuple[T, ...]
    next_page_token: str | None = None


class ProviderClient(Protocol):
    async def list_conversations(
        self, *, page_size: int, page_token: str | None = None
    ) -> ProviderPage[ProviderConversation]: ...

    async def fetch_conversation(self, sid_or_unique_name: str) -> ProviderConversation: ...

    async def create_conversation(self, *, friendly_name: str, unique_name: str | None = None) -> ProviderConversation: ...

    async def delete_conversation(self, sid: str) -> None: ...

    async def list_participants(self, conversation_sid: str) -> tuple[ProviderParticipant, ...]: ...

    async def create_participant(
        self,
        conversation_sid: str,
        *,
        identity: str | None = None,
        address: str | None = None,
        proxy_address: str | None = None,
        attributes: Mapping[str, Any] | None = None,
    ) -> ProviderParticipant: ...

    async def list_messages(
        self,
        conversation_sid: str,
        *,
        limit: int,
        order: MessageOrder = "desc",
        page_token: str | None = None,
    ) -> ProviderPage[ProviderMessage]: ...

    async def create_message(
        self,
        conversation_sid: str,
        *,
        author: str,
        body: str | None = None,
        content_sid: str | None = None,
        content_variables: Mapping[str, str] | None = None,
        attributes: Mapping[str, Any] | None = None,
    ) -> ProviderMessage: ...

    async def probe(self) -> None: ...


def _parse_datetime(value: Any) -> datetime | None:
    text = _clean(value)
    if text is None:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _page_token(meta: Mapping[str, Any] | None) -> str | None:
    if not meta:
        return None
    next_url = _clean(meta.get("next_page_url"))
    if next_url is None:
        return None
    values = parse_qs(urlparse(next_url).query).get("PageToken")
    return values[0] if values else None


def parse_conversation(payload: Mapping[str, Any]) -> ProviderConversation:
    return ProviderConversation(
        sid=str(payload["sid"]),
        friendly_name=_clean(payload.get("friendly_name")),
        unique_name=_clean(payload.get("unique_name")),
        chat_service_sid=_clean(payload.get("chat_service_sid")),
        state=_clean(payload.get("state")),
        date_created=_parse_datetime(payload.get("date_created")),
        date_updated=_parse_datetime(payload.get("date_updated")),
    )


def parse_participant(payload: Mapping[str, Any]) -> ProviderParticipant:
    raw_binding = payload.get("messaging_binding")
    binding = None
    if isinstance(raw_binding, Mapping):
        binding = MessagingBinding(
            address=_clean(raw_binding.get("address")),
            proxy_address=_clean(raw_binding.get("proxy_address")),
            name=_clean(raw_binding.get("name")),
        )
    return ProviderParticipant(
        sid=str(payload["sid"]),
        identity=_clean(payload.get("identity")),
        binding=binding,
        attributes=DisplayAttributes.parse(payload.get("attributes")),
    )


def parse_message(payload: Mapping[str, Any], *, conversation_sid: str) -> ProviderMessage:
    media_items: list[ProviderMedia] = []
    for item in payload.get("media") or ():
        if not isinstance(item, Mapping) or not item.get("sid"):
            continue
        size = item.get("size")
        media_items.append(
            ProviderMedia(
                sid=str(item["sid"]),
                content_type=_clean(item.get("content_type")),
                filename=_clean(item.get("filename")),
                size=int(size) if isinstance(size, (int, float)) else None,
            )
        )
    index = payload.get("index")
    return ProviderMessage(
        sid=str(payload["sid"]),
        conversation_sid=str(payload.get("conversation_sid") or conversation_sid),
        author=_clean(payload.get("author")),
        body=payload.get("body") if isinstance(payload.get("body"), str) else None,
        index=int(index) if isinstance(index, int) else None,
        date_created=_parse_datetime(payload.get("date_created")),
        chat_service_sid=_clean(payload.get("chat_service_sid")),
        attributes=DisplayAttributes.parse(payload.get("attributes")),
        media=tuple(media_items),
    )


class HttpConversationsProvider:
    """Conversations REST adapter over ``httpx.AsyncClient`` with basic auth."""

    def __init__(
        self,
        *,
        account_sid: str,
        auth_token: str,
        base_url: str = "https://conversations.twilio.com/v1",
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        self._client = httpx.AsyncClient(
            base_url=stripped_url,
            auth=(account_sid.strip(), auth_token.strip()),
            timeout=timeout_seconds,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        data: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, params=params, data=data)
        except httpx.TransportError as exc:
            raise TransientNetworkError(f"{method} {path}: {exc}") from exc
        if response.status_code >= 400:
            code: int | None = None
            message = response.reason_phrase or f"HTTP {response.status_code}"
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, Mapping):
                raw_code = body.get("code")
                code = int(raw_code) if isinstance(raw_code, int) else None
                message = str(body.get("message") or message)
            raise ProviderError(response.status_code, code, message)
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    async def list_conversations(
        self, *, page_size: int, page_token: str | None = None
    ) -> ProviderPage[ProviderConversation]:
        params: dict[str, Any] = {"PageSize": page_size}
        if page_token:
            params["PageToken"] = page_token
        payload = await self._request("GET", "/Conversations", params=params)
        items = tuple(parse_conversation(item) for item in payload.get("conversations", []))
        return ProviderPage(items=items, next_page_token=_page_token(payload.get("meta")))

    async def fetch_conversation(self, sid_or_unique_name: str) -> ProviderConversation:
        payload = await self._request("GET", f"/Conversations/{sid_or_unique_name}")
        return parse_conversation(payload)

    async def create_conversation(self, *, friendly_name: str, unique_name: str | None = None) -> ProviderConversation:
        data = {"FriendlyName": friendly_name}
        if unique_name:
            data["UniqueName"] = unique_name
        payload = await self._request("POST", "/Conversations", data=data)
        return parse_conversation(payload)

    async def delete_conversation(self, sid: str) -> None:
        await self._request("DELETE", f"/Conversations/{sid}")

    async def list_participants(self, conversation_sid: str) -> tuple[ProviderParticipant, ...]:
        payload = await self._request(
            "GET",
            f"/Conversations/{conversation_sid}/Participants",
            params={"PageSize": 100},
        )
        return tuple(parse_participant(item) for item in payload.get("participants", []))

    async def create_participant(
        self,
        conversation_sid: str,
        *,
        identity: str | None = None,
        address: str | None = None,
        proxy_address: str | None = None,
        attributes: Mapping[str, Any] | None = None,
    ) -> ProviderParticipant:
        data: dict[str, str] = {}
        if identity:
            data["Identity"] = identity
        if address:
            data["MessagingBinding.Address"] = address
        if proxy_address:
            data["MessagingBinding.ProxyAddress"] = proxy_address
        if attributes:
            data["Attributes"] = json.dumps(dict(attributes))
        payload = await self._request("POST", f"/Conversations/{conversation_sid}/Participants", data=data)
        return parse_participant(payload)

    async def list_messages(
        self,
        conversation_sid: str,
        *,
        limit: int,
        order: MessageOrder = "desc",
        page_token: str | None = None,
    ) -> ProviderPage[ProviderMessage]:
        params: dict[str, Any] = {"PageSize": limit, "Order": order}
        if page_token:
            params["PageToken"] = page_token
        payload = await self._request("GET", f"/Conversations/{conversation_sid}/Messages", params=params)
        items = tuple(
            parse_message(item, conversation_sid=conversation_sid) for item in payload.get("messages", [])
        )
        return ProviderPage(items=items, next_page_token=_page_token(payload.get("meta")))

    async def create_message(
        self,
        conversation_sid: str,
        *,
        author: str,
        body: str | None = None,
        content_sid: str | None = None,
        content_variables: Mapping[str, str] | None = None,
        attributes: Mapping[str, Any] | None = None,
    ) -> ProviderMessage:
        data: dict[str, str] = {"Author": author}
        if body is not None:
            data["Body"] = body
        if content_sid:
            data["ContentSid"] = content_sid
        if content_variables:
            data["ContentVariables"] = json.dumps(dict(content_variables))
        if attributes:
            data["Attributes"] = json.dumps(dict(attributes))
        payload = await self._request("POST", f"/Conversations/{conversation_sid}/Messages", data=data)
        return parse_message(payload, conversation_sid=conversation_sid)

    async def probe(self) -> None:
        await self._request("GET", "/Conversations", params={"PageSize": 1})
