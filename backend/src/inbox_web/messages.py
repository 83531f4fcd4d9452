from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Mapping, Sequence

from .assignment import ConversationStateService
from .cache import SyncCache, message_page_key
from .config import DEFAULT_AGENT_PREFIXES, DEFAULT_MEDIA_PROXY_TEMPLATE
from .identity import ParticipantRole, classify_identity
from .messaging_window import MessagingModeGate
from .models import DeliveryStatus, MediaItem, MessageItem, MessageListResponse, SendMessageResponse
from .participants import ensure_identity_participant
from .provider import ProviderMessage, ProviderPage
from .remote import REMOTE_ERRORS, ProviderError, ResilientRemoteClient, error_code_for
from .store import ConversationNotFoundError, LocalStore, MessageRecord

logger = logging.getLogger(__name__)

LOCAL_CURSOR_PREFIX = "local:"
PROVIDER_PAGE_LIMIT = 100
DEFAULT_PAGE_SIZE = 50
PREVIEW_LIMIT = 50
EMPTY_PREVIEW = "No messages yet"

_PLACEHOLDERS = {
    "image": "[Image]",
    "video": "[Video]",
    "audio": "[Audio]",
    "document": "[Document]",
}


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def media_kind(value: str | None) -> str | None:
    if not value:
        return None
    lowered = value.lower()
    if lowered in _PLACEHOLDERS:
        return lowered
    major = lowered.split("/", 1)[0]
    if major in {"image", "video", "audio"}:
        return major
    if major in {"application", "text"} or lowered in {"pdf", "file"}:
        return "document"
    return None


def placeholder_text(*hints: str | None) -> str:
    for hint in hints:
        kind = media_kind(hint)
        if kind is not None:
            return _PLACEHOLDERS[kind]
    return "[Message]"


def build_media_url(
    template: str,
    *,
    media_sid: str,
    conversation_sid: str,
    chat_service_sid: str,
    message_sid: str,
) -> str:
    return template.format(
        media_sid=media_sid,
        conversation_sid=conversation_sid,
        chat_service_sid=chat_service_sid,
        message_sid=message_sid,
    )


def preview_text(content: str | None, *, has_media: bool, limit: int = PREVIEW_LIMIT) -> str:
    text = " ".join((content or "").split())
    if text:
        return text if len(text) <= limit else text[:limit] + "..."
    return "[Media]" if has_media else "[Message]"


def local_message_item(record: MessageRecord, *, media_template: str = DEFAULT_MEDIA_PROXY_TEMPLATE) -> MessageItem:
    media: list[MediaItem] = []
    for item in record.media:
        if item.media_sid and record.chat_service_sid and record.provider_message_sid:
            url = build_media_url(
                media_template,
                media_sid=item.media_sid,
                conversation_sid=record.conversation_id,
                chat_service_sid=record.chat_service_sid,
                message_sid=record.provider_message_sid,
            )
        elif item.url:
            url = item.url
        else:
            continue
        media.append(MediaItem(url=url, content_type=item.content_type, filename=item.filename))

    content = record.content
    is_placeholder = not content.strip() and not media
    if is_placeholder:
        first_type = record.media[0].content_type if record.media else None
        content = placeholder_text(record.message_type, first_type)

    delivery: DeliveryStatus | None = None
    if record.sender_type == "agent":
        delivery = record.delivery_status or "sent"
    return MessageItem(
        id=record.message_id,
        conversation_id=record.conversation_id,
        sender_type=record.sender_type,
        sender_id=record.sender_id,
        content=content,
        created_at=record.created_at,
        delivery_status=delivery,
        provider_message_sid=record.provider_message_sid,
        media=media,
        is_placeholder=is_placeholder,
    )


def is_agent_message(message: ProviderMessage, *, agent_prefixes: Sequence[str] = DEFAULT_AGENT_PREFIXES) -> bool:
    if message.attributes.role == "agent":
        return True
    return classify_identity(message.author, agent_prefixes=agent_prefixes) is ParticipantRole.AGENT


def provider_message_item(
    message: ProviderMessage,
    *,
    media_template: str = DEFAULT_MEDIA_PROXY_TEMPLATE,
    chat_service_sid: str | None = None,
    agent_prefixes: Sequence[str] = DEFAULT_AGENT_PREFIXES,
) -> MessageItem:
    attributes = message.attributes
    is_agent = is_agent_message(message, agent_prefixes=agent_prefixes)
    service_sid = message.chat_service_sid or chat_service_sid
    media: list[MediaItem] = []
    if service_sid:
        for item in message.media:
            media.append(
                MediaItem(
                    url=build_media_url(
                        media_template,
                        media_sid=item.sid,
                        conversation_sid=message.conversation_sid,
                        chat_service_sid=service_sid,
                        message_sid=message.sid,
                    ),
                    content_type=item.content_type,
                    filename=item.filename,
                )
            )
    if not media and attributes.media_url:
        media.append(
            MediaItem(
                url=attributes.media_url,
                content_type=attributes.media_content_type,
                filename=attributes.media_filename,
            )
        )

    content = message.body or ""
    is_placeholder = not content.strip() and not media
    if is_placeholder:
        first_type = message.media[0].content_type if message.media else None
        content = placeholder_text(attributes.media_type, attributes.media_content_type, first_type)

    return MessageItem(
        id=message.sid,
        conversation_id=message.conversation_sid,
        sender_type="agent" if is_agent else "customer",
        sender_id=message.author or "unknown",
        content=content,
        created_at=message.date_created or _now_utc(),
        delivery_status="sent" if is_agent else None,
        provider_message_sid=message.sid,
        media=media,
        is_placeholder=is_placeholder,
    )


class MessageSynchronizer:
    """Serves message pages from the local store, falling back to the provider.

    Webhook ingestion persists every message, so the local store answers the
    common case. Only a conversation with no stored rows at all is read from
    the provider. Cursors starting with ``local:`` page through the store; any
    other cursor is a provider page token.
    """

    def __init__(
        self,
        *,
        store: LocalStore,
        remote: ResilientRemoteClient,
        cache: SyncCache,
        media_template: str = DEFAULT_MEDIA_PROXY_TEMPLATE,
        conversation_service_sid: str | None = None,
        agent_prefixes: Sequence[str] = DEFAULT_AGENT_PREFIXES,
    ) -> None:
        self._store = store
        self._remote = remote
        self._cache = cache
        self._media_template = media_template
        self._conversation_service_sid = conversation_service_sid or None
        self._agent_prefixes = tuple(agent_prefixes)

    async def list(self, conversation_id: str, *, limit: int = DEFAULT_PAGE_SIZE, before: str | None = None) -> MessageListResponse:
        if before and not before.startswith(LOCAL_CURSOR_PREFIX):
            return await self._from_provider(conversation_id, limit=limit, page_token=before)

        local_before = before[len(LOCAL_CURSOR_PREFIX) :] if before else None
        rows = await asyncio.to_thread(
            self._store.list_recent_messages, conversation_id, limit=limit, before=local_before
        )
        if not rows and local_before is None:
            logger.debug("no stored messages for %s, reading from provider", conversation_id)
            return await self._from_provider(conversation_id, limit=limit, page_token=None)

        rows.reverse()
        next_before = f"{LOCAL_CURSOR_PREFIX}{rows[0].message_id}" if rows and len(rows) == limit else None
        return MessageListResponse(
            conversation_id=conversation_id,
            messages=[local_message_item(row, media_template=self._media_template) for row in rows],
            next_before=next_before,
            source="local",
        )

    def render_provider_message(self, message: ProviderMessage) -> MessageItem:
        return provider_message_item(
            message,
            media_template=self._media_template,
            chat_service_sid=self._conversation_service_sid,
            agent_prefixes=self._agent_prefixes,
        )

    async def last_customer_message_at(self, conversation_id: str) -> datetime | None:
        """Latest customer message on the provider's first (cached) page, or None."""
        try:
            page = await self._provider_page(conversation_id, limit=DEFAULT_PAGE_SIZE, page_token=None)
        except (ConversationNotFoundError, *REMOTE_ERRORS) as exc:
            logger.warning("could not read provider history for %s: %s", conversation_id, exc)
            return None
        stamps = [
            item.date_created
            for item in page.items
            if item.date_created is not None and not is_agent_message(item, agent_prefixes=self._agent_prefixes)
        ]
        return max(stamps, default=None)

    async def _from_provider(self, conversation_id: str, *, limit: int, page_token: str | None) -> MessageListResponse:
        page = await self._provider_page(conversation_id, limit=limit, page_token=page_token)
        return MessageListResponse(
            conversation_id=conversation_id,
            messages=[self.render_provider_message(item) for item in reversed(page.items)],
            next_before=page.next_page_token,
            source="provider",
        )

    async def _provider_page(
        self, conversation_id: str, *, limit: int, page_token: str | None
    ) -> ProviderPage[ProviderMessage]:
        page_limit = max(1, min(limit, PROVIDER_PAGE_LIMIT))

        async def fetch() -> ProviderPage[ProviderMessage]:
            return await self._remote.call(
                lambda provider: provider.list_messages(
                    conversation_id, limit=page_limit, order="desc", page_token=page_token
                ),
                description=f"list messages for {conversation_id}",
            )

        try:
            if page_token is None:
                return await self._cache.get_or_fetch(
                    self._cache.messages, message_page_key(conversation_id, page_limit), fetch
                )
            return await fetch()
        except ProviderError as exc:
            if exc.is_not_found:
                raise ConversationNotFoundError(conversation_id) from exc
            raise


class MessageSender:
    """Agent send path: gate, optimistic local record, provider call, confirm."""

    def __init__(
        self,
        *,
        store: LocalStore,
        remote: ResilientRemoteClient,
        cache: SyncCache,
        gate: MessagingModeGate,
        state: ConversationStateService,
        media_template: str = DEFAULT_MEDIA_PROXY_TEMPLATE,
    ) -> None:
        self._store = store
        self._remote = remote
        self._cache = cache
        self._gate = gate
        self._state = state
        self._media_template = media_template

    async def send_text(self, conversation_id: str, *, author: str, text: str) -> SendMessageResponse:
        decision = await self._gate.evaluate(conversation_id)
        if decision.is_outside_free_window:
            logger.info("free-form send to %s blocked; a template is required", conversation_id)
            return SendMessageResponse(
                conversation_id=conversation_id,
                status="template_required",
                error_code="outside_free_window",
                error_message="The customer has not written in the last 24 hours; send an approved template.",
            )
        return await self._deliver(conversation_id, author=author, content=text, message_type="text", body=text)

    async def send_template(
        self,
        conversation_id: str,
        *,
        author: str,
        content_sid: str,
        variables: Mapping[str, str] | None = None,
        preview: str | None = None,
    ) -> SendMessageResponse:
        return await self._deliver(
            conversation_id,
            author=author,
            content=preview or f"[Template {content_sid}]",
            message_type="template",
            content_sid=content_sid,
            content_variables=dict(variables or {}),
        )

    def update_delivery_status(self, provider_message_sid: str, status: DeliveryStatus) -> bool:
        return self._store.update_delivery_by_provider_sid(provider_message_sid, status)

    async def _deliver(
        self,
        conversation_id: str,
        *,
        author: str,
        content: str,
        message_type: str,
        body: str | None = None,
        content_sid: str | None = None,
        content_variables: dict[str, str] | None = None,
    ) -> SendMessageResponse:
        pending = self._store.create_message(
            conversation_id=conversation_id,
            sender_id=author,
            sender_type="agent",
            content=content,
            message_type=message_type,
            delivery_status="sending",
        )

        try:
            participants = await self._cache.get_or_fetch(
                self._cache.participants,
                conversation_id,
                lambda: self._remote.call(
                    lambda provider: provider.list_participants(conversation_id),
                    description=f"list participants for {conversation_id}",
                ),
            )
        except REMOTE_ERRORS as exc:
            logger.warning("could not list participants for %s before sending: %s", conversation_id, exc)
            participants = None
        joined = await ensure_identity_participant(self._remote, conversation_id, author, participants=participants)
        if not joined.ok:
            logger.warning("sending to %s as %s without a confirmed participant", conversation_id, author)

        try:
            sent = await self._remote.call(
                lambda provider: provider.create_message(
                    conversation_id,
                    author=author,
                    body=body,
                    content_sid=content_sid,
                    content_variables=content_variables,
                ),
                description=f"send message to {conversation_id}",
            )
        except REMOTE_ERRORS as exc:
            failed = self._store.update_message_delivery(pending.message_id, delivery_status="failed")
            self._cache.invalidate(conversation_id)
            logger.warning("send to %s failed: %s", conversation_id, exc)
            return SendMessageResponse(
                conversation_id=conversation_id,
                status="failed",
                message=local_message_item(failed, media_template=self._media_template),
                error_code=error_code_for(exc),
                error_message=exc.message if isinstance(exc, ProviderError) else str(exc),
            )

        confirmed = self._store.update_message_delivery(
            pending.message_id,
            delivery_status="sent",
            provider_message_sid=sent.sid,
        )
        self._state.mark_replied(conversation_id)
        return SendMessageResponse(
            conversation_id=conversation_id,
            status="sent",
            message=local_message_item(confirmed, media_template=self._media_template),
        )
