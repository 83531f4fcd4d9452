from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta, timezone
from itertools import count
from typing import Any, Mapping

from inbox_web.api import InboxRuntime, build_runtime
from inbox_web.config import ConfiguredNumber, Settings
from inbox_web.provider import (
    DisplayAttributes,
    MessagingBinding,
    ProviderConversation,
    ProviderMedia,
    ProviderMessage,
    ProviderPage,
    ProviderParticipant,
)
from inbox_web.remote import ProviderError, ResilientRemoteClient
from inbox_web.store import InMemoryLocalStore, LocalStore

BASE_TIME = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

TEST_NUMBERS = (
    ConfiguredNumber(number_id="1", routing_address="whatsapp:+15551110000", name="Sales Line", department="Sales"),
    ConfiguredNumber(number_id="2", routing_address="line:+15551230000", name="Support Line", department="Support"),
)


async def no_sleep(_delay: float) -> None:
    return None


def conversation(sid: str, *, friendly_name: str | None = None, minutes: int = 0, unique_name: str | None = None) -> ProviderConversation:
    stamp = BASE_TIME + timedelta(minutes=minutes)
    return ProviderConversation(
        sid=sid,
        friendly_name=friendly_name,
        unique_name=unique_name,
        chat_service_sid="IS000",
        state="active",
        date_created=BASE_TIME,
        date_updated=stamp,
    )


def customer(
    sid: str,
    *,
    address: str = "whatsapp:+201016666348",
    proxy_address: str | None = "whatsapp:+15551110000",
    identity: str | None = None,
    binding_name: str | None = None,
    display_name: str | None = None,
) -> ProviderParticipant:
    return ProviderParticipant(
        sid=sid,
        identity=identity,
        binding=MessagingBinding(address=address, proxy_address=proxy_address, name=binding_name),
        attributes=DisplayAttributes(display_name=display_name),
    )


def agent(identity: str = "agent-jane") -> ProviderParticipant:
    return ProviderParticipant(sid=f"MB-{identity}", identity=identity)


def message(
    sid: str,
    conversation_sid: str,
    *,
    author: str | None = "whatsapp:+201016666348",
    body: str | None = "hello",
    minutes: int = 0,
    media: tuple[ProviderMedia, ...] = (),
    attributes: DisplayAttributes | None = None,
) -> ProviderMessage:
    return ProviderMessage(
        sid=sid,
        conversation_sid=conversation_sid,
        author=author,
        body=body,
        date_created=BASE_TIME + timedelta(minutes=minutes),
        chat_service_sid="IS000",
        attributes=attributes or DisplayAttributes(),
        media=media,
    )


def _not_found(what: str) -> ProviderError:
    return ProviderError(404, 20404, f"The requested resource {what} was not found")


class FakeProvider:
    """In-memory provider that counts calls per operation.

    ``failures`` maps an operation name to a list of exceptions raised in order
    before the operation starts succeeding. ``broken_participants`` makes
    ``list_participants`` fail for the listed conversation ids.
    """

    def __init__(self) -> None:
        self.conversations: dict[str, ProviderConversation] = {}
        self.participants: dict[str, list[ProviderParticipant]] = {}
        self.messages: dict[str, list[ProviderMessage]] = {}
        self.calls: Counter[str] = Counter()
        self.failures: dict[str, list[BaseException]] = {}
        self.broken_participants: set[str] = set()
        self.created_participants: list[dict[str, Any]] = []
        self.sent: list[dict[str, Any]] = []
        self._sequence = count(1)

    def add(
        self,
        item: ProviderConversation,
        participants: tuple[ProviderParticipant, ...] = (),
        messages: tuple[ProviderMessage, ...] = (),
    ) -> None:
        self.conversations[item.sid] = item
        self.participants[item.sid] = list(participants)
        self.messages[item.sid] = list(messages)

    def _enter(self, operation: str) -> None:
        self.calls[operation] += 1
        queued = self.failures.get(operation)
        if queued:
            raise queued.pop(0)

    async def list_conversations(self, *, page_size: int, page_token: str | None = None) -> ProviderPage[ProviderConversation]:
        self._enter("list_conversations")
        items = list(self.conversations.values())
        offset = int(page_token) if page_token else 0
        page = tuple(items[offset : offset + page_size])
        next_token = str(offset + page_size) if offset + page_size < len(items) else None
        return ProviderPage(items=page, next_page_token=next_token)

    async def fetch_conversation(self, sid_or_unique_name: str) -> ProviderConversation:
        self._enter("fetch_conversation")
        for item in self.conversations.values():
            if sid_or_unique_name in {item.sid, item.unique_name}:
                return item
        raise _not_found(sid_or_unique_name)

    async def create_conversation(self, *, friendly_name: str, unique_name: str | None = None) -> ProviderConversation:
        self._enter("create_conversation")
        created = ProviderConversation(
            sid=f"CHnew{next(self._sequence):03d}",
            friendly_name=friendly_name,
            unique_name=unique_name,
            chat_service_sid="IS000",
            date_created=BASE_TIME,
            date_updated=BASE_TIME,
        )
        self.add(created)
        return created

    async def delete_conversation(self, sid: str) -> None:
        self._enter("delete_conversation")
        if self.conversations.pop(sid, None) is None:
            raise _not_found(sid)
        self.participants.pop(sid, None)
        self.messages.pop(sid, None)

    async def list_participants(self, conversation_sid: str) -> tuple[ProviderParticipant, ...]:
        self._enter("list_participants")
        if conversation_sid in self.broken_participants:
            raise ProviderError(500, None, "participant listing exploded")
        if conversation_sid not in self.conversations:
            raise _not_found(conversation_sid)
        return tuple(self.participants.get(conversation_sid, ()))

    async def create_participant(
        self,
        conversation_sid: str,
        *,
        identity: str | None = None,
        address: str | None = None,
        proxy_address: str | None = None,
        attributes: Mapping[str, Any] | None = None,
    ) -> ProviderParticipant:
        self._enter("create_participant")
        existing = self.participants.setdefault(conversation_sid, [])
        for participant in existing:
            if identity and participant.identity == identity:
                raise ProviderError(409, 50433, "Participant already exists")
            if address and participant.binding is not None and participant.binding.address == address:
                raise ProviderError(409, 50416, "A participant with this binding already exists")
        self.created_participants.append(
            {
                "conversation_sid": conversation_sid,
                "identity": identity,
                "address": address,
                "proxy_address": proxy_address,
                "attributes": dict(attributes or {}),
            }
        )
        created = ProviderParticipant(
            sid=f"MB{next(self._sequence):03d}",
            identity=identity,
            binding=MessagingBinding(address=address, proxy_address=proxy_address) if address else None,
            attributes=DisplayAttributes.parse(attributes),
        )
        existing.append(created)
        return created

    async def list_messages(
        self,
        conversation_sid: str,
        *,
        limit: int,
        order: str = "desc",
        page_token: str | None = None,
    ) -> ProviderPage[ProviderMessage]:
        self._enter("list_messages")
        if conversation_sid not in self.conversations:
            raise _not_found(conversation_sid)
        items = list(self.messages.get(conversation_sid, ()))
        if order == "desc":
            items.reverse()
        offset = int(page_token) if page_token else 0
        page = tuple(items[offset : offset + limit])
        next_token = str(offset + limit) if offset + limit < len(items) else None
        return ProviderPage(items=page, next_page_token=next_token)

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
        self._enter("create_message")
        sent = ProviderMessage(
            sid=f"IM{next(self._sequence):03d}",
            conversation_sid=conversation_sid,
            author=author,
            body=body,
            date_created=datetime.now(timezone.utc),
        )
        self.sent.append(
            {
                "conversation_sid": conversation_sid,
                "author": author,
                "body": body,
                "content_sid": content_sid,
                "content_variables": dict(content_variables or {}),
            }
        )
        self.messages.setdefault(conversation_sid, []).append(sent)
        return sent

    async def probe(self) -> None:
        self._enter("probe")


def make_runtime(
    provider: FakeProvider,
    *,
    store: LocalStore | None = None,
    numbers: tuple[ConfiguredNumber, ...] = TEST_NUMBERS,
) -> InboxRuntime:
    settings = Settings(
        twilio_account_sid="AC00000000000000000000000000000000",
        twilio_auth_token="test-token",
        numbers=numbers,
        startup_probe_enabled=False,
    )
    return build_runtime(
        settings,
        provider=provider,
        store=store or InMemoryLocalStore(),
        remote=ResilientRemoteClient(provider, sleep=no_sleep),
    )
