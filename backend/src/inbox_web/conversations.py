from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from .assignment import AssignmentResolver
from .cache import SyncCache, conversation_list_key, message_page_key
from .identity import UNKNOWN_CUSTOMER, IdentityResolver, ParticipantRole, format_phone_number, normalize_phone_number
from .messages import EMPTY_PREVIEW, MessageSynchronizer, preview_text
from .messaging_window import MessagingModeGate
from .models import (
    ConversationDetailResponse,
    ConversationListResponse,
    ConversationSummary,
    CustomerItem,
    DeleteConversationResponse,
    ParticipantAgentItem,
    StartConversationResponse,
)
from .numbers import NumberRoutingResolver
from .participants import add_participant
from .provider import ProviderConversation, ProviderMessage, ProviderPage, ProviderParticipant
from .remote import REMOTE_ERRORS, ProviderError, ResilientRemoteClient
from .store import ConversationNotFoundError, LocalStore

logger = logging.getLogger(__name__)

_STATUS_RANK = {"open": 0, "pending": 1, "closed": 2}


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class LastMessage:
    preview: str
    created_at: datetime | None
    from_customer: bool


def sort_key(item: ConversationSummary) -> tuple[int, int, int, float, str]:
    if item.is_pinned:
        return (0, 0, 0 if item.is_new else 1, -item.updated_at.timestamp(), item.id)
    return (
        1,
        _STATUS_RANK.get(item.status, len(_STATUS_RANK)),
        0 if item.is_new else 1,
        -item.updated_at.timestamp(),
        item.id,
    )


def sort_conversations(items: list[ConversationSummary]) -> list[ConversationSummary]:
    return sorted(items, key=sort_key)


class ConversationListSynchronizer:
    """Builds the dashboard's conversation summaries from provider and local state.

    Every conversation on a provider page is resolved concurrently. A failure
    while resolving one conversation degrades that item to a minimal summary
    instead of failing the page. Resolved pages are cached per
    (agent, limit, conversation, message limit, cursor) key.
    """

    def __init__(
        self,
        *,
        remote: ResilientRemoteClient,
        cache: SyncCache,
        store: LocalStore,
        identity: IdentityResolver,
        numbers: NumberRoutingResolver,
        assignments: AssignmentResolver,
        gate: MessagingModeGate,
        messages: MessageSynchronizer,
    ) -> None:
        self._remote = remote
        self._cache = cache
        self._store = store
        self._identity = identity
        self._numbers = numbers
        self._assignments = assignments
        self._gate = gate
        self._messages = messages

    async def list(
        self,
        *,
        agent_id: str,
        limit: int = 20,
        after: str | None = None,
        number_id: str | None = None,
        message_limit: int = 1,
    ) -> ConversationListResponse:
        key = conversation_list_key(
            agent_id=agent_id,
            limit=limit,
            conversation_id=None,
            message_limit=message_limit,
            after=after,
        )

        async def build() -> ConversationListResponse:
            page: ProviderPage[ProviderConversation] = await self._remote.call(
                lambda provider: provider.list_conversations(page_size=limit, page_token=after),
                description="list conversations",
            )
            items = await self._summarize_all(page.items, message_limit=message_limit)
            return ConversationListResponse(items=sort_conversations(items), next_cursor=page.next_page_token)

        response = await self._cache.get_or_fetch(
            self._cache.conversations,
            key,
            build,
            tags=lambda value: [item.id for item in value.items],
        )
        if number_id is None:
            return response
        return ConversationListResponse(
            items=[item for item in response.items if item.number_id == number_id],
            next_cursor=response.next_cursor,
        )

    async def get_conversation(
        self,
        conversation_id: str,
        *,
        agent_id: str,
        message_limit: int = 1,
    ) -> ConversationDetailResponse:
        key = conversation_list_key(
            agent_id=agent_id,
            limit=1,
            conversation_id=conversation_id,
            message_limit=message_limit,
        )

        async def build() -> ConversationSummary:
            try:
                conversation = await self._remote.call(
                    lambda provider: provider.fetch_conversation(conversation_id),
                    description=f"fetch conversation {conversation_id}",
                )
            except ProviderError as exc:
                if exc.is_not_found:
                    raise ConversationNotFoundError(conversation_id) from exc
                raise
            return await self._summarize(conversation, message_limit=message_limit)

        summary = await self._cache.get_or_fetch(
            self._cache.conversations,
            key,
            build,
            tags=lambda value: [value.id],
        )
        participants = await self._participants(conversation_id)
        customer = self._identity.resolve_customer(self._identity.find_customer(participants))
        agents = [
            self._identity.resolve_agent(participant.identity)
            for participant in participants
            if participant.identity and self._identity.classify(participant) is ParticipantRole.AGENT
        ]
        return ConversationDetailResponse(
            conversation=summary,
            customer=CustomerItem(
                customer_id=customer.customer_id,
                name=customer.name,
                phone=customer.phone,
                email=customer.email,
                avatar=customer.avatar,
                last_seen=customer.last_seen,
                source=customer.source,
            ),
            assignment=self._assignments.resolve_assignment(conversation_id),
            messaging_mode=await self._gate.evaluate(conversation_id),
            participant_agents=[
                ParticipantAgentItem(
                    agent_id=item.agent_id,
                    name=item.name,
                    email=item.email,
                    department=item.department,
                    skills=list(item.skills),
                    max_concurrent_chats=item.max_concurrent_chats,
                )
                for item in agents
            ],
        )

    async def start_conversation(
        self,
        *,
        phone: str,
        agent_id: str,
        number_id: str | None = None,
        customer_name: str | None = None,
    ) -> StartConversationResponse:
        normalized = normalize_phone_number(phone)
        if normalized is None:
            raise ValueError(f"invalid phone number: {phone}")
        number = self._numbers.get(number_id) if number_id else self._numbers.default()
        if number is None:
            raise ValueError(f"unknown number_id: {number_id}" if number_id else "no WhatsApp numbers are configured")
        unique_name = f"whatsapp_{normalized[1:]}"

        try:
            existing = await self._remote.call(
                lambda provider: provider.fetch_conversation(unique_name),
                description=f"fetch conversation {unique_name}",
            )
        except ProviderError as exc:
            if not exc.is_not_found:
                raise
        else:
            logger.info("conversation for %s already exists as %s", unique_name, existing.sid)
            return StartConversationResponse(
                conversation_id=existing.sid,
                unique_name=unique_name,
                already_exists=True,
                number_id=number.number_id,
            )

        created = await self._remote.call(
            lambda provider: provider.create_conversation(
                friendly_name=customer_name or f"WhatsApp {format_phone_number(normalized)}",
                unique_name=unique_name,
            ),
            description=f"create conversation {unique_name}",
        )
        attributes = {"role": "customer"}
        if customer_name:
            attributes["display_name"] = customer_name
        customer = await add_participant(
            self._remote,
            created.sid,
            address=f"whatsapp:{normalized}",
            proxy_address=number.routing_address,
            attributes=attributes,
        )
        agent = await add_participant(self._remote, created.sid, identity=agent_id, attributes={"role": "agent"})

        self._store.update_conversation(created.sid, status="open", is_new=True, agent_id=agent_id)
        self._cache.invalidate()
        logger.info("started conversation %s with %s on %s", created.sid, normalized, number.routing_address)
        return StartConversationResponse(
            conversation_id=created.sid,
            unique_name=unique_name,
            already_exists=False,
            number_id=number.number_id,
            customer_participant=customer.status,
            agent_participant=agent.status,
        )

    async def delete_conversation(self, conversation_id: str) -> DeleteConversationResponse:
        deleted_remote = True
        try:
            await self._remote.call(
                lambda provider: provider.delete_conversation(conversation_id),
                description=f"delete conversation {conversation_id}",
            )
        except ProviderError as exc:
            if not exc.is_not_found:
                raise
            deleted_remote = False
        deleted_local = self._store.delete_conversation(conversation_id)
        self._cache.invalidate()
        if not deleted_remote and not deleted_local:
            raise ConversationNotFoundError(conversation_id)
        return DeleteConversationResponse(
            conversation_id=conversation_id,
            deleted_remote=deleted_remote,
            deleted_local=deleted_local,
        )

    def invalidate_cache(self, conversation_id: str | None = None) -> int:
        return self._cache.invalidate(conversation_id)

    async def _summarize_all(
        self,
        conversations: tuple[ProviderConversation, ...],
        *,
        message_limit: int,
    ) -> list[ConversationSummary]:
        results = await asyncio.gather(
            *(self._summarize(conversation, message_limit=message_limit) for conversation in conversations),
            return_exceptions=True,
        )
        items: list[ConversationSummary] = []
        for conversation, result in zip(conversations, results):
            if isinstance(result, ConversationSummary):
                items.append(result)
                continue
            if not isinstance(result, Exception):
                raise result
            logger.warning("could not resolve conversation %s, using minimal summary: %s", conversation.sid, result)
            items.append(self._minimal_summary(conversation))
        return items

    async def _participants(self, conversation_id: str) -> tuple[ProviderParticipant, ...]:
        return await self._cache.get_or_fetch(
            self._cache.participants,
            conversation_id,
            lambda: self._remote.call(
                lambda provider: provider.list_participants(conversation_id),
                description=f"list participants for {conversation_id}",
            ),
        )

    async def _summarize(self, conversation: ProviderConversation, *, message_limit: int) -> ConversationSummary:
        participants = await self._participants(conversation.sid)
        customer_participant = self._identity.find_customer(participants)
        customer = await asyncio.to_thread(self._identity.resolve_customer, customer_participant)
        proxy_address, number = self._numbers.resolve_for_participants(participants, customer_participant)
        state = await asyncio.to_thread(self._assignments.resolve, conversation.sid)
        last = await self._last_message(conversation.sid, message_limit=message_limit)

        updated_at = last.created_at or conversation.date_updated or conversation.date_created or _now_utc()
        title = customer.name
        if title == UNKNOWN_CUSTOMER and conversation.friendly_name:
            title = conversation.friendly_name
        return ConversationSummary(
            id=conversation.sid,
            title=title,
            last_message_preview=last.preview,
            created_at=conversation.date_created or updated_at,
            updated_at=updated_at,
            customer_id=customer.customer_id,
            agent_id=state.assignment.agent_id if state.assignment else None,
            agent_name=state.assignment.agent_name if state.assignment else None,
            customer_phone=customer.phone,
            customer_email=customer.email,
            status=state.status,
            priority=state.priority,
            is_pinned=state.is_pinned,
            is_new=state.is_new,
            is_unreplied=last.from_customer and state.status == "open",
            proxy_address=proxy_address,
            number_id=number.number_id if number else None,
            number_name=number.name if number else None,
        )

    async def _last_message(self, conversation_id: str, *, message_limit: int) -> LastMessage:
        record = await asyncio.to_thread(self._store.last_message, conversation_id)
        if record is not None:
            return LastMessage(
                preview=preview_text(record.content, has_media=bool(record.media)),
                created_at=record.created_at,
                from_customer=record.sender_type == "customer",
            )

        page_limit = max(1, message_limit)
        try:
            page: ProviderPage[ProviderMessage] = await self._cache.get_or_fetch(
                self._cache.messages,
                message_page_key(conversation_id, page_limit),
                lambda: self._remote.call(
                    lambda provider: provider.list_messages(conversation_id, limit=page_limit, order="desc"),
                    description=f"latest message for {conversation_id}",
                ),
            )
        except REMOTE_ERRORS as exc:
            logger.warning("could not fetch latest message for %s: %s", conversation_id, exc)
            return LastMessage(preview=EMPTY_PREVIEW, created_at=None, from_customer=False)
        if not page.items:
            return LastMessage(preview=EMPTY_PREVIEW, created_at=None, from_customer=False)

        latest = page.items[0]
        item = self._messages.render_provider_message(latest)
        return LastMessage(
            preview=preview_text(latest.body, has_media=bool(item.media) or bool(latest.media)),
            created_at=latest.date_created,
            from_customer=item.sender_type == "customer",
        )

    def _minimal_summary(self, conversation: ProviderConversation) -> ConversationSummary:
        try:
            record = self._store.get_conversation(conversation.sid)
        except Exception as exc:
            logger.warning("local store lookup failed for %s: %s", conversation.sid, exc)
            record = None
        created_at = conversation.date_created or conversation.date_updated or _now_utc()
        return ConversationSummary(
            id=conversation.sid,
            title=conversation.friendly_name or conversation.sid,
            last_message_preview=EMPTY_PREVIEW,
            created_at=created_at,
            updated_at=conversation.date_updated or created_at,
            customer_id="unknown",
            agent_id=record.agent_id if record else None,
            status=record.status if record else "open",
            priority=record.priority if record else "normal",
            is_pinned=record.is_pinned if record else False,
            resolution_failed=True,
        )
