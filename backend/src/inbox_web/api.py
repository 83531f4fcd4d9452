from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import NoReturn

from fastapi import APIRouter, HTTPException, Query, Response, status

from .assignment import AssignmentResolver, ConversationStateService
from .cache import SyncCache
from .config import Settings, get_settings
from .conversations import ConversationListSynchronizer
from .identity import IdentityResolver
from .messages import MessageSender, MessageSynchronizer
from .messaging_window import MessagingModeGate
from .models import (
    AssignmentResponse,
    AssignmentUpdateRequest,
    CacheInvalidateRequest,
    CacheInvalidateResponse,
    ConversationDetailResponse,
    ConversationListResponse,
    ConversationStateResponse,
    DeleteConversationResponse,
    DeliveryStatusRequest,
    DeliveryStatusResponse,
    MessageListResponse,
    MessagingModeResponse,
    NumberItem,
    NumberListResponse,
    PinUpdateRequest,
    PriorityUpdateRequest,
    SendMessageResponse,
    SendTemplateRequest,
    SendTextRequest,
    StartConversationRequest,
    StartConversationResponse,
    StatusUpdateRequest,
)
from .numbers import NumberRoutingResolver
from .provider import HttpConversationsProvider, ProviderClient
from .remote import REMOTE_ERRORS, ProviderError, ResilientRemoteClient, RetryPolicy
from .store import ConversationNotFoundError, LocalStore, create_local_store

logger = logging.getLogger(__name__)


@dataclass
class InboxRuntime:
    settings: Settings
    provider: ProviderClient
    remote: ResilientRemoteClient
    cache: SyncCache
    store: LocalStore
    numbers: NumberRoutingResolver
    identity: IdentityResolver
    assignments: AssignmentResolver
    state: ConversationStateService
    gate: MessagingModeGate
    messages: MessageSynchronizer
    sender: MessageSender
    conversations: ConversationListSynchronizer


def build_runtime(
    settings: Settings,
    *,
    provider: ProviderClient | None = None,
    store: LocalStore | None = None,
    remote: ResilientRemoteClient | None = None,
) -> InboxRuntime:
    provider = provider or HttpConversationsProvider(
        account_sid=settings.twilio_account_sid,
        auth_token=settings.twilio_auth_token,
        base_url=settings.provider_base_url,
        timeout_seconds=settings.provider_timeout_seconds,
    )
    remote = remote or ResilientRemoteClient(
        provider,
        policy=RetryPolicy(
            max_retries=settings.provider_max_retries,
            base_delay_seconds=settings.provider_backoff_base_seconds,
        ),
    )
    store = store or create_local_store(backend=settings.local_store_backend, database_url=settings.database_url)
    cache = SyncCache(
        conversation_ttl_seconds=settings.conversation_cache_ttl_seconds,
        participant_ttl_seconds=settings.participant_cache_ttl_seconds,
        message_ttl_seconds=settings.message_cache_ttl_seconds,
    )
    cache.init()
    numbers = NumberRoutingResolver.from_settings(settings)
    identity = IdentityResolver(contacts=store, agent_prefixes=settings.agent_identity_prefixes)
    assignments = AssignmentResolver(store=store)
    state = ConversationStateService(store=store, cache=cache)
    messages = MessageSynchronizer(
        store=store,
        remote=remote,
        cache=cache,
        media_template=settings.media_proxy_template,
        conversation_service_sid=settings.conversation_service_sid,
        agent_prefixes=settings.agent_identity_prefixes,
    )
    gate = MessagingModeGate(
        store=store,
        window_hours=settings.free_window_hours,
        history=messages.last_customer_message_at,
    )
    sender = MessageSender(
        store=store,
        remote=remote,
        cache=cache,
        gate=gate,
        state=state,
        media_template=settings.media_proxy_template,
    )
    conversations = ConversationListSynchronizer(
        remote=remote,
        cache=cache,
        store=store,
        identity=identity,
        numbers=numbers,
        assignments=assignments,
        gate=gate,
        messages=messages,
    )
    return InboxRuntime(
        settings=settings,
        provider=provider,
        remote=remote,
        cache=cache,
        store=store,
        numbers=numbers,
        identity=identity,
        assignments=assignments,
        state=state,
        gate=gate,
        messages=messages,
        sender=sender,
        conversations=conversations,
    )


_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/inbox", tags=["inbox"])
runtime: InboxRuntime = build_runtime(_settings)


def reset_runtime_state_for_tests() -> None:
    runtime.store.reset()
    runtime.cache.clear()
    runtime.identity.clear_agent_cache()


def _raise_remote_failure(exc: Exception) -> NoReturn:
    if isinstance(exc, ProviderError):
        raise HTTPException(status_code=502, detail=f"messaging provider rejected the request: {exc.message}") from exc
    raise HTTPException(status_code=503, detail="messaging provider is unreachable") from exc


def _agent_or_default(agent_id: str | None) -> str:
    return agent_id or runtime.settings.default_agent_id


@router.get("/conversations", response_model=ConversationListResponse)
async def list_conversations(
    agent_id: str | None = None,
    limit: int = Query(default=20, ge=1, le=100),
    after: str | None = None,
    number_id: str | None = None,
) -> ConversationListResponse:
    try:
        return await runtime.conversations.list(
            agent_id=_agent_or_default(agent_id),
            limit=limit,
            after=after,
            number_id=number_id,
        )
    except REMOTE_ERRORS as exc:
        _raise_remote_failure(exc)


@router.post("/conversations", response_model=StartConversationResponse, status_code=status.HTTP_201_CREATED)
async def start_conversation(payload: StartConversationRequest, response: Response) -> StartConversationResponse:
    try:
        result = await runtime.conversations.start_conversation(
            phone=payload.phone,
            agent_id=_agent_or_default(payload.agent_id),
            number_id=payload.number_id,
            customer_name=payload.customer_name,
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except REMOTE_ERRORS as exc:
        _raise_remote_failure(exc)
    if result.already_exists:
        response.status_code = status.HTTP_200_OK
    return result


@router.get("/conversations/{conversation_id}", response_model=ConversationDetailResponse)
async def get_conversation(
    conversation_id: str,
    agent_id: str | None = None,
    message_limit: int = Query(default=1, ge=1, le=100),
) -> ConversationDetailResponse:
    try:
        return await runtime.conversations.get_conversation(
            conversation_id,
            agent_id=_agent_or_default(agent_id),
            message_limit=message_limit,
        )
    except ConversationNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"conversation not found: {conversation_id}") from exc
    except REMOTE_ERRORS as exc:
        _raise_remote_failure(exc)


@router.delete("/conversations/{conversation_id}", response_model=DeleteConversationResponse)
async def delete_conversation(conversation_id: str) -> DeleteConversationResponse:
    try:
        return await runtime.conversations.delete_conversation(conversation_id)
    except ConversationNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"conversation not found: {conversation_id}") from exc
    except REMOTE_ERRORS as exc:
        _raise_remote_failure(exc)


@router.get("/conversations/{conversation_id}/messages", response_model=MessageListResponse)
async def list_messages(
    conversation_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    before: str | None = None,
) -> MessageListResponse:
    try:
        return await runtime.messages.list(conversation_id, limit=limit, before=before)
    except ConversationNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"conversation not found: {conversation_id}") from exc
    except REMOTE_ERRORS as exc:
        _raise_remote_failure(exc)


@router.post("/conversations/{conversation_id}/messages", response_model=SendMessageResponse)
async def send_text(conversation_id: str, payload: SendTextRequest, response: Response) -> SendMessageResponse:
    result = await runtime.sender.send_text(
        conversation_id,
        author=_agent_or_default(payload.author),
        text=payload.text,
    )
    if result.status == "template_required":
        response.status_code = status.HTTP_409_CONFLICT
    elif result.status == "failed":
        response.status_code = status.HTTP_502_BAD_GATEWAY
    else:
        response.status_code = status.HTTP_201_CREATED
    return result


@router.post("/conversations/{conversation_id}/templates", response_model=SendMessageResponse)
async def send_template(conversation_id: str, payload: SendTemplateRequest, response: Response) -> SendMessageResponse:
    result = await runtime.sender.send_template(
        conversation_id,
        author=_agent_or_default(payload.author),
        content_sid=payload.content_sid,
        variables=payload.variables,
        preview=payload.preview_text,
    )
    response.status_code = status.HTTP_201_CREATED if result.status == "sent" else status.HTTP_502_BAD_GATEWAY
    return result


@router.get("/conversations/{conversation_id}/messaging-mode", response_model=MessagingModeResponse)
async def get_messaging_mode(conversation_id: str) -> MessagingModeResponse:
    return await runtime.gate.evaluate(conversation_id)


@router.get("/conversations/{conversation_id}/assignment", response_model=AssignmentResponse)
def get_assignment(conversation_id: str) -> AssignmentResponse:
    return AssignmentResponse(
        conversation_id=conversation_id,
        assignment=runtime.assignments.resolve_assignment(conversation_id),
    )


@router.put("/conversations/{conversation_id}/assignment", response_model=ConversationStateResponse)
def update_assignment(conversation_id: str, payload: AssignmentUpdateRequest) -> ConversationStateResponse:
    return runtime.state.assign(conversation_id, payload.agent_id)


@router.put("/conversations/{conversation_id}/status", response_model=ConversationStateResponse)
def update_status(conversation_id: str, payload: StatusUpdateRequest) -> ConversationStateResponse:
    return runtime.state.set_status(conversation_id, payload.status)


@router.put("/conversations/{conversation_id}/pin", response_model=ConversationStateResponse)
def update_pin(conversation_id: str, payload: PinUpdateRequest) -> ConversationStateResponse:
    return runtime.state.set_pinned(conversation_id, payload.is_pinned)


@router.put("/conversations/{conversation_id}/priority", response_model=ConversationStateResponse)
def update_priority(conversation_id: str, payload: PriorityUpdateRequest) -> ConversationStateResponse:
    return runtime.state.set_priority(conversation_id, payload.priority)


@router.get("/numbers", response_model=NumberListResponse)
def list_numbers() -> NumberListResponse:
    return NumberListResponse(
        items=[
            NumberItem(
                number_id=number.number_id,
                routing_address=number.routing_address,
                name=number.name,
                department=number.department,
            )
            for number in runtime.numbers.numbers
        ]
    )


@router.post("/cache/invalidate", response_model=CacheInvalidateResponse)
def invalidate_cache(payload: CacheInvalidateRequest | None = None) -> CacheInvalidateResponse:
    conversation_id = payload.conversation_id if payload else None
    removed = runtime.conversations.invalidate_cache(conversation_id)
    return CacheInvalidateResponse(conversation_id=conversation_id, removed_entries=removed)


@router.post("/messages/{provider_message_sid}/delivery", response_model=DeliveryStatusResponse)
def update_delivery_status(provider_message_sid: str, payload: DeliveryStatusRequest) -> DeliveryStatusResponse:
    updated = runtime.sender.update_delivery_status(provider_message_sid, payload.status)
    if not updated:
        logger.info("delivery status for unknown message %s ignored", provider_message_sid)
    return DeliveryStatusResponse(provider_message_sid=provider_message_sid, status=payload.status, updated=updated)
