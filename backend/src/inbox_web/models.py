from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

ConversationStatus = Literal["open", "closed", "pending"]
ConversationPriority = Literal["low", "normal", "high", "urgent"]
SenderType = Literal["agent", "customer"]
DeliveryStatus = Literal["sending", "sent", "delivered", "read", "failed", "undelivered"]
MessagingMode = Literal["free_form", "template_required"]
MessageSource = Literal["local", "provider"]
SendStatus = Literal["sent", "failed", "template_required"]
ParticipantStatus = Literal["added", "already_present", "failed"]


class MediaItem(BaseModel):
    url: str
    content_type: str | None = None
    filename: str | None = None


class ConversationSummary(BaseModel):
    id: str
    title: str
    last_message_preview: str
    unread_count: int = 0
    created_at: datetime
    updated_at: datetime
    customer_id: str
    agent_id: str | None = None
    agent_name: str | None = None
    customer_phone: str | None = None
    customer_email: str | None = None
    status: ConversationStatus
    priority: ConversationPriority = "normal"
    is_pinned: bool = False
    is_new: bool = False
    is_unreplied: bool = False
    proxy_address: str | None = None
    number_id: str | None = None
    number_name: str | None = None
    resolution_failed: bool = False


class ConversationListResponse(BaseModel):
    items: list[ConversationSummary]
    next_cursor: str | None = None


class CustomerItem(BaseModel):
    customer_id: str
    name: str
    phone: str | None = None
    email: str | None = None
    avatar: str | None = None
    last_seen: datetime | None = None
    source: str


class AssignmentItem(BaseModel):
    agent_id: str
    agent_name: str


class ParticipantAgentItem(BaseModel):
    agent_id: str
    name: str
    email: str
    department: str
    skills: list[str] = Field(default_factory=list)
    max_concurrent_chats: int


class AssignmentResponse(BaseModel):
    conversation_id: str
    assignment: AssignmentItem | None = None


class MessagingModeResponse(BaseModel):
    conversation_id: str
    mode: MessagingMode
    is_outside_free_window: bool
    last_customer_message_at: datetime | None = None
    window_expires_at: datetime | None = None


class ConversationDetailResponse(BaseModel):
    conversation: ConversationSummary
    customer: CustomerItem
    assignment: AssignmentItem | None = None
    messaging_mode: MessagingModeResponse
    participant_agents: list[ParticipantAgentItem] = Field(default_factory=list)


class MessageItem(BaseModel):
    id: str
    conversation_id: str
    sender_type: SenderType
    sender_id: str
    content: str
    created_at: datetime
    delivery_status: DeliveryStatus | None = None
    provider_message_sid: str | None = None
    media: list[MediaItem] = Field(default_factory=list)
    is_placeholder: bool = False


class MessageListResponse(BaseModel):
    conversation_id: str
    messages: list[MessageItem]
    next_before: str | None = None
    source: MessageSource


class StartConversationRequest(BaseModel):
    phone: str = Field(min_length=3, max_length=32)
    number_id: str | None = None
    agent_id: str | None = None
    customer_name: str | None = Field(default=None, max_length=256)

    @field_validator("phone")
    @classmethod
    def _normalize_phone(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("phone cannot be blank")
        return normalized

    @field_validator("customer_name")
    @classmethod
    def _normalize_customer_name(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


class StartConversationResponse(BaseModel):
    conversation_id: str
    unique_name: str
    already_exists: bool
    number_id: str | None = None
    customer_participant: ParticipantStatus | None = None
    agent_participant: ParticipantStatus | None = None


class DeleteConversationResponse(BaseModel):
    conversation_id: str
    deleted_remote: bool
    deleted_local: bool


class SendTextRequest(BaseModel):
    author: str | None = None
    text: str = Field(min_length=1, max_length=4096)

    @field_validator("text")
    @classmethod
    def _normalize_text(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("text cannot be blank")
        return normalized


class SendTemplateRequest(BaseModel):
    author: str | None = None
    content_sid: str = Field(min_length=2, max_length=64)
    variables: dict[str, str] = Field(default_factory=dict)
    preview_text: str | None = Field(default=None, max_length=4096)


class SendMessageResponse(BaseModel):
    conversation_id: str
    status: SendStatus
    message: MessageItem | None = None
    error_code: str | None = None
    error_message: str | None = None


class AssignmentUpdateRequest(BaseModel):
    agent_id: str | None = None


class StatusUpdateRequest(BaseModel):
    status: ConversationStatus


class PinUpdateRequest(BaseModel):
    is_pinned: bool


class PriorityUpdateRequest(BaseModel):
    priority: ConversationPriority


class ConversationStateResponse(BaseModel):
    conversation_id: str
    agent_id: str | None = None
    status: ConversationStatus
    priority: ConversationPriority
    is_pinned: bool
    is_new: bool
    updated_at: datetime


class NumberItem(BaseModel):
    number_id: str
    routing_address: str
    name: str
    department: str


class NumberListResponse(BaseModel):
    items: list[NumberItem]


class CacheInvalidateRequest(BaseModel):
    conversation_id: str | None = None


class CacheInvalidateResponse(BaseModel):
    conversation_id: str | None = None
    removed_entries: int


class DeliveryStatusRequest(BaseModel):
    status: DeliveryStatus


class DeliveryStatusResponse(BaseModel):
    provider_message_sid: str
    status: DeliveryStatus
    updated: bool
