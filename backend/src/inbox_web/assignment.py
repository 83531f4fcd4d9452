from __future__ import annotations

import logging
from dataclasses import dataclass

from .cache import SyncCache
from .models import (
    AssignmentItem,
    ConversationPriority,
    ConversationStateResponse,
    ConversationStatus,
)
from .store import ConversationRecord, LocalStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConversationState:
    assignment: AssignmentItem | None
    status: ConversationStatus
    priority: ConversationPriority
    is_pinned: bool
    is_new: bool


class AssignmentResolver:
    """Reads assignment, status, pin and new-ness from the local store only.

    The provider has no notion of an unassigned conversation, so its
    participant list is never used to guess an owner.
    """

    def __init__(self, *, store: LocalStore) -> None:
        self._store = store

    def resolve_assignment(self, conversation_id: str) -> AssignmentItem | None:
        record = self._store.get_conversation(conversation_id)
        return self._assignment_for(record)

    def resolve_status(self, conversation_id: str) -> ConversationStatus:
        record = self._store.get_conversation(conversation_id)
        return record.status if record is not None else "open"

    def resolve_pinned(self, conversation_id: str) -> bool:
        record = self._store.get_conversation(conversation_id)
        return bool(record and record.is_pinned)

    def resolve_new(self, conversation_id: str) -> bool:
        record = self._store.get_conversation(conversation_id)
        return self._is_new(record)

    def resolve(self, conversation_id: str) -> ConversationState:
        record = self._store.get_conversation(conversation_id)
        return ConversationState(
            assignment=self._assignment_for(record),
            status=record.status if record is not None else "open",
            priority=record.priority if record is not None else "normal",
            is_pinned=bool(record and record.is_pinned),
            is_new=self._is_new(record),
        )

    def _assignment_for(self, record: ConversationRecord | None) -> AssignmentItem | None:
        if record is None or not record.agent_id:
            return None
        agent = self._store.get_agent(record.agent_id)
        return AssignmentItem(agent_id=record.agent_id, agent_name=agent.username if agent else record.agent_id)

    def _is_new(self, record: ConversationRecord | None) -> bool:
        if record is None or not record.is_new or record.status != "open":
            return False
        return not self._store.has_agent_replies(record.conversation_id)


class ConversationStateService:
    """Local-store mutations; each drops the conversation's cached reads."""

    def __init__(self, *, store: LocalStore, cache: SyncCache) -> None:
        self._store = store
        self._cache = cache

    def assign(self, conversation_id: str, agent_id: str | None) -> ConversationStateResponse:
        record = self._store.update_conversation(conversation_id, agent_id=agent_id or None)
        logger.info("conversation %s assigned to %s", conversation_id, agent_id or "nobody")
        return self._after_write(record)

    def set_status(self, conversation_id: str, status: ConversationStatus) -> ConversationStateResponse:
        return self._after_write(self._store.update_conversation(conversation_id, status=status))

    def set_pinned(self, conversation_id: str, is_pinned: bool) -> ConversationStateResponse:
        return self._after_write(self._store.update_conversation(conversation_id, is_pinned=is_pinned))

    def set_priority(self, conversation_id: str, priority: ConversationPriority) -> ConversationStateResponse:
        return self._after_write(self._store.update_conversation(conversation_id, priority=priority))

    def mark_replied(self, conversation_id: str) -> ConversationStateResponse:
        return self._after_write(self._store.update_conversation(conversation_id, is_new=False))

    def _after_write(self, record: ConversationRecord) -> ConversationStateResponse:
        self._cache.invalidate(record.conversation_id)
        return ConversationStateResponse(
            conversation_id=record.conversation_id,
            agent_id=record.agent_id,
            status=record.status,
            priority=record.priority,
            is_pinned=record.is_pinned,
            is_new=record.is_new,
            updated_at=record.updated_at,
        )
