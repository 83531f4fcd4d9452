from __future__ import annotations

from inbox_web.assignment import AssignmentResolver, ConversationStateService
from inbox_web.cache import SyncCache
from inbox_web.store import InMemoryLocalStore


def _setup() -> tuple[InMemoryLocalStore, AssignmentResolver, ConversationStateService, SyncCache]:
    store = InMemoryLocalStore()
    cache = SyncCache()
    return store, AssignmentResolver(store=store), ConversationStateService(store=store, cache=cache), cache


def test_local_assignment_is_authoritative() -> None:
    store, resolver, state, _ = _setup()
    store.create_agent(agent_id="A1", username="Jane Doe")

    state.assign("C1", "A1")

    assignment = resolver.resolve_assignment("C1")
    assert assignment is not None
    assert assignment.agent_id == "A1"
    assert assignment.agent_name == "Jane Doe"


def test_unknown_agent_falls_back_to_id_and_missing_record_is_unassigned() -> None:
    store, resolver, state, _ = _setup()

    state.assign("C1", "agent-ghost")

    assert resolver.resolve_assignment("C1").agent_name == "agent-ghost"
    assert resolver.resolve_assignment("C2") is None
    state.assign("C1", None)
    assert resolver.resolve_assignment("C1") is None


def test_defaults_without_a_local_record() -> None:
    _, resolver, _, _ = _setup()

    resolved = resolver.resolve("C404")

    assert resolved.status == "open"
    assert resolved.priority == "normal"
    assert resolved.is_pinned is False
    assert resolved.is_new is False
    assert resolver.resolve_status("C404") == "open"
    assert resolver.resolve_pinned("C404") is False


def test_new_flag_requires_open_status_and_no_agent_reply() -> None:
    store, resolver, state, _ = _setup()
    store.update_conversation("C1", is_new=True)
    assert resolver.resolve_new("C1") is True

    state.set_status("C1", "pending")
    assert resolver.resolve_new("C1") is False

    state.set_status("C1", "open")
    store.create_message(conversation_id="C1", sender_id="A1", sender_type="agent", content="on it")
    assert resolver.resolve_new("C1") is False


def test_mark_replied_clears_new_flag() -> None:
    store, resolver, state, _ = _setup()
    store.update_conversation("C1", is_new=True)

    response = state.mark_replied("C1")

    assert response.is_new is False
    assert resolver.resolve_new("C1") is False


def test_mutations_invalidate_cached_reads() -> None:
    store, _, state, cache = _setup()
    cache.conversations.put("admin_001-1-C1-1", "detail")
    cache.conversations.put("admin_001-20-all-1", "list", tags=["C1", "C2"])
    cache.participants.put("C2", "participants")

    response = state.set_pinned("C1", True)

    assert response.is_pinned is True
    assert len(cache.conversations) == 0
    assert "C2" in cache.participants

    state.set_priority("C1", "urgent")
    assert store.get_conversation("C1").priority == "urgent"
