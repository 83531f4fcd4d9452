from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

from inbox_web.messaging_window import MessagingModeGate, is_outside_free_window
from inbox_web.store import InMemoryLocalStore

from fakes import BASE_TIME


def test_window_boundaries() -> None:
    now = BASE_TIME
    assert is_outside_free_window(now - timedelta(hours=23, minutes=59), now=now) is False
    assert is_outside_free_window(now - timedelta(hours=24, minutes=1), now=now) is True
    assert is_outside_free_window(now - timedelta(hours=24), now=now) is False
    assert is_outside_free_window(None, now=now) is True


def test_gate_uses_latest_customer_message_only() -> None:
    store = InMemoryLocalStore()
    store.create_message(
        conversation_id="CH1",
        sender_id="whatsapp:+201016666348",
        sender_type="customer",
        content="hi",
        created_at=BASE_TIME - timedelta(hours=30),
    )
    store.create_message(
        conversation_id="CH1",
        sender_id="agent-jane",
        sender_type="agent",
        content="hello again",
        created_at=BASE_TIME - timedelta(hours=1),
    )
    gate = MessagingModeGate(store=store, clock=lambda: BASE_TIME)

    decision = asyncio.run(gate.evaluate("CH1"))

    assert decision.mode == "template_required"
    assert decision.is_outside_free_window is True
    assert decision.last_customer_message_at == BASE_TIME - timedelta(hours=30)
    assert decision.window_expires_at == BASE_TIME - timedelta(hours=6)


def test_gate_is_reevaluated_on_every_call() -> None:
    store = InMemoryLocalStore()
    store.create_message(
        conversation_id="CH1",
        sender_id="whatsapp:+201016666348",
        sender_type="customer",
        content="hi",
        created_at=BASE_TIME,
    )
    now = {"value": BASE_TIME + timedelta(hours=23)}
    gate = MessagingModeGate(store=store, clock=lambda: now["value"])

    assert asyncio.run(gate.evaluate("CH1")).mode == "free_form"
    now["value"] = BASE_TIME + timedelta(hours=25)
    assert asyncio.run(gate.evaluate("CH1")).mode == "template_required"
    assert asyncio.run(gate.evaluate("CH-empty")).mode == "template_required"


def test_gate_falls_back_to_provider_history_only_without_stored_customer_messages() -> None:
    store = InMemoryLocalStore()
    asked: list[str] = []

    async def history(conversation_id: str) -> datetime | None:
        asked.append(conversation_id)
        return BASE_TIME - timedelta(minutes=5)

    gate = MessagingModeGate(store=store, clock=lambda: BASE_TIME, history=history)

    decision = asyncio.run(gate.evaluate("CH1"))
    assert decision.mode == "free_form"
    assert decision.last_customer_message_at == BASE_TIME - timedelta(minutes=5)
    assert asked == ["CH1"]

    store.create_message(
        conversation_id="CH1",
        sender_id="whatsapp:+201016666348",
        sender_type="customer",
        content="hi",
        created_at=BASE_TIME - timedelta(hours=30),
    )
    assert asyncio.run(gate.evaluate("CH1")).mode == "template_required"
    assert asked == ["CH1"]
