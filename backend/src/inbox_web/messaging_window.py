from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

from .models import MessagingModeResponse
from .store import LocalStore

FREE_WINDOW_HOURS = 24.0

CustomerHistory = Callable[[str], Awaitable[datetime | None]]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def is_outside_free_window(
    last_customer_message_at: datetime | None,
    *,
    now: datetime | None = None,
    window_hours: float = FREE_WINDOW_HOURS,
) -> bool:
    if last_customer_message_at is None:
        return True
    current = now or _now_utc()
    return current - last_customer_message_at > timedelta(hours=window_hours)


class MessagingModeGate:
    """Evaluated on every read and never cached; a session can lapse mid-use.

    The local store is consulted first. When it holds no customer message for
    the conversation, ``history`` supplies the latest customer message the
    provider knows about, so a conversation whose history lives only on the
    provider is gated on the same messages the dashboard shows.
    """

    def __init__(
        self,
        *,
        store: LocalStore,
        window_hours: float = FREE_WINDOW_HOURS,
        clock: Callable[[], datetime] = _now_utc,
        history: CustomerHistory | None = None,
    ) -> None:
        self._store = store
        self._window_hours = window_hours
        self._clock = clock
        self._history = history

    async def last_customer_message_at(self, conversation_id: str) -> datetime | None:
        stamp = await asyncio.to_thread(self._store.last_customer_message_at, conversation_id)
        if stamp is None and self._history is not None:
            stamp = await self._history(conversation_id)
        return stamp

    async def evaluate(self, conversation_id: str) -> MessagingModeResponse:
        last_customer_at = await self.last_customer_message_at(conversation_id)
        now = self._clock()
        outside = is_outside_free_window(last_customer_at, now=now, window_hours=self._window_hours)
        expires_at = last_customer_at + timedelta(hours=self._window_hours) if last_customer_at is not None else None
        return MessagingModeResponse(
            conversation_id=conversation_id,
            mode="template_required" if outside else "free_form",
            is_outside_free_window=outside,
            last_customer_message_at=last_customer_at,
            window_expires_at=expires_at,
        )
