from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Iterable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Entries older than this many TTLs are dropped by cleanup() even though the
# stale value would otherwise still serve as a fallback.
STALE_RETENTION_FACTOR = 10

# Minimum spacing between the cleanup passes get_or_fetch runs after a write.
CLEANUP_INTERVAL_SECONDS = 60.0


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    data: T
    fetched_at: float
    tags: frozenset[str] = frozenset()


class TtlTable:
    def __init__(self, name: str, *, ttl_seconds: float, clock: Callable[[], float]) -> None:
        self.name = name
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry[Any]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str) -> CacheEntry[Any] | None:
        return self._entries.get(key)

    def get_fresh(self, key: str) -> CacheEntry[Any] | None:
        entry = self._entries.get(key)
        if entry is None or self._clock() - entry.fetched_at >= self.ttl_seconds:
            return None
        return entry

    def put(self, key: str, data: Any, *, tags: Iterable[str] = ()) -> None:
        self._entries[key] = CacheEntry(data=data, fetched_at=self._clock(), tags=frozenset(tags))

    def invalidate(self, conversation_id: str) -> int:
        doomed = [
            key for key, entry in self._entries.items() if conversation_id in key or conversation_id in entry.tags
        ]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()

    def cleanup(self) -> int:
        horizon = self._clock() - self.ttl_seconds * STALE_RETENTION_FACTOR
        doomed = [key for key, entry in self._entries.items() if entry.fetched_at < horizon]
        for key in doomed:
            del self._entries[key]
        return len(doomed)


def conversation_list_key(
    *,
    agent_id: str,
    limit: int,
    conversation_id: str | None,
    message_limit: int,
    after: str | None = None,
) -> str:
    key = f"{agent_id}-{limit}-{conversation_id or 'all'}-{message_limit}"
    if after:
        key = f"{key}-after:{after}"
    return key


def message_page_key(conversation_id: str, message_limit: int) -> str:
    return f"{conversation_id}-{message_limit}"


class SyncCache:
    """Conversation, participant and message-page caches with one lifecycle.

    Constructed once per process and handed to the synchronizers. Reads are
    served from memory while an entry is younger than its table's TTL. A failed
    refresh falls back to the last known value, however old, and only surfaces
    the error when nothing was ever cached for the key.

    ``invalidate(conversation_id)`` drops every entry whose key contains the id
    or whose tags include it. List entries are tagged with the ids of the
    conversations they contain, so a list that merely includes the
    conversation is dropped as well.
    """

    def __init__(
        self,
        *,
        conversation_ttl_seconds: float = 30.0,
        participant_ttl_seconds: float = 60.0,
        message_ttl_seconds: float = 15.0,
        cleanup_interval_seconds: float = CLEANUP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._cleanup_interval_seconds = cleanup_interval_seconds
        self._last_cleanup = clock()
        self.conversations = TtlTable("conversations", ttl_seconds=conversation_ttl_seconds, clock=clock)
        self.participants = TtlTable("participants", ttl_seconds=participant_ttl_seconds, clock=clock)
        self.messages = TtlTable("messages", ttl_seconds=message_ttl_seconds, clock=clock)

    @property
    def tables(self) -> tuple[TtlTable, ...]:
        return (self.conversations, self.participants, self.messages)

    def init(self) -> None:
        self.clear()
        self._last_cleanup = self._clock()
        logger.debug(
            "sync cache initialized (ttl conversations=%ss participants=%ss messages=%ss)",
            self.conversations.ttl_seconds,
            self.participants.ttl_seconds,
            self.messages.ttl_seconds,
        )

    def invalidate(self, conversation_id: str | None = None) -> int:
        if not conversation_id:
            removed = sum(len(table) for table in self.tables)
            self.clear()
            logger.debug("sync cache fully invalidated (%s entries)", removed)
            return removed
        removed = sum(table.invalidate(conversation_id) for table in self.tables)
        logger.debug("sync cache invalidated %s entries for %s", removed, conversation_id)
        return removed

    def clear(self) -> None:
        for table in self.tables:
            table.clear()

    def cleanup(self) -> int:
        self._last_cleanup = self._clock()
        removed = sum(table.cleanup() for table in self.tables)
        if removed:
            logger.debug("sync cache cleanup dropped %s expired entries", removed)
        return removed

    def _maybe_cleanup(self) -> None:
        if self._clock() - self._last_cleanup >= self._cleanup_interval_seconds:
            self.cleanup()

    async def get_or_fetch(
        self,
        table: TtlTable,
        key: str,
        fetch: Callable[[], Awaitable[T]],
        *,
        tags: Callable[[T], Iterable[str]] | None = None,
    ) -> T:
        entry = table.get_fresh(key)
        if entry is not None:
            logger.debug("%s cache hit for %s", table.name, key)
            return entry.data
        try:
            data = await fetch()
        except Exception as exc:
            stale = table.get(key)
            if stale is None:
                raise
            logger.warning(
                "%s refresh for %s failed, serving entry from %.0fs ago: %s",
                table.name,
                key,
                self._clock() - stale.fetched_at,
                exc,
            )
            return stale.data
        table.put(key, data, tags=tags(data) if tags is not None else ())
        self._maybe_cleanup()
        return data
