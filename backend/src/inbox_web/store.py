from __future__ import annotations

import json
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from itertools import count
from typing import Any, Iterable, Protocol

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, and_, create_engine, or_, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import ConversationPriority, ConversationStatus, DeliveryStatus, SenderType

DELIVERY_STATUSES: frozenset[str] = frozenset({"sending", "sent", "delivered", "read", "failed", "undelivered"})
_UPDATABLE_CONVERSATION_FIELDS = frozenset({"contact_id", "agent_id", "status", "priority", "is_pinned", "is_new"})


class ConversationNotFoundError(KeyError):
    pass


class MessageNotFoundError(KeyError):
    pass


@dataclass(frozen=True)
class ConversationRecord:
    conversation_id: str
    contact_id: str | None
    agent_id: str | None
    status: ConversationStatus
    priority: ConversationPriority
    is_pinned: bool
    is_new: bool
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class AgentRecord:
    agent_id: str
    username: str
    role: str
    is_active: bool


@dataclass(frozen=True)
class ContactRecord:
    contact_id: str
    name: str
    phone_number: str
    email: str | None
    avatar: str | None
    last_seen: datetime | None


@dataclass(frozen=True)
class StoredMedia:
    media_sid: str | None = None
    content_type: str | None = None
    filename: str | None = None
    url: str | None = None


@dataclass(frozen=True)
class MessageRecord:
    message_id: str
    conversation_id: str
    sender_id: str
    sender_type: SenderType
    content: str
    message_type: str
    provider_message_sid: str | None
    delivery_status: DeliveryStatus | None
    media: tuple[StoredMedia, ...]
    chat_service_sid: str | None
    created_at: datetime


class ContactDirectory(Protocol):
    def find_contact_by_phone(self, phone: str) -> ContactRecord | None: ...


class LocalStore(ContactDirectory, Protocol):
    def reset(self) -> None: ...

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None: ...

    def update_conversation(self, conversation_id: str, **changes: Any) -> ConversationRecord: ...

    def delete_conversation(self, conversation_id: str) -> bool: ...

    def create_agent(self, *, agent_id: str, username: str, role: str = "agent", is_active: bool = True) -> AgentRecord: ...

    def get_agent(self, agent_id: str) -> AgentRecord | None: ...

    def has_agent_replies(self, conversation_id: str) -> bool: ...

    def create_message(
        self,
        *,
        conversation_id: str,
        sender_id: str,
        sender_type: SenderType,
        content: str,
        message_type: str = "text",
        provider_message_sid: str | None = None,
        delivery_status: DeliveryStatus | None = None,
        media: Iterable[StoredMedia] = (),
        chat_service_sid: str | None = None,
        created_at: datetime | None = None,
    ) -> MessageRecord: ...

    def update_message_delivery(
        self,
        message_id: str,
        *,
        delivery_status: DeliveryStatus,
        provider_message_sid: str | None = None,
    ) -> MessageRecord: ...

    def update_delivery_by_provider_sid(self, provider_message_sid: str, delivery_status: DeliveryStatus) -> bool: ...

    def list_recent_messages(self, conversation_id: str, *, limit: int, before: str | None = None) -> list[MessageRecord]: ...

    def last_message(self, conversation_id: str) -> MessageRecord | None: ...

    def last_customer_message_at(self, conversation_id: str) -> datetime | None: ...

    def create_contact(
        self,
        *,
        name: str,
        phone_number: str,
        email: str | None = None,
        avatar: str | None = None,
        last_seen: datetime | None = None,
    ) -> ContactRecord: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def phone_digits(value: str) -> str:
    return "".join(ch for ch in value if ch.isdigit())


def _check_changes(changes: dict[str, Any]) -> None:
    unknown = set(changes) - _UPDATABLE_CONVERSATION_FIELDS
    if unknown:
        raise ValueError(f"unsupported conversation fields: {', '.join(sorted(unknown))}")


def _check_delivery_status(value: str | None) -> None:
    if value is not None and value not in DELIVERY_STATUSES:
        raise ValueError(f"unsupported delivery status: {value}")


def _media_to_json(media: Iterable[StoredMedia]) -> str | None:
    items = [item.__dict__ for item in media]
    return json.dumps(items, sort_keys=True) if items else None


def _media_from_json(raw: str | None) -> tuple[StoredMedia, ...]:
    if not raw:
        return ()
    return tuple(StoredMedia(**item) for item in json.loads(raw))


class InMemoryLocalStore:
    def __init__(self) -> None:
        self._message_counter = count(1)
        self._contact_counter = count(1)
        self._conversations: dict[str, ConversationRecord] = {}
        self._agents: dict[str, AgentRecord] = {}
        self._contacts: dict[str, ContactRecord] = {}
        self._messages: dict[str, MessageRecord] = {}
        self._order: dict[str, int] = {}

    def reset(self) -> None:
        self._message_counter = count(1)
        self._contact_counter = count(1)
        self._conversations.clear()
        self._agents.clear()
        self._contacts.clear()
        self._messages.clear()
        self._order.clear()

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        return self._conversations.get(conversation_id)

    def _ensure_conversation(self, conversation_id: str, now: datetime) -> ConversationRecord:
        current = self._conversations.get(conversation_id)
        if current is None:
            current = ConversationRecord(
                conversation_id=conversation_id,
                contact_id=None,
                agent_id=None,
                status="open",
                priority="normal",
                is_pinned=False,
                is_new=True,
                created_at=now,
                updated_at=now,
            )
            self._conversations[conversation_id] = current
        return current

    def update_conversation(self, conversation_id: str, **changes: Any) -> ConversationRecord:
        _check_changes(changes)
        now = _now_utc()
        current = self._ensure_conversation(conversation_id, now)
        updated = replace(current, **changes, updated_at=now)
        self._conversations[conversation_id] = updated
        return updated

    def delete_conversation(self, conversation_id: str) -> bool:
        existed = self._conversations.pop(conversation_id, None) is not None
        for message_id in [key for key, value in self._messages.items() if value.conversation_id == conversation_id]:
            del self._messages[message_id]
            del self._order[message_id]
        return existed

    def create_agent(self, *, agent_id: str, username: str, role: str = "agent", is_active: bool = True) -> AgentRecord:
        record = AgentRecord(agent_id=agent_id, username=username, role=role, is_active=is_active)
        self._agents[agent_id] = record
        return record

    def get_agent(self, agent_id: str) -> AgentRecord | None:
        return self._agents.get(agent_id)

    def has_agent_replies(self, conversation_id: str) -> bool:
        return any(
            value.conversation_id == conversation_id and value.sender_type == "agent" for value in self._messages.values()
        )

    def create_message(
        self,
        *,
        conversation_id: str,
        sender_id: str,
        sender_type: SenderType,
        content: str,
        message_type: str = "text",
        provider_message_sid: str | None = None,
        delivery_status: DeliveryStatus | None = None,
        media: Iterable[StoredMedia] = (),
        chat_service_sid: str | None = None,
        created_at: datetime | None = None,
    ) -> MessageRecord:
        _check_delivery_status(delivery_status)
        self._ensure_conversation(conversation_id, _now_utc())
        sequence = next(self._message_counter)
        record = MessageRecord(
            message_id=str(sequence),
            conversation_id=conversation_id,
            sender_id=sender_id,
            sender_type=sender_type,
            content=content,
            message_type=message_type,
            provider_message_sid=provider_message_sid,
            delivery_status=delivery_status,
            media=tuple(media),
            chat_service_sid=chat_service_sid,
            created_at=_as_utc(created_at) if created_at is not None else _now_utc(),
        )
        self._messages[record.message_id] = record
        self._order[record.message_id] = sequence
        return record

    def update_message_delivery(
        self,
        message_id: str,
        *,
        delivery_status: DeliveryStatus,
        provider_message_sid: str | None = None,
    ) -> MessageRecord:
        _check_delivery_status(delivery_status)
        current = self._messages.get(message_id)
        if current is None:
            raise MessageNotFoundError(message_id)
        updated = replace(
            current,
            delivery_status=delivery_status,
            provider_message_sid=provider_message_sid or current.provider_message_sid,
        )
        self._messages[message_id] = updated
        return updated

    def update_delivery_by_provider_sid(self, provider_message_sid: str, delivery_status: DeliveryStatus) -> bool:
        for record in self._messages.values():
            if record.provider_message_sid == provider_message_sid:
                self.update_message_delivery(record.message_id, delivery_status=delivery_status)
                return True
        return False

    def _sort_key(self, record: MessageRecord) -> tuple[datetime, int]:
        return (record.created_at, self._order[record.message_id])

    def list_recent_messages(self, conversation_id: str, *, limit: int, before: str | None = None) -> list[MessageRecord]:
        rows = [value for value in self._messages.values() if value.conversation_id == conversation_id]
        if before is not None:
            anchor = self._messages.get(before)
            if anchor is None:
                return []
            anchor_key = self._sort_key(anchor)
            rows = [value for value in rows if self._sort_key(value) < anchor_key]
        rows.sort(key=self._sort_key, reverse=True)
        return rows[:limit]

    def last_message(self, conversation_id: str) -> MessageRecord | None:
        rows = self.list_recent_messages(conversation_id, limit=1)
        return rows[0] if rows else None

    def last_customer_message_at(self, conversation_id: str) -> datetime | None:
        times = [
            value.created_at
            for value in self._messages.values()
            if value.conversation_id == conversation_id and value.sender_type == "customer"
        ]
        return max(times) if times else None

    def create_contact(
        self,
        *,
        name: str,
        phone_number: str,
        email: str | None = None,
        avatar: str | None = None,
        last_seen: datetime | None = None,
    ) -> ContactRecord:
        record = ContactRecord(
            contact_id=f"contact_{next(self._contact_counter):06d}",
            name=name,
            phone_number=phone_number,
            email=email,
            avatar=avatar,
            last_seen=last_seen,
        )
        self._contacts[record.contact_id] = record
        return record

    def find_contact_by_phone(self, phone: str) -> ContactRecord | None:
        wanted = phone_digits(phone)
        if not wanted:
            return None
        for record in self._contacts.values():
            if phone_digits(record.phone_number) == wanted:
                return record
        return None


class LocalStoreBase(DeclarativeBase):
    pass


class _ConversationRow(LocalStoreBase):
    __tablename__ = "inbox_conversations"

    conversation_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    contact_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    agent_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="open", index=True)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="normal")
    is_pinned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_new: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _AgentRow(LocalStoreBase):
    __tablename__ = "inbox_agents"

    agent_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    username: Mapped[str] = mapped_column(String(256), nullable=False)
    role: Mapped[str] = mapped_column(String(32), nullable=False, default="agent")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class _ContactRow(LocalStoreBase):
    __tablename__ = "inbox_contacts"

    contact_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    phone_number: Mapped[str] = mapped_column(String(64), nullable=False)
    phone_digits: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    email: Mapped[str | None] = mapped_column(String(256), nullable=True)
    avatar: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_seen: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class _MessageRow(LocalStoreBase):
    __tablename__ = "inbox_messages"

    message_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("inbox_conversations.conversation_id"), nullable=False, index=True
    )
    sender_id: Mapped[str] = mapped_column(String(128), nullable=False)
    sender_type: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    message_type: Mapped[str] = mapped_column(String(32), nullable=False, default="text")
    provider_message_sid: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    delivery_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    media_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    chat_service_sid: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class SqlAlchemyLocalStore:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for LOCAL_STORE_BACKEND=postgres")
        engine_options: dict[str, Any] = {"future": True, "pool_pre_ping": True}
        in_memory = ":memory:" in database_url or database_url.rstrip("/") in {"sqlite:", "sqlite+pysqlite:"}
        if database_url.startswith("sqlite") and in_memory:
            # One shared connection; store reads run on worker threads.
            engine_options.update(poolclass=StaticPool, connect_args={"check_same_thread": False})
        self._engine = create_engine(database_url, **engine_options)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            LocalStoreBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_MessageRow).delete()
                session.query(_ConversationRow).delete()
                session.query(_ContactRow).delete()
                session.query(_AgentRow).delete()

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        with self._session() as session:
            row = session.get(_ConversationRow, conversation_id)
            return self._conversation_record(row) if row is not None else None

    def update_conversation(self, conversation_id: str, **changes: Any) -> ConversationRecord:
        _check_changes(changes)
        now = _now_utc()
        with self._session() as session:
            with session.begin():
                row = self._ensure_conversation(session, conversation_id, now)
                for key, value in changes.items():
                    setattr(row, key, value)
                row.updated_at = now
                session.flush()
                return self._conversation_record(row)

    def delete_conversation(self, conversation_id: str) -> bool:
        with self._session() as session:
            with session.begin():
                session.query(_MessageRow).filter(_MessageRow.conversation_id == conversation_id).delete()
                row = session.get(_ConversationRow, conversation_id)
                if row is None:
                    return False
                session.delete(row)
                return True

    def create_agent(self, *, agent_id: str, username: str, role: str = "agent", is_active: bool = True) -> AgentRecord:
        with self._session() as session:
            with session.begin():
                row = session.get(_AgentRow, agent_id)
                if row is None:
                    row = _AgentRow(agent_id=agent_id)
                    session.add(row)
                row.username = username
                row.role = role
                row.is_active = is_active
                session.flush()
                return self._agent_record(row)

    def get_agent(self, agent_id: str) -> AgentRecord | None:
        with self._session() as session:
            row = session.get(_AgentRow, agent_id)
            return self._agent_record(row) if row is not None else None

    def has_agent_replies(self, conversation_id: str) -> bool:
        with self._session() as session:
            found = session.scalar(
                select(_MessageRow.message_id)
                .where(_MessageRow.conversation_id == conversation_id)
                .where(_MessageRow.sender_type == "agent")
                .limit(1)
            )
            return found is not None

    def create_message(
        self,
        *,
        conversation_id: str,
        sender_id: str,
        sender_type: SenderType,
        content: str,
        message_type: str = "text",
        provider_message_sid: str | None = None,
        delivery_status: DeliveryStatus | None = None,
        media: Iterable[StoredMedia] = (),
        chat_service_sid: str | None = None,
        created_at: datetime | None = None,
    ) -> MessageRecord:
        _check_delivery_status(delivery_status)
        now = _now_utc()
        with self._session() as session:
            with session.begin():
                self._ensure_conversation(session, conversation_id, now)
                row = _MessageRow(
                    conversation_id=conversation_id,
                    sender_id=sender_id,
                    sender_type=sender_type,
                    content=content,
                    message_type=message_type,
                    provider_message_sid=provider_message_sid,
                    delivery_status=delivery_status,
                    media_json=_media_to_json(media),
                    chat_service_sid=chat_service_sid,
                    created_at=_as_utc(created_at) if created_at is not None else now,
                )
                session.add(row)
                session.flush()
                return self._message_record(row)

    def update_message_delivery(
        self,
        message_id: str,
        *,
        delivery_status: DeliveryStatus,
        provider_message_sid: str | None = None,
    ) -> MessageRecord:
        _check_delivery_status(delivery_status)
        with self._session() as session:
            with session.begin():
                row = session.get(_MessageRow, int(message_id)) if message_id.isdigit() else None
                if row is None:
                    raise MessageNotFoundError(message_id)
                row.delivery_status = delivery_status
                if provider_message_sid:
                    row.provider_message_sid = provider_message_sid
                session.flush()
                return self._message_record(row)

    def update_delivery_by_provider_sid(self, provider_message_sid: str, delivery_status: DeliveryStatus) -> bool:
        _check_delivery_status(delivery_status)
        with self._session() as session:
            with session.begin():
                row = session.scalar(select(_MessageRow).where(_MessageRow.provider_message_sid == provider_message_sid))
                if row is None:
                    return False
                row.delivery_status = delivery_status
                return True

    def list_recent_messages(self, conversation_id: str, *, limit: int, before: str | None = None) -> list[MessageRecord]:
        with self._session() as session:
            query = select(_MessageRow).where(_MessageRow.conversation_id == conversation_id)
            if before is not None:
                anchor = session.get(_MessageRow, int(before)) if before.isdigit() else None
                if anchor is None:
                    return []
                query = query.where(
                    or_(
                        _MessageRow.created_at < anchor.created_at,
                        and_(_MessageRow.created_at == anchor.created_at, _MessageRow.message_id < anchor.message_id),
                    )
                )
            rows = session.scalars(
                query.order_by(_MessageRow.created_at.desc(), _MessageRow.message_id.desc()).limit(limit)
            ).all()
            return [self._message_record(row) for row in rows]

    def last_message(self, conversation_id: str) -> MessageRecord | None:
        rows = self.list_recent_messages(conversation_id, limit=1)
        return rows[0] if rows else None

    def last_customer_message_at(self, conversation_id: str) -> datetime | None:
        with self._session() as session:
            value = session.scalar(
                select(_MessageRow.created_at)
                .where(_MessageRow.conversation_id == conversation_id)
                .where(_MessageRow.sender_type == "customer")
                .order_by(_MessageRow.created_at.desc())
                .limit(1)
            )
            return _as_utc(value) if value is not None else None

    def create_contact(
        self,
        *,
        name: str,
        phone_number: str,
        email: str | None = None,
        avatar: str | None = None,
        last_seen: datetime | None = None,
    ) -> ContactRecord:
        now = _now_utc()
        with self._session() as session:
            with session.begin():
                row = _ContactRow(
                    contact_id=f"contact_{int(now.timestamp() * 1000000)}",
                    name=name,
                    phone_number=phone_number,
                    phone_digits=phone_digits(phone_number),
                    email=email,
                    avatar=avatar,
                    last_seen=last_seen,
                )
                session.add(row)
                session.flush()
                return self._contact_record(row)

    def find_contact_by_phone(self, phone: str) -> ContactRecord | None:
        wanted = phone_digits(phone)
        if not wanted:
            return None
        with self._session() as session:
            row = session.scalar(select(_ContactRow).where(_ContactRow.phone_digits == wanted).limit(1))
            return self._contact_record(row) if row is not None else None

    @staticmethod
    def _ensure_conversation(session, conversation_id: str, now: datetime) -> _ConversationRow:
        row = session.get(_ConversationRow, conversation_id)
        if row is None:
            row = _ConversationRow(
                conversation_id=conversation_id,
                contact_id=None,
                agent_id=None,
                status="open",
                priority="normal",
                is_pinned=False,
                is_new=True,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
        return row

    @staticmethod
    def _conversation_record(row: _ConversationRow) -> ConversationRecord:
        return ConversationRecord(
            conversation_id=row.conversation_id,
            contact_id=row.contact_id,
            agent_id=row.agent_id,
            status=row.status,  # type: ignore[arg-type]
            priority=row.priority,  # type: ignore[arg-type]
            is_pinned=bool(row.is_pinned),
            is_new=bool(row.is_new),
            created_at=_as_utc(row.created_at),
            updated_at=_as_utc(row.updated_at),
        )

    @staticmethod
    def _agent_record(row: _AgentRow) -> AgentRecord:
        return AgentRecord(agent_id=row.agent_id, username=row.username, role=row.role, is_active=bool(row.is_active))

    @staticmethod
    def _contact_record(row: _ContactRow) -> ContactRecord:
        return ContactRecord(
            contact_id=row.contact_id,
            name=row.name,
            phone_number=row.phone_number,
            email=row.email,
            avatar=row.avatar,
            last_seen=_as_utc(row.last_seen) if row.last_seen is not None else None,
        )

    @staticmethod
    def _message_record(row: _MessageRow) -> MessageRecord:
        return MessageRecord(
            message_id=str(row.message_id),
            conversation_id=row.conversation_id,
            sender_id=row.sender_id,
            sender_type=row.sender_type,  # type: ignore[arg-type]
            content=row.content,
            message_type=row.message_type,
            provider_message_sid=row.provider_message_sid,
            delivery_status=row.delivery_status,  # type: ignore[arg-type]
            media=_media_from_json(row.media_json),
            chat_service_sid=row.chat_service_sid,
            created_at=_as_utc(row.created_at),
        )


def create_local_store(*, backend: str, database_url: str) -> LocalStore:
    normalized = backend.strip().lower()
    if normalized in {"postgres", "sqlalchemy", "sqlite"}:
        return SqlAlchemyLocalStore(database_url)
    if normalized == "inmemory":
        return InMemoryLocalStore()
    raise RuntimeError(f"unsupported LOCAL_STORE_BACKEND: {backend}")
