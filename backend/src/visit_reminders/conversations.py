from __future__ import annotations

import json
import secrets
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Any, Protocol

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import (
    ConversationDetailResponse,
    ConversationItem,
    ConversationListResponse,
    ConversationStatus,
    MessageDirection,
    MessageItem,
    status_priority,
)
from .phone import clean_phone_number, mask_phone


class ConversationNotFoundError(KeyError):
    """Raised when an operation references a conversation id that does not exist."""


@dataclass(frozen=True)
class ConversationRecord:
    conversation_id: str
    client_phone: str
    client_id: str | None
    client_name: str | None
    status: ConversationStatus
    unread_count: int
    last_message_preview: str | None
    last_message_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class MessageRecord:
    message_id: str
    conversation_id: str
    provider_message_id: str | None
    direction: MessageDirection
    message_type: str
    template_name: str | None
    content: str | None
    status: str
    error_message: str | None
    metadata: dict[str, Any]
    created_at: datetime


class ConversationRepository(Protocol):
    def reset(self) -> None: ...

    def create_or_get_conversation(
        self,
        *,
        phone: str,
        client_id: str | None,
        client_name: str | None,
    ) -> ConversationRecord: ...

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None: ...

    def find_conversation_by_phone(self, phone: str) -> ConversationRecord | None: ...

    def list_conversations(self, *, limit: int) -> list[ConversationRecord]: ...

    def append_message(
        self,
        *,
        conversation_id: str,
        direction: MessageDirection,
        message_type: str,
        content: str | None,
        status: str,
        provider_message_id: str | None = None,
        template_name: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> MessageRecord: ...

    def list_messages(self, conversation_id: str, *, limit: int) -> list[MessageRecord]: ...

    def find_message_by_provider_message_id(self, provider_message_id: str) -> MessageRecord | None: ...

    def apply_message_status(
        self,
        *,
        provider_message_id: str,
        status: str,
        error_message: str | None = None,
    ) -> bool: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _preview(content: str | None, *, limit: int = 120) -> str | None:
    if not content:
        return None
    clean = " ".join(content.split())
    if len(clean) <= limit:
        return clean
    return clean[: limit - 3] + "..."


def _status_advances(current: str, candidate: str) -> bool:
    return status_priority(candidate) >= status_priority(current)


class InMemoryConversationRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._conversation_counter = count(1)
        self._message_counter = count(1)
        self._conversations: dict[str, ConversationRecord] = {}
        self._conversation_by_phone: dict[str, str] = {}
        self._messages_by_conversation: dict[str, list[MessageRecord]] = defaultdict(list)
        self._messages_by_provider_id: dict[str, MessageRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._conversation_counter = count(1)
            self._message_counter = count(1)
            self._conversations.clear()
            self._conversation_by_phone.clear()
            self._messages_by_conversation.clear()
            self._messages_by_provider_id.clear()

    def create_or_get_conversation(
        self,
        *,
        phone: str,
        client_id: str | None,
        client_name: str | None,
    ) -> ConversationRecord:
        normalized = clean_phone_number(phone)
        with self._lock:
            existing_id = self._conversation_by_phone.get(normalized)
            if existing_id is not None:
                existing = self._conversations[existing_id]
                if existing.client_id or not client_id:
                    return existing
                updated = ConversationRecord(
                    **{
                        **existing.__dict__,
                        "client_id": client_id,
                        "client_name": existing.client_name or client_name,
                        "updated_at": _now_utc(),
                    }
                )
                self._conversations[existing_id] = updated
                return updated

            now = _now_utc()
            created = ConversationRecord(
                conversation_id=f"conv_{next(self._conversation_counter):06d}",
                client_phone=normalized,
                client_id=client_id,
                client_name=client_name,
                status="open",
                unread_count=0,
                last_message_preview=None,
                last_message_at=None,
                created_at=now,
                updated_at=now,
            )
            self._conversations[created.conversation_id] = created
            self._conversation_by_phone[normalized] = created.conversation_id
            return created

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        return self._conversations.get(conversation_id)

    def find_conversation_by_phone(self, phone: str) -> ConversationRecord | None:
        conversation_id = self._conversation_by_phone.get(clean_phone_number(phone))
        if conversation_id is None:
            return None
        return self._conversations.get(conversation_id)

    def list_conversations(self, *, limit: int) -> list[ConversationRecord]:
        with self._lock:
            ordered = sorted(self._conversations.values(), key=lambda value: value.updated_at, reverse=True)
        return ordered[:limit]

    def append_message(
        self,
        *,
        conversation_id: str,
        direction: MessageDirection,
        message_type: str,
        content: str | None,
        status: str,
        provider_message_id: str | None = None,
        template_name: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> MessageRecord:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                raise ConversationNotFoundError(conversation_id)
            if provider_message_id and provider_message_id in self._messages_by_provider_id:
                raise ValueError(f"duplicate provider message id: {provider_message_id}")
            message = MessageRecord(
                message_id=f"msg_{next(self._message_counter):06d}",
                conversation_id=conversation_id,
                provider_message_id=provider_message_id,
                direction=direction,
                message_type=message_type,
                template_name=template_name,
                content=content,
                status=status,
                error_message=None,
                metadata=dict(metadata or {}),
                created_at=_now_utc(),
            )
            self._messages_by_conversation[conversation_id].append(message)
            if provider_message_id:
                self._messages_by_provider_id[provider_message_id] = message

            unread_count = conversation.unread_count + (1 if direction == "inbound" else 0)
            self._conversations[conversation_id] = ConversationRecord(
                **{
                    **conversation.__dict__,
                    "unread_count": unread_count,
                    "last_message_preview": _preview(content) or conversation.last_message_preview,
                    "last_message_at": message.created_at,
                    "updated_at": message.created_at,
                }
            )
            return message

    def list_messages(self, conversation_id: str, *, limit: int) -> list[MessageRecord]:
        with self._lock:
            messages = list(self._messages_by_conversation.get(conversation_id, []))
        return messages[-limit:]

    def find_message_by_provider_message_id(self, provider_message_id: str) -> MessageRecord | None:
        return self._messages_by_provider_id.get(provider_message_id)

    def apply_message_status(
        self,
        *,
        provider_message_id: str,
        status: str,
        error_message: str | None = None,
    ) -> bool:
        with self._lock:
            message = self._messages_by_provider_id.get(provider_message_id)
            if message is None or not _status_advances(message.status, status):
                return False
            values: dict[str, Any] = {"status": status}
            if status == "failed" and error_message:
                values["error_message"] = error_message
            replacement = MessageRecord(**{**message.__dict__, **values})
            self._messages_by_provider_id[provider_message_id] = replacement
            self._messages_by_conversation[message.conversation_id] = [
                replacement if item.message_id == message.message_id else item
                for item in self._messages_by_conversation[message.conversation_id]
            ]
            return True


class ConversationsBase(DeclarativeBase):
    pass


class _ConversationRow(ConversationsBase):
    __tablename__ = "conversations"

    conversation_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    client_phone: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    client_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    client_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="open")
    unread_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_message_preview: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class _MessageRow(ConversationsBase):
    __tablename__ = "messages"

    message_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("conversations.conversation_id"), nullable=False, index=True
    )
    provider_message_id: Mapped[str | None] = mapped_column(String(256), nullable=True, unique=True)
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    message_type: Mapped[str] = mapped_column(String(32), nullable=False)
    template_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class SqlAlchemyConversationRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for REMINDER_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            ConversationsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_MessageRow).delete()
                session.query(_ConversationRow).delete()

    def create_or_get_conversation(
        self,
        *,
        phone: str,
        client_id: str | None,
        client_name: str | None,
    ) -> ConversationRecord:
        normalized = clean_phone_number(phone)
        with self._session() as session:
            with session.begin():
                row = session.scalar(select(_ConversationRow).where(_ConversationRow.client_phone == normalized))
                if row is None:
                    now = _now_utc()
                    row = _ConversationRow(
                        conversation_id=f"conv_{secrets.token_hex(8)}",
                        client_phone=normalized,
                        client_id=client_id,
                        client_name=client_name,
                        status="open",
                        unread_count=0,
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(row)
                elif not row.client_id and client_id:
                    row.client_id = client_id
                    row.client_name = row.client_name or client_name
                    row.updated_at = _now_utc()
                session.flush()
                return self._conversation_record(row)

    def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        with self._session() as session:
            row = session.get(_ConversationRow, conversation_id)
            return self._conversation_record(row) if row is not None else None

    def find_conversation_by_phone(self, phone: str) -> ConversationRecord | None:
        with self._session() as session:
            row = session.scalar(
                select(_ConversationRow).where(_ConversationRow.client_phone == clean_phone_number(phone))
            )
            return self._conversation_record(row) if row is not None else None

    def list_conversations(self, *, limit: int) -> list[ConversationRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_ConversationRow).order_by(_ConversationRow.updated_at.desc()).limit(limit)
            ).all()
            return [self._conversation_record(row) for row in rows]

    def append_message(
        self,
        *,
        conversation_id: str,
        direction: MessageDirection,
        message_type: str,
        content: str | None,
        status: str,
        provider_message_id: str | None = None,
        template_name: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> MessageRecord:
        now = _now_utc()
        with self._session() as session:
            with session.begin():
                conversation = session.get(_ConversationRow, conversation_id)
                if conversation is None:
                    raise ConversationNotFoundError(conversation_id)
                row = _MessageRow(
                    message_id=f"msg_{secrets.token_hex(8)}",
                    conversation_id=conversation_id,
                    provider_message_id=provider_message_id,
                    direction=direction,
                    message_type=message_type,
                    template_name=template_name,
                    content=content,
                    status=status,
                    error_message=None,
                    metadata_json=json.dumps(metadata or {}, sort_keys=True, default=str),
                    created_at=now,
                )
                session.add(row)
                if direction == "inbound":
                    conversation.unread_count += 1
                conversation.last_message_preview = _preview(content) or conversation.last_message_preview
                conversation.last_message_at = now
                conversation.updated_at = now
                session.flush()
                return self._message_record(row)

    def list_messages(self, conversation_id: str, *, limit: int) -> list[MessageRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_MessageRow)
                .where(_MessageRow.conversation_id == conversation_id)
                .order_by(_MessageRow.created_at.desc())
                .limit(limit)
            ).all()
            return [self._message_record(row) for row in reversed(rows)]

    def find_message_by_provider_message_id(self, provider_message_id: str) -> MessageRecord | None:
        with self._session() as session:
            row = session.scalar(select(_MessageRow).where(_MessageRow.provider_message_id == provider_message_id))
            return self._message_record(row) if row is not None else None

    def apply_message_status(
        self,
        *,
        provider_message_id: str,
        status: str,
        error_message: str | None = None,
    ) -> bool:
        with self._session() as session:
            with session.begin():
                row = session.scalar(
                    select(_MessageRow)
                    .where(_MessageRow.provider_message_id == provider_message_id)
                    .with_for_update()
                )
                if row is None or not _status_advances(row.status, status):
                    return False
                row.status = status
                if status == "failed" and error_message:
                    row.error_message = error_message
                return True

    @staticmethod
    def _conversation_record(row: _ConversationRow) -> ConversationRecord:
        return ConversationRecord(
            conversation_id=row.conversation_id,
            client_phone=row.client_phone,
            client_id=row.client_id,
            client_name=row.client_name,
            status=row.status,  # type: ignore[arg-type]
            unread_count=row.unread_count,
            last_message_preview=row.last_message_preview,
            last_message_at=_coerce_utc(row.last_message_at),
            created_at=_coerce_utc(row.created_at),  # type: ignore[arg-type]
            updated_at=_coerce_utc(row.updated_at),  # type: ignore[arg-type]
        )

    @staticmethod
    def _message_record(row: _MessageRow) -> MessageRecord:
        return MessageRecord(
            message_id=row.message_id,
            conversation_id=row.conversation_id,
            provider_message_id=row.provider_message_id,
            direction=row.direction,  # type: ignore[arg-type]
            message_type=row.message_type,
            template_name=row.template_name,
            content=row.content,
            status=row.status,
            error_message=row.error_message,
            metadata=json.loads(row.metadata_json or "{}"),
            created_at=_coerce_utc(row.created_at),  # type: ignore[arg-type]
        )


def create_conversation_repository(*, backend: str, database_url: str) -> ConversationRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyConversationRepository(database_url)
    return InMemoryConversationRepository()


class ConversationService:
    """Read-side views over the conversation store (phones are masked)."""

    def __init__(self, *, repository: ConversationRepository) -> None:
        self._repository = repository

    def list_conversations(self, *, limit: int = 100) -> ConversationListResponse:
        records = self._repository.list_conversations(limit=limit)
        return ConversationListResponse(items=[self._to_conversation_item(value) for value in records])

    def get_conversation_detail(self, conversation_id: str) -> ConversationDetailResponse:
        record = self._repository.get_conversation(conversation_id)
        if record is None:
            raise ConversationNotFoundError(conversation_id)
        messages = self._repository.list_messages(conversation_id, limit=500)
        return ConversationDetailResponse(
            conversation=self._to_conversation_item(record),
            messages=[self._to_message_item(value) for value in messages],
        )

    @staticmethod
    def _to_conversation_item(record: ConversationRecord) -> ConversationItem:
        return ConversationItem(
            conversation_id=record.conversation_id,
            client_phone_masked=mask_phone(record.client_phone),
            client_id=record.client_id,
            client_name=record.client_name,
            status=record.status,
            unread_count=record.unread_count,
            last_message_preview=record.last_message_preview,
            last_message_at=record.last_message_at,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    @staticmethod
    def _to_message_item(record: MessageRecord) -> MessageItem:
        return MessageItem(
            message_id=record.message_id,
            provider_message_id=record.provider_message_id,
            direction=record.direction,
            message_type=record.message_type,
            template_name=record.template_name,
            content=record.content,
            status=record.status,  # type: ignore[arg-type]
            error_message=record.error_message,
            metadata=record.metadata,
            created_at=record.created_at,
        )
