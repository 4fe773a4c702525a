from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import date, datetime, timezone
from itertools import count
from threading import Lock
from typing import Protocol

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, String, Text, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import ACTIVE_WORKFLOW_STATUSES, ReminderStatus
from .phone import phones_match


class ReminderNotFoundError(KeyError):
    """Raised when an operation references a reminder id that does not exist."""


class ClientNotFoundError(KeyError):
    """Raised when an operation references a client id that does not exist."""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class ClientRecord:
    client_id: str
    name: str | None
    phone: str
    vehicle: str | None
    make: str | None
    model: str | None
    registration: str | None
    last_visit_date: date | None
    facility_id: str | None
    facility_name: str | None
    whatsapp_available: bool
    created_at: datetime


@dataclass(frozen=True)
class ReminderRecord:
    reminder_id: str
    client_id: str
    due_date: date | None
    status: ReminderStatus
    status_changed_at: datetime
    last_reminder_sent: str | None
    last_reminder_at: datetime | None
    response_received_at: datetime | None
    follow_up_sent: bool
    follow_up_sent_at: datetime | None
    last_error: str | None
    created_at: datetime


@dataclass(frozen=True)
class AuditNoteRecord:
    note_id: str
    client_id: str
    reminder_id: str | None
    content: str
    author: str
    created_at: datetime


class ReminderRepository(Protocol):
    def reset(self) -> None: ...

    def upsert_client(self, client: ClientRecord) -> ClientRecord: ...

    def get_client(self, client_id: str) -> ClientRecord | None: ...

    def find_client_by_phone(self, phone: str) -> ClientRecord | None: ...

    def create_reminder(self, *, client_id: str, due_date: date | None, status: ReminderStatus) -> ReminderRecord: ...

    def get_reminder(self, reminder_id: str) -> ReminderRecord | None: ...

    def list_reminders(self) -> list[ReminderRecord]: ...

    def set_status(self, reminder_id: str, *, status: ReminderStatus, now: datetime) -> ReminderRecord: ...

    def record_send_success(
        self,
        reminder_id: str,
        *,
        status: ReminderStatus,
        marker: str,
        sent_at: datetime,
    ) -> ReminderRecord: ...

    def record_send_failure(self, reminder_id: str, *, error_message: str, now: datetime) -> ReminderRecord: ...

    def hold_for_response(self, client_id: str, *, now: datetime) -> list[ReminderRecord]: ...

    def mark_follow_up_sent(self, reminder_id: str, *, now: datetime) -> ReminderRecord: ...

    def append_note(self, *, client_id: str, reminder_id: str | None, content: str, author: str = "system") -> AuditNoteRecord: ...

    def list_notes(self, *, reminder_id: str) -> list[AuditNoteRecord]: ...


class InMemoryReminderRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._reminder_counter = count(1)
        self._note_counter = count(1)
        self._clients: dict[str, ClientRecord] = {}
        self._reminders: dict[str, ReminderRecord] = {}
        self._notes: list[AuditNoteRecord] = []

    def reset(self) -> None:
        with self._lock:
            self._reminder_counter = count(1)
            self._note_counter = count(1)
            self._clients.clear()
            self._reminders.clear()
            self._notes.clear()

    def upsert_client(self, client: ClientRecord) -> ClientRecord:
        with self._lock:
            existing = self._clients.get(client.client_id)
            if existing is not None:
                client = ClientRecord(**{**client.__dict__, "created_at": existing.created_at})
            self._clients[client.client_id] = client
            return client

    def get_client(self, client_id: str) -> ClientRecord | None:
        return self._clients.get(client_id)

    def find_client_by_phone(self, phone: str) -> ClientRecord | None:
        with self._lock:
            for client in self._clients.values():
                if phones_match(client.phone, phone):
                    return client
        return None

    def create_reminder(self, *, client_id: str, due_date: date | None, status: ReminderStatus) -> ReminderRecord:
        with self._lock:
            if client_id not in self._clients:
                raise ClientNotFoundError(client_id)
            now = _now_utc()
            reminder = ReminderRecord(
                reminder_id=f"rem_{next(self._reminder_counter):06d}",
                client_id=client_id,
                due_date=due_date,
                status=status,
                status_changed_at=now,
                last_reminder_sent=None,
                last_reminder_at=None,
                response_received_at=None,
                follow_up_sent=False,
                follow_up_sent_at=None,
                last_error=None,
                created_at=now,
            )
            self._reminders[reminder.reminder_id] = reminder
            return reminder

    def get_reminder(self, reminder_id: str) -> ReminderRecord | None:
        return self._reminders.get(reminder_id)

    def list_reminders(self) -> list[ReminderRecord]:
        with self._lock:
            return sorted(self._reminders.values(), key=lambda value: value.reminder_id)

    def set_status(self, reminder_id: str, *, status: ReminderStatus, now: datetime) -> ReminderRecord:
        return self._update(reminder_id, status=status, status_changed_at=now)

    def record_send_success(
        self,
        reminder_id: str,
        *,
        status: ReminderStatus,
        marker: str,
        sent_at: datetime,
    ) -> ReminderRecord:
        return self._update(
            reminder_id,
            status=status,
            status_changed_at=sent_at,
            last_reminder_sent=marker,
            last_reminder_at=sent_at,
            last_error=None,
        )

    def record_send_failure(self, reminder_id: str, *, error_message: str, now: datetime) -> ReminderRecord:
        return self._update(reminder_id, status="failed", status_changed_at=now, last_error=error_message)

    def hold_for_response(self, client_id: str, *, now: datetime) -> list[ReminderRecord]:
        held: list[ReminderRecord] = []
        with self._lock:
            for reminder_id, reminder in self._reminders.items():
                if reminder.client_id != client_id or reminder.status not in ACTIVE_WORKFLOW_STATUSES:
                    continue
                updated = ReminderRecord(
                    **{
                        **reminder.__dict__,
                        "status": "onhold",
                        "status_changed_at": now,
                        "response_received_at": now,
                    }
                )
                self._reminders[reminder_id] = updated
                held.append(updated)
        return held

    def mark_follow_up_sent(self, reminder_id: str, *, now: datetime) -> ReminderRecord:
        return self._update(reminder_id, follow_up_sent=True, follow_up_sent_at=now)

    def append_note(self, *, client_id: str, reminder_id: str | None, content: str, author: str = "system") -> AuditNoteRecord:
        with self._lock:
            note = AuditNoteRecord(
                note_id=f"note_{next(self._note_counter):06d}",
                client_id=client_id,
                reminder_id=reminder_id,
                content=content,
                author=author,
                created_at=_now_utc(),
            )
            self._notes.append(note)
            return note

    def list_notes(self, *, reminder_id: str) -> list[AuditNoteRecord]:
        with self._lock:
            return [note for note in self._notes if note.reminder_id == reminder_id]

    def _update(self, reminder_id: str, **values: object) -> ReminderRecord:
        with self._lock:
            current = self._reminders.get(reminder_id)
            if current is None:
                raise ReminderNotFoundError(reminder_id)
            updated = ReminderRecord(**{**current.__dict__, **values})
            self._reminders[reminder_id] = updated
            return updated


class RemindersBase(DeclarativeBase):
    pass


class _ClientRow(RemindersBase):
    __tablename__ = "clients"

    client_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    phone: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    vehicle: Mapped[str | None] = mapped_column(String(256), nullable=True)
    make: Mapped[str | None] = mapped_column(String(128), nullable=True)
    model: Mapped[str | None] = mapped_column(String(128), nullable=True)
    registration: Mapped[str | None] = mapped_column(String(32), nullable=True)
    last_visit_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    facility_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    facility_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    whatsapp_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _ReminderRow(RemindersBase):
    __tablename__ = "reminders"

    reminder_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    client_id: Mapped[str] = mapped_column(String(128), ForeignKey("clients.client_id"), nullable=False, index=True)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    status_changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_reminder_sent: Mapped[str | None] = mapped_column(String(32), nullable=True)
    last_reminder_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    response_received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    follow_up_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    follow_up_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _ClientNoteRow(RemindersBase):
    __tablename__ = "client_notes"

    note_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    client_id: Mapped[str] = mapped_column(String(128), ForeignKey("clients.client_id"), nullable=False, index=True)
    reminder_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    author: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SqlAlchemyReminderRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for REMINDER_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            RemindersBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_ClientNoteRow).delete()
                session.query(_ReminderRow).delete()
                session.query(_ClientRow).delete()

    def upsert_client(self, client: ClientRecord) -> ClientRecord:
        with self._session() as session:
            with session.begin():
                row = session.get(_ClientRow, client.client_id)
                if row is None:
                    row = _ClientRow(client_id=client.client_id, created_at=client.created_at)
                    session.add(row)
                row.name = client.name
                row.phone = client.phone
                row.vehicle = client.vehicle
                row.make = client.make
                row.model = client.model
                row.registration = client.registration
                row.last_visit_date = client.last_visit_date
                row.facility_id = client.facility_id
                row.facility_name = client.facility_name
                row.whatsapp_available = client.whatsapp_available
                session.flush()
                return self._client_record(row)

    def get_client(self, client_id: str) -> ClientRecord | None:
        with self._session() as session:
            row = session.get(_ClientRow, client_id)
            return self._client_record(row) if row is not None else None

    def find_client_by_phone(self, phone: str) -> ClientRecord | None:
        with self._session() as session:
            for row in session.scalars(select(_ClientRow).order_by(_ClientRow.created_at.asc())):
                if phones_match(row.phone, phone):
                    return self._client_record(row)
        return None

    def create_reminder(self, *, client_id: str, due_date: date | None, status: ReminderStatus) -> ReminderRecord:
        now = _now_utc()
        with self._session() as session:
            with session.begin():
                if session.get(_ClientRow, client_id) is None:
                    raise ClientNotFoundError(client_id)
                row = _ReminderRow(
                    reminder_id=f"rem_{secrets.token_hex(8)}",
                    client_id=client_id,
                    due_date=due_date,
                    status=status,
                    status_changed_at=now,
                    follow_up_sent=False,
                    created_at=now,
                )
                session.add(row)
                session.flush()
                return self._reminder_record(row)

    def get_reminder(self, reminder_id: str) -> ReminderRecord | None:
        with self._session() as session:
            row = session.get(_ReminderRow, reminder_id)
            return self._reminder_record(row) if row is not None else None

    def list_reminders(self) -> list[ReminderRecord]:
        with self._session() as session:
            rows = session.scalars(select(_ReminderRow).order_by(_ReminderRow.created_at.asc())).all()
            return [self._reminder_record(row) for row in rows]

    def set_status(self, reminder_id: str, *, status: ReminderStatus, now: datetime) -> ReminderRecord:
        return self._update(reminder_id, status=status, status_changed_at=now)

    def record_send_success(
        self,
        reminder_id: str,
        *,
        status: ReminderStatus,
        marker: str,
        sent_at: datetime,
    ) -> ReminderRecord:
        return self._update(
            reminder_id,
            status=status,
            status_changed_at=sent_at,
            last_reminder_sent=marker,
            last_reminder_at=sent_at,
            last_error=None,
        )

    def record_send_failure(self, reminder_id: str, *, error_message: str, now: datetime) -> ReminderRecord:
        return self._update(reminder_id, status="failed", status_changed_at=now, last_error=error_message)

    def hold_for_response(self, client_id: str, *, now: datetime) -> list[ReminderRecord]:
        with self._session() as session:
            with session.begin():
                rows = session.scalars(
                    select(_ReminderRow)
                    .where(_ReminderRow.client_id == client_id)
                    .where(_ReminderRow.status.in_(sorted(ACTIVE_WORKFLOW_STATUSES)))
                ).all()
                for row in rows:
                    row.status = "onhold"
                    row.status_changed_at = now
                    row.response_received_at = now
                session.flush()
                return [self._reminder_record(row) for row in rows]

    def mark_follow_up_sent(self, reminder_id: str, *, now: datetime) -> ReminderRecord:
        return self._update(reminder_id, follow_up_sent=True, follow_up_sent_at=now)

    def append_note(self, *, client_id: str, reminder_id: str | None, content: str, author: str = "system") -> AuditNoteRecord:
        with self._session() as session:
            with session.begin():
                row = _ClientNoteRow(
                    note_id=f"note_{secrets.token_hex(8)}",
                    client_id=client_id,
                    reminder_id=reminder_id,
                    content=content,
                    author=author,
                    created_at=_now_utc(),
                )
                session.add(row)
                session.flush()
                return self._note_record(row)

    def list_notes(self, *, reminder_id: str) -> list[AuditNoteRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_ClientNoteRow)
                .where(_ClientNoteRow.reminder_id == reminder_id)
                .order_by(_ClientNoteRow.created_at.asc())
            ).all()
            return [self._note_record(row) for row in rows]

    def _update(self, reminder_id: str, **values: object) -> ReminderRecord:
        with self._session() as session:
            with session.begin():
                row = session.get(_ReminderRow, reminder_id)
                if row is None:
                    raise ReminderNotFoundError(reminder_id)
                for key, value in values.items():
                    setattr(row, key, value)
                session.flush()
                return self._reminder_record(row)

    @staticmethod
    def _client_record(row: _ClientRow) -> ClientRecord:
        return ClientRecord(
            client_id=row.client_id,
            name=row.name,
            phone=row.phone,
            vehicle=row.vehicle,
            make=row.make,
            model=row.model,
            registration=row.registration,
            last_visit_date=row.last_visit_date,
            facility_id=row.facility_id,
            facility_name=row.facility_name,
            whatsapp_available=row.whatsapp_available,
            created_at=_coerce_utc(row.created_at),  # type: ignore[arg-type]
        )

    @staticmethod
    def _reminder_record(row: _ReminderRow) -> ReminderRecord:
        return ReminderRecord(
            reminder_id=row.reminder_id,
            client_id=row.client_id,
            due_date=row.due_date,
            status=row.status,  # type: ignore[arg-type]
            status_changed_at=_coerce_utc(row.status_changed_at),  # type: ignore[arg-type]
            last_reminder_sent=row.last_reminder_sent,
            last_reminder_at=_coerce_utc(row.last_reminder_at),
            response_received_at=_coerce_utc(row.response_received_at),
            follow_up_sent=row.follow_up_sent,
            follow_up_sent_at=_coerce_utc(row.follow_up_sent_at),
            last_error=row.last_error,
            created_at=_coerce_utc(row.created_at),  # type: ignore[arg-type]
        )

    @staticmethod
    def _note_record(row: _ClientNoteRow) -> AuditNoteRecord:
        return AuditNoteRecord(
            note_id=row.note_id,
            client_id=row.client_id,
            reminder_id=row.reminder_id,
            content=row.content,
            author=row.author,
            created_at=_coerce_utc(row.created_at),  # type: ignore[arg-type]
        )


def create_reminder_repository(*, backend: str, database_url: str) -> ReminderRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyReminderRepository(database_url)
    return InMemoryReminderRepository()
