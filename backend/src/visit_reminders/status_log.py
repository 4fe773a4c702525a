from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Any, Protocol, Sequence

from sqlalchemy import Boolean, DateTime, Integer, String, Text, create_engine, select, update
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_status_errors(errors: list[dict[str, Any]] | None) -> str | None:
    """Render provider error payloads as ``[code] title`` pairs."""
    if not errors:
        return None
    return "; ".join(f"[{error.get('code')}] {error.get('title')}" for error in errors)


@dataclass(frozen=True)
class StatusLogEntryRecord:
    entry_id: int
    provider_message_id: str
    status: str
    errors: list[dict[str, Any]] | None
    recipient_id: str | None
    reported_at: datetime | None
    processed: bool
    processed_at: datetime | None
    message_id: str | None
    created_at: datetime


class StatusLogRepository(Protocol):
    """Append-only log of raw delivery-status callbacks.

    Rows are never deleted. The only mutation is the one-way claim that sets
    ``processed``, ``processed_at`` and ``message_id``.
    """

    def reset(self) -> None: ...

    def append(
        self,
        *,
        provider_message_id: str,
        status: str,
        errors: list[dict[str, Any]] | None,
        recipient_id: str | None,
        reported_at: datetime | None,
    ) -> StatusLogEntryRecord: ...

    def list_entries(self, provider_message_id: str) -> list[StatusLogEntryRecord]: ...

    def list_unprocessed(self, provider_message_id: str) -> list[StatusLogEntryRecord]: ...

    def list_stale_provider_ids(self, *, cutoff: datetime) -> list[str]: ...

    def claim(self, entry_ids: Sequence[int], *, message_id: str, now: datetime) -> list[StatusLogEntryRecord]: ...


class InMemoryStatusLogRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._counter = count(1)
        self._entries: dict[int, StatusLogEntryRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._counter = count(1)
            self._entries.clear()

    def append(
        self,
        *,
        provider_message_id: str,
        status: str,
        errors: list[dict[str, Any]] | None,
        recipient_id: str | None,
        reported_at: datetime | None,
    ) -> StatusLogEntryRecord:
        with self._lock:
            entry = StatusLogEntryRecord(
                entry_id=next(self._counter),
                provider_message_id=provider_message_id,
                status=status,
                errors=list(errors) if errors else None,
                recipient_id=recipient_id,
                reported_at=reported_at,
                processed=False,
                processed_at=None,
                message_id=None,
                created_at=_now_utc(),
            )
            self._entries[entry.entry_id] = entry
            return entry

    def list_entries(self, provider_message_id: str) -> list[StatusLogEntryRecord]:
        with self._lock:
            return [entry for entry in self._entries.values() if entry.provider_message_id == provider_message_id]

    def list_unprocessed(self, provider_message_id: str) -> list[StatusLogEntryRecord]:
        with self._lock:
            return [
                entry
                for entry in self._entries.values()
                if entry.provider_message_id == provider_message_id and not entry.processed
            ]

    def list_stale_provider_ids(self, *, cutoff: datetime) -> list[str]:
        with self._lock:
            provider_ids = {
                entry.provider_message_id
                for entry in self._entries.values()
                if not entry.processed and entry.created_at < cutoff
            }
        return sorted(provider_ids)

    def claim(self, entry_ids: Sequence[int], *, message_id: str, now: datetime) -> list[StatusLogEntryRecord]:
        claimed: list[StatusLogEntryRecord] = []
        with self._lock:
            for entry_id in entry_ids:
                entry = self._entries.get(entry_id)
                if entry is None or entry.processed:
                    continue
                updated = StatusLogEntryRecord(
                    **{
                        **entry.__dict__,
                        "processed": True,
                        "processed_at": now,
                        "message_id": message_id,
                    }
                )
                self._entries[entry_id] = updated
                claimed.append(updated)
        return claimed


class StatusLogBase(DeclarativeBase):
    pass


class _StatusLogRow(StatusLogBase):
    __tablename__ = "whatsapp_status_log"

    entry_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider_message_id: Mapped[str] = mapped_column(String(256), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    errors_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    recipient_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reported_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    message_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class SqlAlchemyStatusLogRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for REMINDER_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            StatusLogBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_StatusLogRow).delete()

    def append(
        self,
        *,
        provider_message_id: str,
        status: str,
        errors: list[dict[str, Any]] | None,
        recipient_id: str | None,
        reported_at: datetime | None,
    ) -> StatusLogEntryRecord:
        with self._session() as session:
            with session.begin():
                row = _StatusLogRow(
                    provider_message_id=provider_message_id,
                    status=status,
                    errors_json=json.dumps(errors, sort_keys=True) if errors else None,
                    recipient_id=recipient_id,
                    reported_at=reported_at,
                    processed=False,
                    processed_at=None,
                    message_id=None,
                    created_at=_now_utc(),
                )
                session.add(row)
                session.flush()
                return self._record(row)

    def list_entries(self, provider_message_id: str) -> list[StatusLogEntryRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_StatusLogRow)
                .where(_StatusLogRow.provider_message_id == provider_message_id)
                .order_by(_StatusLogRow.entry_id.asc())
            ).all()
            return [self._record(row) for row in rows]

    def list_unprocessed(self, provider_message_id: str) -> list[StatusLogEntryRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_StatusLogRow)
                .where(_StatusLogRow.provider_message_id == provider_message_id)
                .where(_StatusLogRow.processed.is_(False))
                .order_by(_StatusLogRow.entry_id.asc())
            ).all()
            return [self._record(row) for row in rows]

    def list_stale_provider_ids(self, *, cutoff: datetime) -> list[str]:
        with self._session() as session:
            rows = session.scalars(
                select(_StatusLogRow.provider_message_id)
                .where(_StatusLogRow.processed.is_(False))
                .where(_StatusLogRow.created_at < cutoff)
                .distinct()
                .order_by(_StatusLogRow.provider_message_id.asc())
            ).all()
            return list(rows)

    def claim(self, entry_ids: Sequence[int], *, message_id: str, now: datetime) -> list[StatusLogEntryRecord]:
        claimed_ids: list[int] = []
        with self._session() as session:
            with session.begin():
                for entry_id in entry_ids:
                    result = session.execute(
                        update(_StatusLogRow)
                        .where(_StatusLogRow.entry_id == entry_id)
                        .where(_StatusLogRow.processed.is_(False))
                        .values(processed=True, processed_at=now, message_id=message_id)
                    )
                    if result.rowcount == 1:
                        claimed_ids.append(entry_id)
            if not claimed_ids:
                return []
            rows = session.scalars(
                select(_StatusLogRow)
                .where(_StatusLogRow.entry_id.in_(claimed_ids))
                .order_by(_StatusLogRow.entry_id.asc())
            ).all()
            return [self._record(row) for row in rows]

    @staticmethod
    def _record(row: _StatusLogRow) -> StatusLogEntryRecord:
        return StatusLogEntryRecord(
            entry_id=row.entry_id,
            provider_message_id=row.provider_message_id,
            status=row.status,
            errors=json.loads(row.errors_json) if row.errors_json else None,
            recipient_id=row.recipient_id,
            reported_at=_coerce_utc(row.reported_at),
            processed=row.processed,
            processed_at=_coerce_utc(row.processed_at),
            message_id=row.message_id,
            created_at=_coerce_utc(row.created_at),  # type: ignore[arg-type]
        )


def create_status_log_repository(*, backend: str, database_url: str) -> StatusLogRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyStatusLogRepository(database_url)
    return InMemoryStatusLogRepository()
