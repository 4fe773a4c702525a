from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone, tzinfo
from typing import Iterable

from .models import (
    ACTION_STATUSES,
    FINAL_STATUSES,
    REMINDER_SENT_STATUSES,
    DashboardCounts,
    DashboardFilter,
    PipelineItem,
    UrgencyLevel,
    UrgentActionItem,
)
from .reminders import ClientRecord, ReminderRecord

NO_REPLY_AFTER_DAYS = 3
STAGNANT_AFTER_DAYS = 7
LONG_STAGNANT_AFTER_DAYS = 14
PIPELINE_HORIZON_DAYS = 30


@dataclass(frozen=True)
class ReminderView:
    """A reminder joined with the client fields the dashboard needs."""

    reminder_id: str
    client_id: str
    due_date: date | None
    status: str
    status_changed_at: datetime | None
    last_reminder_sent: str | None
    last_reminder_at: datetime | None
    response_received_at: datetime | None
    client_name: str | None = None
    phone: str | None = None
    facility_id: str | None = None
    facility_name: str | None = None
    make: str | None = None
    model: str | None = None
    registration: str | None = None
    whatsapp_available: bool = True

    @classmethod
    def from_records(cls, reminder: ReminderRecord, client: ClientRecord | None) -> ReminderView:
        return cls(
            reminder_id=reminder.reminder_id,
            client_id=reminder.client_id,
            due_date=reminder.due_date,
            status=reminder.status,
            status_changed_at=reminder.status_changed_at,
            last_reminder_sent=reminder.last_reminder_sent,
            last_reminder_at=reminder.last_reminder_at,
            response_received_at=reminder.response_received_at,
            client_name=client.name if client else None,
            phone=client.phone if client else None,
            facility_id=client.facility_id if client else None,
            facility_name=client.facility_name if client else None,
            make=client.make if client else None,
            model=client.model if client else None,
            registration=client.registration if client else None,
            whatsapp_available=client.whatsapp_available if client else True,
        )


def days_until_due(row: ReminderView, today: date) -> int:
    if row.due_date is None:
        raise ValueError(f"reminder {row.reminder_id} has no due date")
    return (row.due_date - today).days


def local_date(moment: datetime, tz: tzinfo) -> date:
    """Calendar day of ``moment`` in the business timezone; naive values are UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(tz).date()


def days_since(moment: datetime | None, today: date, tz: tzinfo = timezone.utc) -> int:
    if moment is None:
        return 0
    return (today - local_date(moment, tz)).days


def urgency_level(days_until_due: int, days_since_status_change: int) -> UrgencyLevel:
    if days_until_due < 0:
        return 1
    if days_until_due <= 3:
        return 2
    if days_until_due <= 7:
        return 3
    if days_since_status_change > STAGNANT_AFTER_DAYS:
        return 4
    return 5


def is_no_reply(row: ReminderView, today: date, tz: tzinfo = timezone.utc) -> bool:
    return (
        row.status in REMINDER_SENT_STATUSES
        and row.response_received_at is None
        and row.last_reminder_at is not None
        and days_since(row.last_reminder_at, today, tz) > NO_REPLY_AFTER_DAYS
    )


def _needs_action(row: ReminderView) -> bool:
    return row.status in ACTION_STATUSES or (row.status in REMINDER_SENT_STATUSES and not row.whatsapp_available)


def _scoped(rows: Iterable[ReminderView], facility_id: str | None) -> list[ReminderView]:
    return [row for row in rows if facility_id is None or row.facility_id == facility_id]


def _active(rows: Iterable[ReminderView]) -> list[ReminderView]:
    return [row for row in rows if row.status not in FINAL_STATUSES and row.due_date is not None]


def _matches_filter(row: ReminderView, today: date, kpi_filter: DashboardFilter, tz: tzinfo) -> bool:
    due_in = days_until_due(row, today)
    stagnant_for = days_since(row.status_changed_at, today, tz)
    if kpi_filter == "all":
        # Level 5 reminders are on track and only show up through an explicit filter.
        return urgency_level(due_in, stagnant_for) < 5
    if kpi_filter == "overdue":
        return due_in < 0
    if kpi_filter == "due_7_days":
        return 0 <= due_in <= 7
    if kpi_filter == "due_30_days":
        return 0 <= due_in <= PIPELINE_HORIZON_DAYS
    if kpi_filter == "actions_waiting":
        return _needs_action(row)
    if kpi_filter == "stagnant":
        return stagnant_for > STAGNANT_AFTER_DAYS
    # confirmed_today: confirmed reminders are final and never urgent.
    return False


def build_urgent_actions(
    rows: Iterable[ReminderView],
    today: date,
    *,
    facility_id: str | None = None,
    kpi_filter: DashboardFilter = "all",
    tz: tzinfo = timezone.utc,
) -> list[UrgentActionItem]:
    items: list[UrgentActionItem] = []
    for row in _active(_scoped(rows, facility_id)):
        if not _matches_filter(row, today, kpi_filter, tz):
            continue
        due_in = days_until_due(row, today)
        items.append(
            UrgentActionItem(
                reminder_id=row.reminder_id,
                client_id=row.client_id,
                client_name=row.client_name,
                phone=row.phone,
                facility_id=row.facility_id,
                facility_name=row.facility_name,
                whatsapp_available=row.whatsapp_available,
                due_date=row.due_date,  # type: ignore[arg-type]
                days_until_due=due_in,
                status=row.status,  # type: ignore[arg-type]
                status_changed_at=row.status_changed_at,
                last_action_at=row.last_reminder_at or row.status_changed_at,
                last_reminder_sent=row.last_reminder_sent,
                urgency_level=urgency_level(due_in, days_since(row.status_changed_at, today, tz)),
                is_no_reply=is_no_reply(row, today, tz),
            )
        )
    items.sort(key=lambda item: (item.urgency_level, item.days_until_due))
    return items


def compute_counts(
    rows: Iterable[ReminderView],
    today: date,
    *,
    facility_id: str | None = None,
    tz: tzinfo = timezone.utc,
) -> DashboardCounts:
    counts = DashboardCounts()
    scoped = _scoped(rows, facility_id)
    for row in scoped:
        # Confirmations are counted even though the status is final.
        if (
            row.status == "appointment_confirmed"
            and row.status_changed_at is not None
            and local_date(row.status_changed_at, tz) == today
        ):
            counts.confirmed_today += 1

    for row in _active(scoped):
        counts.total_active += 1
        due_in = days_until_due(row, today)
        stagnant_for = days_since(row.status_changed_at, today, tz)
        if due_in < 0:
            counts.overdue += 1
        if 0 <= due_in <= 7:
            counts.due_7_days += 1
        if 0 <= due_in <= PIPELINE_HORIZON_DAYS:
            counts.due_30_days += 1
        if _needs_action(row):
            counts.actions_waiting += 1
        if stagnant_for > STAGNANT_AFTER_DAYS:
            counts.stagnant_7_days += 1
        if stagnant_for > LONG_STAGNANT_AFTER_DAYS:
            counts.stagnant_14_days += 1
    return counts


def build_pipeline(
    rows: Iterable[ReminderView],
    today: date,
    *,
    facility_id: str | None = None,
) -> list[PipelineItem]:
    items = [
        PipelineItem(
            reminder_id=row.reminder_id,
            client_id=row.client_id,
            client_name=row.client_name,
            phone=row.phone,
            facility_name=row.facility_name,
            make=row.make,
            model=row.model,
            registration=row.registration,
            whatsapp_available=row.whatsapp_available,
            due_date=row.due_date,  # type: ignore[arg-type]
            days_remaining=days_until_due(row, today),
            status=row.status,  # type: ignore[arg-type]
            last_reminder_sent=row.last_reminder_sent,
        )
        for row in _active(_scoped(rows, facility_id))
        if 0 <= days_until_due(row, today) <= PIPELINE_HORIZON_DAYS
    ]
    items.sort(key=lambda item: item.days_remaining)
    return items
