from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from .config import Settings
from .models import ReminderStatus, ScheduleItemResult, ScheduleRunResult
from .orchestrator import FixedDelayPacing, PacingPolicy, ReminderSendService
from .reminders import ReminderRecord, ReminderRepository

logger = logging.getLogger(__name__)

STEP_NOTE_PREFIX = "Scheduled reminder step"

_STEP_BY_STATUS: dict[str, int] = {
    "new": 0,
    "pending": 0,
    "reminder1_sent": 1,
    "reminder2_sent": 2,
    "reminder3_sent": 3,
}
_STATUS_BY_STEP: dict[int, ReminderStatus] = {
    1: "reminder1_sent",
    2: "reminder2_sent",
    3: "reminder3_sent",
}


def step_offsets(settings: Settings) -> tuple[int, ...]:
    # Furthest offset first; reminder statuses stop at reminder3_sent.
    return tuple(sorted(settings.reminder_step_days, reverse=True))[: len(_STATUS_BY_STEP)]


def due_step(days_until_due: int, offsets: tuple[int, ...]) -> int:
    """Number of WhatsApp steps whose offset has been reached."""
    return sum(1 for offset in offsets if days_until_due <= offset)


def step_note(step: int, detail: str) -> str:
    return f"{STEP_NOTE_PREFIX} {step}: {detail}"


class ReminderScheduleService:
    """Daily pass moving reminders through the J-n WhatsApp steps, then to a call.

    The reminder status records the step reached and every attempted step is
    written to the audit notes, so a step is never sent twice for one reminder
    even when a send succeeded but its status write did not. A reminder that is
    behind schedule jumps straight to the step due today with a single message.
    """

    def __init__(
        self,
        *,
        reminders: ReminderRepository,
        send_service: ReminderSendService,
        settings: Settings,
        pacing: PacingPolicy | None = None,
    ) -> None:
        self._reminders = reminders
        self._send_service = send_service
        self._settings = settings
        self._offsets = step_offsets(settings)
        self._pacing = pacing or FixedDelayPacing(settings.send_delay_seconds)

    def run(self, today: date | None = None) -> ScheduleRunResult:
        day = today or datetime.now(ZoneInfo(self._settings.business_timezone)).date()
        candidates = sorted(
            (
                reminder
                for reminder in self._reminders.list_reminders()
                if reminder.due_date is not None and reminder.status in _STEP_BY_STATUS
            ),
            key=lambda reminder: reminder.due_date,  # type: ignore[arg-type,return-value]
        )

        result = ScheduleRunResult(today=day, processed=len(candidates))
        gateway_calls = 0
        for reminder in candidates:
            try:
                item = self._process(reminder, day, gateway_calls)
            except Exception:
                logger.exception("scheduled pass could not process reminder %s", reminder.reminder_id)
                result.errors += 1
                continue
            if item is None:
                result.skipped += 1
                continue
            result.items.append(item)
            if item.action == "whatsapp_sent":
                result.whatsapp_sent += 1
                gateway_calls += 1
            elif item.action == "whatsapp_failed":
                result.errors += 1
                gateway_calls += 1
            elif item.action == "call_required":
                result.calls_required += 1
            else:
                result.skipped += 1

        if candidates:
            logger.info(
                "scheduled pass %s: %d reminders, %d sent, %d calls, %d errors, %d skipped",
                day.isoformat(),
                result.processed,
                result.whatsapp_sent,
                result.calls_required,
                result.errors,
                result.skipped,
            )
        return result

    def _process(self, reminder: ReminderRecord, today: date, gateway_calls: int) -> ScheduleItemResult | None:
        days_until_due = (reminder.due_date - today).days  # type: ignore[operator]
        if days_until_due <= self._settings.reminder_call_days:
            return self._escalate(reminder, f"due in {days_until_due} days")

        step = due_step(days_until_due, self._offsets)
        if step <= _STEP_BY_STATUS[reminder.status]:
            return None
        if self._step_logged(reminder.reminder_id, step):
            logger.info("reminder %s step %d already processed", reminder.reminder_id, step)
            return ScheduleItemResult(reminder_id=reminder.reminder_id, step=step, action="already_processed")

        client = self._reminders.get_client(reminder.client_id)
        if client is None or not client.phone or not client.whatsapp_available:
            return self._escalate(reminder, "client cannot be reached on WhatsApp")

        if gateway_calls > 0:
            self._pacing.wait()
        sent = self._send_service.send_reminder(reminder.reminder_id, client.phone, sent_status=_STATUS_BY_STEP[step])
        if sent.error_kind == "validation":
            return self._escalate(reminder, sent.error or "reminder could not be sent")

        if sent.success:
            self._append_note_best_effort(reminder, step_note(step, f"WhatsApp sent ({sent.message_id})"))
            return ScheduleItemResult(
                reminder_id=reminder.reminder_id,
                step=step,
                action="whatsapp_sent",
                message_id=sent.message_id,
                error=sent.error,
            )
        self._append_note_best_effort(reminder, step_note(step, f"WhatsApp failed ({sent.error})"))
        return ScheduleItemResult(reminder_id=reminder.reminder_id, step=step, action="whatsapp_failed", error=sent.error)

    def _escalate(self, reminder: ReminderRecord, reason: str) -> ScheduleItemResult:
        step = len(self._offsets) + 1
        self._reminders.set_status(reminder.reminder_id, status="to_be_called", now=datetime.now(timezone.utc))
        self._append_note_best_effort(reminder, step_note(step, f"call required, {reason}"))
        logger.info("reminder %s escalated to a call: %s", reminder.reminder_id, reason)
        return ScheduleItemResult(reminder_id=reminder.reminder_id, step=step, action="call_required")

    def _step_logged(self, reminder_id: str, step: int) -> bool:
        prefix = step_note(step, "")
        return any(note.content.startswith(prefix) for note in self._reminders.list_notes(reminder_id=reminder_id))

    def _append_note_best_effort(self, reminder: ReminderRecord, content: str) -> None:
        try:
            self._reminders.append_note(client_id=reminder.client_id, reminder_id=reminder.reminder_id, content=content)
        except Exception:
            logger.exception("could not log scheduled step for reminder %s", reminder.reminder_id)
