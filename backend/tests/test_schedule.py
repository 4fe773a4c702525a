from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime, timedelta, timezone

from visit_reminders.config import Settings
from visit_reminders.conversations import InMemoryConversationRepository
from visit_reminders.facilities import FacilityDirectory
from visit_reminders.orchestrator import ReminderSendService
from visit_reminders.reminders import ClientRecord, InMemoryReminderRepository
from visit_reminders.schedule import ReminderScheduleService, due_step, step_offsets
from visit_reminders.whatsapp import StubWhatsAppSender

PHONE = "+33612345678"
TODAY = date(2026, 10, 18)


class _RecordingPacing:
    def __init__(self) -> None:
        self.waits = 0

    def wait(self) -> None:
        self.waits += 1


def _add_client(reminders: InMemoryReminderRepository, client_id: str = "client-1", **overrides) -> None:
    values = {
        "client_id": client_id,
        "name": "Marie Dupont",
        "phone": PHONE,
        "vehicle": "Renault Clio",
        "make": None,
        "model": None,
        "registration": "AB-123-CD",
        "last_visit_date": date(2024, 11, 17),
        "facility_id": None,
        "facility_name": None,
        "whatsapp_available": True,
        "created_at": datetime(2026, 1, 1, tzinfo=timezone.utc),
    }
    values.update(overrides)
    reminders.upsert_client(ClientRecord(**values))


def _service(
    reminders: InMemoryReminderRepository,
    *,
    sender: StubWhatsAppSender | None = None,
    settings: Settings | None = None,
    pacing: _RecordingPacing | None = None,
) -> tuple[ReminderScheduleService, StubWhatsAppSender]:
    sender = sender or StubWhatsAppSender()
    settings = settings or Settings()
    send_service = ReminderSendService(
        reminders=reminders,
        conversations=InMemoryConversationRepository(),
        facilities=FacilityDirectory(),
        sender=sender,
        reconciler=None,
        settings=settings,
        pacing=pacing,
    )
    service = ReminderScheduleService(
        reminders=reminders,
        send_service=send_service,
        settings=settings,
        pacing=pacing or _RecordingPacing(),
    )
    return service, sender


def _reminder(reminders: InMemoryReminderRepository, *, due_in: int, status: str = "pending", client_id: str = "client-1"):
    return reminders.create_reminder(client_id=client_id, due_date=TODAY + timedelta(days=due_in), status=status)


def test_step_offsets_are_ordered_and_capped_at_three_steps() -> None:
    settings = replace(Settings(), reminder_step_days=(7, 45, 15, 30))

    assert step_offsets(settings) == (45, 30, 15)
    assert due_step(50, (30, 15, 7)) == 0
    assert due_step(30, (30, 15, 7)) == 1
    assert due_step(10, (30, 15, 7)) == 2
    assert due_step(7, (30, 15, 7)) == 3


def test_reminder_outside_first_offset_is_left_alone() -> None:
    reminders = InMemoryReminderRepository()
    _add_client(reminders)
    reminder = _reminder(reminders, due_in=40)
    service, sender = _service(reminders)

    result = service.run(TODAY)

    assert result.processed == 1
    assert result.skipped == 1
    assert result.items == []
    assert sender.sent_requests == []
    assert reminders.get_reminder(reminder.reminder_id).status == "pending"


def test_steps_advance_on_schedule_then_escalate_to_a_call() -> None:
    reminders = InMemoryReminderRepository()
    _add_client(reminders)
    reminder = _reminder(reminders, due_in=30)
    service, sender = _service(reminders)

    first = service.run(TODAY)
    assert first.whatsapp_sent == 1
    assert first.items[0].step == 1
    assert first.items[0].message_id == "wamid.stub-000001"
    record = reminders.get_reminder(reminder.reminder_id)
    assert record.status == "reminder1_sent"
    assert record.last_reminder_sent == "reminder1"

    assert service.run(TODAY + timedelta(days=1)).whatsapp_sent == 0
    assert service.run(TODAY + timedelta(days=15)).items[0].step == 2
    assert reminders.get_reminder(reminder.reminder_id).status == "reminder2_sent"
    assert service.run(TODAY + timedelta(days=23)).items[0].step == 3
    assert reminders.get_reminder(reminder.reminder_id).status == "reminder3_sent"

    escalation = service.run(TODAY + timedelta(days=27))

    assert escalation.calls_required == 1
    assert escalation.items[0].action == "call_required"
    assert escalation.items[0].step == 4
    assert reminders.get_reminder(reminder.reminder_id).status == "to_be_called"
    assert len(sender.sent_requests) == 3
    assert service.run(TODAY + timedelta(days=28)).processed == 0


def test_running_twice_on_the_same_day_sends_once() -> None:
    reminders = InMemoryReminderRepository()
    _add_client(reminders)
    _reminder(reminders, due_in=20)
    service, sender = _service(reminders)

    service.run(TODAY)
    again = service.run(TODAY)

    assert again.whatsapp_sent == 0
    assert again.skipped == 1
    assert len(sender.sent_requests) == 1


def test_reminder_behind_schedule_catches_up_with_one_message() -> None:
    reminders = InMemoryReminderRepository()
    _add_client(reminders)
    reminder = _reminder(reminders, due_in=10)
    service, sender = _service(reminders)

    result = service.run(TODAY)

    assert result.whatsapp_sent == 1
    assert result.items[0].step == 2
    assert len(sender.sent_requests) == 1
    assert reminders.get_reminder(reminder.reminder_id).status == "reminder2_sent"
    assert reminders.get_reminder(reminder.reminder_id).last_reminder_sent == "reminder2"


def test_overdue_or_imminent_reminder_goes_straight_to_a_call() -> None:
    reminders = InMemoryReminderRepository()
    _add_client(reminders)
    overdue = _reminder(reminders, due_in=-2)
    imminent = _reminder(reminders, due_in=3, status="reminder1_sent")
    service, sender = _service(reminders)

    result = service.run(TODAY)

    assert result.calls_required == 2
    assert sender.sent_requests == []
    assert reminders.get_reminder(overdue.reminder_id).status == "to_be_called"
    assert reminders.get_reminder(imminent.reminder_id).status == "to_be_called"
    notes = reminders.list_notes(reminder_id=overdue.reminder_id)
    assert notes[-1].content == "Scheduled reminder step 4: call required, due in -2 days"


def test_client_without_whatsapp_is_escalated_instead_of_messaged() -> None:
    reminders = InMemoryReminderRepository()
    _add_client(reminders, whatsapp_available=False)
    reminder = _reminder(reminders, due_in=30)
    service, sender = _service(reminders)

    result = service.run(TODAY)

    assert result.calls_required == 1
    assert sender.sent_requests == []
    assert reminders.get_reminder(reminder.reminder_id).status == "to_be_called"


def test_gateway_failure_is_logged_once_and_not_retried() -> None:
    reminders = InMemoryReminderRepository()
    _add_client(reminders)
    reminder = _reminder(reminders, due_in=30)
    service, _ = _service(reminders, sender=StubWhatsAppSender(failing_numbers={PHONE}))

    result = service.run(TODAY)

    assert result.errors == 1
    assert result.items[0].action == "whatsapp_failed"
    assert reminders.get_reminder(reminder.reminder_id).status == "failed"
    assert service.run(TODAY + timedelta(days=1)).processed == 0


def test_step_already_logged_is_not_sent_again_when_status_write_failed() -> None:
    reminders = InMemoryReminderRepository()
    _add_client(reminders)
    reminder = _reminder(reminders, due_in=30)
    service, sender = _service(reminders)

    def _broken_status_write(*args, **kwargs):
        raise RuntimeError("database unavailable")

    reminders.record_send_success = _broken_status_write  # type: ignore[method-assign]

    first = service.run(TODAY)
    second = service.run(TODAY + timedelta(days=1))

    assert first.whatsapp_sent == 1
    assert first.items[0].error == "message sent but status not recorded"
    assert reminders.get_reminder(reminder.reminder_id).status == "pending"
    assert second.items[0].action == "already_processed"
    assert second.skipped == 1
    assert len(sender.sent_requests) == 1


def test_only_workflow_statuses_with_due_dates_are_scheduled() -> None:
    reminders = InMemoryReminderRepository()
    _add_client(reminders)
    for value in ("onhold", "to_be_called", "appointment_confirmed", "closed", "failed"):
        _reminder(reminders, due_in=20, status=value)
    reminders.create_reminder(client_id="client-1", due_date=None, status="pending")
    service, sender = _service(reminders)

    result = service.run(TODAY)

    assert result.processed == 0
    assert sender.sent_requests == []


def test_consecutive_sends_are_paced() -> None:
    reminders = InMemoryReminderRepository()
    _add_client(reminders)
    _add_client(reminders, "client-2", phone="+33698765432")
    _reminder(reminders, due_in=25)
    _reminder(reminders, due_in=12, client_id="client-2")
    pacing = _RecordingPacing()
    service, sender = _service(reminders, pacing=pacing)

    result = service.run(TODAY)

    assert result.whatsapp_sent == 2
    assert pacing.waits == 1
    # Closest due date first.
    assert [request.to for request in sender.sent_requests] == ["33698765432", "33612345678"]


def test_custom_offsets_shift_the_schedule() -> None:
    reminders = InMemoryReminderRepository()
    _add_client(reminders)
    reminder = _reminder(reminders, due_in=20)
    settings = replace(Settings(), reminder_step_days=(14, 7), reminder_call_days=1)
    service, sender = _service(reminders, settings=settings)

    assert service.run(TODAY).items == []
    assert service.run(TODAY + timedelta(days=13)).items[0].step == 2
    assert reminders.get_reminder(reminder.reminder_id).status == "reminder2_sent"
    assert service.run(TODAY + timedelta(days=19)).items[0].step == 3
    assert reminders.get_reminder(reminder.reminder_id).status == "to_be_called"
    assert len(sender.sent_requests) == 1
