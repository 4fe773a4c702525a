from __future__ import annotations

from datetime import date, datetime, timezone

from visit_reminders.config import Settings
from visit_reminders.conversations import InMemoryConversationRepository
from visit_reminders.facilities import FacilityDirectory, FacilityRecord
from visit_reminders.models import SendReminderRequest
from visit_reminders.orchestrator import (
    PARTIAL_FAILURE_MESSAGE,
    FixedDelayPacing,
    ReminderSendService,
    add_years,
    build_template_variables,
    split_vehicle,
)
from visit_reminders.reconciliation import StatusReconciler
from visit_reminders.reminders import ClientRecord, InMemoryReminderRepository
from visit_reminders.status_log import InMemoryStatusLogRepository
from visit_reminders.whatsapp import ProviderSendResult, StubWhatsAppSender, TemplateSendRequest

PHONE = "+33 6 12 34 56 78"


class _RecordingPacing:
    def __init__(self) -> None:
        self.waits = 0

    def wait(self) -> None:
        self.waits += 1


class _StatusWriteFailingRepository(InMemoryReminderRepository):
    def record_send_success(self, reminder_id, *, status, marker, sent_at):  # type: ignore[override]
        raise RuntimeError("connection reset by peer")


class _ExplodingSender:
    def send_template(self, request: TemplateSendRequest) -> ProviderSendResult:
        raise ConnectionResetError("socket closed")


def _client(**overrides) -> ClientRecord:
    values = {
        "client_id": "client-1",
        "name": "Marie Dupont",
        "phone": PHONE,
        "vehicle": "Peugeot 208 GT Line",
        "make": None,
        "model": None,
        "registration": "AB-123-CD",
        "last_visit_date": date(2024, 3, 15),
        "facility_id": None,
        "facility_name": "Autosur Lyon Part-Dieu",
        "whatsapp_available": True,
        "created_at": datetime(2026, 1, 1, tzinfo=timezone.utc),
    }
    values.update(overrides)
    return ClientRecord(**values)


def _service(
    *,
    reminders: InMemoryReminderRepository | None = None,
    sender=None,
    pacing: _RecordingPacing | None = None,
):
    reminders = reminders or InMemoryReminderRepository()
    conversations = InMemoryConversationRepository()
    status_log = InMemoryStatusLogRepository()
    facilities = FacilityDirectory(
        [
            FacilityRecord(
                facility_id="fac-lyon",
                name="AUTOSUR LYON PART DIEU",
                network="AUTOSUR",
                template_name="rappel_lyon",
                phone="+33 4 78 00 00 00",
                short_url="https://rdv.example/lyon",
            )
        ]
    )
    service = ReminderSendService(
        reminders=reminders,
        conversations=conversations,
        facilities=facilities,
        sender=sender or StubWhatsAppSender(),
        reconciler=StatusReconciler(status_log=status_log, conversations=conversations),
        settings=Settings(),
        pacing=pacing or _RecordingPacing(),
    )
    return service, reminders, conversations


def test_send_success_advances_status_and_records_message() -> None:
    sender = StubWhatsAppSender()
    service, reminders, conversations = _service(sender=sender)
    reminders.upsert_client(_client())
    reminder = reminders.create_reminder(client_id="client-1", due_date=date(2026, 3, 15), status="pending")

    result = service.send_reminder(reminder.reminder_id, PHONE)

    assert result.success is True
    assert result.partial_failure is False
    assert result.message_id == "wamid.stub-000001"

    stored = reminders.get_reminder(reminder.reminder_id)
    assert stored.status == "reminder1_sent"
    assert stored.last_reminder_sent == "reminder1"
    assert stored.last_reminder_at is not None

    message = conversations.find_message_by_provider_message_id("wamid.stub-000001")
    assert message is not None
    assert message.direction == "outbound"
    assert message.template_name == "rappel_lyon"
    assert message.metadata["reminder_id"] == reminder.reminder_id
    assert message.metadata["variables"]["make"] == "Peugeot"
    assert message.metadata["variables"]["model"] == "208 GT Line"
    assert message.metadata["variables"]["next_visit"] == "15/03/2026"
    assert message.metadata["variables"]["facility_type"] == "AUTOSUR"

    notes = reminders.list_notes(reminder_id=reminder.reminder_id)
    assert len(notes) == 1
    assert "wamid.stub-000001" in notes[0].content

    request = sender.sent_requests[0]
    assert request.to == "33612345678"
    assert request.components[1]["parameters"][0]["text"] == "https://rdv.example/lyon"


def test_second_send_moves_to_next_reminder_variant() -> None:
    service, reminders, _ = _service()
    reminders.upsert_client(_client())
    reminder = reminders.create_reminder(client_id="client-1", due_date=date(2026, 3, 15), status="reminder1_sent")

    service.send_reminder(reminder.reminder_id, PHONE)

    assert reminders.get_reminder(reminder.reminder_id).status == "reminder2_sent"


def test_missing_phone_is_rejected_before_any_side_effect() -> None:
    sender = StubWhatsAppSender()
    service, reminders, conversations = _service(sender=sender)
    reminders.upsert_client(_client())
    reminder = reminders.create_reminder(client_id="client-1", due_date=None, status="pending")

    result = service.send_reminder(reminder.reminder_id, "   ")

    assert result.success is False
    assert result.error_kind == "validation"
    assert result.error == "phone number is required"
    assert sender.sent_requests == []
    assert conversations.list_conversations(limit=10) == []
    assert reminders.get_reminder(reminder.reminder_id).status == "pending"


def test_validation_messages() -> None:
    service, reminders, _ = _service()
    reminders.upsert_client(_client())
    reminder = reminders.create_reminder(client_id="client-1", due_date=None, status="pending")

    assert service.send_reminder("", PHONE).error == "reminder id is required"
    assert service.send_reminder(reminder.reminder_id, "12-34").error == "invalid phone number"
    assert service.send_reminder("rem_missing", PHONE).error == "reminder not found"


def test_gateway_failure_marks_reminder_failed_with_provider_text() -> None:
    service, reminders, conversations = _service(sender=StubWhatsAppSender(failing_numbers={PHONE}))
    reminders.upsert_client(_client())
    reminder = reminders.create_reminder(client_id="client-1", due_date=date(2026, 3, 15), status="pending")

    result = service.send_reminder(reminder.reminder_id, PHONE)

    assert result.success is False
    assert result.error_kind == "gateway"
    assert result.error == "Recipient phone number not in allowed list"
    stored = reminders.get_reminder(reminder.reminder_id)
    assert stored.status == "failed"
    assert stored.last_error == "Recipient phone number not in allowed list"
    assert conversations.list_conversations(limit=10) == []


def test_sender_exception_becomes_gateway_failure() -> None:
    service, reminders, _ = _service(sender=_ExplodingSender())
    reminders.upsert_client(_client())
    reminder = reminders.create_reminder(client_id="client-1", due_date=None, status="pending")

    result = service.send_reminder(reminder.reminder_id, PHONE)

    assert result.success is False
    assert result.error_kind == "gateway"
    assert result.error == "socket closed"
    assert reminders.get_reminder(reminder.reminder_id).status == "failed"


def test_status_write_failure_after_send_is_partial_success() -> None:
    service, reminders, conversations = _service(reminders=_StatusWriteFailingRepository())
    reminders.upsert_client(_client())
    reminder = reminders.create_reminder(client_id="client-1", due_date=None, status="pending")

    result = service.send_reminder(reminder.reminder_id, PHONE)

    assert result.success is True
    assert result.partial_failure is True
    assert result.error_kind == "persistence"
    assert result.error == PARTIAL_FAILURE_MESSAGE
    assert result.message_id == "wamid.stub-000001"
    assert conversations.find_message_by_provider_message_id("wamid.stub-000001") is not None
    assert reminders.get_reminder(reminder.reminder_id).status == "pending"


def test_batch_is_sequential_paced_and_counts_every_item() -> None:
    pacing = _RecordingPacing()
    service, reminders, _ = _service(sender=StubWhatsAppSender(failing_numbers={"+33 7 00 00 00 00"}), pacing=pacing)
    reminders.upsert_client(_client())
    first = reminders.create_reminder(client_id="client-1", due_date=None, status="pending")
    second = reminders.create_reminder(client_id="client-1", due_date=None, status="pending")

    result = service.send_batch(
        [
            SendReminderRequest(reminder_id=first.reminder_id, phone=PHONE),
            SendReminderRequest(reminder_id=second.reminder_id, phone="+33 7 00 00 00 00"),
            SendReminderRequest(reminder_id="", phone=PHONE),
        ]
    )

    assert result.total == 3
    assert result.sent == 1
    assert result.failed == 2
    assert len(result.results) == 3
    assert [item.error_kind for item in result.results] == [None, "gateway", "validation"]
    assert pacing.waits == 2


def test_fixed_delay_pacing_uses_injected_sleep() -> None:
    slept: list[float] = []
    FixedDelayPacing(0.5, sleep=slept.append).wait()
    FixedDelayPacing(0, sleep=slept.append).wait()

    assert slept == [0.5]


def test_template_variables_fill_placeholders_and_derive_due_date() -> None:
    client = _client(
        vehicle=None,
        registration=None,
        last_visit_date=date(2024, 2, 29),
        facility_name=None,
    )
    reminder = InMemoryReminderRepository()
    reminder.upsert_client(client)
    record = reminder.create_reminder(client_id="client-1", due_date=None, status="pending")

    variables = build_template_variables(client, record, None)

    assert variables.previous_visit == "29/02/2024"
    assert variables.next_visit == "28/02/2026"
    assert variables.make == "N/A"
    assert variables.model == "N/A"
    assert variables.registration == "N/A"
    assert variables.facility_type == "N/A"
    assert variables.facility_name == "N/A"


def test_add_years_and_split_vehicle() -> None:
    assert add_years(date(2023, 6, 1), 2) == date(2025, 6, 1)
    assert add_years(date(2024, 2, 29), 4) == date(2028, 2, 29)
    assert split_vehicle("Renault Clio IV") == ("Renault", "Clio IV")
    assert split_vehicle("Dacia") == ("Dacia", "")
    assert split_vehicle(None) == ("", "")
