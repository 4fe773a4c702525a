from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from typing import Callable, Protocol, Sequence

from .config import Settings
from .conversations import ConversationRepository
from .facilities import FacilityDirectory, FacilityRecord, match_facility
from .models import (
    BatchSendResult,
    ReminderStatus,
    SendReminderRequest,
    SendReminderResult,
    next_sent_status,
    reminder_sent_marker,
)
from .phone import clean_phone_number, is_valid_phone, mask_phone
from .reminders import ClientRecord, ReminderRecord, ReminderRepository
from .whatsapp import (
    ProviderSendResult,
    TemplateSendRequest,
    WhatsAppSender,
    build_visit_reminder_components,
)

logger = logging.getLogger(__name__)

PLACEHOLDER = "N/A"
PARTIAL_FAILURE_MESSAGE = "message sent but status not recorded"


class ImmediateReconciler(Protocol):
    def reconcile(self, provider_message_id: str): ...


class PacingPolicy(Protocol):
    def wait(self) -> None: ...


class FixedDelayPacing:
    """Fixed pause between consecutive gateway calls."""

    def __init__(self, delay_seconds: float, *, sleep: Callable[[float], None] = time.sleep) -> None:
        self._delay_seconds = max(0.0, delay_seconds)
        self._sleep = sleep

    def wait(self) -> None:
        if self._delay_seconds > 0:
            self._sleep(self._delay_seconds)


@dataclass(frozen=True)
class TemplateVariables:
    previous_visit: str
    make: str
    model: str
    registration: str
    next_visit: str
    facility_type: str
    facility_name: str

    def body_values(self) -> list[str]:
        return [
            self.previous_visit,
            self.make,
            self.model,
            self.registration,
            self.next_visit,
            self.facility_type,
            self.facility_name,
        ]


def format_visit_date(value: date | None) -> str:
    if value is None:
        return ""
    return value.strftime("%d/%m/%Y")


def add_years(value: date, years: int) -> date:
    try:
        return value.replace(year=value.year + years)
    except ValueError:
        # 29 February on a non-leap target year.
        return value.replace(year=value.year + years, day=28)


def split_vehicle(vehicle: str | None) -> tuple[str, str]:
    parts = (vehicle or "").split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


def resolve_facility(directory: FacilityDirectory, client: ClientRecord | None) -> FacilityRecord | None:
    if client is None:
        return None
    facility = directory.get(client.facility_id)
    if facility is not None:
        return facility
    match = match_facility(directory, client.facility_name)
    return match.facility if match is not None else None


def build_template_variables(
    client: ClientRecord | None,
    reminder: ReminderRecord,
    facility: FacilityRecord | None,
) -> TemplateVariables:
    last_visit = client.last_visit_date if client is not None else None
    due_date = reminder.due_date
    if due_date is None and last_visit is not None:
        due_date = add_years(last_visit, 2)

    make = client.make if client is not None else None
    model = client.model if client is not None else None
    if client is not None and not (make and model):
        parsed_make, parsed_model = split_vehicle(client.vehicle)
        make = make or parsed_make
        model = model or parsed_model

    facility_name = facility.name if facility is not None else (client.facility_name if client is not None else None)
    return TemplateVariables(
        previous_visit=format_visit_date(last_visit) or PLACEHOLDER,
        make=make or PLACEHOLDER,
        model=model or PLACEHOLDER,
        registration=(client.registration if client is not None else None) or PLACEHOLDER,
        next_visit=format_visit_date(due_date) or PLACEHOLDER,
        facility_type=(facility.network if facility is not None else None) or PLACEHOLDER,
        facility_name=facility_name or PLACEHOLDER,
    )


class ReminderSendService:
    def __init__(
        self,
        *,
        reminders: ReminderRepository,
        conversations: ConversationRepository,
        facilities: FacilityDirectory,
        sender: WhatsAppSender,
        reconciler: ImmediateReconciler | None,
        settings: Settings,
        pacing: PacingPolicy | None = None,
    ) -> None:
        self._reminders = reminders
        self._conversations = conversations
        self._facilities = facilities
        self._sender = sender
        self._reconciler = reconciler
        self._settings = settings
        self._pacing = pacing or FixedDelayPacing(settings.send_delay_seconds)

    def send_reminder(
        self,
        reminder_id: str | None,
        phone: str | None,
        *,
        sent_status: ReminderStatus | None = None,
    ) -> SendReminderResult:
        reminder_id = (reminder_id or "").strip()
        phone = (phone or "").strip()
        if not reminder_id:
            return self._validation_error(None, "reminder id is required")
        if not phone:
            return self._validation_error(reminder_id, "phone number is required")
        if not is_valid_phone(phone):
            return self._validation_error(reminder_id, "invalid phone number")

        reminder = self._reminders.get_reminder(reminder_id)
        if reminder is None:
            return self._validation_error(reminder_id, "reminder not found")

        client = self._reminders.get_client(reminder.client_id)
        facility = resolve_facility(self._facilities, client)
        variables = build_template_variables(client, reminder, facility)
        template_name = (facility.template_name if facility is not None else None) or self._settings.reminder_template_name
        cleaned_phone = clean_phone_number(phone)
        request = TemplateSendRequest(
            to=cleaned_phone,
            template_name=template_name,
            language_code=self._settings.reminder_template_language,
            components=build_visit_reminder_components(
                variables.body_values(),
                booking_url=(facility.short_url if facility is not None else None) or "",
                call_phone=(facility.phone if facility is not None else None) or "",
            ),
        )

        logger.info("sending reminder %s to %s", reminder_id, mask_phone(cleaned_phone))
        result = self._call_gateway(request)
        if result.status != "sent" or not result.provider_message_id:
            return self._handle_gateway_failure(reminder, result)

        provider_message_id = result.provider_message_id
        sent_status = sent_status or next_sent_status(reminder.status)
        try:
            self._reminders.record_send_success(
                reminder_id,
                status=sent_status,
                marker=reminder_sent_marker(sent_status),
                sent_at=result.attempted_at,
            )
        except Exception:
            logger.exception("reminder %s sent as %s but status update failed", reminder_id, provider_message_id)
            self._finish_sent(reminder, client, request, variables, provider_message_id)
            return SendReminderResult(
                success=True,
                reminder_id=reminder_id,
                message_id=provider_message_id,
                error=PARTIAL_FAILURE_MESSAGE,
                error_kind="persistence",
                partial_failure=True,
            )

        self._finish_sent(reminder, client, request, variables, provider_message_id)
        logger.info("reminder %s sent: %s", reminder_id, provider_message_id)
        return SendReminderResult(success=True, reminder_id=reminder_id, message_id=provider_message_id)

    def send_batch(self, items: Sequence[SendReminderRequest]) -> BatchSendResult:
        results: list[SendReminderResult] = []
        for index, item in enumerate(items):
            if index > 0:
                self._pacing.wait()
            results.append(self.send_reminder(item.reminder_id, item.phone))
        sent = sum(1 for value in results if value.success)
        return BatchSendResult(total=len(items), sent=sent, failed=len(results) - sent, results=results)

    def _call_gateway(self, request: TemplateSendRequest) -> ProviderSendResult:
        try:
            return self._sender.send_template(request)
        except Exception as exc:
            logger.exception("whatsapp sender raised for %s", mask_phone(request.to))
            return ProviderSendResult(
                status="failed",
                attempted_at=datetime.now(timezone.utc),
                error_code="sender_exception",
                error_message=str(exc) or exc.__class__.__name__,
            )

    def _handle_gateway_failure(self, reminder: ReminderRecord, result: ProviderSendResult) -> SendReminderResult:
        error = result.error_message or result.error_code or "whatsapp send failed"
        logger.warning("reminder %s send failed: %s", reminder.reminder_id, result.error_code)
        try:
            self._reminders.record_send_failure(reminder.reminder_id, error_message=error, now=result.attempted_at)
        except Exception:
            logger.exception("could not record send failure for reminder %s", reminder.reminder_id)
        return SendReminderResult(
            success=False,
            reminder_id=reminder.reminder_id,
            error=error,
            error_kind="gateway",
        )

    def _finish_sent(
        self,
        reminder: ReminderRecord,
        client: ClientRecord | None,
        request: TemplateSendRequest,
        variables: TemplateVariables,
        provider_message_id: str,
    ) -> None:
        self._record_outbound_message_best_effort(reminder, client, request, variables, provider_message_id)
        self._append_audit_note_best_effort(reminder, client, request, variables, provider_message_id)
        self._reconcile_best_effort(provider_message_id)

    def _record_outbound_message_best_effort(
        self,
        reminder: ReminderRecord,
        client: ClientRecord | None,
        request: TemplateSendRequest,
        variables: TemplateVariables,
        provider_message_id: str,
    ) -> None:
        try:
            conversation = self._conversations.create_or_get_conversation(
                phone=request.to,
                client_id=reminder.client_id,
                client_name=client.name if client is not None else None,
            )
            self._conversations.append_message(
                conversation_id=conversation.conversation_id,
                direction="outbound",
                message_type="template",
                content=f"Template: {request.template_name}",
                status="sent",
                provider_message_id=provider_message_id,
                template_name=request.template_name,
                metadata={
                    "reminder_id": reminder.reminder_id,
                    "template_name": request.template_name,
                    "variables": asdict(variables),
                },
            )
        except Exception:
            logger.exception("could not record outbound message %s", provider_message_id)

    def _append_audit_note_best_effort(
        self,
        reminder: ReminderRecord,
        client: ClientRecord | None,
        request: TemplateSendRequest,
        variables: TemplateVariables,
        provider_message_id: str,
    ) -> None:
        client_name = (client.name if client is not None else None) or PLACEHOLDER
        vehicle = " ".join(value for value in (variables.make, variables.model) if value != PLACEHOLDER)
        content = (
            f"WhatsApp reminder sent (template: {request.template_name}) - "
            f"client: {client_name}, vehicle: {vehicle or PLACEHOLDER}, "
            f"due: {variables.next_visit}, id: {provider_message_id}"
        )
        try:
            self._reminders.append_note(client_id=reminder.client_id, reminder_id=reminder.reminder_id, content=content)
        except Exception:
            logger.exception("could not append audit note for reminder %s", reminder.reminder_id)

    def _reconcile_best_effort(self, provider_message_id: str) -> None:
        if self._reconciler is None:
            return
        try:
            self._reconciler.reconcile(provider_message_id)
        except Exception:
            logger.exception("immediate reconciliation failed for %s", provider_message_id)

    @staticmethod
    def _validation_error(reminder_id: str | None, message: str) -> SendReminderResult:
        return SendReminderResult(success=False, reminder_id=reminder_id, error=message, error_kind="validation")
