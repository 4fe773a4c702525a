from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

DeliveryStatus = Literal["failed", "sent", "delivered", "read"]
MessageStatus = Literal["failed", "sent", "delivered", "read", "received"]
MessageDirection = Literal["outbound", "inbound"]
ConversationStatus = Literal["open", "closed"]
ReminderStatus = Literal[
    "new",
    "pending",
    "reminder1_sent",
    "reminder2_sent",
    "reminder3_sent",
    "onhold",
    "to_be_called",
    "to_be_contacted",
    "appointment_confirmed",
    "closed",
    "completed",
    "failed",
]
UrgencyLevel = Literal[1, 2, 3, 4, 5]
DashboardFilter = Literal[
    "all",
    "overdue",
    "due_7_days",
    "due_30_days",
    "actions_waiting",
    "stagnant",
    "confirmed_today",
]
SendErrorKind = Literal["validation", "gateway", "persistence"]
ScheduleAction = Literal["whatsapp_sent", "whatsapp_failed", "call_required", "already_processed"]
FacilityMatchConfidence = Literal["high", "medium", "low"]

STATUS_PRIORITY: dict[str, int] = {
    "failed": 0,
    "sent": 1,
    "delivered": 2,
    "read": 3,
}

FINAL_STATUSES: frozenset[str] = frozenset({"appointment_confirmed", "closed", "completed"})
REMINDER_SENT_STATUSES: frozenset[str] = frozenset({"reminder1_sent", "reminder2_sent", "reminder3_sent"})
ACTION_STATUSES: frozenset[str] = frozenset({"onhold", "to_be_called", "to_be_contacted", "failed"})
# Statuses a client reply pulls out of the automated workflow.
ACTIVE_WORKFLOW_STATUSES: frozenset[str] = frozenset(
    {"new", "pending", "reminder1_sent", "reminder2_sent", "reminder3_sent", "to_be_called"}
)


def status_priority(status: str | None) -> int:
    if status is None:
        return -1
    return STATUS_PRIORITY.get(status, -1)


def next_sent_status(current: str) -> ReminderStatus:
    if current == "reminder1_sent":
        return "reminder2_sent"
    if current in {"reminder2_sent", "reminder3_sent"}:
        return "reminder3_sent"
    return "reminder1_sent"


def reminder_sent_marker(status: str) -> str:
    return status.removesuffix("_sent")


def _strip_or_none(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


class ClientUpsertItem(BaseModel):
    client_id: str = Field(min_length=1, max_length=128)
    name: str | None = Field(default=None, max_length=256)
    phone: str = Field(min_length=1, max_length=64)
    vehicle: str | None = Field(default=None, max_length=256)
    make: str | None = Field(default=None, max_length=128)
    model: str | None = Field(default=None, max_length=128)
    registration: str | None = Field(default=None, max_length=32)
    last_visit_date: date | None = None
    facility_id: str | None = Field(default=None, max_length=128)
    facility_name: str | None = Field(default=None, max_length=256)
    whatsapp_available: bool = True

    @field_validator("name", "vehicle", "make", "model", "registration", "facility_id", "facility_name")
    @classmethod
    def _normalize_optional(cls, value: str | None) -> str | None:
        return _strip_or_none(value)


class ClientUpsertRequest(BaseModel):
    clients: list[ClientUpsertItem] = Field(min_length=1, max_length=1000)


class ClientItem(BaseModel):
    client_id: str
    name: str | None = None
    phone: str
    vehicle: str | None = None
    make: str | None = None
    model: str | None = None
    registration: str | None = None
    last_visit_date: date | None = None
    facility_id: str | None = None
    facility_name: str | None = None
    whatsapp_available: bool
    created_at: datetime


class ClientUpsertResponse(BaseModel):
    processed_count: int
    clients: list[ClientItem]


class ReminderCreateItem(BaseModel):
    client_id: str = Field(min_length=1, max_length=128)
    due_date: date | None = None
    status: ReminderStatus = "new"


class ReminderCreateRequest(BaseModel):
    reminders: list[ReminderCreateItem] = Field(min_length=1, max_length=1000)


class ReminderItem(BaseModel):
    reminder_id: str
    client_id: str
    due_date: date | None = None
    status: ReminderStatus
    status_changed_at: datetime
    last_reminder_sent: str | None = None
    last_reminder_at: datetime | None = None
    response_received_at: datetime | None = None
    follow_up_sent: bool = False
    follow_up_sent_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime


class ReminderCreateResponse(BaseModel):
    processed_count: int
    reminders: list[ReminderItem]


class AuditNoteItem(BaseModel):
    note_id: str
    client_id: str
    reminder_id: str | None = None
    content: str
    author: str
    created_at: datetime


class ReminderDetailResponse(BaseModel):
    reminder: ReminderItem
    notes: list[AuditNoteItem]


class ReminderStatusUpdateRequest(BaseModel):
    status: ReminderStatus


class SendReminderRequest(BaseModel):
    # Blank values are accepted here and rejected by the orchestrator as a typed result.
    reminder_id: str = Field(default="", max_length=128)
    phone: str = Field(default="", max_length=64)


class SendReminderResult(BaseModel):
    success: bool
    reminder_id: str | None = None
    message_id: str | None = None
    error: str | None = None
    error_kind: SendErrorKind | None = None
    partial_failure: bool = False


class BatchSendRequest(BaseModel):
    items: list[SendReminderRequest] = Field(min_length=1, max_length=500)


class BatchSendResult(BaseModel):
    total: int
    sent: int
    failed: int
    results: list[SendReminderResult]


class WebhookIngestResult(BaseModel):
    success: bool
    messages_recorded: int = 0
    statuses_recorded: int = 0
    duplicates: int = 0
    errors: int = 0
    error: str | None = None


class ReconcileOutcome(BaseModel):
    provider_message_id: str
    applied_status: DeliveryStatus | None = None
    message_id: str | None = None
    entries_processed: int = 0
    skipped_reason: str | None = None


class SweepSummary(BaseModel):
    cutoff: datetime
    candidates: int
    reconciled: int
    skipped: int
    failed: int


class StatusLogEntryItem(BaseModel):
    entry_id: int
    provider_message_id: str
    status: str
    errors: list[dict[str, Any]] | None = None
    recipient_id: str | None = None
    reported_at: datetime | None = None
    processed: bool
    processed_at: datetime | None = None
    message_id: str | None = None
    created_at: datetime


class StatusLogListResponse(BaseModel):
    items: list[StatusLogEntryItem]


class ConversationItem(BaseModel):
    conversation_id: str
    client_phone_masked: str
    client_id: str | None = None
    client_name: str | None = None
    status: ConversationStatus
    unread_count: int
    last_message_preview: str | None = None
    last_message_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class ConversationListResponse(BaseModel):
    items: list[ConversationItem]


class MessageItem(BaseModel):
    message_id: str
    provider_message_id: str | None = None
    direction: MessageDirection
    message_type: str
    template_name: str | None = None
    content: str | None = None
    status: MessageStatus
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class ConversationDetailResponse(BaseModel):
    conversation: ConversationItem
    messages: list[MessageItem]


class FacilityItem(BaseModel):
    facility_id: str = Field(min_length=1, max_length=128)
    name: str = Field(min_length=1, max_length=256)
    network: str | None = Field(default=None, max_length=128)
    template_name: str | None = Field(default=None, max_length=128)
    phone: str | None = Field(default=None, max_length=64)
    short_url: str | None = Field(default=None, max_length=512)

    @field_validator("network", "template_name", "phone", "short_url")
    @classmethod
    def _normalize_optional(cls, value: str | None) -> str | None:
        return _strip_or_none(value)


class FacilityReplaceRequest(BaseModel):
    facilities: list[FacilityItem] = Field(max_length=5000)


class FacilityListResponse(BaseModel):
    items: list[FacilityItem]


class UrgentActionItem(BaseModel):
    reminder_id: str
    client_id: str
    client_name: str | None = None
    phone: str | None = None
    facility_id: str | None = None
    facility_name: str | None = None
    whatsapp_available: bool
    due_date: date
    days_until_due: int
    status: ReminderStatus
    status_changed_at: datetime | None = None
    last_action_at: datetime | None = None
    last_reminder_sent: str | None = None
    urgency_level: UrgencyLevel
    is_no_reply: bool


class PipelineItem(BaseModel):
    reminder_id: str
    client_id: str
    client_name: str | None = None
    phone: str | None = None
    facility_name: str | None = None
    make: str | None = None
    model: str | None = None
    registration: str | None = None
    whatsapp_available: bool
    due_date: date
    days_remaining: int
    status: ReminderStatus
    last_reminder_sent: str | None = None


class DashboardCounts(BaseModel):
    overdue: int = 0
    due_7_days: int = 0
    due_30_days: int = 0
    confirmed_today: int = 0
    actions_waiting: int = 0
    stagnant_7_days: int = 0
    stagnant_14_days: int = 0
    total_active: int = 0


class DashboardResponse(BaseModel):
    today: date
    facility_id: str | None = None
    filter: DashboardFilter
    counts: DashboardCounts
    urgent_actions: list[UrgentActionItem]
    pipeline: list[PipelineItem]


class FollowUpRunRequest(BaseModel):
    now_override: datetime | None = None

    @field_validator("now_override")
    @classmethod
    def _normalize_override(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class FollowUpRunResult(BaseModel):
    sent: int = 0
    failed: int = 0
    total: int = 0
    skipped_reason: str | None = None


class ScheduleRunRequest(BaseModel):
    today: date | None = None


class ScheduleItemResult(BaseModel):
    reminder_id: str
    step: int
    action: ScheduleAction
    message_id: str | None = None
    error: str | None = None


class ScheduleRunResult(BaseModel):
    today: date
    processed: int = 0
    whatsapp_sent: int = 0
    calls_required: int = 0
    errors: int = 0
    skipped: int = 0
    items: list[ScheduleItemResult] = Field(default_factory=list)
