from __future__ import annotations

import json
import logging
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from fastapi import APIRouter, HTTPException, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse

from .config import Settings, get_settings
from .conversations import (
    ConversationNotFoundError,
    ConversationRepository,
    ConversationService,
    create_conversation_repository,
)
from .facilities import FacilityDirectory, FacilityRecord
from .followups import FollowUpService
from .models import (
    AuditNoteItem,
    BatchSendRequest,
    BatchSendResult,
    ClientItem,
    ClientUpsertRequest,
    ClientUpsertResponse,
    ConversationDetailResponse,
    ConversationListResponse,
    DashboardFilter,
    DashboardResponse,
    FacilityItem,
    FacilityListResponse,
    FacilityReplaceRequest,
    FollowUpRunRequest,
    FollowUpRunResult,
    ReconcileOutcome,
    ReminderCreateRequest,
    ReminderCreateResponse,
    ReminderDetailResponse,
    ReminderItem,
    ReminderStatusUpdateRequest,
    ScheduleRunRequest,
    ScheduleRunResult,
    SendReminderRequest,
    SendReminderResult,
    StatusLogEntryItem,
    StatusLogListResponse,
    SweepSummary,
    WebhookIngestResult,
)
from .orchestrator import FixedDelayPacing, PacingPolicy, ReminderSendService
from .reconciliation import StatusReconciler, SweepRunner
from .reminders import (
    AuditNoteRecord,
    ClientNotFoundError,
    ClientRecord,
    ReminderNotFoundError,
    ReminderRecord,
    ReminderRepository,
    create_reminder_repository,
)
from .schedule import ReminderScheduleService
from .status_log import StatusLogRepository, create_status_log_repository
from .urgency import ReminderView, build_pipeline, build_urgent_actions, compute_counts
from .webhooks import UnsupportedWebhookObjectError, WebhookIngestionService, verify_handshake, verify_signature
from .whatsapp import HttpWhatsAppSender, StubWhatsAppSender, WhatsAppSender

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/reminders", tags=["reminders"])


def _create_sender(settings: Settings) -> WhatsAppSender:
    if settings.whatsapp_sender_type == "http":
        return HttpWhatsAppSender(
            api_token=settings.whatsapp_api_token,
            phone_id=settings.whatsapp_phone_id,
            base_url=settings.whatsapp_api_base_url,
            api_version=settings.whatsapp_graph_version,
            timeout_seconds=settings.whatsapp_timeout_seconds,
        )
    return StubWhatsAppSender(enabled=settings.whatsapp_enabled)


reminder_repo: ReminderRepository = create_reminder_repository(
    backend=_settings.reminder_store_backend,
    database_url=_settings.database_url,
)
conversation_repo: ConversationRepository = create_conversation_repository(
    backend=_settings.reminder_store_backend,
    database_url=_settings.database_url,
)
status_log_repo: StatusLogRepository = create_status_log_repository(
    backend=_settings.reminder_store_backend,
    database_url=_settings.database_url,
)
facility_directory = FacilityDirectory()
whatsapp_sender: WhatsAppSender = _create_sender(_settings)
send_pacing: PacingPolicy = FixedDelayPacing(_settings.send_delay_seconds)
reconciler = StatusReconciler(
    status_log=status_log_repo,
    conversations=conversation_repo,
    cutoff_minutes=_settings.sweep_cutoff_minutes,
)
sweep_runner = SweepRunner(reconciler, interval_seconds=_settings.sweep_interval_seconds)
conversation_service = ConversationService(repository=conversation_repo)
ingestion_service = WebhookIngestionService(
    reminders=reminder_repo,
    conversations=conversation_repo,
    status_log=status_log_repo,
)


def _send_service() -> ReminderSendService:
    # Built per call so tests can swap ``whatsapp_sender`` and ``send_pacing``.
    return ReminderSendService(
        reminders=reminder_repo,
        conversations=conversation_repo,
        facilities=facility_directory,
        sender=whatsapp_sender,
        reconciler=reconciler,
        settings=_settings,
        pacing=send_pacing,
    )


def _followup_service() -> FollowUpService:
    return FollowUpService(
        reminders=reminder_repo,
        conversations=conversation_repo,
        sender=whatsapp_sender,
        settings=_settings,
        pacing=send_pacing,
    )


def _schedule_service() -> ReminderScheduleService:
    return ReminderScheduleService(
        reminders=reminder_repo,
        send_service=_send_service(),
        settings=_settings,
        pacing=send_pacing,
    )


def reset_runtime_state_for_tests() -> None:
    reminder_repo.reset()
    conversation_repo.reset()
    status_log_repo.reset()
    facility_directory.invalidate()


def _business_zone() -> ZoneInfo:
    return ZoneInfo(_settings.business_timezone)


def _business_today() -> date:
    return datetime.now(_business_zone()).date()


def _client_item(record: ClientRecord) -> ClientItem:
    return ClientItem(**record.__dict__)


def _reminder_item(record: ReminderRecord) -> ReminderItem:
    return ReminderItem(**record.__dict__)


def _note_item(record: AuditNoteRecord) -> AuditNoteItem:
    return AuditNoteItem(**record.__dict__)


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------


@router.get("/webhook")
def verify_webhook(
    hub_mode: str | None = Query(default=None, alias="hub.mode"),
    hub_verify_token: str | None = Query(default=None, alias="hub.verify_token"),
    hub_challenge: str | None = Query(default=None, alias="hub.challenge"),
):
    challenge = verify_handshake(
        hub_mode,
        hub_verify_token,
        hub_challenge,
        verify_token=_settings.whatsapp_verify_token,
    )
    if challenge is None:
        logger.warning("webhook verification refused (mode=%s)", hub_mode)
        return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"error": "verification failed"})
    return PlainTextResponse(challenge)


@router.post("/webhook", response_model=WebhookIngestResult)
async def receive_webhook(request: Request):
    body = await request.body()
    verification = verify_signature(
        mode=_settings.whatsapp_signature_mode,
        app_secret=_settings.whatsapp_app_secret,
        body=body,
        signature_header=request.headers.get("X-Hub-Signature-256"),
    )
    if not verification.verified:
        if _settings.whatsapp_signature_mode == "enforce":
            logger.warning("webhook rejected: %s", verification.reason)
            return WebhookIngestResult(success=False, error=verification.reason)
        logger.info("webhook signature not verified (%s); accepted in log_only mode", verification.reason)

    try:
        payload = json.loads(body or b"{}")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="invalid webhook payload") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="invalid webhook payload")

    try:
        return await run_in_threadpool(ingestion_service.ingest, payload)
    except UnsupportedWebhookObjectError as exc:
        raise HTTPException(status_code=400, detail="invalid webhook object") from exc


# ---------------------------------------------------------------------------
# Clients and reminders
# ---------------------------------------------------------------------------


@router.post("/clients", response_model=ClientUpsertResponse)
def upsert_clients(payload: ClientUpsertRequest) -> ClientUpsertResponse:
    now = datetime.now(timezone.utc)
    records = [
        reminder_repo.upsert_client(ClientRecord(**item.model_dump(), created_at=now))
        for item in payload.clients
    ]
    return ClientUpsertResponse(processed_count=len(records), clients=[_client_item(value) for value in records])


@router.post("/reminders", response_model=ReminderCreateResponse, status_code=status.HTTP_201_CREATED)
def create_reminders(payload: ReminderCreateRequest) -> ReminderCreateResponse:
    created: list[ReminderRecord] = []
    for item in payload.reminders:
        try:
            created.append(reminder_repo.create_reminder(client_id=item.client_id, due_date=item.due_date, status=item.status))
        except ClientNotFoundError as exc:
            raise HTTPException(status_code=404, detail=f"client not found: {item.client_id}") from exc
    return ReminderCreateResponse(processed_count=len(created), reminders=[_reminder_item(value) for value in created])


@router.get("/reminders/{reminder_id}", response_model=ReminderDetailResponse)
def get_reminder(reminder_id: str) -> ReminderDetailResponse:
    record = reminder_repo.get_reminder(reminder_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"reminder not found: {reminder_id}")
    notes = reminder_repo.list_notes(reminder_id=reminder_id)
    return ReminderDetailResponse(reminder=_reminder_item(record), notes=[_note_item(value) for value in notes])


@router.post("/reminders/{reminder_id}/status", response_model=ReminderItem)
def update_reminder_status(reminder_id: str, payload: ReminderStatusUpdateRequest) -> ReminderItem:
    try:
        record = reminder_repo.set_status(reminder_id, status=payload.status, now=datetime.now(timezone.utc))
    except ReminderNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"reminder not found: {reminder_id}") from exc
    return _reminder_item(record)


# ---------------------------------------------------------------------------
# Sending
# ---------------------------------------------------------------------------


@router.post("/send", response_model=SendReminderResult)
def send_reminder(payload: SendReminderRequest):
    result = _send_service().send_reminder(payload.reminder_id, payload.phone)
    if result.error_kind == "validation":
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=result.model_dump(mode="json"))
    return result


@router.post("/send/batch", response_model=BatchSendResult)
def send_batch(payload: BatchSendRequest) -> BatchSendResult:
    return _send_service().send_batch(payload.items)


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


@router.post("/reconcile/sweep", response_model=SweepSummary)
def run_sweep() -> SweepSummary:
    return reconciler.sweep()


@router.post("/reconcile/{provider_message_id}", response_model=ReconcileOutcome)
def reconcile_message(provider_message_id: str) -> ReconcileOutcome:
    return reconciler.reconcile(provider_message_id)


@router.get("/status-log/{provider_message_id}", response_model=StatusLogListResponse)
def list_status_log(provider_message_id: str) -> StatusLogListResponse:
    entries = status_log_repo.list_entries(provider_message_id)
    return StatusLogListResponse(items=[StatusLogEntryItem(**entry.__dict__) for entry in entries])


# ---------------------------------------------------------------------------
# Inbox
# ---------------------------------------------------------------------------


@router.get("/conversations", response_model=ConversationListResponse)
def list_conversations(limit: int = Query(default=100, ge=1, le=500)) -> ConversationListResponse:
    return conversation_service.list_conversations(limit=limit)


@router.get("/conversations/{conversation_id}", response_model=ConversationDetailResponse)
def get_conversation(conversation_id: str) -> ConversationDetailResponse:
    try:
        return conversation_service.get_conversation_detail(conversation_id)
    except ConversationNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"conversation not found: {conversation_id}") from exc


# ---------------------------------------------------------------------------
# Facilities, dashboard, schedule, follow-ups
# ---------------------------------------------------------------------------


@router.post("/facilities", response_model=FacilityListResponse)
def replace_facilities(payload: FacilityReplaceRequest) -> FacilityListResponse:
    facility_directory.replace(FacilityRecord(**item.model_dump()) for item in payload.facilities)
    return FacilityListResponse(items=payload.facilities)


@router.get("/facilities", response_model=FacilityListResponse)
def list_facilities() -> FacilityListResponse:
    return FacilityListResponse(items=[FacilityItem(**value.__dict__) for value in facility_directory.all()])


@router.get("/dashboard", response_model=DashboardResponse)
def get_dashboard(
    facility_id: str | None = None,
    filter: DashboardFilter = "all",
    today: date | None = None,
) -> DashboardResponse:
    zone = _business_zone()
    reference_day = today or _business_today()
    rows = [
        ReminderView.from_records(reminder, reminder_repo.get_client(reminder.client_id))
        for reminder in reminder_repo.list_reminders()
    ]
    return DashboardResponse(
        today=reference_day,
        facility_id=facility_id,
        filter=filter,
        counts=compute_counts(rows, reference_day, facility_id=facility_id, tz=zone),
        urgent_actions=build_urgent_actions(rows, reference_day, facility_id=facility_id, kpi_filter=filter, tz=zone),
        pipeline=build_pipeline(rows, reference_day, facility_id=facility_id),
    )


@router.post("/followups/run", response_model=FollowUpRunResult)
def run_followups(payload: FollowUpRunRequest | None = None) -> FollowUpRunResult:
    now_override = payload.now_override if payload is not None else None
    return _followup_service().run(now=now_override)


@router.post("/schedule/run", response_model=ScheduleRunResult)
def run_schedule(payload: ScheduleRunRequest | None = None) -> ScheduleRunResult:
    today = payload.today if payload is not None else None
    return _schedule_service().run(today or _business_today())
