from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Mapping, Union

from .conversations import ConversationRepository
from .models import WebhookIngestResult
from .phone import clean_phone_number, mask_phone
from .reminders import ReminderRepository
from .status_log import StatusLogRepository, format_status_errors

logger = logging.getLogger(__name__)

WEBHOOK_OBJECT = "whatsapp_business_account"
REPLY_QUOTE_LIMIT = 500

# Type-specific payloads copied into message metadata when present.
_PAYLOAD_KEYS = ("image", "document", "audio", "video", "location", "reaction", "button", "interactive")


class UnsupportedWebhookObjectError(ValueError):
    """Raised when the payload's top-level ``object`` is not a WhatsApp account."""


@dataclass(frozen=True)
class InboundMessageEvent:
    provider_message_id: str
    sender: str
    message_type: str
    content: str | None
    timestamp: str | None
    contact_name: str | None
    payload: dict[str, Any] = field(default_factory=dict)
    kind: Literal["message"] = "message"


@dataclass(frozen=True)
class StatusEvent:
    provider_message_id: str
    status: str
    recipient_id: str | None
    reported_at: datetime | None
    errors: list[dict[str, Any]] | None
    kind: Literal["status"] = "status"


WebhookEvent = Union[InboundMessageEvent, StatusEvent]


@dataclass(frozen=True)
class WebhookSignatureVerification:
    verified: bool
    reason: str | None = None


def verify_handshake(mode: str | None, token: str | None, challenge: str | None, *, verify_token: str) -> str | None:
    """Return the challenge to echo back, or None when the handshake is refused."""
    if mode != "subscribe" or not verify_token or token is None:
        return None
    if not hmac.compare_digest(token, verify_token):
        return None
    return challenge or ""


def verify_signature(*, mode: str, app_secret: str, body: bytes, signature_header: str | None) -> WebhookSignatureVerification:
    if mode == "off":
        return WebhookSignatureVerification(verified=True)
    secret = app_secret.strip()
    if not secret:
        return WebhookSignatureVerification(verified=False, reason="app_secret_missing")
    provided = (signature_header or "").strip()
    if not provided:
        return WebhookSignatureVerification(verified=False, reason="signature_missing")
    provided = provided.removeprefix("sha256=").strip().lower()
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(provided, expected):
        return WebhookSignatureVerification(verified=False, reason="signature_mismatch")
    return WebhookSignatureVerification(verified=True)


def _as_dict_list(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _nested_text(message: Mapping[str, Any], *path: str) -> str | None:
    current: Any = message
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    if isinstance(current, str) and current:
        return current
    return None


def extract_message_content(message: Mapping[str, Any]) -> str | None:
    return (
        _nested_text(message, "text", "body")
        or _nested_text(message, "button", "text")
        or _nested_text(message, "interactive", "button_reply", "title")
        or _nested_text(message, "interactive", "list_reply", "title")
        or _nested_text(message, "image", "caption")
        or _nested_text(message, "document", "caption")
        or _nested_text(message, "video", "caption")
    )


def _parse_epoch(value: Any) -> datetime | None:
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _decode_message(message: dict[str, Any], contact_name: str | None) -> InboundMessageEvent | None:
    provider_message_id = message.get("id")
    sender = message.get("from")
    if not provider_message_id or not sender:
        return None
    return InboundMessageEvent(
        provider_message_id=str(provider_message_id),
        sender=str(sender),
        message_type=str(message.get("type") or "unknown"),
        content=extract_message_content(message),
        timestamp=str(message["timestamp"]) if message.get("timestamp") is not None else None,
        contact_name=contact_name,
        payload={key: message[key] for key in _PAYLOAD_KEYS if key in message},
    )


def _decode_status(status: dict[str, Any]) -> StatusEvent | None:
    provider_message_id = status.get("id")
    reported = status.get("status")
    if not provider_message_id or not reported:
        return None
    errors = _as_dict_list(status.get("errors")) or None
    return StatusEvent(
        provider_message_id=str(provider_message_id),
        status=str(reported),
        recipient_id=str(status["recipient_id"]) if status.get("recipient_id") else None,
        reported_at=_parse_epoch(status.get("timestamp")),
        errors=errors,
    )


def decode_webhook_events(payload: Mapping[str, Any]) -> list[WebhookEvent]:
    """Flatten ``entry[].changes[].value`` into typed events, skipping malformed items."""
    events: list[WebhookEvent] = []
    for entry in _as_dict_list(payload.get("entry")):
        for change in _as_dict_list(entry.get("changes")):
            value = change.get("value")
            if not isinstance(value, dict):
                continue
            contacts = _as_dict_list(value.get("contacts"))
            contact_name = _nested_text(contacts[0], "profile", "name") if contacts else None
            for message in _as_dict_list(value.get("messages")):
                decoded = _decode_message(message, contact_name)
                if decoded is not None:
                    events.append(decoded)
            for status in _as_dict_list(value.get("statuses")):
                decoded_status = _decode_status(status)
                if decoded_status is not None:
                    events.append(decoded_status)
    return events


class WebhookIngestionService:
    def __init__(
        self,
        *,
        reminders: ReminderRepository,
        conversations: ConversationRepository,
        status_log: StatusLogRepository,
    ) -> None:
        self._reminders = reminders
        self._conversations = conversations
        self._status_log = status_log

    def ingest(self, payload: Mapping[str, Any]) -> WebhookIngestResult:
        if payload.get("object") != WEBHOOK_OBJECT:
            raise UnsupportedWebhookObjectError(str(payload.get("object")))

        result = WebhookIngestResult(success=True)
        for event in decode_webhook_events(payload):
            try:
                if event.kind == "message":
                    recorded = self._record_inbound_message(event)
                    if recorded:
                        result.messages_recorded += 1
                    else:
                        result.duplicates += 1
                else:
                    self._record_status(event)
                    result.statuses_recorded += 1
            except Exception:
                logger.exception("webhook %s event %s could not be recorded", event.kind, event.provider_message_id)
                result.errors += 1

        result.success = result.errors == 0
        return result

    def _record_inbound_message(self, event: InboundMessageEvent) -> bool:
        if self._conversations.find_message_by_provider_message_id(event.provider_message_id) is not None:
            logger.info("inbound message %s already recorded", event.provider_message_id)
            return False

        phone = clean_phone_number(event.sender)
        client = self._reminders.find_client_by_phone(phone)
        conversation = self._conversations.create_or_get_conversation(
            phone=phone,
            client_id=client.client_id if client is not None else None,
            client_name=event.contact_name or (client.name if client is not None else None),
        )
        metadata: dict[str, Any] = {"timestamp": event.timestamp, "contact_name": event.contact_name}
        metadata.update(event.payload)
        self._conversations.append_message(
            conversation_id=conversation.conversation_id,
            direction="inbound",
            message_type=event.message_type,
            content=event.content,
            status="received",
            provider_message_id=event.provider_message_id,
            metadata=metadata,
        )
        logger.info("inbound %s message from %s recorded", event.message_type, mask_phone(phone))

        client_id = conversation.client_id or (client.client_id if client is not None else None)
        if event.content and client_id:
            self._hold_reminders_for_reply(client_id, event.content)
        return True

    def _hold_reminders_for_reply(self, client_id: str, content: str) -> None:
        now = datetime.now(timezone.utc)
        held = self._reminders.hold_for_response(client_id, now=now)
        for reminder in held:
            self._reminders.append_note(
                client_id=client_id,
                reminder_id=reminder.reminder_id,
                content=f'Client replied on WhatsApp, reminder put on hold: "{content[:REPLY_QUOTE_LIMIT]}"',
            )
        if held:
            logger.info("client %s replied; %d reminder(s) put on hold", client_id, len(held))

    def _record_status(self, event: StatusEvent) -> None:
        self._status_log.append(
            provider_message_id=event.provider_message_id,
            status=event.status,
            errors=event.errors,
            recipient_id=event.recipient_id,
            reported_at=event.reported_at,
        )
        self._update_message_status_best_effort(event)

    def _update_message_status_best_effort(self, event: StatusEvent) -> None:
        try:
            self._conversations.apply_message_status(
                provider_message_id=event.provider_message_id,
                status=event.status,
                error_message=format_status_errors(event.errors),
            )
        except Exception:
            logger.warning("best-effort status update failed for %s", event.provider_message_id, exc_info=True)
