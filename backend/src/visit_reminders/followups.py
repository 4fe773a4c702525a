from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from .config import Settings
from .conversations import ConversationRepository, MessageRecord
from .models import FollowUpRunResult
from .orchestrator import FixedDelayPacing, PacingPolicy
from .phone import clean_phone_number, mask_phone
from .reminders import ClientRecord, ReminderRecord, ReminderRepository
from .whatsapp import TemplateSendRequest, WhatsAppSender

logger = logging.getLogger(__name__)

FOLLOWUP_MESSAGE = (
    "Bonjour ! Suite à notre précédent message, souhaitez-vous qu'on vous appelle "
    "pour vous assister dans la prise de votre prochain rendez-vous ?"
)


@dataclass(frozen=True)
class FollowUpCandidate:
    reminder: ReminderRecord
    client: ClientRecord
    conversation_id: str
    read_message: MessageRecord


def within_business_hours(now: datetime, settings: Settings) -> bool:
    local = now.astimezone(ZoneInfo(settings.business_timezone))
    return settings.business_hour_start <= local.hour < settings.business_hour_end


class FollowUpService:
    """Sends the "shall we call you?" template once a first reminder was read without reply."""

    def __init__(
        self,
        *,
        reminders: ReminderRepository,
        conversations: ConversationRepository,
        sender: WhatsAppSender,
        settings: Settings,
        pacing: PacingPolicy | None = None,
    ) -> None:
        self._reminders = reminders
        self._conversations = conversations
        self._sender = sender
        self._settings = settings
        self._pacing = pacing or FixedDelayPacing(settings.send_delay_seconds)

    def run(self, now: datetime | None = None) -> FollowUpRunResult:
        current = now or datetime.now(timezone.utc)
        if not within_business_hours(current, self._settings):
            logger.info("follow-ups skipped: outside business hours")
            return FollowUpRunResult(skipped_reason="outside_business_hours")

        candidates = self.find_candidates(current)
        result = FollowUpRunResult(total=len(candidates))
        for index, candidate in enumerate(candidates):
            if index > 0:
                self._pacing.wait()
            if self._send(candidate):
                result.sent += 1
            else:
                result.failed += 1
        if candidates:
            logger.info("follow-ups: %d sent, %d failed", result.sent, result.failed)
        return result

    def find_candidates(self, now: datetime) -> list[FollowUpCandidate]:
        read_before = now - timedelta(hours=self._settings.followup_min_hours)
        candidates: list[FollowUpCandidate] = []
        for reminder in self._reminders.list_reminders():
            if reminder.status != "reminder1_sent" or reminder.follow_up_sent:
                continue
            client = self._reminders.get_client(reminder.client_id)
            if client is None or not client.whatsapp_available or not client.phone:
                continue
            conversation = self._conversations.find_conversation_by_phone(client.phone)
            if conversation is None:
                continue
            messages = self._conversations.list_messages(conversation.conversation_id, limit=500)
            read_message = _latest_read_template(messages, read_before)
            if read_message is None:
                continue
            if any(m.direction == "inbound" and m.created_at > read_message.created_at for m in messages):
                continue
            candidates.append(
                FollowUpCandidate(
                    reminder=reminder,
                    client=client,
                    conversation_id=conversation.conversation_id,
                    read_message=read_message,
                )
            )
        return candidates

    def _send(self, candidate: FollowUpCandidate) -> bool:
        components: tuple[dict, ...] = ()
        if candidate.client.name:
            components = (
                {"type": "body", "parameters": [{"type": "text", "text": candidate.client.name}]},
            )
        request = TemplateSendRequest(
            to=clean_phone_number(candidate.client.phone),
            template_name=self._settings.followup_template_name,
            language_code=self._settings.reminder_template_language,
            components=components,
        )
        try:
            result = self._sender.send_template(request)
        except Exception:
            logger.exception("follow-up sender raised for %s", mask_phone(request.to))
            return False
        if result.status != "sent":
            logger.warning("follow-up to %s failed: %s", mask_phone(request.to), result.error_code)
            return False

        reminder_id = candidate.reminder.reminder_id
        try:
            self._reminders.mark_follow_up_sent(reminder_id, now=result.attempted_at)
        except Exception:
            logger.exception("follow-up sent but reminder %s not marked", reminder_id)
        try:
            self._conversations.append_message(
                conversation_id=candidate.conversation_id,
                direction="outbound",
                message_type="template",
                content=FOLLOWUP_MESSAGE,
                status="sent",
                provider_message_id=result.provider_message_id,
                template_name=request.template_name,
                metadata={"reminder_id": reminder_id, "template_name": request.template_name},
            )
        except Exception:
            logger.exception("could not record follow-up message %s", result.provider_message_id)
        return True


def _latest_read_template(messages: list[MessageRecord], read_before: datetime) -> MessageRecord | None:
    matching = [
        message
        for message in messages
        if message.direction == "outbound"
        and message.message_type == "template"
        and message.status == "read"
        and message.created_at < read_before
    ]
    if not matching:
        return None
    return max(matching, key=lambda message: message.created_at)
