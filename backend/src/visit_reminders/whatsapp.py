from __future__ import annotations

import json
import logging
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import count
from typing import Any, Literal, Protocol, Sequence

from .phone import clean_phone_number, is_valid_phone, mask_phone

logger = logging.getLogger(__name__)

ProviderResultStatus = Literal["sent", "failed"]


@dataclass(frozen=True)
class TemplateSendRequest:
    to: str
    template_name: str
    language_code: str = "fr"
    components: tuple[dict[str, Any], ...] = ()


@dataclass(frozen=True)
class ProviderSendResult:
    status: ProviderResultStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class WhatsAppSender(Protocol):
    def send_template(self, request: TemplateSendRequest) -> ProviderSendResult: ...


def build_visit_reminder_components(
    body_values: Sequence[str],
    *,
    booking_url: str,
    call_phone: str,
) -> tuple[dict[str, Any], ...]:
    """Body parameters in template order, then the booking URL and call buttons."""
    return (
        {
            "type": "body",
            "parameters": [{"type": "text", "text": value or "N/A"} for value in body_values],
        },
        {
            "type": "button",
            "sub_type": "url",
            "index": 0,
            "parameters": [{"type": "text", "text": booking_url or ""}],
        },
        {
            "type": "button",
            "sub_type": "phone_number",
            "index": 1,
            "parameters": [{"type": "text", "text": clean_phone_number(call_phone)}],
        },
    )


def build_template_body(request: TemplateSendRequest) -> dict[str, Any]:
    template: dict[str, Any] = {
        "name": request.template_name,
        "language": {"code": request.language_code},
    }
    if request.components:
        template["components"] = list(request.components)
    return {
        "messaging_product": "whatsapp",
        "to": clean_phone_number(request.to),
        "type": "template",
        "template": template,
    }


class StubWhatsAppSender:
    """In-process sender used for local runs and tests.

    Numbers listed in ``failing_numbers`` get a provider-style failure.
    """

    def __init__(self, *, enabled: bool = True, failing_numbers: set[str] | None = None) -> None:
        self._enabled = enabled
        self._failing_numbers = {clean_phone_number(value) for value in (failing_numbers or set())}
        self._counter = count(1)
        self.sent_requests: list[TemplateSendRequest] = []

    def send_template(self, request: TemplateSendRequest) -> ProviderSendResult:
        attempted_at = datetime.now(timezone.utc)

        if not self._enabled:
            return ProviderSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="whatsapp_disabled",
                error_message="WhatsApp live delivery is disabled",
            )

        cleaned = clean_phone_number(request.to)
        if cleaned in self._failing_numbers:
            return ProviderSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Recipient phone number not in allowed list",
            )

        self.sent_requests.append(request)
        message_id = f"wamid.stub-{next(self._counter):06d}"
        return ProviderSendResult(status="sent", attempted_at=attempted_at, provider_message_id=message_id)


class _WhatsAppSendError(Exception):
    """Internal error raised when a Graph API request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class HttpWhatsAppSender:
    """Sender for the WhatsApp Cloud API (Meta Graph ``/messages`` endpoint)."""

    def __init__(
        self,
        *,
        api_token: str,
        phone_id: str,
        base_url: str = "https://graph.facebook.com",
        api_version: str = "v17.0",
        timeout_seconds: int = 30,
    ) -> None:
        stripped_token = api_token.strip()
        stripped_phone_id = phone_id.strip()
        if not stripped_token:
            raise ValueError("api_token must not be empty")
        if not stripped_phone_id:
            raise ValueError("phone_id must not be empty")
        self._api_token = stripped_token
        self._url = f"{base_url.strip().rstrip('/')}/{api_version.strip()}/{stripped_phone_id}/messages"
        self._timeout_seconds = timeout_seconds

    def send_template(self, request: TemplateSendRequest) -> ProviderSendResult:
        attempted_at = datetime.now(timezone.utc)

        if not is_valid_phone(request.to):
            return ProviderSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="invalid_phone",
                error_message="Invalid phone number",
            )

        logger.info(
            "sending whatsapp template %s to %s",
            request.template_name,
            mask_phone(request.to),
        )
        try:
            response_data = self._post(build_template_body(request))
        except _WhatsAppSendError as exc:
            logger.warning(
                "whatsapp send failed for %s: %s",
                mask_phone(request.to),
                exc.error_code,
            )
            return ProviderSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=exc.message,
            )

        messages = response_data.get("messages") or []
        message_id = messages[0].get("id") if messages and isinstance(messages[0], dict) else None
        if not message_id:
            return ProviderSendResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="missing_message_id",
                error_message="Gateway response did not include a message id",
            )
        return ProviderSendResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=str(message_id),
        )

    def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            self._url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._api_token}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(
                request, timeout=self._timeout_seconds
            ) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise _WhatsAppSendError(
                error_code=f"http_{exc.code}",
                message=_graph_error_message(exc),
            ) from exc
        except urllib.error.URLError as exc:
            if isinstance(exc.reason, (socket.timeout, TimeoutError)):
                raise _WhatsAppSendError(
                    error_code="timeout",
                    message=f"Request timed out: {exc.reason}",
                ) from exc
            raise _WhatsAppSendError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _WhatsAppSendError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc


def _graph_error_message(exc: urllib.error.HTTPError) -> str:
    """Prefer the provider's ``error.message`` verbatim over the HTTP reason."""
    fallback = f"HTTP {exc.code}: {exc.reason}"
    if exc.fp is None:
        return fallback
    try:
        payload = json.loads(exc.read().decode("utf-8"))
    except (ValueError, OSError):
        return fallback
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return fallback
