from __future__ import annotations

import io
import json
import socket
import urllib.error
from datetime import timezone
from unittest.mock import MagicMock, patch

import pytest

from visit_reminders.whatsapp import (
    HttpWhatsAppSender,
    StubWhatsAppSender,
    TemplateSendRequest,
    build_visit_reminder_components,
)


def _make_request(*, to: str = "+33 6 12 34 56 78") -> TemplateSendRequest:
    return TemplateSendRequest(
        to=to,
        template_name="rappel_visite_technique_vf",
        language_code="fr",
        components=build_visit_reminder_components(
            ["01/02/2024", "Renault", "Clio", "AB-123-CD", "01/02/2026", "AUTOSUR", ""],
            booking_url="https://rdv.example/abc",
            call_phone="+33 1 23 45 67 89",
        ),
    )


def _make_sender() -> HttpWhatsAppSender:
    return HttpWhatsAppSender(
        api_token="test-token-abc123",
        phone_id="1234567890",
        base_url="https://graph.example.test",
        api_version="v17.0",
    )


def _mock_response(body: dict) -> MagicMock:
    """Create a mock HTTP response that works as a context manager."""
    response = MagicMock()
    response.status = 200
    response.read.return_value = json.dumps(body).encode("utf-8")
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    return response


@patch("visit_reminders.whatsapp.urllib.request.urlopen")
def test_http_sender_success(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"messages": [{"id": "wamid.ABC"}]})

    result = _make_sender().send_template(_make_request())

    assert result.status == "sent"
    assert result.provider_message_id == "wamid.ABC"
    assert result.attempted_at.tzinfo == timezone.utc
    assert result.error_code is None

    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.full_url == "https://graph.example.test/v17.0/1234567890/messages"
    assert request_arg.get_header("Authorization") == "Bearer test-token-abc123"
    sent_body = json.loads(request_arg.data.decode("utf-8"))
    assert sent_body["messaging_product"] == "whatsapp"
    assert sent_body["to"] == "33612345678"
    assert sent_body["type"] == "template"
    assert sent_body["template"]["name"] == "rappel_visite_technique_vf"
    assert sent_body["template"]["language"] == {"code": "fr"}

    body, url_button, phone_button = sent_body["template"]["components"]
    assert [p["text"] for p in body["parameters"]][-1] == "N/A"
    assert body["parameters"][1]["text"] == "Renault"
    assert url_button["index"] == 0
    assert url_button["sub_type"] == "url"
    assert url_button["parameters"][0]["text"] == "https://rdv.example/abc"
    assert phone_button["index"] == 1
    assert phone_button["parameters"][0]["text"] == "33123456789"


@patch("visit_reminders.whatsapp.urllib.request.urlopen")
def test_http_sender_rejects_short_phone_without_calling_gateway(mock_urlopen: MagicMock) -> None:
    result = _make_sender().send_template(_make_request(to="12345"))

    assert result.status == "failed"
    assert result.error_code == "invalid_phone"
    mock_urlopen.assert_not_called()


@patch("visit_reminders.whatsapp.urllib.request.urlopen")
def test_http_sender_missing_message_id(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"messages": []})

    result = _make_sender().send_template(_make_request())

    assert result.status == "failed"
    assert result.error_code == "missing_message_id"


@patch("visit_reminders.whatsapp.urllib.request.urlopen")
def test_http_sender_keeps_provider_error_message_verbatim(mock_urlopen: MagicMock) -> None:
    error_body = {"error": {"message": "(#132001) Template name does not exist in the translation", "code": 132001}}
    mock_urlopen.side_effect = urllib.error.HTTPError(
        url="https://graph.example.test/v17.0/1234567890/messages",
        code=400,
        msg="Bad Request",
        hdrs={},  # type: ignore[arg-type]
        fp=io.BytesIO(json.dumps(error_body).encode("utf-8")),
    )

    result = _make_sender().send_template(_make_request())

    assert result.status == "failed"
    assert result.error_code == "http_400"
    assert result.error_message == "(#132001) Template name does not exist in the translation"


@patch("visit_reminders.whatsapp.urllib.request.urlopen")
def test_http_sender_http_500_without_body(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.HTTPError(
        url="https://graph.example.test/v17.0/1234567890/messages",
        code=500,
        msg="Internal Server Error",
        hdrs={},  # type: ignore[arg-type]
        fp=None,
    )

    result = _make_sender().send_template(_make_request())

    assert result.status == "failed"
    assert result.error_code == "http_500"
    assert "500" in (result.error_message or "")


@patch("visit_reminders.whatsapp.urllib.request.urlopen")
def test_http_sender_connection_error(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.URLError("Connection refused")

    result = _make_sender().send_template(_make_request())

    assert result.status == "failed"
    assert result.error_code == "connection_error"
    assert "Connection" in (result.error_message or "")


@patch("visit_reminders.whatsapp.urllib.request.urlopen")
def test_http_sender_timeout(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = socket.timeout("timed out")

    result = _make_sender().send_template(_make_request())

    assert result.status == "failed"
    assert result.error_code == "timeout"
    assert "timed out" in (result.error_message or "")


@patch("visit_reminders.whatsapp.urllib.request.urlopen")
def test_http_sender_url_error_wrapping_timeout(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.URLError(socket.timeout("timed out"))

    result = _make_sender().send_template(_make_request())

    assert result.error_code == "timeout"


def test_http_sender_empty_token() -> None:
    with pytest.raises(ValueError, match="api_token must not be empty"):
        HttpWhatsAppSender(api_token="  ", phone_id="123")


def test_http_sender_empty_phone_id() -> None:
    with pytest.raises(ValueError, match="phone_id must not be empty"):
        HttpWhatsAppSender(api_token="token", phone_id="")


def test_stub_sender_issues_sequential_ids_and_honours_failures() -> None:
    sender = StubWhatsAppSender(failing_numbers={"+33 7 00 00 00 00"})

    first = sender.send_template(_make_request())
    failed = sender.send_template(_make_request(to="0033700000000"))

    assert first.status == "sent"
    assert first.provider_message_id == "wamid.stub-000001"
    assert failed.status == "failed"
    assert failed.error_code == "stub_delivery_failed"
    assert len(sender.sent_requests) == 1


def test_stub_sender_disabled() -> None:
    result = StubWhatsAppSender(enabled=False).send_template(_make_request())

    assert result.status == "failed"
    assert result.error_code == "whatsapp_disabled"
