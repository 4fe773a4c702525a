from __future__ import annotations

import os

from visit_reminders.config import DEFAULT_VERIFY_TOKEN, get_settings, runtime_secret_issues


def _set_env(name: str, value: str | None) -> str | None:
    previous = os.environ.get(name)
    if value is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = value
    return previous


def _restore_env(name: str, previous: str | None) -> None:
    if previous is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = previous


def test_get_settings_defaults_to_stub_sender_and_log_only_signatures() -> None:
    names = (
        "WHATSAPP_SENDER_TYPE",
        "WHATSAPP_SIGNATURE_MODE",
        "WHATSAPP_VERIFY_TOKEN",
        "SEND_DELAY_SECONDS",
        "SWEEP_ENABLED",
        "SWEEP_CUTOFF_MINUTES",
    )
    previous = {name: _set_env(name, None) for name in names}
    try:
        settings = get_settings()
        assert settings.whatsapp_sender_type == "stub"
        assert settings.whatsapp_signature_mode == "log_only"
        assert settings.whatsapp_verify_token == DEFAULT_VERIFY_TOKEN
        assert settings.send_delay_seconds == 1.0
        assert settings.sweep_enabled is False
        assert settings.sweep_cutoff_minutes == 5.0
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_get_settings_falls_back_on_unparseable_values() -> None:
    previous = {
        "WHATSAPP_SIGNATURE_MODE": _set_env("WHATSAPP_SIGNATURE_MODE", "strict"),
        "SEND_DELAY_SECONDS": _set_env("SEND_DELAY_SECONDS", "soon"),
        "SWEEP_ENABLED": _set_env("SWEEP_ENABLED", "YES"),
        "BUSINESS_HOUR_END": _set_env("BUSINESS_HOUR_END", "18"),
    }
    try:
        settings = get_settings()
        assert settings.whatsapp_signature_mode == "log_only"
        assert settings.send_delay_seconds == 1.0
        assert settings.sweep_enabled is True
        assert settings.business_hour_end == 18
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_http_sender_without_credentials_reports_missing_secrets() -> None:
    previous = {
        "WHATSAPP_SENDER_TYPE": _set_env("WHATSAPP_SENDER_TYPE", "http"),
        "WHATSAPP_API_TOKEN": _set_env("WHATSAPP_API_TOKEN", None),
        "WHATSAPP_PHONE_ID": _set_env("WHATSAPP_PHONE_ID", None),
        "WHATSAPP_VERIFY_TOKEN": _set_env("WHATSAPP_VERIFY_TOKEN", "prod-verify-token-001"),
        "WHATSAPP_SIGNATURE_MODE": _set_env("WHATSAPP_SIGNATURE_MODE", "log_only"),
    }
    try:
        issues = runtime_secret_issues(get_settings())
        assert any("WHATSAPP_API_TOKEN is required" in issue for issue in issues)
        assert any("WHATSAPP_PHONE_ID is required" in issue for issue in issues)
        assert not any("WHATSAPP_VERIFY_TOKEN" in issue for issue in issues)
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_enforced_signatures_require_app_secret() -> None:
    previous = {
        "WHATSAPP_SENDER_TYPE": _set_env("WHATSAPP_SENDER_TYPE", "stub"),
        "WHATSAPP_SIGNATURE_MODE": _set_env("WHATSAPP_SIGNATURE_MODE", "enforce"),
        "WHATSAPP_APP_SECRET": _set_env("WHATSAPP_APP_SECRET", None),
        "WHATSAPP_VERIFY_TOKEN": _set_env("WHATSAPP_VERIFY_TOKEN", "change-me"),
    }
    try:
        issues = runtime_secret_issues(get_settings())
        assert "WHATSAPP_APP_SECRET is required when WHATSAPP_SIGNATURE_MODE=enforce" in issues
        assert "WHATSAPP_VERIFY_TOKEN is empty or uses a development placeholder" in issues
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_get_settings_parses_reminder_step_offsets() -> None:
    previous = {
        "REMINDER_STEP_DAYS": _set_env("REMINDER_STEP_DAYS", "21, 10,5"),
        "REMINDER_CALL_DAYS": _set_env("REMINDER_CALL_DAYS", "2"),
    }
    try:
        settings = get_settings()
        assert settings.reminder_step_days == (21, 10, 5)
        assert settings.reminder_call_days == 2
        os.environ["REMINDER_STEP_DAYS"] = "thirty,15"
        assert get_settings().reminder_step_days == (30, 15, 7)
    finally:
        for name, value in previous.items():
            _restore_env(name, value)
