from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _as_int_tuple(value: str | None, default: tuple[int, ...]) -> tuple[int, ...]:
    if value is None:
        return default
    try:
        parsed = tuple(int(part.strip()) for part in value.split(",") if part.strip())
    except ValueError:
        return default
    return parsed or default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


DEFAULT_VERIFY_TOKEN = "dev-verify-token"


@dataclass(frozen=True)
class Settings:
    app_name: str = "Visit Reminders"
    api_prefix: str = "/api/v1"
    reminder_store_backend: str = "inmemory"
    database_url: str = ""
    whatsapp_sender_type: str = "stub"
    whatsapp_enabled: bool = True
    whatsapp_api_token: str = ""
    whatsapp_phone_id: str = ""
    whatsapp_graph_version: str = "v17.0"
    whatsapp_api_base_url: str = "https://graph.facebook.com"
    whatsapp_timeout_seconds: int = 30
    whatsapp_verify_token: str = DEFAULT_VERIFY_TOKEN
    whatsapp_app_secret: str = ""
    whatsapp_signature_mode: str = "log_only"
    whatsapp_business_phone: str = ""
    reminder_template_name: str = "rappel_visite_technique_vf"
    reminder_template_language: str = "fr"
    followup_template_name: str = "assistance_rdv"
    followup_min_hours: float = 2.0
    reminder_step_days: tuple[int, ...] = (30, 15, 7)
    reminder_call_days: int = 3
    business_timezone: str = "Europe/Paris"
    business_hour_start: int = 9
    business_hour_end: int = 17
    send_delay_seconds: float = 1.0
    sweep_cutoff_minutes: float = 5.0
    sweep_enabled: bool = False
    sweep_interval_seconds: float = 60.0
    runtime_secret_guard_mode: str = "warn"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("REMINDERS_APP_NAME", "Visit Reminders"),
        api_prefix=os.getenv("REMINDERS_API_PREFIX", "/api/v1"),
        reminder_store_backend=_normalize_mode(
            os.getenv("REMINDER_STORE_BACKEND"),
            default="inmemory",
            allowed={"inmemory", "postgres"},
        ),
        database_url=os.getenv("DATABASE_URL", ""),
        whatsapp_sender_type=_normalize_mode(
            os.getenv("WHATSAPP_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        whatsapp_enabled=_as_bool(os.getenv("WHATSAPP_ENABLED"), True),
        whatsapp_api_token=os.getenv("WHATSAPP_API_TOKEN", ""),
        whatsapp_phone_id=os.getenv("WHATSAPP_PHONE_ID", ""),
        whatsapp_graph_version=os.getenv("WHATSAPP_GRAPH_VERSION", "v17.0"),
        whatsapp_api_base_url=os.getenv("WHATSAPP_API_BASE_URL", "https://graph.facebook.com"),
        whatsapp_timeout_seconds=_as_int(os.getenv("WHATSAPP_TIMEOUT_SECONDS"), 30),
        whatsapp_verify_token=os.getenv("WHATSAPP_VERIFY_TOKEN", DEFAULT_VERIFY_TOKEN),
        whatsapp_app_secret=os.getenv("WHATSAPP_APP_SECRET", ""),
        whatsapp_signature_mode=_normalize_mode(
            os.getenv("WHATSAPP_SIGNATURE_MODE"),
            default="log_only",
            allowed={"off", "log_only", "enforce"},
        ),
        whatsapp_business_phone=os.getenv("WHATSAPP_BUSINESS_PHONE", ""),
        reminder_template_name=os.getenv("REMINDER_TEMPLATE_NAME", "rappel_visite_technique_vf"),
        reminder_template_language=os.getenv("REMINDER_TEMPLATE_LANGUAGE", "fr"),
        followup_template_name=os.getenv("FOLLOWUP_TEMPLATE_NAME", "assistance_rdv"),
        followup_min_hours=_as_float(os.getenv("FOLLOWUP_MIN_HOURS"), 2.0),
        reminder_step_days=_as_int_tuple(os.getenv("REMINDER_STEP_DAYS"), (30, 15, 7)),
        reminder_call_days=_as_int(os.getenv("REMINDER_CALL_DAYS"), 3),
        business_timezone=os.getenv("BUSINESS_TIMEZONE", "Europe/Paris"),
        business_hour_start=_as_int(os.getenv("BUSINESS_HOUR_START"), 9),
        business_hour_end=_as_int(os.getenv("BUSINESS_HOUR_END"), 17),
        send_delay_seconds=_as_float(os.getenv("SEND_DELAY_SECONDS"), 1.0),
        sweep_cutoff_minutes=_as_float(os.getenv("SWEEP_CUTOFF_MINUTES"), 5.0),
        sweep_enabled=_as_bool(os.getenv("SWEEP_ENABLED"), False),
        sweep_interval_seconds=_as_float(os.getenv("SWEEP_INTERVAL_SECONDS"), 60.0),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(
        settings.whatsapp_verify_token,
        defaults={DEFAULT_VERIFY_TOKEN, "change-me-in-production"},
    ):
        issues.append("WHATSAPP_VERIFY_TOKEN is empty or uses a development placeholder")
    if settings.whatsapp_sender_type == "http":
        if not settings.whatsapp_api_token.strip():
            issues.append("WHATSAPP_API_TOKEN is required when WHATSAPP_SENDER_TYPE=http")
        if not settings.whatsapp_phone_id.strip():
            issues.append("WHATSAPP_PHONE_ID is required when WHATSAPP_SENDER_TYPE=http")
    if settings.whatsapp_signature_mode == "enforce" and not settings.whatsapp_app_secret.strip():
        issues.append("WHATSAPP_APP_SECRET is required when WHATSAPP_SIGNATURE_MODE=enforce")
    if settings.reminder_store_backend == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when REMINDER_STORE_BACKEND=postgres")
    return tuple(issues)
