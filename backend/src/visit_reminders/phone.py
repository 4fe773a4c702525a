from __future__ import annotations

MIN_PHONE_DIGITS = 10


def clean_phone_number(phone: str | None) -> str:
    """Return the digits-only international form expected by the gateway.

    Everything except digits and ``+`` is dropped, then a leading ``+`` and a
    leading ``00`` prefix are stripped.
    """
    if not phone:
        return ""
    cleaned = "".join(ch for ch in phone if ch.isdigit() or ch == "+")
    if cleaned.startswith("+"):
        cleaned = cleaned[1:]
    if cleaned.startswith("00"):
        cleaned = cleaned[2:]
    return cleaned.replace("+", "")


def is_valid_phone(phone: str | None) -> bool:
    return len(clean_phone_number(phone)) >= MIN_PHONE_DIGITS


def phones_match(left: str | None, right: str | None) -> bool:
    cleaned_left = clean_phone_number(left)
    return bool(cleaned_left) and cleaned_left == clean_phone_number(right)


def mask_phone(phone: str | None) -> str:
    digits = clean_phone_number(phone)
    if len(digits) >= 4:
        return f"***{digits[-4:]}"
    return "***"
