from __future__ import annotations

MIN_PHONE_DIGITS = 10


def _digits(value: str | None) -> str:
    return "".join(ch for ch in (value or "") if ch.isdigit())


def has_usable_phone(value: str | None) -> bool:
    digits = _digits(value)
    if digits.startswith("00"):
        digits = digits[2:]
    return len(digits) >= MIN_PHONE_DIGITS
