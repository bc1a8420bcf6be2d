from __future__ import annotations

from datetime import date, datetime

from dispensary.errors import ValidationError


def parse_int(value, label: str, *, default: int | None = None) -> int | None:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ValidationError(f"{label} must be a whole number.")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValidationError(f"{label} must be a whole number.")
        return int(value)
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError(f"{label} must be a whole number.")


def parse_float(value, label: str) -> float | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{label} must be a number.")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{label} must be a number.")


def parse_date(value, label: str) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        raise ValidationError(f"{label} must be a date in YYYY-MM-DD format.")


def clean_text(value) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
