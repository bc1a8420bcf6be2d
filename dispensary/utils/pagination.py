from __future__ import annotations

from dispensary.errors import ValidationError


def page_window(page: int, page_size: int) -> tuple[int, int]:
    """Return ``(offset, limit)`` for a 1-based page."""

    if page < 1:
        raise ValidationError("Page must be 1 or greater.")
    if page_size < 1:
        raise ValidationError("Page size must be 1 or greater.")
    return (page - 1) * page_size, page_size


def contains_text(value: object | None, needle: str) -> bool:
    if value is None:
        return False
    return needle in str(value).lower()
