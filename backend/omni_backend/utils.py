from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable

__all__ = [
    "MIN_DATETIME",
    "normalize_string_list",
    "now_utc",
    "to_datetime",
    "to_iso",
]

MIN_DATETIME = datetime.min.replace(tzinfo=timezone.utc)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def to_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    # Firestore DatetimeWithNanoseconds and protobuf Timestamps
    to_dt = getattr(value, "to_datetime", None)
    if callable(to_dt):
        return to_dt(tz=timezone.utc)
    return None


def to_iso(value: Any) -> str | None:
    dt = to_datetime(value)
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).isoformat()


def normalize_string_list(
    values: Iterable[Any] | None,
    *,
    lowercase: bool = False,
    max_items: int | None = None,
) -> list[str]:
    """Return a cleaned list of unique strings.

    - Trims whitespace and ignores empty entries.
    - Casts non-string values to strings.
    - Deduplicates values case-insensitively while preserving order.
    - Optionally lowercases all results.
    - Optionally truncates to ``max_items`` entries.
    """

    if values is None:
        return []

    iterator: Iterable[Any] = [values] if isinstance(values, str) else values

    result: list[str] = []
    seen: set[str] = set()

    for raw in iterator:
        if raw is None:
            continue
        text = str(raw).strip()
        if not text:
            continue

        key = text.lower()
        if key in seen:
            continue

        seen.add(key)
        result.append(key if lowercase else text)

        if max_items is not None and len(result) >= max_items:
            break

    return result
