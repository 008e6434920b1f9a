"""Time utilities (UTC now, aware coercion, elapsed minutes)."""
from __future__ import annotations
from datetime import datetime, timezone

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

def ensure_aware(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value

def minutes_between(start: datetime, end: datetime) -> int:
    return int((ensure_aware(end) - ensure_aware(start)).total_seconds() // 60)  # type: ignore[operator]

__all__ = ["utc_now", "ensure_aware", "minutes_between"]
