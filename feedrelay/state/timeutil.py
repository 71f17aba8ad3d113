"""Timestamp helpers shared by the state layer.

Persisted timestamps use the same shape JavaScript's ``toISOString`` produces
(millisecond precision, ``Z`` suffix) so stored buckets stay readable by the
older workers that wrote them.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string into an aware UTC datetime (None when unusable)."""
    if not value or not isinstance(value, str):
        return None
    s = value.strip()
    if not s:
        return None
    if s.endswith("Z") or s.endswith("z"):
        s = s[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(s)
        # Normalize naive to UTC
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    except (ValueError, OverflowError):
        return None


def to_epoch_ms(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(round(dt.timestamp() * 1000))


def iso_to_ms(value: Any) -> Optional[int]:
    dt = parse_iso(value)
    return to_epoch_ms(dt) if dt else None


def ms_to_iso(ms: Any) -> Optional[str]:
    if not is_finite_number(ms):
        return None
    try:
        return to_iso(datetime.fromtimestamp(float(ms) / 1000.0, tz=timezone.utc))
    except (OverflowError, OSError, ValueError):
        return None


def is_finite_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def resolve_timezone(name: str, fallback_offset_hours: float = 8.0) -> tzinfo:
    """Return ``ZoneInfo(name)``, or a fixed offset when tz data is not installed."""
    try:
        return ZoneInfo(name)
    except ZoneInfoNotFoundError:
        return timezone(timedelta(hours=fallback_offset_hours), name)


def local_date_key(dt: datetime, tz: tzinfo) -> str:
    """Calendar date (``YYYY-MM-DD``) of ``dt`` as seen in ``tz``."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(tz).strftime("%Y-%m-%d")
