from __future__ import annotations

import calendar
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Current UTC time, naive. Every stored timestamp uses this form."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 string (report date filters) into a naive UTC datetime.

    Blank input gives None. Offsets ("Z", "+02:00") are converted to UTC;
    strings without an offset are taken to be UTC already.
    """
    if value is None or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"

    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.replace(tzinfo=None)


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """Serialize as whole-second ISO-8601 UTC with a 'Z' suffix (naive = UTC)."""
    if dt is None:
        return None
    aware = dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)
    aware = aware.astimezone(timezone.utc).replace(microsecond=0)
    return aware.strftime("%Y-%m-%dT%H:%M:%SZ")


def add_months(dt: datetime, months: int) -> datetime:
    """
    Calendar month arithmetic, clamping the day to the target month's length.

    2026-01-31 + 1 month -> 2026-02-28
    """
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def period_key(dt: datetime) -> str:
    """Year+month bucket used by document numbering, e.g. '202610'."""
    return f"{dt.year:04d}{dt.month:02d}"
