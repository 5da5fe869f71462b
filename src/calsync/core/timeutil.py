"""Time helpers: RFC 3339 conversion and day boundaries in a reference timezone."""

from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

# Inclusive end-of-day, millisecond precision (matches what Google echoes back).
_END_OF_DAY = time(23, 59, 59, 999000)


def google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def coerce_zoneinfo(timezone: str | None, fallback: tzinfo = UTC) -> tzinfo:
    """Return ``ZoneInfo(timezone)``, or *fallback* for empty/unknown names."""
    if not timezone:
        return fallback
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return fallback


def start_of_day(day: date, tz: tzinfo) -> datetime:
    return datetime.combine(day, time.min, tzinfo=tz)


def end_of_day(day: date, tz: tzinfo) -> datetime:
    return datetime.combine(day, _END_OF_DAY, tzinfo=tz)


def local_date(instant: datetime, tz: tzinfo) -> date:
    """Calendar date of *instant* as seen in *tz*."""
    normalized = instant if instant.tzinfo is not None else instant.replace(tzinfo=UTC)
    return normalized.astimezone(tz).date()


def date_key(instant: datetime, tz: tzinfo) -> str:
    return local_date(instant, tz).isoformat()


def day_window(day: date, tz: tzinfo) -> tuple[datetime, datetime]:
    """``(start, end)`` of *day* in *tz*."""
    return start_of_day(day, tz), end_of_day(day, tz)


def sync_window(
    now: datetime,
    tz: tzinfo,
    *,
    past_days: int,
    future_days: int,
) -> tuple[datetime, datetime]:
    """Full-sync window: start of ``now - past_days`` to end of ``now + future_days``.

    Day arithmetic is done on the local date in *tz*, so the window is always
    aligned to the reference timezone's midnights.
    """
    today = local_date(now, tz)
    return (
        start_of_day(today - timedelta(days=past_days), tz),
        end_of_day(today + timedelta(days=future_days), tz),
    )
