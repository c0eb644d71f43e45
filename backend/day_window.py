import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dose_models import DayWindow

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "America/Chicago"


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_valid_timezone(name: Any) -> bool:
    if not isinstance(name, str) or not name.strip():
        return False
    try:
        ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def resolve_timezone(raw: Any, default_timezone: str = DEFAULT_TIMEZONE, user_id: Optional[str] = None) -> str:
    """Return a usable IANA zone name for a raw profile value, never raising."""
    if not isinstance(raw, str) or not raw.strip():
        return default_timezone
    candidate = raw.strip()
    if is_valid_timezone(candidate):
        return candidate
    logger.warning(f"Invalid timezone '{candidate}' for user {user_id}; falling back to {default_timezone}")
    return default_timezone


def local_date_string(instant: datetime, timezone_name: str) -> str:
    return ensure_utc(instant).astimezone(ZoneInfo(timezone_name)).date().isoformat()


def shift_local_date(date_str: str, days: int) -> str:
    return (date.fromisoformat(date_str) + timedelta(days=days)).isoformat()


def local_midnight_utc(local_day: date, timezone_name: str) -> datetime:
    tz = ZoneInfo(timezone_name)
    return datetime(local_day.year, local_day.month, local_day.day, tzinfo=tz).astimezone(timezone.utc)


def compute_day_window(timezone_name: str, now: Optional[datetime] = None) -> DayWindow:
    """
    Build the local day containing `now` in `timezone_name`.

    start_at is local midnight as a UTC instant, end_at is one millisecond
    before the following local midnight, so a 23h or 25h DST day keeps its
    true length. The zone name must already be valid (see resolve_timezone).
    """
    reference = ensure_utc(now or datetime.now(timezone.utc))
    local_now = reference.astimezone(ZoneInfo(timezone_name))
    local_day = local_now.date()

    start_at = local_midnight_utc(local_day, timezone_name)
    end_at = local_midnight_utc(local_day + timedelta(days=1), timezone_name) - timedelta(milliseconds=1)

    return DayWindow(
        timezone=timezone_name,
        local_date=local_day.isoformat(),
        start_at=start_at,
        end_at=end_at,
        now=reference,
        current_minutes=local_now.hour * 60 + local_now.minute,
    )


def hhmm_to_minutes(value: str) -> int:
    hour, minute = value.split(":")
    return int(hour) * 60 + int(minute)


def minutes_to_hhmm(total_minutes: int) -> str:
    return f"{total_minutes // 60:02d}:{total_minutes % 60:02d}"
