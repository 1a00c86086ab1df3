from __future__ import annotations

from datetime import datetime, time, timedelta, timezone, tzinfo
from functools import lru_cache
from zoneinfo import ZoneInfo

from forumai.core.config import get_settings
from forumai.core.errors import ValidationError
from forumai.domain.state import WEEKDAYS, Frequency


# Scan this many days ahead for an allowed slot before giving up.
_SEARCH_DAYS = 14


@lru_cache(maxsize=8)
def _zone(name: str) -> tzinfo:
    # Cache zone lookups; UTC skips the tz database.
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def site_timezone() -> tzinfo:
    # Resolve the configured site timezone.
    return _zone(get_settings().site_timezone)


def parse_active_days(days: list[str] | None) -> frozenset[int]:
    # Empty or missing means every day.
    if not days:
        return frozenset(range(7))
    indexes = set()
    for day in days:
        key = str(day).strip().lower()[:3]
        if key not in WEEKDAYS:
            raise ValidationError(f"unknown weekday {day!r}", field="active_days")
        indexes.add(WEEKDAYS.index(key))
    return frozenset(indexes)


def parse_clock(value: str | None, default: time, *, field: str) -> time:
    # Parse HH:MM, falling back to the default when unset.
    if not value:
        return default
    try:
        hour_text, _, minute_text = str(value).partition(":")
        return time(int(hour_text), int(minute_text or 0))
    except ValueError as exc:
        raise ValidationError(f"{field} must be HH:MM, got {value!r}", field=field) from exc


def parse_window(start: str | None, end: str | None) -> tuple[time, time]:
    # Parse the daily active window; the end may not precede the start.
    window_start = parse_clock(start, time(0, 0), field="active_time_start")
    window_end = parse_clock(end, time(23, 59), field="active_time_end")
    if window_end < window_start:
        raise ValidationError("active_time_end must not precede active_time_start", field="active_time_end")
    return window_start, window_end


def is_active_day(moment: datetime, days: frozenset[int], tz: tzinfo | None = None) -> bool:
    # Weekdays are evaluated in the site timezone.
    return moment.astimezone(tz or site_timezone()).weekday() in days


def next_allowed_time(
    moment: datetime,
    *,
    days: frozenset[int],
    window: tuple[time, time],
    tz: tzinfo | None = None,
) -> datetime:
    """Earliest instant at or after ``moment`` on an allowed day inside the daily window."""
    zone = tz or site_timezone()
    start, end = window
    local = moment.astimezone(zone)
    for _ in range(_SEARCH_DAYS):
        if local.weekday() in days:
            clock = local.time().replace(second=0, microsecond=0, tzinfo=None)
            if clock < start:
                return datetime.combine(local.date(), start, tzinfo=zone).astimezone(timezone.utc)
            if clock <= end:
                return local.astimezone(timezone.utc)
        local = datetime.combine(local.date() + timedelta(days=1), start, tzinfo=zone)
    return moment


def next_run_after(
    last_run_at: datetime,
    frequency: Frequency,
    *,
    days: frozenset[int],
    window: tuple[time, time],
    tz: tzinfo | None = None,
) -> datetime:
    # Anchor on the previous run, not on the wake-up that noticed it, so delays never add runs.
    return next_allowed_time(last_run_at + frequency.duration, days=days, window=window, tz=tz)
