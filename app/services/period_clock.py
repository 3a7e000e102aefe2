"""Period clock.

Pure functions that map an admin timezone, a wall-clock due time ("HH:MM")
and a cadence onto canonical period keys and UTC due instants.

A daily period runs from one due instant to the next and is named by the
calendar date (in the admin zone) of the due instant that closes it. With a
09:00 due time, 08:59 on Tuesday belongs to period "Tuesday" and 09:00 on
Tuesday already belongs to period "Wednesday".

A weekly period is named by the date of its first day (the most recent
`week_starts_on` at local midnight) and closes at the due time on its last day.

Nothing here performs I/O or keeps state between calls, and nothing raises on
bad configuration: malformed due times, deadline dates and zones are clamped
to safe defaults and logged once.
"""
import logging
import re
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from typing import Iterator, Optional, Tuple, Union

from ..models.challenge import CadenceUnit
from ..models.check_in import Period
from .timezone import get_zone

logger = logging.getLogger(__name__)

DUE_TIME_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})$")
FALLBACK_DUE_TIME = time(23, 59)
FAR_FUTURE_DEADLINE = date(2099, 12, 31)

DateLike = Union[date, datetime, str]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(moment: Optional[datetime]) -> datetime:
    """Aware UTC datetime for `moment`; naive values are read as UTC, None is now."""
    if moment is None:
        return utcnow()
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


@lru_cache(maxsize=256)
def parse_due_time(due_time_local: Optional[str]) -> time:
    match = DUE_TIME_PATTERN.match(due_time_local.strip()) if isinstance(due_time_local, str) else None
    if match:
        hour, minute = int(match.group(1)), int(match.group(2))
        if 0 <= hour <= 23 and 0 <= minute <= 59:
            return time(hour, minute)
    logger.warning("Malformed due time %r, using %s", due_time_local, FALLBACK_DUE_TIME.strftime("%H:%M"))
    return FALLBACK_DUE_TIME


@lru_cache(maxsize=64)
def _warn_bad_week_start(value: str) -> None:
    logger.warning("Invalid week start %s, using Sunday", value)


def _week_start(week_starts_on) -> int:
    if isinstance(week_starts_on, int) and 0 <= week_starts_on <= 6:
        return week_starts_on
    _warn_bad_week_start(repr(week_starts_on))
    return 0


def to_day_key(day: date) -> str:
    return day.isoformat()


def parse_key(key: str) -> date:
    return date.fromisoformat(key)


def local_wall_clock(zone: str, now: Optional[datetime] = None) -> datetime:
    return ensure_utc(now).astimezone(get_zone(zone))


def wall_clock_to_utc(day: Union[date, str], due_time_local: str, zone: str) -> datetime:
    """UTC instant of `due_time_local` on `day` in `zone`.

    Uses the timezone database for the offset on that date. A wall-clock time
    skipped by a spring-forward transition lands just after the gap; one that
    repeats during fall-back resolves to its first occurrence.
    """
    if isinstance(day, str):
        day = parse_key(day)
    local = datetime.combine(day, parse_due_time(due_time_local), tzinfo=get_zone(zone))
    return local.astimezone(timezone.utc)


# Day keys

def get_admin_zone_day_key(zone: str, now: Optional[datetime] = None) -> str:
    return to_day_key(local_wall_clock(zone, now).date())


def compute_due_moment_utc_for_day(zone: str, day_key: str, due_time_local: str) -> datetime:
    return wall_clock_to_utc(day_key, due_time_local, zone)


def get_current_period_day_key(zone: str, due_time_local: str = "23:59", now: Optional[datetime] = None) -> str:
    now = ensure_utc(now)
    today = local_wall_clock(zone, now).date()
    if now >= wall_clock_to_utc(today, due_time_local, zone):
        # Today's window already closed; we are in the one closing tomorrow
        return to_day_key(today + timedelta(days=1))
    return to_day_key(today)


def get_previous_period_day_key(zone: str, due_time_local: str = "23:59", now: Optional[datetime] = None) -> str:
    current = parse_key(get_current_period_day_key(zone, due_time_local, now))
    return to_day_key(current - timedelta(days=1))


# Week keys

def get_current_period_week_key(zone: str, week_starts_on: int = 0, now: Optional[datetime] = None) -> str:
    today = local_wall_clock(zone, now).date()
    day_of_week = (today.weekday() + 1) % 7  # 0 = Sunday
    offset = (day_of_week - _week_start(week_starts_on)) % 7
    return to_day_key(today - timedelta(days=offset))


def get_previous_period_week_key(zone: str, week_starts_on: int = 0, now: Optional[datetime] = None) -> str:
    current = parse_key(get_current_period_week_key(zone, week_starts_on, now))
    return to_day_key(current - timedelta(days=7))


def compute_weekly_due_moment_utc(zone: str, week_key: str, due_time_local: str) -> datetime:
    last_day = parse_key(week_key) + timedelta(days=6)
    return wall_clock_to_utc(last_day, due_time_local, zone)


# Cadence-generic helpers

def get_current_period_key(
    zone: str,
    cadence_unit: CadenceUnit,
    due_time_local: str = "23:59",
    week_starts_on: int = 0,
    now: Optional[datetime] = None,
) -> str:
    if cadence_unit == CadenceUnit.WEEKLY:
        return get_current_period_week_key(zone, week_starts_on, now)
    return get_current_period_day_key(zone, due_time_local, now)


def compute_period_due_moment_utc(
    zone: str, period_key: str, due_time_local: str, cadence_unit: CadenceUnit
) -> datetime:
    if cadence_unit == CadenceUnit.WEEKLY:
        return compute_weekly_due_moment_utc(zone, period_key, due_time_local)
    return compute_due_moment_utc_for_day(zone, period_key, due_time_local)


def has_period_due_passed(
    zone: str,
    period_key: str,
    due_time_local: str,
    cadence_unit: CadenceUnit,
    now: Optional[datetime] = None,
    grace_minutes: int = 0,
) -> bool:
    due = compute_period_due_moment_utc(zone, period_key, due_time_local, cadence_unit)
    return ensure_utc(now) >= due + timedelta(minutes=max(grace_minutes or 0, 0))


def _period_step(cadence_unit: CadenceUnit) -> timedelta:
    return timedelta(days=7 if cadence_unit == CadenceUnit.WEEKLY else 1)


def next_period_key(period_key: str, cadence_unit: CadenceUnit) -> str:
    return to_day_key(parse_key(period_key) + _period_step(cadence_unit))


def iter_period_keys(start_key: str, cadence_unit: CadenceUnit) -> Iterator[str]:
    key = start_key
    while True:
        yield key
        key = next_period_key(key, cadence_unit)


def compute_next_due_at_utc(
    zone: str,
    due_time_local: str = "23:59",
    cadence_unit: CadenceUnit = CadenceUnit.DAILY,
    week_starts_on: int = 0,
    now: Optional[datetime] = None,
) -> datetime:
    """Next due instant strictly after `now`.

    Also the natural expiry for anything caching the current period key.
    """
    now = ensure_utc(now)
    key = get_current_period_key(zone, cadence_unit, due_time_local, week_starts_on, now)
    due = compute_period_due_moment_utc(zone, key, due_time_local, cadence_unit)
    if now >= due:
        # Weekly only: between the last day's due time and the next week start
        due = compute_period_due_moment_utc(
            zone, next_period_key(key, cadence_unit), due_time_local, cadence_unit
        )
    return due


# Submission stamping

def get_submission_period_day_key(zone: str, due_time_local: str = "23:59", now: Optional[datetime] = None) -> str:
    return get_current_period_day_key(zone, due_time_local, now)


def get_submission_period(
    zone: str,
    cadence_unit: CadenceUnit,
    due_time_local: str = "23:59",
    week_starts_on: int = 0,
    now: Optional[datetime] = None,
) -> Period:
    now = ensure_utc(now)
    week_key = None
    if cadence_unit == CadenceUnit.WEEKLY:
        week_key = get_current_period_week_key(zone, week_starts_on, now)
    return Period(
        unit=cadence_unit,
        day_key=get_submission_period_day_key(zone, due_time_local, now),
        week_key=week_key,
    )


# Fixed deadlines

@lru_cache(maxsize=64)
def _warn_bad_deadline(value: str) -> None:
    logger.warning("Malformed deadline date %s, using %s", value, FAR_FUTURE_DEADLINE.isoformat())


def coerce_deadline_date(deadline_date: Optional[DateLike]) -> date:
    if isinstance(deadline_date, datetime):
        return deadline_date.date()
    if isinstance(deadline_date, date):
        return deadline_date
    if isinstance(deadline_date, str):
        try:
            return date.fromisoformat(deadline_date.strip()[:10])
        except ValueError:
            pass
    _warn_bad_deadline(repr(deadline_date))
    return FAR_FUTURE_DEADLINE


def compute_deadline_moment_utc(zone: str, deadline_date: Optional[DateLike], due_time_local: str = "23:59") -> datetime:
    return wall_clock_to_utc(coerce_deadline_date(deadline_date), due_time_local, zone)


def is_deadline_passed(
    zone: str,
    deadline_date: Optional[DateLike],
    due_time_local: str = "23:59",
    now: Optional[datetime] = None,
) -> bool:
    return ensure_utc(now) >= compute_deadline_moment_utc(zone, deadline_date, due_time_local)


# Remaining time and display

def time_remaining(
    zone: str,
    due_time_local: str = "23:59",
    cadence_unit: CadenceUnit = CadenceUnit.DAILY,
    week_starts_on: int = 0,
    now: Optional[datetime] = None,
    deadline_date: Optional[DateLike] = None,
) -> timedelta:
    now = ensure_utc(now)
    if deadline_date is not None:
        target = compute_deadline_moment_utc(zone, deadline_date, due_time_local)
    else:
        target = compute_next_due_at_utc(zone, due_time_local, cadence_unit, week_starts_on, now)
    return max(target - now, timedelta(0))


def format_remaining(delta: timedelta) -> str:
    total_minutes = max(int(delta.total_seconds()) // 60, 0)
    hours, minutes = divmod(total_minutes, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def format_due_in_viewer_zone(due_utc: datetime, viewer_zone: Optional[str] = None) -> str:
    local = ensure_utc(due_utc).astimezone(get_zone(viewer_zone))
    hour = local.hour % 12 or 12
    suffix = "AM" if local.hour < 12 else "PM"
    return f"{hour}:{local.minute:02d} {suffix}"


# Progress intervals

def progress_interval_index(anchor_key: str, period_key: str, duration_days: Optional[int]) -> int:
    if not duration_days or duration_days < 1:
        return 0
    elapsed = (parse_key(period_key) - parse_key(anchor_key)).days
    return max(elapsed, 0) // duration_days


def compute_progress_interval_bounds(
    zone: str,
    anchor_key: str,
    index: int,
    duration_days: int,
    due_time_local: str,
) -> Tuple[datetime, datetime]:
    """(opens_at, closes_at) of progress interval `index`.

    An interval behaves like a daily period `duration_days` long: it opens at
    the due instant before its first day and closes at the due instant on its
    last day.
    """
    first_day = parse_key(anchor_key) + timedelta(days=index * duration_days)
    last_day = first_day + timedelta(days=duration_days - 1)
    opens_at = wall_clock_to_utc(first_day - timedelta(days=1), due_time_local, zone)
    closes_at = wall_clock_to_utc(last_day, due_time_local, zone)
    return opens_at, closes_at
