# timebank/services/timing_policy.py
"""
Timing Policy - pure functions for check-in windows, elapsed time and overtime.

Nothing here touches the database or knows about sessions or the ledger.
All datetimes are naive UTC.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional, Tuple, Union

DEFAULT_WINDOW_SECONDS = 900

Number = Union[int, float, Decimal]


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize an aware datetime to naive UTC; naive values pass through."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def check_in_window(
    scheduled_at: Optional[datetime],
    window_seconds: int = DEFAULT_WINDOW_SECONDS,
) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Return (opens, closes). Both are None when the session is unscheduled."""
    if scheduled_at is None:
        return None, None
    margin = timedelta(seconds=window_seconds)
    return scheduled_at - margin, scheduled_at + margin


@dataclass(frozen=True)
class WindowCheck:
    allowed: bool
    seconds_until_open: Optional[int] = None
    window_closed: bool = False


def evaluate_check_in(
    scheduled_at: Optional[datetime],
    now: datetime,
    window_seconds: int = DEFAULT_WINDOW_SECONDS,
) -> WindowCheck:
    opens, closes = check_in_window(scheduled_at, window_seconds)
    if opens is None:
        return WindowCheck(allowed=True)
    if now < opens:
        remaining = (opens - now).total_seconds()
        return WindowCheck(allowed=False, seconds_until_open=int(-(-remaining // 1)))
    if now > closes:
        return WindowCheck(allowed=False, window_closed=True)
    return WindowCheck(allowed=True)


def is_within_check_in_window(
    scheduled_at: Optional[datetime],
    now: datetime,
    window_seconds: int = DEFAULT_WINDOW_SECONDS,
) -> bool:
    return evaluate_check_in(scheduled_at, now, window_seconds).allowed


def elapsed(started_at: datetime, now: datetime) -> timedelta:
    return now - started_at


def planned_seconds(duration_hours: Number) -> float:
    return float(duration_hours) * 3600


def is_overtime(started_at: datetime, now: datetime, duration_hours: Number) -> bool:
    return elapsed(started_at, now).total_seconds() > planned_seconds(duration_hours)


def progress_percent(started_at: datetime, now: datetime, duration_hours: Number) -> float:
    """Fraction of planned time used, clamped to [0.0, 1.0]."""
    planned = planned_seconds(duration_hours)
    if planned <= 0:
        return 1.0
    ratio = elapsed(started_at, now).total_seconds() / planned
    return max(0.0, min(ratio, 1.0))
