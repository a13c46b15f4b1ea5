"""Calendar-aware billing period arithmetic."""

from __future__ import annotations

from calendar import monthrange
from datetime import datetime, timezone
from typing import Dict, Literal, Optional


BillingInterval = Literal["month", "quarter", "year"]

INTERVAL_MONTHS: Dict[str, int] = {
    "month": 1,
    "quarter": 3,
    "year": 12,
}

# One-time purchases grant their tier credits once per calendar month.
CREDIT_PERIOD_INTERVAL: BillingInterval = "month"


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_months(start: datetime, months: int) -> datetime:
    """Shift by whole months, clamping the day to the end of the target month."""
    total_months = start.month - 1 + months
    year = start.year + total_months // 12
    month = total_months % 12 + 1
    day = min(start.day, monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def calc_period_end(start: datetime, interval: str) -> datetime:
    """Return the end of a billing period of ``interval`` beginning at ``start``."""
    try:
        months = INTERVAL_MONTHS[interval]
    except KeyError as exc:
        raise ValueError(f"Unsupported billing interval: {interval}") from exc
    return add_months(start, months)


def next_credit_boundary(anchor: datetime, after: datetime) -> datetime:
    """
    First monthly boundary counted from ``anchor`` that falls strictly after ``after``.

    Boundaries are always derived from the anchor so that month-end clamping
    does not drift (Jan 31 -> Feb 29 -> Mar 31, not Mar 29).
    """
    step = INTERVAL_MONTHS[CREDIT_PERIOD_INTERVAL]
    months = step
    boundary = add_months(anchor, months)
    while boundary <= after:
        months += step
        boundary = add_months(anchor, months)
    return boundary
