"""
ISO-8601 week arithmetic for weekly settlements.

Weeks run Monday through Sunday. A week belongs to the ISO year of its
Thursday, so 2024-12-30 (Monday) through 2025-01-05 (Sunday) is 202501.
"""
from __future__ import annotations

from datetime import date, datetime, timedelta, tzinfo
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict

from .exceptions import SettlementValidationError

DEFAULT_DUE_DAYS = 3

DateLike = Union[date, str]


class WeekRange(BaseModel):
    """Monday-Sunday settlement window (inclusive) with its ISO year-week."""

    model_config = ConfigDict(frozen=True)

    week_start: date
    week_end: date
    year_week: int

    def __str__(self) -> str:
        return f"{self.year_week} ({self.week_start}..{self.week_end})"


def _thursday_of(day: date) -> date:
    # Monday=0 .. Sunday=6
    return day - timedelta(days=day.weekday()) + timedelta(days=3)


def compute_iso_year_week(day: date) -> int:
    """
    ISO year-week as year * 100 + week.

    The target Thursday decides the ISO year; week 1 is the week whose
    Thursday is nearest to January 1 (equivalently, the week containing
    January 4).
    """
    if isinstance(day, datetime):
        day = day.date()
    target = _thursday_of(day)
    first_thursday = _thursday_of(date(target.year, 1, 4))
    week_no = 1 + round((target - first_thursday).days / 7)
    return target.year * 100 + week_no


def week_range_for(day: date) -> WeekRange:
    """Monday-Sunday window containing ``day``."""
    if isinstance(day, datetime):
        day = day.date()
    monday = day - timedelta(days=day.weekday())
    return WeekRange(
        week_start=monday,
        week_end=monday + timedelta(days=6),
        year_week=compute_iso_year_week(monday),
    )


def current_week(timezone: tzinfo, now: Optional[datetime] = None) -> WeekRange:
    """Week containing "now" in the operating timezone."""
    now = now or datetime.now(timezone)
    if now.tzinfo is None:
        raise SettlementValidationError("now must be timezone-aware")
    return week_range_for(now.astimezone(timezone).date())


def previous_week(timezone: tzinfo, now: Optional[datetime] = None) -> WeekRange:
    """Last complete week before the one containing "now"."""
    week = current_week(timezone, now)
    return week_range_for(week.week_start - timedelta(days=7))


def due_date(week_end: date, offset_days: int = DEFAULT_DUE_DAYS) -> date:
    """Date a settlement for the week ending ``week_end`` falls due."""
    return week_end + timedelta(days=offset_days)


def _parse_date(value: DateLike, field: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise SettlementValidationError(
            f"{field} must be a date in YYYY-MM-DD format, got {value!r}", field=field
        )


def build_week_range(
    week_start: DateLike,
    week_end: DateLike,
    year_week: Optional[int] = None,
) -> WeekRange:
    """
    Validate a caller-supplied week.

    A missing or zero ``year_week`` is computed from ``week_start``; a
    supplied one must agree with it.

    Raises:
        SettlementValidationError: If the range is not a Monday-Sunday week
    """
    start = _parse_date(week_start, "week_start")
    end = _parse_date(week_end, "week_end")

    if start.weekday() != 0:
        raise SettlementValidationError(
            f"week_start {start} is not a Monday", week_start=str(start)
        )
    if end - start != timedelta(days=6):
        raise SettlementValidationError(
            f"week_end {end} must be the Sunday after week_start {start}",
            week_start=str(start),
            week_end=str(end),
        )

    computed = compute_iso_year_week(start)
    if year_week and int(year_week) != computed:
        raise SettlementValidationError(
            f"year_week {year_week} does not match {start} (expected {computed})",
            year_week=year_week,
        )
    return WeekRange(week_start=start, week_end=end, year_week=computed)
