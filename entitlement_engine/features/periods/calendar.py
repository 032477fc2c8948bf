"""
entitlement_engine/features/periods/calendar.py

Period arithmetic. Monthly periods are UTC calendar months identified as
"YYYY-MM"; standing resources live in the single never-ending "standing" period.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from entitlement_engine.core.errors import ValidationError
from entitlement_engine.models.resources import Cadence


STANDING_PERIOD = "standing"


@dataclass(frozen=True)
class PeriodWindow:
    period_id: str
    start: Optional[datetime]
    end: Optional[datetime]

    @property
    def is_standing(self) -> bool:
        return self.period_id == STANDING_PERIOD

    def has_ended(self, now: datetime) -> bool:
        return self.end is not None and self.end <= now


def normalize_now(now: Optional[Any] = None) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if getattr(now, "tzinfo", None) is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def _month_start(year: int, month: int) -> datetime:
    return datetime(year, month, 1, tzinfo=timezone.utc)


def _add_months(year: int, month: int, delta: int):
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def month_window(year: int, month: int) -> PeriodWindow:
    next_year, next_month = _add_months(year, month, 1)
    return PeriodWindow(
        period_id=f"{year:04d}-{month:02d}",
        start=_month_start(year, month),
        end=_month_start(next_year, next_month),
    )


def window_for(cadence: Cadence, now: Optional[Any] = None) -> PeriodWindow:
    if cadence == Cadence.STANDING:
        return PeriodWindow(STANDING_PERIOD, None, None)
    current = normalize_now(now)
    return month_window(current.year, current.month)


def window_from_id(period_id: str) -> PeriodWindow:
    if period_id == STANDING_PERIOD:
        return PeriodWindow(STANDING_PERIOD, None, None)
    try:
        year_part, month_part = period_id.split("-")
        year, month = int(year_part), int(month_part)
    except ValueError:
        raise ValidationError(f"invalid period id: {period_id!r}")
    if not 1 <= month <= 12 or len(year_part) != 4:
        raise ValidationError(f"invalid period id: {period_id!r}")
    return month_window(year, month)


def next_window(window: PeriodWindow) -> PeriodWindow:
    if window.is_standing:
        return window
    year, month = _add_months(window.start.year, window.start.month, 1)
    return month_window(year, month)
