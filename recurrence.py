import heapq
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, Iterator, Optional, TypeVar
from zoneinfo import ZoneInfo

from config import get_settings
from models import Frequency


FREQUENCY_MONTHS = {
    Frequency.monthly: 1,
    Frequency.quarterly: 3,
    Frequency.annually: 12,
}

T = TypeVar("T")


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: date, months: int, *, desired_day: Optional[int] = None) -> date:
    """Shift ``base`` by whole months, clamping to the end of short months."""
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = desired_day if desired_day is not None else base.day
    return date(year, month, min(day, days_in_month(year, month)))


def default_horizon(today: Optional[date] = None) -> date:
    today = today or local_today()
    return add_months(today, get_settings().projection_months)


@dataclass(frozen=True)
class Projection:
    """Due dates of a recurring rule from its anchor up to ``horizon_end``.

    Every ``iter()`` starts again from the anchor. Each step is computed from
    the anchor rather than from the previous date, so a Jan 31 anchor yields
    Feb 28, Mar 31, Apr 30 instead of drifting to the 28th.
    """

    anchor: date
    frequency: Frequency
    horizon_end: date

    def __iter__(self) -> Iterator[date]:
        step = FREQUENCY_MONTHS[self.frequency]
        index = 0
        while True:
            due = add_months(self.anchor, step * index, desired_day=self.anchor.day)
            if due > self.horizon_end:
                return
            yield due
            index += 1


def project_due_dates(
    anchor: date, frequency: Frequency, horizon_end: date
) -> Projection:
    return Projection(anchor, Frequency(frequency), horizon_end)


def merge_projections(*streams: Iterable[T], key=None) -> Iterator[T]:
    # Each stream must already be sorted by the same key.
    return heapq.merge(*streams, key=key)


def monthly_equivalent(amount: Decimal, frequency: Frequency) -> Decimal:
    return Decimal(amount) / FREQUENCY_MONTHS[Frequency(frequency)]
