from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

from recurrence import local_today


CHART_PERIODS = ("daily", "weekly", "monthly")


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def week_start(day: date) -> date:
    return day - timedelta(days=day.weekday())


def month_start(day: date) -> date:
    return day.replace(day=1)


def month_end(day: date) -> date:
    first = month_start(day)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return next_month - date.resolution


def spending_windows(today: date) -> list[Period]:
    yesterday = today - date.resolution
    this_week = week_start(today)
    last_week = this_week - timedelta(days=7)
    this_month = month_start(today)
    last_month_end = this_month - date.resolution
    return [
        Period("today", today, today),
        Period("yesterday", yesterday, yesterday),
        Period("this_week", this_week, today),
        Period("last_week", last_week, this_week - date.resolution),
        Period("this_month", this_month, today),
        Period("last_month", month_start(last_month_end), last_month_end),
    ]


def bucket_start(day: date, period: str) -> date:
    if period == "daily":
        return day
    if period == "weekly":
        return week_start(day)
    if period == "monthly":
        return month_start(day)
    raise ValueError(f"Unsupported chart period: {period}")


def resolve_chart_range(
    period: str,
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> Period:
    if period not in CHART_PERIODS:
        raise ValueError(f"Unsupported chart period: {period}")
    today = today or local_today()
    end_date = date.fromisoformat(end) if end else today
    if start:
        start_date = date.fromisoformat(start)
    elif period == "daily":
        start_date = end_date - timedelta(days=6)
    elif period == "weekly":
        start_date = week_start(end_date) - timedelta(weeks=7)
    else:
        start_date = month_start(month_start(end_date) - timedelta(days=150))
    if start_date > end_date:
        raise ValueError("Start date must be before end date")
    return Period(period, start_date, end_date)
