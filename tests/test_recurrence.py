from datetime import date
from decimal import Decimal

from models import Frequency
from recurrence import (
    add_months,
    days_in_month,
    default_horizon,
    merge_projections,
    monthly_equivalent,
    project_due_dates,
)


def test_monthly_projection_clamps_to_month_end():
    dates = list(
        project_due_dates(date(2025, 1, 31), Frequency.monthly, date(2025, 4, 30))
    )
    assert dates == [
        date(2025, 1, 31),
        date(2025, 2, 28),
        date(2025, 3, 31),
        date(2025, 4, 30),
    ]


def test_monthly_projection_clamps_in_leap_year():
    dates = list(
        project_due_dates(date(2024, 1, 31), Frequency.monthly, date(2024, 3, 31))
    )
    assert dates == [date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 31)]


def test_every_short_month_clamps_to_its_last_day():
    dates = list(
        project_due_dates(date(2025, 1, 31), Frequency.monthly, date(2025, 12, 31))
    )
    assert len(dates) == 12
    for month, due in enumerate(dates, start=1):
        assert due.month == month
        assert due.day == min(31, days_in_month(2025, month))


def test_horizon_before_anchor_is_empty():
    projection = project_due_dates(
        date(2025, 5, 15), Frequency.monthly, date(2025, 5, 14)
    )
    assert list(projection) == []


def test_horizon_equal_to_anchor_yields_anchor_only():
    projection = project_due_dates(
        date(2025, 5, 15), Frequency.annually, date(2025, 5, 15)
    )
    assert list(projection) == [date(2025, 5, 15)]


def test_quarterly_and_annual_steps():
    quarterly = list(
        project_due_dates(date(2025, 11, 30), Frequency.quarterly, date(2026, 9, 1))
    )
    assert quarterly == [
        date(2025, 11, 30),
        date(2026, 2, 28),
        date(2026, 5, 30),
        date(2026, 8, 30),
    ]

    annual = list(
        project_due_dates(date(2024, 2, 29), Frequency.annually, date(2028, 3, 1))
    )
    assert annual == [
        date(2024, 2, 29),
        date(2025, 2, 28),
        date(2026, 2, 28),
        date(2027, 2, 28),
        date(2028, 2, 29),
    ]


def test_projection_is_restartable():
    projection = project_due_dates(
        date(2025, 1, 15), Frequency.monthly, date(2025, 6, 30)
    )
    first = list(projection)
    second = list(projection)
    assert first == second
    assert len(first) == 6

    iterator = iter(projection)
    next(iterator)
    assert list(projection)[0] == date(2025, 1, 15)


def test_merge_projections_orders_by_date():
    netflix = (
        (due, "netflix")
        for due in project_due_dates(
            date(2025, 1, 20), Frequency.monthly, date(2025, 3, 31)
        )
    )
    icloud = (
        (due, "icloud")
        for due in project_due_dates(
            date(2025, 1, 5), Frequency.monthly, date(2025, 3, 31)
        )
    )
    merged = list(merge_projections(netflix, icloud, key=lambda item: item[0]))
    assert [name for _due, name in merged] == [
        "icloud",
        "netflix",
        "icloud",
        "netflix",
        "icloud",
        "netflix",
    ]


def test_default_horizon_is_twelve_months_ahead():
    assert default_horizon(date(2025, 2, 28)) == date(2026, 2, 28)
    assert default_horizon(date(2024, 2, 29)) == date(2025, 2, 28)


def test_monthly_equivalent():
    assert monthly_equivalent(Decimal("120"), Frequency.annually) == Decimal("10")
    assert monthly_equivalent(Decimal("90"), Frequency.quarterly) == Decimal("30")
    assert monthly_equivalent(Decimal("54990"), Frequency.monthly) == Decimal("54990")


def test_add_months_crosses_year_boundary():
    assert add_months(date(2025, 11, 30), 3) == date(2026, 2, 28)
    assert add_months(date(2025, 3, 31), -1) == date(2025, 2, 28)
