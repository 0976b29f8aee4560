from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from fx_rates import CurrencyNormalizer, round_amount
from schemas import ExchangeRateIn
from services import ExchangeRateService


RATES = {"USD": Decimal("16250.5"), "EUR": Decimal("17890.25"), "SGD": Decimal("12500")}


def test_same_currency_is_unchanged():
    normalizer = CurrencyNormalizer(RATES, "IDR")
    result = normalizer.normalize(Decimal("169000"), "idr")
    assert result.amount == Decimal("169000")
    assert result.currency == "IDR"
    assert result.degraded is False


def test_normalize_to_reporting_currency_rounds_to_whole_rupiah():
    normalizer = CurrencyNormalizer(RATES, "IDR")
    result = normalizer.normalize(Decimal("52.99"), "USD")
    # 52.99 * 16250.5 = 861114.0 (rounded half up)
    assert result.amount == Decimal("861114")
    assert result.currency == "IDR"
    assert result.rate == Decimal("16250.5")
    assert not result.degraded


def test_from_reporting_currency_uses_reciprocal_rate():
    normalizer = CurrencyNormalizer(RATES, "IDR")
    result = normalizer.convert(Decimal("1625050"), "IDR", "USD")
    assert result.amount == Decimal("100.00")
    assert result.currency == "USD"


def test_two_hop_conversion_rounds_once():
    normalizer = CurrencyNormalizer(RATES, "IDR")
    result = normalizer.convert(Decimal("10.01"), "EUR", "USD")
    expected = round_amount(
        Decimal("10.01") * Decimal("17890.25") / Decimal("16250.5"), "USD"
    )
    assert result.amount == expected
    assert result.currency == "USD"
    assert not result.degraded


def test_round_trip_within_one_unit():
    normalizer = CurrencyNormalizer(RATES, "IDR")
    for amount in (Decimal("0.99"), Decimal("52.99"), Decimal("139.00"), Decimal("7.35")):
        to_idr = normalizer.normalize(amount, "USD")
        back = normalizer.convert(to_idr.amount, "IDR", "USD")
        assert abs(back.amount - amount) <= Decimal("0.01")


def test_missing_rate_falls_back_to_original_amount():
    normalizer = CurrencyNormalizer(RATES, "IDR")
    result = normalizer.normalize(Decimal("15.50"), "GBP")
    assert result.amount == Decimal("15.50")
    assert result.currency == "GBP"
    assert result.rate is None
    assert result.degraded is True

    two_hop = normalizer.convert(Decimal("15.50"), "USD", "GBP")
    assert two_hop.degraded is True
    assert two_hop.amount == Decimal("15.50")
    assert two_hop.currency == "USD"


def test_non_positive_rate_is_rejected():
    with pytest.raises(ValueError):
        CurrencyNormalizer({"USD": Decimal("0")}, "IDR")


def test_exchange_rate_service_builds_normalizer_from_store():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = ExchangeRateService(session, "IDR")
        service.upsert(ExchangeRateIn(base_currency="usd", rate=Decimal("16000")))
        updated = service.upsert(
            ExchangeRateIn(base_currency="USD", rate=Decimal("16250.50"))
        )
        assert updated.rate == "16250.50"
        assert [r.base_currency for r in service.list()] == ["USD"]

        normalizer = service.normalizer()
        assert normalizer.normalize(Decimal("2"), "USD").amount == Decimal("32501")

        with pytest.raises(ValueError):
            service.upsert(ExchangeRateIn(base_currency="IDR", rate=Decimal("1")))
