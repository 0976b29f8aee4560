from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Mapping, Optional

from config import get_settings


logger = logging.getLogger(__name__)

SUPPORTED_CURRENCIES = (
    "IDR",
    "USD",
    "EUR",
    "SGD",
    "JPY",
    "AUD",
    "GBP",
    "CAD",
    "CHF",
    "NZD",
    "CNH",
)

# Currencies settled in whole units.
ZERO_DECIMAL_CURRENCIES = frozenset({"IDR", "JPY"})


def currency_quantum(currency: str) -> Decimal:
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return Decimal("1")
    return Decimal("0.01")


def round_amount(amount: Decimal, currency: str) -> Decimal:
    return Decimal(amount).quantize(currency_quantum(currency), rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Conversion:
    amount: Decimal
    currency: str
    rate: Optional[Decimal]  # target per 1 source; None when nothing was applied
    degraded: bool = False


class CurrencyNormalizer:
    """Converts amounts through a single reporting currency.

    ``rates`` maps a base currency to the number of reporting-currency units
    one unit of it buys. Conversions that need a missing rate fall back to the
    original amount with ``degraded=True`` instead of raising.
    """

    def __init__(
        self,
        rates: Mapping[str, Decimal],
        reporting_currency: Optional[str] = None,
    ) -> None:
        self.reporting_currency = (
            reporting_currency or get_settings().reporting_currency
        ).upper()
        self.rates: dict[str, Decimal] = {}
        for base, rate in rates.items():
            value = Decimal(str(rate))
            if value <= 0:
                raise ValueError(f"Exchange rate for {base} must be positive")
            self.rates[base.upper()] = value

    def rate_for(self, currency: str) -> Optional[Decimal]:
        currency = currency.upper()
        if currency == self.reporting_currency:
            return Decimal("1")
        return self.rates.get(currency)

    def convert(self, amount: Decimal, source: str, target: str) -> Conversion:
        amount = Decimal(amount)
        source = source.upper()
        target = target.upper()
        if source == target:
            return Conversion(amount=amount, currency=source, rate=None)

        source_rate = self.rate_for(source)
        target_rate = self.rate_for(target)
        if source_rate is None or target_rate is None:
            missing = source if source_rate is None else target
            logger.warning(
                f"fx_degraded: source={source} target={target} missing_rate={missing}"
            )
            return Conversion(amount=amount, currency=source, rate=None, degraded=True)

        # Full precision through both hops, rounded once.
        converted = amount * source_rate / target_rate
        return Conversion(
            amount=round_amount(converted, target),
            currency=target,
            rate=source_rate / target_rate,
        )

    def normalize(self, amount: Decimal, currency: str) -> Conversion:
        return self.convert(amount, currency, self.reporting_currency)
