"""
Funnel Hub — Currency Normalizer
===================================

Converts contract amounts in any supported currency into the reporting
currency. Rates are quoted as "units of foreign currency per reporting unit"
(e.g. 4200 COP per USD), so conversion divides by the rate.

Rounding is half-up to 2 decimals and happens exactly once, here.

Functions:
  normalize()       - Convert a single amount
  normalize_deal()  - Re-derive the USD fields of a deal record
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional, Union

from models.pipeline_models import Currency, Deal
from scripts.lib.errors import MissingExchangeRateError
from scripts.lib.utils import round_money

REPORTING_CURRENCY = Currency.USD

Number = Union[int, float, Decimal]


def normalize(
    amount: Number,
    currency: Union[Currency, str],
    rate: Optional[Number] = None,
) -> float:
    """
    Convert ``amount`` in ``currency`` into the reporting currency (USD).

    Args:
        amount: Amount in ``currency``.
        currency: Currency of ``amount``.
        rate: Units of ``currency`` per USD. Ignored when ``currency`` is USD.

    Raises:
        MissingExchangeRateError: foreign currency without a positive rate.
    """
    currency = Currency(currency)
    if currency == REPORTING_CURRENCY:
        return round_money(amount)

    if rate is None or rate <= 0:
        raise MissingExchangeRateError(currency.value, rate)

    return round_money(Decimal(str(amount)) / Decimal(str(rate)))


def normalize_deal(deal: Deal) -> Deal:
    """Return ``deal`` with USD fields re-derived from its original amounts."""
    return deal.revise()
