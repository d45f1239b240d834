"""Quotes from external sources and the results of currency conversion."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel

from assetbook.domain.enums import Currency, PhysicalUnit


class RateQuote(BaseModel):
    """Units of the target currency per one unit of the source currency."""

    rate: Decimal
    as_of: datetime


class PriceQuote(BaseModel):
    """Market price in the quote currency's smallest unit, per one `unit` (or per share)."""

    price: int
    currency: Currency
    unit: PhysicalUnit | None = None
    as_of: datetime


class ConvertedAmount(BaseModel):
    amount: int
    currency: Currency
    rate: Decimal  # rate actually applied, for auditability
    as_of: datetime | None = None
    degraded: bool = False  # stale cached rate was used
