"""Contracts for external rate and price providers.

Implementations raise RateSourceError / PriceSourceError on failure.
"""

from typing import Protocol, runtime_checkable

from assetbook.domain.enums import Currency
from assetbook.domain.models.pricing import PriceQuote, RateQuote


@runtime_checkable
class RateSource(Protocol):
    async def get_rate(self, source: Currency, target: Currency) -> RateQuote: ...


@runtime_checkable
class PriceSource(Protocol):
    async def get_price(self, symbol: str) -> PriceQuote: ...
