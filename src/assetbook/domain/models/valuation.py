"""Valuation results for holdings and wallets."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel

from assetbook.accounting.money import Money
from assetbook.domain.enums import AssetClass, Currency
from assetbook.domain.models.pricing import ConvertedAmount


class PriceUpdate(BaseModel):
    holding_id: int | None = None
    price_per_storage_unit: Decimal  # native minor units
    currency: Currency
    current_value: int
    as_of: datetime
    degraded: bool = False


class DisplayValue(BaseModel):
    """Native amount is authoritative; the converted one is a convenience."""

    primary: Money
    secondary: ConvertedAmount | None = None
    degraded: bool = False


class HoldingValuation(BaseModel):
    holding_id: int
    symbol: str
    quantity: int
    total_cost: int
    current_value: int
    unrealized_gain: int
    unrealized_gain_percent: float
    currency: Currency
    stale_price: bool = False


class WalletValuation(BaseModel):
    wallet_id: int
    currency: Currency
    total_value: int
    total_cost: int
    total_pnl: int
    holding_count: int = 0
    computed_at: datetime
    degraded: bool = False
    stale_price: bool = False
    unconverted: dict[Currency, int] = {}


class ValuationView(BaseModel):
    valuation: WalletValuation
    display: DisplayValue


class AssetClassSummary(BaseModel):
    asset_class: AssetClass
    holding_count: int
    total_value: int
    total_cost: int
    realized_gain: int
    total_dividends: int


class PortfolioSummary(BaseModel):
    """Wallet totals split by asset class, all amounts in `currency`.

    total_pnl is unrealized plus realized gain; classes held in a currency that
    cannot be converted are left out and listed in `unconverted`.
    """

    wallet_id: int
    currency: Currency
    total_value: int
    total_cost: int
    unrealized_gain: int
    realized_gain: int
    total_dividends: int
    total_pnl: int
    total_pnl_percent: float
    holding_count: int
    by_asset_class: list[AssetClassSummary] = []
    degraded: bool = False
    unconverted: dict[Currency, int] = {}
