"""Inputs and results of ledger commands."""

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from assetbook.domain.enums import AssetClass, Currency, PhysicalUnit, TransactionType


class HoldingRef(BaseModel):
    """Identifies a holding by id, or by (wallet, symbol) for creation on first buy."""

    holding_id: int | None = None
    wallet_id: int | None = None
    symbol: str | None = None
    name: str | None = None
    asset_class: AssetClass = AssetClass.EQUITY
    native_currency: Currency | None = None

    @model_validator(mode="after")
    def _check_identity(self) -> "HoldingRef":
        if self.holding_id is None and (self.wallet_id is None or not self.symbol):
            raise ValueError("HoldingRef needs holding_id or wallet_id + symbol")
        return self


class LotConsumption(BaseModel):
    """Quantity taken from one lot by a sell, with the cost basis attributed to it."""

    lot_id: int
    quantity: int
    cost_basis: int
    acquired_at: datetime


class BuyInput(BaseModel):
    """A buy after unit/currency normalization: scaled quantity and native-currency cost."""

    quantity: int
    unit_cost: int  # per unscaled storage unit, native minor units
    total_cost: int
    acquired_at: datetime
    display_unit: PhysicalUnit | None = None
    price_currency: Currency | None = None
    fx_rate: Decimal | None = None
    degraded: bool = False


class BuyResult(BaseModel):
    """Outcome of a buy. `degraded` means the payment was converted with a stale rate."""

    holding_id: int | None = None
    lot_id: int
    transaction_id: int
    quantity: int
    total_cost: int
    currency: Currency | None = None
    fx_rate: Decimal | None = None
    degraded: bool = False
    # The updated Holding row, attached by PortfolioService
    holding: Any = Field(default=None, exclude=True, repr=False)


class SellResult(BaseModel):
    holding_id: int | None = None
    transaction_id: int | None = None
    quantity: int
    proceeds: int
    cost_basis_consumed: int
    realized_gain: int
    return_of_capital_released: int = 0
    currency: Currency | None = None
    consumptions: list[LotConsumption] = []


class CashEventResult(BaseModel):
    holding_id: int | None = None
    transaction_id: int | None = None
    event_type: TransactionType
    amount: int
    cost_reduction: int = 0
    realized_gain: int = 0
    occurred_at: datetime


class TransactionLotRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    lot_id: int
    quantity: int
    cost_basis: int


class TransactionRecord(BaseModel):
    """Read model of a journal row."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    holding_id: int
    wallet_id: int
    transaction_type: TransactionType
    currency: Currency
    quantity: int
    amount: int
    cost_basis: int
    realized_gain: int
    lot_id: int | None = None
    price_currency: Currency | None = None
    fx_rate: Decimal | None = None
    degraded: bool = False
    occurred_at: datetime
    lots: list[TransactionLotRecord] = []
