from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import BigInteger, CheckConstraint, ForeignKey, Index, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from assetbook.db.session import Base, TimestampMixin
from assetbook.domain.enums import AssetClass, Currency, PhysicalUnit


class Holding(TimestampMixin, Base):
    """One position in one asset within one wallet.

    quantity is fixed-point at the asset class precision, in the storage unit for
    commodities. Costs and values are ints in the native currency's smallest unit.
    """

    __tablename__ = "holdings"
    __table_args__ = (Index("ix_holdings_wallet_symbol", "wallet_id", "symbol"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_id: Mapped[int] = mapped_column(ForeignKey("wallets.id"), index=True)
    symbol: Mapped[str] = mapped_column(String(50))
    name: Mapped[str] = mapped_column(String(255), default="")
    asset_class: Mapped[str] = mapped_column(String(20), default=AssetClass.EQUITY.value)
    native_currency: Mapped[str] = mapped_column(String(3), default=Currency.USD.value)
    display_unit: Mapped[Optional[str]] = mapped_column(String(20), default=None)

    quantity: Mapped[int] = mapped_column(BigInteger, default=0)
    average_cost: Mapped[int] = mapped_column(BigInteger, default=0)
    total_cost: Mapped[int] = mapped_column(BigInteger, default=0)
    realized_gain: Mapped[int] = mapped_column(BigInteger, default=0)
    total_dividends: Mapped[int] = mapped_column(BigInteger, default=0)
    # Return of capital already taken off total_cost but not yet off any lot
    unallocated_return_of_capital: Mapped[int] = mapped_column(BigInteger, default=0)

    # Last known market price, already in storage unit + native currency
    last_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(28, 8), default=None)
    last_price_at: Mapped[Optional[datetime]] = mapped_column(default=None)
    current_value: Mapped[int] = mapped_column(BigInteger, default=0)

    deleted_at: Mapped[Optional[datetime]] = mapped_column(default=None)

    wallet: Mapped["Wallet"] = relationship(back_populates="holdings")  # noqa: F821
    lots: Mapped[list["Lot"]] = relationship(back_populates="holding")

    @property
    def asset(self) -> AssetClass:
        return AssetClass(self.asset_class)

    @property
    def currency(self) -> Currency:
        return Currency(self.native_currency)

    @property
    def unit(self) -> Optional[PhysicalUnit]:
        return PhysicalUnit(self.display_unit) if self.display_unit else None


class Lot(Base):
    """One acquisition. Only remaining_quantity changes after creation: down on sells, back up on a sell reversal."""

    __tablename__ = "lots"
    __table_args__ = (
        CheckConstraint("remaining_quantity >= 0", name="remaining_non_negative"),
        CheckConstraint("remaining_quantity <= original_quantity", name="remaining_le_original"),
        Index("ix_lots_holding_fifo", "holding_id", "acquired_at", "id"),
    )

    # Autoincrement id doubles as the FIFO tie-breaker for equal acquired_at
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    holding_id: Mapped[int] = mapped_column(ForeignKey("holdings.id"))
    original_quantity: Mapped[int] = mapped_column(BigInteger)
    remaining_quantity: Mapped[int] = mapped_column(BigInteger)
    unit_cost: Mapped[int] = mapped_column(BigInteger)
    total_cost: Mapped[int] = mapped_column(BigInteger)
    acquired_at: Mapped[datetime]

    holding: Mapped[Holding] = relationship(back_populates="lots")
    adjustments: Mapped[list["LotCostAdjustment"]] = relationship(
        back_populates="lot", lazy="selectin", cascade="all, delete-orphan", order_by="LotCostAdjustment.id"
    )


class LotCostAdjustment(Base):
    """Return-of-capital share allocated to a lot (per-lot policy). Append-only."""

    __tablename__ = "lot_cost_adjustments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lot_id: Mapped[int] = mapped_column(ForeignKey("lots.id"), index=True)
    transaction_id: Mapped[Optional[int]] = mapped_column(ForeignKey("transactions.id"), index=True, default=None)
    amount: Mapped[int] = mapped_column(BigInteger)
    quantity_at_adjustment: Mapped[int] = mapped_column(BigInteger)
    created_at: Mapped[datetime]

    lot: Mapped[Lot] = relationship(back_populates="adjustments")
