from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import BigInteger, Boolean, ForeignKey, Index, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from assetbook.db.session import Base, TimestampMixin


class Transaction(TimestampMixin, Base):
    """Journal row for every ledger command on a holding.

    Amounts are in the holding's native currency's smallest unit. The `*_before`
    and `*_delta` columns hold what a reversal needs to restore the holding.
    """

    __tablename__ = "transactions"
    __table_args__ = (Index("ix_transactions_holding_order", "holding_id", "id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    holding_id: Mapped[int] = mapped_column(ForeignKey("holdings.id"))
    wallet_id: Mapped[int] = mapped_column(ForeignKey("wallets.id"), index=True)
    transaction_type: Mapped[str] = mapped_column(String(30))
    currency: Mapped[str] = mapped_column(String(3))

    # BUY: lot quantity. SELL: quantity sold. Cash events: 0
    quantity: Mapped[int] = mapped_column(BigInteger, default=0)
    # BUY: total cost. SELL: proceeds. Cash events: amount received
    amount: Mapped[int] = mapped_column(BigInteger)
    # SELL: basis consumed. RETURN_OF_CAPITAL: basis reduction
    cost_basis: Mapped[int] = mapped_column(BigInteger, default=0)
    realized_gain: Mapped[int] = mapped_column(BigInteger, default=0)
    unallocated_roc_delta: Mapped[int] = mapped_column(BigInteger, default=0)
    average_cost_before: Mapped[int] = mapped_column(BigInteger, default=0)

    lot_id: Mapped[Optional[int]] = mapped_column(ForeignKey("lots.id"), default=None)
    price_currency: Mapped[Optional[str]] = mapped_column(String(3), default=None)
    fx_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(28, 12), default=None)
    degraded: Mapped[bool] = mapped_column(Boolean, default=False)

    occurred_at: Mapped[datetime]

    lots: Mapped[list["TransactionLot"]] = relationship(
        back_populates="transaction", lazy="selectin", cascade="all, delete-orphan", order_by="TransactionLot.id"
    )


class TransactionLot(Base):
    """Lot consumed by a SELL transaction."""

    __tablename__ = "transaction_lots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_id: Mapped[int] = mapped_column(ForeignKey("transactions.id"), index=True)
    lot_id: Mapped[int] = mapped_column(ForeignKey("lots.id"))
    quantity: Mapped[int] = mapped_column(BigInteger)
    cost_basis: Mapped[int] = mapped_column(BigInteger)

    transaction: Mapped[Transaction] = relationship(back_populates="lots")
