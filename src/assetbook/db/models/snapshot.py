from datetime import datetime

from sqlalchemy import BigInteger, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from assetbook.db.session import Base


class Snapshot(Base):
    """Historical wallet value. One row per wallet per dedup window."""

    __tablename__ = "wallet_snapshots"
    __table_args__ = (Index("ix_wallet_snapshots_wallet_ts", "wallet_id", "timestamp"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_id: Mapped[int] = mapped_column(ForeignKey("wallets.id"))
    timestamp: Mapped[datetime]
    total_value: Mapped[int] = mapped_column(BigInteger)
    total_cost: Mapped[int] = mapped_column(BigInteger)
    total_pnl: Mapped[int] = mapped_column(BigInteger)
    currency: Mapped[str] = mapped_column(String(3))
