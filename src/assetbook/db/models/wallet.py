from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from assetbook.db.session import Base, TimestampMixin
from assetbook.domain.enums import Currency


class Wallet(TimestampMixin, Base):
    """An investment wallet. Its currency is the one wallet totals are reported in."""

    __tablename__ = "wallets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255))
    currency: Mapped[str] = mapped_column(String(3), default=Currency.USD.value)

    holdings: Mapped[list["Holding"]] = relationship(back_populates="wallet")  # noqa: F821
