from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from assetbook.db.models.wallet import Wallet
from assetbook.domain.enums import Currency


class WalletRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, name: str, currency: Currency) -> Wallet:
        wallet = Wallet(name=name, currency=currency.value)
        self._session.add(wallet)
        await self._session.flush()
        return wallet

    async def get_by_id(self, wallet_id: int) -> Optional[Wallet]:
        result = await self._session.execute(select(Wallet).where(Wallet.id == wallet_id))
        return result.scalar_one_or_none()

    async def get_many(self, wallet_ids: Sequence[int]) -> dict[int, Wallet]:
        if not wallet_ids:
            return {}
        result = await self._session.execute(select(Wallet).where(Wallet.id.in_(list(wallet_ids))))
        return {w.id: w for w in result.scalars().all()}

    async def list_all(self) -> list[Wallet]:
        result = await self._session.execute(select(Wallet).order_by(Wallet.id.asc()))
        return list(result.scalars().all())
