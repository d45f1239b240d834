from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from assetbook.db.models.transaction import Transaction


class TransactionRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_latest_for_holding(self, holding_id: int) -> Optional[Transaction]:
        """Most recently recorded journal row of the holding (by id, not occurred_at)."""
        result = await self._session.execute(
            select(Transaction)
            .where(Transaction.holding_id == holding_id)
            .order_by(Transaction.id.desc())
            .limit(1)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def list_for_holding(self, holding_id: int) -> list[Transaction]:
        result = await self._session.execute(
            select(Transaction)
            .where(Transaction.holding_id == holding_id)
            .order_by(Transaction.occurred_at.asc(), Transaction.id.asc())
        )
        return list(result.scalars().all())

    async def list_for_wallet(self, wallet_id: int) -> list[Transaction]:
        result = await self._session.execute(
            select(Transaction)
            .where(Transaction.wallet_id == wallet_id)
            .order_by(Transaction.occurred_at.asc(), Transaction.id.asc())
        )
        return list(result.scalars().all())
