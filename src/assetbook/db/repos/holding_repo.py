from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol, Sequence

from sqlalchemy import case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from assetbook.db.models.holding import Holding, Lot


@dataclass(frozen=True)
class CurrencyTotal:
    """Aggregate of one wallet's live holdings in one native currency."""

    wallet_id: int
    currency: str
    total_value: int
    total_cost: int
    holding_count: int
    stale_count: int


@dataclass(frozen=True)
class AssetClassTotal:
    """Aggregate of one wallet's live holdings for one asset class in one native currency."""

    asset_class: str
    currency: str
    total_value: int
    total_cost: int
    realized_gain: int
    total_dividends: int
    open_count: int


class PersistenceRepository(Protocol):
    """What the engine needs from storage. Writes happen inside the caller's transaction."""

    async def get_holding(self, holding_id: int) -> Optional[Holding]: ...

    async def get_holding_for_update(self, holding_id: int) -> Optional[Holding]: ...

    async def get_open_lots(self, holding_id: int) -> list[Lot]: ...

    async def save_holding_and_lots(self, holding: Holding, lots: Sequence[Lot]) -> None: ...

    async def sum_current_value_by_wallet(self, wallet_id: int, stale_before: datetime) -> list[CurrencyTotal]: ...

    async def sum_current_value_by_wallets(
        self, wallet_ids: Sequence[int], stale_before: datetime
    ) -> dict[int, list[CurrencyTotal]]: ...


class HoldingRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_holding(self, holding_id: int) -> Optional[Holding]:
        result = await self._session.execute(
            select(Holding).where(Holding.id == holding_id, Holding.deleted_at.is_(None))
        )
        return result.scalar_one_or_none()

    async def get_holding_for_update(self, holding_id: int) -> Optional[Holding]:
        """Row-locked read (SELECT ... FOR UPDATE; a no-op on SQLite)."""
        result = await self._session.execute(
            select(Holding)
            .where(Holding.id == holding_id, Holding.deleted_at.is_(None))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_holding(self, wallet_id: int, symbol: str) -> Optional[Holding]:
        result = await self._session.execute(
            select(Holding).where(
                Holding.wallet_id == wallet_id,
                Holding.symbol == symbol.upper(),
                Holding.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def list_holdings(self, wallet_id: int) -> list[Holding]:
        result = await self._session.execute(
            select(Holding)
            .where(Holding.wallet_id == wallet_id, Holding.deleted_at.is_(None))
            .order_by(Holding.id.asc())
        )
        return list(result.scalars().all())

    async def create_holding(self, holding: Holding) -> Holding:
        self._session.add(holding)
        await self._session.flush()
        return holding

    async def get_lots(self, holding_id: int) -> list[Lot]:
        """All lots including exhausted ones, FIFO order."""
        result = await self._session.execute(
            select(Lot).where(Lot.holding_id == holding_id).order_by(Lot.acquired_at.asc(), Lot.id.asc())
        )
        return list(result.scalars().all())

    async def get_lots_for_update(self, holding_id: int) -> list[Lot]:
        result = await self._session.execute(
            select(Lot)
            .where(Lot.holding_id == holding_id)
            .order_by(Lot.acquired_at.asc(), Lot.id.asc())
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_open_lots(self, holding_id: int) -> list[Lot]:
        result = await self._session.execute(
            select(Lot)
            .where(Lot.holding_id == holding_id, Lot.remaining_quantity > 0)
            .order_by(Lot.acquired_at.asc(), Lot.id.asc())
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def save_holding_and_lots(self, holding: Holding, lots: Sequence[Lot]) -> None:
        self._session.add(holding)
        self._session.add_all(list(lots))
        await self._session.flush()

    async def soft_delete(self, holding: Holding, deleted_at: datetime) -> None:
        holding.deleted_at = deleted_at
        await self._session.flush()

    async def sum_current_value_by_wallet(self, wallet_id: int, stale_before: datetime) -> list[CurrencyTotal]:
        totals = await self.sum_current_value_by_wallets([wallet_id], stale_before)
        return totals.get(wallet_id, [])

    async def sum_current_value_by_wallets(
        self, wallet_ids: Sequence[int], stale_before: datetime
    ) -> dict[int, list[CurrencyTotal]]:
        """One grouped query for any number of wallets; wallets with no live holdings are absent."""
        if not wallet_ids:
            return {}

        stale = case(
            (or_(Holding.last_price_at.is_(None), Holding.last_price_at < stale_before), 1),
            else_=0,
        )
        stmt = (
            select(
                Holding.wallet_id,
                Holding.native_currency,
                func.coalesce(func.sum(Holding.current_value), 0).label("total_value"),
                func.coalesce(func.sum(Holding.total_cost), 0).label("total_cost"),
                func.count(Holding.id).label("holding_count"),
                func.coalesce(func.sum(stale), 0).label("stale_count"),
            )
            .where(
                Holding.wallet_id.in_(list(wallet_ids)),
                Holding.deleted_at.is_(None),
                Holding.quantity > 0,
            )
            .group_by(Holding.wallet_id, Holding.native_currency)
            .order_by(Holding.wallet_id, Holding.native_currency)
        )
        result = await self._session.execute(stmt)

        totals: dict[int, list[CurrencyTotal]] = {}
        for row in result:
            totals.setdefault(row.wallet_id, []).append(CurrencyTotal(
                wallet_id=row.wallet_id,
                currency=row.native_currency,
                total_value=int(row.total_value),
                total_cost=int(row.total_cost),
                holding_count=int(row.holding_count),
                stale_count=int(row.stale_count),
            ))
        return totals

    async def sum_by_asset_class(self, wallet_id: int) -> list[AssetClassTotal]:
        """Per (asset class, native currency) totals, sold-out holdings included for realized gain."""
        is_open = case((Holding.quantity > 0, 1), else_=0)
        stmt = (
            select(
                Holding.asset_class,
                Holding.native_currency,
                func.coalesce(func.sum(Holding.current_value), 0).label("total_value"),
                func.coalesce(func.sum(Holding.total_cost), 0).label("total_cost"),
                func.coalesce(func.sum(Holding.realized_gain), 0).label("realized_gain"),
                func.coalesce(func.sum(Holding.total_dividends), 0).label("total_dividends"),
                func.coalesce(func.sum(is_open), 0).label("open_count"),
            )
            .where(Holding.wallet_id == wallet_id, Holding.deleted_at.is_(None))
            .group_by(Holding.asset_class, Holding.native_currency)
            .order_by(Holding.asset_class, Holding.native_currency)
        )
        result = await self._session.execute(stmt)
        return [
            AssetClassTotal(
                asset_class=row.asset_class,
                currency=row.native_currency,
                total_value=int(row.total_value),
                total_cost=int(row.total_cost),
                realized_gain=int(row.realized_gain),
                total_dividends=int(row.total_dividends),
                open_count=int(row.open_count),
            )
            for row in result
        ]
