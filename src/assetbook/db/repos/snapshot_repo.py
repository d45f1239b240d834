from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from assetbook.db.models.snapshot import Snapshot


class SnapshotRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def find_within(self, wallet_id: int, timestamp: datetime, window: timedelta) -> Optional[Snapshot]:
        """Most recent snapshot of the wallet less than `window` away from `timestamp`."""
        result = await self._session.execute(
            select(Snapshot)
            .where(
                Snapshot.wallet_id == wallet_id,
                Snapshot.timestamp > timestamp - window,
                Snapshot.timestamp < timestamp + window,
            )
            .order_by(Snapshot.timestamp.desc(), Snapshot.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_latest(self, wallet_id: int) -> Optional[Snapshot]:
        result = await self._session.execute(
            select(Snapshot)
            .where(Snapshot.wallet_id == wallet_id)
            .order_by(Snapshot.timestamp.desc(), Snapshot.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def create(self, snapshot: Snapshot) -> Snapshot:
        self._session.add(snapshot)
        await self._session.flush()
        return snapshot

    async def list_range(self, wallet_id: int, start: datetime, end: datetime) -> list[Snapshot]:
        result = await self._session.execute(
            select(Snapshot)
            .where(
                Snapshot.wallet_id == wallet_id,
                Snapshot.timestamp >= start,
                Snapshot.timestamp <= end,
            )
            .order_by(Snapshot.timestamp.asc(), Snapshot.id.asc())
        )
        return list(result.scalars().all())

    async def delete_older_than(self, cutoff: datetime) -> int:
        result = await self._session.execute(delete(Snapshot).where(Snapshot.timestamp < cutoff))
        return result.rowcount or 0
