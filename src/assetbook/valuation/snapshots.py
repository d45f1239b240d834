"""SnapshotRecorder: point-in-time wallet valuations and their history."""

import logging
from datetime import datetime, timedelta
from typing import Iterable, Sequence, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from assetbook.db.models.snapshot import Snapshot
from assetbook.db.repos.snapshot_repo import SnapshotRepo
from assetbook.db.session import utcnow
from assetbook.exceptions import AssetBookError
from assetbook.valuation.wallet_cache import WalletValueCache

logger = logging.getLogger(__name__)

T = TypeVar("T")


def downsample(points: Sequence[T], max_points: int) -> list[T]:
    """Keep every (len // max_points)-th point, at most max_points, always ending on the last one."""
    if max_points <= 0:
        raise ValueError(f"max_points must be positive, got {max_points}")
    if len(points) <= max_points:
        return list(points)

    step = len(points) // max_points
    sampled = list(points[::step][:max_points])
    sampled[-1] = points[-1]
    return sampled


class SnapshotRecorder:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: WalletValueCache,
        dedup_seconds: float = 3600.0,
        default_points: int = 10,
    ) -> None:
        self._session_factory = session_factory
        self._cache = cache
        self._dedup_window = timedelta(seconds=dedup_seconds)
        self._default_points = default_points

    async def record(self, wallet_id: int, timestamp: datetime | None = None) -> Snapshot:
        """Store the wallet's current valuation.

        A snapshot already present within the dedup window (either side of
        `timestamp`) is overwritten instead of adding a row.
        """
        valuation = await self._cache.get(wallet_id)
        ts = timestamp or utcnow()

        async with self._session_factory() as session, session.begin():
            repo = SnapshotRepo(session)
            snapshot = await repo.find_within(wallet_id, ts, self._dedup_window)
            if snapshot is not None:
                snapshot.timestamp = ts
                snapshot.total_value = valuation.total_value
                snapshot.total_cost = valuation.total_cost
                snapshot.total_pnl = valuation.total_pnl
                snapshot.currency = valuation.currency.value
                await session.flush()
                logger.info("Snapshot %s updated in place for wallet %s", snapshot.id, wallet_id)
            else:
                snapshot = await repo.create(Snapshot(
                    wallet_id=wallet_id,
                    timestamp=ts,
                    total_value=valuation.total_value,
                    total_cost=valuation.total_cost,
                    total_pnl=valuation.total_pnl,
                    currency=valuation.currency.value,
                ))
                logger.info("Snapshot %s recorded for wallet %s", snapshot.id, wallet_id)
        return snapshot

    async def record_all(self, wallet_ids: Iterable[int], timestamp: datetime | None = None) -> list[Snapshot]:
        """Snapshot each wallet; a failing wallet is logged and skipped."""
        ts = timestamp or utcnow()
        recorded: list[Snapshot] = []
        for wallet_id in wallet_ids:
            try:
                recorded.append(await self.record(wallet_id, ts))
            except AssetBookError as exc:
                logger.warning("Skipping snapshot for wallet %s: %s", wallet_id, exc)
        return recorded

    async def history(
        self,
        wallet_id: int,
        start: datetime,
        end: datetime,
        max_points: int | None = None,
    ) -> list[Snapshot]:
        async with self._session_factory() as session:
            rows = await SnapshotRepo(session).list_range(wallet_id, start, end)
        return downsample(rows, max_points if max_points is not None else self._default_points)

    async def purge_older_than(self, older_than: timedelta, now: datetime | None = None) -> int:
        cutoff = (now or utcnow()) - older_than
        async with self._session_factory() as session, session.begin():
            deleted = await SnapshotRepo(session).delete_older_than(cutoff)
        logger.info("Purged %d snapshots older than %s", deleted, cutoff.isoformat())
        return deleted
