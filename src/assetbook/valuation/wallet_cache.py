"""WalletValueCache: TTL cache of wallet-level valuations.

Entries are filled from one grouped aggregate query per miss (or per batch of
misses) and folded into the wallet currency. Writers invalidate after commit;
a per-wallet generation counter keeps a read that began before an invalidation
from storing its result afterwards.
"""

import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Sequence

from assetbook.accounting.money import parse_currency
from assetbook.db.repos.holding_repo import CurrencyTotal
from assetbook.db.session import utcnow
from assetbook.domain.enums import Currency
from assetbook.domain.models.valuation import WalletValuation
from assetbook.exceptions import ConversionError, WalletNotFoundError
from assetbook.locks import KeyedLocks
from assetbook.pricing.currency import CurrencyConverter, apply_rate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WalletTotals:
    """Raw aggregate rows for one wallet, before currency folding."""

    currency: Currency
    totals: list[CurrencyTotal]


# Loads totals for the given wallets in one round trip; unknown wallets are absent.
TotalsFetcher = Callable[[Sequence[int]], Awaitable[dict[int, WalletTotals]]]


@dataclass(frozen=True)
class _Entry:
    valuation: WalletValuation
    stored_at: float


class WalletValueCache:
    def __init__(
        self,
        fetch: TotalsFetcher,
        converter: CurrencyConverter,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetch = fetch
        self._converter = converter
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[int, _Entry] = {}
        self._generations: dict[int, int] = {}
        self._locks: KeyedLocks[int] = KeyedLocks()
        self._listeners: list[Callable[[int], None]] = []

    async def get(self, wallet_id: int) -> WalletValuation:
        cached = self._fresh(wallet_id)
        if cached is not None:
            logger.debug("Wallet cache hit: wallet=%s", wallet_id)
            return cached

        async with self._locks.acquire(wallet_id):
            # A concurrent miss may have filled the entry while we waited
            cached = self._fresh(wallet_id)
            if cached is not None:
                return cached

            generation = self._generations.get(wallet_id, 0)
            logger.debug("Wallet cache miss: wallet=%s", wallet_id)
            fetched = await self._fetch([wallet_id])
            if wallet_id not in fetched:
                raise WalletNotFoundError(wallet_id)
            valuation = await self._fold(wallet_id, fetched[wallet_id])
            self._store(wallet_id, valuation, generation)
            return valuation

    async def get_batch(self, wallet_ids: Iterable[int]) -> dict[int, WalletValuation]:
        """Valuations for many wallets; all misses share a single aggregate query.

        Unknown wallets are left out of the result.
        """
        result: dict[int, WalletValuation] = {}
        missing: list[int] = []
        for wallet_id in dict.fromkeys(wallet_ids):
            cached = self._fresh(wallet_id)
            if cached is not None:
                result[wallet_id] = cached
            else:
                missing.append(wallet_id)

        if not missing:
            return result

        logger.debug("Wallet cache batch: hits=%d misses=%d", len(result), len(missing))
        generations = {wallet_id: self._generations.get(wallet_id, 0) for wallet_id in missing}
        fetched = await self._fetch(missing)
        for wallet_id in missing:
            if wallet_id not in fetched:
                continue
            valuation = await self._fold(wallet_id, fetched[wallet_id])
            async with self._locks.acquire(wallet_id):
                self._store(wallet_id, valuation, generations[wallet_id])
            result[wallet_id] = valuation
        return result

    async def invalidate(self, wallet_id: int) -> None:
        async with self._locks.acquire(wallet_id):
            self._entries.pop(wallet_id, None)
            self._generations[wallet_id] = self._generations.get(wallet_id, 0) + 1
        logger.debug("Wallet cache invalidated: wallet=%s", wallet_id)
        for listener in self._listeners:
            listener(wallet_id)

    async def invalidate_many(self, wallet_ids: Iterable[int]) -> None:
        for wallet_id in dict.fromkeys(wallet_ids):
            await self.invalidate(wallet_id)

    def clear(self) -> None:
        for wallet_id in set(self._entries) | set(self._generations):
            self._generations[wallet_id] = self._generations.get(wallet_id, 0) + 1
        self._entries.clear()

    def on_invalidate(self, listener: Callable[[int], None]) -> None:
        self._listeners.append(listener)

    def _fresh(self, wallet_id: int) -> WalletValuation | None:
        entry = self._entries.get(wallet_id)
        if entry is None:
            return None
        if self._clock() - entry.stored_at >= self._ttl:
            return None
        return entry.valuation

    def _store(self, wallet_id: int, valuation: WalletValuation, generation: int) -> None:
        if self._generations.get(wallet_id, 0) != generation:
            logger.debug("Discarding wallet %s valuation read before an invalidation", wallet_id)
            return
        self._entries[wallet_id] = _Entry(valuation=valuation, stored_at=self._clock())

    async def _fold(self, wallet_id: int, wallet: WalletTotals) -> WalletValuation:
        """Sum per-currency totals into the wallet currency."""
        target = wallet.currency
        total_value = 0
        total_cost = 0
        holding_count = 0
        degraded = False
        stale_price = False
        unconverted: dict[Currency, int] = {}

        for row in wallet.totals:
            holding_count += row.holding_count
            stale_price = stale_price or row.stale_count > 0
            source = parse_currency(row.currency)
            try:
                rate, _, rate_degraded = await self._converter.get_rate(source, target)
            except ConversionError as exc:
                logger.warning(
                    "Wallet %s: cannot convert %s holdings to %s: %s",
                    wallet_id, row.currency, target.value, exc,
                )
                unconverted[source] = unconverted.get(source, 0) + row.total_value
                degraded = True
                continue

            total_value += apply_rate(row.total_value, rate, source, target)
            total_cost += apply_rate(row.total_cost, rate, source, target)
            degraded = degraded or rate_degraded

        return WalletValuation(
            wallet_id=wallet_id,
            currency=target,
            total_value=total_value,
            total_cost=total_cost,
            total_pnl=total_value - total_cost,
            holding_count=holding_count,
            computed_at=utcnow(),
            degraded=degraded,
            stale_price=stale_price,
            unconverted=unconverted,
        )
