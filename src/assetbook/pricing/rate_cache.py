"""In-process cache of conversion rates keyed by (source, target)."""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import AsyncContextManager, Callable

from assetbook.domain.enums import Currency
from assetbook.locks import KeyedLocks

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedRate:
    source: Currency
    target: Currency
    rate: Decimal
    as_of: datetime
    fetched_at: float  # clock() reading when stored

    def age(self, now: float) -> float:
        return now - self.fetched_at


class RateCache:
    """Time-bounded rate cache.

    Entries past the TTL are kept: `get_fresh` ignores them, `get_stale` still
    returns them so a converter can fall back when the source is down.
    """

    def __init__(self, ttl_seconds: float = 900.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[tuple[Currency, Currency], CachedRate] = {}
        self._locks: KeyedLocks[tuple[Currency, Currency]] = KeyedLocks()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def lock_for(self, source: Currency, target: Currency) -> AsyncContextManager[None]:
        """Per-pair lock so concurrent misses trigger a single source call."""
        return self._locks.acquire((source, target))

    @property
    def pending_locks(self) -> int:
        return len(self._locks)

    def get_fresh(self, source: Currency, target: Currency) -> CachedRate | None:
        entry = self._entries.get((source, target))
        if entry is None:
            return None
        if entry.age(self._clock()) >= self._ttl:
            logger.debug("Rate %s->%s expired", source.value, target.value)
            return None
        return entry

    def get_stale(self, source: Currency, target: Currency) -> CachedRate | None:
        return self._entries.get((source, target))

    def put(self, source: Currency, target: Currency, rate: Decimal, as_of: datetime) -> CachedRate:
        if rate <= 0:
            raise ValueError(f"Rate must be positive, got {rate}")
        entry = CachedRate(source=source, target=target, rate=rate, as_of=as_of, fetched_at=self._clock())
        # Replace the whole entry; readers never see a half-written one
        self._entries[(source, target)] = entry
        return entry

    def invalidate(self, source: Currency, target: Currency) -> None:
        self._entries.pop((source, target), None)

    def clear(self) -> None:
        self._entries.clear()
