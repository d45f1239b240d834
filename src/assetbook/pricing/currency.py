"""CurrencyConverter: rate cache lookup → rate source fetch → stale fallback."""

import logging
from decimal import Decimal

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from assetbook.accounting.money import parse_currency, round_half_up
from assetbook.domain.enums import Currency
from assetbook.domain.models.pricing import ConvertedAmount, RateQuote
from assetbook.exceptions import RateSourceError, RateUnavailableError
from assetbook.pricing.rate_cache import RateCache
from assetbook.pricing.sources import RateSource

logger = logging.getLogger(__name__)


def apply_rate(amount: int, rate: Decimal, source: Currency, target: Currency) -> int:
    """Convert smallest-unit amounts, rescaling between the two currencies' precisions."""
    value = Decimal(amount) * rate * target.precision_factor / source.precision_factor
    return round_half_up(value)


class CurrencyConverter:
    """Convert fixed-point amounts between currencies.

    Fresh cached rates are used directly. On a miss the rate source is called
    (retried on RateSourceError) and the result cached for the cache TTL. If the
    source keeps failing, a stale cached rate is used and the result is flagged
    degraded; with no cached rate at all RateUnavailableError is raised.
    """

    def __init__(
        self,
        cache: RateCache,
        rate_source: RateSource | None = None,
        max_attempts: int = 3,
        retry_wait_max: float = 10.0,
    ) -> None:
        self._cache = cache
        self._source = rate_source
        self._max_attempts = max(1, max_attempts)
        self._retry_wait_max = retry_wait_max

    async def get_rate(self, source: Currency | str, target: Currency | str) -> tuple[Decimal, RateQuote | None, bool]:
        """Return (rate, quote, degraded) for a pair. Same currency → (1, None, False)."""
        src = parse_currency(source)
        dst = parse_currency(target)
        if src == dst:
            return Decimal(1), None, False

        cached = self._cache.get_fresh(src, dst)
        if cached is not None:
            logger.debug("Rate cache hit %s->%s", src.value, dst.value)
            return cached.rate, RateQuote(rate=cached.rate, as_of=cached.as_of), False

        async with self._cache.lock_for(src, dst):
            # Another task may have refreshed the pair while we waited
            cached = self._cache.get_fresh(src, dst)
            if cached is not None:
                return cached.rate, RateQuote(rate=cached.rate, as_of=cached.as_of), False

            try:
                quote = await self._fetch(src, dst)
            except RateSourceError as exc:
                stale = self._cache.get_stale(src, dst)
                if stale is None:
                    raise RateUnavailableError(src.value, dst.value, exc) from exc
                logger.warning(
                    "Rate source failed for %s->%s, using stale rate %s as of %s: %s",
                    src.value, dst.value, stale.rate, stale.as_of.isoformat(), exc,
                )
                return stale.rate, RateQuote(rate=stale.rate, as_of=stale.as_of), True

            self._cache.put(src, dst, quote.rate, quote.as_of)
            return quote.rate, quote, False

    async def convert(self, amount: int, source: Currency | str, target: Currency | str) -> ConvertedAmount:
        """Convert `amount` (smallest units of `source`) into `target`.

        The input is never mutated; the rate used is returned alongside the amount.
        """
        src = parse_currency(source)
        dst = parse_currency(target)
        if src == dst:
            return ConvertedAmount(amount=amount, currency=dst, rate=Decimal(1))

        rate, quote, degraded = await self.get_rate(src, dst)
        return ConvertedAmount(
            amount=apply_rate(amount, rate, src, dst),
            currency=dst,
            rate=rate,
            as_of=quote.as_of if quote else None,
            degraded=degraded,
        )

    async def convert_decimal(
        self, value: Decimal, source: Currency | str, target: Currency | str
    ) -> tuple[Decimal, bool]:
        """Convert a fractional smallest-unit value (e.g. a per-gram price) without rounding."""
        src = parse_currency(source)
        dst = parse_currency(target)
        if src == dst:
            return value, False
        rate, _, degraded = await self.get_rate(src, dst)
        return value * rate * dst.precision_factor / src.precision_factor, degraded

    async def _fetch(self, source: Currency, target: Currency) -> RateQuote:
        if self._source is None:
            raise RateSourceError("No rate source configured")

        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(RateSourceError),
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=1, min=0, max=self._retry_wait_max),
            reraise=True,
        ):
            with attempt:
                quote = await self._source.get_rate(source, target)
                if quote.rate <= 0:
                    raise RateSourceError(f"Invalid rate {quote.rate} for {source.value}->{target.value}")
        return quote
