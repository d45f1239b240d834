"""ValuationEngine: market value, unrealized gain and display conversion for holdings."""

import logging
from datetime import datetime, timedelta
from decimal import Decimal

from assetbook.accounting.money import Money, parse_currency, round_half_up
from assetbook.accounting.units import convert_price_per_unit, market_price_unit_for, parse_unit, storage_unit_for
from assetbook.db.models.holding import Holding
from assetbook.db.session import utcnow
from assetbook.domain.enums import Currency, PhysicalUnit
from assetbook.domain.models.valuation import DisplayValue, HoldingValuation, PriceUpdate
from assetbook.exceptions import RateUnavailableError
from assetbook.pricing.currency import CurrencyConverter

logger = logging.getLogger(__name__)

# Numeric(28, 8) column precision of Holding.last_price
PRICE_QUANTUM = Decimal("0.00000001")


class ValuationEngine:
    def __init__(self, converter: CurrencyConverter, stale_after_seconds: float = 86400.0) -> None:
        self._converter = converter
        self._stale_after = timedelta(seconds=stale_after_seconds)

    def current_value(
        self,
        holding: Holding,
        market_price: Decimal | int,
        market_price_unit: PhysicalUnit | str | None = None,
    ) -> int:
        """Value of the holding at `market_price` (native minor units per unit).

        For commodities the price is first converted to the storage unit; the
        unit is ignored for everything else.
        """
        price = self._to_storage_unit(holding, Decimal(market_price), market_price_unit)
        if holding.quantity <= 0:
            return 0
        return round_half_up(Decimal(holding.quantity) * price / holding.asset.precision_scale)

    @staticmethod
    def unrealized_gain(holding: Holding, current_value: int) -> int:
        return current_value - holding.total_cost

    @staticmethod
    def unrealized_gain_percent(holding: Holding, current_value: int) -> float:
        if holding.total_cost <= 0:
            return 0.0
        return float(Decimal(current_value - holding.total_cost) * 100 / holding.total_cost)

    async def display_value(
        self,
        native_value: int,
        native_currency: Currency | str,
        preferred_currency: Currency | str,
        require_converted: bool = False,
    ) -> DisplayValue:
        """Native amount plus, when the currencies differ, its conversion.

        A missing rate drops the secondary amount unless `require_converted`.
        """
        native = parse_currency(native_currency)
        preferred = parse_currency(preferred_currency)
        primary = Money(amount=native_value, currency=native)
        if native == preferred:
            return DisplayValue(primary=primary)

        try:
            converted = await self._converter.convert(native_value, native, preferred)
        except RateUnavailableError:
            if require_converted:
                raise
            logger.warning("No %s->%s rate, showing native value only", native.value, preferred.value)
            return DisplayValue(primary=primary, degraded=True)

        return DisplayValue(primary=primary, secondary=converted, degraded=converted.degraded)

    async def apply_market_price(
        self,
        holding: Holding,
        raw_price: Decimal | int,
        raw_currency: Currency | str,
        raw_unit: PhysicalUnit | str | None = None,
        as_of: datetime | None = None,
    ) -> PriceUpdate:
        """Normalize a quoted price to storage unit + native currency and revalue the holding.

        Commodity quotes without a unit are taken to be in the asset class's
        market unit (tael for VND metals, troy ounce for USD metals).
        """
        if raw_unit is None:
            raw_unit = market_price_unit_for(holding.asset)
        price = self._to_storage_unit(holding, Decimal(raw_price), raw_unit)
        price, degraded = await self._converter.convert_decimal(price, raw_currency, holding.currency)
        price = price.quantize(PRICE_QUANTUM)

        holding.last_price = price
        holding.last_price_at = as_of or utcnow()
        holding.current_value = self.current_value(holding, price)

        if degraded:
            logger.warning(
                "Price for %s converted with a stale %s->%s rate",
                holding.symbol, parse_currency(raw_currency).value, holding.native_currency,
            )
        logger.debug("Price applied: holding=%s price=%s value=%d", holding.id, price, holding.current_value)
        return PriceUpdate(
            holding_id=holding.id,
            price_per_storage_unit=price,
            currency=holding.currency,
            current_value=holding.current_value,
            as_of=holding.last_price_at,
            degraded=degraded,
        )

    def revalue(self, holding: Holding) -> int:
        """Recompute current_value from the stored price after a quantity change."""
        if holding.last_price is None:
            holding.current_value = 0
        else:
            holding.current_value = self.current_value(holding, holding.last_price)
        return holding.current_value

    def is_price_stale(self, holding: Holding, now: datetime | None = None) -> bool:
        if holding.last_price is None or holding.last_price_at is None:
            return True
        return (now or utcnow()) - holding.last_price_at > self._stale_after

    def stale_cutoff(self, now: datetime | None = None) -> datetime:
        """Prices recorded before this instant count as stale."""
        return (now or utcnow()) - self._stale_after

    def holding_valuation(self, holding: Holding, now: datetime | None = None) -> HoldingValuation:
        value = holding.current_value
        return HoldingValuation(
            holding_id=holding.id,
            symbol=holding.symbol,
            quantity=holding.quantity,
            total_cost=holding.total_cost,
            current_value=value,
            unrealized_gain=self.unrealized_gain(holding, value),
            unrealized_gain_percent=self.unrealized_gain_percent(holding, value),
            currency=holding.currency,
            stale_price=self.is_price_stale(holding, now),
        )

    @staticmethod
    def _to_storage_unit(holding: Holding, price: Decimal, unit: PhysicalUnit | str | None) -> Decimal:
        storage = storage_unit_for(holding.asset)
        if storage is None or unit is None:
            return price
        return convert_price_per_unit(price, parse_unit(unit), storage)
