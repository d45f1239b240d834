"""PortfolioService: the public command/query surface of the engine.

Every command runs under a per-holding lock inside one transaction; listeners
registered with `on_committed` (the wallet cache by default) run strictly
after the commit.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from typing import AsyncIterator, Awaitable, Callable, Iterable, Sequence, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from assetbook.accounting.ledger import LotLedger
from assetbook.accounting.money import parse_currency, require_positive, round_half_up, scale_quantity
from assetbook.accounting.units import convert_quantity, parse_unit, storage_unit_for
from assetbook.db.models.holding import Holding
from assetbook.db.models.snapshot import Snapshot
from assetbook.db.models.wallet import Wallet
from assetbook.db.repos.holding_repo import HoldingRepo
from assetbook.db.repos.transaction_repo import TransactionRepo
from assetbook.db.repos.wallet_repo import WalletRepo
from assetbook.db.session import utcnow
from assetbook.domain.enums import AssetClass, Currency, PhysicalUnit, ReturnOfCapitalPolicy
from assetbook.domain.models.ledger import (
    BuyInput,
    BuyResult,
    CashEventResult,
    HoldingRef,
    SellResult,
    TransactionRecord,
)
from assetbook.domain.models.valuation import (
    AssetClassSummary,
    HoldingValuation,
    PortfolioSummary,
    PriceUpdate,
    ValuationView,
    WalletValuation,
)
from assetbook.exceptions import (
    ConversionError,
    HoldingNotFoundError,
    InvalidTransactionAmountError,
    LedgerError,
    PriceSourceError,
    RateUnavailableError,
    UnsupportedUnitError,
    WalletNotFoundError,
)
from assetbook.locks import KeyedLocks
from assetbook.pricing.currency import CurrencyConverter, apply_rate
from assetbook.pricing.sources import PriceSource
from assetbook.valuation.engine import ValuationEngine
from assetbook.valuation.snapshots import SnapshotRecorder
from assetbook.valuation.wallet_cache import TotalsFetcher, WalletTotals, WalletValueCache

logger = logging.getLogger(__name__)

T = TypeVar("T")

CommittedListener = Callable[[int], Awaitable[None]]
Quantity = Decimal | int | str


def build_totals_fetcher(
    session_factory: async_sessionmaker[AsyncSession],
    engine: ValuationEngine,
) -> TotalsFetcher:
    """Wallet totals loader for WalletValueCache: one wallet lookup plus one grouped aggregate."""

    async def fetch(wallet_ids: Sequence[int]) -> dict[int, WalletTotals]:
        async with session_factory() as session:
            wallets = await WalletRepo(session).get_many(wallet_ids)
            if not wallets:
                return {}
            totals = await HoldingRepo(session).sum_current_value_by_wallets(
                list(wallets), engine.stale_cutoff()
            )
        return {
            wallet_id: WalletTotals(currency=Currency(wallet.currency), totals=totals.get(wallet_id, []))
            for wallet_id, wallet in wallets.items()
        }

    return fetch


def native_currency_for(asset_class: AssetClass, requested: Currency | None, fallback: Currency) -> Currency:
    if asset_class == AssetClass.COMMODITY_VND:
        return Currency.VND
    if asset_class == AssetClass.COMMODITY_USD:
        return Currency.USD
    return requested or fallback


class PortfolioService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        converter: CurrencyConverter,
        engine: ValuationEngine,
        cache: WalletValueCache,
        recorder: SnapshotRecorder,
        price_source: PriceSource | None = None,
        return_of_capital_policy: ReturnOfCapitalPolicy = ReturnOfCapitalPolicy.AGGREGATE_ONLY,
        snapshot_retention: timedelta = timedelta(days=365),
        default_timeout: float | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._converter = converter
        self._engine = engine
        self._cache = cache
        self._recorder = recorder
        self._price_source = price_source
        self._roc_policy = return_of_capital_policy
        self._snapshot_retention = snapshot_retention
        self._default_timeout = default_timeout
        self._locks: KeyedLocks[tuple] = KeyedLocks()
        self._committed_listeners: list[CommittedListener] = [cache.invalidate]

    def on_committed(self, listener: CommittedListener) -> None:
        """Register a coroutine called with the wallet id after each committed mutation."""
        self._committed_listeners.append(listener)

    # ------------------------------------------------------------------
    # Wallets
    # ------------------------------------------------------------------

    async def create_wallet(self, name: str, currency: Currency | str) -> Wallet:
        async with self._session_factory() as session, session.begin():
            wallet = await WalletRepo(session).create(name, parse_currency(currency))
        logger.info("Wallet created: id=%s name=%s currency=%s", wallet.id, name, wallet.currency)
        return wallet

    async def list_holdings(self, wallet_id: int) -> list[Holding]:
        async with self._session_factory() as session:
            return await HoldingRepo(session).list_holdings(wallet_id)

    # ------------------------------------------------------------------
    # Ledger commands
    # ------------------------------------------------------------------

    async def buy(
        self,
        ref: HoldingRef,
        quantity: Quantity,
        unit_price: Decimal | int,
        currency: Currency | str,
        unit: PhysicalUnit | str | None = None,
        timestamp: datetime | None = None,
        timeout: float | None = None,
    ) -> BuyResult:
        """Buy `quantity` (in `unit` for metals) at `unit_price` minor units of `currency` per unit.

        Creates the holding on its first buy when `ref` names a wallet and symbol.
        A payment converted with a stale rate is committed and flagged `degraded`.
        """
        qty = Decimal(str(quantity))
        price = Decimal(str(unit_price))
        require_positive("quantity", qty)
        require_positive("unit_price", price)
        paid_currency = parse_currency(currency)

        async def command(session: AsyncSession, holding: Holding) -> BuyResult:
            scaled, storage_qty, display_unit = self._normalize_quantity(holding, qty, unit)
            total_cost = round_half_up(qty * price)
            fx_rate = None
            degraded = False
            if paid_currency != holding.currency:
                converted = await self._converter.convert(total_cost, paid_currency, holding.currency)
                total_cost, fx_rate, degraded = converted.amount, converted.rate, converted.degraded
                if degraded:
                    logger.warning(
                        "Buy of %s paid in %s converted with a stale rate %s",
                        holding.symbol, paid_currency.value, fx_rate,
                    )
            require_positive("total_cost", total_cost)

            result = await LotLedger(session).record_buy(holding, BuyInput(
                quantity=scaled,
                unit_cost=round_half_up(Decimal(total_cost) / storage_qty),
                total_cost=total_cost,
                acquired_at=timestamp or utcnow(),
                display_unit=display_unit,
                price_currency=paid_currency,
                fx_rate=fx_rate,
                degraded=degraded,
            ))
            self._engine.revalue(holding)
            await HoldingRepo(session).save_holding_and_lots(holding, [])
            return result.model_copy(update={"holding": holding})

        return await self._run(ref, command, timeout, create=True, currency=paid_currency)

    async def sell(
        self,
        ref: HoldingRef,
        quantity: Quantity,
        unit_price: Decimal | int,
        timestamp: datetime | None = None,
        unit: PhysicalUnit | str | None = None,
        timeout: float | None = None,
    ) -> SellResult:
        """Sell FIFO at `unit_price` native minor units per `unit` (storage unit when omitted)."""
        qty = Decimal(str(quantity))
        price = Decimal(str(unit_price))
        require_positive("quantity", qty)
        if price < 0:
            raise InvalidTransactionAmountError("unit_price", unit_price)

        async def command(session: AsyncSession, holding: Holding) -> SellResult:
            scaled, _, _ = self._normalize_quantity(holding, qty, unit)
            repo = HoldingRepo(session)
            lots = await repo.get_open_lots(holding.id)
            result = await LotLedger(session).record_sell(
                holding, lots, scaled, round_half_up(qty * price), timestamp or utcnow()
            )
            self._engine.revalue(holding)
            await repo.save_holding_and_lots(holding, lots)
            return result

        return await self._run(ref, command, timeout)

    async def record_dividend(
        self,
        ref: HoldingRef,
        amount: int,
        timestamp: datetime | None = None,
        timeout: float | None = None,
    ) -> CashEventResult:
        async def command(session: AsyncSession, holding: Holding) -> CashEventResult:
            return await LotLedger(session).record_dividend(holding, amount, timestamp or utcnow())

        return await self._run(ref, command, timeout)

    async def record_return_of_capital(
        self,
        ref: HoldingRef,
        amount: int,
        timestamp: datetime | None = None,
        policy: ReturnOfCapitalPolicy | None = None,
        timeout: float | None = None,
    ) -> CashEventResult:
        async def command(session: AsyncSession, holding: Holding) -> CashEventResult:
            lots = await HoldingRepo(session).get_open_lots(holding.id)
            return await LotLedger(session).record_return_of_capital(
                holding, lots, amount, timestamp or utcnow(), policy or self._roc_policy
            )

        return await self._run(ref, command, timeout)

    async def remove_holding(self, holding_id: int, timeout: float | None = None) -> None:
        """Soft-delete an emptied holding. Its lots and events stay for history."""

        async def command(session: AsyncSession, holding: Holding) -> None:
            if holding.quantity != 0:
                raise LedgerError(
                    f"Holding {holding.id} still holds quantity {holding.quantity}; sell it before removing"
                )
            await HoldingRepo(session).soft_delete(holding, utcnow())
            logger.info("Holding removed: id=%s symbol=%s", holding.id, holding.symbol)

        await self._run(HoldingRef(holding_id=holding_id), command, timeout)

    # ------------------------------------------------------------------
    # Transaction journal
    # ------------------------------------------------------------------

    async def list_transactions(
        self, wallet_id: int | None = None, holding_id: int | None = None
    ) -> list[TransactionRecord]:
        """Journal rows of a holding, or of a whole wallet, oldest first."""
        if holding_id is None and wallet_id is None:
            raise ValueError("list_transactions needs wallet_id or holding_id")
        async with self._session_factory() as session:
            repo = TransactionRepo(session)
            if holding_id is not None:
                rows = await repo.list_for_holding(holding_id)
            else:
                rows = await repo.list_for_wallet(wallet_id)
            return [TransactionRecord.model_validate(row) for row in rows]

    async def reverse_last_transaction(self, holding_id: int, timeout: float | None = None) -> TransactionRecord:
        """Undo and delete the holding's most recently recorded transaction."""

        async def command(session: AsyncSession, holding: Holding) -> TransactionRecord:
            txn = await TransactionRepo(session).get_latest_for_holding(holding.id)
            if txn is None:
                raise LedgerError(f"Holding {holding.id} has no transactions to reverse")
            repo = HoldingRepo(session)
            lots = await repo.get_lots_for_update(holding.id)
            record = await LotLedger(session).reverse(holding, txn, lots)
            self._engine.revalue(holding)
            await repo.save_holding_and_lots(holding, [])
            return record

        return await self._run(HoldingRef(holding_id=holding_id), command, timeout)

    # ------------------------------------------------------------------
    # Prices
    # ------------------------------------------------------------------

    async def apply_market_price(
        self,
        holding_id: int,
        price: Decimal | int,
        currency: Currency | str,
        unit: PhysicalUnit | str | None = None,
        as_of: datetime | None = None,
        timeout: float | None = None,
    ) -> PriceUpdate:
        require_positive("price", Decimal(str(price)))

        async def command(session: AsyncSession, holding: Holding) -> PriceUpdate:
            update = await self._engine.apply_market_price(holding, Decimal(str(price)), currency, unit, as_of)
            await HoldingRepo(session).save_holding_and_lots(holding, [])
            return update

        return await self._run(HoldingRef(holding_id=holding_id), command, timeout)

    async def refresh_prices(self, wallet_id: int) -> list[PriceUpdate]:
        """Pull a quote for every holding in the wallet; failures are logged and skipped."""
        if self._price_source is None:
            raise PriceSourceError("No price source configured")

        updates: list[PriceUpdate] = []
        holdings = await self.list_holdings(wallet_id)
        for holding in holdings:
            try:
                quote = await self._price_source.get_price(holding.symbol)
                updates.append(await self.apply_market_price(
                    holding.id, quote.price, quote.currency, quote.unit, quote.as_of
                ))
            except (PriceSourceError, ConversionError) as exc:
                logger.warning("Price refresh skipped for %s in wallet %s: %s", holding.symbol, wallet_id, exc)
        logger.info("Refreshed %d/%d prices for wallet %s", len(updates), len(holdings), wallet_id)
        return updates

    # ------------------------------------------------------------------
    # Valuation
    # ------------------------------------------------------------------

    async def get_valuation(
        self,
        wallet_id: int,
        preferred_currency: Currency | str | None = None,
        require_converted: bool = False,
    ) -> ValuationView:
        valuation = await self._cache.get(wallet_id)
        return await self._view(valuation, preferred_currency, require_converted)

    async def get_valuations(
        self,
        wallet_ids: Iterable[int],
        preferred_currency: Currency | str | None = None,
    ) -> dict[int, ValuationView]:
        valuations = await self._cache.get_batch(wallet_ids)
        return {
            wallet_id: await self._view(valuation, preferred_currency, False)
            for wallet_id, valuation in valuations.items()
        }

    async def get_holding_valuations(self, wallet_id: int) -> list[HoldingValuation]:
        now = utcnow()
        return [self._engine.holding_valuation(h, now) for h in await self.list_holdings(wallet_id)]

    async def get_portfolio_summary(
        self, wallet_id: int, preferred_currency: Currency | str | None = None
    ) -> PortfolioSummary:
        """Totals per asset class converted to `preferred_currency` (wallet currency by default)."""
        async with self._session_factory() as session:
            wallet = await WalletRepo(session).get_by_id(wallet_id)
            if wallet is None:
                raise WalletNotFoundError(wallet_id)
            rows = await HoldingRepo(session).sum_by_asset_class(wallet_id)

        target = parse_currency(preferred_currency) if preferred_currency else Currency(wallet.currency)
        rates: dict[Currency, Decimal] = {}
        degraded = False
        unconverted: dict[Currency, int] = {}
        by_class: dict[AssetClass, AssetClassSummary] = {}

        for row in rows:
            source = Currency(row.currency)
            if source in unconverted:
                unconverted[source] += row.total_value
                continue
            if source not in rates:
                try:
                    rates[source], _, stale = await self._converter.get_rate(source, target)
                except ConversionError as exc:
                    logger.warning("Portfolio summary of wallet %s skips %s holdings: %s", wallet_id, source.value, exc)
                    unconverted[source] = row.total_value
                    degraded = True
                    continue
                degraded = degraded or stale
            rate = rates[source]

            def convert(amount: int) -> int:
                return apply_rate(amount, rate, source, target)

            asset_class = AssetClass(row.asset_class)
            current = by_class.get(asset_class) or AssetClassSummary(
                asset_class=asset_class, holding_count=0, total_value=0,
                total_cost=0, realized_gain=0, total_dividends=0,
            )
            by_class[asset_class] = AssetClassSummary(
                asset_class=asset_class,
                holding_count=current.holding_count + row.open_count,
                total_value=current.total_value + convert(row.total_value),
                total_cost=current.total_cost + convert(row.total_cost),
                realized_gain=current.realized_gain + convert(row.realized_gain),
                total_dividends=current.total_dividends + convert(row.total_dividends),
            )

        classes = list(by_class.values())
        total_value = sum(c.total_value for c in classes)
        total_cost = sum(c.total_cost for c in classes)
        realized = sum(c.realized_gain for c in classes)
        unrealized = total_value - total_cost
        total_pnl = unrealized + realized
        return PortfolioSummary(
            wallet_id=wallet_id,
            currency=target,
            total_value=total_value,
            total_cost=total_cost,
            unrealized_gain=unrealized,
            realized_gain=realized,
            total_dividends=sum(c.total_dividends for c in classes),
            total_pnl=total_pnl,
            total_pnl_percent=float(Decimal(total_pnl) * 100 / total_cost) if total_cost > 0 else 0.0,
            holding_count=sum(c.holding_count for c in classes),
            by_asset_class=classes,
            degraded=degraded,
            unconverted=unconverted,
        )

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    async def record_snapshot(self, wallet_id: int, timestamp: datetime | None = None) -> Snapshot:
        return await self._recorder.record(wallet_id, timestamp)

    async def record_all_snapshots(self, timestamp: datetime | None = None) -> list[Snapshot]:
        async with self._session_factory() as session:
            wallets = await WalletRepo(session).list_all()
        return await self._recorder.record_all([w.id for w in wallets], timestamp)

    async def get_history(
        self,
        wallet_id: int,
        start: datetime,
        end: datetime,
        max_points: int | None = None,
    ) -> list[Snapshot]:
        return await self._recorder.history(wallet_id, start, end, max_points)

    async def purge_snapshots(self, older_than: timedelta | None = None, now: datetime | None = None) -> int:
        return await self._recorder.purge_older_than(older_than or self._snapshot_retention, now)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _view(
        self,
        valuation: WalletValuation,
        preferred_currency: Currency | str | None,
        require_converted: bool,
    ) -> ValuationView:
        if require_converted and valuation.unconverted:
            missing = next(iter(valuation.unconverted))
            raise RateUnavailableError(missing.value, valuation.currency.value)

        preferred = parse_currency(preferred_currency) if preferred_currency else valuation.currency
        display = await self._engine.display_value(
            valuation.total_value, valuation.currency, preferred, require_converted
        )
        if valuation.degraded and not display.degraded:
            display = display.model_copy(update={"degraded": True})
        return ValuationView(valuation=valuation, display=display)

    def _normalize_quantity(
        self, holding: Holding, quantity: Decimal, unit: PhysicalUnit | str | None
    ) -> tuple[int, Decimal, PhysicalUnit | None]:
        """(scaled storage quantity, unscaled storage quantity, unit the caller used)."""
        asset = holding.asset
        storage = storage_unit_for(asset)
        given = parse_unit(unit) if unit is not None else None
        if storage is None:
            if given is not None:
                raise UnsupportedUnitError(given.value)
            storage_qty = quantity
        else:
            given = given or storage
            storage_qty = convert_quantity(quantity, given, storage)

        scaled = scale_quantity(storage_qty, asset)
        require_positive("quantity", scaled)
        return scaled, Decimal(scaled) / asset.precision_scale, given

    @asynccontextmanager
    async def _holding_lock(self, ref: HoldingRef) -> AsyncIterator[None]:
        """Serialize commands on one holding.

        A (wallet, symbol) ref first takes the symbol lock, which also guards
        creation on first buy, then the id lock of the holding it names.
        Locks are always taken in that order.
        """
        if ref.holding_id is not None:
            async with self._locks.acquire(("holding", ref.holding_id)):
                yield
            return

        async with self._locks.acquire(("symbol", ref.wallet_id, ref.symbol.upper())):
            holding_id = await self._find_holding_id(ref)
            if holding_id is None:
                yield
                return
            async with self._locks.acquire(("holding", holding_id)):
                yield

    async def _find_holding_id(self, ref: HoldingRef) -> int | None:
        async with self._session_factory() as session:
            existing = await HoldingRepo(session).find_holding(ref.wallet_id, ref.symbol)
        return existing.id if existing is not None else None

    async def _resolve(
        self,
        session: AsyncSession,
        ref: HoldingRef,
        create: bool,
        currency: Currency | None,
    ) -> Holding:
        repo = HoldingRepo(session)
        if ref.holding_id is not None:
            holding = await repo.get_holding_for_update(ref.holding_id)
            if holding is None:
                raise HoldingNotFoundError(ref.holding_id)
            return holding

        existing = await repo.find_holding(ref.wallet_id, ref.symbol)
        if existing is not None:
            holding = await repo.get_holding_for_update(existing.id)
            if holding is not None:
                return holding
        if not create:
            raise HoldingNotFoundError(f"{ref.wallet_id}/{ref.symbol.upper()}")

        wallet = await WalletRepo(session).get_by_id(ref.wallet_id)
        if wallet is None:
            raise WalletNotFoundError(ref.wallet_id)
        native = native_currency_for(ref.asset_class, ref.native_currency, currency or Currency(wallet.currency))
        holding = await repo.create_holding(Holding(
            wallet_id=wallet.id,
            symbol=ref.symbol.upper(),
            name=ref.name or ref.symbol.upper(),
            asset_class=ref.asset_class.value,
            native_currency=native.value,
            quantity=0,
            average_cost=0,
            total_cost=0,
            realized_gain=0,
            unallocated_return_of_capital=0,
            total_dividends=0,
            current_value=0,
        ))
        logger.info("Holding created: id=%s wallet=%s symbol=%s", holding.id, wallet.id, holding.symbol)
        return holding

    async def _run(
        self,
        ref: HoldingRef,
        command: Callable[[AsyncSession, Holding], Awaitable[T]],
        timeout: float | None,
        create: bool = False,
        currency: Currency | None = None,
    ) -> T:
        """Lock, open a transaction, run the command, commit, then notify listeners.

        Any exception, a timeout included, rolls the whole transaction back.
        """
        async with asyncio.timeout(timeout if timeout is not None else self._default_timeout):
            async with self._holding_lock(ref):
                async with self._session_factory() as session:
                    async with session.begin():
                        holding = await self._resolve(session, ref, create, currency)
                        result = await command(session, holding)
                        wallet_id = holding.wallet_id

        # Committed: listeners must run even if the caller is cancelled now
        await asyncio.shield(self._notify_committed(wallet_id))
        return result

    async def _notify_committed(self, wallet_id: int) -> None:
        for listener in self._committed_listeners:
            await listener(wallet_id)
