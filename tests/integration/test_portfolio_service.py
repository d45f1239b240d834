"""End-to-end tests for PortfolioService against SQLite."""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import func, select

from assetbook.db.models import Holding, Lot, Transaction
from assetbook.domain.enums import AssetClass, Currency, ReturnOfCapitalPolicy, TransactionType
from assetbook.domain.models.ledger import HoldingRef
from assetbook.domain.models.pricing import PriceQuote
from assetbook.exceptions import (
    HoldingNotFoundError,
    InsufficientQuantityError,
    LedgerError,
    PriceSourceError,
    RateUnavailableError,
    UnsupportedUnitError,
    WalletNotFoundError,
)
from assetbook.pricing.rate_cache import RateCache

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _ref(wallet_id: int, symbol: str = "AAPL", **kwargs) -> HoldingRef:
    return HoldingRef(wallet_id=wallet_id, symbol=symbol, **kwargs)


async def _bought(service, ref: HoldingRef, *args, **kwargs) -> Holding:
    return (await service.buy(ref, *args, **kwargs)).holding


class TestBuySell:
    async def test_gold_scenario(self, service):
        wallet = await service.create_wallet("Gold", "VND")

        bought = await service.buy(
            _ref(wallet.id, "SJC", asset_class=AssetClass.COMMODITY_VND), 2, 3_218_000, "VND", unit="tael"
        )
        assert bought.fx_rate is None
        assert bought.degraded is False
        holding = bought.holding
        assert holding.quantity == 750_000
        assert holding.total_cost == 6_436_000
        assert holding.average_cost == 85_813
        assert holding.native_currency == "VND"
        assert holding.display_unit == "tael"

        result = await service.sell(HoldingRef(holding_id=holding.id), 1, 3_300_000, unit="tael")

        assert result.quantity == 375_000
        assert result.proceeds == 3_300_000
        assert result.cost_basis_consumed == 3_218_000
        assert result.realized_gain == 82_000

    async def test_first_buy_creates_holding_then_reuses_it(self, service):
        wallet = await service.create_wallet("Main", "USD")

        first = await _bought(service, _ref(wallet.id, "aapl"), 10, 15_000, "USD", timestamp=T0)
        second = await _bought(service, _ref(wallet.id, "AAPL"), 5, 16_000, "USD", timestamp=T0 + timedelta(days=1))

        assert first.id == second.id
        assert second.symbol == "AAPL"
        assert second.quantity == 150_000
        assert second.total_cost == 230_000
        holdings = await service.list_holdings(wallet.id)
        assert len(holdings) == 1

    async def test_buy_paid_in_foreign_currency(self, service):
        wallet = await service.create_wallet("Main", "USD")
        bought = await service.buy(_ref(wallet.id, "SAP", native_currency=Currency.USD), 1, 10_000, "EUR")
        assert bought.holding.total_cost == bought.total_cost == 11_000
        assert bought.fx_rate == Decimal("1.1")
        assert bought.degraded is False

    async def test_fifo_lots_after_sell(self, service, session_factory):
        wallet = await service.create_wallet("Main", "USD")
        ref = _ref(wallet.id)
        holding = await _bought(service, ref, 10, 100, "USD", timestamp=T0)
        await service.buy(ref, 5, 100, "USD", timestamp=T0 + timedelta(days=1))
        await service.buy(ref, 10, 100, "USD", timestamp=T0 + timedelta(days=2))

        await service.sell(ref, 12, 200)

        async with session_factory() as session:
            lots = (await session.execute(
                select(Lot).where(Lot.holding_id == holding.id).order_by(Lot.id)
            )).scalars().all()
        assert [lot.remaining_quantity for lot in lots] == [0, 30_000, 100_000]

    async def test_oversell_rolls_back(self, service, session_factory):
        wallet = await service.create_wallet("Main", "USD")
        holding = await _bought(service, _ref(wallet.id), 1, 100, "USD")

        with pytest.raises(InsufficientQuantityError):
            await service.sell(HoldingRef(holding_id=holding.id), 2, 100)

        async with session_factory() as session:
            stored = await session.get(Holding, holding.id)
        assert stored.quantity == 10_000

    async def test_unknown_holding(self, service):
        with pytest.raises(HoldingNotFoundError):
            await service.sell(HoldingRef(holding_id=404), 1, 100)

    async def test_sell_by_unknown_symbol(self, service):
        wallet = await service.create_wallet("Main", "USD")
        with pytest.raises(HoldingNotFoundError):
            await service.sell(_ref(wallet.id, "NOPE"), 1, 100)

    async def test_buy_into_unknown_wallet(self, service):
        with pytest.raises(WalletNotFoundError):
            await service.buy(_ref(999), 1, 100, "USD")

    async def test_unit_on_equity_rejected(self, service):
        wallet = await service.create_wallet("Main", "USD")
        with pytest.raises(UnsupportedUnitError):
            await service.buy(_ref(wallet.id), 1, 100, "USD", unit="gram")

    async def test_full_sell_then_remove(self, service):
        wallet = await service.create_wallet("Main", "USD")
        holding = await _bought(service, _ref(wallet.id), 1, 100, "USD")

        with pytest.raises(LedgerError):
            await service.remove_holding(holding.id)

        await service.sell(HoldingRef(holding_id=holding.id), 1, 150)
        await service.remove_holding(holding.id)

        assert await service.list_holdings(wallet.id) == []


class TestCommandAtomicity:
    async def test_timeout_rolls_back_new_holding(self, build_service, session_factory):
        async def slow_rate(source, target):
            await asyncio.sleep(5)

        slow = MagicMock()
        slow.get_rate = AsyncMock(side_effect=slow_rate)
        service = build_service(source=slow)
        wallet = await service.create_wallet("Main", "USD")

        with pytest.raises(TimeoutError):
            await service.buy(_ref(wallet.id, "SAP"), 1, 100, "EUR", timeout=0.05)

        async with session_factory() as session:
            count = await session.scalar(select(func.count(Holding.id)))
        assert count == 0

    async def test_committed_listener_runs_after_commit(self, service, session_factory):
        wallet = await service.create_wallet("Main", "USD")
        seen = []

        async def listener(wallet_id):
            async with session_factory() as session:
                seen.append((wallet_id, await session.scalar(select(func.count(Lot.id)))))

        service.on_committed(listener)
        await service.buy(_ref(wallet.id), 1, 100, "USD")

        assert seen == [(wallet.id, 1)]


class TestValuation:
    async def test_valuation_tracks_committed_mutations(self, service):
        wallet = await service.create_wallet("Main", "USD")
        holding = await _bought(service, _ref(wallet.id), 10, 15_000, "USD")
        await service.apply_market_price(holding.id, 20_000, "USD")

        view = await service.get_valuation(wallet.id)
        assert view.valuation.total_value == 200_000
        assert view.valuation.total_cost == 150_000
        assert view.valuation.total_pnl == 50_000
        assert view.valuation.holding_count == 1
        assert not view.valuation.stale_price

        await service.buy(HoldingRef(holding_id=holding.id), 5, 20_000, "USD")
        view = await service.get_valuation(wallet.id)
        assert view.valuation.total_value == 300_000
        assert view.valuation.total_cost == 250_000

        await service.sell(HoldingRef(holding_id=holding.id), 15, 21_000)
        view = await service.get_valuation(wallet.id)
        assert view.valuation.total_value == 0
        assert view.valuation.holding_count == 0

    async def test_unpriced_holding_is_flagged_stale(self, service):
        wallet = await service.create_wallet("Main", "USD")
        await service.buy(_ref(wallet.id), 1, 100, "USD")

        view = await service.get_valuation(wallet.id)

        assert view.valuation.stale_price is True
        assert view.valuation.total_value == 0

    async def test_preferred_currency_display(self, service):
        wallet = await service.create_wallet("Main", "USD")
        holding = await _bought(service, _ref(wallet.id), 10, 15_000, "USD")
        await service.apply_market_price(holding.id, 20_000, "USD")

        view = await service.get_valuation(wallet.id, "VND")

        assert view.display.primary.amount == 200_000
        assert view.display.primary.currency == Currency.USD
        assert view.display.secondary.amount == 50_000_000
        assert view.display.secondary.currency == Currency.VND

    async def test_mixed_currency_wallet(self, service):
        wallet = await service.create_wallet("Main", "USD")
        usd = await _bought(service, _ref(wallet.id, "AAPL"), 1, 10_000, "USD")
        eur = await _bought(service, _ref(wallet.id, "SAP", native_currency=Currency.EUR), 1, 10_000, "EUR")
        await service.apply_market_price(usd.id, 10_000, "USD")
        await service.apply_market_price(eur.id, 20_000, "EUR")

        view = await service.get_valuation(wallet.id)

        assert view.valuation.total_value == 10_000 + 22_000
        assert view.valuation.total_cost == 10_000 + 11_000

    async def test_unconvertible_currency(self, service, rates):
        wallet = await service.create_wallet("Main", "USD")
        await service.buy(_ref(wallet.id, "SONY", native_currency=Currency.JPY), 1, 1_000, "JPY")

        view = await service.get_valuation(wallet.id)
        assert view.valuation.unconverted == {Currency.JPY: 0}
        assert view.display.degraded is True

        with pytest.raises(RateUnavailableError):
            await service.get_valuation(wallet.id, require_converted=True)

    async def test_batch_valuations(self, service):
        first = await service.create_wallet("A", "USD")
        second = await service.create_wallet("B", "VND")
        holding = await _bought(service, _ref(first.id), 1, 10_000, "USD")
        await service.apply_market_price(holding.id, 12_000, "USD")

        views = await service.get_valuations([first.id, second.id, 999])

        assert set(views) == {first.id, second.id}
        assert views[first.id].valuation.total_value == 12_000
        assert views[second.id].valuation.total_value == 0

    async def test_holding_valuations(self, service):
        wallet = await service.create_wallet("Main", "USD")
        holding = await _bought(service, _ref(wallet.id), 2, 5_000, "USD")
        await service.apply_market_price(holding.id, 6_000, "USD")

        [summary] = await service.get_holding_valuations(wallet.id)

        assert summary.current_value == 12_000
        assert summary.unrealized_gain == 2_000
        assert summary.unrealized_gain_percent == pytest.approx(20.0)


class TestPrices:
    async def test_refresh_prices_skips_failures(self, build_service):
        async def get_price(symbol):
            if symbol == "SJC":
                return PriceQuote(price=3_300_000, currency=Currency.VND, as_of=T0)
            raise PriceSourceError(f"no quote for {symbol}")

        prices = MagicMock()
        prices.get_price = AsyncMock(side_effect=get_price)
        service = build_service(price_source=prices)
        wallet = await service.create_wallet("Gold", "VND")
        await service.buy(_ref(wallet.id, "SJC", asset_class=AssetClass.COMMODITY_VND), 2, 3_218_000, "VND", unit="tael")
        await service.buy(_ref(wallet.id, "PNJ", asset_class=AssetClass.COMMODITY_VND), 1, 3_000_000, "VND", unit="tael")

        updates = await service.refresh_prices(wallet.id)

        assert len(updates) == 1
        assert updates[0].current_value == 6_600_000
        assert updates[0].price_per_storage_unit == Decimal("88000")

    async def test_refresh_without_source(self, service):
        wallet = await service.create_wallet("Main", "USD")
        with pytest.raises(PriceSourceError):
            await service.refresh_prices(wallet.id)


class TestCashEvents:
    async def test_dividend(self, service, session_factory):
        wallet = await service.create_wallet("Main", "USD")
        holding = await _bought(service, _ref(wallet.id), 10, 1_000, "USD")

        await service.record_dividend(HoldingRef(holding_id=holding.id), 500)

        async with session_factory() as session:
            stored = await session.get(Holding, holding.id)
            journal = (await session.execute(select(Transaction).order_by(Transaction.id))).scalars().all()
        assert stored.total_dividends == 500
        assert stored.total_cost == 10_000
        assert [t.transaction_type for t in journal] == ["BUY", "DIVIDEND"]

    async def test_return_of_capital_uses_configured_policy(self, build_service, session_factory):
        service = build_service(return_of_capital_policy=ReturnOfCapitalPolicy.PRO_RATA_LOTS)
        wallet = await service.create_wallet("Main", "USD")
        ref = _ref(wallet.id)
        await service.buy(ref, 10, 1_000, "USD", timestamp=T0)
        await service.buy(ref, 10, 3_000, "USD", timestamp=T0 + timedelta(days=1))

        result = await service.record_return_of_capital(ref, 4_000)
        assert result.cost_reduction == 4_000

        sold = await service.sell(ref, 10, 1_000)
        assert sold.cost_basis_consumed == 9_000
        assert sold.realized_gain == 1_000

    async def test_return_of_capital_reaches_realized_gain_on_sell(self, service, session_factory):
        wallet = await service.create_wallet("Main", "USD")
        ref = _ref(wallet.id)
        holding = await _bought(service, ref, 10, 100, "USD", timestamp=T0)

        await service.record_return_of_capital(ref, 300)
        sold = await service.sell(ref, 10, 100)

        assert sold.return_of_capital_released == 300
        assert sold.realized_gain == 300
        async with session_factory() as session:
            stored = await session.get(Holding, holding.id)
        assert stored.total_cost == 0
        assert stored.unallocated_return_of_capital == 0
        assert stored.realized_gain == 300


class TestStaleRateBuy:
    async def test_buy_with_stale_rate_is_flagged(self, build_service, rates):
        now = [0.0]
        service = build_service(rate_cache=RateCache(ttl_seconds=60, clock=lambda: now[0]))
        wallet = await service.create_wallet("Main", "USD")
        ref = _ref(wallet.id, "SAP")

        fresh = await service.buy(ref, 1, 10_000, "EUR")
        assert fresh.degraded is False

        now[0] = 120.0
        del rates[("EUR", "USD")]
        stale = await service.buy(ref, 1, 10_000, "EUR")

        assert stale.degraded is True
        assert stale.fx_rate == Decimal("1.1")
        assert stale.total_cost == 11_000
        assert stale.holding.quantity == 20_000

        journal = await service.list_transactions(holding_id=stale.holding_id)
        assert [t.degraded for t in journal] == [False, True]
        assert journal[-1].price_currency == Currency.EUR
        assert journal[-1].fx_rate == Decimal("1.1")

    async def test_buy_without_any_rate_fails(self, build_service, rates, session_factory):
        service = build_service()
        wallet = await service.create_wallet("Main", "USD")
        del rates[("EUR", "USD")]

        with pytest.raises(RateUnavailableError):
            await service.buy(_ref(wallet.id, "SAP"), 1, 10_000, "EUR")

        async with session_factory() as session:
            assert await session.scalar(select(func.count(Transaction.id))) == 0


class TestConcurrency:
    async def test_concurrent_sells_cannot_oversell(self, service, session_factory):
        wallet = await service.create_wallet("Main", "USD")
        holding = await _bought(service, _ref(wallet.id), 10, 100, "USD")
        ref = HoldingRef(holding_id=holding.id)

        results = await asyncio.gather(
            service.sell(ref, 6, 150), service.sell(ref, 6, 150), return_exceptions=True
        )

        assert sum(isinstance(r, InsufficientQuantityError) for r in results) == 1
        assert sum(not isinstance(r, BaseException) for r in results) == 1
        async with session_factory() as session:
            stored = await session.get(Holding, holding.id)
            lots = (await session.execute(select(Lot).where(Lot.holding_id == holding.id))).scalars().all()
        assert stored.quantity == 40_000
        assert stored.quantity == sum(lot.remaining_quantity for lot in lots)

    async def test_symbol_and_id_refs_share_a_lock(self, service, session_factory):
        wallet = await service.create_wallet("Main", "USD")
        holding = await _bought(service, _ref(wallet.id), 10, 100, "USD")

        results = await asyncio.gather(
            service.sell(_ref(wallet.id), 6, 150),
            service.sell(HoldingRef(holding_id=holding.id), 6, 150),
            return_exceptions=True,
        )

        assert sum(isinstance(r, InsufficientQuantityError) for r in results) == 1
        async with session_factory() as session:
            stored = await session.get(Holding, holding.id)
        assert stored.quantity == 40_000

    async def test_concurrent_first_buys_create_one_holding(self, service):
        wallet = await service.create_wallet("Main", "USD")

        await asyncio.gather(*(service.buy(_ref(wallet.id, "MSFT"), 1, 100, "USD") for _ in range(3)))

        [holding] = await service.list_holdings(wallet.id)
        assert holding.quantity == 30_000

    async def test_locks_are_released_after_commands(self, service):
        wallet = await service.create_wallet("Main", "USD")
        holding = await _bought(service, _ref(wallet.id), 1, 100, "USD")
        await service.sell(HoldingRef(holding_id=holding.id), 1, 100)

        assert len(service._locks) == 0


class TestJournal:
    async def test_list_transactions_by_wallet(self, service):
        wallet = await service.create_wallet("Main", "USD")
        ref = _ref(wallet.id)
        await service.buy(ref, 10, 100, "USD", timestamp=T0)
        await service.buy(_ref(wallet.id, "MSFT"), 1, 100, "USD", timestamp=T0 + timedelta(hours=1))
        sold = await service.sell(ref, 4, 200, timestamp=T0 + timedelta(days=1))
        await service.record_dividend(ref, 50, timestamp=T0 + timedelta(days=2))

        journal = await service.list_transactions(wallet_id=wallet.id)

        assert [t.transaction_type for t in journal] == [
            TransactionType.BUY, TransactionType.BUY, TransactionType.SELL, TransactionType.DIVIDEND,
        ]
        sell = journal[2]
        assert sell.id == sold.transaction_id
        assert sell.realized_gain == 400
        assert [(link.quantity, link.cost_basis) for link in sell.lots] == [(40_000, 400)]

    async def test_list_transactions_needs_a_filter(self, service):
        with pytest.raises(ValueError):
            await service.list_transactions()

    async def test_reverse_latest_until_empty(self, service, session_factory):
        wallet = await service.create_wallet("Main", "USD")
        ref = _ref(wallet.id)
        holding = await _bought(service, ref, 10, 100, "USD", timestamp=T0)
        await service.sell(ref, 4, 200, timestamp=T0 + timedelta(days=1))

        reversed_sell = await service.reverse_last_transaction(holding.id)
        assert reversed_sell.transaction_type == TransactionType.SELL

        async with session_factory() as session:
            stored = await session.get(Holding, holding.id)
            lots = (await session.execute(select(Lot).where(Lot.holding_id == holding.id))).scalars().all()
        assert stored.quantity == 100_000
        assert stored.realized_gain == 0
        assert [lot.remaining_quantity for lot in lots] == [100_000]
        view = await service.get_valuation(wallet.id)
        assert view.valuation.total_cost == 1_000

        reversed_buy = await service.reverse_last_transaction(holding.id)
        assert reversed_buy.transaction_type == TransactionType.BUY
        assert await service.list_transactions(holding_id=holding.id) == []

        async with session_factory() as session:
            stored = await session.get(Holding, holding.id)
            lot_count = await session.scalar(select(func.count(Lot.id)))
        assert stored.quantity == 0
        assert stored.total_cost == 0
        assert lot_count == 0

        with pytest.raises(LedgerError):
            await service.reverse_last_transaction(holding.id)


class TestPortfolioSummary:
    async def test_summary_by_asset_class(self, service):
        wallet = await service.create_wallet("Main", "USD")
        aapl = await _bought(service, _ref(wallet.id, "AAPL"), 10, 15_000, "USD")
        sap = await _bought(service, _ref(wallet.id, "SAP", native_currency=Currency.EUR), 1, 10_000, "EUR")
        btc = _ref(wallet.id, "BTC", asset_class=AssetClass.CRYPTO)
        await service.buy(btc, 1, 50_000, "USD")
        await service.sell(btc, 1, 60_000)
        await service.buy(_ref(wallet.id, "SONY", native_currency=Currency.JPY), 1, 1_000, "JPY")
        await service.apply_market_price(aapl.id, 20_000, "USD")
        await service.apply_market_price(sap.id, 20_000, "EUR")

        summary = await service.get_portfolio_summary(wallet.id)

        classes = {c.asset_class: c for c in summary.by_asset_class}
        assert set(classes) == {AssetClass.EQUITY, AssetClass.CRYPTO}
        equity = classes[AssetClass.EQUITY]
        assert equity.holding_count == 2
        assert equity.total_value == 200_000 + 22_000
        assert equity.total_cost == 150_000 + 11_000
        crypto = classes[AssetClass.CRYPTO]
        assert crypto.holding_count == 0
        assert crypto.realized_gain == 10_000

        assert summary.currency == Currency.USD
        assert summary.total_value == 222_000
        assert summary.unrealized_gain == 61_000
        assert summary.realized_gain == 10_000
        assert summary.total_pnl == 71_000
        assert summary.total_pnl_percent == pytest.approx(71_000 * 100 / 161_000)
        assert summary.unconverted == {Currency.JPY: 0}
        assert summary.degraded is True

    async def test_summary_of_unknown_wallet(self, service):
        with pytest.raises(WalletNotFoundError):
            await service.get_portfolio_summary(404)
