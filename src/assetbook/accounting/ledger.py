"""LotLedger: buy/sell/cash-event transitions on a holding and its lots.

Runs inside the caller's transaction and only flushes; the caller commits and
fires cache invalidation after the commit. Every command appends a Transaction
journal row, and the latest row of a holding can be reversed.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from assetbook.accounting.fifo import (
    allocate_pro_rata,
    blend_average_cost,
    lot_remaining_cost,
    order_lots,
    plan_fifo_sale,
)
from assetbook.accounting.money import require_positive, round_half_up
from assetbook.db.models.holding import Holding, Lot, LotCostAdjustment
from assetbook.db.models.transaction import Transaction, TransactionLot
from assetbook.domain.enums import ReturnOfCapitalPolicy, TransactionType
from assetbook.domain.models.ledger import (
    BuyInput,
    BuyResult,
    CashEventResult,
    SellResult,
    TransactionRecord,
)
from assetbook.exceptions import InsufficientQuantityError, InvalidTransactionAmountError, LedgerError

logger = logging.getLogger(__name__)


class LotLedger:
    """FIFO lot accounting for one holding at a time.

    Lots are the source of truth for sell-time cost basis; Holding.average_cost
    is a denormalized blend recomputed on every buy and left alone by sells.
    At all times total_cost == sum of open lot costs - unallocated return of capital.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record_buy(self, holding: Holding, buy: BuyInput) -> BuyResult:
        require_positive("quantity", buy.quantity)
        require_positive("unit_cost", buy.unit_cost)
        require_positive("total_cost", buy.total_cost)

        lot = Lot(
            holding_id=holding.id,
            original_quantity=buy.quantity,
            remaining_quantity=buy.quantity,
            unit_cost=buy.unit_cost,
            total_cost=buy.total_cost,
            acquired_at=buy.acquired_at,
            adjustments=[],
        )
        self._session.add(lot)
        average_before = holding.average_cost

        holding.average_cost = blend_average_cost(holding.quantity, holding.average_cost, buy.quantity, buy.unit_cost)
        holding.quantity += buy.quantity
        holding.total_cost += buy.total_cost
        if holding.display_unit is None and buy.display_unit is not None:
            holding.display_unit = buy.display_unit.value
        await self._session.flush()

        txn = await self._journal(
            holding,
            TransactionType.BUY,
            buy.acquired_at,
            quantity=buy.quantity,
            amount=buy.total_cost,
            average_cost_before=average_before,
            lot_id=lot.id,
            price_currency=buy.price_currency.value if buy.price_currency else None,
            fx_rate=buy.fx_rate,
            degraded=buy.degraded,
        )
        logger.info(
            "Buy recorded: holding=%s lot=%s quantity=%d total_cost=%d",
            holding.id, lot.id, buy.quantity, buy.total_cost,
        )
        return BuyResult(
            holding_id=holding.id,
            lot_id=lot.id,
            transaction_id=txn.id,
            quantity=buy.quantity,
            total_cost=buy.total_cost,
            currency=holding.currency,
            fx_rate=buy.fx_rate,
            degraded=buy.degraded,
        )

    async def record_sell(
        self,
        holding: Holding,
        lots: list[Lot],
        quantity: int,
        proceeds: int,
        sold_at: datetime,
    ) -> SellResult:
        """Consume lots oldest-first. Nothing is mutated unless the whole sell fits.

        `lots` must be every open lot of the holding.
        """
        require_positive("quantity", quantity)
        if proceeds < 0:
            raise InvalidTransactionAmountError("proceeds", proceeds)
        if quantity > holding.quantity:
            raise InsufficientQuantityError(holding.id, holding.quantity, quantity)

        plan = plan_fifo_sale(lots, quantity, holding_id=holding.id)
        lot_basis = sum(step.cost_basis for step in plan)
        released = self._release_unallocated(holding, lots, quantity, lot_basis)

        by_id = {lot.id: lot for lot in lots}
        for step in plan:
            by_id[step.lot_id].remaining_quantity -= step.quantity

        cost_basis = lot_basis - released
        realized = proceeds - cost_basis

        holding.quantity -= quantity
        holding.total_cost -= cost_basis
        holding.unallocated_return_of_capital -= released
        holding.realized_gain += realized

        txn = await self._journal(
            holding,
            TransactionType.SELL,
            sold_at,
            quantity=quantity,
            amount=proceeds,
            cost_basis=cost_basis,
            realized_gain=realized,
            unallocated_roc_delta=-released,
            lots=[
                TransactionLot(lot_id=step.lot_id, quantity=step.quantity, cost_basis=step.cost_basis)
                for step in plan
            ],
        )
        logger.info(
            "Sell recorded: holding=%s quantity=%d lots=%d cost_basis=%d realized=%d at %s",
            holding.id, quantity, len(plan), cost_basis, realized, sold_at.isoformat(),
        )
        return SellResult(
            holding_id=holding.id,
            transaction_id=txn.id,
            quantity=quantity,
            proceeds=proceeds,
            cost_basis_consumed=cost_basis,
            realized_gain=realized,
            return_of_capital_released=released,
            currency=holding.currency,
            consumptions=plan,
        )

    async def record_dividend(self, holding: Holding, amount: int, occurred_at: datetime) -> CashEventResult:
        """Pure income: no lot or cost basis change."""
        require_positive("amount", amount)
        holding.total_dividends += amount
        txn = await self._journal(holding, TransactionType.DIVIDEND, occurred_at, amount=amount)
        logger.info("Dividend recorded: holding=%s amount=%d", holding.id, amount)
        return CashEventResult(
            holding_id=holding.id,
            transaction_id=txn.id,
            event_type=TransactionType.DIVIDEND,
            amount=amount,
            occurred_at=occurred_at,
        )

    async def record_return_of_capital(
        self,
        holding: Holding,
        lots: list[Lot],
        amount: int,
        occurred_at: datetime,
        policy: ReturnOfCapitalPolicy = ReturnOfCapitalPolicy.AGGREGATE_ONLY,
    ) -> CashEventResult:
        """Reduce cost basis by `amount`; anything beyond the remaining basis is realized gain."""
        require_positive("amount", amount)

        shares: list[tuple[Lot, int]] = []
        unallocated = 0
        if policy == ReturnOfCapitalPolicy.PRO_RATA_LOTS:
            reduction, shares = self._plan_lot_adjustments(lots, amount, holding.total_cost)
        else:
            reduction = min(amount, max(holding.total_cost, 0))
            unallocated = reduction

        excess = amount - reduction
        average_before = holding.average_cost
        holding.total_cost -= reduction
        holding.unallocated_return_of_capital += unallocated
        holding.realized_gain += excess
        if holding.quantity > 0:
            scale = holding.asset.precision_scale
            holding.average_cost = round_half_up(Decimal(holding.total_cost) * scale / holding.quantity)

        txn = await self._journal(
            holding,
            TransactionType.RETURN_OF_CAPITAL,
            occurred_at,
            amount=amount,
            cost_basis=reduction,
            realized_gain=excess,
            unallocated_roc_delta=unallocated,
            average_cost_before=average_before,
        )
        for lot, share in shares:
            lot.adjustments.append(LotCostAdjustment(
                transaction_id=txn.id,
                amount=share,
                quantity_at_adjustment=lot.remaining_quantity,
                created_at=occurred_at,
            ))
        await self._session.flush()

        logger.info(
            "Return of capital recorded: holding=%s amount=%d reduction=%d excess=%d policy=%s",
            holding.id, amount, reduction, excess, policy.value,
        )
        return CashEventResult(
            holding_id=holding.id,
            transaction_id=txn.id,
            event_type=TransactionType.RETURN_OF_CAPITAL,
            amount=amount,
            cost_reduction=reduction,
            realized_gain=excess,
            occurred_at=occurred_at,
        )

    async def reverse(self, holding: Holding, txn: Transaction, lots: Sequence[Lot]) -> TransactionRecord:
        """Undo `txn`, which must be the holding's latest journal row, and delete it.

        `lots` must contain every lot the transaction touched.
        """
        record = TransactionRecord.model_validate(txn)
        by_id = {lot.id: lot for lot in lots}
        kind = TransactionType(txn.transaction_type)

        if kind == TransactionType.BUY:
            lot = by_id.get(txn.lot_id)
            if lot is None or lot.remaining_quantity != lot.original_quantity or lot.adjustments:
                raise LedgerError(f"Lot of transaction {txn.id} has changed since it was bought")
            holding.quantity -= lot.original_quantity
            holding.total_cost -= txn.amount
            holding.average_cost = txn.average_cost_before
        elif kind == TransactionType.SELL:
            for link in txn.lots:
                by_id[link.lot_id].remaining_quantity += link.quantity
            holding.quantity += txn.quantity
            holding.total_cost += txn.cost_basis
            holding.realized_gain -= txn.realized_gain
        elif kind == TransactionType.DIVIDEND:
            holding.total_dividends -= txn.amount
        else:
            for lot in lots:
                for adjustment in [a for a in lot.adjustments if a.transaction_id == txn.id]:
                    lot.adjustments.remove(adjustment)
            holding.total_cost += txn.cost_basis
            holding.realized_gain -= txn.realized_gain
            holding.average_cost = txn.average_cost_before
        holding.unallocated_return_of_capital -= txn.unallocated_roc_delta

        # Adjustments reference the journal row, so they go first
        await self._session.flush()
        await self._session.delete(txn)
        await self._session.flush()
        if kind == TransactionType.BUY:
            await self._session.delete(by_id[txn.lot_id])
            await self._session.flush()

        logger.info("Transaction reversed: holding=%s transaction=%s type=%s", holding.id, record.id, kind.value)
        return record

    async def _journal(
        self,
        holding: Holding,
        kind: TransactionType,
        occurred_at: datetime,
        lots: list[TransactionLot] | None = None,
        **values,
    ) -> Transaction:
        values.setdefault("average_cost_before", holding.average_cost)
        txn = Transaction(
            holding_id=holding.id,
            wallet_id=holding.wallet_id,
            transaction_type=kind.value,
            currency=holding.native_currency,
            occurred_at=occurred_at,
            lots=lots or [],
            **values,
        )
        self._session.add(txn)
        await self._session.flush()
        return txn

    @staticmethod
    def _release_unallocated(holding: Holding, lots: list[Lot], quantity: int, lot_basis: int) -> int:
        """Share of unallocated return of capital a sell takes, by the lot cost it consumes."""
        unallocated = holding.unallocated_return_of_capital
        if unallocated <= 0:
            return 0
        if quantity >= holding.quantity:
            return unallocated
        open_cost = sum(lot_remaining_cost(lot) for lot in order_lots(lots))
        if open_cost <= 0:
            return 0
        share = round_half_up(Decimal(unallocated) * lot_basis / open_cost)
        # What stays unallocated may not exceed the lot cost left open
        return min(unallocated, max(share, unallocated - (open_cost - lot_basis)))

    @staticmethod
    def _plan_lot_adjustments(lots: list[Lot], amount: int, total_cost: int) -> tuple[int, list[tuple[Lot, int]]]:
        """Allocate a reduction across open lots in proportion to their remaining cost."""
        candidates = order_lots(lots)
        costs = [lot_remaining_cost(lot) for lot in candidates]
        reduction = min(amount, sum(costs), max(total_cost, 0))
        if reduction <= 0:
            return 0, []
        shares = allocate_pro_rata(reduction, costs)
        return reduction, [(lot, share) for lot, share in zip(candidates, shares) if share > 0]
