"""FIFO lot consumption: pure functions, no DB dependency.

Oldest lot (by acquired_at, then lot id) is consumed first. Cost basis is
attributed from each lot's total cost, so consuming a whole lot, in one sell or
many, always attributes exactly its total cost.
"""

from decimal import Decimal
from typing import Iterable, Protocol, Sequence

from assetbook.accounting.money import round_half_up
from assetbook.domain.models.ledger import LotConsumption
from assetbook.exceptions import InsufficientQuantityError


class _Adjustment(Protocol):
    amount: int
    quantity_at_adjustment: int


class LotLike(Protocol):
    id: int
    original_quantity: int
    remaining_quantity: int
    total_cost: int
    acquired_at: object
    adjustments: Sequence[_Adjustment]


def order_lots(lots: Iterable[LotLike]) -> list[LotLike]:
    """FIFO candidates: lots with quantity left, oldest first, ties by insertion id."""
    open_lots = [lot for lot in lots if lot.remaining_quantity > 0]
    return sorted(open_lots, key=lambda lot: (lot.acquired_at, lot.id))


def lot_remaining_cost(lot: LotLike, remaining: int | None = None) -> int:
    """Cost basis attributable to `remaining` units of the lot (default: what is left).

    Each return-of-capital adjustment applies to the quantity the lot held when it
    was recorded, so its share shrinks as that quantity is sold off.
    """
    if remaining is None:
        remaining = lot.remaining_quantity
    if remaining <= 0:
        return 0
    cost = round_half_up(Decimal(lot.total_cost) * remaining / lot.original_quantity)
    for adj in lot.adjustments or ():
        cost -= round_half_up(Decimal(adj.amount) * remaining / adj.quantity_at_adjustment)
    return cost


def plan_fifo_sale(lots: Iterable[LotLike], quantity: int, holding_id: int | None = None) -> list[LotConsumption]:
    """Work out which lots a sell of `quantity` consumes, without mutating them.

    Raises InsufficientQuantityError when the open lots cannot cover the sell.
    """
    candidates = order_lots(lots)
    available = sum(lot.remaining_quantity for lot in candidates)
    if quantity > available:
        raise InsufficientQuantityError(holding_id, available, quantity)

    consumptions: list[LotConsumption] = []
    to_sell = quantity
    for lot in candidates:
        if to_sell <= 0:
            break
        take = min(lot.remaining_quantity, to_sell)
        before = lot_remaining_cost(lot, lot.remaining_quantity)
        after = lot_remaining_cost(lot, lot.remaining_quantity - take)
        consumptions.append(LotConsumption(
            lot_id=lot.id,
            quantity=take,
            cost_basis=before - after,
            acquired_at=lot.acquired_at,
        ))
        to_sell -= take

    return consumptions


def blend_average_cost(old_quantity: int, old_average: int, quantity: int, unit_cost: int) -> int:
    """Quantity-weighted average of the prior average and a new lot's unit cost."""
    total_quantity = old_quantity + quantity
    if total_quantity <= 0:
        return 0
    weighted = Decimal(old_quantity) * old_average + Decimal(quantity) * unit_cost
    return round_half_up(weighted / total_quantity)


def allocate_pro_rata(amount: int, weights: Sequence[int]) -> list[int]:
    """Split `amount` across weights with the largest-remainder method; shares sum to amount."""
    total = sum(weights)
    if total <= 0 or amount == 0:
        return [0] * len(weights)

    shares = [amount * w // total for w in weights]
    remainders = [(amount * w % total, i) for i, w in enumerate(weights)]
    leftover = amount - sum(shares)
    for _, i in sorted(remainders, key=lambda r: (-r[0], r[1]))[:leftover]:
        shares[i] += 1
    return shares
