"""Physical unit conversion for commodities: pure functions, no state.

Grams are the common base. Price conversion uses the inverse ratio of quantity
conversion: a price per tael is 37.5x a price per gram.
"""

from decimal import Decimal

from assetbook.domain.enums import AssetClass, PhysicalUnit
from assetbook.exceptions import UnsupportedUnitError

GRAMS_PER_UNIT: dict[PhysicalUnit, Decimal] = {
    PhysicalUnit.GRAM: Decimal("1"),
    PhysicalUnit.TAEL: Decimal("37.5"),
    PhysicalUnit.KILOGRAM: Decimal("1000"),
    PhysicalUnit.TROY_OUNCE: Decimal("31.1034768"),
}

# Accepted spellings besides the enum values
UNIT_ALIASES: dict[str, PhysicalUnit] = {
    "g": PhysicalUnit.GRAM,
    "gr": PhysicalUnit.GRAM,
    "grams": PhysicalUnit.GRAM,
    "taels": PhysicalUnit.TAEL,
    "luong": PhysicalUnit.TAEL,
    "kg": PhysicalUnit.KILOGRAM,
    "kilo": PhysicalUnit.KILOGRAM,
    "oz": PhysicalUnit.TROY_OUNCE,
    "ozt": PhysicalUnit.TROY_OUNCE,
    "ounce": PhysicalUnit.TROY_OUNCE,
    "troyounce": PhysicalUnit.TROY_OUNCE,
}


def parse_unit(unit: PhysicalUnit | str) -> PhysicalUnit:
    """Resolve a unit from its enum, value or a common alias."""
    if isinstance(unit, PhysicalUnit):
        return unit
    if isinstance(unit, str):
        key = unit.strip().lower()
        try:
            return PhysicalUnit(key)
        except ValueError:
            pass
        if key in UNIT_ALIASES:
            return UNIT_ALIASES[key]
    raise UnsupportedUnitError(unit)


def _to_decimal(value: Decimal | int | float | str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() keeps the shortest repr of a float instead of its binary expansion
    return Decimal(str(value))


def convert_quantity(
    value: Decimal | int | float | str,
    from_unit: PhysicalUnit | str,
    to_unit: PhysicalUnit | str,
) -> Decimal:
    """Convert a weight between units, e.g. 2 tael -> 75 gram."""
    src = parse_unit(from_unit)
    dst = parse_unit(to_unit)
    amount = _to_decimal(value)
    if src == dst:
        return amount
    grams = amount * GRAMS_PER_UNIT[src]
    return grams / GRAMS_PER_UNIT[dst]


def convert_price_per_unit(
    price: Decimal | int | float | str,
    from_unit: PhysicalUnit | str,
    to_unit: PhysicalUnit | str,
) -> Decimal:
    """Convert a price per unit, e.g. 3,218,000 per tael -> 85,813.33 per gram."""
    src = parse_unit(from_unit)
    dst = parse_unit(to_unit)
    amount = _to_decimal(price)
    if src == dst:
        return amount
    per_gram = amount / GRAMS_PER_UNIT[src]
    return per_gram * GRAMS_PER_UNIT[dst]


def storage_unit_for(asset_class: AssetClass) -> PhysicalUnit | None:
    """Unit in which a holding's quantity is persisted. None for non-commodities."""
    if asset_class == AssetClass.COMMODITY_VND:
        return PhysicalUnit.GRAM
    if asset_class == AssetClass.COMMODITY_USD:
        return PhysicalUnit.TROY_OUNCE
    return None


def market_price_unit_for(asset_class: AssetClass) -> PhysicalUnit | None:
    """Unit market quotes arrive in: domestic VND metal per tael, world metal per ounce."""
    if asset_class == AssetClass.COMMODITY_VND:
        return PhysicalUnit.TAEL
    if asset_class == AssetClass.COMMODITY_USD:
        return PhysicalUnit.TROY_OUNCE
    return None
