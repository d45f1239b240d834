"""Fixed-point helpers: amounts are ints in a currency's smallest unit.

Decimal is used only for intermediate arithmetic; everything stored is rounded
back to an int with round-half-up.
"""

from decimal import ROUND_HALF_UP, Decimal

from pydantic import BaseModel, ConfigDict

from assetbook.domain.enums import AssetClass, Currency
from assetbook.exceptions import InvalidTransactionAmountError, UnsupportedCurrencyError


def parse_currency(currency: Currency | str) -> Currency:
    if isinstance(currency, Currency):
        return currency
    try:
        return Currency(str(currency).strip().upper())
    except ValueError:
        raise UnsupportedCurrencyError(currency) from None


def precision_factor(currency: Currency | str) -> int:
    """10^minor_units for the currency, from the static table."""
    return parse_currency(currency).precision_factor


def round_half_up(value: Decimal | int) -> int:
    if isinstance(value, int):
        return value
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def to_minor(amount: Decimal | int | str, currency: Currency | str) -> int:
    """Whole-unit amount (e.g. Decimal("12.34") USD) -> smallest units (1234)."""
    return round_half_up(Decimal(str(amount)) * precision_factor(currency))


def from_minor(amount: int, currency: Currency | str) -> Decimal:
    return Decimal(amount) / precision_factor(currency)


def scale_quantity(quantity: Decimal, asset_class: AssetClass) -> int:
    """Unscaled quantity -> stored int at the asset class precision."""
    return round_half_up(quantity * asset_class.precision_scale)


def unscale_quantity(quantity: int, asset_class: AssetClass) -> Decimal:
    return Decimal(quantity) / asset_class.precision_scale


def require_positive(field: str, value: Decimal | int) -> None:
    if value is None or value <= 0:
        raise InvalidTransactionAmountError(field, value)


class Money(BaseModel):
    """An amount in a currency's smallest unit."""

    model_config = ConfigDict(frozen=True)

    amount: int
    currency: Currency

    @classmethod
    def of(cls, amount: Decimal | int | str, currency: Currency | str) -> "Money":
        """Build from a whole-unit amount."""
        cur = parse_currency(currency)
        return cls(amount=to_minor(amount, cur), currency=cur)

    def to_decimal(self) -> Decimal:
        return from_minor(self.amount, self.currency)

    def __add__(self, other: "Money") -> "Money":
        self._check_same_currency(other)
        return Money(amount=self.amount + other.amount, currency=self.currency)

    def __sub__(self, other: "Money") -> "Money":
        self._check_same_currency(other)
        return Money(amount=self.amount - other.amount, currency=self.currency)

    def _check_same_currency(self, other: "Money") -> None:
        if other.currency != self.currency:
            raise ValueError(f"Currency mismatch: {self.currency.value} vs {other.currency.value}")
