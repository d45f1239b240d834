"""
Domain exceptions.

These carry no transport knowledge; an outer layer maps them to responses.

Exception Hierarchy:
    AssetBookError (base)
    ├── LedgerError
    │   ├── InvalidTransactionAmountError
    │   └── InsufficientQuantityError
    ├── NotFoundError
    │   ├── HoldingNotFoundError
    │   └── WalletNotFoundError
    ├── ConversionError
    │   ├── UnsupportedUnitError
    │   ├── UnsupportedCurrencyError
    │   └── RateUnavailableError
    └── SourceError
        ├── RateSourceError
        └── PriceSourceError
"""


class AssetBookError(Exception):
    """Base exception for all engine errors."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message


# =============================================================================
# LEDGER ERRORS
# =============================================================================


class LedgerError(AssetBookError):
    """Ledger-integrity violation. Always aborts the enclosing transaction."""


class InvalidTransactionAmountError(LedgerError):
    """Raised for non-positive quantity, price or amount on a ledger command."""

    def __init__(self, field: str, value: object) -> None:
        self.field = field
        self.value = value
        super().__init__(f"Invalid transaction amount: {field}={value!r} must be positive")


class InsufficientQuantityError(LedgerError):
    """Raised when a sell exceeds the quantity held. Checked before any lot is touched."""

    def __init__(self, holding_id: int | None, available: int, requested: int) -> None:
        self.holding_id = holding_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient quantity for holding {holding_id}: available {available}, requested {requested}"
        )


# =============================================================================
# NOT FOUND ERRORS
# =============================================================================


class NotFoundError(AssetBookError):
    def __init__(self, resource_type: str, resource_id: int | str) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} not found: {resource_id}")


class HoldingNotFoundError(NotFoundError):
    def __init__(self, holding_id: int | str) -> None:
        super().__init__("Holding", holding_id)


class WalletNotFoundError(NotFoundError):
    def __init__(self, wallet_id: int | str) -> None:
        super().__init__("Wallet", wallet_id)


# =============================================================================
# CONVERSION ERRORS
# =============================================================================


class ConversionError(AssetBookError):
    """Unit or currency conversion failure. Does not affect ledger state."""


class UnsupportedUnitError(ConversionError):
    def __init__(self, unit: object) -> None:
        self.unit = unit
        super().__init__(f"Unsupported physical unit: {unit!r}")


class UnsupportedCurrencyError(ConversionError):
    def __init__(self, currency: object) -> None:
        self.currency = currency
        super().__init__(f"Unsupported currency: {currency!r}")


class RateUnavailableError(ConversionError):
    """No fresh or stale rate exists for the pair."""

    def __init__(self, source: str, target: str, cause: Exception | None = None) -> None:
        self.source = source
        self.target = target
        self.cause = cause
        message = f"No conversion rate available for {source}->{target}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


# =============================================================================
# EXTERNAL SOURCE ERRORS
# =============================================================================


class SourceError(AssetBookError):
    """Raised by RateSource / PriceSource implementations."""


class RateSourceError(SourceError):
    pass


class PriceSourceError(SourceError):
    pass
