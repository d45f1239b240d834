from enum import Enum


class AssetClass(str, Enum):
    EQUITY = "EQUITY"
    FUND = "FUND"
    CRYPTO = "CRYPTO"
    BOND = "BOND"
    COMMODITY_VND = "COMMODITY_VND"  # precious metals quoted in VND (per tael)
    COMMODITY_USD = "COMMODITY_USD"  # precious metals quoted in USD (per troy ounce)
    OTHER = "OTHER"

    @property
    def is_commodity(self) -> bool:
        return self in (AssetClass.COMMODITY_VND, AssetClass.COMMODITY_USD)

    @property
    def precision_scale(self) -> int:
        """Fixed-point multiplier for stored quantities (10^8 for crypto, 10^4 otherwise)."""
        if self == AssetClass.CRYPTO:
            return 100_000_000
        return 10_000
