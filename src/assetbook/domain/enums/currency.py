from enum import Enum


class Currency(str, Enum):
    """Supported ISO 4217 currencies."""

    USD = "USD"
    EUR = "EUR"
    GBP = "GBP"
    JPY = "JPY"
    CHF = "CHF"
    CAD = "CAD"
    AUD = "AUD"
    NZD = "NZD"
    VND = "VND"
    CNY = "CNY"
    HKD = "HKD"
    SGD = "SGD"
    KRW = "KRW"
    MYR = "MYR"
    THB = "THB"
    IDR = "IDR"
    PHP = "PHP"
    INR = "INR"
    SEK = "SEK"
    NOK = "NOK"
    DKK = "DKK"
    MXN = "MXN"
    BRL = "BRL"
    ZAR = "ZAR"

    @property
    def minor_units(self) -> int:
        return MINOR_UNITS.get(self, 2)

    @property
    def precision_factor(self) -> int:
        """Multiplier between one whole unit and the stored smallest unit."""
        return 10 ** self.minor_units


# Currencies without the default two decimal places.
MINOR_UNITS: dict[Currency, int] = {
    Currency.VND: 0,
    Currency.JPY: 0,
    Currency.KRW: 0,
    Currency.IDR: 0,
}
