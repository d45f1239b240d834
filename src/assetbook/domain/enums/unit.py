from enum import Enum


class PhysicalUnit(str, Enum):
    """Weight units a commodity can be transacted or quoted in."""

    GRAM = "gram"
    TAEL = "tael"  # lượng
    KILOGRAM = "kilogram"
    TROY_OUNCE = "troy_ounce"
