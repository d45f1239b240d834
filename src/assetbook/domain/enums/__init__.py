from assetbook.domain.enums.asset import AssetClass
from assetbook.domain.enums.currency import Currency
from assetbook.domain.enums.ledger import ReturnOfCapitalPolicy, TransactionType
from assetbook.domain.enums.unit import PhysicalUnit

__all__ = [
    "AssetClass",
    "Currency",
    "PhysicalUnit",
    "ReturnOfCapitalPolicy",
    "TransactionType",
]
