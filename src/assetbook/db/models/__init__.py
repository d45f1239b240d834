from assetbook.db.models.holding import Holding, Lot, LotCostAdjustment
from assetbook.db.models.snapshot import Snapshot
from assetbook.db.models.transaction import Transaction, TransactionLot
from assetbook.db.models.wallet import Wallet

__all__ = [
    "Holding",
    "Lot",
    "LotCostAdjustment",
    "Snapshot",
    "Transaction",
    "TransactionLot",
    "Wallet",
]
