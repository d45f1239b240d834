from assetbook.db.repos.holding_repo import AssetClassTotal, CurrencyTotal, HoldingRepo, PersistenceRepository
from assetbook.db.repos.snapshot_repo import SnapshotRepo
from assetbook.db.repos.transaction_repo import TransactionRepo
from assetbook.db.repos.wallet_repo import WalletRepo

__all__ = [
    "AssetClassTotal",
    "CurrencyTotal",
    "HoldingRepo",
    "PersistenceRepository",
    "SnapshotRepo",
    "TransactionRepo",
    "WalletRepo",
]
