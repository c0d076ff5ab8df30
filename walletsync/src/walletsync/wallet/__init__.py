"""
Wallet store, chain sync and watch-only wallet service.
"""

from walletsync.wallet.models import (
    BlockTime,
    FeeRate,
    HistoryEntry,
    KeychainKind,
    LocalUtxo,
    TransactionDetails,
)
from walletsync.wallet.database import BatchUpdate, FileDatabase, MemoryDatabase, WalletDatabase
from walletsync.wallet.sync import WalletSynchronizer
from walletsync.wallet.service import Balance, WalletService

__all__ = [
    "Balance",
    "BatchUpdate",
    "BlockTime",
    "FeeRate",
    "FileDatabase",
    "HistoryEntry",
    "KeychainKind",
    "LocalUtxo",
    "MemoryDatabase",
    "TransactionDetails",
    "WalletDatabase",
    "WalletService",
    "WalletSynchronizer",
]
