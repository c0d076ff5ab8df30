"""
Wallet chain sync with pluggable blockchain backends.
"""

from walletsync.backends.base import BlockchainBackend
from walletsync.errors import (
    BackendMisbehavingError,
    StoreError,
    TransportError,
    WalletSyncError,
)
from walletsync.wallet.service import WalletService
from walletsync.wallet.sync import WalletSynchronizer

__all__ = [
    "BackendMisbehavingError",
    "BlockchainBackend",
    "StoreError",
    "TransportError",
    "WalletService",
    "WalletSynchronizer",
    "WalletSyncError",
]
