"""
walletcore - Core library for walletsync components

Provides shared chain primitives, settings and CLI helpers.
"""

__version__ = "0.1.0"

from walletcore.bitcoin import BlockHeader, OutPoint, Transaction, TxIn, TxOut
from walletcore.models import NetworkType

__all__ = [
    "BlockHeader",
    "NetworkType",
    "OutPoint",
    "Transaction",
    "TxIn",
    "TxOut",
]
