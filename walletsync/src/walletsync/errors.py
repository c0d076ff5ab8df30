"""
Errors raised during wallet synchronization.
"""

from __future__ import annotations


class WalletSyncError(Exception):
    """Base class for wallet sync failures."""


class TransportError(WalletSyncError):
    """A backend call failed outright (network or protocol-level rejection)."""


class BackendMisbehavingError(WalletSyncError):
    """
    A backend response violated a structural guarantee.

    Raised for short batch responses, missing headers, missing referenced
    transactions, and transactions whose computed id differs from the
    requested one.
    """


class StoreError(WalletSyncError):
    """The wallet database failed a lookup or a commit."""
