"""
Watch-only wallet service.

Ties a wallet database to a backend: registers watched scripts, runs the
chain sync, and answers balance and history queries from the store.
"""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger
from walletcore.bitcoin import address_to_scriptpubkey

from walletsync.backends.base import BlockchainBackend
from walletsync.errors import WalletSyncError
from walletsync.wallet.constants import DEFAULT_STOP_GAP
from walletsync.wallet.database import BatchUpdate, WalletDatabase
from walletsync.wallet.models import KeychainKind, LocalUtxo, TransactionDetails
from walletsync.wallet.sync import ProgressCallback, WalletSynchronizer


@dataclass
class Balance:
    """Wallet balance in satoshis, split by confirmation state."""

    confirmed: int = 0
    unconfirmed: int = 0

    @property
    def total(self) -> int:
        return self.confirmed + self.unconfirmed


class WalletService:
    """
    Watch-only wallet over a set of imported scripts.

    Args:
        database: Wallet store
        backend: Chain indexing backend; only needed for sync
        stop_gap: Unused-script gap ending a keychain scan
        progress: Optional sync progress callback
    """

    def __init__(
        self,
        database: WalletDatabase,
        backend: BlockchainBackend | None = None,
        stop_gap: int = DEFAULT_STOP_GAP,
        progress: ProgressCallback | None = None,
    ):
        self.database = database
        self.backend = backend
        self.stop_gap = stop_gap
        self.progress = progress

    async def sync(self) -> BatchUpdate:
        """Sync with the chain and commit the result."""
        if self.backend is None:
            raise WalletSyncError("No backend configured for sync")
        synchronizer = WalletSynchronizer(
            self.backend, stop_gap=self.stop_gap, progress=self.progress
        )
        return await synchronizer.sync(self.database)

    def import_address(
        self,
        address: str,
        keychain: KeychainKind = KeychainKind.EXTERNAL,
        index: int | None = None,
    ) -> tuple[KeychainKind, int]:
        """
        Watch an address.

        Args:
            address: Address to watch
            keychain: Keychain the address belongs to
            index: Derivation index; defaults to one past the highest used index

        Returns:
            The (keychain, index) path the address is stored under

        Raises:
            ValueError: The address cannot be decoded, or the index is taken
        """
        script = address_to_scriptpubkey(address)
        existing = self.database.get_path_from_script_pubkey(script)
        if existing is not None:
            logger.info(f"{address} already watched as {existing[0].value}/{existing[1]}")
            return existing

        used = self._used_indexes(keychain)
        if index is None:
            index = max(used, default=-1) + 1
        elif index in used:
            raise ValueError(f"Index {keychain.value}/{index} is already taken")
        self.database.set_script_pubkey(script, keychain, index)
        logger.info(f"Watching {address} as {keychain.value}/{index}")
        return keychain, index

    def _used_indexes(self, keychain: KeychainKind) -> set[int]:
        used = set()
        for script in self.database.iter_script_pubkeys(keychain):
            path = self.database.get_path_from_script_pubkey(script)
            if path is not None:
                used.add(path[1])
        return used

    def list_utxos(self) -> list[LocalUtxo]:
        """Unspent outputs, largest first."""
        return sorted(self.database.iter_utxos(), key=lambda u: u.value, reverse=True)

    def list_transactions(self) -> list[TransactionDetails]:
        """Wallet transactions, unconfirmed first, then newest first."""

        def sort_key(details: TransactionDetails) -> tuple[bool, int]:
            if details.confirmation_time is None:
                return (False, 0)
            return (True, -details.confirmation_time.height)

        return sorted(self.database.iter_txs(), key=sort_key)

    def get_balance(self) -> Balance:
        balance = Balance()
        for utxo in self.database.iter_utxos():
            details = self.database.get_tx(utxo.outpoint.txid)
            if details is not None and details.is_confirmed:
                balance.confirmed += utxo.value
            else:
                balance.unconfirmed += utxo.value
        return balance
