"""
Session-scoped transaction cache.

Full transactions are needed twice during a sync: once for the wallet's own
transactions and once for the transactions their inputs spend from. The
cache looks each id up in the wallet database first and only fetches what
is left from the backend, in a single batched call per request.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from loguru import logger
from walletcore.bitcoin import Transaction

from walletsync.backends.base import BlockchainBackend
from walletsync.errors import BackendMisbehavingError
from walletsync.wallet.database import WalletDatabase


@dataclass
class CacheStats:
    """Counters describing where cached transactions came from."""

    cache_hits: int = 0
    store_hits: int = 0
    remote_batches: int = 0
    remote_fetched: int = 0


class TransactionCache:
    """
    Append-only txid -> Transaction map for one sync session.

    Entries are never re-fetched or replaced once inserted.
    """

    def __init__(self, database: WalletDatabase, backend: BlockchainBackend):
        self._database = database
        self._backend = backend
        self._cache: dict[str, Transaction] = {}
        self.stats = CacheStats()

    async def ensure_cached(self, txids: Iterable[str]) -> None:
        """
        Make sure every txid is cached.

        Ids already cached are skipped, ids found in the wallet database are
        loaded from it, and the rest are fetched with at most one batched
        backend call. Every fetched transaction must hash to the id it was
        requested by; on any mismatch nothing from the batch is cached.

        Raises:
            BackendMisbehavingError: Short response or txid mismatch
            TransportError: The backend call failed
            StoreError: The database lookup failed
        """
        need_fetch: list[str] = []
        seen: set[str] = set()
        for txid in txids:
            if txid in seen:
                continue
            seen.add(txid)

            if txid in self._cache:
                self.stats.cache_hits += 1
                continue

            stored = self._database.get_raw_tx(txid)
            if stored is not None:
                self._cache[txid] = stored
                self.stats.store_hits += 1
            else:
                need_fetch.append(txid)

        if not need_fetch:
            return

        logger.debug(f"Fetching {len(need_fetch)} transaction(s) from backend")
        transactions = await self._backend.batch_transaction_get(need_fetch)
        self.stats.remote_batches += 1

        if len(transactions) != len(need_fetch):
            raise BackendMisbehavingError(
                f"Requested {len(need_fetch)} transaction(s), backend returned {len(transactions)}"
            )

        fetched: dict[str, Transaction] = {}
        for requested, tx in zip(need_fetch, transactions):
            actual = tx.txid
            if actual != requested:
                raise BackendMisbehavingError(
                    f"Backend returned transaction {actual} for requested {requested}"
                )
            fetched[requested] = tx

        self._cache.update(fetched)
        self.stats.remote_fetched += len(fetched)

    def get(self, txid: str) -> Transaction | None:
        return self._cache.get(txid)

    def __contains__(self, txid: object) -> bool:
        return txid in self._cache

    def __len__(self) -> int:
        return len(self._cache)
