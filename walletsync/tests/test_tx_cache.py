"""
Tests for the session transaction cache.
"""

from __future__ import annotations

import pytest
from _walletsync_test_helpers import FakeBackend, foreign_script, make_funding_tx
from walletsync.errors import BackendMisbehavingError
from walletsync.wallet.database import BatchUpdate, MemoryDatabase
from walletsync.wallet.models import TransactionDetails
from walletsync.wallet.tx_cache import TransactionCache


def _store(db: MemoryDatabase, *txs) -> None:
    update = BatchUpdate()
    for tx in txs:
        update.set_tx(TransactionDetails(txid=tx.txid, transaction=tx, received=0, sent=0))
    db.commit_batch(update)


@pytest.fixture
def txs():
    return [make_funding_tx([(1000 + i, foreign_script(i))], tag=i) for i in range(6)]


class TestEnsureCached:
    @pytest.mark.asyncio
    async def test_fetches_only_what_is_missing(self, backend: FakeBackend, txs):
        db = MemoryDatabase()
        for tx in txs:
            backend.add_tx(tx)
        _store(db, txs[2], txs[3])

        cache = TransactionCache(db, backend)
        await cache.ensure_cached([txs[0].txid])
        backend.calls.clear()

        # 1 cached (k), 2 in store (m), 3 to fetch
        await cache.ensure_cached([tx.txid for tx in txs])

        fetches = backend.calls_to("batch_transaction_get")
        assert fetches == [[txs[1].txid, txs[4].txid, txs[5].txid]]
        assert cache.stats.cache_hits == 1
        assert cache.stats.store_hits == 2
        assert cache.stats.remote_batches == 2
        assert cache.stats.remote_fetched == 4
        assert all(cache.get(tx.txid) == tx for tx in txs)

    @pytest.mark.asyncio
    async def test_no_remote_call_when_all_known(self, backend: FakeBackend, txs):
        db = MemoryDatabase()
        _store(db, *txs[:3])

        cache = TransactionCache(db, backend)
        await cache.ensure_cached([tx.txid for tx in txs[:3]])
        await cache.ensure_cached([tx.txid for tx in txs[:3]])

        assert backend.calls == []
        assert len(cache) == 3

    @pytest.mark.asyncio
    async def test_empty_request_is_noop(self, backend: FakeBackend):
        cache = TransactionCache(MemoryDatabase(), backend)
        await cache.ensure_cached([])
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_duplicates_fetched_once(self, backend: FakeBackend, txs):
        backend.add_tx(txs[0])
        cache = TransactionCache(MemoryDatabase(), backend)

        await cache.ensure_cached([txs[0].txid, txs[0].txid, txs[0].txid])

        assert backend.calls_to("batch_transaction_get") == [[txs[0].txid]]

    @pytest.mark.asyncio
    async def test_identity_mismatch_rejected(self, backend: FakeBackend, txs):
        # Backend serves the wrong body for txs[0]
        backend.transactions[txs[0].txid] = txs[1]
        backend.add_tx(txs[2])
        cache = TransactionCache(MemoryDatabase(), backend)

        with pytest.raises(BackendMisbehavingError, match="for requested"):
            await cache.ensure_cached([txs[2].txid, txs[0].txid])

        assert txs[0].txid not in cache
        assert txs[1].txid not in cache
        # Nothing from the failed batch is kept
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_short_response_rejected(self, txs):
        class ShortBackend(FakeBackend):
            async def batch_transaction_get(self, txids):
                result = await super().batch_transaction_get(txids)
                return result[:-1]

        backend = ShortBackend()
        backend.add_tx(txs[0])
        backend.add_tx(txs[1])
        cache = TransactionCache(MemoryDatabase(), backend)

        with pytest.raises(BackendMisbehavingError, match="returned 1"):
            await cache.ensure_cached([txs[0].txid, txs[1].txid])
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_cached_entries_never_refetched(self, backend: FakeBackend, txs):
        backend.add_tx(txs[0])
        cache = TransactionCache(MemoryDatabase(), backend)
        await cache.ensure_cached([txs[0].txid])

        # Backend changes its mind; the cache keeps the first answer
        backend.transactions[txs[0].txid] = txs[1]
        await cache.ensure_cached([txs[0].txid])

        assert cache.get(txs[0].txid) == txs[0]
        assert len(backend.calls_to("batch_transaction_get")) == 1

    def test_get_unknown_returns_none(self, backend: FakeBackend):
        cache = TransactionCache(MemoryDatabase(), backend)
        assert cache.get("00" * 32) is None
