"""
Tests for the wallet databases.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from _walletsync_test_helpers import foreign_script, make_funding_tx, make_script
from walletcore.bitcoin import OutPoint, TxOut
from walletsync.errors import StoreError
from walletsync.wallet.database import (
    BatchUpdate,
    DeleteTransaction,
    FileDatabase,
    MemoryDatabase,
    SetLastIndex,
)
from walletsync.wallet.models import BlockTime, KeychainKind, LocalUtxo, TransactionDetails

EXT = KeychainKind.EXTERNAL
INT = KeychainKind.INTERNAL


def _details(tx, received=0, sent=0, conf=None) -> TransactionDetails:
    return TransactionDetails(
        txid=tx.txid, transaction=tx, received=received, sent=sent, fee=0, confirmation_time=conf
    )


def _utxo(tx, vout=0, keychain=EXT) -> LocalUtxo:
    return LocalUtxo(
        outpoint=OutPoint(txid=tx.txid, vout=vout), txout=tx.outputs[vout], keychain=keychain
    )


class TestBatchUpdate:
    def test_views(self):
        tx = make_funding_tx([(5000, make_script(EXT, 0))])
        update = BatchUpdate()
        update.set_tx(_details(tx))
        update.set_utxo(_utxo(tx))
        update.del_tx("aa" * 32)
        update.del_utxo(OutPoint("bb" * 32, 1))
        update.set_last_index(EXT, 3)

        assert len(update) == 5
        assert [d.txid for d in update.transactions] == [tx.txid]
        assert update.deleted_txids == ["aa" * 32]
        assert update.deleted_outpoints == [OutPoint("bb" * 32, 1)]
        assert update.last_indexes == {EXT: 3}
        assert isinstance(update.operations[2], DeleteTransaction)
        assert update.operations[-1] == SetLastIndex(EXT, 3)


class TestMemoryDatabase:
    def test_scripts_ordered_by_keychain_and_index(self):
        db = MemoryDatabase()
        db.set_script_pubkey(make_script(INT, 1), INT, 1)
        db.set_script_pubkey(make_script(EXT, 2), EXT, 2)
        db.set_script_pubkey(make_script(EXT, 0), EXT, 0)
        db.set_script_pubkey(make_script(INT, 0), INT, 0)

        assert db.iter_script_pubkeys(EXT) == [make_script(EXT, 0), make_script(EXT, 2)]
        assert db.iter_script_pubkeys(INT) == [make_script(INT, 0), make_script(INT, 1)]
        assert len(db.iter_script_pubkeys()) == 4

    def test_is_mine(self):
        db = MemoryDatabase()
        db.set_script_pubkey(make_script(EXT, 0), EXT, 0)
        assert db.is_mine(make_script(EXT, 0))
        assert not db.is_mine(foreign_script())
        assert db.get_path_from_script_pubkey(make_script(EXT, 0)) == (EXT, 0)

    def test_commit_applies_operations_in_order(self):
        db = MemoryDatabase()
        tx = make_funding_tx([(5000, make_script(EXT, 0))])

        update = BatchUpdate()
        update.set_tx(_details(tx, received=5000))
        update.set_utxo(_utxo(tx))
        update.del_utxo(OutPoint(tx.txid, 0))
        update.set_last_index(EXT, 0)
        db.commit_batch(update)

        assert db.get_tx(tx.txid).received == 5000
        assert db.get_raw_tx(tx.txid) == tx
        assert db.iter_utxos() == []
        assert db.get_last_index(EXT) == 0
        assert db.get_last_index(INT) is None
        assert db.commit_count == 1

    def test_set_tx_without_body_keeps_stored_raw(self):
        db = MemoryDatabase()
        tx = make_funding_tx([(5000, make_script(EXT, 0))])
        first = BatchUpdate()
        first.set_tx(_details(tx))
        db.commit_batch(first)

        second = BatchUpdate()
        second.set_tx(
            TransactionDetails(
                txid=tx.txid,
                transaction=None,
                received=1,
                sent=0,
                confirmation_time=BlockTime(height=5, timestamp=6),
            )
        )
        db.commit_batch(second)

        assert db.get_raw_tx(tx.txid) == tx
        assert db.get_tx(tx.txid).confirmation_time == BlockTime(height=5, timestamp=6)

    def test_failed_commit_leaves_state_unchanged(self):
        class FailingDatabase(MemoryDatabase):
            def _persist(self, state):
                raise StoreError("disk full")

        db = FailingDatabase()
        tx = make_funding_tx([(5000, make_script(EXT, 0))])
        update = BatchUpdate()
        update.set_tx(_details(tx))

        with pytest.raises(StoreError):
            db.commit_batch(update)
        assert db.iter_txs() == []
        assert db.commit_count == 0

    def test_unknown_operation_rejected(self):
        db = MemoryDatabase()
        update = BatchUpdate(operations=["bogus"])  # type: ignore[list-item]
        with pytest.raises(StoreError, match="Unknown batch operation"):
            db.commit_batch(update)


class TestFileDatabase:
    def test_round_trip(self, tmp_path: Path):
        path = tmp_path / "wallet.json"
        db = FileDatabase(path)
        db.set_script_pubkey(make_script(EXT, 0), EXT, 0)
        tx = make_funding_tx([(5000, make_script(EXT, 0)), (700, foreign_script())])
        update = BatchUpdate()
        update.set_tx(_details(tx, received=5000, conf=BlockTime(height=100, timestamp=1234)))
        update.set_utxo(_utxo(tx))
        update.set_last_index(EXT, 0)
        db.commit_batch(update)

        reopened = FileDatabase(path)
        assert reopened.iter_script_pubkeys() == [make_script(EXT, 0)]
        stored = reopened.get_tx(tx.txid)
        assert stored.received == 5000
        assert stored.confirmation_time == BlockTime(height=100, timestamp=1234)
        assert reopened.get_raw_tx(tx.txid).txid == tx.txid
        assert reopened.iter_utxos() == [_utxo(tx)]
        assert reopened.get_last_index(EXT) == 0

    def test_missing_file_starts_empty(self, tmp_path: Path):
        db = FileDatabase(tmp_path / "nested" / "wallet.json")
        assert db.iter_txs() == []
        assert not (tmp_path / "nested").exists()

    def test_atomic_write_leaves_no_temp_file(self, tmp_path: Path):
        path = tmp_path / "wallet.json"
        db = FileDatabase(path)
        db.set_script_pubkey(make_script(EXT, 0), EXT, 0)

        assert path.exists()
        assert not path.with_suffix(".tmp").exists()
        assert json.loads(path.read_text())["version"] == 1

    def test_corrupt_file(self, tmp_path: Path):
        path = tmp_path / "wallet.json"
        path.write_text("{not json")
        with pytest.raises(StoreError, match="Corrupt"):
            FileDatabase(path)

    @pytest.mark.parametrize(
        "payload", ["[1, 2]", "null", '"wallet"', '{"version": 1, "last_index": []}']
    )
    def test_non_object_file(self, tmp_path: Path, payload: str):
        path = tmp_path / "wallet.json"
        path.write_text(payload)
        with pytest.raises(StoreError, match="Corrupt"):
            FileDatabase(path)

    def test_unsupported_version(self, tmp_path: Path):
        path = tmp_path / "wallet.json"
        path.write_text(json.dumps({"version": 99}))
        with pytest.raises(StoreError, match="Unsupported database version"):
            FileDatabase(path)

    def test_write_failure_keeps_previous_file(self, tmp_path: Path):
        path = tmp_path / "wallet.json"
        db = FileDatabase(path)
        db.set_script_pubkey(make_script(EXT, 0), EXT, 0)
        before = path.read_text()

        # A directory in place of the temp file makes the write fail
        path.with_suffix(".tmp").mkdir()
        update = BatchUpdate()
        update.set_last_index(EXT, 7)
        with pytest.raises(StoreError):
            db.commit_batch(update)

        assert path.read_text() == before
        assert db.get_last_index(EXT) is None


def test_utxo_txout_round_trip():
    utxo = LocalUtxo(
        outpoint=OutPoint("cd" * 32, 3),
        txout=TxOut(value=42, script_pubkey=make_script(INT, 9)),
        keychain=INT,
    )
    assert LocalUtxo.from_dict(utxo.to_dict()) == utxo
