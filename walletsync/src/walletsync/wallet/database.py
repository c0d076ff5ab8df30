"""
Wallet database: the persistent store a sync commits into.

A sync never writes incrementally. It produces one ``BatchUpdate`` (an
ordered list of mutations) and hands it to ``commit_batch``, which applies
all of it or none of it.

Two implementations are provided:
- ``MemoryDatabase``: dict backed, applies a batch to a copy and swaps it in.
- ``FileDatabase``: a ``MemoryDatabase`` persisted as a JSON document,
  written to a temp file and renamed over the old one.
"""

from __future__ import annotations

import contextlib
import copy
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger
from walletcore.bitcoin import OutPoint, Transaction

from walletsync.errors import StoreError
from walletsync.wallet.models import KeychainKind, LocalUtxo, TransactionDetails

DATABASE_FORMAT_VERSION = 1


# =============================================================================
# Batch update
# =============================================================================


@dataclass(frozen=True)
class SetTransaction:
    details: TransactionDetails


@dataclass(frozen=True)
class DeleteTransaction:
    txid: str


@dataclass(frozen=True)
class SetUtxo:
    utxo: LocalUtxo


@dataclass(frozen=True)
class DeleteUtxo:
    outpoint: OutPoint


@dataclass(frozen=True)
class SetLastIndex:
    keychain: KeychainKind
    index: int


BatchOperation = SetTransaction | DeleteTransaction | SetUtxo | DeleteUtxo | SetLastIndex


@dataclass
class BatchUpdate:
    """Ordered set of database mutations produced by one sync."""

    operations: list[BatchOperation] = field(default_factory=list)

    def set_tx(self, details: TransactionDetails) -> None:
        self.operations.append(SetTransaction(details))

    def del_tx(self, txid: str) -> None:
        self.operations.append(DeleteTransaction(txid))

    def set_utxo(self, utxo: LocalUtxo) -> None:
        self.operations.append(SetUtxo(utxo))

    def del_utxo(self, outpoint: OutPoint) -> None:
        self.operations.append(DeleteUtxo(outpoint))

    def set_last_index(self, keychain: KeychainKind, index: int) -> None:
        self.operations.append(SetLastIndex(keychain, index))

    @property
    def transactions(self) -> list[TransactionDetails]:
        return [op.details for op in self.operations if isinstance(op, SetTransaction)]

    @property
    def deleted_txids(self) -> list[str]:
        return [op.txid for op in self.operations if isinstance(op, DeleteTransaction)]

    @property
    def utxos(self) -> list[LocalUtxo]:
        return [op.utxo for op in self.operations if isinstance(op, SetUtxo)]

    @property
    def deleted_outpoints(self) -> list[OutPoint]:
        return [op.outpoint for op in self.operations if isinstance(op, DeleteUtxo)]

    @property
    def last_indexes(self) -> dict[KeychainKind, int]:
        return {
            op.keychain: op.index for op in self.operations if isinstance(op, SetLastIndex)
        }

    def __len__(self) -> int:
        return len(self.operations)


# =============================================================================
# Database interface
# =============================================================================


class WalletDatabase(ABC):
    """Persistent wallet store consumed by the sync."""

    @abstractmethod
    def iter_script_pubkeys(self, keychain: KeychainKind | None = None) -> list[bytes]:
        """Watched scripts, ordered by derivation index."""

    @abstractmethod
    def get_path_from_script_pubkey(self, script: bytes) -> tuple[KeychainKind, int] | None:
        """Keychain and index of a watched script."""

    @abstractmethod
    def set_script_pubkey(self, script: bytes, keychain: KeychainKind, index: int) -> None:
        """Register a watched script."""

    @abstractmethod
    def get_tx(self, txid: str) -> TransactionDetails | None:
        """Stored details of a wallet transaction."""

    @abstractmethod
    def get_raw_tx(self, txid: str) -> Transaction | None:
        """Stored full transaction, used before any remote fetch."""

    @abstractmethod
    def iter_txs(self) -> list[TransactionDetails]:
        """All stored wallet transactions."""

    @abstractmethod
    def iter_utxos(self) -> list[LocalUtxo]:
        """All stored wallet utxos."""

    @abstractmethod
    def get_last_index(self, keychain: KeychainKind) -> int | None:
        """Highest index seen with history on a keychain."""

    @abstractmethod
    def commit_batch(self, update: BatchUpdate) -> None:
        """Atomically apply a batch update."""

    def is_mine(self, script: bytes) -> bool:
        return self.get_path_from_script_pubkey(script) is not None


# =============================================================================
# In-memory implementation
# =============================================================================


@dataclass
class _State:
    scripts: dict[bytes, tuple[KeychainKind, int]] = field(default_factory=dict)
    transactions: dict[str, TransactionDetails] = field(default_factory=dict)
    utxos: dict[OutPoint, LocalUtxo] = field(default_factory=dict)
    last_index: dict[KeychainKind, int] = field(default_factory=dict)

    def copy(self) -> _State:
        return _State(
            scripts=dict(self.scripts),
            transactions=dict(self.transactions),
            utxos=dict(self.utxos),
            last_index=dict(self.last_index),
        )


class MemoryDatabase(WalletDatabase):
    """In-memory wallet database."""

    def __init__(self) -> None:
        self._state = _State()
        self.commit_count = 0

    def iter_script_pubkeys(self, keychain: KeychainKind | None = None) -> list[bytes]:
        entries = [
            (kc, index, script)
            for script, (kc, index) in self._state.scripts.items()
            if keychain is None or kc == keychain
        ]
        entries.sort(key=lambda e: (e[0].value, e[1]))
        return [script for _, _, script in entries]

    def get_path_from_script_pubkey(self, script: bytes) -> tuple[KeychainKind, int] | None:
        return self._state.scripts.get(script)

    def set_script_pubkey(self, script: bytes, keychain: KeychainKind, index: int) -> None:
        self._state.scripts[script] = (keychain, index)
        self._persist(self._state)

    def get_tx(self, txid: str) -> TransactionDetails | None:
        details = self._state.transactions.get(txid)
        return copy.copy(details) if details is not None else None

    def get_raw_tx(self, txid: str) -> Transaction | None:
        details = self._state.transactions.get(txid)
        return details.transaction if details is not None else None

    def iter_txs(self) -> list[TransactionDetails]:
        return list(self._state.transactions.values())

    def iter_utxos(self) -> list[LocalUtxo]:
        return list(self._state.utxos.values())

    def get_last_index(self, keychain: KeychainKind) -> int | None:
        return self._state.last_index.get(keychain)

    def commit_batch(self, update: BatchUpdate) -> None:
        new_state = self._apply(update)
        self._persist(new_state)
        self._state = new_state
        self.commit_count += 1
        logger.debug(f"Committed batch of {len(update)} operation(s)")

    def _apply(self, update: BatchUpdate) -> _State:
        state = self._state.copy()
        for op in update.operations:
            if isinstance(op, SetTransaction):
                details = op.details
                existing = state.transactions.get(details.txid)
                if details.transaction is None and existing is not None:
                    details = TransactionDetails(
                        txid=details.txid,
                        transaction=existing.transaction,
                        received=details.received,
                        sent=details.sent,
                        fee=details.fee,
                        confirmation_time=details.confirmation_time,
                    )
                state.transactions[details.txid] = details
            elif isinstance(op, DeleteTransaction):
                state.transactions.pop(op.txid, None)
            elif isinstance(op, SetUtxo):
                state.utxos[op.utxo.outpoint] = op.utxo
            elif isinstance(op, DeleteUtxo):
                state.utxos.pop(op.outpoint, None)
            elif isinstance(op, SetLastIndex):
                state.last_index[op.keychain] = op.index
            else:
                raise StoreError(f"Unknown batch operation: {op!r}")
        return state

    def _persist(self, state: _State) -> None:
        """Hook for durable subclasses. Must raise StoreError on failure."""


# =============================================================================
# JSON file implementation
# =============================================================================


class FileDatabase(MemoryDatabase):
    """
    Wallet database persisted as a single JSON document.

    Every commit rewrites the whole file atomically (write to temp, then
    rename), so readers see either the old or the new state.
    """

    def __init__(self, path: Path):
        super().__init__()
        self.path = path
        self._state = self._load()

    def _load(self) -> _State:
        if not self.path.exists():
            logger.debug(f"No wallet database at {self.path}, starting empty")
            return _State()

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            state = _state_from_dict(data)
        except OSError as e:
            raise StoreError(f"Failed to read wallet database {self.path}: {e}") from e
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise StoreError(f"Corrupt wallet database {self.path}: {e}") from e

        logger.debug(
            f"Loaded wallet database: {len(state.scripts)} script(s), "
            f"{len(state.transactions)} transaction(s), {len(state.utxos)} utxo(s)"
        )
        return state

    def _persist(self, state: _State) -> None:
        tmp_path = self.path.with_suffix(".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(
                json.dumps(_state_to_dict(state), indent=2, sort_keys=True), encoding="utf-8"
            )
            tmp_path.replace(self.path)
        except OSError as e:
            logger.error(f"Failed to save wallet database: {e}")
            with contextlib.suppress(OSError):
                tmp_path.unlink(missing_ok=True)
            raise StoreError(f"Failed to write wallet database {self.path}: {e}") from e


def _state_to_dict(state: _State) -> dict[str, Any]:
    return {
        "version": DATABASE_FORMAT_VERSION,
        "scripts": [
            {"script": script.hex(), "keychain": keychain.value, "index": index}
            for script, (keychain, index) in state.scripts.items()
        ],
        "transactions": [details.to_dict() for details in state.transactions.values()],
        "utxos": [utxo.to_dict() for utxo in state.utxos.values()],
        "last_index": {keychain.value: index for keychain, index in state.last_index.items()},
    }


def _state_from_dict(data: Any) -> _State:
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    version = data.get("version")
    if version != DATABASE_FORMAT_VERSION:
        raise ValueError(f"Unsupported database version: {version}")

    state = _State()
    for entry in data.get("scripts", []):
        state.scripts[bytes.fromhex(entry["script"])] = (
            KeychainKind(entry["keychain"]),
            int(entry["index"]),
        )
    for entry in data.get("transactions", []):
        details = TransactionDetails.from_dict(entry)
        state.transactions[details.txid] = details
    for entry in data.get("utxos", []):
        utxo = LocalUtxo.from_dict(entry)
        state.utxos[utxo.outpoint] = utxo
    for keychain, index in data.get("last_index", {}).items():
        state.last_index[KeychainKind(keychain)] = int(index)
    return state
