"""
Script-based sync request state machine.

A sync is a sequence of requests, each asking the caller for a batch of
answers:

    ScriptRequest   -> history (txid, height) of each watched script
    ConftimeRequest -> confirmation time of each transaction that needs one
    TxRequest       -> full transaction plus the outputs its inputs spend
    FinishRequest   -> carries the BatchUpdate to commit

Each request exposes ``request()`` (a fresh iterator over what is still
pending) and ``satisfy(answers)``, which consumes answers for a prefix of
the pending items and returns the next request. That may be the same
request when work remains. Phases with nothing to do are skipped.

The caller decides how many items to answer per round trip; this module
decides which scripts to scan and what the resulting database update is.
"""

from __future__ import annotations

import random
from collections import deque
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from typing import ClassVar

from loguru import logger
from walletcore.bitcoin import OutPoint, Transaction, TxOut

from walletsync.errors import BackendMisbehavingError, StoreError
from walletsync.wallet.database import BatchUpdate, WalletDatabase
from walletsync.wallet.models import BlockTime, KeychainKind, LocalUtxo, TransactionDetails

# (txid, confirmed height or None)
ScriptHistory = list[tuple[str, int | None]]
# (outputs spent by each input, None for null inputs; the transaction)
TxWithPrevouts = tuple[list[TxOut | None], Transaction]


@dataclass
class SyncState:
    """Everything learned so far in one sync."""

    db: WalletDatabase
    last_active_index: dict[KeychainKind, int] = field(default_factory=dict)
    seen_txids: set[str] = field(default_factory=set)
    # txids never stored before; insertion ordered
    tx_needed: dict[str, None] = field(default_factory=dict)
    # txid -> stored details (None for a new transaction)
    conftime_needed: dict[str, TransactionDetails | None] = field(default_factory=dict)
    # confirmation times of new transactions, joined in TxRequest
    new_conftimes: dict[str, BlockTime | None] = field(default_factory=dict)
    finished_txs: list[TransactionDetails] = field(default_factory=list)

    def after_scripts(self) -> SyncRequest:
        if self.conftime_needed:
            return ConftimeRequest(self)
        return self.after_conftimes()

    def after_conftimes(self) -> SyncRequest:
        if self.tx_needed:
            return TxRequest(self)
        return FinishRequest(self.into_batch_update())

    def into_batch_update(self) -> BatchUpdate:
        """
        Build the database update from the observed transactions.

        - stored transactions no longer reported are deleted, with their utxos
        - of conflicting transactions only the highest-fee one is kept
        - owned outputs of kept transactions become utxos, spent ones are removed
        - the last active index of each scanned keychain is recorded
        """
        finished = _make_txs_consistent(self.finished_txs)
        observed = {details.txid for details in finished}
        update = BatchUpdate()

        for stored in self.db.iter_txs():
            if stored.txid in observed:
                continue
            raw = self.db.get_raw_tx(stored.txid)
            if raw is None:
                logger.warning(f"Stored transaction {stored.txid} has no raw body")
            else:
                for vout in range(len(raw.outputs)):
                    update.del_utxo(OutPoint(txid=stored.txid, vout=vout))
            update.del_tx(stored.txid)

        for details in finished:
            tx = details.transaction
            if tx is not None:
                for vout, output in enumerate(tx.outputs):
                    path = self.db.get_path_from_script_pubkey(output.script_pubkey)
                    if path is not None:
                        update.set_utxo(
                            LocalUtxo(
                                outpoint=OutPoint(txid=details.txid, vout=vout),
                                txout=output,
                                keychain=path[0],
                            )
                        )
            update.set_tx(details)

        # Separate pass: a new transaction may spend an output added above
        for details in finished:
            if details.transaction is None:
                continue
            for inp in details.transaction.inputs:
                if not inp.previous_output.is_null():
                    update.del_utxo(inp.previous_output)

        for keychain, index in self.last_active_index.items():
            update.set_last_index(keychain, index)

        return update


def _make_txs_consistent(txs: Sequence[TransactionDetails]) -> list[TransactionDetails]:
    """
    Drop double-spending transactions, keeping the highest fee one per outpoint.

    A transaction survives only if it wins every outpoint it spends. Ties
    and unknown fees keep the transaction seen first. Null (coinbase)
    inputs never conflict.
    """
    winners: dict[OutPoint, TransactionDetails] = {}
    for details in txs:
        if details.transaction is None:
            continue
        for inp in details.transaction.inputs:
            outpoint = inp.previous_output
            if outpoint.is_null():
                continue
            existing = winners.get(outpoint)
            if existing is None:
                winners[outpoint] = details
            elif details.fee is not None and (existing.fee is None or details.fee > existing.fee):
                winners[outpoint] = details

    consistent = []
    for details in txs:
        if details.transaction is not None and any(
            winners.get(inp.previous_output) is not details
            for inp in details.transaction.inputs
            if not inp.previous_output.is_null()
        ):
            logger.debug(f"Dropping conflicting transaction {details.txid}")
            continue
        consistent.append(details)
    return consistent


def _watched_scripts(db: WalletDatabase, keychain: KeychainKind) -> deque[tuple[bytes, int]]:
    """Watched scripts of a keychain paired with their stored derivation index."""
    pairs: deque[tuple[bytes, int]] = deque()
    for script in db.iter_script_pubkeys(keychain):
        path = db.get_path_from_script_pubkey(script)
        if path is None:
            raise StoreError(f"Watched script {script.hex()} has no stored path")
        pairs.append((script, path[1]))
    return pairs


class ScriptRequest:
    """Asks for the history of watched scripts, one keychain at a time."""

    phase: ClassVar[str] = "script"

    def __init__(
        self,
        state: SyncState,
        keychain: KeychainKind,
        next_keychains: list[KeychainKind],
        stop_gap: int,
    ):
        self.state = state
        self.keychain = keychain
        self.next_keychains = next_keychains
        self.stop_gap = stop_gap
        # one past the derivation index of the last answered script
        self.script_index = 0
        self.scripts_needed = _watched_scripts(state.db, keychain)

    def request(self) -> Iterator[bytes]:
        return iter([script for script, _ in self.scripts_needed])

    def satisfy(self, histories: Sequence[ScriptHistory]) -> SyncRequest:
        if len(histories) > len(self.scripts_needed):
            raise ValueError(
                f"Got {len(histories)} script histories for {len(self.scripts_needed)} scripts"
            )

        for history in histories:
            script, index = self.scripts_needed.popleft()
            logger.trace(
                f"{self.keychain.value} script {index} ({script.hex()}): "
                f"{len(history)} transaction(s)"
            )
            if history:
                self.state.last_active_index[self.keychain] = index
            for txid, height in history:
                self._observe(txid, height)
            self.script_index = index + 1

        active = self.state.last_active_index.get(self.keychain)
        gap_start = active + 1 if active is not None else 0
        if self.script_index > gap_start + self.stop_gap or not self.scripts_needed:
            logger.debug(f"Finished {self.keychain.value} keychain at index {self.script_index}")
            if self.next_keychains:
                self.keychain = self.next_keychains.pop()
                self.script_index = 0
                self.scripts_needed = _watched_scripts(self.state.db, self.keychain)
                return self
            return self.state.after_scripts()
        return self

    def _observe(self, txid: str, height: int | None) -> None:
        state = self.state
        if txid in state.seen_txids:
            return
        state.seen_txids.add(txid)

        details = state.db.get_tx(txid)
        if details is None:
            state.tx_needed[txid] = None
            if height is None:
                state.new_conftimes[txid] = None
            else:
                state.conftime_needed[txid] = None
            return

        old_height = details.confirmation_time.height if details.confirmation_time else None
        if height is not None and old_height != height:
            # Newly confirmed, or moved by a reorg
            state.conftime_needed[txid] = details
        elif height is None and old_height is not None:
            # Reorged out of the chain
            state.finished_txs.append(details.with_confirmation(None))
        else:
            state.finished_txs.append(details)


class ConftimeRequest:
    """Asks for the confirmation time of confirmed transactions."""

    phase: ClassVar[str] = "conftime"

    def __init__(self, state: SyncState):
        self.state = state

    def request(self) -> Iterator[str]:
        return iter(list(self.state.conftime_needed))

    def satisfy(self, conftimes: Sequence[BlockTime | None]) -> SyncRequest:
        pending = list(self.state.conftime_needed)
        if len(conftimes) > len(pending):
            raise ValueError(f"Got {len(conftimes)} confirmation times for {len(pending)} txids")

        for txid, confirmation_time in zip(pending, conftimes):
            logger.trace(f"Confirmation time for {txid}: {confirmation_time}")
            stored = self.state.conftime_needed.pop(txid)
            if stored is None:
                self.state.new_conftimes[txid] = confirmation_time
            else:
                self.state.finished_txs.append(stored.with_confirmation(confirmation_time))

        if self.state.conftime_needed:
            return self
        return self.state.after_conftimes()


class TxRequest:
    """Asks for the full body of transactions the wallet has never stored."""

    phase: ClassVar[str] = "tx"

    def __init__(self, state: SyncState):
        self.state = state

    def request(self) -> Iterator[str]:
        return iter(list(self.state.tx_needed))

    def satisfy(self, transactions: Sequence[TxWithPrevouts]) -> SyncRequest:
        pending = list(self.state.tx_needed)
        if len(transactions) > len(pending):
            raise ValueError(f"Got {len(transactions)} transactions for {len(pending)} txids")

        db = self.state.db
        for txid, (prev_outputs, tx) in zip(pending, transactions):
            if tx.txid != txid:
                raise BackendMisbehavingError(f"Got transaction {tx.txid} for requested {txid}")
            if len(prev_outputs) != len(tx.inputs):
                raise ValueError(
                    f"{txid}: {len(prev_outputs)} previous outputs for {len(tx.inputs)} inputs"
                )

            sent = 0
            inputs_sum = 0
            for prev_output in prev_outputs:
                if prev_output is None:
                    continue
                inputs_sum += prev_output.value
                if db.is_mine(prev_output.script_pubkey):
                    sent += prev_output.value

            received = 0
            outputs_sum = 0
            for output in tx.outputs:
                outputs_sum += output.value
                if db.is_mine(output.script_pubkey):
                    received += output.value

            details = TransactionDetails(
                txid=txid,
                transaction=tx,
                received=received,
                sent=sent,
                # Coinbase-like transactions map to a zero fee
                fee=max(inputs_sum - outputs_sum, 0),
                confirmation_time=self.state.new_conftimes.pop(txid, None),
            )
            logger.trace(f"Found details for {txid}: received={received} sent={sent}")
            self.state.tx_needed.pop(txid)
            self.state.finished_txs.append(details)

        if self.state.tx_needed:
            return self
        return FinishRequest(self.state.into_batch_update())


@dataclass
class FinishRequest:
    """Terminal request carrying the update to commit."""

    update: BatchUpdate
    phase: ClassVar[str] = "finish"


SyncRequest = ScriptRequest | ConftimeRequest | TxRequest | FinishRequest


def start(
    db: WalletDatabase, stop_gap: int, rng: random.Random | None = None
) -> SyncRequest:
    """
    Begin a sync over the watched scripts stored in ``db``.

    The keychain scanned first is chosen at random so the server cannot
    tell whether the first scripts it sees are receive or change scripts.

    Args:
        db: Wallet database holding the watched scripts
        stop_gap: Number of consecutive unused scripts that ends a keychain
        rng: Random source for the keychain order

    Returns:
        The initial ScriptRequest
    """
    if stop_gap < 1:
        raise ValueError(f"stop_gap must be >= 1, got {stop_gap}")

    keychains = [KeychainKind.INTERNAL, KeychainKind.EXTERNAL]
    (rng or random).shuffle(keychains)
    keychain = keychains.pop()
    return ScriptRequest(SyncState(db), keychain, keychains, stop_gap)
