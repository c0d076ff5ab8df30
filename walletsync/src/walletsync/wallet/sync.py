"""
Wallet chain-sync orchestrator.

Drives a ``SyncRequest`` to completion against a ``BlockchainBackend``:
each iteration draws at most ``chunk_size`` pending items from the active
phase, answers them with one batched backend round trip (through the
session's transaction cache and block-time resolver), and feeds the
answers back to obtain the next phase. The terminal ``FinishRequest``
carries the ``BatchUpdate`` that ``sync`` commits in one call.

All lookup state (heights, block times, transactions) lives in a session
created per ``run`` call and dropped when it returns or raises.
"""

from __future__ import annotations

import random
from collections.abc import Callable
from dataclasses import dataclass, field
from itertools import islice
from typing import assert_never

from loguru import logger
from walletcore.bitcoin import Transaction, TxOut

from walletsync.backends.base import BlockchainBackend
from walletsync.errors import BackendMisbehavingError
from walletsync.wallet import script_sync
from walletsync.wallet.block_times import BlockTimeResolver
from walletsync.wallet.constants import DEFAULT_STOP_GAP
from walletsync.wallet.database import BatchUpdate, WalletDatabase
from walletsync.wallet.models import BlockTime
from walletsync.wallet.script_sync import (
    ConftimeRequest,
    FinishRequest,
    ScriptHistory,
    ScriptRequest,
    SyncRequest,
    TxRequest,
    TxWithPrevouts,
)
from walletsync.wallet.tx_cache import TransactionCache

ProgressCallback = Callable[[str, int], None]


@dataclass
class SyncSession:
    """Lookup state owned by a single ``run`` call."""

    block_times: BlockTimeResolver
    tx_cache: TransactionCache
    # txid -> confirmed height; only heights > 0 are recorded
    heights: dict[str, int] = field(default_factory=dict)

    def record_height(self, txid: str, height: int) -> None:
        known = self.heights.setdefault(txid, height)
        if known != height:
            raise BackendMisbehavingError(
                f"Transaction {txid} reported at height {height}, previously at {known}"
            )


class WalletSynchronizer:
    """
    Reconciles a wallet database with the chain as seen by a backend.

    Args:
        backend: Chain indexing backend
        stop_gap: Unused-script gap ending a keychain scan, also the default chunk size
        progress: Optional callback invoked as ``progress(phase, items_resolved)``
            after every iteration
        rng: Random source for the keychain scan order
    """

    def __init__(
        self,
        backend: BlockchainBackend,
        stop_gap: int = DEFAULT_STOP_GAP,
        progress: ProgressCallback | None = None,
        rng: random.Random | None = None,
    ):
        if stop_gap < 1:
            raise ValueError(f"stop_gap must be >= 1, got {stop_gap}")
        self.backend = backend
        self.stop_gap = stop_gap
        self.progress = progress
        self.rng = rng

    async def sync(self, database: WalletDatabase) -> BatchUpdate:
        """
        Run a full sync and commit the result.

        The database is written exactly once, after every phase succeeded.
        On any error nothing is committed and the error propagates.

        Returns:
            The committed BatchUpdate

        Raises:
            TransportError: A backend call failed
            BackendMisbehavingError: A backend response was inconsistent
            StoreError: A database lookup or the commit failed
        """
        scripts = len(database.iter_script_pubkeys())
        logger.info(f"Syncing wallet ({scripts} watched script(s), stop_gap={self.stop_gap})")

        request = script_sync.start(database, self.stop_gap, rng=self.rng)
        update = await self.run(request, database, chunk_size=self.stop_gap)
        database.commit_batch(update)

        logger.info(
            f"Wallet sync complete: {len(update.transactions)} transaction(s), "
            f"{len(update.deleted_txids)} removed, {len(update.utxos)} utxo(s)"
        )
        return update

    async def run(
        self,
        request: SyncRequest,
        database: WalletDatabase,
        chunk_size: int | None = None,
    ) -> BatchUpdate:
        """
        Drive ``request`` to its ``FinishRequest`` without committing.

        Args:
            request: Initial request, normally from ``script_sync.start``
            database: Database consulted for stored transactions
            chunk_size: Maximum pending items resolved per iteration
                (defaults to ``stop_gap``)

        Returns:
            The BatchUpdate carried by the final request
        """
        chunk_size = self.stop_gap if chunk_size is None else chunk_size
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")

        session = SyncSession(
            block_times=BlockTimeResolver(self.backend),
            tx_cache=TransactionCache(database, self.backend),
        )
        iterations = 0

        while True:
            phase = request.phase
            if isinstance(request, FinishRequest):
                logger.debug(
                    f"Sync finished after {iterations} iteration(s): "
                    f"{len(session.heights)} confirmed txid(s), "
                    f"{len(session.block_times)} block time(s), "
                    f"{len(session.tx_cache)} cached transaction(s)"
                )
                return request.update
            elif isinstance(request, ScriptRequest):
                request, resolved = await self._resolve_scripts(request, session, chunk_size)
            elif isinstance(request, ConftimeRequest):
                request, resolved = await self._resolve_conftimes(request, session, chunk_size)
            elif isinstance(request, TxRequest):
                request, resolved = await self._resolve_txs(request, session, chunk_size)
            else:
                assert_never(request)

            iterations += 1
            if self.progress is not None:
                self.progress(phase, resolved)

    async def _resolve_scripts(
        self, request: ScriptRequest, session: SyncSession, chunk_size: int
    ) -> tuple[SyncRequest, int]:
        scripts = list(islice(request.request(), chunk_size))
        histories: list[ScriptHistory] = []

        if scripts:
            logger.debug(f"Requesting history of {len(scripts)} {request.keychain.value} script(s)")
            replies = await self.backend.batch_script_get_history(scripts)
            if len(replies) != len(scripts):
                raise BackendMisbehavingError(
                    f"Requested history of {len(scripts)} script(s), "
                    f"backend returned {len(replies)}"
                )
            for reply in replies:
                history: ScriptHistory = []
                for entry in reply:
                    height = entry.confirmed_height
                    if height is not None:
                        session.record_height(entry.txid, height)
                    history.append((entry.txid, height))
                histories.append(history)

        return request.satisfy(histories), len(scripts)

    async def _resolve_conftimes(
        self, request: ConftimeRequest, session: SyncSession, chunk_size: int
    ) -> tuple[SyncRequest, int]:
        txids = list(islice(request.request(), chunk_size))

        needed = (session.heights[txid] for txid in txids if txid in session.heights)
        missing = session.block_times.missing(needed, chunk_size)
        if missing:
            await session.block_times.resolve(missing)

        conftimes: list[BlockTime | None] = []
        for txid in txids:
            height = session.heights.get(txid)
            if height is None:
                conftimes.append(None)
                continue
            timestamp = session.block_times.get(height)
            if timestamp is None:
                raise BackendMisbehavingError(f"No block time for height {height} of {txid}")
            conftimes.append(BlockTime(height=height, timestamp=timestamp))

        return request.satisfy(conftimes), len(txids)

    async def _resolve_txs(
        self, request: TxRequest, session: SyncSession, chunk_size: int
    ) -> tuple[SyncRequest, int]:
        cache = session.tx_cache
        txids = list(islice(request.request(), chunk_size))
        await cache.ensure_cached(txids)

        transactions: list[Transaction] = []
        for txid in txids:
            tx = cache.get(txid)
            if tx is None:
                raise BackendMisbehavingError(f"Transaction {txid} missing after fetch")
            transactions.append(tx)

        await cache.ensure_cached(
            inp.previous_output.txid
            for tx in transactions
            for inp in tx.inputs
            if not inp.previous_output.is_null()
        )

        answers: list[TxWithPrevouts] = []
        for tx in transactions:
            prev_outputs: list[TxOut | None] = []
            for inp in tx.inputs:
                outpoint = inp.previous_output
                if outpoint.is_null():
                    prev_outputs.append(None)
                    continue
                prev_tx = cache.get(outpoint.txid)
                if prev_tx is None:
                    raise BackendMisbehavingError(
                        f"Previous transaction {outpoint.txid} of {tx.txid} missing after fetch"
                    )
                if outpoint.vout >= len(prev_tx.outputs):
                    raise BackendMisbehavingError(
                        f"{tx.txid} spends {outpoint}, which has only "
                        f"{len(prev_tx.outputs)} output(s)"
                    )
                prev_outputs.append(prev_tx.outputs[outpoint.vout])
            answers.append((prev_outputs, tx))

        return request.satisfy(answers), len(txids)
