"""
Base blockchain backend interface.

A backend is a narrow capability interface over a remote chain indexer.
The sync orchestrator only relies on the batched read methods; the
single-item methods are pass-throughs for wallet tooling. Any concrete
transport (HTTP, Electrum TCP) can implement it without the orchestrator
changing.

Contract for the batched methods:
- replies are order-aligned with the request and have the same length;
- transport failures raise ``TransportError``;
- malformed payloads raise ``BackendMisbehavingError``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from types import TracebackType
from typing import TYPE_CHECKING

from walletcore.bitcoin import BlockHeader, Transaction

if TYPE_CHECKING:
    from walletsync.wallet.models import FeeRate, HistoryEntry


class BlockchainBackend(ABC):
    """Abstract chain indexing backend."""

    @abstractmethod
    async def batch_script_get_history(
        self, scripts: Sequence[bytes]
    ) -> list[list[HistoryEntry]]:
        """Get the transaction history of each script (one list per script)."""

    @abstractmethod
    async def batch_block_header(self, heights: Sequence[int]) -> list[BlockHeader]:
        """Get the block header at each height."""

    @abstractmethod
    async def batch_transaction_get(self, txids: Sequence[str]) -> list[Transaction]:
        """Get the full transaction for each txid."""

    @abstractmethod
    async def broadcast(self, tx: Transaction) -> str:
        """Broadcast a transaction, returning its txid."""

    @abstractmethod
    async def estimate_fee(self, target: int) -> FeeRate:
        """Estimate the fee rate to confirm within ``target`` blocks."""

    @abstractmethod
    async def get_height(self) -> int:
        """Get the current chain tip height."""

    @abstractmethod
    async def get_tx(self, txid: str) -> Transaction | None:
        """Get a single transaction, or None if the backend does not know it."""

    async def close(self) -> None:
        """Release transport resources."""

    async def __aenter__(self) -> BlockchainBackend:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
