"""
Esplora REST API blockchain backend.

Works against Blockstream's public instances, mempool.space, or a
self-hosted electrs/esplora. Each batched call issues one HTTP request
per item, at most ``concurrency`` of them in flight, and returns only
after all of them have completed.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, TypeVar

import httpx
from loguru import logger
from walletcore.bitcoin import BlockHeader, Transaction, script_to_scripthash

from walletsync.backends.base import BlockchainBackend
from walletsync.errors import BackendMisbehavingError, TransportError
from walletsync.wallet.fees import select_fee_rate
from walletsync.wallet.models import FeeRate, HistoryEntry

T = TypeVar("T")
R = TypeVar("R")

# Confirmed transactions per page of /scripthash/:hash/txs/chain
CHAIN_PAGE_SIZE = 25


class EsploraBackend(BlockchainBackend):
    """
    Blockchain backend using the Esplora HTTP API.

    Args:
        base_url: API root, e.g. https://blockstream.info/api
        proxy: Optional proxy URL (socks5://127.0.0.1:9050 for Tor)
        retry: Connection retries per request
        timeout: Request timeout in seconds, None to wait indefinitely
        concurrency: Maximum requests in flight within one batch
        transport: Custom httpx transport (overrides proxy and retry)
    """

    def __init__(
        self,
        base_url: str = "https://blockstream.info/api",
        proxy: str | None = None,
        retry: int = 2,
        timeout: float | None = 30.0,
        concurrency: int = 4,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")

        self.base_url = base_url.rstrip("/")
        if transport is None:
            transport = httpx.AsyncHTTPTransport(retries=retry, proxy=proxy)
        self.client = httpx.AsyncClient(transport=transport, timeout=timeout)
        self._semaphore = asyncio.Semaphore(concurrency)

    # -- batched reads --------------------------------------------------------

    async def batch_script_get_history(
        self, scripts: Sequence[bytes]
    ) -> list[list[HistoryEntry]]:
        return await self._batch(self._script_history, scripts)

    async def batch_block_header(self, heights: Sequence[int]) -> list[BlockHeader]:
        return await self._batch(self._block_header, heights)

    async def batch_transaction_get(self, txids: Sequence[str]) -> list[Transaction]:
        return await self._batch(self._transaction, txids)

    async def _batch(self, fetch: Callable[[T], Awaitable[R]], items: Sequence[T]) -> list[R]:
        async def bounded(item: T) -> R:
            async with self._semaphore:
                return await fetch(item)

        results = await asyncio.gather(*(bounded(item) for item in items), return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return list(results)  # type: ignore[arg-type]

    async def _script_history(self, script: bytes) -> list[HistoryEntry]:
        scripthash = script_to_scripthash(script)
        path = f"/scripthash/{scripthash}/txs"
        entries: list[HistoryEntry] = []

        while True:
            page = await self._get_json(path)
            if not isinstance(page, list):
                raise BackendMisbehavingError(f"Expected a list from {path}, got {page!r}")

            confirmed: list[str] = []
            try:
                for item in page:
                    status = item.get("status", {})
                    if status.get("confirmed"):
                        height = int(status["block_height"])
                        confirmed.append(item["txid"])
                    else:
                        height = 0
                    entries.append(HistoryEntry(txid=item["txid"], height=height))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                raise BackendMisbehavingError(f"Malformed history entry from {path}: {e}") from e

            if len(confirmed) < CHAIN_PAGE_SIZE:
                break
            path = f"/scripthash/{scripthash}/txs/chain/{confirmed[-1]}"

        logger.trace(f"History of {scripthash}: {len(entries)} transaction(s)")
        return entries

    async def _block_header(self, height: int) -> BlockHeader:
        block_hash = (await self._get(f"/block-height/{height}")).text.strip()
        header_hex = (await self._get(f"/block/{block_hash}/header")).text.strip()
        try:
            header = BlockHeader.from_hex(header_hex)
        except ValueError as e:
            raise BackendMisbehavingError(f"Malformed header for block {block_hash}: {e}") from e

        if header.block_hash != block_hash:
            raise BackendMisbehavingError(
                f"Header at height {height} hashes to {header.block_hash}, expected {block_hash}"
            )
        return header

    async def _transaction(self, txid: str) -> Transaction:
        return self._parse_tx(txid, (await self._get(f"/tx/{txid}/hex")).text)

    # -- single-item pass-throughs -------------------------------------------

    async def broadcast(self, tx: Transaction) -> str:
        try:
            response = await self.client.post(f"{self.base_url}/tx", content=tx.to_hex())
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"Broadcast rejected: {e.response.text.strip()}")
            raise TransportError(f"Broadcast failed: {e.response.text.strip()}") from e
        except httpx.HTTPError as e:
            logger.error(f"Failed to broadcast transaction: {e}")
            raise TransportError(f"Broadcast failed: {e}") from e

        txid = response.text.strip()
        if txid != tx.txid:
            logger.warning(f"Backend acknowledged broadcast as {txid}, expected {tx.txid}")
        logger.info(f"Broadcast transaction: {txid}")
        return txid

    async def estimate_fee(self, target: int) -> FeeRate:
        estimates = await self._get_json("/fee-estimates")
        if not isinstance(estimates, dict):
            raise BackendMisbehavingError(f"Expected an object of fee estimates, got {estimates!r}")

        fee_rate = select_fee_rate(target, estimates)
        logger.debug(f"Estimated fee for {target} block(s): {fee_rate.sat_per_vb} sat/vB")
        return fee_rate

    async def get_height(self) -> int:
        text = (await self._get("/blocks/tip/height")).text.strip()
        try:
            height = int(text)
        except ValueError as e:
            raise BackendMisbehavingError(f"Malformed tip height: {text!r}") from e
        logger.debug(f"Current block height: {height}")
        return height

    async def get_tx(self, txid: str) -> Transaction | None:
        try:
            response = await self.client.get(f"{self.base_url}/tx/{txid}/hex")
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                logger.debug(f"Transaction {txid} not found")
                return None
            raise TransportError(f"Failed to fetch transaction {txid}: {e}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Failed to fetch transaction {txid}: {e}") from e

        return self._parse_tx(txid, response.text)

    async def close(self) -> None:
        await self.client.aclose()

    # -- helpers --------------------------------------------------------------

    async def _get(self, path: str) -> httpx.Response:
        try:
            response = await self.client.get(f"{self.base_url}{path}")
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Request to {path} failed: {e}")
            raise TransportError(f"GET {path} failed: {e}") from e
        return response

    async def _get_json(self, path: str) -> Any:
        response = await self._get(path)
        try:
            return response.json()
        except ValueError as e:
            raise BackendMisbehavingError(f"Invalid JSON from {path}: {e}") from e

    @staticmethod
    def _parse_tx(txid: str, text: str) -> Transaction:
        try:
            return Transaction.from_hex(text.strip())
        except ValueError as e:
            raise BackendMisbehavingError(f"Malformed transaction {txid}: {e}") from e
