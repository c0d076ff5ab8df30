"""
Electrum protocol blockchain backend.

Talks JSON-RPC to an ElectrumX, electrs or Fulcrum server over TCP or
TLS, optionally through a SOCKS5 proxy such as Tor. Scripts are looked
up by their Electrum scripthash. One session is opened lazily and kept
for the life of the backend; each batched call goes out as a single
JSON-RPC batch on it.
"""

from __future__ import annotations

import asyncio
import math
import ssl
from collections.abc import Sequence
from contextlib import AsyncExitStack
from typing import Any
from urllib.parse import urlsplit

from aiorpcx import (
    SOCKS5,
    NetAddress,
    ProtocolError,
    RPCError,
    RPCSession,
    SOCKSError,
    SOCKSProxy,
    TaskTimeout,
    connect_rs,
)
from loguru import logger
from walletcore.bitcoin import BlockHeader, Transaction, script_to_scripthash

from walletsync.backends.base import BlockchainBackend
from walletsync.errors import BackendMisbehavingError, TransportError
from walletsync.wallet.models import FeeRate, HistoryEntry

CLIENT_NAME = "walletsync"
PROTOCOL_VERSION = "1.4"

# Failures after which the session is unusable and gets reopened
CONNECTION_ERRORS = (OSError, SOCKSError, TaskTimeout, asyncio.TimeoutError)


def parse_server_url(url: str) -> tuple[str, int, bool]:
    """
    Split an Electrum server URL into host, port and TLS flag.

    Accepts ``tcp://host:port`` and ``ssl://host:port``; a bare
    ``host:port`` is plain TCP.

    Raises:
        ValueError: Unknown scheme, or missing host or port
    """
    if "://" not in url:
        url = f"tcp://{url}"
    parts = urlsplit(url)
    if parts.scheme not in ("tcp", "ssl"):
        raise ValueError(
            f"Unsupported Electrum URL scheme {parts.scheme!r}, use tcp:// or ssl://"
        )
    try:
        port = parts.port
    except ValueError as e:
        raise ValueError(f"Invalid port in Electrum URL {url}") from e
    if not parts.hostname or port is None:
        raise ValueError(f"Electrum URL needs a host and a port: {url}")
    return parts.hostname, port, parts.scheme == "ssl"


def parse_proxy_url(proxy: str) -> SOCKSProxy:
    """Build a SOCKS5 proxy from ``socks5://host:port`` (scheme optional)."""
    if "://" not in proxy:
        proxy = f"socks5://{proxy}"
    parts = urlsplit(proxy)
    if parts.scheme not in ("socks5", "socks5h"):
        raise ValueError(f"Electrum backend only supports SOCKS5 proxies, got {proxy}")
    try:
        port = parts.port
    except ValueError as e:
        raise ValueError(f"Invalid port in proxy URL {proxy}") from e
    if not parts.hostname or port is None:
        raise ValueError(f"Proxy URL needs a host and a port: {proxy}")
    return SOCKSProxy(NetAddress(parts.hostname, port), SOCKS5, None)


class ElectrumBackend(BlockchainBackend):
    """
    Blockchain backend using the Electrum protocol.

    Args:
        url: Server URL, e.g. ssl://electrum.blockstream.info:50002
        proxy: Optional SOCKS5 proxy URL (socks5://127.0.0.1:9050 for Tor)
        retry: Connection retries before giving up
        timeout: Connect and request timeout in seconds, None to wait indefinitely
        session: Already open session to use instead of connecting (not closed by us)
    """

    def __init__(
        self,
        url: str = "ssl://electrum.blockstream.info:50002",
        proxy: str | None = None,
        retry: int = 2,
        timeout: float | None = 30.0,
        session: RPCSession | None = None,
    ):
        if retry < 0:
            raise ValueError(f"retry must be >= 0, got {retry}")

        self.url = url
        self.host, self.port, self.use_ssl = parse_server_url(url)
        self.proxy = parse_proxy_url(proxy) if proxy else None
        self.retry = retry
        self.timeout = timeout

        self._session: Any = session
        self._stack: AsyncExitStack | None = None
        self._connect_lock = asyncio.Lock()

    # -- batched reads --------------------------------------------------------

    async def batch_script_get_history(
        self, scripts: Sequence[bytes]
    ) -> list[list[HistoryEntry]]:
        scripthashes = [script_to_scripthash(script) for script in scripts]
        replies = await self._call_batch(
            "blockchain.scripthash.get_history", [[sh] for sh in scripthashes]
        )
        histories = []
        for scripthash, reply in zip(scripthashes, replies):
            if not isinstance(reply, list):
                raise BackendMisbehavingError(f"Expected a list of history for {scripthash}")
            try:
                entries = [
                    HistoryEntry(txid=item["tx_hash"], height=int(item["height"]))
                    for item in reply
                ]
            except (KeyError, TypeError, ValueError) as e:
                raise BackendMisbehavingError(
                    f"Malformed history entry for {scripthash}: {e}"
                ) from e
            logger.trace(f"History of {scripthash}: {len(entries)} transaction(s)")
            histories.append(entries)
        return histories

    async def batch_block_header(self, heights: Sequence[int]) -> list[BlockHeader]:
        replies = await self._call_batch("blockchain.block.header", [[h] for h in heights])
        return [self._parse_header(h, reply) for h, reply in zip(heights, replies)]

    async def batch_transaction_get(self, txids: Sequence[str]) -> list[Transaction]:
        replies = await self._call_batch("blockchain.transaction.get", [[t] for t in txids])
        return [self._parse_tx(txid, reply) for txid, reply in zip(txids, replies)]

    # -- single-item pass-throughs -------------------------------------------

    async def broadcast(self, tx: Transaction) -> str:
        try:
            txid = await self._send("blockchain.transaction.broadcast", [tx.to_hex()])
        except RPCError as e:
            logger.error(f"Broadcast rejected: {e.message}")
            raise TransportError(f"Broadcast failed: {e.message}") from e

        if txid != tx.txid:
            logger.warning(f"Backend acknowledged broadcast as {txid}, expected {tx.txid}")
        logger.info(f"Broadcast transaction: {txid}")
        return str(txid)

    async def estimate_fee(self, target: int) -> FeeRate:
        reply = await self._call("blockchain.estimatefee", [target])
        numeric = isinstance(reply, (int, float)) and not isinstance(reply, bool)
        if not numeric or not math.isfinite(reply):
            raise BackendMisbehavingError(f"Malformed fee estimate: {reply!r}")

        # -1 means the server has no estimate for this target
        if reply < 0:
            logger.debug(f"No fee estimate for {target} block(s), using the default rate")
            return FeeRate.default()

        fee_rate = FeeRate.from_btc_per_kvb(reply)
        logger.debug(f"Estimated fee for {target} block(s): {fee_rate.sat_per_vb} sat/vB")
        return fee_rate

    async def get_height(self) -> int:
        reply = await self._call("blockchain.headers.subscribe")
        try:
            height = int(reply["height"])
        except (KeyError, TypeError, ValueError) as e:
            raise BackendMisbehavingError(f"Malformed tip header notification: {reply!r}") from e
        logger.debug(f"Current block height: {height}")
        return height

    async def get_tx(self, txid: str) -> Transaction | None:
        try:
            raw = await self._send("blockchain.transaction.get", [txid])
        except RPCError as e:
            logger.debug(f"Transaction {txid} not found: {e.message}")
            return None

        tx = self._parse_tx(txid, raw)
        if tx.txid != txid:
            raise BackendMisbehavingError(f"Requested {txid}, backend returned {tx.txid}")
        return tx

    async def close(self) -> None:
        stack, self._stack = self._stack, None
        if stack is not None:
            self._session = None
            await stack.aclose()

    # -- session --------------------------------------------------------------

    async def _get_session(self) -> Any:
        async with self._connect_lock:
            if self._session is None:
                self._session = await self._connect()
            return self._session

    async def _connect(self) -> RPCSession:
        kwargs: dict[str, Any] = {}
        if self.use_ssl:
            kwargs["ssl"] = ssl.create_default_context()

        attempts = self.retry + 1
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            stack = AsyncExitStack()
            connector = connect_rs(self.host, self.port, proxy=self.proxy, **kwargs)
            try:
                session = await asyncio.wait_for(
                    stack.enter_async_context(connector), self.timeout
                )
                if self.timeout is not None:
                    session.sent_request_timeout = self.timeout
                version = await session.send_request(
                    "server.version", [CLIENT_NAME, PROTOCOL_VERSION]
                )
            except (RPCError, ProtocolError, *CONNECTION_ERRORS) as e:
                await stack.aclose()
                last_error = e
                logger.warning(f"Connection to {self.url} failed ({attempt}/{attempts}): {e}")
                continue

            self._stack = stack
            logger.debug(f"Connected to {self.url}: {version}")
            return session

        raise TransportError(f"Failed to connect to {self.url}: {last_error}") from last_error

    async def _send(self, method: str, args: Sequence[Any] = ()) -> Any:
        """Send one request; server-side rejections surface as ``RPCError``."""
        session = await self._get_session()
        try:
            return await session.send_request(method, list(args))
        except ProtocolError as e:
            raise BackendMisbehavingError(f"Malformed reply to {method}: {e}") from e
        except CONNECTION_ERRORS as e:
            await self.close()
            logger.error(f"Request {method} failed: {e}")
            raise TransportError(f"{method} failed: {e}") from e

    async def _call(self, method: str, args: Sequence[Any] = ()) -> Any:
        try:
            return await self._send(method, args)
        except RPCError as e:
            raise TransportError(f"{method} rejected: {e.message}") from e

    async def _call_batch(self, method: str, args_list: Sequence[list[Any]]) -> list[Any]:
        if not args_list:
            return []

        session = await self._get_session()
        try:
            async with session.send_batch() as batch:
                for args in args_list:
                    batch.add_request(method, args)
        except ProtocolError as e:
            raise BackendMisbehavingError(f"Malformed batch reply to {method}: {e}") from e
        except CONNECTION_ERRORS as e:
            await self.close()
            logger.error(f"Batch {method} failed: {e}")
            raise TransportError(f"{method} batch failed: {e}") from e

        results = list(batch.results)
        if len(results) != len(args_list):
            raise BackendMisbehavingError(
                f"{method} batch returned {len(results)} replies for {len(args_list)} requests"
            )
        for args, result in zip(args_list, results):
            if isinstance(result, RPCError):
                raise TransportError(f"{method} {args} rejected: {result.message}")
            if isinstance(result, Exception):
                raise TransportError(f"{method} {args} failed: {result}")
        return results

    # -- parsing --------------------------------------------------------------

    @staticmethod
    def _parse_header(height: int, reply: Any) -> BlockHeader:
        if not isinstance(reply, str):
            raise BackendMisbehavingError(f"Expected header hex at height {height}, got {reply!r}")
        try:
            return BlockHeader.from_hex(reply)
        except ValueError as e:
            raise BackendMisbehavingError(f"Malformed header at height {height}: {e}") from e

    @staticmethod
    def _parse_tx(txid: str, reply: Any) -> Transaction:
        if not isinstance(reply, str):
            raise BackendMisbehavingError(f"Expected transaction hex for {txid}, got {reply!r}")
        try:
            return Transaction.from_hex(reply.strip())
        except ValueError as e:
            raise BackendMisbehavingError(f"Malformed transaction {txid}: {e}") from e
