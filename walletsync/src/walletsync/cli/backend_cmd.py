"""
Backend pass-through commands: estimate-fee, height, get-tx, broadcast.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Annotated, Any, TypeVar

import typer
from loguru import logger
from walletcore.bitcoin import Transaction
from walletcore.cli_common import create_backend, resolve_backend_settings, setup_cli
from walletcore.models import BackendType

from walletsync.backends.base import BlockchainBackend
from walletsync.cli import app
from walletsync.cli.options import (
    BackendTypeOption,
    BackendUrlOption,
    LogLevelOption,
    NetworkOption,
    ProxyOption,
)
from walletsync.errors import WalletSyncError

T = TypeVar("T")


def _run_with_backend(
    call: Callable[[BlockchainBackend], Awaitable[T]],
    *,
    log_level: str | None,
    network: str | None,
    backend_type: BackendType | None,
    backend_url: str | None,
    proxy: str | None,
) -> T:
    settings = setup_cli(log_level)
    backend_settings = resolve_backend_settings(
        settings, network=network, backend_type=backend_type, url=backend_url, proxy=proxy
    )

    async def _run() -> Any:
        async with create_backend(backend_settings) as backend:
            return await call(backend)

    try:
        return asyncio.run(_run())
    except (ValueError, WalletSyncError) as e:
        logger.error(str(e))
        raise typer.Exit(1)


@app.command("estimate-fee")
def estimate_fee(
    target: Annotated[
        int, typer.Option("--target", "-t", min=1, help="Confirmation target in blocks")
    ] = 6,
    network: NetworkOption = None,
    backend_type: BackendTypeOption = None,
    backend_url: BackendUrlOption = None,
    proxy: ProxyOption = None,
    log_level: LogLevelOption = None,
) -> None:
    """Estimate the fee rate to confirm within a number of blocks."""
    fee_rate = _run_with_backend(
        lambda backend: backend.estimate_fee(target),
        log_level=log_level,
        network=network,
        backend_type=backend_type,
        backend_url=backend_url,
        proxy=proxy,
    )
    typer.echo(f"{fee_rate.sat_per_vb:.3f} sat/vB")


@app.command()
def height(
    network: NetworkOption = None,
    backend_type: BackendTypeOption = None,
    backend_url: BackendUrlOption = None,
    proxy: ProxyOption = None,
    log_level: LogLevelOption = None,
) -> None:
    """Show the current chain tip height."""
    tip = _run_with_backend(
        lambda backend: backend.get_height(),
        log_level=log_level,
        network=network,
        backend_type=backend_type,
        backend_url=backend_url,
        proxy=proxy,
    )
    typer.echo(str(tip))


@app.command("get-tx")
def get_tx(
    txid: Annotated[str, typer.Argument(help="Transaction id")],
    network: NetworkOption = None,
    backend_type: BackendTypeOption = None,
    backend_url: BackendUrlOption = None,
    proxy: ProxyOption = None,
    log_level: LogLevelOption = None,
) -> None:
    """Fetch a raw transaction."""
    tx = _run_with_backend(
        lambda backend: backend.get_tx(txid),
        log_level=log_level,
        network=network,
        backend_type=backend_type,
        backend_url=backend_url,
        proxy=proxy,
    )
    if tx is None:
        logger.error(f"Transaction {txid} not found")
        raise typer.Exit(1)
    typer.echo(tx.to_hex())


@app.command()
def broadcast(
    tx_hex: Annotated[str, typer.Argument(help="Signed transaction hex")],
    network: NetworkOption = None,
    backend_type: BackendTypeOption = None,
    backend_url: BackendUrlOption = None,
    proxy: ProxyOption = None,
    log_level: LogLevelOption = None,
) -> None:
    """Broadcast a signed transaction."""
    try:
        tx = Transaction.from_hex(tx_hex.strip())
    except ValueError as e:
        setup_cli(log_level)
        logger.error(f"Invalid transaction: {e}")
        raise typer.Exit(1)

    txid = _run_with_backend(
        lambda backend: backend.broadcast(tx),
        log_level=log_level,
        network=network,
        backend_type=backend_type,
        backend_url=backend_url,
        proxy=proxy,
    )
    typer.echo(txid)
