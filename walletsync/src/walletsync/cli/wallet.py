"""
Wallet commands: import-address, sync, balance, transactions.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Annotated

import typer
from loguru import logger
from walletcore.bitcoin import format_amount, scriptpubkey_to_address
from walletcore.cli_common import (
    ResolvedBackendSettings,
    create_backend,
    log_resolved_settings,
    resolve_backend_settings,
    setup_cli,
)

from walletsync.cli import app
from walletsync.cli.options import (
    BackendTypeOption,
    BackendUrlOption,
    DataDirOption,
    LogLevelOption,
    NetworkOption,
    ProxyOption,
)
from walletsync.errors import WalletSyncError
from walletsync.wallet.database import FileDatabase
from walletsync.wallet.models import KeychainKind
from walletsync.wallet.service import WalletService


def _open_database(backend_settings: ResolvedBackendSettings) -> FileDatabase:
    try:
        return FileDatabase(backend_settings.database_path)
    except WalletSyncError as e:
        logger.error(str(e))
        raise typer.Exit(1)


@app.command("import-address")
def import_address(
    address: Annotated[str, typer.Argument(help="Address to watch")],
    keychain: Annotated[
        KeychainKind,
        typer.Option("--keychain", "-k", help="Keychain the address belongs to"),
    ] = KeychainKind.EXTERNAL,
    index: Annotated[
        int | None,
        typer.Option("--index", "-i", min=0, help="Derivation index (default: next free)"),
    ] = None,
    network: NetworkOption = None,
    data_dir: DataDirOption = None,
    log_level: LogLevelOption = None,
) -> None:
    """Add an address to the set of watched scripts."""
    settings = setup_cli(log_level)
    backend_settings = resolve_backend_settings(settings, network=network, data_dir=data_dir)
    database = _open_database(backend_settings)

    service = WalletService(database)
    try:
        stored_keychain, stored_index = service.import_address(
            address, keychain=keychain, index=index
        )
    except (ValueError, WalletSyncError) as e:
        logger.error(f"Failed to import {address}: {e}")
        raise typer.Exit(1)

    typer.echo(f"{address} -> {stored_keychain.value}/{stored_index}")


@app.command()
def sync(
    network: NetworkOption = None,
    backend_type: BackendTypeOption = None,
    backend_url: BackendUrlOption = None,
    proxy: ProxyOption = None,
    stop_gap: Annotated[
        int | None,
        typer.Option("--stop-gap", "-g", min=1, help="Unused-script gap ending a scan"),
    ] = None,
    data_dir: DataDirOption = None,
    log_level: LogLevelOption = None,
) -> None:
    """Sync the watched scripts with the chain and update the wallet database."""
    settings = setup_cli(log_level)
    backend_settings = resolve_backend_settings(
        settings,
        network=network,
        backend_type=backend_type,
        url=backend_url,
        proxy=proxy,
        stop_gap=stop_gap,
        data_dir=data_dir,
    )
    log_resolved_settings(backend_settings)

    try:
        asyncio.run(_sync(backend_settings))
    except (ValueError, WalletSyncError) as e:
        logger.error(f"Sync failed: {e}")
        raise typer.Exit(1)


async def _sync(backend_settings: ResolvedBackendSettings) -> None:
    database = _open_database(backend_settings)
    if not database.iter_script_pubkeys():
        logger.warning("No watched scripts; use import-address first")

    def report(phase: str, done: int) -> None:
        logger.debug(f"[{phase}] resolved {done} item(s)")

    async with create_backend(backend_settings) as backend:
        service = WalletService(
            database, backend, stop_gap=backend_settings.stop_gap, progress=report
        )
        update = await service.sync()
        balance = service.get_balance()

    typer.echo(f"Transactions updated: {len(update.transactions)}")
    typer.echo(f"Transactions removed: {len(update.deleted_txids)}")
    typer.echo(f"Balance: {format_amount(balance.total)}")


@app.command()
def balance(
    network: NetworkOption = None,
    data_dir: DataDirOption = None,
    log_level: LogLevelOption = None,
) -> None:
    """Show unspent outputs and balance from the last sync."""
    settings = setup_cli(log_level)
    backend_settings = resolve_backend_settings(settings, network=network, data_dir=data_dir)
    database = _open_database(backend_settings)
    service = WalletService(database)

    utxos = service.list_utxos()
    if not utxos:
        typer.echo("No unspent outputs.")
    for utxo in utxos:
        try:
            address = scriptpubkey_to_address(utxo.txout.script_pubkey, backend_settings.network)
        except ValueError:
            address = utxo.txout.script_pubkey.hex()
        typer.echo(f"{utxo.outpoint}  {utxo.value:>15,} sats  {utxo.keychain.value:<8}  {address}")

    wallet_balance = service.get_balance()
    typer.echo(f"\nConfirmed:   {format_amount(wallet_balance.confirmed)}")
    typer.echo(f"Unconfirmed: {format_amount(wallet_balance.unconfirmed)}")
    typer.echo(f"Total:       {format_amount(wallet_balance.total)}")


@app.command()
def transactions(
    network: NetworkOption = None,
    data_dir: DataDirOption = None,
    log_level: LogLevelOption = None,
) -> None:
    """List wallet transactions from the last sync."""
    settings = setup_cli(log_level)
    backend_settings = resolve_backend_settings(settings, network=network, data_dir=data_dir)
    database = _open_database(backend_settings)
    service = WalletService(database)

    entries = service.list_transactions()
    if not entries:
        typer.echo("No transactions.")
        return

    for details in entries:
        if details.confirmation_time is None:
            when = "unconfirmed"
        else:
            when = datetime.fromtimestamp(
                details.confirmation_time.timestamp, tz=timezone.utc
            ).strftime("%Y-%m-%d %H:%M:%S")
            when = f"{when} (#{details.confirmation_time.height})"
        fee = f"{details.fee:,}" if details.fee is not None else "?"
        typer.echo(f"{details.txid}  {details.net:>+15,} sats  fee {fee:>8}  {when}")
