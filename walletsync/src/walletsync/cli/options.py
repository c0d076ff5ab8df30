"""
Shared typer option declarations.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from walletcore.models import BackendType

NetworkOption = Annotated[
    str | None,
    typer.Option("--network", "-n", help="Bitcoin network (mainnet, testnet, signet, regtest)"),
]
BackendTypeOption = Annotated[
    BackendType | None,
    typer.Option("--backend-type", "-b", help="Backend protocol (esplora, electrum)"),
]
BackendUrlOption = Annotated[
    str | None,
    typer.Option(
        "--backend-url",
        "-u",
        envvar="WALLETSYNC_BACKEND_URL",
        help="Esplora API URL, or Electrum server as tcp://host:port or ssl://host:port",
    ),
]
ProxyOption = Annotated[
    str | None,
    typer.Option("--proxy", help="Proxy URL, e.g. socks5://127.0.0.1:9050"),
]
DataDirOption = Annotated[
    Path | None,
    typer.Option(
        "--data-dir",
        help="Data directory (default: ~/.walletsync or $WALLETSYNC_DATA_DIR)",
    ),
]
LogLevelOption = Annotated[
    str | None,
    typer.Option("--log-level", "-l", help="Log level"),
]
