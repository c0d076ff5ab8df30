"""
Common CLI components for walletsync.

This module provides reusable CLI helper functions:
- Setup functions: logging and settings initialization
- Resolver functions: take CLI args + settings and return resolved values
- Backend factory: build a backend from resolved settings

Keeping these here avoids a typer dependency in walletcore; the CLI
parameter definitions live in ``walletsync.cli``.

Usage:
    from walletcore.cli_common import resolve_backend_settings, setup_cli

    @app.command()
    def my_command(
        backend_url: Annotated[str | None, typer.Option("--backend-url")] = None,
        log_level: Annotated[str | None, typer.Option("--log-level")] = None,
    ):
        settings = setup_cli(log_level)
        backend = resolve_backend_settings(settings, url=backend_url)
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loguru import logger

from walletcore.models import BackendType, NetworkType
from walletcore.paths import get_database_path
from walletcore.settings import WalletSyncSettings, get_settings, reset_settings


@dataclass
class ResolvedBackendSettings:
    """Resolved backend settings ready for use."""

    network: str
    backend_type: BackendType
    url: str
    proxy: str | None
    retry: int
    timeout: float | None
    concurrency: int
    stop_gap: int
    data_dir: Path
    database_path: Path


def setup_logging(level: str = "INFO") -> None:
    """
    Configure loguru logging with consistent format.

    Args:
        level: Log level (TRACE, DEBUG, INFO, WARNING, ERROR)
    """
    logger.remove()
    logger.add(
        sys.stderr,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
            "<level>{message}</level>"
        ),
        level=level.upper(),
        colorize=True,
    )


def setup_cli(log_level: str | None = None) -> WalletSyncSettings:
    """
    Common CLI setup: reset settings cache, configure logging, return settings.

    Log level priority: CLI argument > settings (env/config) > default "INFO"
    """
    reset_settings()
    settings = get_settings()

    effective_log_level = log_level if log_level is not None else settings.logging.level
    setup_logging(effective_log_level)

    return settings


def resolve_backend_settings(
    settings: WalletSyncSettings,
    *,
    network: NetworkType | str | None = None,
    backend_type: BackendType | str | None = None,
    url: str | None = None,
    proxy: str | None = None,
    stop_gap: int | None = None,
    data_dir: Path | None = None,
) -> ResolvedBackendSettings:
    """
    Resolve backend settings from CLI overrides and loaded settings.

    Priority: CLI arguments > settings (env/config) > defaults.

    Args:
        settings: Loaded settings
        network: Network override
        backend_type: Backend type override (esplora, electrum)
        url: Backend URL override
        proxy: Proxy URL override
        stop_gap: Stop gap override
        data_dir: Data directory override

    Returns:
        ResolvedBackendSettings
    """
    if network is not None:
        settings.wallet.network = NetworkType(network)
    if backend_type is not None:
        settings.backend.type = BackendType(backend_type)
    if url is not None:
        settings.backend.url = url.rstrip("/")

    resolved_data_dir = data_dir if data_dir is not None else settings.get_data_dir()

    return ResolvedBackendSettings(
        network=settings.wallet.network.value,
        backend_type=settings.backend.type,
        url=settings.get_backend_url(),
        proxy=proxy if proxy is not None else settings.backend.proxy,
        retry=settings.backend.retry,
        timeout=settings.backend.timeout,
        concurrency=settings.backend.concurrency,
        stop_gap=stop_gap if stop_gap is not None else settings.backend.stop_gap,
        data_dir=resolved_data_dir,
        database_path=get_database_path(resolved_data_dir, settings.wallet.database),
    )


def create_backend(backend_settings: ResolvedBackendSettings) -> Any:
    """
    Create a backend instance based on resolved settings.

    Returns:
        Backend instance (EsploraBackend or ElectrumBackend)

    Raises:
        ValueError: If the backend type or the Electrum URL is invalid
    """
    # walletsync imports walletcore, so these imports stay local
    from walletsync.backends.electrum import ElectrumBackend
    from walletsync.backends.esplora import EsploraBackend

    backend_type = backend_settings.backend_type

    if backend_type == BackendType.ESPLORA:
        return EsploraBackend(
            base_url=backend_settings.url,
            proxy=backend_settings.proxy,
            retry=backend_settings.retry,
            timeout=backend_settings.timeout,
            concurrency=backend_settings.concurrency,
        )
    elif backend_type == BackendType.ELECTRUM:
        return ElectrumBackend(
            url=backend_settings.url,
            proxy=backend_settings.proxy,
            retry=backend_settings.retry,
            timeout=backend_settings.timeout,
        )
    else:
        raise ValueError(
            f"Invalid backend type: {backend_type}. Valid options: esplora, electrum"
        )


def log_resolved_settings(backend_settings: ResolvedBackendSettings) -> None:
    """Log the effective backend configuration at debug level."""
    logger.debug(f"Network: {backend_settings.network}")
    logger.debug(f"Backend type: {backend_settings.backend_type.value}")
    logger.debug(f"Backend URL: {backend_settings.url}")
    if backend_settings.proxy:
        logger.debug(f"Proxy: {backend_settings.proxy}")
    logger.debug(
        f"Retry: {backend_settings.retry}, timeout: {backend_settings.timeout}, "
        f"concurrency: {backend_settings.concurrency}, stop gap: {backend_settings.stop_gap}"
    )
    logger.debug(f"Database: {backend_settings.database_path}")
