"""
Shared path utilities for walletsync data directories.
"""

from __future__ import annotations

import os
from pathlib import Path

DATA_DIR_ENV = "WALLETSYNC_DATA_DIR"
CONFIG_FILE_ENV = "WALLETSYNC_CONFIG_FILE"


def get_default_data_dir() -> Path:
    """
    Get the default walletsync data directory.

    Returns ~/.walletsync or $WALLETSYNC_DATA_DIR if set.
    Creates the directory if it doesn't exist.
    """
    env_path = os.getenv(DATA_DIR_ENV)
    data_dir = Path(env_path) if env_path else Path.home() / ".walletsync"

    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def get_database_path(data_dir: Path | None = None, filename: str = "wallet.json") -> Path:
    """
    Get the path to the wallet database file.

    Args:
        data_dir: Optional data directory (defaults to get_default_data_dir())
        filename: Database file name inside the data directory

    Returns:
        Path to the wallet database file
    """
    if data_dir is None:
        data_dir = get_default_data_dir()
    return data_dir / filename
