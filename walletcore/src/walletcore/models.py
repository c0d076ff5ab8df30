"""
Core enums shared by settings, codec and wallet code.
"""

from __future__ import annotations

from enum import Enum


class NetworkType(str, Enum):
    """Bitcoin network types."""

    MAINNET = "mainnet"
    TESTNET = "testnet"
    SIGNET = "signet"
    REGTEST = "regtest"


class BackendType(str, Enum):
    """Chain indexing backend protocols."""

    ESPLORA = "esplora"
    ELECTRUM = "electrum"
