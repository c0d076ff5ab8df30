"""
Constants shared across walletsync components.
"""

from __future__ import annotations

SATS_PER_BTC = 100_000_000

# 1 BTC/kvB == 100_000 sat/vB
SATS_PER_VB_PER_BTC_PER_KVB = SATS_PER_BTC / 1000

# Serialized block header size in bytes
BLOCK_HEADER_SIZE = 80

# Coinbase (null) outpoint
NULL_TXID = "00" * 32
NULL_VOUT = 0xFFFFFFFF
