"""
Wallet constants shared across wallet modules.
"""

from __future__ import annotations

# Unused script gap that ends a keychain scan; also the per-iteration chunk size
DEFAULT_STOP_GAP = 20

# Fee rate used when the backend offers no usable estimate (sat/vB)
DEFAULT_FEE_RATE_SAT_PER_VB = 1.0
