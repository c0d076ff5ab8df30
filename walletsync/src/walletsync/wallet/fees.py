"""
Fee-rate selection from a sparse table of backend estimates.
"""

from __future__ import annotations

import math
import re
from collections.abc import Mapping
from typing import Any

from loguru import logger

from walletsync.wallet.models import FeeRate

_TARGET_RE = re.compile(r"\+?[0-9]+")


def _parse_target(key: str | int) -> int | None:
    if isinstance(key, bool):
        return None
    if isinstance(key, int):
        return key if key >= 0 else None
    if isinstance(key, str) and _TARGET_RE.fullmatch(key):
        return int(key)
    return None


def _parse_rate(rate: object) -> float | None:
    if isinstance(rate, bool) or not isinstance(rate, (int, float, str)):
        return None
    try:
        value = float(rate)
    except ValueError:
        return None
    if not math.isfinite(value) or value < 0:
        return None
    return value


def select_fee_rate(target: int, estimates: Mapping[str | int, Any]) -> FeeRate:
    """
    Pick the fee rate for a confirmation target from backend estimates.

    Chooses the estimate for the largest available target that does not
    exceed ``target``: a slower window may stand in for the requested one,
    a faster (more expensive) one never does. Falls back to 1 sat/vB when
    no such entry exists.

    Keys that are not non-negative integers, and rates that are not
    finite non-negative numbers, are skipped rather than rejected.

    Args:
        target: Confirmation target in blocks (>= 1)
        estimates: Mapping of target (as returned by the backend) to sat/vB

    Returns:
        Selected FeeRate

    Example:
        >>> select_fee_rate(6, {"6": 2.236, "9": 2.236, "10": 2.011}).sat_per_vb
        2.236
        >>> select_fee_rate(26, {"25": 1.015}).sat_per_vb
        1.015
    """
    if target < 1:
        raise ValueError(f"Confirmation target must be >= 1, got {target}")

    pairs: list[tuple[int, float]] = []
    for key, rate in estimates.items():
        parsed = _parse_target(key)
        if parsed is None:
            logger.trace(f"Ignoring malformed fee estimate key {key!r}")
            continue
        value = _parse_rate(rate)
        if value is None:
            logger.trace(f"Ignoring malformed fee estimate {key!r}: {rate!r}")
            continue
        pairs.append((parsed, value))

    pairs.sort(key=lambda pair: pair[0], reverse=True)
    for estimate_target, rate in pairs:
        if estimate_target <= target:
            return FeeRate.from_sat_per_vb(rate)

    return FeeRate.default()
