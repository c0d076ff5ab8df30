"""
Wallet data models.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Annotated, Any

from pydantic import Field
from pydantic.dataclasses import dataclass as pydantic_dataclass
from walletcore.bitcoin import OutPoint, Transaction, TxOut
from walletcore.constants import SATS_PER_VB_PER_BTC_PER_KVB

from walletsync.wallet.constants import DEFAULT_FEE_RATE_SAT_PER_VB


class KeychainKind(str, Enum):
    """Which derivation branch a script belongs to."""

    EXTERNAL = "external"  # receive addresses
    INTERNAL = "internal"  # change addresses


@pydantic_dataclass(frozen=True)
class BlockTime:
    """Confirmation record of a transaction: block height and block timestamp."""

    height: Annotated[int, Field(ge=0)]
    timestamp: Annotated[int, Field(ge=0)]


@pydantic_dataclass(frozen=True)
class HistoryEntry:
    """One item of a script's history as reported by the backend.

    A height <= 0 means the transaction is unconfirmed.
    """

    txid: Annotated[str, Field(min_length=64, max_length=64)]
    height: int

    @property
    def confirmed_height(self) -> int | None:
        return self.height if self.height > 0 else None


@pydantic_dataclass(frozen=True)
class FeeRate:
    """Fee rate in satoshis per virtual byte."""

    sat_per_vb: Annotated[float, Field(ge=0.0)]

    @classmethod
    def from_sat_per_vb(cls, value: float) -> FeeRate:
        return cls(sat_per_vb=float(value))

    @classmethod
    def from_btc_per_kvb(cls, value: float) -> FeeRate:
        """Convert an Electrum/Core style BTC/kvB estimate."""
        return cls(sat_per_vb=float(value) * SATS_PER_VB_PER_BTC_PER_KVB)

    @classmethod
    def default(cls) -> FeeRate:
        return cls(sat_per_vb=DEFAULT_FEE_RATE_SAT_PER_VB)


@dataclass
class TransactionDetails:
    """A wallet transaction with the amounts it moves in and out of the wallet.

    ``fee`` is None when prior outputs were unavailable; coinbase-like
    transactions have fee 0.
    """

    txid: str
    transaction: Transaction | None
    received: int
    sent: int
    fee: int | None = None
    confirmation_time: BlockTime | None = None

    @property
    def is_confirmed(self) -> bool:
        return self.confirmation_time is not None

    @property
    def net(self) -> int:
        return self.received - self.sent

    def with_confirmation(self, confirmation_time: BlockTime | None) -> TransactionDetails:
        return replace(self, confirmation_time=confirmation_time)

    def to_dict(self, include_raw: bool = True) -> dict[str, Any]:
        d: dict[str, Any] = {
            "txid": self.txid,
            "received": self.received,
            "sent": self.sent,
            "fee": self.fee,
            "confirmation_time": (
                {
                    "height": self.confirmation_time.height,
                    "timestamp": self.confirmation_time.timestamp,
                }
                if self.confirmation_time is not None
                else None
            ),
        }
        if include_raw and self.transaction is not None:
            d["raw"] = self.transaction.to_hex()
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> TransactionDetails:
        conf = d.get("confirmation_time")
        raw = d.get("raw")
        return cls(
            txid=d["txid"],
            transaction=Transaction.from_hex(raw) if raw else None,
            received=int(d["received"]),
            sent=int(d["sent"]),
            fee=d.get("fee"),
            confirmation_time=(
                BlockTime(height=conf["height"], timestamp=conf["timestamp"]) if conf else None
            ),
        )


@dataclass
class LocalUtxo:
    """An output owned by the wallet."""

    outpoint: OutPoint
    txout: TxOut
    keychain: KeychainKind

    @property
    def value(self) -> int:
        return self.txout.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "outpoint": str(self.outpoint),
            "value": self.txout.value,
            "script_pubkey": self.txout.script_pubkey.hex(),
            "keychain": self.keychain.value,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> LocalUtxo:
        return cls(
            outpoint=OutPoint.from_str(d["outpoint"]),
            txout=TxOut(value=int(d["value"]), script_pubkey=bytes.fromhex(d["script_pubkey"])),
            keychain=KeychainKind(d["keychain"]),
        )
