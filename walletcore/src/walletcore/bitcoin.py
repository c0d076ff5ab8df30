"""
Bitcoin primitives for wallet synchronization.

This module provides:
- Hash functions (hash256, sha256) and Electrum-style script hashes
- Varint encoding/decoding
- Address <-> scriptPubKey conversion
- Transaction and block header models with (de)serialization

Uses external libraries for address encoding:
- bech32: BIP173 bech32 encoding
- base58: Base58Check encoding
"""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass, field

import base58
import bech32 as bech32_lib

from walletcore.constants import BLOCK_HEADER_SIZE, NULL_TXID, NULL_VOUT, SATS_PER_BTC
from walletcore.models import NetworkType

# Network prefixes for address encoding
HRP_MAP = {
    NetworkType.MAINNET: "bc",
    NetworkType.TESTNET: "tb",
    NetworkType.SIGNET: "tb",
    NetworkType.REGTEST: "bcrt",
}

# Base58 version bytes
P2PKH_VERSION = {
    NetworkType.MAINNET: 0x00,
    NetworkType.TESTNET: 0x6F,
    NetworkType.SIGNET: 0x6F,
    NetworkType.REGTEST: 0x6F,
}

P2SH_VERSION = {
    NetworkType.MAINNET: 0x05,
    NetworkType.TESTNET: 0xC4,
    NetworkType.SIGNET: 0xC4,
    NetworkType.REGTEST: 0xC4,
}


# =============================================================================
# Amount Utilities
# =============================================================================


def sats_to_btc(sats: int) -> float:
    """
    Convert satoshis to BTC. Only use for display/output.

    Args:
        sats: Amount in satoshis

    Returns:
        Amount in BTC
    """
    return sats / SATS_PER_BTC


def format_amount(sats: int, include_unit: bool = True) -> str:
    """
    Format satoshi amount as string.
    Default: '1,000,000 sats (0.01000000 BTC)'
    """
    if include_unit:
        btc_val = sats_to_btc(sats)
        return f"{sats:,} sats ({btc_val:.8f} BTC)"
    return f"{sats:,}"


# =============================================================================
# Hash Functions
# =============================================================================


def hash256(data: bytes) -> bytes:
    """
    SHA256(SHA256(data)) - Used for Bitcoin txids and block hashes.

    Args:
        data: Input data to hash

    Returns:
        32-byte hash
    """
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def sha256(data: bytes) -> bytes:
    """Single SHA256 hash."""
    return hashlib.sha256(data).digest()


def script_to_scripthash(script: bytes) -> str:
    """
    Compute the script hash used by Electrum and Esplora indexers.

    The script hash is SHA256 of the scriptPubKey, byte-reversed and hex encoded.

    Args:
        script: scriptPubKey bytes

    Returns:
        64-char hex script hash
    """
    return sha256(script)[::-1].hex()


# =============================================================================
# Varint Encoding/Decoding
# =============================================================================


def encode_varint(n: int) -> bytes:
    """
    Encode integer as Bitcoin varint.

    Args:
        n: Integer to encode

    Returns:
        Encoded bytes
    """
    if n < 0xFD:
        return bytes([n])
    elif n <= 0xFFFF:
        return bytes([0xFD]) + struct.pack("<H", n)
    elif n <= 0xFFFFFFFF:
        return bytes([0xFE]) + struct.pack("<I", n)
    else:
        return bytes([0xFF]) + struct.pack("<Q", n)


def decode_varint(data: bytes, offset: int = 0) -> tuple[int, int]:
    """
    Decode Bitcoin varint from bytes.

    Args:
        data: Input bytes
        offset: Starting offset in data

    Returns:
        (value, new_offset) tuple

    Raises:
        ValueError: If data is truncated
    """
    if offset >= len(data):
        raise ValueError("Truncated varint")
    first = data[offset]
    if first < 0xFD:
        return first, offset + 1
    width = {0xFD: 2, 0xFE: 4, 0xFF: 8}[first]
    if offset + 1 + width > len(data):
        raise ValueError("Truncated varint")
    fmt = {2: "<H", 4: "<I", 8: "<Q"}[width]
    return struct.unpack(fmt, data[offset + 1 : offset + 1 + width])[0], offset + 1 + width


class _ByteReader:
    """Sequential reader over serialized data that fails loudly on truncation."""

    def __init__(self, data: bytes):
        self.data = data
        self.offset = 0

    def read(self, n: int) -> bytes:
        if self.offset + n > len(self.data):
            raise ValueError(
                f"Truncated data: need {n} bytes at offset {self.offset}, have {len(self.data)}"
            )
        chunk = self.data[self.offset : self.offset + n]
        self.offset += n
        return chunk

    def read_u32(self) -> int:
        return struct.unpack("<I", self.read(4))[0]

    def read_u64(self) -> int:
        return struct.unpack("<Q", self.read(8))[0]

    def read_varint(self) -> int:
        value, self.offset = decode_varint(self.data, self.offset)
        return value

    def read_var_bytes(self) -> bytes:
        return self.read(self.read_varint())

    def peek(self, n: int) -> bytes:
        return self.data[self.offset : self.offset + n]

    @property
    def exhausted(self) -> bool:
        return self.offset == len(self.data)


# =============================================================================
# Address Encoding/Decoding
# =============================================================================


def get_hrp(network: str | NetworkType) -> str:
    """
    Get bech32 human-readable part for network.

    Args:
        network: Network type (string or enum)

    Returns:
        HRP string (bc, tb, bcrt)
    """
    if isinstance(network, str):
        network = NetworkType(network)
    return HRP_MAP[network]


def address_to_scriptpubkey(address: str) -> bytes:
    """
    Convert Bitcoin address to scriptPubKey.

    Supports:
    - P2WPKH (bc1q..., tb1q..., bcrt1q...)
    - P2WSH (bc1q... 62 chars)
    - P2TR (bc1p... taproot)
    - P2PKH (1..., m..., n...)
    - P2SH (3..., 2...)

    Args:
        address: Bitcoin address string

    Returns:
        scriptPubKey bytes

    Raises:
        ValueError: If the address cannot be decoded
    """
    # Bech32 (SegWit) addresses
    lowered = address.lower()
    if lowered.startswith(("bc1", "tb1", "bcrt1")):
        hrp = "bcrt" if lowered.startswith("bcrt") else lowered[:2]

        witver, witprog_list = bech32_lib.decode(hrp, lowered)
        if witver is None or witprog_list is None:
            raise ValueError(f"Invalid bech32 address: {address}")

        witprog = bytes(witprog_list)
        if witver == 0:
            if len(witprog) == 20:
                return bytes([0x00, 0x14]) + witprog
            elif len(witprog) == 32:
                return bytes([0x00, 0x20]) + witprog
        elif witver == 1 and len(witprog) == 32:
            return bytes([0x51, 0x20]) + witprog

        raise ValueError(f"Unsupported witness program: version {witver}, {len(witprog)} bytes")

    # Base58 addresses (legacy)
    decoded = base58.b58decode_check(address)
    version = decoded[0]
    payload = decoded[1:]

    if version in (0x00, 0x6F):
        # P2PKH: OP_DUP OP_HASH160 <20-byte-pubkeyhash> OP_EQUALVERIFY OP_CHECKSIG
        return bytes([0x76, 0xA9, 0x14]) + payload + bytes([0x88, 0xAC])
    elif version in (0x05, 0xC4):
        # P2SH: OP_HASH160 <20-byte-scripthash> OP_EQUAL
        return bytes([0xA9, 0x14]) + payload + bytes([0x87])

    raise ValueError(f"Unknown address version: {version}")


def scriptpubkey_to_address(scriptpubkey: bytes, network: str | NetworkType = "mainnet") -> str:
    """
    Convert scriptPubKey to address.

    Supports P2WPKH, P2WSH, P2TR, P2PKH, P2SH.

    Args:
        scriptpubkey: scriptPubKey bytes
        network: Network type

    Returns:
        Bitcoin address string
    """
    if isinstance(network, str):
        network = NetworkType(network)

    hrp = get_hrp(network)

    # P2WPKH / P2WSH
    if (len(scriptpubkey) == 22 and scriptpubkey[:2] == b"\x00\x14") or (
        len(scriptpubkey) == 34 and scriptpubkey[:2] == b"\x00\x20"
    ):
        result = bech32_lib.encode(hrp, 0, scriptpubkey[2:])
        if result is None:
            raise ValueError(f"Failed to encode segwit v0 address: {scriptpubkey.hex()}")
        return result

    # P2TR
    if len(scriptpubkey) == 34 and scriptpubkey[:2] == b"\x51\x20":
        result = bech32_lib.encode(hrp, 1, scriptpubkey[2:])
        if result is None:
            raise ValueError(f"Failed to encode P2TR address: {scriptpubkey.hex()}")
        return result

    # P2PKH
    if (
        len(scriptpubkey) == 25
        and scriptpubkey[:3] == b"\x76\xa9\x14"
        and scriptpubkey[23:] == b"\x88\xac"
    ):
        payload = bytes([P2PKH_VERSION[network]]) + scriptpubkey[3:23]
        return base58.b58encode_check(payload).decode("ascii")

    # P2SH
    if len(scriptpubkey) == 23 and scriptpubkey[:2] == b"\xa9\x14" and scriptpubkey[22] == 0x87:
        payload = bytes([P2SH_VERSION[network]]) + scriptpubkey[2:22]
        return base58.b58encode_check(payload).decode("ascii")

    raise ValueError(f"Unsupported scriptPubKey: {scriptpubkey.hex()}")


# =============================================================================
# Transaction Models
# =============================================================================


@dataclass(frozen=True)
class OutPoint:
    """Reference to a transaction output (txid in RPC big-endian hex)."""

    txid: str
    vout: int

    @classmethod
    def null(cls) -> OutPoint:
        """The outpoint carried by coinbase inputs."""
        return cls(txid=NULL_TXID, vout=NULL_VOUT)

    def is_null(self) -> bool:
        return self.txid == NULL_TXID and self.vout == NULL_VOUT

    def serialize(self) -> bytes:
        """36-byte outpoint (little-endian txid + 4-byte vout)."""
        return bytes.fromhex(self.txid)[::-1] + struct.pack("<I", self.vout)

    @classmethod
    def from_str(cls, value: str) -> OutPoint:
        """Parse ``txid:vout``."""
        txid, _, vout = value.rpartition(":")
        if len(txid) != 64 or not vout.isdigit():
            raise ValueError(f"Invalid outpoint: {value}")
        return cls(txid=txid.lower(), vout=int(vout))

    def __str__(self) -> str:
        return f"{self.txid}:{self.vout}"


@dataclass
class TxIn:
    """Transaction input."""

    previous_output: OutPoint
    script_sig: bytes = b""
    sequence: int = 0xFFFFFFFF
    witness: list[bytes] = field(default_factory=list)


@dataclass
class TxOut:
    """Transaction output."""

    value: int
    script_pubkey: bytes


@dataclass
class Transaction:
    """
    Bitcoin transaction.

    Handles both SegWit and non-SegWit serialization. The txid is always
    computed from the witness-stripped serialization, so it can be used to
    check that a transaction body really matches the id it was requested by.
    """

    version: int
    inputs: list[TxIn]
    outputs: list[TxOut]
    locktime: int = 0

    @property
    def has_witness(self) -> bool:
        return any(inp.witness for inp in self.inputs)

    @property
    def txid(self) -> str:
        """Transaction ID (double SHA256 of non-witness data, RPC byte order)."""
        return hash256(self.serialize(include_witness=False))[::-1].hex()

    def serialize(self, include_witness: bool = True) -> bytes:
        """
        Serialize the transaction.

        Args:
            include_witness: Emit the SegWit marker, flag and witness stacks
                when any input carries witness data.

        Returns:
            Serialized transaction bytes
        """
        with_witness = include_witness and self.has_witness

        result = struct.pack("<I", self.version)
        if with_witness:
            result += bytes([0x00, 0x01])  # SegWit marker and flag

        result += encode_varint(len(self.inputs))
        for inp in self.inputs:
            result += inp.previous_output.serialize()
            result += encode_varint(len(inp.script_sig)) + inp.script_sig
            result += struct.pack("<I", inp.sequence)

        result += encode_varint(len(self.outputs))
        for out in self.outputs:
            result += struct.pack("<Q", out.value)
            result += encode_varint(len(out.script_pubkey)) + out.script_pubkey

        if with_witness:
            for inp in self.inputs:
                result += encode_varint(len(inp.witness))
                for item in inp.witness:
                    result += encode_varint(len(item)) + item

        result += struct.pack("<I", self.locktime)
        return result

    def to_hex(self) -> str:
        return self.serialize().hex()

    @classmethod
    def from_bytes(cls, data: bytes) -> Transaction:
        """
        Parse a serialized transaction.

        Raises:
            ValueError: If the data is truncated or has trailing bytes
        """
        reader = _ByteReader(data)
        version = reader.read_u32()

        has_witness = reader.peek(2) == b"\x00\x01"
        if has_witness:
            reader.read(2)

        inputs = []
        for _ in range(reader.read_varint()):
            txid = reader.read(32)[::-1].hex()
            vout = reader.read_u32()
            script_sig = reader.read_var_bytes()
            sequence = reader.read_u32()
            inputs.append(
                TxIn(
                    previous_output=OutPoint(txid=txid, vout=vout),
                    script_sig=script_sig,
                    sequence=sequence,
                )
            )

        outputs = []
        for _ in range(reader.read_varint()):
            value = reader.read_u64()
            outputs.append(TxOut(value=value, script_pubkey=reader.read_var_bytes()))

        if has_witness:
            for inp in inputs:
                inp.witness = [reader.read_var_bytes() for _ in range(reader.read_varint())]

        locktime = reader.read_u32()
        if not reader.exhausted:
            raise ValueError(f"Trailing data after transaction at offset {reader.offset}")

        return cls(version=version, inputs=inputs, outputs=outputs, locktime=locktime)

    @classmethod
    def from_hex(cls, tx_hex: str) -> Transaction:
        return cls.from_bytes(bytes.fromhex(tx_hex.strip()))


# =============================================================================
# Block Headers
# =============================================================================


@dataclass(frozen=True)
class BlockHeader:
    """80-byte block header."""

    version: int
    prev_block_hash: str
    merkle_root: str
    timestamp: int
    bits: int
    nonce: int

    def serialize(self) -> bytes:
        return (
            struct.pack("<I", self.version)
            + bytes.fromhex(self.prev_block_hash)[::-1]
            + bytes.fromhex(self.merkle_root)[::-1]
            + struct.pack("<III", self.timestamp, self.bits, self.nonce)
        )

    @property
    def block_hash(self) -> str:
        return hash256(self.serialize())[::-1].hex()

    @classmethod
    def from_bytes(cls, data: bytes) -> BlockHeader:
        if len(data) != BLOCK_HEADER_SIZE:
            raise ValueError(f"Block header must be {BLOCK_HEADER_SIZE} bytes, got {len(data)}")
        version = struct.unpack("<I", data[0:4])[0]
        timestamp, bits, nonce = struct.unpack("<III", data[68:80])
        return cls(
            version=version,
            prev_block_hash=data[4:36][::-1].hex(),
            merkle_root=data[36:68][::-1].hex(),
            timestamp=timestamp,
            bits=bits,
            nonce=nonce,
        )

    @classmethod
    def from_hex(cls, header_hex: str) -> BlockHeader:
        return cls.from_bytes(bytes.fromhex(header_hex.strip()))
