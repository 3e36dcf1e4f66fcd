"""Address encoding and validation primitives for each chain family.

Pure functions, no I/O:

* base58 (Solana public keys and mints) via the ``base58`` package
* Ed25519 point validation via PyNaCl
* EIP-55 checksumming (keccak-256) via ``web3``
* TON raw (``0:<hex>``) and user-friendly (base64, CRC16-XMODEM) addresses
"""

from __future__ import annotations

import base64
import binascii
import re
from typing import NamedTuple, Optional

import base58
from nacl.bindings import crypto_core_ed25519_is_valid_point
from web3 import Web3

# ---------------------------------------------------------------------------
# base58 / Ed25519
# ---------------------------------------------------------------------------


def b58decode(value: str) -> Optional[bytes]:
    """Decode a base58 string, returning ``None`` if it is not valid base58."""
    if not value:
        return None
    try:
        return base58.b58decode(value)
    except ValueError:
        return None


def b58encode(data: bytes) -> str:
    return base58.b58encode(data).decode("ascii")


def decode_solana_key(value: str) -> Optional[bytes]:
    """Return the 32 raw bytes of a base58 public key or mint, else ``None``."""
    raw = b58decode(value)
    if raw is None or len(raw) != 32:
        return None
    return raw


def is_on_ed25519_curve(point: bytes) -> bool:
    """True if *point* is a canonical compressed Ed25519 point."""
    if len(point) != 32:
        return False
    return bool(crypto_core_ed25519_is_valid_point(point))


# ---------------------------------------------------------------------------
# EVM
# ---------------------------------------------------------------------------

_EVM_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def to_evm_checksum(address: str) -> Optional[str]:
    """Return the EIP-55 checksummed form of *address*.

    All-lowercase and all-uppercase inputs are accepted as-is; a mixed-case
    input must already carry a valid checksum.
    """
    if not _EVM_ADDRESS_RE.match(address):
        return None
    # ``is_address`` verifies the checksum of mixed-case input
    if not Web3.is_address(address):
        return None
    return Web3.to_checksum_address(address)


def evm_word(address: str) -> str:
    """Left-pad a 20-byte address to a 32-byte ABI word (hex, no prefix)."""
    return address[2:].lower().rjust(64, "0")


def parse_hex_quantity(value: object) -> int:
    """Parse a JSON-RPC hex quantity (``"0x1bc16d674ec80000"``) into an int.

    ``"0x"`` (an empty ``eth_call`` return) is treated as zero.
    """
    if not isinstance(value, str) or not value.startswith("0x"):
        raise ValueError(f"not a hex quantity: {value!r}")
    digits = value[2:]
    if not digits:
        return 0
    return int(digits, 16)


# ---------------------------------------------------------------------------
# TON
# ---------------------------------------------------------------------------

_TON_RAW_RE = re.compile(r"^(-?\d{1,3}):([0-9a-fA-F]{64})$")
_TON_BOUNCEABLE = 0x11
_TON_NON_BOUNCEABLE = 0x51
_TON_TESTNET = 0x80


class TonAddress(NamedTuple):
    workchain: int
    hash: bytes
    bounceable: bool = True
    testnet: bool = False

    @property
    def raw(self) -> str:
        return f"{self.workchain}:{self.hash.hex()}"


def _crc16(data: bytes) -> bytes:
    # CRC16-XMODEM is CRC-CCITT with a zero initial value
    return binascii.crc_hqx(data, 0).to_bytes(2, "big")


def parse_ton_address(address: str) -> Optional[TonAddress]:
    """Parse a raw (``0:<hex>``) or user-friendly (48 char base64) address."""
    address = address.strip()
    match = _TON_RAW_RE.match(address)
    if match:
        workchain = int(match.group(1))
        if not -128 <= workchain <= 127:
            return None
        return TonAddress(workchain, bytes.fromhex(match.group(2)))

    if len(address) != 48:
        return None
    try:
        data = base64.b64decode(
            address.replace("-", "+").replace("_", "/"), validate=True
        )
    except binascii.Error:
        return None
    if len(data) != 36 or _crc16(data[:34]) != data[34:]:
        return None
    tag = data[0]
    testnet = bool(tag & _TON_TESTNET)
    tag &= ~_TON_TESTNET
    if tag not in (_TON_BOUNCEABLE, _TON_NON_BOUNCEABLE):
        return None
    workchain = int.from_bytes(data[1:2], "big", signed=True)
    return TonAddress(workchain, data[2:34], tag == _TON_BOUNCEABLE, testnet)


def format_ton_address(
    workchain: int, hash_: bytes, *, bounceable: bool, testnet: bool = False
) -> str:
    """Render a user-friendly, URL-safe base64 TON address."""
    tag = _TON_BOUNCEABLE if bounceable else _TON_NON_BOUNCEABLE
    if testnet:
        tag |= _TON_TESTNET
    body = bytes([tag, workchain & 0xFF]) + hash_
    return base64.urlsafe_b64encode(body + _crc16(body)).decode("ascii")
