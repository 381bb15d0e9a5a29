"""
CB58 encoding helpers and amount formatting.

CB58 is base58 with a 4-byte checksum (last 4 bytes of sha256) appended.
Transaction IDs, asset IDs, chain IDs and private keys use it.
"""

import hashlib
from decimal import Decimal

import base58

CHECKSUM_LENGTH = 4
PRIVATE_KEY_PREFIX = "PrivateKey-"

# 1 AVAX = 10^9 nAVAX
DEFAULT_DENOMINATION = 9


def _checksum(payload: bytes) -> bytes:
    return hashlib.sha256(payload).digest()[-CHECKSUM_LENGTH:]


def cb58_encode(payload: bytes) -> str:
    return base58.b58encode(payload + _checksum(payload)).decode("ascii")


def cb58_decode(value: str) -> bytes:
    """Decode a CB58 string, raising ValueError on a bad checksum."""
    raw = base58.b58decode(value)
    if len(raw) < CHECKSUM_LENGTH:
        raise ValueError(f"CB58 value too short: {value!r}")
    payload, checksum = raw[:-CHECKSUM_LENGTH], raw[-CHECKSUM_LENGTH:]
    if _checksum(payload) != checksum:
        raise ValueError(f"CB58 checksum mismatch: {value!r}")
    return payload


def decode_private_key(value: str) -> bytes:
    """Accept 'PrivateKey-<cb58>' or a 64-char hex string."""
    value = value.strip()
    if value.startswith(PRIVATE_KEY_PREFIX):
        return cb58_decode(value[len(PRIVATE_KEY_PREFIX):])
    if value.startswith("0x"):
        value = value[2:]
    return bytes.fromhex(value)


def encode_private_key(secret: bytes) -> str:
    return PRIVATE_KEY_PREFIX + cb58_encode(secret)


def format_amount(amount: int, denomination: int = DEFAULT_DENOMINATION) -> str:
    """Render an integer amount in whole units, e.g. 50000000 -> '0.05'."""
    value = Decimal(amount).scaleb(-denomination)
    return format(value.normalize(), "f")
