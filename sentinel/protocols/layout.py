"""
Bounds-checked little-endian reader for fixed-offset account layouts.

Every read validates the full field width against the buffer length first,
so a truncated account surfaces as DecodeError(TooShort) instead of an
IndexError or a silently short slice.
"""
import hashlib
import struct
from typing import Optional

import base58

from sentinel.errors import DecodeError

PUBKEY_LEN = 32
ZERO_PUBKEY = bytes(PUBKEY_LEN)
DEFAULT_PUBKEY = base58.b58encode(ZERO_PUBKEY).decode("ascii")

_U64_MASK = (1 << 64) - 1


def anchor_discriminator(account_name: str) -> bytes:
    """First 8 bytes of sha256("account:<Name>")."""
    return hashlib.sha256(f"account:{account_name}".encode("utf-8")).digest()[:8]


def encode_pubkey(raw: bytes) -> str:
    return base58.b58encode(bytes(raw)).decode("ascii")


def decode_pubkey(text: str) -> bytes:
    raw = base58.b58decode(text)
    if len(raw) != PUBKEY_LEN:
        raise ValueError(f"invalid public key length={len(raw)}")
    return raw


def i128_from_words(low: int, high: int) -> int:
    """Rebuild a signed 128-bit value from an unsigned low word and a signed high word."""
    return (high << 64) | (low & _U64_MASK)


class AccountReader:
    def __init__(self, data: bytes, address: Optional[str] = None):
        self.data = bytes(data)
        self.address = address

    def __len__(self) -> int:
        return len(self.data)

    def require(self, size: int):
        if len(self.data) < size:
            raise DecodeError.too_short(size, len(self.data), self.address)

    def expect_discriminator(self, expected: bytes, account_name: str):
        self.require(len(expected))
        if self.data[: len(expected)] != expected:
            raise DecodeError.bad_discriminator(account_name, self.address)

    def _unpack(self, fmt: str, offset: int):
        width = struct.calcsize(fmt)
        if offset < 0 or offset + width > len(self.data):
            raise DecodeError.too_short(offset + width, len(self.data), self.address)
        return struct.unpack_from(fmt, self.data, offset)[0]

    def u8(self, offset: int) -> int:
        return self._unpack("<B", offset)

    def u16(self, offset: int) -> int:
        return self._unpack("<H", offset)

    def u32(self, offset: int) -> int:
        return self._unpack("<I", offset)

    def i32(self, offset: int) -> int:
        return self._unpack("<i", offset)

    def u64(self, offset: int) -> int:
        return self._unpack("<Q", offset)

    def i64(self, offset: int) -> int:
        return self._unpack("<q", offset)

    def f64(self, offset: int) -> float:
        return self._unpack("<d", offset)

    def u128(self, offset: int) -> int:
        low = self.u64(offset)
        high = self.u64(offset + 8)
        return (high << 64) | low

    def i128(self, offset: int) -> int:
        low = self.u64(offset)
        high = self.i64(offset + 8)
        return i128_from_words(low, high)

    def raw(self, offset: int, length: int) -> bytes:
        if offset < 0 or offset + length > len(self.data):
            raise DecodeError.too_short(offset + length, len(self.data), self.address)
        return self.data[offset : offset + length]

    def pubkey(self, offset: int) -> str:
        return encode_pubkey(self.raw(offset, PUBKEY_LEN))

    def is_zero_pubkey(self, offset: int) -> bool:
        return self.raw(offset, PUBKEY_LEN) == ZERO_PUBKEY

    def fixed_str(self, offset: int, length: int) -> str:
        return self.raw(offset, length).rstrip(b"\x00").decode("utf-8", errors="replace").strip()
