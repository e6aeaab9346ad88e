"""
Minimal Borsh writer.

Borsh is the deterministic little-endian encoding NEAR hashes and signs.
Only the shapes used by account-creation transactions are covered:
fixed-width unsigned integers, length-prefixed strings, fixed byte
arrays and length-prefixed sequences.
"""

from __future__ import annotations

import struct

U64_MAX = 2 ** 64 - 1
U128_MAX = 2 ** 128 - 1


class BorshWriter:
    """Append-only buffer; every ``write_*`` returns ``self`` for chaining."""

    __slots__ = ("_buf",)

    def __init__(self):
        self._buf = bytearray()

    def write_u8(self, value: int) -> BorshWriter:
        self._buf += struct.pack("<B", value)
        return self

    def write_u32(self, value: int) -> BorshWriter:
        self._buf += struct.pack("<I", value)
        return self

    def write_u64(self, value: int) -> BorshWriter:
        if not 0 <= value <= U64_MAX:
            raise ValueError(f"u64 out of range: {value}")
        self._buf += struct.pack("<Q", value)
        return self

    def write_u128(self, value: int) -> BorshWriter:
        if not 0 <= value <= U128_MAX:
            raise ValueError(f"u128 out of range: {value}")
        self._buf += value.to_bytes(16, "little")
        return self

    def write_fixed(self, data: bytes) -> BorshWriter:
        self._buf += data
        return self

    def write_string(self, value: str) -> BorshWriter:
        raw = value.encode("utf-8")
        self.write_u32(len(raw))
        self._buf += raw
        return self

    def write_len(self, count: int) -> BorshWriter:
        """Length prefix of a ``Vec<T>``; the caller writes the items."""
        return self.write_u32(count)

    def getvalue(self) -> bytes:
        return bytes(self._buf)
