"""
Response header serialization for the idempotency ledger.

Layout (all integers little-endian u64):

    count
    repeated count times:
        name_len, name (UTF-8)
        value_len, value (raw bytes)

Header values are kept as raw bytes since HTTP does not guarantee UTF-8
values. Decoding rejects truncated blobs and trailing garbage.
"""

from __future__ import annotations

import struct
from collections.abc import Iterable

from src.components.idempotency.models import HeaderCodecError, HeaderPair

_U64 = struct.Struct("<Q")


def encode_headers(headers: Iterable[HeaderPair]) -> bytes:
    """Serialize ordered header pairs."""
    pairs = list(headers)
    parts = [_U64.pack(len(pairs))]
    for name, value in pairs:
        raw_name = name.encode("utf-8")
        parts.append(_U64.pack(len(raw_name)))
        parts.append(raw_name)
        parts.append(_U64.pack(len(value)))
        parts.append(bytes(value))
    return b"".join(parts)


class _Reader:
    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    def u64(self) -> int:
        return _U64.unpack(self.take(_U64.size))[0]

    def take(self, size: int) -> bytes:
        end = self._pos + size
        if end > len(self._data):
            raise HeaderCodecError(
                f"truncated at offset {self._pos}, wanted {size} bytes"
            )
        chunk = self._data[self._pos : end]
        self._pos = end
        return chunk

    @property
    def remaining(self) -> int:
        return len(self._data) - self._pos


def decode_headers(data: bytes) -> list[HeaderPair]:
    """
    Deserialize header pairs written by encode_headers.

    Raises:
        HeaderCodecError: blob is truncated, has trailing bytes or a
            header name that is not UTF-8
    """
    reader = _Reader(data)
    count = reader.u64()
    # Each pair needs at least two length prefixes
    if count * 2 * _U64.size > reader.remaining:
        raise HeaderCodecError(f"pair count {count} exceeds blob size")

    headers: list[HeaderPair] = []
    for _ in range(count):
        raw_name = reader.take(reader.u64())
        try:
            name = raw_name.decode("utf-8")
        except UnicodeDecodeError as e:
            raise HeaderCodecError("header name is not UTF-8") from e
        value = reader.take(reader.u64())
        headers.append((name, value))

    if reader.remaining:
        raise HeaderCodecError(f"{reader.remaining} trailing bytes")
    return headers
