"""Protocol Buffers wire-format encoding and decoding primitives."""

from __future__ import annotations

import enum
import struct
from typing import Iterator, NamedTuple, Union

from .utils import U64_MASK

MAX_FIELD_NUMBER = (1 << 29) - 1
MAX_VARINT_LEN = 10


class WireType(enum.IntEnum):
    VARINT = 0
    FIXED64 = 1
    LEN = 2
    FIXED32 = 5


class Field(NamedTuple):
    """One decoded field: its number, wire type and raw value."""

    number: int
    wire_type: WireType
    value: Union[int, bytes]


def encode_varint(value: int) -> bytes:
    """Encode an integer as a base-128 varint; negatives use 64-bit two's complement."""
    value &= U64_MASK
    out = bytearray()
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def decode_varint(data: bytes, pos: int = 0) -> tuple[int, int]:
    """Decode a varint at ``pos``; return its value and the position after it."""
    result = 0
    shift = 0
    for _ in range(MAX_VARINT_LEN):
        if pos >= len(data):
            raise ValueError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result & U64_MASK, pos
        shift += 7
    raise ValueError("varint is longer than 10 bytes")


def _take(data: bytes, pos: int, size: int) -> bytes:
    if pos + size > len(data):
        raise ValueError("truncated field value")
    return bytes(data[pos : pos + size])


def iter_fields(data: bytes) -> Iterator[Field]:
    """Yield the top-level fields of an encoded message in order."""
    pos = 0
    while pos < len(data):
        key, pos = decode_varint(data, pos)
        number, raw_type = key >> 3, key & 0x7
        if number == 0:
            raise ValueError("field number 0 is invalid")
        try:
            wire_type = WireType(raw_type)
        except ValueError:
            raise ValueError(f"unsupported wire type {raw_type}") from None

        value: Union[int, bytes]
        if wire_type == WireType.VARINT:
            value, pos = decode_varint(data, pos)
        elif wire_type == WireType.FIXED64:
            value = int.from_bytes(_take(data, pos, 8), "little")
            pos += 8
        elif wire_type == WireType.FIXED32:
            value = int.from_bytes(_take(data, pos, 4), "little")
            pos += 4
        else:
            length, pos = decode_varint(data, pos)
            value = _take(data, pos, length)
            pos += length
        yield Field(number, wire_type, value)


class MessageWriter:
    """Accumulates the encoded fields of one message."""

    def __init__(self) -> None:
        self._buf = bytearray()

    def _tag(self, field: int, wire_type: WireType) -> None:
        if not 1 <= field <= MAX_FIELD_NUMBER:
            raise ValueError(f"invalid field number {field}")
        self._buf += encode_varint((field << 3) | wire_type)

    def varint(self, field: int, value: int) -> "MessageWriter":
        self._tag(field, WireType.VARINT)
        self._buf += encode_varint(value)
        return self

    def boolean(self, field: int, value: bool) -> "MessageWriter":
        return self.varint(field, 1 if value else 0)

    def fixed64(self, field: int, value: int) -> "MessageWriter":
        self._tag(field, WireType.FIXED64)
        self._buf += struct.pack("<Q", value & U64_MASK)
        return self

    def double(self, field: int, value: float) -> "MessageWriter":
        self._tag(field, WireType.FIXED64)
        self._buf += struct.pack("<d", value)
        return self

    def bytes_field(self, field: int, data: bytes) -> "MessageWriter":
        self._tag(field, WireType.LEN)
        self._buf += encode_varint(len(data))
        self._buf += data
        return self

    def string(self, field: int, s: str) -> "MessageWriter":
        return self.bytes_field(field, s.encode("utf-8", "surrogateescape"))

    def message(self, field: int, payload: Union[bytes, "MessageWriter"]) -> "MessageWriter":
        if isinstance(payload, MessageWriter):
            payload = payload.to_bytes()
        return self.bytes_field(field, payload)

    def to_bytes(self) -> bytes:
        return bytes(self._buf)

    def __len__(self) -> int:
        return len(self._buf)