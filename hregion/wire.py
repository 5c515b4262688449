"""Minimal protobuf wire-format encoding and decoding helpers."""

from __future__ import annotations

from typing import Iterator, Tuple, Union

VARINT = 0
I64 = 1
LEN = 2
I32 = 5

_MAX_UINT64 = (1 << 64) - 1
_MAX_FIELD_NUMBER = (1 << 29) - 1

Buffer = Union[bytes, bytearray, memoryview]


class WireError(ValueError):
    """Raised when protobuf wire data cannot be decoded."""


def encode_varint(value: int) -> bytes:
    """Encode an integer as a base-128 varint; negatives use 64-bit two's complement."""
    if value < 0:
        value &= _MAX_UINT64
    if value > _MAX_UINT64:
        raise ValueError(f"value {value} does not fit in 64 bits")
    out = bytearray()
    while value > 0x7F:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def decode_varint(data: Buffer, offset: int = 0) -> Tuple[int, int]:
    """Decode a varint at offset; return the value and the offset after it."""
    result = 0
    shift = 0
    pos = offset
    while True:
        if pos >= len(data):
            raise WireError("truncated varint")
        byte = data[pos]
        pos += 1
        if shift == 63 and byte > 1:
            raise WireError("varint overflows 64 bits")
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7


def consume_bytes(data: Buffer, offset: int = 0) -> Tuple[bytes, int]:
    """Read a varint-length-prefixed byte string; return it and the next offset."""
    length, pos = decode_varint(data, offset)
    end = pos + length
    if end > len(data):
        raise WireError(
            f"truncated length-delimited field: want {length} bytes, got {len(data) - pos}"
        )
    return bytes(data[pos:end]), end


def _tag(number: int, wire_type: int) -> bytes:
    if not 1 <= number <= _MAX_FIELD_NUMBER:
        raise ValueError(f"invalid field number {number}")
    return encode_varint((number << 3) | wire_type)


def encode_field(number: int, value: Union[int, bool, bytes, bytearray, memoryview, str]) -> bytes:
    """Encode one field: integers as varints, strings and bytes length-delimited."""
    if isinstance(value, (bool, int)):
        return _tag(number, VARINT) + encode_varint(int(value))
    if isinstance(value, str):
        value = value.encode("utf-8")
    if isinstance(value, (bytes, bytearray, memoryview)):
        payload = bytes(value)
        return _tag(number, LEN) + encode_varint(len(payload)) + payload
    raise TypeError(f"cannot encode value of type {type(value).__name__}")


def iter_fields(data: Buffer) -> Iterator[Tuple[int, int, Union[int, bytes]]]:
    """Yield (field number, wire type, value) for each field in a message."""
    pos = 0
    while pos < len(data):
        key, pos = decode_varint(data, pos)
        number, wire_type = key >> 3, key & 0x7
        if number == 0:
            raise WireError("invalid field number 0")
        if wire_type == VARINT:
            value, pos = decode_varint(data, pos)
        elif wire_type == LEN:
            value, pos = consume_bytes(data, pos)
        elif wire_type in (I64, I32):
            width = 8 if wire_type == I64 else 4
            end = pos + width
            if end > len(data):
                raise WireError("truncated fixed-width field")
            value = int.from_bytes(data[pos:end], "little")
            pos = end
        else:
            raise WireError(f"unsupported wire type {wire_type}")
        yield number, wire_type, value