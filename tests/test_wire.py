import struct

import pytest

from hregion.wire import (
    WireError,
    consume_bytes,
    decode_varint,
    encode_field,
    encode_varint,
    iter_fields,
)

HELLO = (
    b"\n\x06\n\x04root\x12\rClientService\x1a+"
    b"org.apache.hadoop.hbase.codec.KeyValueCodec"
)


@pytest.mark.parametrize("value", [0, 1, 127, 128, 300, 2**32 - 1, 2**63, 2**64 - 1])
def test_varint_round_trip(value):
    encoded = encode_varint(value)
    assert decode_varint(encoded, 0) == (value, len(encoded))


def test_varint_single_byte_below_128():
    assert encode_varint(127) == bytes([127])
    assert len(encode_varint(128)) == 2


def test_varint_known_encoding():
    assert encode_varint(300) == b"\xac\x02"


def test_negative_varint_uses_ten_bytes():
    encoded = encode_varint(-1)
    assert len(encoded) == 10
    assert decode_varint(encoded, 0)[0] == 2**64 - 1


def test_varint_too_large():
    with pytest.raises(ValueError):
        encode_varint(2**64)


def test_decode_varint_at_offset():
    data = b"xy" + encode_varint(300) + b"z"
    value, pos = decode_varint(data, 2)
    assert value == 300
    assert data[pos:] == b"z"


def test_truncated_varint():
    with pytest.raises(WireError):
        decode_varint(b"\x80\x80", 0)


def test_overflowing_varint():
    with pytest.raises(WireError):
        decode_varint(b"\xff" * 10 + b"\x01", 0)


def test_consume_bytes_round_trip():
    data = encode_varint(5) + b"hello" + b"rest"
    value, pos = consume_bytes(data, 0)
    assert value == b"hello"
    assert data[pos:] == b"rest"


def test_consume_bytes_truncated():
    with pytest.raises(WireError):
        consume_bytes(encode_varint(10) + b"abc", 0)


def test_encode_field_strings():
    assert encode_field(1, b"root") == b"\n\x04root"
    assert encode_field(2, "ClientService") == b"\x12\rClientService"


def test_encode_field_int_round_trip():
    assert list(iter_fields(encode_field(3, 42))) == [(3, 0, 42)]
    assert list(iter_fields(encode_field(4, True))) == [(4, 0, 1)]


def test_encode_field_rejects_bad_input():
    with pytest.raises(ValueError):
        encode_field(0, 1)
    with pytest.raises(TypeError):
        encode_field(1, 1.5)


def test_iter_fields_hello():
    fields = list(iter_fields(HELLO))
    assert fields == [
        (1, 2, b"\n\x04root"),
        (2, 2, b"ClientService"),
        (3, 2, b"org.apache.hadoop.hbase.codec.KeyValueCodec"),
    ]
    assert list(iter_fields(fields[0][2])) == [(1, 2, b"root")]


def test_iter_fields_fixed_widths():
    data = bytes([(1 << 3) | 1]) + struct.pack("<Q", 12345)
    data += bytes([(2 << 3) | 5]) + struct.pack("<I", 678)
    assert list(iter_fields(data)) == [(1, 1, 12345), (2, 5, 678)]


def test_iter_fields_errors():
    with pytest.raises(WireError):
        list(iter_fields(bytes([(1 << 3) | 3])))
    with pytest.raises(WireError):
        list(iter_fields(b"\x00\x01"))
    with pytest.raises(WireError):
        list(iter_fields(bytes([(1 << 3) | 5]) + b"\x00"))