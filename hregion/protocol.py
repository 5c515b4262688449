"""Framing of the connection preamble, request frames and response headers."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Optional, Tuple, Union

from .errors import ServerError
from .wire import LEN, VARINT, WireError, consume_bytes, encode_field, encode_varint, iter_fields

Buffer = Union[bytes, bytearray, memoryview]

_PREAMBLE = b"HBas\x00\x50"  # \x50 selects simple authentication
_CODEC_CLASS = "org.apache.hadoop.hbase.codec.KeyValueCodec"


@dataclass
class ExceptionResponse:
    """An exception raised on the server while handling a call."""

    exception_class_name: str = ""
    stack_trace: str = ""
    hostname: Optional[str] = None
    port: Optional[int] = None
    do_not_retry: bool = False


@dataclass
class ResponseHeader:
    """Header preceding every response from a region server."""

    call_id: Optional[int] = None
    exception: Optional[ExceptionResponse] = None
    cell_block_length: int = 0


def encode_hello(
    effective_user: str, service_name: str, compressor_class: Optional[str] = None
) -> bytes:
    """Build the message that opens a new connection."""
    user_info = encode_field(1, effective_user)
    header = (
        encode_field(1, user_info)
        + encode_field(2, service_name)
        + encode_field(3, _CODEC_CLASS)
    )
    if compressor_class is not None:
        header += encode_field(4, compressor_class)
    return _PREAMBLE + struct.pack(">I", len(header)) + header


def marshal_request(
    method_name: str,
    call_id: int,
    request: Optional[Buffer],
    cellblocks_len: int = 0,
    priority: int = 0,
) -> bytes:
    """Frame a serialized request: total length, header and request, both length-prefixed.

    The total length includes the cellblocks that are sent after this frame.
    """
    if request is None:
        raise ValueError("failed to marshal request: proto: Marshal called with nil")
    header = (
        encode_field(1, call_id)
        + encode_field(3, method_name)
        + encode_field(4, True)
    )
    if cellblocks_len > 0:
        header += encode_field(5, encode_field(1, cellblocks_len))
    if priority > 0:
        header += encode_field(6, priority)
    body = bytes(request)
    payload = encode_varint(len(header)) + header + encode_varint(len(body)) + body
    return struct.pack(">I", len(payload) + cellblocks_len) + payload


def _text(value: object) -> str:
    return bytes(value).decode("utf-8", errors="replace")  # type: ignore[arg-type]


def _parse_exception(data: bytes) -> ExceptionResponse:
    exc = ExceptionResponse()
    for number, wire_type, value in iter_fields(data):
        if number == 1 and wire_type == LEN:
            exc.exception_class_name = _text(value)
        elif number == 2 and wire_type == LEN:
            exc.stack_trace = _text(value)
        elif number == 3 and wire_type == LEN:
            exc.hostname = _text(value)
        elif number == 4 and wire_type == VARINT:
            exc.port = int(value)
        elif number == 5 and wire_type == VARINT:
            exc.do_not_retry = bool(value)
    return exc


def parse_response_header(data: Buffer) -> Tuple[ResponseHeader, int]:
    """Decode the length-prefixed header of a response body.

    Returns the header and the offset of the response message that follows.
    """
    try:
        raw, offset = consume_bytes(data, 0)
        header = ResponseHeader()
        for number, wire_type, value in iter_fields(raw):
            if number == 1 and wire_type == VARINT:
                header.call_id = int(value)
            elif number == 2 and wire_type == LEN:
                header.exception = _parse_exception(value)
            elif number == 3 and wire_type == LEN:
                for n, wt, v in iter_fields(value):
                    if n == 1 and wt == VARINT:
                        header.cell_block_length = int(v)
    except WireError as e:
        raise ServerError(f"failed to decode the response header: {e}") from e
    return header, offset