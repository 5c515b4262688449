"""Hadoop block-stream framing of compressed cellblocks."""

from __future__ import annotations

import struct
from typing import Iterable, Iterator, Optional, Protocol, Tuple, Union, runtime_checkable

Buffer = Union[bytes, bytearray, memoryview]


@runtime_checkable
class Codec(Protocol):
    """A compression codec usable for cellblocks."""

    def encode(self, data: bytes) -> bytes:
        """Compress one chunk."""
        ...

    def decode(self, data: bytes) -> bytes:
        """Decompress one chunk."""
        ...

    def chunk_len(self) -> int:
        """Largest uncompressed chunk the codec handles at once."""
        ...

    def cell_block_compressor_class(self) -> str:
        """Name of the server-side compressor class."""
        ...


def read_n(data: Buffer, n: int) -> Tuple[Buffer, Buffer]:
    """Split off the first n bytes; raise ValueError if there are fewer."""
    if len(data) < n:
        raise ValueError(f"short read: want {n} bytes, got {len(data)}")
    return data[:n], data[n:]


def read_uint32(data: Buffer) -> Tuple[int, Buffer]:
    """Read a big-endian 32-bit unsigned integer and return it with the rest."""
    head, tail = read_n(data, 4)
    return int.from_bytes(head, "big"), tail


def _chunks(data: bytes, size: int) -> Iterator[bytes]:
    for start in range(0, len(data), size):
        yield data[start:start + size]


class Compressor:
    """Compresses and decompresses cellblocks with a codec."""

    def __init__(self, codec: Codec) -> None:
        self.codec = codec

    def cell_block_compressor_class(self) -> str:
        """Name of the compressor class announced to the server."""
        return self.codec.cell_block_compressor_class()

    def compress_cellblocks(
        self, cellblocks: Optional[Iterable[Buffer]], uncompressed_len: int
    ) -> bytes:
        """Frame cellblocks as one block of length-prefixed compressed chunks."""
        data = b"".join(bytes(block) for block in (cellblocks or ()))
        out = bytearray(struct.pack(">I", uncompressed_len))
        size = min(uncompressed_len, self.codec.chunk_len())
        if size > 0:
            for chunk in _chunks(data, size):
                encoded = self.codec.encode(chunk)
                out += struct.pack(">I", len(encoded))
                out += encoded
        return bytes(out)

    def decompress_cellblocks(self, data: Optional[Buffer]) -> bytes:
        """Decode a sequence of blocks, each a length followed by compressed chunks."""
        rest: Buffer = memoryview(bytes(data or b""))
        out = bytearray()
        while len(rest) > 0:
            try:
                block_len, rest = read_uint32(rest)
            except ValueError as e:
                raise ValueError(f"failed to read uncompressed block length: {e}") from e

            so_far = 0
            while so_far < block_len:
                try:
                    chunk_len, rest = read_uint32(rest)
                except ValueError as e:
                    raise ValueError(
                        f"failed to read compressed chunk block length: {e}"
                    ) from e
                try:
                    compressed, rest = read_n(rest, chunk_len)
                except ValueError as e:
                    raise ValueError(f"failed to read compressed chunk: {e}") from e
                try:
                    decoded = self.codec.decode(bytes(compressed))
                except Exception as e:
                    raise ValueError(f"failed to decode compressed chunk: {e}") from e
                out += decoded
                so_far += len(decoded)

            if so_far > block_len:
                raise ValueError(
                    f"uncompressed more than expected: expected {block_len}, "
                    f"got {so_far} so far"
                )
        return bytes(out)