"""Region descriptions and the ordering of region names."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Tuple

from .wire import LEN, VARINT, WireError, iter_fields

_DEFAULT_NAMESPACE = b"default"
_PBUF_MAGIC = b"PBUF"
_COMMA = ord(",")

_SIMPLE_ESCAPES = {
    "\a": "\\a",
    "\b": "\\b",
    "\f": "\\f",
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
    "\v": "\\v",
}


def _quote(data: Optional[bytes], ascii_only: bool = False) -> str:
    """Quote bytes as a double-quoted string with escapes for unprintable runes."""
    text = bytes(data or b"").decode("utf-8", errors="surrogateescape")
    out = ['"']
    for ch in text:
        code = ord(ch)
        if 0xDC80 <= code <= 0xDCFF:
            out.append(f"\\x{code - 0xDC00:02x}")
        elif ch in ('"', "\\"):
            out.append("\\" + ch)
        elif ch.isprintable() and (not ascii_only or code < 0x80):
            out.append(ch)
        elif ch in _SIMPLE_ESCAPES:
            out.append(_SIMPLE_ESCAPES[ch])
        elif code < 0x20 or code == 0x7F:
            out.append(f"\\x{code:02x}")
        elif code < 0x10000:
            out.append(f"\\u{code:04x}")
        else:
            out.append(f"\\U{code:08x}")
    out.append('"')
    return "".join(out)


@dataclass
class Cell:
    """A single key-value cell as stored in a table."""

    row: bytes = b""
    family: bytes = b""
    qualifier: bytes = b""
    value: bytes = b""
    timestamp: Optional[int] = None
    cell_type: Optional[int] = None


class OfflineRegionError(Exception):
    """Raised when the region described in meta is offline."""

    def __init__(self, name: str) -> None:
        super().__init__(f"region {name} is offline")
        self.name = name


class RegionInfo:
    """Describes a region: its table, name, key range and availability."""

    def __init__(
        self,
        id: int,
        namespace: Optional[bytes],
        table: Optional[bytes],
        name: Optional[bytes],
        start_key: Optional[bytes],
        stop_key: Optional[bytes],
    ) -> None:
        self.id = id
        self.namespace = bytes(namespace or b"")
        self.table = bytes(table or b"")
        self.name = bytes(name or b"")
        self.start_key = bytes(start_key or b"")
        self.stop_key = bytes(stop_key or b"")
        self.client: Any = None
        self._lock = threading.Lock()
        self._available: Optional[threading.Event] = None
        self._dead = threading.Event()

    def is_unavailable(self) -> bool:
        """Whether the region has been marked unavailable."""
        with self._lock:
            return self._available is not None

    def availability_event(self) -> Optional[threading.Event]:
        """Event set once the region is available again, or None if it is available."""
        with self._lock:
            return self._available

    def mark_unavailable(self) -> bool:
        """Mark the region unavailable; True if it was available before."""
        with self._lock:
            if self._available is None:
                self._available = threading.Event()
                return True
            return False

    def mark_available(self) -> None:
        """Mark the region available again and wake everyone waiting on it."""
        with self._lock:
            event = self._available
            if event is None:
                raise RuntimeError("region is not marked unavailable")
            self._available = None
            event.set()

    def mark_dead(self) -> None:
        """Mark the region as no longer useful."""
        self._dead.set()

    def is_dead(self) -> bool:
        """Whether the region has been marked dead."""
        return self._dead.is_set()

    def to_json(self) -> str:
        """A JSON description of the region's state."""
        client = self.client
        state = {
            "Id": self.id,
            "Namespace": _quote(self.namespace, ascii_only=True),
            "Table": _quote(self.table, ascii_only=True),
            "Name": _quote(self.name, ascii_only=True),
            "StartKey": _quote(self.start_key, ascii_only=True),
            "StopKey": _quote(self.stop_key, ascii_only=True),
            "Err": "context canceled" if self.is_dead() else "<nil>",
            "Client": str(client) if client is not None else "",
            "Available": not self.is_unavailable(),
        }
        return json.dumps(state)

    def __str__(self) -> str:
        return (
            f"RegionInfo{{Name: {_quote(self.name)}, ID: {self.id}, "
            f"Namespace: {_quote(self.namespace)}, Table: {_quote(self.table)}, "
            f"StartKey: {_quote(self.start_key)}, StopKey: {_quote(self.stop_key)}}}"
        )

    __repr__ = __str__


def _parse_table_name(data: bytes) -> Tuple[bytes, bytes]:
    namespace: Optional[bytes] = None
    qualifier: Optional[bytes] = None
    for number, wire_type, value in iter_fields(data):
        if wire_type != LEN:
            continue
        if number == 1:
            namespace = value
        elif number == 2:
            qualifier = value
    if namespace is None or qualifier is None:
        raise WireError("required field of table name not set")
    return namespace, qualifier


def info_from_cell(cell: Cell) -> RegionInfo:
    """Build a RegionInfo from a 'regioninfo' cell of the meta table."""
    value = bytes(cell.value or b"")
    if not value:
        raise ValueError(f"empty value in {cell!r}")
    if value[0] != ord("P"):
        raise ValueError(f"unsupported region info version {value[0]} in {cell!r}")
    if value[:4] != _PBUF_MAGIC:
        raise ValueError(f"invalid magic number in {cell!r}")

    region_id: Optional[int] = None
    table_name: Optional[Tuple[bytes, bytes]] = None
    start_key = b""
    end_key = b""
    offline = False
    try:
        for number, wire_type, field in iter_fields(value[4:]):
            if number == 1 and wire_type == VARINT:
                region_id = field
            elif number == 2 and wire_type == LEN:
                table_name = _parse_table_name(field)
            elif number == 3 and wire_type == LEN:
                start_key = field
            elif number == 4 and wire_type == LEN:
                end_key = field
            elif number == 5 and wire_type == VARINT:
                offline = bool(field)
        if region_id is None or table_name is None:
            raise WireError("required field of region info not set")
    except WireError as e:
        raise ValueError(f"failed to decode {cell!r}: {e}") from e

    if offline:
        raise OfflineRegionError(bytes(cell.row or b"").decode("utf-8", errors="replace"))

    namespace, qualifier = table_name
    if namespace == _DEFAULT_NAMESPACE:
        namespace = b""
    return RegionInfo(region_id, namespace, qualifier, cell.row, start_key, end_key)


def parse_region_info(cells: Iterable[Cell]) -> Tuple[RegionInfo, str]:
    """Parse a meta row into its region and the host:port that serves it."""
    cells = list(cells)
    region: Optional[RegionInfo] = None
    addr = ""
    for cell in cells:
        if cell.qualifier == b"regioninfo":
            region = info_from_cell(cell)
        elif cell.qualifier == b"server":
            if cell.value:
                addr = bytes(cell.value).decode("utf-8", errors="replace")
    if region is None:
        raise ValueError(f"meta seems to be broken, there was no region in {cells!r}")
    if not addr:
        raise ValueError(f"meta doesn't have a server location in {cells!r}")
    return region, addr


def _find_comma_from_end(data: bytes, offset: int) -> int:
    index = data.rfind(b",", offset + 1)
    if index == -1:
        raise ValueError(f"no comma found in {_quote(data)} after offset {offset}")
    return index


def _first_difference(a: bytes, b: bytes) -> Optional[int]:
    for ai, bi in zip(a, b):
        if ai != bi:
            return ai - bi
    return None


def compare(a: bytes, b: bytes) -> int:
    """Order region names of the form table,start_key,id so start keys sort first."""
    length = min(len(a), len(b))
    end = length
    for pos, (ai, bi) in enumerate(zip(a, b)):
        if ai != bi:
            if ai == _COMMA:
                return -1001
            if bi == _COMMA:
                return 1001
            return ai - bi
        if ai == _COMMA:
            end = pos
            break

    a_comma = _find_comma_from_end(a, end)
    b_comma = _find_comma_from_end(b, end)
    start = end + 1
    first_comma = min(a_comma, b_comma)

    diff = _first_difference(a[start:first_comma], b[start:first_comma])
    if diff is not None:
        return diff
    if a_comma < b_comma:
        return -1002
    if b_comma < a_comma:
        return 1002

    diff = _first_difference(a[first_comma:length], b[first_comma:length])
    if diff is not None:
        return diff
    return len(a) - len(b)