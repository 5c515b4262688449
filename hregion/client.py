"""Connection to a region server: sending, batching and receiving RPCs."""

from __future__ import annotations

import enum
import json
import logging
import queue
import socket
import threading
import time
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .compressor import Codec, Compressor
from .errors import RetryableError, ServerError, exception_to_error
from .multi import (
    GetResponse,
    MultiRequest,
    MultiResponse,
    Multi,
    MutateResponse,
    NameBytesPair,
    RegionActionResult,
    ResultOrException,
    RPCResult,
)
from .protocol import encode_hello, marshal_request, parse_response_header
from .wire import LEN, VARINT, WireError, consume_bytes, encode_field, iter_fields

logger = logging.getLogger(__name__)

DEFAULT_LOOKUP_TIMEOUT = 30.0
DEFAULT_READ_TIMEOUT = 30.0

CLIENT_CLOSED = ServerError("client is closed")
MISSING_CALL_ID = ServerError("got a response with a nonsensical call ID")

_REGION_NAME = 1
_POLL = 0.05
_STOPPED = object()


class ClientType(str, enum.Enum):
    """The service a client talks to."""

    REGION = "ClientService"
    MASTER = "MasterService"


@dataclass
class Metrics:
    """Counters and observations about batching and request sizes."""

    flush_reasons: Counter = field(default_factory=Counter)
    flush_sizes: Dict[str, List[int]] = field(default_factory=lambda: defaultdict(list))
    rpc_sizes: Dict[str, List[int]] = field(default_factory=lambda: defaultdict(list))

    def observe_flush(self, reason: str, addr: str, size: int) -> None:
        self.flush_reasons[reason] += 1
        self.flush_sizes[addr].append(size)

    def observe_rpc_size(self, addr: str, size: int) -> None:
        self.rpc_sizes[addr].append(size)


DEFAULT_METRICS = Metrics()


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if hasattr(value, "serialize"):
        return bytes(value.serialize())
    raise TypeError(f"cannot serialize {type(value).__name__}")


def _encode_request(request: Any) -> Optional[bytes]:
    if request is None:
        return None
    if isinstance(request, MultiRequest):
        out = bytearray()
        for ra in request.region_actions:
            spec = encode_field(1, _REGION_NAME) + encode_field(2, ra.region)
            body = encode_field(1, spec)
            for action in ra.actions:
                a = encode_field(1, action.index)
                if action.mutation is not None:
                    a += encode_field(2, _to_bytes(action.mutation))
                if action.get is not None:
                    a += encode_field(3, _to_bytes(action.get))
                body += encode_field(3, a)
            out += encode_field(1, body)
        return bytes(out)
    return _to_bytes(request)


def _parse_pair(data: bytes) -> NameBytesPair:
    pair = NameBytesPair()
    for n, wt, v in iter_fields(data):
        if n == 1 and wt == LEN:
            pair.name = v.decode("utf-8", "replace")
        elif n == 2 and wt == LEN:
            pair.value = v
    return pair


def _parse_multi(response: MultiResponse, data: bytes) -> None:
    for n, wt, v in iter_fields(data):
        if n != 1 or wt != LEN:
            continue
        rar = RegionActionResult()
        for n2, wt2, v2 in iter_fields(v):
            if n2 == 1 and wt2 == LEN:
                roe = ResultOrException()
                for n3, wt3, v3 in iter_fields(v2):
                    if n3 == 1 and wt3 == VARINT:
                        roe.index = v3
                    elif n3 == 2 and wt3 == LEN:
                        roe.result = v3
                    elif n3 == 3 and wt3 == LEN:
                        roe.exception = _parse_pair(v3)
                rar.result_or_exception.append(roe)
            elif n2 == 2 and wt2 == LEN:
                rar.exception = _parse_pair(v2)
        response.region_action_result.append(rar)


def _decode_response(response: Any, data: bytes) -> None:
    if isinstance(response, MultiResponse):
        _parse_multi(response, data)
    elif isinstance(response, (GetResponse, MutateResponse)):
        for n, wt, v in iter_fields(data):
            if n == 1 and wt == LEN:
                response.result = v
    elif hasattr(response, "parse_from"):
        response.parse_from(data)
    else:
        raise TypeError(f"cannot decode into {type(response).__name__}")


def _return_result(call: Any, msg: Any, err: Optional[BaseException]) -> None:
    if isinstance(call, Multi):
        call.return_results(msg, err)
    else:
        call.result_queue.put(RPCResult(msg=msg, error=err))


def _read_exact(reader: Any, n: int) -> bytes:
    data = bytearray()
    while len(data) < n:
        chunk = reader.read(n - len(data))
        if not chunk:
            raise EOFError(f"unexpected EOF: want {n} bytes, got {len(data)}")
        data += chunk
    return bytes(data)


def _default_dialer(addr: str, timeout: Optional[float]) -> socket.socket:
    host, _, port = addr.rpartition(":")
    return socket.create_connection((host, int(port)), timeout=timeout)


def _can_batch(rpc: Any) -> bool:
    check = getattr(rpc, "batchable", None)
    return bool(check()) if callable(check) else False


class RegionClient:
    """Manages one connection to a region server."""

    def __init__(
        self,
        addr: str,
        ctype: ClientType = ClientType.REGION,
        queue_size: int = 100,
        flush_interval: float = 0.02,
        effective_user: str = "root",
        read_timeout: float = DEFAULT_READ_TIMEOUT,
        codec: Optional[Codec] = None,
        dialer: Optional[Callable[[str, Optional[float]], Any]] = None,
    ) -> None:
        self.addr = addr
        self.ctype = ClientType(ctype)
        self.queue_size = queue_size
        self.flush_interval = flush_interval
        self.effective_user = effective_user
        self.read_timeout = read_timeout
        self.compressor = Compressor(codec) if codec is not None else None
        self.dialer = dialer or _default_dialer
        self.metrics = DEFAULT_METRICS
        self.conn: Any = None
        self._rpcs: "queue.Queue[List[Any]]" = queue.Queue()
        self._done = threading.Event()
        self._fail_lock = threading.Lock()
        self._dial_lock = threading.Lock()
        self._dialed = False
        self._sent: Dict[int, Any] = {}
        self._sent_lock = threading.Lock()
        self._in_flight = 0
        self._in_flight_lock = threading.Lock()
        self._id = 0
        self._id_lock = threading.Lock()

    def __str__(self) -> str:
        return f"RegionClient{{Addr: {self.addr}}}"

    @property
    def closed(self) -> bool:
        return self._done.is_set()

    @property
    def in_flight(self) -> int:
        with self._in_flight_lock:
            return self._in_flight

    @property
    def pending(self) -> int:
        """Number of sent RPCs awaiting a response."""
        with self._sent_lock:
            return len(self._sent)

    def dial(self, timeout: Optional[float] = None) -> None:
        """Connect, say hello and start the worker threads; once only."""
        with self._dial_lock:
            if not self._dialed:
                self._dialed = True
                self._connect(timeout)
        if self._done.is_set():
            raise CLIENT_CLOSED

    def _connect(self, timeout: Optional[float]) -> None:
        try:
            self.conn = self.dialer(self.addr, timeout)
        except OSError as e:
            self._fail(ServerError(f"failed to dial RegionServer: {e}"))
            return
        try:
            if hasattr(self.conn, "settimeout"):
                self.conn.settimeout(timeout)
            self.send_hello()
            if hasattr(self.conn, "settimeout"):
                self.conn.settimeout(None)
        except OSError as e:
            self._fail(ServerError(f"failed to send hello to RegionServer: {e}"))
            return
        if self.ctype is ClientType.REGION:
            threading.Thread(target=self.process_rpcs, daemon=True).start()
        threading.Thread(target=self.receive_rpcs, daemon=True).start()

    def send_hello(self) -> None:
        """Send the preamble that opens a connection."""
        compressor_class = (
            self.compressor.cell_block_compressor_class() if self.compressor else None
        )
        self.conn.sendall(encode_hello(self.effective_user, self.ctype.value, compressor_class))

    def queue_rpc(self, rpc: Any) -> None:
        """Send an RPC, batching it when possible; results go to its result queue."""
        if self.queue_size > 1 and _can_batch(rpc):
            self.queue_batch([rpc])
            return
        if self._done.is_set():
            _return_result(rpc, None, CLIENT_CLOSED)
        elif rpc.cancelled():
            return
        else:
            err = self._try_send(rpc)
            if err is not None:
                _return_result(rpc, None, err)

    def queue_batch(self, rpcs: Sequence[Any]) -> None:
        """Hand calls to the batching thread."""
        if self._done.is_set():
            for call in rpcs:
                call.result_queue.put(RPCResult(error=CLIENT_CLOSED))
            return
        self._rpcs.put(list(rpcs))
        if self._done.is_set():
            self._drain_queue()

    def close(self) -> None:
        """Close the connection, failing all queued and outstanding RPCs."""
        self._fail(CLIENT_CLOSED)

    def _fail(self, err: BaseException) -> None:
        with self._fail_lock:
            if self._done.is_set():
                return
            if err is not CLIENT_CLOSED:
                logger.error("error occurred, closing region client %s: %s", self, err)
            self._done.set()
        if self.conn is not None:
            try:
                self.conn.close()
            except OSError:
                pass
        with self._sent_lock:
            sent, self._sent = self._sent, {}
        logger.debug("failing %d awaiting RPCs of %s", len(sent), self)
        for rpc in sent.values():
            _return_result(rpc, None, CLIENT_CLOSED)
        if not self._dialed or self.ctype is not ClientType.REGION:
            self._drain_queue()

    def _drain_queue(self) -> None:
        while True:
            try:
                batch = self._rpcs.get_nowait()
            except queue.Empty:
                return
            for call in batch:
                call.result_queue.put(RPCResult(error=CLIENT_CLOSED))

    def _register(self, rpc: Any) -> int:
        with self._id_lock:
            self._id += 1
            call_id = self._id & 0xFFFFFFFF
        with self._sent_lock:
            self._sent[call_id] = rpc
        return call_id

    def _unregister(self, call_id: int) -> Any:
        with self._sent_lock:
            return self._sent.pop(call_id, None)

    def _in_flight_up(self) -> None:
        with self._in_flight_lock:
            self._in_flight += 1
            if hasattr(self.conn, "settimeout"):
                self.conn.settimeout(self.read_timeout)

    def _in_flight_down(self) -> None:
        with self._in_flight_lock:
            self._in_flight -= 1
            if self._in_flight == 0 and hasattr(self.conn, "settimeout"):
                self.conn.settimeout(None)

    def _send(self, rpc: Any) -> Tuple[int, Optional[BaseException]]:
        cellblocks: List[bytes] = []
        cb_len = 0
        enabled = getattr(rpc, "cell_blocks_enabled", None)
        if callable(enabled) and enabled():
            request, cellblocks, cb_len = rpc.serialize_cell_blocks(None)
            if self.compressor is not None:
                compressed = self.compressor.compress_cellblocks(cellblocks, cb_len)
                cellblocks, cb_len = [compressed], len(compressed)
        else:
            request = rpc.to_proto()

        call_id = self._register(rpc)
        priority = getattr(rpc, "priority", 0)
        if callable(priority):
            priority = priority()
        try:
            frame = marshal_request(
                rpc.name(), call_id, _encode_request(request), cb_len, priority or 0
            )
        except (ValueError, TypeError) as e:
            return call_id, e
        self.metrics.observe_rpc_size(self.addr, len(frame) + cb_len)
        try:
            self.conn.sendall(frame + b"".join(bytes(b) for b in cellblocks))
            self._in_flight_up()
        except OSError as e:
            return call_id, ServerError(e)
        return call_id, None

    def _try_send(self, rpc: Any) -> Optional[BaseException]:
        call_id, err = self._send(rpc)
        if err is None:
            return None
        if isinstance(err, ServerError):
            self._fail(err)
        if self._unregister(call_id) is not None:
            return err
        return None

    def _next_batch(self, timeout: Optional[float]) -> Any:
        """Next batch, None on timeout, or _STOPPED once the client is closed."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self._done.is_set():
            wait = _POLL
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                wait = min(wait, remaining)
            try:
                return self._rpcs.get(timeout=wait)
            except queue.Empty:
                continue
        return _STOPPED

    def process_rpcs(self) -> None:
        """Batch queued calls into Multi requests until the client closes."""
        batch = Multi(self.queue_size)

        def flush(reason: str) -> None:
            nonlocal batch
            self.metrics.observe_flush(reason, self.addr, len(batch))
            err = self._try_send(batch)
            if err is not None:
                batch.return_results(None, err)
            batch = Multi(self.queue_size)

        try:
            while not self._done.is_set():
                while True:
                    try:
                        rpcs = self._rpcs.get_nowait()
                    except queue.Empty:
                        break
                    if batch.add(rpcs):
                        break
                if self._done.is_set():
                    return
                if len(batch) == 0:
                    rpcs = self._next_batch(None)
                    if rpcs is _STOPPED:
                        return
                    batch.add(rpcs)
                    continue
                if len(batch) >= self.queue_size or self.flush_interval == 0:
                    flush("queue full")
                    continue
                deadline = time.monotonic() + self.flush_interval
                reason = "timeout"
                while True:
                    rpcs = self._next_batch(max(0.0, deadline - time.monotonic()))
                    if rpcs is _STOPPED:
                        return
                    if rpcs is None:
                        break
                    if batch.add(rpcs):
                        reason = "queue full"
                        break
                flush(reason)
        finally:
            batch.return_results(None, CLIENT_CLOSED)
            self._drain_queue()

    def receive_rpcs(self) -> None:
        """Read responses until the connection fails or the client closes."""
        reader = self.conn.makefile("rb")
        while not self._done.is_set():
            try:
                self.receive(reader)
            except ServerError as e:
                self._fail(e)
                return
            except Exception:
                continue

    def receive(self, reader: Any) -> None:
        """Read one response and deliver it; raise the error delivered, if any."""
        try:
            size = int.from_bytes(_read_exact(reader, 4), "big")
            data = _read_exact(reader, size)
        except (OSError, EOFError, ValueError) as e:
            raise ServerError(e) from e

        header, offset = parse_response_header(data)
        if header.call_id is None:
            raise MISSING_CALL_ID
        rpc = self._unregister(header.call_id)
        if rpc is None:
            raise ServerError(f"got a response with an unexpected call ID: {header.call_id}")
        try:
            self._in_flight_down()
        except OSError as e:
            raise ServerError(e) from e
        if rpc.cancelled():
            return

        response, err = self._decode(rpc, header, data, offset, size)
        _return_result(rpc, response, err)
        if err is not None:
            raise err

    def _decode(
        self, rpc: Any, header: Any, data: bytes, offset: int, size: int
    ) -> Tuple[Any, Optional[BaseException]]:
        if header.exception is not None:
            return None, exception_to_error(
                header.exception.exception_class_name, header.exception.stack_trace
            )
        response = rpc.new_response()
        try:
            body, _ = consume_bytes(data, offset)
            _decode_response(response, body)
        except (WireError, ValueError) as e:
            return response, RetryableError(f"failed to decode the response: {e}")

        cells_len = header.cell_block_length
        if cells_len > 0 and hasattr(rpc, "deserialize_cell_blocks"):
            block = data[size - cells_len:]
            if self.compressor is not None:
                try:
                    block = self.compressor.decompress_cellblocks(block)
                except ValueError as e:
                    return response, RetryableError(f"failed to decompress the response: {e}")
            try:
                nread = rpc.deserialize_cell_blocks(response, block)
            except Exception as e:
                return response, RetryableError(f"failed to decode the response: {e}")
            if nread < len(block):
                return response, RetryableError(
                    f"short read: buffer length {len(block)}, read {nread}"
                )
        return response, None

    def to_json(self) -> str:
        """A JSON description of the client's state."""

        def address(getter: str) -> Dict[str, str]:
            conn = self.conn
            if conn is None or not hasattr(conn, getter):
                return {"Network": "", "Address": ""}
            addr = getattr(conn, getter)()
            text = f"{addr[0]}:{addr[1]}" if isinstance(addr, tuple) else str(addr)
            return {"Network": "tcp", "Address": text}

        with self._id_lock:
            current_id = self._id
        state = {
            "ConnectionLocalAddress": address("getsockname"),
            "ConnectionRemoteAddress": address("getpeername"),
            "RegionServerAddress": self.addr,
            "ClientType": self.ctype.value,
            "InFlight": self.in_flight,
            "Id": current_id,
            "Done_status": "Closed" if self._done.is_set() else "Not Closed",
        }
        return json.dumps(state)