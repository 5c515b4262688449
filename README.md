# hregion

Region-level building blocks for talking to HBase region servers. The
package has no third-party dependencies.

## Modules

- `hregion.info` – `RegionInfo` (id, namespace, table, name, start and stop
  key, availability and a "dead" flag, `to_json()`), the `Cell` dataclass,
  `info_from_cell` and `parse_region_info` for rows of the meta table, and
  `compare`, the region-name ordering in which an empty start key sorts
  first. An offline region raises `OfflineRegionError`.
- `hregion.compressor` – the Hadoop block-stream framing for compressed
  cellblocks. `Compressor` wraps any object that follows the `Codec`
  protocol (`encode`, `decode`, `chunk_len`, `cell_block_compressor_class`);
  `read_n` and `read_uint32` are the framing helpers.
- `hregion.wire` – protobuf wire-format helpers: `encode_varint`,
  `decode_varint`, `consume_bytes`, `encode_field`, `iter_fields`; bad input
  raises `WireError`.
- `hregion.protocol` – `encode_hello` (the connection preamble),
  `marshal_request` (the length-prefixed request frame) and
  `parse_response_header`, returning a `ResponseHeader` with an optional
  `ExceptionResponse`.
- `hregion.multi` – `Multi`, which groups Get and Mutate calls by region into
  one `MultiRequest`, serializes their cellblocks, reads cellblocks back and
  puts an `RPCResult` on each call's result queue.
- `hregion.errors` – `ServerError`, `RetryableError`,
  `NotServingRegionError`, `JavaException` and `exception_to_error`, which
  classifies a Java exception class and stack trace sent back by the server.
- `hregion.client` – `RegionClient`, which keeps one connection to a region
  server, sends the hello message, batches queued calls into `Multi`
  requests, matches responses to calls by call id and fails everything
  outstanding when the connection breaks or `close()` is called. It records
  flush reasons, batch sizes and request sizes in a `Metrics` object.
  `ClientType.REGION` and `ClientType.MASTER` pick the service.

## Examples

Ordering region names:

```python
from hregion.info import compare

assert compare(b"table,foo,1234567890", b"table,,1234567890") > 0
```

Classifying a server exception:

```python
from hregion.errors import NotServingRegionError, exception_to_error

err = exception_to_error(
    "org.apache.hadoop.hbase.NotServingRegionException", "stack trace"
)
assert isinstance(err, NotServingRegionError)
```

Connecting to a region server:

```python
from hregion.client import ClientType, RegionClient

client = RegionClient(
    "regionserver:16020", ClientType.REGION, 100, 0.02, "hbase", 30.0, None, None
)
client.dial(5.0)
...
client.close()
```

`dial` raises the client-closed `ServerError` if connecting or sending the
hello message failed. A `dialer` may be passed in; it is called as
`dialer(addr, timeout)` and must return a socket-like object.

## What a call object must provide

`RegionClient.queue_rpc` and `Multi` work with any call object that has:

- `name()`, `to_proto()`, `new_response()` and `cancelled()`;
- a `result_queue` (a `queue.Queue`) that receives an `RPCResult`;
- a `region` attribute (a `RegionInfo`) when it is batched;
- optionally `batchable()`, `priority`, `cell_blocks_enabled()`,
  `serialize_cell_blocks(cellblocks)` and
  `deserialize_cell_blocks(response, data)`.

A request returned by `to_proto()` is either bytes or an object with a
`serialize()` method; batched calls return `GetRequest` or `MutateRequest`.
`GetResponse` and `MutateResponse` receive their result as raw bytes; any
other response object must provide `parse_from(data)`.

## What the package does not do

It does not build Get, Put, Scan or other requests, and ships no protobuf
message classes beyond the small dataclasses above. It has no region cache,
no meta-table lookup and no retry logic; the errors only say what the caller
should do. No compression codec is included, only the `Codec` protocol, and
metrics are kept in memory rather than exported. There is no command-line
program.

## Running the tests

```
pip install .[test]
pytest
```