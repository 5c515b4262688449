"""Batching of Get and Mutate calls into a single Multi request."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .errors import exception_to_error


@dataclass
class NameBytesPair:
    name: str = ""
    value: bytes = b""


@dataclass
class ResultOrException:
    index: Optional[int] = None
    result: Any = None
    exception: Optional[NameBytesPair] = None


@dataclass
class RegionActionResult:
    result_or_exception: List[ResultOrException] = field(default_factory=list)
    exception: Optional[NameBytesPair] = None


@dataclass
class MultiResponse:
    region_action_result: List[RegionActionResult] = field(default_factory=list)


@dataclass
class Action:
    index: int
    get: Any = None
    mutation: Any = None


@dataclass
class RegionAction:
    region: bytes
    actions: List[Action] = field(default_factory=list)


@dataclass
class MultiRequest:
    region_actions: List[RegionAction] = field(default_factory=list)


@dataclass
class GetRequest:
    get: Any = None
    region: Optional[bytes] = None


@dataclass
class MutateRequest:
    mutation: Any = None
    region: Optional[bytes] = None


@dataclass
class GetResponse:
    result: Any = None


@dataclass
class MutateResponse:
    result: Any = None


@dataclass
class RPCResult:
    msg: Any = None
    error: Optional[BaseException] = None


def _fill_response(call: Any, result: Any) -> Any:
    response = call.new_response()
    if not isinstance(response, (GetResponse, MutateResponse)):
        raise TypeError(f"unsupported response type for Multi: {type(response).__name__}")
    response.result = result
    return response


class Multi:
    """A batch of calls sent to one region server in a single request."""

    def __init__(self, queue_size: int) -> None:
        self.size = queue_size
        self.calls: List[Any] = []
        # order of regions, matching the RegionActionResults of the response
        self.regions: List[Any] = []

    def name(self) -> str:
        return "Multi"

    def description(self) -> str:
        return self.name()

    def cancelled(self) -> bool:
        return False

    def __str__(self) -> str:
        return "MULTI"

    def _build(self, use_cellblocks: bool, cellblocks: Sequence[bytes]) -> Tuple[MultiRequest, List[bytes], int]:
        per_region: Dict[int, Tuple[Any, List[Action], List[bytes]]] = {}
        size = 0
        for i, call in enumerate(self.calls):
            if call is None:
                continue
            if call.cancelled():
                self.calls[i] = None
                continue
            region = call.region
            _, actions, blocks = per_region.setdefault(id(region), (region, [], []))
            if use_cellblocks and getattr(call, "cell_blocks_enabled", lambda: False)():
                msg, new_blocks, sz = call.serialize_cell_blocks(blocks)
                blocks[:] = new_blocks
                size += sz
            else:
                msg = call.to_proto()
            if isinstance(msg, GetRequest):
                action = Action(i + 1, get=msg.get)
            elif isinstance(msg, MutateRequest):
                action = Action(i + 1, mutation=msg.mutation)
            else:
                raise TypeError(f"unsupported call type for Multi: {type(call).__name__}")
            actions.append(action)

        out = list(cellblocks)
        request = MultiRequest()
        self.regions = []
        for region, actions, blocks in per_region.values():
            request.region_actions.append(RegionAction(region.name, actions))
            out.extend(blocks)
            self.regions.append(region)
        return request, out, size

    def to_proto(self) -> MultiRequest:
        """Group the batched calls into one request per region."""
        return self._build(False, ())[0]

    def serialize_cell_blocks(self, cellblocks: Optional[Sequence[bytes]] = None) -> Tuple[MultiRequest, List[bytes], int]:
        """Build the request with cell data moved into cellblocks appended to the given ones."""
        return self._build(True, cellblocks or ())

    def cell_blocks_enabled(self) -> bool:
        return True

    def new_response(self) -> MultiResponse:
        return MultiResponse()

    def deserialize_cell_blocks(self, msg: MultiResponse, data: bytes) -> int:
        """Fill results from cellblocks; return the number of bytes consumed."""
        nread = 0
        for rar in msg.region_action_result:
            if rar.exception is not None:
                if rar.result_or_exception:
                    raise ValueError(
                        "got exception for region, but still have "
                        f"{len(rar.result_or_exception)} result(s) returned from it")
                continue
            for roe in rar.result_or_exception:
                index = roe.index or 0
                if index == 0:
                    raise ValueError("no index for result in multi response")
                if roe.result is None and roe.exception is None:
                    raise ValueError("no result or exception for action in multi response")
                if roe.result is not None and roe.exception is not None:
                    raise ValueError("got result and exception for action in multi response")
                if roe.exception is not None:
                    continue
                call = self.get(index)
                response = _fill_response(call, roe.result)
                try:
                    n = call.deserialize_cell_blocks(response, data[nread:])
                except Exception as e:
                    raise ValueError(
                        f'error deserializing cellblocks for "{call.name()}" call '
                        f"as part of MultiResponse: {e}") from e
                nread += n
        return nread

    def return_results(self, msg: Optional[MultiResponse], err: Optional[BaseException]) -> None:
        """Deliver each call's result or error to its result queue."""
        if err is not None:
            for call in self.calls:
                if call is not None:
                    call.result_queue.put(RPCResult(error=err))
            return
        if not isinstance(msg, MultiResponse):
            raise TypeError(f"unexpected response type {type(msg).__name__}")
        for reg_index, rar in enumerate(msg.region_action_result):
            if rar.exception is not None:
                region = self.regions[reg_index]
                error = exception_to_error(rar.exception.name, rar.exception.value.decode("utf-8", "replace"))
                for call in self.calls:
                    if call is not None and call.region is region:
                        call.result_queue.put(RPCResult(error=error))
                continue
            for roe in rar.result_or_exception:
                call = self.get(roe.index or 0)
                if roe.exception is not None:
                    call.result_queue.put(RPCResult(error=exception_to_error(
                        roe.exception.name, roe.exception.value.decode("utf-8", "replace"))))
                    continue
                call.result_queue.put(RPCResult(msg=_fill_response(call, roe.result)))

    def add(self, calls: Sequence[Any]) -> bool:
        """Add calls; return whether the batch is now full."""
        self.calls.extend(calls)
        return len(self.calls) >= self.size

    def get(self, index: int) -> Any:
        """The call at a 1-based index; 0 means the server set no index."""
        if index == 0:
            raise IndexError("index cannot be 0")
        return self.calls[index - 1]

    def __len__(self) -> int:
        return len(self.calls)