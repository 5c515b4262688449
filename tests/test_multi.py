import queue

import pytest

from hregion.errors import JavaException, NotServingRegionError, ServerError
from hregion.info import RegionInfo
from hregion.multi import (
    GetRequest,
    GetResponse,
    Multi,
    MultiResponse,
    MutateRequest,
    MutateResponse,
    NameBytesPair,
    RegionActionResult,
    ResultOrException,
)

REG0 = RegionInfo(0, None, b"reg0", b"reg0,,1234567890042.56f833d5569a27c7a43fbf547b4924a4.", None, None)
REG1 = RegionInfo(0, None, b"reg1", b"reg1,,1234567890042.56f833d5569a27c7a43fbf547b4924a4.", None, None)
REG2 = RegionInfo(0, None, b"reg2", b"reg2,,1234567890042.56f833d5569a27c7a43fbf547b4924a4.", None, None)


class FakeCall:
    def __init__(self, kind, row, region, cancelled=False, cellblock=b"", fail=False):
        self.kind = kind
        self.row = row
        self.region = region
        self._cancelled = cancelled
        self.cellblock = cellblock
        self.fail = fail
        self.result_queue = queue.Queue()

    def name(self):
        return "Get" if self.kind == "get" else "Mutate"

    def cancelled(self):
        return self._cancelled

    def to_proto(self):
        if self.kind == "get":
            return GetRequest(get=("get", self.row))
        if self.kind == "mutate":
            return MutateRequest(mutation=("mutate", self.row, self.cellblock))
        return object()

    def cell_blocks_enabled(self):
        return self.kind == "mutate"

    def serialize_cell_blocks(self, blocks):
        return MutateRequest(mutation=("mutate", self.row)), list(blocks) + [self.cellblock], len(self.cellblock)

    def new_response(self):
        return GetResponse() if self.kind == "get" else MutateResponse()

    def deserialize_cell_blocks(self, response, data):
        if self.fail:
            raise ValueError("OOPS")
        n = len(self.cellblock)
        response.result = (response.result, bytes(data[:n]))
        return n


def test_to_proto_groups_by_region():
    calls = [FakeCall("get", b"call0", REG0), FakeCall("mutate", b"call1", REG0),
             FakeCall("mutate", b"call2", REG1), FakeCall("mutate", b"call3", REG2)]
    m = Multi(1000)
    assert m.add(calls) is False
    req = m.to_proto()
    assert [ra.region for ra in req.region_actions] == [REG0.name, REG1.name, REG2.name]
    assert [r.name for r in m.regions] == [ra.region for ra in req.region_actions]
    assert [a.index for a in req.region_actions[0].actions] == [1, 2]
    assert req.region_actions[0].actions[0].get == ("get", b"call0")
    assert req.region_actions[2].actions[0].mutation == ("mutate", b"call3", b"")


def test_to_proto_skips_cancelled():
    calls = [FakeCall("get", b"call0", REG0, cancelled=True), FakeCall("mutate", b"call1", REG0)]
    m = Multi(1000)
    m.add(calls)
    req = m.to_proto()
    assert len(req.region_actions) == 1
    assert [a.index for a in req.region_actions[0].actions] == [2]
    assert m.calls[0] is None


def test_to_proto_unsupported():
    m = Multi(1000)
    m.add([FakeCall("get", b"yolo", REG0), FakeCall("create", b"yolo", REG0)])
    with pytest.raises(TypeError, match="unsupported call type for Multi: FakeCall"):
        m.to_proto()


def test_serialize_cell_blocks():
    calls = [FakeCall("get", b"call0", REG0), FakeCall("mutate", b"c1", REG0, cellblock=b"abc"),
             FakeCall("mutate", b"c2", REG1, cellblock=b"defgh")]
    m = Multi(1000)
    m.add(calls)
    req, blocks, size = m.serialize_cell_blocks([b"pre"])
    assert blocks == [b"pre", b"abc", b"defgh"]
    assert size == 8
    assert req.region_actions[0].actions[0].get == ("get", b"call0")


def test_add_reports_full_and_len():
    m = Multi(2)
    assert m.add([FakeCall("get", b"a", REG0)]) is False
    assert m.add([FakeCall("get", b"b", REG0)]) is True
    assert len(m) == 2


def test_return_results_all_good():
    calls = [FakeCall("get", b"call0", REG0), FakeCall("mutate", b"call1", REG1),
             FakeCall("mutate", b"call2", REG0)]
    m = Multi(1000)
    m.add(calls)
    m.regions = [REG1, REG0]
    resp = MultiResponse([
        RegionActionResult([ResultOrException(2, "r1")]),
        RegionActionResult([ResultOrException(3, "r2"), ResultOrException(1, "r0")]),
    ])
    m.return_results(resp, None)
    assert calls[0].result_queue.get_nowait().msg == GetResponse("r0")
    assert calls[1].result_queue.get_nowait().msg == MutateResponse("r1")
    assert calls[2].result_queue.get_nowait().msg == MutateResponse("r2")


def test_return_results_region_exception():
    calls = [FakeCall("get", b"call0", REG0), FakeCall("mutate", b"call1", REG1),
             FakeCall("mutate", b"call3", REG1)]
    m = Multi(1000)
    m.add(calls)
    m.regions = [REG1, REG0]
    resp = MultiResponse([
        RegionActionResult(exception=NameBytesPair(
            "org.apache.hadoop.hbase.NotServingRegionException", b"YOLO")),
        RegionActionResult([ResultOrException(1, "r0")]),
    ])
    m.return_results(resp, None)
    expected = NotServingRegionError(JavaException(
        "org.apache.hadoop.hbase.NotServingRegionException", "YOLO"))
    assert calls[1].result_queue.get_nowait().error == expected
    assert calls[2].result_queue.get_nowait().error == expected
    assert calls[0].result_queue.get_nowait().msg == GetResponse("r0")


def test_return_results_result_exception():
    calls = [FakeCall("get", b"call0", REG0), FakeCall("mutate", b"call1", REG0)]
    m = Multi(1000)
    m.add(calls)
    resp = MultiResponse([RegionActionResult([
        ResultOrException(1, exception=NameBytesPair("YOLO", b"SWAG")),
        ResultOrException(2, "r1")])])
    m.return_results(resp, None)
    assert str(calls[0].result_queue.get_nowait().error) == "HBase Java exception YOLO:\nSWAG"
    assert calls[1].result_queue.get_nowait().msg == MutateResponse("r1")


def test_return_results_error():
    calls = [FakeCall("get", b"call0", REG0), FakeCall("mutate", b"call1", REG1)]
    m = Multi(1000)
    m.add(calls)
    m.return_results(None, ServerError("OOOPS"))
    for call in calls:
        assert str(call.result_queue.get_nowait().error) == "ServerError: OOOPS"


def test_return_results_wrong_type():
    with pytest.raises(TypeError):
        Multi(1000).return_results(GetResponse(), None)


@pytest.mark.parametrize("index", [0, 2])
def test_return_results_bad_index(index):
    m = Multi(1000)
    m.add([FakeCall("get", b"call0", REG0)])
    m.regions = [REG0]
    with pytest.raises(IndexError):
        m.return_results(MultiResponse([RegionActionResult([ResultOrException(index, "r")])]), None)


def test_deserialize_all_good():
    calls = [FakeCall("get", b"call0", REG0, cellblock=b"GG"),
             FakeCall("mutate", b"call1", REG1, cellblock=b"AAA")]
    m = Multi(1000)
    m.add(calls)
    resp = MultiResponse([
        RegionActionResult([ResultOrException(2, "a")]),
        RegionActionResult([ResultOrException(1, "g")]),
    ])
    assert m.deserialize_cell_blocks(resp, b"AAAGG") == 5


@pytest.mark.parametrize("response,message", [
    (MultiResponse([RegionActionResult([ResultOrException(2, "r")], NameBytesPair("YOLO", b"SWAG"))]),
     "got exception for region, but still have 1 result(s) returned from it"),
    (MultiResponse([RegionActionResult([ResultOrException(None, "r")])]),
     "no index for result in multi response"),
    (MultiResponse([RegionActionResult([ResultOrException(2)])]),
     "no result or exception for action in multi response"),
    (MultiResponse([RegionActionResult([ResultOrException(2, "r", NameBytesPair("YOLO", b"SWAG"))])]),
     "got result and exception for action in multi response"),
])
def test_deserialize_errors(response, message):
    with pytest.raises(ValueError) as info:
        Multi(1000).deserialize_cell_blocks(response, b"")
    assert str(info.value) == message


def test_deserialize_call_error():
    m = Multi(1000)
    m.add([FakeCall("get", b"call0", REG0, fail=True)])
    resp = MultiResponse([RegionActionResult([ResultOrException(1, "r")])])
    with pytest.raises(ValueError) as info:
        m.deserialize_cell_blocks(resp, b"")
    assert str(info.value) == (
        'error deserializing cellblocks for "Get" call as part of MultiResponse: OOPS')