import asyncio
from dataclasses import dataclass

import pytest

from rpcstream.proto import RpcError, RpcIntErr
from rpcstream.server import (
    QuickResp,
    ReqDispatch,
    RespChannel,
    RespNoti,
    ServerConfig,
    ServerFactory,
    ServerTaskDone,
    ServerTransport,
)


class EchoDispatch(ReqDispatch):
    async def dispatch_req(self, req, noti):
        noti.done(req)

    def encode_resp(self, task):
        return task.seq, (task.msg, task.blob)


@dataclass(eq=False)
class DoneTask(ServerTaskDone):
    seq: int
    noti: RespNoti | None = None
    res: object = "unset"

    def _set_result(self, res):
        self.res = res
        noti, self.noti = self.noti, None
        return noti


async def collect(chan):
    return [item async for item in chan]


@pytest.mark.asyncio
async def test_done_sends_task_and_ends_channel():
    chan = RespChannel()
    noti = chan.noti()
    noti.done("first")
    assert await asyncio.wait_for(collect(chan), 1) == ["first"]


@pytest.mark.asyncio
async def test_send_err_from_clones():
    chan = RespChannel()
    noti = chan.noti()
    other = noti.clone()
    noti.send_err(5, RpcIntErr.DECODE)
    other.send_err(6)
    noti.close()
    other.close()
    items = await asyncio.wait_for(collect(chan), 1)
    assert items == [QuickResp(5, RpcIntErr.DECODE), QuickResp(6, None)]


@pytest.mark.asyncio
async def test_send_err_after_receiver_closed():
    chan = RespChannel()
    noti = chan.noti()
    chan.close()
    with pytest.raises(RpcError) as info:
        noti.send_err(1)
    assert info.value == RpcError(RpcIntErr.IO)
    assert chan.closed is True


@pytest.mark.asyncio
async def test_done_twice_is_an_error():
    chan = RespChannel()
    noti = chan.noti()
    noti.done(1)
    with pytest.raises(RuntimeError):
        noti.done(2)
    with pytest.raises(RuntimeError):
        chan.noti()


@pytest.mark.asyncio
async def test_drain_returns_available_items():
    chan = RespChannel()
    with chan.noti() as noti:
        keep = noti.clone()
        keep.done("a")
        noti.send_err(2)
        assert list(chan.drain()) == ["a", QuickResp(2, None)]
        assert list(chan.drain()) == []
    assert await asyncio.wait_for(collect(chan), 1) == []


@pytest.mark.asyncio
async def test_set_result_sends_task_back():
    chan = RespChannel()
    task = DoneTask(seq=9, noti=chan.noti())
    task.set_result(None)
    items = await asyncio.wait_for(collect(chan), 1)
    assert items == [task]
    assert task.res is None
    assert task.noti is None


@pytest.mark.asyncio
async def test_set_result_with_error_value():
    chan = RespChannel()
    task = DoneTask(seq=3, noti=chan.noti())
    task.set_result("denied")
    items = await asyncio.wait_for(collect(chan), 1)
    assert items[0].res == "denied"


@pytest.mark.asyncio
async def test_factory_spawns_and_creates_dispatchers():
    factory = ServerFactory(ServerTransport, EchoDispatch, ServerConfig(idle_timeout=3.0))
    first, second = factory.new_dispatcher(), factory.new_dispatcher()
    assert isinstance(first, EchoDispatch)
    assert first is not second
    assert factory.config.idle_timeout == 3.0

    seen = []

    async def work():
        seen.append("ran")
        return 42

    result = await factory.spawn_detach(work())
    assert result == 42
    assert seen == ["ran"]


def test_default_config_without_argument():
    factory = ServerFactory(ServerTransport, EchoDispatch)
    assert factory.config == ServerConfig()
    assert factory.new_logger().name == "rpcstream.server"


@pytest.mark.asyncio
async def test_dispatch_through_channel():
    chan = RespChannel()
    dispatch = EchoDispatch()
    noti = chan.noti()

    @dataclass
    class Req:
        seq: int
        msg: bytes
        blob: bytes | None

    await dispatch.dispatch_req(Req(4, b"hi", None), noti)
    items = await asyncio.wait_for(collect(chan), 1)
    assert [dispatch.encode_resp(item) for item in items] == [(4, (b"hi", None))]