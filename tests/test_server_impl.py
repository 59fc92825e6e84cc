import asyncio
import errno

import pytest

from rpcstream.proto import EncodedErr, JsonCodec, RpcError, RpcIntErr
from rpcstream.server import (
    RespChannel,
    RpcSvrReq,
    RpcSvrResp,
    ServerConfig,
    ServerFactory,
    ServerTransport,
)
from rpcstream.server_impl import (
    ReqDispatchClosure,
    RespReceiverBuf,
    RespReceiverTask,
    RpcServer,
    ServerTaskVariant,
    ServerTaskVariantFull,
)

LISTENERS = {}


class FakeStream:
    def __init__(self, fail_write=False):
        self.requests = asyncio.Queue()
        self.written = []
        self.flushes = 0
        self.closed = False
        self.fail_write = fail_write


class FakeListener:
    def __init__(self, addr):
        self.addr = addr
        self.incoming = asyncio.Queue()
        self.closed = False

    async def accept(self):
        return await self.incoming.get()

    def local_addr(self):
        return self.addr

    def close(self):
        self.closed = True


class FakeTransport(ServerTransport):
    def __init__(self, stream, factory):
        self.stream = stream
        self.logger = factory.new_logger()

    @classmethod
    def bind(cls, addr):
        if addr == "bad":
            raise OSError(errno.EADDRINUSE, "address in use")
        listener = FakeListener(addr)
        LISTENERS[addr] = listener
        return listener

    async def read_req(self, close_event):
        get = asyncio.ensure_future(self.stream.requests.get())
        closing = asyncio.ensure_future(close_event.wait())
        done, pending = await asyncio.wait(
            {get, closing}, return_when=asyncio.FIRST_COMPLETED
        )
        for fut in pending:
            fut.cancel()
        if get in done:
            req = get.result()
            if req is None:
                raise RpcError(RpcIntErr.IO)
            return req
        raise RpcError(RpcIntErr.TIMEOUT)

    async def write_resp(self, seq, res):
        if self.stream.fail_write:
            raise OSError(errno.EPIPE, "broken pipe")
        self.stream.written.append((seq, res))

    async def flush_resp(self):
        self.stream.flushes += 1

    async def close_conn(self):
        self.stream.closed = True


async def wait_until(pred, timeout=2.0):
    async with asyncio.timeout(timeout):
        while not pred():
            await asyncio.sleep(0.01)


def make_server(handler, config=None):
    factory = ServerFactory(
        FakeTransport,
        lambda: ReqDispatchClosure(ServerTaskVariantFull, handler),
        config,
    )
    return RpcServer(factory)


def test_variant_decode_and_encode_ok():
    channel = RespChannel()
    task = ServerTaskVariant.decode_req(JsonCodec(), 3, 7, b'{"x": 1}', None, channel.noti())
    assert task.msg == {"x": 1}
    assert task.get_action() == 3
    task.msg = {"y": 2}
    task.set_result()
    assert list(channel.drain()) == [task]
    assert task.encode_resp(JsonCodec()) == (7, (b'{"y":2}', None))


def test_variant_error_result_and_repr():
    channel = RespChannel()
    task = ServerTaskVariant.decode_req(JsonCodec(), 3, 7, b'{"x": 1}', b"ab", channel.noti())
    task.set_result(13)
    assert task.encode_resp(JsonCodec()) == (7, EncodedErr(13))
    assert repr(task) == "task seq=7 action=3 {'x': 1} err: 13"


def test_variant_repr_ok():
    channel = RespChannel()
    task = ServerTaskVariant.decode_req(JsonCodec(), 3, 7, b'{"x": 1}', None, channel.noti())
    assert repr(task) == "task seq=7 action=3 {'x': 1}"
    task.set_result()
    assert repr(task) == "task seq=7 action=3 {'x': 1} ok"


def test_variant_encode_without_result_raises():
    channel = RespChannel()
    task = ServerTaskVariant.decode_req(JsonCodec(), 1, 2, b"[]", None, channel.noti())
    with pytest.raises(RuntimeError):
        task.encode_resp(JsonCodec())


def test_variant_result_twice_raises():
    channel = RespChannel()
    task = ServerTaskVariant.decode_req(JsonCodec(), 1, 2, b"[]", None, channel.noti())
    task.set_result()
    with pytest.raises(RuntimeError):
        task.set_result()


def test_variant_decode_failure():
    channel = RespChannel()
    noti = channel.noti()
    with pytest.raises(RpcError) as info:
        ServerTaskVariant.decode_req(JsonCodec(), 1, 2, b"not json", None, noti)
    assert info.value.rpc == RpcIntErr.DECODE


def test_variant_unencodable_message_gives_encode_error():
    channel = RespChannel()
    task = ServerTaskVariant.decode_req(JsonCodec(), 1, 4, b"1", None, channel.noti())
    task.msg = object()
    task.set_result()
    assert task.encode_resp(JsonCodec()) == (4, EncodedErr(RpcIntErr.ENCODE))


def test_full_empty_response_keeps_blob():
    channel = RespChannel()
    task = ServerTaskVariantFull.decode_req(
        JsonCodec(), 2, 9, b'{"inode": 1}', b"data", channel.noti()
    )
    assert task.req == {"inode": 1}
    assert task.req_blob == b"data"
    task.resp_blob = b"out"
    task.set_result()
    assert task.encode_resp(JsonCodec()) == (9, (b"", b"out"))


def test_resp_receiver_task_delegates():
    channel = RespChannel()
    task = ServerTaskVariantFull.decode_req(JsonCodec(), 1, 5, b"{}", None, channel.noti())
    task.resp = [1, 2]
    task.set_result()
    assert RespReceiverTask().encode_resp(JsonCodec(), task) == (5, (b"[1,2]", None))


def test_resp_receiver_buf():
    receiver = RespReceiverBuf()
    codec = JsonCodec()
    assert receiver.encode_resp(codec, RpcSvrResp(seq=1, msg=b"m", blob=b"b")) == (
        1,
        (b"m", b"b"),
    )
    err = EncodedErr(RpcIntErr.IO)
    assert receiver.encode_resp(codec, RpcSvrResp(seq=2, res=err)) == (2, err)
    with pytest.raises(ValueError):
        receiver.encode_resp(codec, RpcSvrResp(seq=3))


@pytest.mark.asyncio
async def test_closure_dispatch_calls_handler():
    handled = []

    async def handler(task):
        handled.append(task)
        task.resp = {"path": task.req["path"]}
        task.set_result()

    dispatch = ReqDispatchClosure(ServerTaskVariantFull, handler)
    channel = RespChannel()
    noti = channel.noti()
    await dispatch.dispatch_req(RpcSvrReq(seq=4, action=1, msg=b'{"path": "/tmp/a"}'), noti.clone())
    noti.close()
    items = list(channel.drain())
    assert items == handled
    assert dispatch.encode_resp(items[0]) == (4, (b'{"path":"/tmp/a"}', None))


@pytest.mark.asyncio
async def test_closure_decode_error():
    dispatch = ReqDispatchClosure(ServerTaskVariantFull, lambda task: None)
    channel = RespChannel()
    noti = channel.noti()
    with pytest.raises(RpcError) as info:
        await dispatch.dispatch_req(RpcSvrReq(seq=1, action=1, msg=b"{bad"), noti)
    assert info.value.rpc == RpcIntErr.DECODE
    assert list(channel.drain()) == []


@pytest.mark.asyncio
async def test_closure_handler_error_propagates():
    def handler(task):
        raise ValueError("bad request")

    dispatch = ReqDispatchClosure(ServerTaskVariantFull, handler)
    channel = RespChannel()
    with pytest.raises(ValueError):
        await dispatch.dispatch_req(RpcSvrReq(seq=1, action=1, msg=b"{}"), channel.noti())


@pytest.mark.asyncio
async def test_server_serves_requests_and_pings():
    def handler(task):
        task.resp = {"path": task.req["path"]}
        task.set_result()

    server = make_server(handler)
    assert await server.listen("mem-1") == "mem-1"
    stream = FakeStream()
    await LISTENERS["mem-1"].incoming.put(stream)
    await stream.requests.put(RpcSvrReq(seq=1, action=0, msg=b""))
    await stream.requests.put(RpcSvrReq(seq=2, action=1, msg=b'{"path": "/tmp/a"}'))
    await wait_until(lambda: len(stream.written) == 2)
    assert stream.written[0] == (1, (b"", None))
    assert stream.written[1] == (2, (b'{"path":"/tmp/a"}', None))
    assert stream.flushes >= 1
    assert server.alive_conn == 1
    assert await server.close() == 0
    assert stream.closed
    assert LISTENERS["mem-1"].closed


@pytest.mark.asyncio
async def test_server_decode_error_and_user_error():
    def handler(task):
        task.set_result(13)

    server = make_server(handler)
    await server.listen("mem-2")
    stream = FakeStream()
    await LISTENERS["mem-2"].incoming.put(stream)
    await stream.requests.put(RpcSvrReq(seq=1, action=1, msg=b"not json"))
    await stream.requests.put(RpcSvrReq(seq=2, action="open", msg=b'{"path": "/root"}'))
    await wait_until(lambda: len(stream.written) == 2)
    assert stream.written[0] == (1, EncodedErr(RpcIntErr.DECODE))
    assert stream.written[1] == (2, EncodedErr(13))
    assert await server.close() == 0


@pytest.mark.asyncio
async def test_server_close_times_out_on_unanswered_task():
    held = []
    server = make_server(held.append, ServerConfig(server_close_wait=0.1))
    await server.listen("mem-3")
    stream = FakeStream()
    await LISTENERS["mem-3"].incoming.put(stream)
    await stream.requests.put(RpcSvrReq(seq=1, action=1, msg=b'{"path": "x"}'))
    await wait_until(lambda: len(held) == 1)
    assert await server.close() == 1
    assert stream.written == []
    held[0].set_result()
    await wait_until(lambda: server.alive_conn == 0)
    assert stream.closed


@pytest.mark.asyncio
async def test_server_connection_ends_on_write_error():
    server = make_server(lambda task: task.set_result())
    await server.listen("mem-4")
    stream = FakeStream(fail_write=True)
    await LISTENERS["mem-4"].incoming.put(stream)
    await stream.requests.put(RpcSvrReq(seq=1, action=0, msg=b""))
    await stream.requests.put(RpcSvrReq(seq=2, action=0, msg=b""))
    await wait_until(lambda: server.alive_conn == 0)
    assert not stream.closed
    assert stream.written == []
    assert await server.close() == 0


@pytest.mark.asyncio
async def test_listen_bind_error():
    server = make_server(lambda task: None)
    with pytest.raises(OSError):
        await server.listen("bad")
    assert server.alive_conn == 0