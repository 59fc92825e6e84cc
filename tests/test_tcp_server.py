import asyncio
import contextlib

import pytest

from rpcstream.net import bind_listener, connect_stream
from rpcstream.proto import (
    RESP_FLAG_HAS_ERR_STRING,
    RESP_FLAG_HAS_ERRNO,
    RPC_RESP_HEADER_LEN,
    U32_HIGH_MASK,
    EncodedErr,
    JsonCodec,
    ReqHead,
    RpcError,
    RpcIntErr,
    decode_resp_head,
)
from rpcstream.server import ServerConfig, ServerFactory
from rpcstream.server_impl import ReqDispatchClosure, RpcServer, ServerTaskVariant
from rpcstream.tcp_server import TcpServer


@contextlib.asynccontextmanager
async def _connected(config=None):
    listener = await bind_listener("127.0.0.1:0")
    client = await connect_stream(listener.local_addr(), 1.0)
    stream = await asyncio.wait_for(listener.accept(), 1.0)
    factory = ServerFactory(TcpServer, lambda: None, config or ServerConfig(read_timeout=1.0))
    server = TcpServer.new_conn(stream, factory)
    try:
        yield client, server
    finally:
        await client.close()
        await stream.close()
        await listener.close()


async def _send(client, *parts):
    for part in parts:
        await client.write_all(part)
    await client.flush()


@pytest.mark.asyncio
async def test_read_req_numeric_action():
    async with _connected() as (client, server):
        head = ReqHead(ver=1, action=3, seq=7, client_id=9, msg_len=4, blob_len=3)
        await _send(client, head.to_bytes(), b"{\"a\"", b"xyz")
        req = await server.read_req(asyncio.Event())
        assert req.seq == 7
        assert req.action == 3
        assert req.msg == b"{\"a\""
        assert req.blob == b"xyz"


@pytest.mark.asyncio
async def test_read_req_string_action_without_body():
    async with _connected() as (client, server):
        head = ReqHead(ver=1, action=len(b"open") | U32_HIGH_MASK, seq=2)
        await _send(client, head.to_bytes(), b"open")
        req = await server.read_req(asyncio.Event())
        assert req.action == "open"
        assert req.msg == b""
        assert req.blob is None


@pytest.mark.asyncio
async def test_read_req_bad_magic():
    async with _connected() as (client, server):
        await _send(client, ReqHead(magic=b"XX", ver=1).to_bytes())
        with pytest.raises(RpcError) as exc_info:
            await server.read_req(asyncio.Event())
        assert exc_info.value.rpc is RpcIntErr.DECODE


@pytest.mark.asyncio
async def test_read_req_bad_version():
    async with _connected() as (client, server):
        await _send(client, ReqHead(ver=2).to_bytes())
        with pytest.raises(RpcError) as exc_info:
            await server.read_req(asyncio.Event())
        assert exc_info.value.rpc is RpcIntErr.DECODE


@pytest.mark.asyncio
async def test_read_req_bad_action_string():
    async with _connected() as (client, server):
        head = ReqHead(ver=1, action=2 | U32_HIGH_MASK, seq=1)
        await _send(client, head.to_bytes(), b"\xff\xfe")
        with pytest.raises(RpcError) as exc_info:
            await server.read_req(asyncio.Event())
        assert exc_info.value.rpc is RpcIntErr.DECODE


@pytest.mark.asyncio
async def test_read_req_close_event():
    async with _connected() as (_client, server):
        close_event = asyncio.Event()
        close_event.set()
        with pytest.raises(RpcError) as exc_info:
            await server.read_req(close_event)
        assert exc_info.value.rpc is RpcIntErr.TIMEOUT


@pytest.mark.asyncio
async def test_read_req_idle_timeout():
    async with _connected(ServerConfig(idle_timeout=0.1)) as (_client, server):
        with pytest.raises(RpcError) as exc_info:
            await server.read_req(asyncio.Event())
        assert exc_info.value.rpc is RpcIntErr.TIMEOUT


@pytest.mark.asyncio
async def test_read_req_peer_closed():
    async with _connected() as (client, server):
        await _send(client, b"%M")
        await client.shutdown_write()
        with pytest.raises(RpcError) as exc_info:
            await server.read_req(asyncio.Event())
        assert exc_info.value.rpc is RpcIntErr.IO


@pytest.mark.asyncio
async def test_write_resp_message():
    async with _connected() as (client, server):
        await server.write_resp(11, (b"msg", b"blob"))
        await server.flush_resp()
        head = decode_resp_head(await client.read_exact(RPC_RESP_HEADER_LEN))
        assert (head.seq, head.flag, head.msg_len, head.blob_len) == (11, 0, 3, 4)
        assert await client.read_exact(3) == b"msg"
        assert await client.read_exact(4) == b"blob"


@pytest.mark.asyncio
async def test_write_resp_errno():
    async with _connected() as (client, server):
        await server.write_resp(4, EncodedErr(13))
        await server.close_conn()
        head = decode_resp_head(await client.read_exact(RPC_RESP_HEADER_LEN))
        assert head.flag == RESP_FLAG_HAS_ERRNO
        assert head.errno == 13
        assert head.blob_len == 0
        with pytest.raises(EOFError):
            await client.read_exact(1)


@pytest.mark.asyncio
async def test_write_resp_error_string():
    async with _connected() as (client, server):
        await server.write_resp(5, EncodedErr(RpcIntErr.DECODE))
        await server.flush_resp()
        head = decode_resp_head(await client.read_exact(RPC_RESP_HEADER_LEN))
        assert head.flag == RESP_FLAG_HAS_ERR_STRING
        assert head.seq == 5
        assert await client.read_exact(head.blob_len) == b"rpc_decode_err"


@pytest.mark.asyncio
async def test_rpc_server_ping_and_echo():
    def handle(task):
        task.set_result(None)

    factory = ServerFactory(
        TcpServer,
        lambda: ReqDispatchClosure(ServerTaskVariant, handle),
        ServerConfig(server_close_wait=2.0),
    )
    rpc_server = RpcServer(factory)
    addr = await rpc_server.listen("127.0.0.1:0")
    client = await connect_stream(addr, 1.0)
    try:
        await _send(client, ReqHead(ver=1, action=0, seq=5).to_bytes())
        head = decode_resp_head(await asyncio.wait_for(client.read_exact(RPC_RESP_HEADER_LEN), 2.0))
        assert (head.seq, head.flag, head.msg_len) == (5, 0, 0)

        msg = JsonCodec().encode({"x": 1})
        await _send(client, ReqHead(ver=1, action=1, seq=6, msg_len=len(msg)).to_bytes(), msg)
        head = decode_resp_head(await asyncio.wait_for(client.read_exact(RPC_RESP_HEADER_LEN), 2.0))
        assert head.seq == 6
        body = await client.read_exact(head.msg_len)
        assert JsonCodec().decode(body) == {"x": 1}
    finally:
        left = await rpc_server.close()
        await client.close()
    assert left == 0