"""Server-side transport over TCP or Unix sockets."""

from __future__ import annotations

import asyncio
import contextlib

from .net import UnifyListener, UnifyStream, bind_listener
from .proto import (
    RPC_REQ_HEADER_LEN,
    EncodedErr,
    RpcError,
    RpcIntErr,
    decode_req_head,
    encode_resp_err,
    encode_resp_msg,
)
from .server import RpcSvrReq, ServerFactory, ServerTransport

SERVER_DEFAULT_BUF_SIZE = 8 * 1024


class TcpServer(ServerTransport):
    """One accepted connection: reads requests and writes responses."""

    def __init__(self, stream: UnifyStream, factory: ServerFactory) -> None:
        self.config = factory.config
        self.logger = factory.new_logger()
        stream.buf_size = self.config.stream_buf_size or SERVER_DEFAULT_BUF_SIZE
        self.stream = stream

    @classmethod
    async def bind(cls, addr: str) -> UnifyListener:
        return await bind_listener(addr)

    def __repr__(self) -> str:
        return repr(self.stream)

    async def _read_header(self, close_event: asyncio.Event) -> bytes:
        read = asyncio.ensure_future(self.stream.read_exact(RPC_REQ_HEADER_LEN))
        closer = asyncio.ensure_future(close_event.wait())
        try:
            done, _ = await asyncio.wait(
                {read, closer},
                timeout=self.config.idle_timeout or None,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            closer.cancel()
            if not read.done():
                read.cancel()
                with contextlib.suppress(asyncio.CancelledError, OSError, EOFError):
                    await read
        if read not in done:
            self.logger.debug("%r: read timeout", self)
            raise RpcError(RpcIntErr.TIMEOUT)
        try:
            return read.result()
        except (OSError, EOFError) as exc:
            self.logger.debug("%r: recv_req: err %s", self, exc)
            raise RpcError(RpcIntErr.IO) from exc

    async def _read(self, n: int) -> bytes:
        try:
            return await asyncio.wait_for(self.stream.read_exact(n), self.config.read_timeout)
        except (OSError, EOFError) as exc:
            self.logger.debug("%r: read_exact error %s", self, exc)
            raise RpcError(RpcIntErr.IO) from exc

    async def read_req(self, close_event: asyncio.Event) -> RpcSvrReq:
        """Read one request.

        Raises RpcError: TIMEOUT when ``close_event`` is set or the connection
        stays idle too long, IO on read failure, DECODE on a bad header or
        action string.
        """
        raw = await self._read_header(close_event)
        try:
            head = decode_req_head(raw)
        except RpcError as exc:
            self.logger.warning("%r: decode_head error, %s", self, exc)
            raise RpcError(RpcIntErr.DECODE) from exc
        self.logger.debug("%r: recv req: %s", self, head)
        num = head.get_action()
        if num is not None:
            action: int | str = num
        else:
            action_buf = await self._read(head.action_len)
            try:
                action = action_buf.decode("utf-8")
            except UnicodeDecodeError as exc:
                self.logger.error("%r: read action string decode error", self)
                raise RpcError(RpcIntErr.DECODE) from exc
        msg = await self._read(head.msg_len) if head.msg_len > 0 else b""
        blob = await self._read(head.blob_len) if head.blob_len > 0 else None
        return RpcSvrReq(seq=head.seq, action=action, msg=msg, blob=blob)

    async def _write(self, data: bytes, what: str) -> None:
        try:
            await asyncio.wait_for(self.stream.write_all(data), self.config.write_timeout)
        except OSError as exc:
            self.logger.warning("%r: send_resp write resp %s err: %s", self, what, exc)
            raise

    async def write_resp(self, seq: int, res: tuple[bytes, bytes | None] | EncodedErr) -> None:
        """Write a response: ``(msg, blob)`` on success or an EncodedErr."""
        if isinstance(res, EncodedErr):
            header, err_str = encode_resp_err(seq, res)
            await self._write(header.to_bytes(), "header")
            if err_str is not None:
                await self._write(err_str, "blob")
        else:
            msg, blob = res
            header = encode_resp_msg(seq, msg, blob)
            await self._write(header.to_bytes(), "header")
            if msg:
                await self._write(msg, "msg")
            if blob is not None:
                await self._write(blob, "blob")
        self.logger.debug("%r: send resp: %s", self, header)

    async def flush_resp(self) -> None:
        try:
            await asyncio.wait_for(self.stream.flush(), self.config.write_timeout)
        except OSError as exc:
            self.logger.warning("%r: flush err: %s", self, exc)
            raise
        self.logger.debug("%r: flush_resp ok", self)

    async def close_conn(self) -> None:
        try:
            await self.flush_resp()
        except OSError:
            return
        with contextlib.suppress(OSError):
            await self.stream.shutdown_write()