"""Client-side transport over TCP or Unix sockets."""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
from typing import Any

from .client import ClientConfig, ClientFactory, ClientTask, ClientTransport
from .client_timer import ClientTaskTimer
from .net import UnifyStream, connect_stream
from .proto import (
    RESP_FLAG_HAS_ERR_STRING,
    RESP_FLAG_HAS_ERRNO,
    RPC_RESP_HEADER_LEN,
    Codec,
    EncodedErr,
    RespHead,
    RpcError,
    RpcIntErr,
    decode_resp_head,
    encode_resp_err,
)

log = logging.getLogger(__name__)

CLIENT_DEFAULT_BUF_SIZE = 8 * 1024


@functools.cache
def _rpc_err_by_text() -> dict[bytes, RpcIntErr]:
    """The error strings a server sends for framework errors, mapped back to the errors."""
    table: dict[bytes, RpcIntErr] = {}
    for err in RpcIntErr:
        try:
            _, text = encode_resp_err(0, EncodedErr(err))
        except (RpcError, TypeError, ValueError):
            continue
        if text:
            table[bytes(text)] = err
    return table


def _as_i32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - (1 << 32) if value >= (1 << 31) else value


class TcpClient(ClientTransport):
    """One client connection: writes requests and reads responses."""

    def __init__(
        self,
        stream: UnifyStream,
        logger: Any,
        server_id: int,
        client_id: int,
        read_timeout: float | None,
        write_timeout: float | None,
    ) -> None:
        self.stream = stream
        self.logger = logger if logger is not None else log
        self.server_id = server_id
        self.client_id = client_id
        self.read_timeout = read_timeout or None
        self.write_timeout = write_timeout or None

    def __repr__(self) -> str:
        return f"rpc client {self.server_id}:{self.client_id}"

    @classmethod
    async def connect(
        cls,
        addr: str,
        config: ClientConfig,
        client_id: int,
        server_id: int,
        logger: Any,
    ) -> TcpClient:
        """Connect to ``addr``; raises RpcError(UNREACHABLE) on failure."""
        buf_size = config.stream_buf_size or CLIENT_DEFAULT_BUF_SIZE
        try:
            stream = await connect_stream(addr, config.connect_timeout, buf_size)
        except ValueError as exc:
            log.error("Cannot parsing addr %s: %s", addr, exc)
            raise RpcError(RpcIntErr.UNREACHABLE) from exc
        except OSError as exc:
            log.warning("Cannot connect addr %s: %s", addr, exc)
            raise RpcError(RpcIntErr.UNREACHABLE) from exc
        return cls(
            stream, logger, server_id, client_id, config.read_timeout, config.write_timeout
        )

    async def _read_exact(self, n: int) -> bytes:
        return await asyncio.wait_for(self.stream.read_exact(n), self.read_timeout)

    async def _write(self, data: bytes) -> None:
        try:
            await asyncio.wait_for(self.stream.write_all(data), self.write_timeout)
        except OSError as exc:
            self.logger.warning("%r write_req err: %s", self, exc)
            raise

    async def close_conn(self) -> None:
        """Flush and shut down the sending direction."""
        try:
            await self.flush_req()
        except OSError:
            return
        with contextlib.suppress(OSError):
            await self.stream.shutdown_write()

    async def flush_req(self) -> None:
        """Write out buffered requests; raises OSError on failure."""
        try:
            await asyncio.wait_for(self.stream.flush(), self.write_timeout)
        except OSError as exc:
            self.logger.warning("%r flush_req flush err: %s", self, exc)
            raise
        self.logger.debug("%r: flush_req ok", self)

    async def write_req(
        self,
        need_flush: bool,
        header: bytes,
        action_str: bytes | None,
        msg_buf: bytes,
        blob: bytes | None,
    ) -> None:
        """Write an encoded request; raises OSError on failure."""
        await self._write(header)
        if action_str is not None:
            await self._write(action_str)
        if msg_buf:
            await self._write(msg_buf)
        if blob is not None:
            await self._write(blob)
        if need_flush:
            await self.flush_req()

    async def _read_header_or_close(self, close_event: asyncio.Event) -> bytes | None:
        read = asyncio.ensure_future(self.stream.read_exact(RPC_RESP_HEADER_LEN))
        closer = asyncio.ensure_future(close_event.wait())
        try:
            done, _ = await asyncio.wait({read, closer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closer.cancel()
            if not read.done():
                read.cancel()
                with contextlib.suppress(asyncio.CancelledError, OSError, EOFError):
                    await read
        if read not in done:
            return None
        return read.result()

    async def read_resp(
        self,
        factory: ClientFactory,
        codec: Codec,
        close_event: asyncio.Event | None,
        task_reg: ClientTaskTimer,
    ) -> bool:
        """Read one response and complete its task.

        Returns False when ``close_event`` was set before a header arrived.
        Raises RpcError on read or decode failure.
        """
        try:
            if close_event is None:
                raw = await self._read_exact(RPC_RESP_HEADER_LEN)
            else:
                raw = await self._read_header_or_close(close_event)
                if raw is None:
                    return False
        except (OSError, EOFError) as exc:
            self.logger.debug("%r rpc client read resp head err: %s", self, exc)
            raise RpcError(RpcIntErr.IO) from exc
        try:
            head = decode_resp_head(raw)
        except RpcError as exc:
            self.logger.debug("%r rpc client decode_response_header err: %s", self, exc)
            raise
        self.logger.debug("%r rpc client read head response %s", self, head)
        try:
            await self._recv_resp_body(factory, codec, task_reg, head)
        except (OSError, EOFError) as exc:
            raise RpcError(RpcIntErr.IO) from exc
        return True

    async def _recv_and_dump(self, length: int) -> None:
        try:
            await self._read_exact(length)
        except (OSError, EOFError) as exc:
            self.logger.warning("%r recv task failed: %s", self, exc)
            raise

    @staticmethod
    def _fail(factory: ClientFactory, task: ClientTask, err: RpcIntErr) -> None:
        task.set_rpc_error(err)
        factory.error_handle(task)

    async def _recv_error(
        self, factory: ClientFactory, codec: Codec, head: RespHead, task: ClientTask
    ) -> None:
        if head.flag == RESP_FLAG_HAS_ERRNO:
            task.set_custom_error(codec, EncodedErr(_as_i32(head.msg_len)))
            factory.error_handle(task)
            return
        if head.flag != RESP_FLAG_HAS_ERR_STRING:
            self.logger.error("%r unknown response flag %d", self, head.flag)
            self._fail(factory, task, RpcIntErr.DECODE)
            raise RpcError(RpcIntErr.DECODE)
        try:
            text = await self._read_exact(max(head.blob_len, 0))
        except (OSError, EOFError) as exc:
            self.logger.warning("%r recv buffer error: %s", self, exc)
            self._fail(factory, task, RpcIntErr.IO)
            raise
        rpc_err = _rpc_err_by_text().get(bytes(text))
        if rpc_err is not None:
            self._fail(factory, task, rpc_err)
            return
        task.set_custom_error(codec, EncodedErr(bytes(text)))
        factory.error_handle(task)

    async def _recv_resp_body(
        self, factory: ClientFactory, codec: Codec, task_reg: ClientTaskTimer, head: RespHead
    ) -> None:
        blob_len = head.blob_len
        task = await task_reg.take_task(head.seq)
        if task is None:
            self.logger.debug("%r timer take_task(seq=%d) return None", self, head.seq)
            data_len = 0
            if head.flag == 0:
                data_len = head.msg_len + max(blob_len, 0)
            elif head.flag == RESP_FLAG_HAS_ERR_STRING:
                data_len = max(blob_len, 0)
            if data_len > 0:
                await self._recv_and_dump(data_len)
            return
        if head.flag > 0:
            await self._recv_error(factory, codec, head, task)
            return
        msg = b""
        if head.msg_len > 0:
            try:
                msg = await self._read_exact(head.msg_len)
            except (OSError, EOFError):
                self._fail(factory, task, RpcIntErr.IO)
                raise
        if blob_len > 0:
            buf = task.reserve_resp_blob(blob_len)
            if buf is None:
                self.logger.error("%r rpc client task %r has no ext_buf", self, task)
                self._fail(factory, task, RpcIntErr.DECODE)
                await self._recv_and_dump(blob_len)
                return
            try:
                data = await self._read_exact(blob_len)
            except (OSError, EOFError) as exc:
                self.logger.warning("%r rpc client reader read ext_buf err: %s", self, exc)
                self._fail(factory, task, RpcIntErr.IO)
                raise
            buf[:] = data
        self.logger.debug("%r recv task %r ok", self, task)
        if head.msg_len > 0:
            try:
                task.decode_resp(codec, msg)
            except Exception:
                self.logger.warning("%r rpc client reader decode resp err", self)
                self._fail(factory, task, RpcIntErr.DECODE)
                return
        task.set_ok()
        task.done()