"""Server-side connection handling and ready-made dispatch and task types.

An RpcServer accepts connections from its listeners. Every connection gets
one reader coroutine that reads requests and hands them to a ReqDispatch,
and one writer coroutine that encodes and writes out finished tasks that
arrive through the connection's response channel.
"""

from __future__ import annotations

import asyncio
import errno
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .proto import PING_ACTION, Codec, EncodedErr, JsonCodec, RpcError, RpcIntErr
from .server import (
    EncodedResp,
    QuickResp,
    ReqDispatch,
    RespChannel,
    RespNoti,
    RespReceiver,
    RpcSvrReq,
    RpcSvrResp,
    ServerFactory,
    ServerTaskDone,
    ServerTransport,
)

log = logging.getLogger(__name__)

_UNIX_DUMMY_ADDR = "0.0.0.0:0"


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _encode_error(codec: Codec, err: Any) -> EncodedErr:
    """Turn a result error (errno, framework error, text or object) into its wire form."""
    if isinstance(err, EncodedErr):
        return err
    if isinstance(err, RpcError):
        return _encode_error(codec, err.err)
    if isinstance(err, RpcIntErr):
        return EncodedErr(err)
    if isinstance(err, int):
        return EncodedErr(int(err))
    if isinstance(err, str | bytes | bytearray):
        return EncodedErr(err)
    try:
        return EncodedErr(bytes(codec.encode(err)))
    except Exception:
        return EncodedErr(RpcIntErr.ENCODE)


class RpcServer:
    """Listens, accepts and serves connections as described by a ServerFactory."""

    def __init__(self, factory: ServerFactory) -> None:
        self.factory = factory
        self.logger = factory.new_logger()
        self._listeners: list[tuple[asyncio.Task, Any, str]] = []
        self._close_event = asyncio.Event()
        self._alive = 0
        self._all_closed = asyncio.Event()
        self._all_closed.set()

    @property
    def alive_conn(self) -> int:
        """Number of connections whose reader or writer is still running."""
        return self._alive

    async def listen(self, addr: str) -> str:
        """Start accepting on ``addr`` and return the local address; raises OSError."""
        transport: type[ServerTransport] = self.factory.transport
        try:
            listener = await _resolve(transport.bind(addr))
        except OSError as exc:
            log.error("bind addr %r err: %s", addr, exc)
            raise
        try:
            local_addr = await _resolve(listener.local_addr())
        except OSError as exc:
            if exc.errno != errno.EADDRNOTAVAIL:
                await _resolve(listener.close())
                raise
            # Unix sockets have no address of this form.
            local_addr = _UNIX_DUMMY_ADDR
        log.debug("listening on %r", listener)
        task = self.factory.spawn_detach(self._accept_loop(listener))
        self._listeners.append((task, listener, f"listener {addr!r}"))
        return local_addr

    async def _accept_loop(self, listener: Any) -> None:
        while True:
            try:
                stream = await listener.accept()
            except Exception as exc:
                log.warning("%r accept error: %s", listener, exc)
                return
            conn = self.factory.transport.new_conn(stream, self.factory)
            self._serve_conn(conn)

    def _conn_opened(self) -> None:
        self._alive += 1
        self._all_closed.clear()

    def _conn_closed(self) -> None:
        self._alive -= 1
        if self._alive == 0:
            self._all_closed.set()

    def _serve_conn(self, conn: ServerTransport) -> None:
        dispatch = self.factory.new_dispatcher()
        channel = RespChannel()
        noti = channel.noti()
        self._conn_opened()
        tasks = {
            self.factory.spawn_detach(self._read_loop(conn, dispatch, noti)),
            self.factory.spawn_detach(self._write_loop(conn, dispatch, channel)),
        }

        def on_done(task: asyncio.Task) -> None:
            tasks.discard(task)
            if not tasks:
                self._conn_closed()

        for task in list(tasks):
            task.add_done_callback(on_done)

    @staticmethod
    def _quick_resp(conn: Any, noti: RespNoti, seq: int, err: RpcIntErr | None) -> bool:
        try:
            noti.send_err(seq, err)
        except RpcError:
            getattr(conn, "logger", log).warning("%r reader abort due to writer has err", conn)
            return False
        return True

    async def _read_loop(self, conn: ServerTransport, dispatch: ReqDispatch, noti: RespNoti) -> None:
        logger = getattr(conn, "logger", log)
        try:
            while True:
                try:
                    req: RpcSvrReq = await conn.read_req(self._close_event)
                except (RpcError, OSError, EOFError) as exc:
                    logger.debug("%r reader exits: %s", conn, exc)
                    return
                if (
                    not isinstance(req.action, str)
                    and req.action == PING_ACTION
                    and not req.msg
                ):
                    if not self._quick_resp(conn, noti, req.seq, None):
                        return
                    continue
                task_noti = noti.clone()
                try:
                    await dispatch.dispatch_req(req, task_noti)
                except Exception as exc:
                    logger.debug("%r dispatch seq=%d failed: %s", conn, req.seq, exc)
                    # The request is answered with a decode error; drop its notifier.
                    task_noti.close()
                    if not self._quick_resp(conn, noti, req.seq, RpcIntErr.DECODE):
                        return
        finally:
            noti.close()

    @staticmethod
    async def _write_item(conn: ServerTransport, dispatch: ReqDispatch, item: Any) -> None:
        if isinstance(item, QuickResp):
            res = (b"", None) if item.err is None else EncodedErr(item.err)
            await conn.write_resp(item.seq, res)
            return
        getattr(conn, "logger", log).debug("write_resp %r", item)
        seq, res = dispatch.encode_resp(item)
        await conn.write_resp(seq, res)

    async def _write_loop(
        self, conn: ServerTransport, dispatch: ReqDispatch, channel: RespChannel
    ) -> None:
        logger = getattr(conn, "logger", log)
        try:
            async for item in channel:
                await self._write_item(conn, dispatch, item)
                for queued in channel.drain():
                    await self._write_item(conn, dispatch, queued)
                await conn.flush_resp()
        except OSError as exc:
            logger.warning("%r writer error: %s", conn, exc)
            return
        finally:
            channel.close()
        logger.debug("%r writer exits", conn)
        await conn.close_conn()

    async def close(self) -> int:
        """Close gracefully and return the number of connections still alive.

        Listeners stop first, then connection readers are told to exit; writers
        finish once every pending response has been sent. Waits at most
        ``server_close_wait`` seconds for the connections to go away.
        """
        for task, listener, info in self._listeners:
            task.cancel()
            try:
                await _resolve(listener.close())
            except OSError as exc:
                self.logger.warning("%s close error: %s", info, exc)
            self.logger.info("%s has closed", info)
        self._listeners.clear()
        self._close_event.set()
        if self._alive > 0:
            try:
                await asyncio.wait_for(
                    self._all_closed.wait(), self.factory.config.server_close_wait
                )
            except TimeoutError:
                self.logger.warning(
                    "closed as wait too long for all conn closed voluntarily(%d conn left)",
                    self._alive,
                )
        self.logger.info("server closed with alive conn %d", self._alive)
        return self._alive


class RespReceiverTask(RespReceiver):
    """Receiver for task objects that encode themselves with ``encode_resp(codec)``."""

    def encode_resp(self, codec: Codec, task: Any) -> EncodedResp:
        return task.encode_resp(codec)


class RespReceiverBuf(RespReceiver):
    """Receiver for responses already encoded into RpcSvrResp."""

    def encode_resp(self, codec: Codec, item: RpcSvrResp) -> EncodedResp:
        if item.res is not None:
            return item.seq, item.res
        if item.msg is None:
            raise ValueError(f"response seq={item.seq} has neither a message nor an error")
        return item.seq, (item.msg, item.blob)


class ReqDispatchClosure(ReqDispatch):
    """Decodes each request into ``task_type`` and passes it to ``task_handle``.

    The handler may be a plain function or a coroutine function; it reports
    failure by raising.
    """

    def __init__(
        self,
        task_type: Any,
        task_handle: Callable[[Any], Any],
        codec: Codec | None = None,
        receiver: RespReceiver | None = None,
    ) -> None:
        self.task_type = task_type
        self.task_handle = task_handle
        self.codec = codec if codec is not None else JsonCodec()
        self.receiver = receiver if receiver is not None else RespReceiverTask()

    async def dispatch_req(self, req: RpcSvrReq, noti: RespNoti) -> None:
        try:
            task = self.task_type.decode_req(
                self.codec, req.action, req.seq, req.msg, req.blob, noti
            )
        except Exception as exc:
            log.error("action %r seq=%d decode err", req.action, req.seq)
            noti.close()
            raise RpcError(RpcIntErr.DECODE) from exc
        try:
            await _resolve(self.task_handle(task))
        except Exception:
            log.error("action %r seq=%d dispatch err", req.action, req.seq)
            raise

    def encode_resp(self, task: Any) -> EncodedResp:
        return self.receiver.encode_resp(self.codec, task)


def _result_suffix(has_result: bool, res: Any) -> str:
    if not has_result:
        return ""
    return " ok" if res is None else f" err: {res}"


@dataclass(eq=False, repr=False)
class ServerTaskVariant(ServerTaskDone):
    """A server task whose request message is replaced by the response message.

    ``res`` holds the error after set_result(), None for success.
    """

    seq: int
    action: int | str
    msg: Any = None
    blob: bytes | None = None
    res: Any = None
    has_result: bool = False
    noti: RespNoti | None = None

    @classmethod
    def decode_req(cls, codec, action, seq, msg, blob, noti) -> ServerTaskVariant:
        return cls(seq=seq, action=action, msg=codec.decode(msg), blob=blob, noti=noti)

    def get_action(self) -> int | str:
        return self.action

    def _set_result(self, res: Any) -> RespNoti:
        noti = self.noti
        if noti is None:
            raise RuntimeError(f"task seq={self.seq} already has a result")
        self.res = res
        self.has_result = True
        self.noti = None
        return noti

    def encode_resp(self, codec: Codec) -> EncodedResp:
        if not self.has_result:
            raise RuntimeError("no result when encode_resp")
        if self.res is not None:
            return self.seq, _encode_error(codec, self.res)
        try:
            resp = codec.encode(self.msg)
        except Exception:
            return self.seq, EncodedErr(RpcIntErr.ENCODE)
        return self.seq, (bytes(resp), self.blob)

    def __repr__(self) -> str:
        return (
            f"task seq={self.seq} action={self.action!r} {self.msg!r}"
            f"{_result_suffix(self.has_result, self.res)}"
        )


@dataclass(eq=False, repr=False)
class ServerTaskVariantFull(ServerTaskDone):
    """A server task that carries the request and the response side by side.

    ``res`` holds the error after set_result(), None for success.
    """

    seq: int
    action: int | str
    req: Any = None
    req_blob: bytes | None = None
    resp: Any = None
    resp_blob: bytes | None = None
    res: Any = None
    has_result: bool = False
    _noti: RespNoti | None = field(default=None, repr=False)

    @classmethod
    def decode_req(cls, codec, action, seq, msg, blob, noti) -> ServerTaskVariantFull:
        return cls(seq=seq, action=action, req=codec.decode(msg), req_blob=blob, _noti=noti)

    def get_action(self) -> int | str:
        return self.action

    def _set_result(self, res: Any) -> RespNoti:
        noti = self._noti
        if noti is None:
            raise RuntimeError(f"task seq={self.seq} already has a result")
        self.res = res
        self.has_result = True
        self._noti = None
        return noti

    def encode_resp(self, codec: Codec) -> EncodedResp:
        if not self.has_result:
            raise RuntimeError("no result when encode_resp")
        if self.res is not None:
            return self.seq, _encode_error(codec, self.res)
        if self.resp is None:
            return self.seq, (b"", self.resp_blob)
        try:
            resp = codec.encode(self.resp)
        except Exception:
            return self.seq, EncodedErr(RpcIntErr.ENCODE)
        return self.seq, (bytes(resp), self.resp_blob)

    def __repr__(self) -> str:
        return (
            f"task seq={self.seq} action={self.action!r} {self.req!r}"
            f"{_result_suffix(self.has_result, self.res)}"
        )