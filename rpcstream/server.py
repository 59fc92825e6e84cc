"""Server-side building blocks: configuration, factory, transport and dispatch interfaces,
and the response channel between request handlers and the connection writer."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Coroutine, Iterator
from dataclasses import dataclass
from typing import Any

from .proto import Codec, EncodedErr, RpcError, RpcIntErr

# (seq, (msg, blob)) on success, (seq, EncodedErr) on failure.
EncodedResp = tuple[int, "tuple[bytes, bytes | None] | EncodedErr"]


@dataclass
class ServerConfig:
    """Server settings; timeouts are in seconds."""

    read_timeout: float = 5.0
    write_timeout: float = 5.0
    idle_timeout: float = 120.0
    server_close_wait: float = 10.0
    stream_buf_size: int = 0


class ServerFactory:
    """Holds the pluggable parts of a server: transport, dispatcher, config and logging."""

    def __init__(
        self,
        transport: type[ServerTransport],
        dispatcher_factory: Callable[[], ReqDispatch],
        config: ServerConfig | None = None,
    ) -> None:
        self.transport = transport
        self.dispatcher_factory = dispatcher_factory
        self.config = config if config is not None else ServerConfig()
        self._background: set[asyncio.Task] = set()

    def spawn_detach(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        """Run ``coro`` in the background on the running loop."""
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def new_logger(self) -> logging.Logger:
        return logging.getLogger("rpcstream.server")

    def new_dispatcher(self) -> ReqDispatch:
        """A fresh dispatcher for a newly accepted connection."""
        return self.dispatcher_factory()


@dataclass
class RpcSvrReq:
    """A request read from a connection."""

    seq: int
    action: int | str
    msg: bytes
    blob: bytes | None = None


@dataclass
class RpcSvrResp:
    """A response encoded before it is handed to the writer; ``res`` None means success."""

    seq: int
    msg: bytes | None = None
    blob: bytes | None = None
    res: EncodedErr | None = None


@dataclass(frozen=True)
class QuickResp:
    """A response sent by the framework itself: empty on None, otherwise an error."""

    seq: int
    err: RpcIntErr | None = None


class ServerTransport(ABC):
    """Transport-layer connection used by the server."""

    logger: logging.Logger | logging.LoggerAdapter

    @classmethod
    @abstractmethod
    def bind(cls, addr: str) -> Any:
        """Open a listener on ``addr`` offering ``accept()``, ``local_addr()`` and ``close()``."""

    @classmethod
    def new_conn(cls, stream: Any, factory: ServerFactory) -> ServerTransport:
        """Wrap an accepted stream."""
        return cls(stream, factory)

    @abstractmethod
    async def read_req(self, close_event: asyncio.Event) -> RpcSvrReq:
        """Read one request; raises RpcError on failure or when ``close_event`` is set."""

    @abstractmethod
    async def write_resp(self, seq: int, res: tuple[bytes, bytes | None] | EncodedErr) -> None:
        """Write a response; raises OSError on failure."""

    @abstractmethod
    async def flush_resp(self) -> None:
        """Flush buffered responses; raises OSError on failure."""

    @abstractmethod
    async def close_conn(self) -> None:
        """Flush and shut down the write direction."""


class ReqDispatch(ABC):
    """Per-connection request handler."""

    @abstractmethod
    async def dispatch_req(self, req: RpcSvrReq, noti: RespNoti) -> None:
        """Decode and handle a request; raise when it cannot be decoded or dispatched."""

    @abstractmethod
    def encode_resp(self, task: Any) -> EncodedResp:
        """Encode a finished task for the connection writer."""


class RespReceiver(ABC):
    """Defines how items sent through RespNoti are encoded."""

    @abstractmethod
    def encode_resp(self, codec: Codec, task: Any) -> EncodedResp:
        """Encode ``task`` into its seq and response."""


_CLOSED = object()


class RespChannel:
    """Carries finished tasks from handlers to the connection writer.

    Iterating ends once every RespNoti of the channel has been closed or used.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._senders = 0
        self._sealed = False
        self._finished = False
        self._closed = False

    @property
    def closed(self) -> bool:
        """True once the receiving side stopped accepting items."""
        return self._closed

    def noti(self) -> RespNoti:
        return RespNoti(self)

    def close(self) -> None:
        """Stop accepting items; senders reporting errors will be told."""
        self._closed = True

    def _add_sender(self) -> None:
        if self._sealed:
            raise RuntimeError("response channel has no senders left")
        self._senders += 1

    def _drop_sender(self) -> None:
        self._senders -= 1
        if self._senders == 0:
            self._sealed = True
            self._queue.put_nowait(_CLOSED)

    def _send(self, item: Any) -> bool:
        if self._closed:
            return False
        self._queue.put_nowait(item)
        return True

    def __aiter__(self) -> RespChannel:
        return self

    async def __anext__(self) -> Any:
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._finished = True
            raise StopAsyncIteration
        return item

    def drain(self) -> Iterator[Any]:
        """Yield the items available right now without waiting."""
        while not self._finished:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            if item is _CLOSED:
                self._finished = True
                return
            yield item


class RespNoti:
    """A sender of responses; each clone must be used by done() or closed."""

    def __init__(self, channel: RespChannel) -> None:
        channel._add_sender()
        self._channel = channel
        self._active = True

    def _check(self) -> None:
        if not self._active:
            raise RuntimeError("response notifier already used")

    def clone(self) -> RespNoti:
        self._check()
        return RespNoti(self._channel)

    __copy__ = clone

    def done(self, task: Any) -> None:
        """Send a finished task to the writer; this uses up the notifier."""
        self._check()
        self._channel._send(task)
        self.close()

    def send_err(self, seq: int, err: RpcIntErr | None = None) -> None:
        """Send a framework response; raises RpcError(IO) when the writer has gone."""
        self._check()
        if not self._channel._send(QuickResp(seq, err)):
            raise RpcError(RpcIntErr.IO)

    def close(self) -> None:
        if self._active:
            self._active = False
            self._channel._drop_sender()

    def __enter__(self) -> RespNoti:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class ServerTaskDone(ABC):
    """Mixin for server tasks that report their result through a RespNoti."""

    @abstractmethod
    def _set_result(self, res: Any) -> RespNoti:
        """Store ``res`` (None for success) and hand back the notifier."""

    def _into_resp(self) -> Any:
        """The object sent to the writer; the task itself by default."""
        return self

    def set_result(self, res: Any = None) -> None:
        """Store the result (None for success) and send the task back."""
        noti = self._set_result(res)
        noti.done(self._into_resp())