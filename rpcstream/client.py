"""Client-side building blocks: configuration, factory, transport interface and tasks."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any

from .proto import Codec, EncodedErr, JsonCodec, RpcError, RpcIntErr


@dataclass
class ClientConfig:
    """Client connection settings; timeouts are in seconds."""

    task_timeout: int = 20
    thresholds: int = 128
    connect_timeout: float = 5.0
    read_timeout: float = 5.0
    write_timeout: float = 5.0
    stream_buf_size: int = 0


class ClientFactory:
    """Holds the pluggable parts of a client: transport, codec, config and logging."""

    def __init__(
        self,
        transport: type[ClientTransport],
        config: ClientConfig | None = None,
        *,
        codec_factory: Callable[[], Codec] = JsonCodec,
        client_id: int = 0,
    ) -> None:
        self.transport = transport
        self.config = config if config is not None else ClientConfig()
        self.codec_factory = codec_factory
        self.client_id = client_id
        self._background: set[asyncio.Task] = set()

    def new_codec(self) -> Codec:
        return self.codec_factory()

    def spawn_detach(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        """Run ``coro`` in the background on the running loop."""
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def new_logger(self, client_id: int, server_id: int) -> logging.LoggerAdapter:
        """Logger for one client connection."""
        return logging.LoggerAdapter(
            logging.getLogger("rpcstream.client"),
            {"client_id": client_id, "server_id": server_id},
        )

    def error_handle(self, task: ClientTask) -> None:
        """Called with a failed task; override to implement retries."""
        task.done()


class ClientTransport(ABC):
    """Transport-layer connection used by the client."""

    logger: logging.Logger | logging.LoggerAdapter

    @classmethod
    @abstractmethod
    async def connect(cls, addr, config, client_id, server_id, logger) -> ClientTransport:
        """Open a connection; raises RpcError(RpcIntErr.UNREACHABLE) on failure."""

    @abstractmethod
    async def close_conn(self) -> None:
        """Flush and shut down the write direction."""

    @abstractmethod
    async def flush_req(self) -> None:
        """Flush buffered requests; raises OSError on failure."""

    @abstractmethod
    async def write_req(self, need_flush, header, action_str, msg_buf, blob) -> None:
        """Write an encoded request; raises OSError on failure."""

    @abstractmethod
    async def read_resp(self, factory, codec, close_event, task_reg) -> bool:
        """Read one response and complete its task; False when aborted by close_event."""


@dataclass(eq=False)
class ClientTask:
    """A request sent by the client and the place its response is stored."""

    action: int | str
    req: Any = None
    req_blob: bytes | None = None
    accepts_resp_blob: bool = False
    on_done: Callable[[ClientTask], Any] | None = field(default=None, repr=False)
    seq: int = 0
    resp: Any = None
    resp_blob: bytearray | None = field(default=None, repr=False)
    error: RpcError | None = None
    _ok: bool = field(default=False, repr=False)

    def get_action(self) -> int | str:
        return self.action

    def encode_req(self, codec: Codec) -> bytes:
        return codec.encode(self.req)

    def decode_resp(self, codec: Codec, buf: bytes) -> None:
        self.resp = codec.decode(buf)

    def reserve_resp_blob(self, size: int) -> memoryview | None:
        """Buffer of ``size`` bytes for the response blob, or None if not accepted."""
        if not self.accepts_resp_blob:
            return None
        self.resp_blob = bytearray(size)
        return memoryview(self.resp_blob)

    def set_custom_error(self, codec: Codec, err: EncodedErr) -> None:
        value = err.value
        if isinstance(value, RpcIntErr):
            self.error = RpcError(value)
        elif isinstance(value, bytes):
            self.error = RpcError(value.decode("utf-8", "replace"))
        else:
            self.error = RpcError(value)
        self._ok = False

    def set_rpc_error(self, err: RpcIntErr) -> None:
        self.error = RpcError(err)
        self._ok = False

    def set_ok(self) -> None:
        self.error = None
        self._ok = True

    def done(self) -> None:
        """Notify the owner that the task has finished."""
        if self.on_done is not None:
            self.on_done(self)

    def result(self) -> Any:
        """The decoded response; raises the stored RpcError if the task failed."""
        if self.error is not None:
            raise self.error
        if not self._ok:
            raise RuntimeError(f"task seq={self.seq} has no result yet")
        return self.resp