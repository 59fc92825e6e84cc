"""Client-side connection.

An RpcClient sends tasks in sequence over one transport connection. Each
task gets a sequence number unique within the connection. After a task has
been written out it is registered with a ClientTaskTimer, and a background
receive loop matches responses to tasks by sequence number. The loop ticks
once per second to age registered tasks and time out the ones that waited
too long.

Closing the client shuts the sending side only: the receive loop keeps going
until every registered task got its response or timed out.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from itertools import count
from typing import Any

from .client import ClientFactory, ClientTask, ClientTransport
from .client_timer import ClientTaskTimer
from .proto import PING_ACTION, RPC_MAGIC, ReqHead, RpcError, RpcIntErr, encode_request
from .throttler import Throttler

log = logging.getLogger(__name__)

TICK_INTERVAL = 1.0


@dataclass
class RespTimestamp:
    """Unix time in seconds of the last response received; shareable with probes."""

    value: int = 0


async def connect(
    factory: ClientFactory,
    addr: str,
    server_id: int = 0,
    last_resp_ts: RespTimestamp | None = None,
) -> RpcClient:
    """Open a streaming connection to ``addr``.

    Raises the RpcError of the transport (usually RpcIntErr.UNREACHABLE) on failure.
    """
    client_id = factory.client_id
    logger = factory.new_logger(client_id, server_id)
    conn = await factory.transport.connect(addr, factory.config, client_id, server_id, logger)
    return RpcClient(factory, conn, client_id, server_id, last_resp_ts)


class RpcClient:
    """A client connection that sends tasks and receives their responses in the background."""

    def __init__(
        self,
        factory: ClientFactory,
        conn: ClientTransport,
        client_id: int,
        server_id: int,
        last_resp_ts: RespTimestamp | None = None,
    ) -> None:
        config = factory.config
        self.factory = factory
        self.conn = conn
        self.client_id = client_id
        self.server_id = server_id
        self.codec = factory.new_codec()
        self._logger = getattr(conn, "logger", log)
        self._last_resp_ts = last_resp_ts
        self._seq = count(1)
        self._closed = False
        self._has_err = False
        self._close_event = asyncio.Event()
        thresholds = config.thresholds
        self._timer = ClientTaskTimer(server_id, client_id, config.task_timeout, thresholds)
        if thresholds > 0:
            self._logger.debug("%r throttler is set to %d", self, thresholds)
            self._throttler: Throttler | None = Throttler(thresholds)
        else:
            self._logger.debug("%r throttler is disabled", self)
            self._throttler = None
        self._logger.debug("%r connected", self)
        self._recv_task = factory.spawn_detach(self._receive_loop())

    def __repr__(self) -> str:
        return repr(self.conn)

    async def __aenter__(self) -> RpcClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        """True once either the sending or the receiving side has closed."""
        return self._closed

    @property
    def last_resp_ts(self) -> int:
        """Time of the last response, 0 when not tracked."""
        return self._last_resp_ts.value if self._last_resp_ts is not None else 0

    def _next_seq(self) -> int:
        return next(self._seq)

    def _stop_reg(self) -> None:
        # Registrations already queued must reach the timer before it stops accepting.
        self._timer.poll_sent_task()
        self._timer.stop_reg_task()

    def _fail_conn(self) -> None:
        self._closed = True
        self._has_err = True
        self._stop_reg()

    async def ping(self) -> None:
        """Send a ping to keep the connection alive; raises RpcError(IO) on failure."""
        if self._closed:
            self._logger.warning("%r send_ping_req skip as conn closed", self)
            raise RpcError(RpcIntErr.IO)
        header = ReqHead(
            magic=RPC_MAGIC,
            ver=1,
            format=0,
            action=PING_ACTION,
            seq=self._next_seq(),
            client_id=self.client_id,
            msg_len=0,
            blob_len=0,
        )
        try:
            await self.conn.write_req(True, header.to_bytes(), None, b"", None)
        except OSError as exc:
            self._logger.warning("%r send ping err: %s", self, exc)
            self._closed = True
            raise RpcError(RpcIntErr.IO) from exc

    async def send_task(self, task: ClientTask, need_flush: bool = False) -> None:
        """Send ``task``; must not be called concurrently.

        On failure the task is completed with the error through the factory's
        error_handle and RpcError(IO) is raised.
        """
        timer = self._timer
        timer.pending_task_count += 1
        if self._closed:
            self._logger.warning("%r sending task %r failed: %s", self, task, RpcIntErr.IO)
            task.set_rpc_error(RpcIntErr.IO)
            self.factory.error_handle(task)
            timer.pending_task_count -= 1
            raise RpcError(RpcIntErr.IO)
        try:
            await self._send_request(task, need_flush)
        except RpcError as exc:
            self._logger.warning("%r sending task %r err: %s", self, task, exc)
            timer.pending_task_count -= 1
            task.set_rpc_error(exc.rpc or RpcIntErr.IO)
            self.factory.error_handle(task)
            self._fail_conn()
            raise RpcError(RpcIntErr.IO) from exc
        self._logger.debug("%r send task %r ok", self, task)
        guard = self._throttler.add_task() if self._throttler is not None else None
        await timer.reg_task(task, guard)

    async def _send_request(self, task: ClientTask, need_flush: bool) -> None:
        task.seq = self._next_seq()
        try:
            header, action_bytes, msg, blob = encode_request(self.codec, self.client_id, task)
        except (RpcError, TypeError, ValueError) as exc:
            self._logger.warning("%r send_req encode req %r err", self, task)
            raise RpcError(RpcIntErr.ENCODE) from exc
        try:
            await self.conn.write_req(need_flush, header.to_bytes(), action_bytes, msg, blob)
        except OSError as exc:
            self._logger.warning("%r send_req write req %r err: %s", self, task, exc)
            self._fail_conn()
            raise RpcError(RpcIntErr.IO) from exc

    async def flush_req(self) -> None:
        """Flush buffered requests; raises RpcError(IO) and closes on failure."""
        try:
            await self.conn.flush_req()
        except OSError as exc:
            self._logger.warning("%r flush_req flush err: %s", self, exc)
            self._fail_conn()
            raise RpcError(RpcIntErr.IO) from exc

    def will_block(self) -> bool:
        """True when the throttler is about to make throttle() wait."""
        return self._throttler.nearly_full() if self._throttler is not None else False

    async def throttle(self) -> bool:
        """Wait for in-flight tasks to drop below the threshold; True if it waited."""
        if self._closed or self._throttler is None:
            return False
        return await self._throttler.throttle()

    async def set_error_and_exit(self) -> None:
        """Force the receive loop to exit, failing every pending task."""
        self._has_err = True
        await self.conn.close_conn()
        self._close_event.set()

    def close(self) -> None:
        """Close the sending side; pending tasks still get their responses."""
        self._close_event.set()
        self._stop_reg()
        self._closed = True

    async def wait_closed(self) -> None:
        """Wait until the receive loop has finished."""
        with contextlib.suppress(asyncio.CancelledError):
            await self._recv_task

    async def _recv_one_resp(self) -> None:
        timer = self._timer
        while True:
            if self._closed:
                if timer.check_pending_tasks_empty() or self._has_err:
                    raise RpcError(RpcIntErr.IO)
                try:
                    await self.conn.read_resp(self.factory, self.codec, None, timer)
                except (RpcError, OSError, EOFError) as exc:
                    self._closed = True
                    raise RpcError(RpcIntErr.IO) from exc
                return
            try:
                got = await self.conn.read_resp(
                    self.factory, self.codec, self._close_event, timer
                )
            except (RpcError, OSError, EOFError) as exc:
                raise RpcError(RpcIntErr.IO) from exc
            if got:
                return
            self._closed = True

    async def _recv_forever(self) -> None:
        while True:
            await self._recv_one_resp()
            if self._last_resp_ts is not None:
                self._last_resp_ts.value = int(time.time())

    def _time_reach(self) -> None:
        if self._throttler is not None:
            self._logger.debug("%r has %d pending_tasks", self, self._throttler.inflight)
        self._timer.poll_sent_task()
        self._timer.adjust_task_queue(self.factory)

    async def _receive_loop(self) -> None:
        recv = asyncio.ensure_future(self._recv_forever())
        try:
            while True:
                done, _ = await asyncio.wait({recv}, timeout=TICK_INTERVAL)
                if done:
                    exc: Any = recv.exception()
                    self._logger.debug("%r receive_loop error: %s", self, exc)
                    break
                self._time_reach()
                if self._has_err:
                    self._logger.debug("%r receive_loop exits on error", self)
                    break
        finally:
            if not recv.done():
                recv.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await recv
            self._closed = True
            self._timer.clean_pending_tasks(self.factory)
        while self._timer.pending_task_count > 0:
            self._timer.clean_pending_tasks(self.factory)
            await asyncio.sleep(TICK_INTERVAL)