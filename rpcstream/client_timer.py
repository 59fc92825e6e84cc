"""Tracks sent client tasks until their response arrives or they time out.

Tasks are registered through a bounded queue after they have been written
out. Registered tasks of the current second live in one batch; every tick
the batch is pushed onto a queue of past batches, and batches older than
``task_timeout`` ticks are failed with a timeout error.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass

from .client import ClientFactory, ClientTask
from .proto import RpcIntErr
from .throttler import TaskGuard

log = logging.getLogger(__name__)

DEFAULT_THRESHOLDS = 500


@dataclass
class ClientTaskItem:
    """A registered task and the throttler slot it occupies."""

    task: ClientTask
    guard: TaskGuard | None = None

    def release(self) -> ClientTask:
        """Free the throttler slot and hand back the task."""
        if self.guard is not None:
            self.guard.release()
        return self.task


class ClientTaskTimer:
    """Registry of in-flight client tasks with batch timeouts."""

    def __init__(self, server_id: int, client_id: int, task_timeout: int, thresholds: int) -> None:
        if thresholds == 0:
            thresholds = DEFAULT_THRESHOLDS
        self.server_id = server_id
        self.client_id = client_id
        self.task_timeout = task_timeout
        self.pending_task_count = 0
        self.min_delay_seq = 0
        self.processed_seq = 0
        self._pending: asyncio.Queue[ClientTaskItem] = asyncio.Queue(maxsize=thresholds * 2)
        self._sent: dict[int, ClientTaskItem] = {}
        self._delayed: deque[dict[int, ClientTaskItem]] = deque()
        self._reg_stopped = False
        self._wakeup = asyncio.Event()

    @property
    def reg_stopped(self) -> bool:
        return self._reg_stopped

    async def reg_task(self, task: ClientTask, guard: TaskGuard | None = None) -> None:
        """Register a sent task, waiting while the registration queue is full."""
        # Wake a reader blocked in take_task so it drains the queue and frees room.
        self._wakeup.set()
        await self._pending.put(ClientTaskItem(task, guard))
        self._wakeup.set()

    def stop_reg_task(self) -> None:
        """Stop waiting for registrations; pending take_task calls give up."""
        self._reg_stopped = True
        self._wakeup.set()

    async def take_task(self, seq: int) -> ClientTask | None:
        """Remove and return the task with ``seq``, or None if it is unknown or timed out."""
        if seq < self.min_delay_seq:
            return None
        if seq > self.processed_seq and not await self._wait_registered(seq):
            return None
        item = self._sent.pop(seq, None)
        if item is None:
            for batch in self._delayed:
                item = batch.pop(seq, None)
                if item is not None:
                    break
        return None if item is None else item.release()

    async def _wait_registered(self, seq: int) -> bool:
        while True:
            if self.processed_seq >= seq:
                return True
            if self._reg_stopped:
                return False
            if self.poll_sent_task() and self.processed_seq >= seq:
                return True
            self._wakeup.clear()
            await self._wakeup.wait()

    def poll_sent_task(self) -> bool:
        """Move every queued registration into the current batch; True if any arrived."""
        got = False
        while True:
            try:
                item = self._pending.get_nowait()
            except asyncio.QueueEmpty:
                return got
            self._got_pending_task(item)
            got = True

    def _got_pending_task(self, item: ClientTaskItem) -> None:
        self.pending_task_count -= 1
        seq = item.task.seq
        self.processed_seq = seq
        self._sent[seq] = item

    @staticmethod
    def _fail(factory: ClientFactory, item: ClientTaskItem, err: RpcIntErr) -> None:
        task = item.release()
        task.set_rpc_error(err)
        factory.error_handle(task)

    def clean_pending_tasks(self, factory: ClientFactory) -> None:
        """Fail every registered task with an IO error."""
        self.poll_sent_task()
        sent, self._sent = self._sent, {}
        for item in sent.values():
            self._fail(factory, item, RpcIntErr.IO)
        for batch in self._delayed:
            items = list(batch.values())
            batch.clear()
            for item in items:
                self._fail(factory, item, RpcIntErr.IO)

    def check_pending_tasks_empty(self) -> bool:
        """True when no registered task is waiting for a response."""
        self.poll_sent_task()
        if self._sent:
            return False
        return not any(self._delayed)

    def adjust_task_queue(self, factory: ClientFactory) -> None:
        """Age the batches by one tick and time out the oldest one if it is too old."""
        batch, self._sent = self._sent, {}
        self._delayed.appendleft(batch)
        if len(self._delayed) <= self.task_timeout:
            return
        expired = self._delayed.pop()
        if not expired:
            return
        self.min_delay_seq = min(item.task.seq for item in expired.values())
        for item in expired.values():
            log.warning(
                "task %r is timeout on client=%s:%s", item.task, self.server_id, self.client_id
            )
            self._fail(factory, item, RpcIntErr.TIMEOUT)