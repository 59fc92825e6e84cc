"""Limits the number of in-flight tasks of a connection."""

from __future__ import annotations

import asyncio


class TaskGuard:
    """Counts one in-flight task until released; releasing twice has no effect."""

    def __init__(self, throttler: Throttler) -> None:
        self._throttler = throttler
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if not self._released:
            self._released = True
            self._throttler._finish()

    def __enter__(self) -> TaskGuard:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


class Throttler:
    """Tracks in-flight tasks and lets the sender wait while there are too many."""

    def __init__(self, thresholds: int) -> None:
        self.thresholds = thresholds
        self._inflight = 0
        self._waiters: list[tuple[int, asyncio.Future]] = []

    @property
    def inflight(self) -> int:
        """Number of tasks still waiting for a response."""
        return self._inflight

    def nearly_full(self) -> bool:
        """True when sending one more task would exceed the threshold."""
        return self._inflight + 1 > self.thresholds

    async def throttle(self) -> bool:
        """Wait until fewer tasks than the threshold are in flight.

        Returns True if it had to wait, False if it returned at once or
        throttling is disabled (threshold 0).
        """
        target = self.thresholds
        if target <= 0 or self._inflight < target:
            return False
        fut = asyncio.get_running_loop().create_future()
        entry = (target, fut)
        self._waiters.append(entry)
        try:
            await fut
        finally:
            if entry in self._waiters:
                self._waiters.remove(entry)
        return True

    def add_task(self) -> TaskGuard:
        """Count a new in-flight task; release the returned guard when it finishes."""
        self._inflight += 1
        return TaskGuard(self)

    def _finish(self) -> None:
        self._inflight -= 1
        remaining = []
        for target, fut in self._waiters:
            if fut.done():
                continue
            if self._inflight < target:
                fut.set_result(None)
            else:
                remaining.append((target, fut))
        self._waiters = remaining