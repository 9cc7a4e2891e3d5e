"""
Deferred callbacks for the section tracker.

The tracker only needs ``call_later(delay, callback)`` returning a handle
with ``cancel()``; an ``asyncio`` event loop already has that shape, so a
running loop can be passed straight in.  ``VirtualScheduler`` is the
deterministic stand-in used by tests and by ``flask replay-scroll``.
"""

from __future__ import annotations

import heapq
import itertools
from typing import Callable, Protocol


class Handle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def time(self) -> float: ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> Handle: ...


class VirtualHandle:
    """A pending callback on a ``VirtualScheduler``."""

    __slots__ = ("when", "callback", "_cancelled")

    def __init__(self, when: float, callback: Callable[[], None]):
        self.when = when
        self.callback = callback
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    def cancelled(self) -> bool:
        return self._cancelled


class VirtualScheduler:
    """
    Virtual clock measured in seconds.

    Nothing runs until ``advance()`` moves the clock; callbacks due within
    the advanced span fire in deadline order (ties in arming order), each
    seeing ``now`` set to its own deadline.
    """

    def __init__(self, start: float = 0.0):
        self.now = start
        self._queue: list[tuple[float, int, VirtualHandle]] = []
        self._seq = itertools.count()

    def time(self) -> float:
        return self.now

    def call_later(self, delay: float, callback: Callable[[], None]) -> VirtualHandle:
        handle = VirtualHandle(self.now + max(0.0, delay), callback)
        heapq.heappush(self._queue, (handle.when, next(self._seq), handle))
        return handle

    def pending(self) -> int:
        """Number of armed, not yet cancelled callbacks."""
        return sum(1 for _, _, h in self._queue if not h.cancelled())

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while self._queue and self._queue[0][0] <= target:
            when, _, handle = heapq.heappop(self._queue)
            if handle.cancelled():
                continue
            self.now = when
            handle.cancel()  # a handle fires at most once
            handle.callback()
        self.now = target

    def advance_to(self, when: float) -> None:
        if when > self.now:
            self.advance(when - self.now)
