"""Scheduler-level timers.

A single thread sleeps until the earliest deadline in a heap and fires
callbacks in deadline order. Grace timeouts, probe intervals and restart
back-offs are all scheduled here so that a thousand stopping containers
cost a thousand heap entries, not a thousand sleeping threads.

Callbacks run on the timer thread and must not block; callers hand
blocking work to their own executors.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger(__name__)


@dataclass(order=True)
class TimerHandle:
    """A scheduled callback."""

    deadline: float
    seq: int
    callback: Callable[..., Any] = field(compare=False)
    args: tuple = field(default=(), compare=False)
    cancelled: bool = field(default=False, compare=False)
    fired: bool = field(default=False, compare=False)

    def cancel(self) -> bool:
        """Cancel the timer.

        Returns:
            True if the timer had not fired yet.
        """
        if self.fired:
            return False
        self.cancelled = True
        return True

    @property
    def pending(self) -> bool:
        return not (self.cancelled or self.fired)


class TimerService:
    """Heap-driven timer thread.

    Example:
        timers = TimerService()
        timers.start()
        handle = timers.call_later(10.0, kill, container_id)
        handle.cancel()
        timers.stop()
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, name: str = "engine-timers") -> None:
        """Initialize the timer service.

        Args:
            clock: Monotonic clock returning seconds.
            name: Thread name.
        """
        self._clock = clock
        self._name = name
        self._heap: list[TimerHandle] = []
        self._cond = threading.Condition()
        self._seq = itertools.count()
        self._thread: threading.Thread | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def now(self) -> float:
        return self._clock()

    def start(self) -> None:
        """Start the timer thread."""
        with self._cond:
            if self._running:
                return
            self._running = True
            self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
            self._thread.start()

    def stop(self) -> None:
        """Stop the timer thread. Pending timers are dropped."""
        with self._cond:
            if not self._running:
                return
            self._running = False
            for handle in self._heap:
                handle.cancelled = True
            self._heap.clear()
            self._cond.notify_all()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=5.0)
        self._thread = None

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        """Schedule a callback.

        Args:
            delay: Seconds from now; negative delays fire immediately.
            callback: Function to run on the timer thread.
            *args: Arguments for the callback.

        Returns:
            Handle that can cancel the timer.

        Raises:
            RuntimeError: If the service is not running.
        """
        handle = TimerHandle(
            deadline=self._clock() + max(delay, 0.0),
            seq=next(self._seq),
            callback=callback,
            args=args,
        )
        with self._cond:
            if not self._running:
                raise RuntimeError("Timer service is not running")
            heapq.heappush(self._heap, handle)
            if self._heap[0] is handle:
                self._cond.notify()
        return handle

    def pending_count(self) -> int:
        with self._cond:
            return sum(1 for h in self._heap if h.pending)

    def _run(self) -> None:
        while True:
            with self._cond:
                while self._running:
                    # Drop cancelled timers at the top of the heap
                    while self._heap and self._heap[0].cancelled:
                        heapq.heappop(self._heap)
                    if not self._heap:
                        self._cond.wait()
                        continue
                    remaining = self._heap[0].deadline - self._clock()
                    if remaining <= 0:
                        break
                    self._cond.wait(timeout=remaining)
                if not self._running:
                    return
                handle = heapq.heappop(self._heap)
                handle.fired = True

            try:
                handle.callback(*handle.args)
            except Exception:
                logger.exception(f"Timer callback {handle.callback!r} failed")
