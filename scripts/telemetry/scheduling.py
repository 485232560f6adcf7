"""
Timer scheduling for flush ticks and retry backoff.

ThreadingScheduler runs every callback on one daemon worker thread, so
producers only pay for a heap push. ManualScheduler advances a virtual clock
on demand, for deterministic tests and for hosts that drive their own loop.
"""

import heapq
import itertools
import sys
import threading
import time
from typing import Any, Callable, List, Optional


class ScheduledCall:
    """Handle for a callback scheduled at an absolute time."""

    __slots__ = ("when", "seq", "fn", "args", "cancelled")

    def __init__(self, when: float, seq: int, fn: Callable, args: tuple):
        self.when = when
        self.seq = seq
        self.fn = fn
        self.args = args
        self.cancelled = False

    def cancel(self):
        self.cancelled = True

    def __lt__(self, other: "ScheduledCall") -> bool:
        return (self.when, self.seq) < (other.when, other.seq)


class Scheduler:
    """Interface shared by the schedulers."""

    def now(self) -> float:
        raise NotImplementedError

    def call_later(self, delay: float, fn: Callable, *args: Any) -> ScheduledCall:
        raise NotImplementedError

    def call_soon(self, fn: Callable, *args: Any) -> ScheduledCall:
        return self.call_later(0.0, fn, *args)

    def shutdown(self, wait: bool = True):
        pass


class ThreadingScheduler(Scheduler):
    """Single worker thread draining a time-ordered heap."""

    def __init__(self, name: str = "event-pipeline-scheduler"):
        self._name = name
        self._queue: List[ScheduledCall] = []
        self._cond = threading.Condition()
        self._seq = itertools.count()
        self._closed = False
        self._thread: Optional[threading.Thread] = None

    def now(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, fn: Callable, *args: Any) -> ScheduledCall:
        with self._cond:
            if self._closed:
                raise RuntimeError("Scheduler has been shut down")
            call = ScheduledCall(self.now() + max(delay, 0.0), next(self._seq), fn, args)
            heapq.heappush(self._queue, call)
            if self._thread is None:
                self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
                self._thread.start()
            self._cond.notify()
        return call

    def _next_due(self) -> Optional[ScheduledCall]:
        with self._cond:
            while not self._closed:
                if not self._queue:
                    self._cond.wait()
                    continue
                call = self._queue[0]
                if call.cancelled:
                    heapq.heappop(self._queue)
                    continue
                remaining = call.when - self.now()
                if remaining <= 0:
                    return heapq.heappop(self._queue)
                self._cond.wait(remaining)
            return None

    def _run(self):
        while True:
            call = self._next_due()
            if call is None:
                return
            try:
                call.fn(*call.args)
            except Exception as e:
                print(f"Warning: Scheduled callback {getattr(call.fn, '__name__', call.fn)} failed: {e}",
                      file=sys.stderr)

    def shutdown(self, wait: bool = True, timeout: float = 5.0):
        """Drop queued callbacks and stop the worker."""
        with self._cond:
            self._closed = True
            self._queue.clear()
            self._cond.notify_all()
            thread = self._thread

        if wait and thread is not None and thread is not threading.current_thread():
            thread.join(timeout)


class ManualScheduler(Scheduler):
    """
    Virtual-clock scheduler. Nothing runs until advance() is called.

    Usage:
        scheduler = ManualScheduler()
        scheduler.call_later(0.05, tick)
        scheduler.advance(0.05)  # runs tick
    """

    def __init__(self, start: float = 0.0):
        self._now = start
        self._queue: List[ScheduledCall] = []
        self._seq = itertools.count()
        self._lock = threading.Lock()
        self._closed = False

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, fn: Callable, *args: Any) -> ScheduledCall:
        with self._lock:
            if self._closed:
                raise RuntimeError("Scheduler has been shut down")
            call = ScheduledCall(self._now + max(delay, 0.0), next(self._seq), fn, args)
            heapq.heappush(self._queue, call)
        return call

    def _pop_due(self, deadline: float) -> Optional[ScheduledCall]:
        with self._lock:
            while self._queue:
                call = self._queue[0]
                if call.cancelled:
                    heapq.heappop(self._queue)
                    continue
                if call.when > deadline:
                    return None
                return heapq.heappop(self._queue)
            return None

    def advance(self, seconds: float) -> int:
        """
        Move the clock forward, running every callback that falls due.

        Callbacks scheduled by callbacks run too if they fall inside the
        window.

        Returns:
            Number of callbacks executed
        """
        deadline = self._now + seconds
        executed = 0
        while True:
            call = self._pop_due(deadline)
            if call is None:
                break
            self._now = max(self._now, call.when)
            call.fn(*call.args)
            executed += 1
        self._now = deadline
        return executed

    def run_pending(self) -> int:
        """Run callbacks already due without moving the clock."""
        return self.advance(0.0)

    def pending(self) -> int:
        with self._lock:
            return sum(1 for call in self._queue if not call.cancelled)

    def shutdown(self, wait: bool = True):
        with self._lock:
            self._closed = True
            self._queue.clear()
