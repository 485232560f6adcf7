"""
Event buffer with size- and time-triggered batching.

Accumulates filtered events in arrival order and hands them out as a Batch
when:
- The buffer reaches buffer_size (synchronously, on the enqueueing thread)
- The periodic timer fires and the buffer is non-empty
- flush_now() or stop() is called explicitly
"""

import math
import threading
from typing import Callable, Iterable, List, Optional

from .errors import ConfigurationError
from .scheduling import ScheduledCall, Scheduler
from .schema import Batch, Event


class EventBatcher:
    """
    Buffered event queue with automatic batching.

    The buffer swap is done under a lock, so concurrent enqueue() calls can
    never lose or duplicate an event across a flush boundary.
    """

    def __init__(
        self,
        buffer_size: int,
        flush_interval: float,
        on_batch: Callable[[Batch], None],
        scheduler: Scheduler,
        on_final: Optional[Callable[[Batch], None]] = None,
    ):
        """
        Initialize batcher.

        Args:
            buffer_size: Flush when buffer reaches this size
            flush_interval: Seconds between timer ticks (math.inf disables the timer)
            on_batch: Receives every non-empty batch from size and timer flushes
            scheduler: Scheduler that runs the periodic timer
            on_final: Receives the last batch on stop() (defaults to on_batch)
        """
        if isinstance(buffer_size, bool) or not isinstance(buffer_size, int) or buffer_size <= 0:
            raise ConfigurationError(f"buffer_size must be a positive integer, got {buffer_size!r}")
        if not isinstance(flush_interval, (int, float)) or flush_interval <= 0:
            raise ConfigurationError(f"flush_interval must be > 0, got {flush_interval!r}")

        self.buffer_size = buffer_size
        self.flush_interval = float(flush_interval)
        self._on_batch = on_batch
        self._on_final = on_final or on_batch
        self._scheduler = scheduler

        self._events: List[Event] = []
        self._lock = threading.Lock()
        self._timer: Optional[ScheduledCall] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def enqueue(self, event: Event):
        """
        Append an event (may trigger a size flush).

        Args:
            event: Filtered, redacted event
        """
        with self._lock:
            self._events.append(event)
            if len(self._events) < self.buffer_size:
                return
            batch = self._swap()

        self._on_batch(batch)

    def flush_now(self) -> Batch:
        """
        Drain the buffer.

        Returns:
            The prior contents as an ordered Batch (possibly empty)
        """
        with self._lock:
            return self._swap()

    def peek_size(self) -> int:
        with self._lock:
            return len(self._events)

    def requeue(self, batches: Iterable[Batch]):
        """Put undelivered batches back in front of the buffer, in order."""
        returned = [event for batch in batches for event in batch]
        if not returned:
            return
        with self._lock:
            self._events[:0] = returned

    def start(self):
        """Arm the periodic flush timer."""
        with self._lock:
            if self._running:
                return
            self._running = True
            self._arm()

    def cancel_timer(self):
        """Stop timer ticks without draining the buffer."""
        with self._lock:
            self._running = False
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def stop(self) -> Batch:
        """
        Cancel the timer and hand the remaining events to on_final once.

        Returns:
            The final batch (possibly empty)
        """
        with self._lock:
            self._running = False
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            batch = self._swap()

        if batch:
            self._on_final(batch)
        return batch

    def _swap(self) -> Batch:
        # caller holds self._lock
        events, self._events = self._events, []
        return Batch(tuple(events))

    def _arm(self):
        # caller holds self._lock
        if math.isinf(self.flush_interval):
            return
        self._timer = self._scheduler.call_later(self.flush_interval, self._tick)

    def _tick(self):
        with self._lock:
            if not self._running:
                return
            batch = self._swap() if self._events else None
            self._arm()

        if batch:
            self._on_batch(batch)
