"""
Batch delivery with retry and backoff.

Each batch gets its own attempt counter. A failed attempt is retried with the
same batch after base_retry_delay * attempt seconds, up to max_retries total
attempts; the next attempt is only scheduled once the previous one has
returned, so a batch is never written by two attempts at once. Batches are not
serialized against each other.
"""

import sys
import threading
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .errors import DeliveryError, SinkUnavailableError
from .scheduling import ScheduledCall, Scheduler
from .schema import Batch
from .sinks import Sink


@dataclass
class DeliveryResult:
    """Outcome of one delivery attempt."""
    batch_id: str
    delivered: bool
    attempts: int
    retry_scheduled: bool = False
    reason: Optional[str] = None
    error: Optional[Exception] = None

    @property
    def dropped(self) -> bool:
        return not self.delivered and not self.retry_scheduled


class _Delivery:
    __slots__ = ("batch", "attempts", "handle", "in_flight")

    def __init__(self, batch: Batch):
        self.batch = batch
        self.attempts = 0
        self.handle: Optional[ScheduledCall] = None
        self.in_flight = False


class SinkDispatcher:
    """Delivers batches to one sink and owns their retry state."""

    def __init__(
        self,
        sink: Sink,
        scheduler: Scheduler,
        max_retries: int = 3,
        base_retry_delay: float = 1.0,
        on_success: Optional[Callable[[Batch], None]] = None,
        on_error: Optional[Callable[[Batch, str], None]] = None,
    ):
        """
        Initialize dispatcher.

        Args:
            sink: Destination for every batch
            scheduler: Runs queued first attempts and delayed retries
            max_retries: Total attempts per batch before it is dropped (minimum 1)
            base_retry_delay: Seconds; retry n waits base_retry_delay * n
            on_success: Called with each delivered batch
            on_error: Called with each dropped batch and the failure reason
        """
        self.sink = sink
        self.max_retries = max_retries
        self.base_retry_delay = base_retry_delay
        self.on_success = on_success
        self.on_error = on_error

        self._scheduler = scheduler
        self._pending: Dict[str, _Delivery] = {}
        self._lock = threading.Lock()
        self._closed = False
        self.counters = Counter()

    @property
    def max_attempts(self) -> int:
        return max(1, self.max_retries)

    def retry_delay(self, attempt: int) -> float:
        return self.base_retry_delay * attempt

    def submit(self, batch: Batch):
        """
        Queue a batch for delivery on the scheduler (never blocks on the sink).

        After close(), the batch is delivered once on the calling thread.
        """
        if not batch:
            return
        delivery = _Delivery(batch)
        with self._lock:
            closed = self._closed
            if not closed:
                self._pending[batch.batch_id] = delivery
                delivery.handle = self._scheduler.call_soon(self._run, delivery)
        if closed:
            self.deliver(batch, retry=False)

    def deliver(self, batch: Batch, retry: bool = True) -> DeliveryResult:
        """
        Attempt delivery on the calling thread.

        Args:
            batch: Batch to write
            retry: Schedule retries on transient failure (False for the final
                   shutdown flush)

        Returns:
            DeliveryResult for this first attempt
        """
        delivery = _Delivery(batch)
        delivery.in_flight = True
        if retry:
            with self._lock:
                self._pending[batch.batch_id] = delivery
        return self._attempt(delivery, retry)

    def cancel_pending(self) -> List[Batch]:
        """
        Cancel queued and backing-off deliveries.

        Deliveries currently writing are left to finish.

        Returns:
            Reclaimed batches in submission order
        """
        reclaimed = []
        with self._lock:
            for batch_id, delivery in list(self._pending.items()):
                if delivery.in_flight:
                    continue
                if delivery.handle is not None:
                    delivery.handle.cancel()
                del self._pending[batch_id]
                reclaimed.append(delivery.batch)
        return reclaimed

    def close(self):
        """Stop scheduling retries; later failures drop their batch."""
        with self._lock:
            self._closed = True

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def _run(self, delivery: _Delivery):
        with self._lock:
            if self._pending.get(delivery.batch.batch_id) is not delivery:
                return  # reclaimed by cancel_pending()
            delivery.in_flight = True
            delivery.handle = None
        self._attempt(delivery, retry=True)

    def _attempt(self, delivery: _Delivery, retry: bool) -> DeliveryResult:
        batch = delivery.batch
        delivery.attempts += 1
        self.counters["attempts"] += 1

        try:
            self.sink.write(batch)
        except DeliveryError as e:
            return self._handle_failure(delivery, e, retry)
        except Exception as e:
            # Unclassified sink errors are treated as transient
            error = SinkUnavailableError(f"{type(e).__name__}: {e}")
            error.__cause__ = e
            return self._handle_failure(delivery, error, retry)

        with self._lock:
            self._pending.pop(batch.batch_id, None)
            delivery.in_flight = False
        self.counters["delivered_batches"] += 1
        self.counters["delivered_events"] += len(batch)
        self._notify(self.on_success, batch)
        return DeliveryResult(batch.batch_id, True, delivery.attempts)

    def _handle_failure(self, delivery: _Delivery, error: DeliveryError, retry: bool) -> DeliveryResult:
        batch = delivery.batch
        reason = f"{type(error).__name__}: {error.message}"
        self.counters["failed_attempts"] += 1

        with self._lock:
            can_retry = (
                retry
                and error.retryable
                and delivery.attempts < self.max_attempts
                and not self._closed
            )
            if can_retry:
                delay = self.retry_delay(delivery.attempts)
                delivery.in_flight = False
                delivery.handle = self._scheduler.call_later(delay, self._run, delivery)
            else:
                self._pending.pop(batch.batch_id, None)
                delivery.in_flight = False

        if can_retry:
            return DeliveryResult(batch.batch_id, False, delivery.attempts,
                                  retry_scheduled=True, reason=reason, error=error)

        print(f"Warning: Dropping batch {batch.batch_id} ({len(batch)} events) "
              f"after {delivery.attempts} attempt(s): {reason}", file=sys.stderr)
        self.counters["dropped_batches"] += 1
        self.counters["dropped_events"] += len(batch)
        self._notify(self.on_error, batch, reason)
        return DeliveryResult(batch.batch_id, False, delivery.attempts, reason=reason, error=error)

    @staticmethod
    def _notify(callback: Optional[Callable], *args):
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            print(f"Warning: Delivery callback failed: {e}", file=sys.stderr)
