#!/usr/bin/env python3
"""
Tests for batch delivery, retry and backoff.

Run with: python3 -m pytest scripts/telemetry/test_dispatcher.py -v
"""

import sys
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest import mock

# Add parent to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from telemetry.dispatcher import SinkDispatcher
from telemetry.errors import SerializationError, SinkPermissionError, SinkUnavailableError
from telemetry.scheduling import ManualScheduler
from telemetry.schema import Batch, Event
from telemetry.sinks import MemorySink, Sink


def make_batch(*ids):
    return Batch(tuple(
        Event(id=i, kind="custom", timestamp=datetime.now(timezone.utc), session_id="s")
        for i in ids
    ))


class FlakySink(Sink):
    """Raises ``error`` for the first ``failures`` writes, then succeeds."""

    def __init__(self, failures, error=None):
        self.failures = failures
        self.error = error or SinkUnavailableError("backend down")
        self.attempts = 0
        self.written = []

    def write(self, batch):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise self.error
        self.written.append(batch)


class TestRetry(unittest.TestCase):

    def setUp(self):
        self.scheduler = ManualScheduler()
        self.on_success = mock.Mock()
        self.on_error = mock.Mock()

    def make_dispatcher(self, sink, max_retries=3, base_retry_delay=1.0):
        return SinkDispatcher(
            sink, self.scheduler,
            max_retries=max_retries,
            base_retry_delay=base_retry_delay,
            on_success=self.on_success,
            on_error=self.on_error,
        )

    def test_success_on_last_attempt(self):
        sink = FlakySink(failures=2)
        dispatcher = self.make_dispatcher(sink)
        batch = make_batch("a", "b")

        dispatcher.submit(batch)
        self.scheduler.run_pending()
        self.assertEqual(sink.attempts, 1)

        self.scheduler.advance(1.0)
        self.assertEqual(sink.attempts, 2)

        self.scheduler.advance(2.0)
        self.assertEqual(sink.attempts, 3)
        self.assertEqual(sink.written, [batch])

        self.on_success.assert_called_once_with(batch)
        self.on_error.assert_not_called()
        self.assertEqual(dispatcher.pending_count(), 0)
        self.assertEqual(dispatcher.counters["delivered_events"], 2)

    def test_always_failing_makes_exactly_max_attempts(self):
        sink = FlakySink(failures=100)
        dispatcher = self.make_dispatcher(sink, max_retries=3)
        batch = make_batch("a")

        dispatcher.submit(batch)
        self.scheduler.advance(100.0)

        self.assertEqual(sink.attempts, 3)
        self.on_error.assert_called_once()
        dropped_batch, reason = self.on_error.call_args[0]
        self.assertIs(dropped_batch, batch)
        self.assertIn("SinkUnavailableError", reason)
        self.on_success.assert_not_called()
        self.assertEqual(dispatcher.counters["dropped_batches"], 1)
        self.assertEqual(self.scheduler.pending(), 0)

    def test_backoff_is_linear_in_attempt(self):
        sink = FlakySink(failures=2)
        dispatcher = self.make_dispatcher(sink, base_retry_delay=0.5)
        self.assertEqual(dispatcher.retry_delay(1), 0.5)
        self.assertEqual(dispatcher.retry_delay(2), 1.0)

        dispatcher.submit(make_batch("a"))
        self.scheduler.run_pending()
        self.scheduler.advance(0.25)
        self.assertEqual(sink.attempts, 1)
        self.scheduler.advance(0.25)
        self.assertEqual(sink.attempts, 2)
        self.scheduler.advance(0.75)
        self.assertEqual(sink.attempts, 2)
        self.scheduler.advance(0.25)
        self.assertEqual(sink.attempts, 3)

    def test_zero_retries_still_attempts_once(self):
        sink = FlakySink(failures=100)
        dispatcher = self.make_dispatcher(sink, max_retries=0)
        self.assertEqual(dispatcher.max_attempts, 1)

        dispatcher.submit(make_batch("a"))
        self.scheduler.advance(10.0)
        self.assertEqual(sink.attempts, 1)
        self.on_error.assert_called_once()

    def test_terminal_errors_are_not_retried(self):
        for error in (SinkPermissionError("denied"), SerializationError("bad payload")):
            self.on_error.reset_mock()
            sink = FlakySink(failures=100, error=error)
            dispatcher = self.make_dispatcher(sink)

            dispatcher.submit(make_batch("a"))
            self.scheduler.advance(10.0)

            self.assertEqual(sink.attempts, 1)
            self.on_error.assert_called_once()

    def test_unclassified_errors_are_retried(self):
        sink = FlakySink(failures=1, error=ValueError("boom"))
        dispatcher = self.make_dispatcher(sink)

        dispatcher.submit(make_batch("a"))
        self.scheduler.advance(5.0)

        self.assertEqual(sink.attempts, 2)
        self.on_success.assert_called_once()

    def test_batches_retry_independently(self):
        sink = FlakySink(failures=1)
        dispatcher = self.make_dispatcher(sink)
        first, second = make_batch("a"), make_batch("b")

        dispatcher.submit(first)
        dispatcher.submit(second)
        self.scheduler.advance(5.0)

        self.assertEqual(sink.written, [second, first])
        self.assertEqual(self.on_success.call_count, 2)


class TestSynchronousDelivery(unittest.TestCase):

    def test_deliver_without_retry(self):
        scheduler = ManualScheduler()
        on_error = mock.Mock()
        dispatcher = SinkDispatcher(FlakySink(failures=1), scheduler, on_error=on_error)

        result = dispatcher.deliver(make_batch("a"), retry=False)

        self.assertFalse(result.delivered)
        self.assertTrue(result.dropped)
        self.assertEqual(result.attempts, 1)
        self.assertIsInstance(result.error, SinkUnavailableError)
        self.assertEqual(scheduler.pending(), 0)
        on_error.assert_called_once()

    def test_deliver_success(self):
        sink = MemorySink()
        dispatcher = SinkDispatcher(sink, ManualScheduler())
        result = dispatcher.deliver(make_batch("a", "b"))
        self.assertTrue(result.delivered)
        self.assertEqual(len(sink.events), 2)

    def test_callback_failure_is_isolated(self):
        sink = MemorySink()
        dispatcher = SinkDispatcher(sink, ManualScheduler(), on_success=mock.Mock(side_effect=RuntimeError))
        result = dispatcher.deliver(make_batch("a"))
        self.assertTrue(result.delivered)
        self.assertEqual(dispatcher.counters["delivered_batches"], 1)


class TestCancellation(unittest.TestCase):

    def test_cancel_pending_reclaims_backing_off_batches(self):
        scheduler = ManualScheduler()
        sink = FlakySink(failures=1)
        dispatcher = SinkDispatcher(sink, scheduler, base_retry_delay=1.0)
        failed, queued = make_batch("a"), make_batch("b")

        dispatcher.submit(failed)
        scheduler.run_pending()
        dispatcher.submit(queued)

        reclaimed = dispatcher.cancel_pending()
        self.assertEqual(reclaimed, [failed, queued])
        self.assertEqual(dispatcher.pending_count(), 0)

        scheduler.advance(10.0)
        self.assertEqual(sink.attempts, 1)
        self.assertEqual(sink.written, [])

    def test_close_stops_retries(self):
        scheduler = ManualScheduler()
        on_error = mock.Mock()
        sink = FlakySink(failures=100)
        dispatcher = SinkDispatcher(sink, scheduler, on_error=on_error)

        dispatcher.close()
        dispatcher.submit(make_batch("a"))
        scheduler.advance(10.0)

        self.assertEqual(sink.attempts, 1)
        on_error.assert_called_once()


if __name__ == "__main__":
    unittest.main(verbosity=2)
