#!/usr/bin/env python3
"""
End-to-end tests for the activity pipeline.

Tests the complete path from capture through keyed storage to the
reporting CLI, on both the virtual-clock and the threaded scheduler.

Run with: python3 -m pytest tests/test_e2e_pipeline.py -v
"""

import csv
import io
import json
import sys
import tempfile
import time
import unittest
from contextlib import redirect_stdout
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add the scripts directory to the path so we can import the modules under test
scripts_dir = str(Path(__file__).parent.parent / "scripts")
if scripts_dir not in sys.path:
    sys.path.insert(0, scripts_dir)

import activity_report
from telemetry import (
    KeyedFileSink,
    ManualScheduler,
    MemorySink,
    ThreadingScheduler,
    create_pipeline,
)
from telemetry.schema import Batch, Event, Severity


class TestActivityLogToStore(unittest.TestCase):
    """Admin activity captured, filtered, batched and persisted."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.sink = KeyedFileSink(Path(self.temp_dir.name), "admin_activity_logs", retention_days=90)
        self.scheduler = ManualScheduler()
        self.pipeline = create_pipeline(
            "activity",
            sink=self.sink,
            scheduler=self.scheduler,
            buffer_size=3,
            flush_interval_sec=30.0,
            excluded_actions=["password_change"],
        ).start()
        self.pipeline.set_actor("admin-1", "Alice")

    def tearDown(self):
        self.pipeline.stop()
        self.temp_dir.cleanup()

    def test_full_flow(self):
        self.pipeline.log_activity("login", "user")
        self.pipeline.log_activity("password_change", "user", entity_id="7")
        self.pipeline.log_data_operation("update", "user", "7", changes={"password": {"from": "a", "to": "b"}})
        self.pipeline.log_security_event("failed_login", {"ip": "10.0.0.9"})

        # size flush of three events, delivered by the scheduler
        self.scheduler.run_pending()
        stored = self.sink.read()
        self.assertEqual([e.action for e in stored], ["login", "update", "failed_login"])
        self.assertTrue(stored[1].changes["password"]["to"].startswith("redacted:"))

        self.pipeline.log_config_change("mfa_required", False, True)
        self.scheduler.advance(30.0)
        self.assertEqual(len(self.sink.read()), 4)

        stats = self.pipeline.stats()
        self.assertEqual(stats["total_events"], 4)
        self.assertEqual(stats["by_severity"]["critical"], 1)
        self.assertEqual(self.pipeline.counters["action_excluded"], 1)

    def test_stop_persists_partial_buffer(self):
        self.pipeline.log_activity("login", "user")
        self.pipeline.log_activity("logout", "user")
        self.assertEqual(self.sink.read(), [])

        self.pipeline.stop()
        self.assertEqual([e.action for e in self.sink.read()], ["login", "logout"])
        self.assertEqual(self.scheduler.pending(), 0)


class TestThreadedDelivery(unittest.TestCase):
    """Timer flush on the real worker thread."""

    def test_timer_flush_on_worker_thread(self):
        sink = MemorySink()
        pipeline = create_pipeline(
            "telemetry",
            sink=sink,
            scheduler=ThreadingScheduler(),
            buffer_size=100,
            flush_interval_sec=0.05,
        ).start()
        try:
            pipeline.track_event("page_view", payload={"path": "/home"})
            pipeline.track_event("click", target="#save")

            deadline = time.monotonic() + 5.0
            while len(sink.events) < 2 and time.monotonic() < deadline:
                time.sleep(0.01)

            self.assertEqual([e.kind for e in sink.events], ["page_view", "interaction"])
        finally:
            pipeline.stop()

        pipeline_events = len(sink.events)
        time.sleep(0.1)
        self.assertEqual(len(sink.events), pipeline_events)


class TestReportCLI(unittest.TestCase):
    """activity_report over a populated keyed store."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store_dir = Path(self.temp_dir.name)
        sink = KeyedFileSink(self.store_dir, "audit")
        now = datetime.now(timezone.utc)
        sink.write(Batch((
            Event(id="e1", kind="auth", timestamp=now - timedelta(days=120), session_id="s1",
                  actor_id="admin-1", action="login", entity="user", severity=Severity.MEDIUM),
            Event(id="e2", kind="security", timestamp=now - timedelta(days=1), session_id="s1",
                  actor_id="intruder", action="failed_login", entity="user", severity=Severity.CRITICAL,
                  payload={"ip": "10.0.0.9"}),
            Event(id="e3", kind="data", timestamp=now, session_id="s2",
                  actor_id="admin-1", action="export", entity="report", severity=Severity.LOW),
        )))
        self.store_path = sink.path

    def tearDown(self):
        self.temp_dir.cleanup()

    def run_cli(self, *args):
        output = io.StringIO()
        with redirect_stdout(output):
            code = activity_report.main(["--store-dir", str(self.store_dir), "--key", "audit", *args])
        return code, output.getvalue()

    def test_markdown_summary(self):
        code, output = self.run_cli("--days", "30")
        self.assertEqual(code, 0)
        self.assertIn("# Activity Report: audit", output)
        self.assertIn("**Total Events:** 2", output)

    def test_json_summary(self):
        code, output = self.run_cli("--format", "json", "--severity", "critical")
        self.assertEqual(code, 0)
        self.assertEqual(json.loads(output)["report_data"]["total_events"], 1)

    def test_csv_export_to_file(self):
        out_path = self.store_dir / "reports" / "export.csv"
        code, _ = self.run_cli("--export", "csv", "--actor", "admin-1", "--output", str(out_path))
        self.assertEqual(code, 0)

        rows = list(csv.DictReader(io.StringIO(out_path.read_text())))
        self.assertEqual([row["ID"] for row in rows], ["e1", "e3"])

    def test_ranked_json_export(self):
        code, output = self.run_cli("--export", "json", "--text", "10.0.0.9", "--ranked", "--limit", "5")
        self.assertEqual(code, 0)
        self.assertEqual([entry["id"] for entry in json.loads(output)], ["e2"])

    def test_trim(self):
        code, output = self.run_cli("--trim", "--retention-days", "90", "--dry-run")
        self.assertEqual(code, 0)
        self.assertIn("Would remove: 1", output)
        self.assertEqual(len(KeyedFileSink(self.store_dir, "audit").read()), 3)

        code, output = self.run_cli("--trim", "--retention-days", "90", "--backup")
        self.assertEqual(code, 0)
        self.assertEqual([e.id for e in KeyedFileSink(self.store_dir, "audit").read()], ["e2", "e3"])
        self.assertTrue(self.store_path.with_suffix(".jsonl.backup").exists())


if __name__ == "__main__":
    unittest.main(verbosity=2)
