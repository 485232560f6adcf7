#!/usr/bin/env python3
"""
Tests for configuration loading and JSONL store utilities.

Run with: python3 -m pytest scripts/metrics/test_metrics.py -v
"""

import json
import os
import sys
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

# Add parent to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from metrics.config import CONFIG_ENV_VAR, AnalyticsConfig, config
from metrics.jsonl_utils import JSONLReader, JSONLWriter, analyze_log, parse_timestamp


class TestConfig(unittest.TestCase):
    """Configuration defaults, file merging and environment overrides."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_path = Path(self.temp_dir.name) / "pipeline_config.json"

    def tearDown(self):
        # Restore the shared singleton for other tests
        config.reload()
        self.temp_dir.cleanup()

    def reload_with(self, env):
        with mock.patch.dict(os.environ, env):
            config.reload()

    def test_singleton(self):
        self.assertIs(AnalyticsConfig(), config)

    def test_defaults(self):
        self.reload_with({CONFIG_ENV_VAR: str(self.config_path)})
        self.assertEqual(config.get("telemetry.buffer_size"), 50)
        self.assertEqual(config.get("activity.flush_interval_sec"), 30.0)
        self.assertEqual(config.get("activity.sink.type"), "file")
        self.assertEqual(config.get("missing.key", "fallback"), "fallback")
        self.assertTrue(config.is_enabled("telemetry"))

    def test_file_is_merged_over_defaults(self):
        self.config_path.write_text(json.dumps({
            "activity": {"buffer_size": 5, "sink": {"key": "audit"}},
        }))
        self.reload_with({CONFIG_ENV_VAR: str(self.config_path)})

        self.assertEqual(config.get("activity.buffer_size"), 5)
        self.assertEqual(config.get("activity.sink.key"), "audit")
        self.assertEqual(config.get("activity.sink.type"), "file")
        self.assertEqual(config.get("activity.max_retries"), 3)

    def test_malformed_file_falls_back_to_defaults(self):
        self.config_path.write_text("{not json")
        self.reload_with({CONFIG_ENV_VAR: str(self.config_path)})
        self.assertEqual(config.get("activity.buffer_size"), 100)

    def test_environment_overrides(self):
        self.reload_with({
            CONFIG_ENV_VAR: str(self.config_path),
            "ACTIVITY_PIPELINE_ACTIVITY_ENABLED": "false",
            "ACTIVITY_PIPELINE_SAMPLE_RATE": "0.25",
            "ACTIVITY_PIPELINE_DEBUG": "1",
        })
        self.assertFalse(config.is_enabled("activity"))
        self.assertEqual(config.get("telemetry.sample_rate"), 0.25)
        self.assertTrue(config.get("debug"))

    def test_section_is_a_copy(self):
        section = config.section("telemetry")
        section["buffer_size"] = 1
        section["sink"]["type"] = "http"
        self.assertEqual(config.get("telemetry.buffer_size"), 50)
        self.assertEqual(config.get("telemetry.sink.type"), "memory")

    def test_set_is_runtime_only(self):
        config.set("telemetry.buffer_size", 7)
        self.assertEqual(config.get("telemetry.buffer_size"), 7)
        self.reload_with({CONFIG_ENV_VAR: str(self.config_path)})
        self.assertEqual(config.get("telemetry.buffer_size"), 50)


class TestJSONLStore(unittest.TestCase):
    """Locked JSONL append, read and retention trimming."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.path = Path(self.temp_dir.name) / "logs" / "events.jsonl"
        self.writer = JSONLWriter(self.path)
        now = datetime.now(timezone.utc)
        self.writer.append_lines([json.dumps(entry) for entry in [
            {"id": "old", "timestamp": (now - timedelta(days=100)).isoformat()},
            {"id": "recent", "timestamp": (now - timedelta(days=2)).isoformat()},
            {"id": "undated"},
        ]])

    def tearDown(self):
        self.temp_dir.cleanup()

    def test_read_log(self):
        entries = JSONLReader.read_log(self.path)
        self.assertEqual([e["id"] for e in entries], ["old", "recent", "undated"])

    def test_read_log_days(self):
        entries = JSONLReader.read_log(self.path, days=30)
        self.assertEqual([e["id"] for e in entries], ["recent"])

    def test_read_log_skips_malformed_lines(self):
        with open(self.path, "a") as f:
            f.write("{broken\n")
        entries = JSONLReader.read_log(self.path, filter_fn=lambda e: e["id"] != "undated")
        self.assertEqual([e["id"] for e in entries], ["old", "recent"])

    def test_missing_file(self):
        self.assertEqual(JSONLReader.read_log(self.path.with_name("none.jsonl")), [])
        self.assertIsNone(analyze_log(self.path.with_name("none.jsonl")))

    def test_trim_dry_run(self):
        cutoff = datetime.now(timezone.utc) - timedelta(days=30)
        self.assertEqual(self.writer.trim_older_than(cutoff, dry_run=True), 1)
        self.assertEqual(len(JSONLReader.read_log(self.path)), 3)

    def test_trim_with_backup(self):
        cutoff = datetime.now(timezone.utc) - timedelta(days=30)
        self.assertEqual(self.writer.trim_older_than(cutoff, backup=True), 1)
        self.assertEqual([e["id"] for e in JSONLReader.read_log(self.path)], ["recent", "undated"])

        backup = self.path.with_suffix(".jsonl.backup")
        self.assertEqual(len(JSONLReader.read_log(backup)), 3)

    def test_failed_trim_keeps_original(self):
        cutoff = datetime.now(timezone.utc) - timedelta(days=30)
        with mock.patch("metrics.jsonl_utils.os.replace", side_effect=OSError("disk full")):
            with self.assertRaises(OSError):
                self.writer.trim_older_than(cutoff)

        self.assertEqual([e["id"] for e in JSONLReader.read_log(self.path)], ["old", "recent", "undated"])
        self.assertFalse(self.path.with_suffix(".jsonl.tmp").exists())

    def test_append_after_trim_lands_in_new_file(self):
        cutoff = datetime.now(timezone.utc) - timedelta(days=30)
        JSONLWriter(self.path).trim_older_than(cutoff)
        self.writer.append_lines([json.dumps({"id": "late"})])
        self.assertEqual([e["id"] for e in JSONLReader.read_log(self.path)], ["recent", "undated", "late"])

    def test_analyze_log(self):
        cutoff = datetime.now(timezone.utc) - timedelta(days=30)
        stats = analyze_log(self.path, cutoff)
        self.assertEqual(stats["total_entries"], 3)
        self.assertEqual(stats["old_entries"], 1)
        self.assertEqual(stats["new_entries"], 1)
        self.assertGreater(stats["file_size_bytes"], 0)


def test_parse_timestamp():
    assert parse_timestamp("2024-03-01T12:00:00Z") == datetime(2024, 3, 1, 12, tzinfo=timezone.utc)
    assert parse_timestamp("2024-03-01T12:00:00").tzinfo is not None
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp(None) is None


if __name__ == "__main__":
    unittest.main(verbosity=2)
