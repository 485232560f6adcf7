"""
JSONL utilities for reading and writing event stores.

Provides locked JSONL reading/writing, timestamp parsing, and
retention trimming for keyed local stores.
"""

import fcntl
import json
import os
import shutil
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional


def parse_timestamp(timestamp_str: str) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp, assuming UTC when no offset is present."""
    try:
        if timestamp_str.endswith('Z'):
            return datetime.fromisoformat(timestamp_str.replace('Z', '+00:00'))
        parsed = datetime.fromisoformat(timestamp_str)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    except (ValueError, AttributeError, TypeError):
        return None


class JSONLReader:
    """Read and filter JSONL logs with error handling."""

    @staticmethod
    def read_log(
        path: Path,
        days: int = None,
        filter_fn: Callable[[dict], bool] = None
    ) -> List[dict]:
        """
        Read JSONL with optional filtering.

        Args:
            path: Path to JSONL file
            days: Only return entries from last N days
            filter_fn: Optional filter function (entry) -> bool

        Returns:
            List of dict entries
        """
        path = Path(path)
        if not path.exists():
            return []

        cutoff = None
        if days:
            cutoff = datetime.now(timezone.utc) - timedelta(days=days)

        entries = []
        with open(path, 'r') as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_SH)
            try:
                lines = f.readlines()
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)

        for line_num, line in enumerate(lines, 1):
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError as e:
                # Log but continue
                print(f"Warning: Malformed JSON at {path}:{line_num}: {e}",
                      file=sys.stderr)
                continue

            if cutoff:
                timestamp = parse_timestamp(entry.get("timestamp", ""))
                if timestamp is None or timestamp < cutoff:
                    continue

            if filter_fn and not filter_fn(entry):
                continue

            entries.append(entry)

        return entries


class JSONLWriter:
    """Thread-safe JSONL writer with file locking."""

    def __init__(self, path: Path):
        """
        Initialize writer.

        Args:
            path: Path to JSONL file
        """
        self.path = Path(path)

    def append_lines(self, lines: List[str]):
        """
        Atomically append pre-encoded JSON lines.

        Args:
            lines: JSON documents, one per entry, without trailing newline
        """
        if not lines:
            return

        self.path.parent.mkdir(parents=True, exist_ok=True)
        while True:
            with open(self.path, 'a') as f:
                try:
                    fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                    if not self._is_current(f):
                        # A trim swapped the file while we waited for the lock
                        continue
                    f.write(''.join(line + '\n' for line in lines))
                    f.flush()
                    return
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)

    def _is_current(self, f) -> bool:
        try:
            return os.fstat(f.fileno()).st_ino == os.stat(self.path).st_ino
        except FileNotFoundError:
            return False

    def trim_older_than(self, cutoff: datetime, backup: bool = False, dry_run: bool = False) -> int:
        """
        Remove entries whose timestamp is before cutoff.

        Entries without a parseable timestamp and malformed lines are kept.

        Args:
            cutoff: Oldest timestamp to keep
            backup: Copy the file to ``<name>.backup`` before rewriting
            dry_run: Only count what would be removed

        Returns:
            Number of entries removed
        """
        if not self.path.exists():
            return 0

        with open(self.path, 'r+') as f:
            try:
                fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                kept = []
                removed = 0
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entry = json.loads(line)
                    except json.JSONDecodeError:
                        kept.append(line)
                        continue

                    timestamp = parse_timestamp(entry.get('timestamp', ''))
                    if timestamp is not None and timestamp < cutoff:
                        removed += 1
                    else:
                        kept.append(line)

                if dry_run or removed == 0:
                    return removed

                if backup:
                    backup_path = self.path.with_suffix(self.path.suffix + '.backup')
                    try:
                        shutil.copy2(self.path, backup_path)
                    except OSError as e:
                        print(f"Warning: Backup failed for {self.path}: {e}", file=sys.stderr)

                # Swap in a rewritten copy; the original survives a failed write
                temp_path = self.path.with_suffix(self.path.suffix + '.tmp')
                try:
                    with open(temp_path, 'w') as out:
                        out.write(''.join(line + '\n' for line in kept))
                        out.flush()
                        os.fsync(out.fileno())
                    shutil.copymode(self.path, temp_path)
                    os.replace(temp_path, self.path)
                except OSError:
                    temp_path.unlink(missing_ok=True)
                    raise
                return removed
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)


def analyze_log(path: Path, cutoff: Optional[datetime] = None) -> Optional[Dict]:
    """
    Summarize a JSONL store.

    Returns:
        Dictionary with entry counts and time bounds, or None if missing
    """
    path = Path(path)
    if not path.exists():
        return None

    stats = {
        "total_entries": 0,
        "old_entries": 0,
        "new_entries": 0,
        "file_size_bytes": path.stat().st_size,
        "oldest_entry": None,
        "newest_entry": None,
    }

    for entry in JSONLReader.read_log(path):
        stats["total_entries"] += 1
        timestamp = parse_timestamp(entry.get('timestamp', ''))
        if timestamp is None:
            continue

        if stats["oldest_entry"] is None or timestamp < stats["oldest_entry"]:
            stats["oldest_entry"] = timestamp
        if stats["newest_entry"] is None or timestamp > stats["newest_entry"]:
            stats["newest_entry"] = timestamp

        if cutoff is not None and timestamp < cutoff:
            stats["old_entries"] += 1
        else:
            stats["new_entries"] += 1

    return stats
