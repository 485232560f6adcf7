"""
Storage sinks for delivered batches.

Every sink exposes one capability, ``write(batch)``: it returns on success
and raises a DeliveryError subclass on failure. The dispatcher owns retry
and backoff; sinks only classify their own failure modes.
"""

import json
import socket
import sys
import threading
import urllib.error
import urllib.request
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from metrics.jsonl_utils import JSONLReader, JSONLWriter

from .errors import (
    ConfigurationError,
    SerializationError,
    SinkPermissionError,
    SinkUnavailableError,
)
from .schema import Batch, Event


def encode_events(batch: Batch) -> List[str]:
    """
    Strictly encode each event as one JSON document.

    Raises:
        SerializationError: If any payload value is not JSON-encodable
    """
    lines = []
    for event in batch:
        try:
            lines.append(json.dumps(event.to_dict(), ensure_ascii=False, allow_nan=False))
        except (TypeError, ValueError) as e:
            raise SerializationError(
                f"Event {event.id} cannot be encoded as JSON: {e}",
                details={"event_id": event.id},
            )
    return lines


class Sink:
    """Base class for batch sinks."""

    name = "sink"

    def write(self, batch: Batch):
        raise NotImplementedError

    def close(self):
        pass


class MemorySink(Sink):
    """Keeps delivered batches in memory (tests and development)."""

    name = "memory"

    def __init__(self):
        self._batches: List[Batch] = []
        self._lock = threading.Lock()

    def write(self, batch: Batch):
        with self._lock:
            self._batches.append(batch)

    @property
    def batches(self) -> List[Batch]:
        with self._lock:
            return list(self._batches)

    @property
    def events(self) -> List[Event]:
        return [event for batch in self.batches for event in batch]

    def clear(self):
        with self._lock:
            self._batches.clear()


class KeyedFileSink(Sink):
    """
    Keyed local persistence: one JSONL file per key under a directory.

    Optionally trims entries older than retention_days after each write.
    """

    name = "file"

    def __init__(self, directory: Path, key: str, retention_days: Optional[int] = None):
        if not key or "/" in key or key.startswith("."):
            raise ConfigurationError(f"Invalid store key {key!r}")
        self.directory = Path(directory).expanduser()
        self.key = key
        self.retention_days = retention_days
        self.path = self.directory / f"{key}.jsonl"
        self.writer = JSONLWriter(self.path)

    def write(self, batch: Batch):
        lines = encode_events(batch)
        try:
            self.writer.append_lines(lines)
        except PermissionError as e:
            raise SinkPermissionError(f"Permission denied writing {self.path}: {e}")
        except OSError as e:
            raise SinkUnavailableError(f"Failed to write {self.path}: {e}")

        # The batch is stored; a failed trim must not trigger a retry
        if self.retention_days:
            cutoff = datetime.now(timezone.utc) - timedelta(days=self.retention_days)
            try:
                self.writer.trim_older_than(cutoff)
            except OSError as e:
                print(f"Warning: Retention trim failed for {self.path}: {e}", file=sys.stderr)

    def read(self, days: Optional[int] = None) -> List[Event]:
        """
        Load stored events.

        Args:
            days: Only return events from the last N days

        Returns:
            Events in storage order; undecodable entries are skipped
        """
        events = []
        for entry in JSONLReader.read_log(self.path, days=days):
            try:
                events.append(Event.from_dict(entry))
            except (KeyError, ValueError):
                continue
        return events


class HttpSink(Sink):
    """POSTs each batch as a JSON array of events to a remote endpoint."""

    name = "http"

    def __init__(
        self,
        endpoint: str,
        timeout: float = 10.0,
        headers: Optional[Mapping[str, str]] = None,
    ):
        if not endpoint or not endpoint.startswith(("http://", "https://")):
            raise ConfigurationError(f"HTTP sink needs an http(s) endpoint, got {endpoint!r}")
        self.endpoint = endpoint
        self.timeout = timeout
        self.headers = {"Content-Type": "application/json"}
        self.headers.update(headers or {})

    def write(self, batch: Batch):
        body = "[" + ",".join(encode_events(batch)) + "]"
        request = urllib.request.Request(
            self.endpoint,
            data=body.encode("utf-8"),
            headers=self.headers,
            method="POST",
        )

        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                response.read()
        except urllib.error.HTTPError as e:
            if e.code in (401, 403):
                raise SinkPermissionError(
                    f"{self.endpoint} rejected batch: HTTP {e.code}",
                    details={"status": e.code},
                )
            if e.code in (400, 413, 422):
                raise SerializationError(
                    f"{self.endpoint} could not accept batch: HTTP {e.code}",
                    details={"status": e.code},
                )
            raise SinkUnavailableError(
                f"{self.endpoint} failed: HTTP {e.code}",
                details={"status": e.code},
            )
        except (urllib.error.URLError, socket.timeout, TimeoutError, ConnectionError) as e:
            raise SinkUnavailableError(f"{self.endpoint} unreachable: {e}")


def build_sink(sink_config: Optional[Mapping[str, Any]], retention_days: Optional[int] = None) -> Sink:
    """
    Create the sink named by ``sink_config["type"]``.

    Args:
        sink_config: Sink section of a pipeline config
        retention_days: Max age for keyed file stores

    Returns:
        Sink instance
    """
    sink_config: Dict[str, Any] = dict(sink_config or {})
    sink_type = sink_config.get("type", "memory")

    if sink_type == "memory":
        return MemorySink()
    if sink_type == "file":
        return KeyedFileSink(
            directory=Path(sink_config.get("directory", ".")),
            key=sink_config.get("key", "events"),
            retention_days=sink_config.get("retention_days", retention_days),
        )
    if sink_type == "http":
        return HttpSink(
            endpoint=sink_config.get("endpoint", ""),
            timeout=sink_config.get("timeout_sec", 10.0),
            headers=sink_config.get("headers"),
        )
    raise ConfigurationError(f"Unknown sink type {sink_type!r}")
