"""
Event pipeline for user-interaction telemetry and admin activity logging.

Wires the filter, batcher, dispatcher and sink together, owns their
lifecycle, and keeps the retained event history that stats and search read.

    occurrence -> EventFilter -> EventBatcher -> SinkDispatcher -> Sink
"""

import atexit
import math
import random
import sys
import threading
import time
from collections import Counter
from typing import Any, Callable, Dict, List, Optional

from metrics.config import config

from .buffer import EventBatcher
from .context import get_current_session_id
from .dispatcher import DeliveryResult, SinkDispatcher
from .errors import ConfigurationError, ValidationError
from .filters import SCROLL_UNCHANGED, EventFilter, FilterRule, ScrollDepthGate
from .policies import EventPolicy, get_policy
from .scheduling import Scheduler, ThreadingScheduler
from .schema import ActivityCategory, Batch, Event, Occurrence, Severity
from .sinks import Sink, build_sink


class EventPipeline:
    """
    Capture, filter, buffer and deliver events for one pipeline variant.

    Lifecycle: start() arms the flush timer; stop() cancels the timer and
    pending retries, then delivers whatever is left once without retrying.
    """

    def __init__(
        self,
        policy: EventPolicy,
        rule: FilterRule,
        sink: Sink,
        buffer_size: int = 50,
        flush_interval: float = 10.0,
        max_retries: int = 3,
        base_retry_delay: float = 1.0,
        scheduler: Optional[Scheduler] = None,
        session_provider: Callable[[], str] = get_current_session_id,
        rng: Optional[random.Random] = None,
        on_batch_delivered: Optional[Callable[[Batch], None]] = None,
        on_batch_dropped: Optional[Callable[[Batch, str], None]] = None,
        on_event: Optional[Callable[[Event], None]] = None,
        scroll_depth_step: float = 0,
        enabled: bool = True,
        debug: bool = False,
    ):
        if isinstance(max_retries, bool) or not isinstance(max_retries, int) or max_retries < 0:
            raise ConfigurationError(f"max_retries must be an integer >= 0, got {max_retries!r}")
        if base_retry_delay < 0:
            raise ConfigurationError(f"base_retry_delay must be >= 0, got {base_retry_delay!r}")

        self.policy = policy
        self.sink = sink
        self.enabled = enabled
        self.debug = debug
        self.scheduler = scheduler or ThreadingScheduler()
        self.filter = EventFilter(rule, policy, session_provider=session_provider, rng=rng)
        self.scroll_gate = ScrollDepthGate(scroll_depth_step)
        self.on_event = on_event
        self.dispatcher = SinkDispatcher(
            sink,
            self.scheduler,
            max_retries=max_retries,
            base_retry_delay=base_retry_delay,
            on_success=on_batch_delivered,
            on_error=on_batch_dropped,
        )
        self.batcher = EventBatcher(
            buffer_size,
            flush_interval,
            on_batch=self.dispatcher.submit,
            scheduler=self.scheduler,
            on_final=self._deliver_final,
        )

        self.counters = Counter()
        self._history: List[Event] = []
        self._history_lock = threading.Lock()
        self._session_provider = session_provider
        self._actor_id: Optional[str] = None
        self._actor_name: Optional[str] = None
        self._state = "created"
        self._state_lock = threading.Lock()
        self._started_at: Optional[float] = None
        self._final_result: Optional[DeliveryResult] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._state == "running"

    @property
    def stopped(self) -> bool:
        return self._state == "stopped"

    def start(self) -> "EventPipeline":
        """Arm the periodic flush timer."""
        with self._state_lock:
            if self._state == "stopped":
                raise RuntimeError("Pipeline has been stopped and cannot be restarted")
            if self._state != "running":
                self._state = "running"
                self._started_at = time.monotonic()
                self.batcher.start()
        return self

    def stop(self) -> Optional[DeliveryResult]:
        """
        Shut down the pipeline.

        Cancels the flush timer and any pending retries, puts their batches
        back in front of the buffer, and delivers the buffer once without
        retrying. Safe to call more than once.

        Returns:
            Result of the final delivery, or None if nothing was buffered
        """
        # Claim the shutdown; a concurrent stop() (e.g. from atexit) returns at once
        with self._state_lock:
            if self._state == "stopped":
                return None
            self._state = "stopped"

        self.batcher.cancel_timer()
        self.dispatcher.close()
        self.batcher.requeue(self.dispatcher.cancel_pending())
        self._final_result = None
        self.batcher.stop()
        self.scheduler.shutdown()
        return self._final_result

    def _deliver_final(self, batch: Batch):
        self._final_result = self.dispatcher.deliver(batch, retry=False)

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    def set_actor(self, actor_id: Optional[str], actor_name: Optional[str] = None):
        """Set the acting user attached to activity entries by default."""
        self._actor_id = actor_id
        self._actor_name = actor_name

    def track(self, occurrence: Occurrence) -> Optional[Event]:
        """
        Capture one occurrence.

        Never raises: malformed or filtered occurrences are counted and
        dropped.

        Args:
            occurrence: Raw occurrence

        Returns:
            The accepted event, or None if it was dropped
        """
        if not self.enabled:
            return None
        if self.stopped:
            self._debug(f"Ignoring {occurrence.kind!r} occurrence after stop()")
            self.counters["after_stop"] += 1
            return None

        if not self.scroll_gate.admit(occurrence):
            self.counters[SCROLL_UNCHANGED] += 1
            return None

        try:
            decision = self.filter.evaluate(occurrence)
        except ValidationError as e:
            self.counters["invalid"] += 1
            self._debug(f"Dropped malformed occurrence: {e.message}")
            return None
        except Exception as e:
            self.counters["invalid"] += 1
            print(f"Warning: Failed to filter {occurrence.kind!r} occurrence: {e}", file=sys.stderr)
            return None

        if decision.event is None:
            self.counters[decision.reason] += 1
            return None

        event = decision.event
        self.counters["accepted"] += 1
        with self._history_lock:
            self._history.append(event)

        try:
            self.batcher.enqueue(event)
        except Exception as e:
            print(f"Warning: Failed to buffer event {event.id}: {e}", file=sys.stderr)

        if self.on_event is not None:
            try:
                self.on_event(event)
            except Exception as e:
                print(f"Warning: on_event callback failed for {event.id}: {e}", file=sys.stderr)

        return event

    def track_event(
        self,
        kind: str,
        target: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        **fields: Any,
    ) -> Optional[Event]:
        """
        Capture a telemetry occurrence.

        Args:
            kind: interaction, scroll, page_view, form_submit, custom (or click/focus/keypress)
            target: Element selector the occurrence happened on
            payload: Metadata (sensitive fields are redacted)
            **fields: Other Occurrence fields (action, actor_id, ...)

        Returns:
            The accepted event, or None
        """
        return self.track(Occurrence(kind=kind, target=target, payload=payload or {}, **fields))

    def log_activity(
        self,
        action: str,
        entity: str,
        entity_id: Optional[str] = None,
        changes: Optional[Dict[str, Dict[str, Any]]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
        category: Optional[str] = None,
        status: Optional[str] = None,
        duration_ms: Optional[float] = None,
        actor_id: Optional[str] = None,
        actor_name: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[Event]:
        """
        Record an admin action.

        Category and severity default from the action; the actor defaults
        to the one set with set_actor().

        Returns:
            The accepted event, or None
        """
        if actor_id is None:
            actor_id, actor_name = self._actor_id, actor_name or self._actor_name

        return self.track(Occurrence(
            kind="activity",
            action=action,
            entity=entity,
            entity_id=entity_id,
            changes=changes,
            payload=metadata or {},
            severity=_enum_value(severity),
            category=_enum_value(category),
            status=_enum_value(status),
            duration_ms=duration_ms,
            actor_id=actor_id,
            actor_name=actor_name,
            ip_address=ip_address,
            user_agent=user_agent,
        ))

    def log_user_action(self, action: str, details: Optional[Dict[str, Any]] = None) -> Optional[Event]:
        return self.log_activity(action, "user", category=ActivityCategory.AUTH, metadata=details)

    def log_data_operation(
        self,
        operation: str,
        entity: str,
        entity_id: Optional[str] = None,
        changes: Optional[Dict[str, Dict[str, Any]]] = None,
    ) -> Optional[Event]:
        """Record create/read/update/delete on an entity; deletes are medium severity."""
        severity = Severity.MEDIUM if operation == "delete" else Severity.LOW
        return self.log_activity(
            operation, entity,
            entity_id=entity_id,
            changes=changes,
            category=ActivityCategory.DATA,
            severity=severity,
        )

    def log_security_event(self, event: str, details: Optional[Dict[str, Any]] = None) -> Optional[Event]:
        return self.log_activity(
            event, "security",
            category=ActivityCategory.SECURITY,
            severity=Severity.CRITICAL,
            metadata=details,
        )

    def log_system_event(self, event: str, details: Optional[Dict[str, Any]] = None) -> Optional[Event]:
        return self.log_activity(
            event, "system",
            category=ActivityCategory.SYSTEM,
            severity=Severity.MEDIUM,
            metadata=details,
        )

    def log_config_change(self, setting: str, old_value: Any, new_value: Any) -> Optional[Event]:
        return self.log_activity(
            "settings_change", "configuration",
            changes={setting: {"from": old_value, "to": new_value}},
            category=ActivityCategory.CONFIG,
            severity=Severity.HIGH,
        )

    # ------------------------------------------------------------------
    # Flush, stats, search
    # ------------------------------------------------------------------

    def flush(self) -> int:
        """
        Drain the buffer and queue it for delivery.

        Returns:
            Number of events handed to the dispatcher
        """
        batch = self.batcher.flush_now()
        if batch:
            self.dispatcher.submit(batch)
        return len(batch)

    def snapshot(self) -> List[Event]:
        """Copy of the retained event history, in arrival order."""
        with self._history_lock:
            return list(self._history)

    def clear_history(self):
        with self._history_lock:
            self._history.clear()

    def stats(self, recent: int = 10) -> Dict[str, Any]:
        """
        Aggregate the retained history.

        Adds the session id and the seconds since start() (None before
        the pipeline was started) to the aggregator's counts.
        """
        from reporting.aggregator import compute_stats

        stats = compute_stats(self.snapshot(), recent=recent)
        stats["session_id"] = self._session_provider()
        stats["session_duration_sec"] = (
            None if self._started_at is None else time.monotonic() - self._started_at
        )
        return stats

    def search(self, criteria=None, **filters: Any):
        """
        Search retained events.

        Args:
            criteria: Prebuilt criteria, or keyword filters (kind, actor,
                      severity, status, action, entity, since, until, text)

        Returns:
            Lazy EventSearch; iterate it again to see newer events
        """
        from reporting.aggregator import EventSearch, SearchCriteria

        if criteria is None:
            criteria = SearchCriteria(**filters)
        return EventSearch(self.snapshot, criteria)

    def export(self, fmt: str = "json") -> str:
        from reporting.formatters import export_events
        return export_events(self.snapshot(), fmt)

    def status(self) -> Dict[str, Any]:
        return {
            "variant": self.policy.name,
            "state": self._state,
            "enabled": self.enabled,
            "session_id": self._session_provider(),
            "buffered": self.batcher.peek_size(),
            "pending_deliveries": self.dispatcher.pending_count(),
            "retained": len(self._history),
            "capture": dict(self.counters),
            "delivery": dict(self.dispatcher.counters),
        }

    def _debug(self, message: str):
        if self.debug:
            print(f"Debug: {message}", file=sys.stderr)


def _enum_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    return getattr(value, "value", value)


def create_pipeline(
    variant: str = "telemetry",
    sink: Optional[Sink] = None,
    scheduler: Optional[Scheduler] = None,
    **overrides: Any,
) -> EventPipeline:
    """
    Build a pipeline from the ``telemetry`` or ``activity`` config section.

    Args:
        variant: Config section / policy name
        sink: Sink to use instead of the configured one
        scheduler: Scheduler to use instead of a ThreadingScheduler
        **overrides: Section keys to override (e.g. buffer_size=3)

    Returns:
        EventPipeline (not started)
    """
    policy = get_policy(variant)
    section = config.section(variant)
    section.update(overrides)

    if sink is None:
        sink = build_sink(section.get("sink"), retention_days=section.get("retention_days"))

    flush_interval = section.get("flush_interval_sec", 10.0)
    if flush_interval is None:
        flush_interval = math.inf

    try:
        return EventPipeline(
            policy=policy,
            rule=FilterRule.from_config(section),
            sink=sink,
            buffer_size=section.get("buffer_size", 50),
            flush_interval=flush_interval,
            max_retries=section.get("max_retries", 3),
            base_retry_delay=section.get("base_retry_delay_sec", 1.0),
            scheduler=scheduler,
            rng=section.get("rng"),
            on_batch_delivered=section.get("on_batch_delivered"),
            on_batch_dropped=section.get("on_batch_dropped"),
            on_event=section.get("on_event"),
            scroll_depth_step=section.get("scroll_depth_step", 0),
            enabled=section.get("enabled", True),
            debug=bool(section.get("debug", config.get("debug", False))),
        )
    except TypeError as e:
        raise ConfigurationError(f"Invalid {variant} pipeline settings: {e}")


_pipelines: Dict[str, EventPipeline] = {}
_pipelines_lock = threading.Lock()


def get_pipeline(variant: str = "telemetry") -> EventPipeline:
    """
    Get the process-wide started pipeline for a variant.

    Created from config on first use and stopped at interpreter exit.

    Returns:
        EventPipeline instance
    """
    with _pipelines_lock:
        pipeline = _pipelines.get(variant)
        if pipeline is None or pipeline.stopped:
            pipeline = create_pipeline(variant).start()
            _pipelines[variant] = pipeline
            atexit.register(pipeline.stop)
        return pipeline
