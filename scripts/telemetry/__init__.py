"""
Telemetry package for the activity pipeline.

Captures user-interaction telemetry and admin activity-log entries, filters
and redacts them, and delivers them to sinks in batches with retry.
"""

from .schema import (
    ActivityCategory,
    Batch,
    Event,
    Occurrence,
    Severity,
    Status,
    TelemetryKind,
)
from .errors import (
    ConfigurationError,
    DeliveryError,
    PipelineError,
    SerializationError,
    SinkPermissionError,
    SinkUnavailableError,
    ValidationError,
)
from .filters import EventFilter, FilterRule, ScrollDepthGate, redact_value
from .policies import ActivityPolicy, TelemetryPolicy, get_policy
from .scheduling import ManualScheduler, Scheduler, ThreadingScheduler
from .buffer import EventBatcher
from .sinks import HttpSink, KeyedFileSink, MemorySink, Sink, build_sink
from .dispatcher import DeliveryResult, SinkDispatcher
from .collector import EventPipeline, create_pipeline, get_pipeline
from .context import get_current_session_id, SessionManager

__all__ = [
    # Schemas
    'ActivityCategory',
    'Batch',
    'Event',
    'Occurrence',
    'Severity',
    'Status',
    'TelemetryKind',
    # Errors
    'ConfigurationError',
    'DeliveryError',
    'PipelineError',
    'SerializationError',
    'SinkPermissionError',
    'SinkUnavailableError',
    'ValidationError',
    # Filtering
    'EventFilter',
    'FilterRule',
    'ScrollDepthGate',
    'redact_value',
    'ActivityPolicy',
    'TelemetryPolicy',
    'get_policy',
    # Delivery
    'ManualScheduler',
    'Scheduler',
    'ThreadingScheduler',
    'EventBatcher',
    'HttpSink',
    'KeyedFileSink',
    'MemorySink',
    'Sink',
    'build_sink',
    'DeliveryResult',
    'SinkDispatcher',
    # Pipeline
    'EventPipeline',
    'create_pipeline',
    'get_pipeline',
    # Context
    'get_current_session_id',
    'SessionManager',
]

__version__ = '1.0.0'
