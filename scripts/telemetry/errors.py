"""
Error taxonomy for the event pipeline.

Capture-path errors (ValidationError) are isolated per occurrence and never
reach the producer. Delivery-path errors (DeliveryError subclasses) are
isolated per batch; the dispatcher decides whether to retry based on the
``retryable`` flag.
"""

from typing import Any, Dict, Optional


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(PipelineError):
    """Raised when pipeline settings are out of range or malformed."""
    pass


class ValidationError(PipelineError):
    """Raised when a raw occurrence cannot be turned into an event."""
    pass


class DeliveryError(PipelineError):
    """Base exception for sink write failures."""
    pass


class SerializationError(DeliveryError):
    """Batch payload cannot be encoded for the sink. Retrying cannot help."""
    pass


class SinkUnavailableError(DeliveryError):
    """Transient sink failure (connectivity, I/O). Retried with backoff."""

    retryable = True


class SinkPermissionError(DeliveryError):
    """Sink refused the write. Terminal, surfaced immediately."""
    pass
