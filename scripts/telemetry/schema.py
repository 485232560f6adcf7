"""
Event schemas for the activity pipeline.

Defines the raw Occurrence handed in by the capture layer, the immutable
Event produced by the filter, and the Batch handed to sinks.
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from metrics.jsonl_utils import parse_timestamp


class TelemetryKind(str, Enum):
    """Closed tag set for user-interaction telemetry."""
    INTERACTION = "interaction"
    SCROLL = "scroll"
    PAGE_VIEW = "page_view"
    FORM_SUBMIT = "form_submit"
    CUSTOM = "custom"


class ActivityCategory(str, Enum):
    """Closed tag set for admin activity-log entries."""
    AUTH = "auth"
    DATA = "data"
    CONFIG = "config"
    SECURITY = "security"
    SYSTEM = "system"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANKS[self]

    def at_least(self, other: "Severity") -> bool:
        return self.rank >= other.rank


_SEVERITY_RANKS = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class Status(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    PARTIAL = "partial"


# Known actions per category and the severity used when none is given.
ACTIVITY_CATEGORIES: Dict[ActivityCategory, Dict[str, Any]] = {
    ActivityCategory.AUTH: {
        "actions": ("login", "logout", "password_change", "permission_change"),
        "default_severity": Severity.MEDIUM,
    },
    ActivityCategory.DATA: {
        "actions": ("create", "read", "update", "delete", "export", "import", "bulk_operation"),
        "default_severity": Severity.LOW,
    },
    ActivityCategory.CONFIG: {
        "actions": ("settings_change", "user_management", "role_assignment", "system_config"),
        "default_severity": Severity.HIGH,
    },
    ActivityCategory.SECURITY: {
        "actions": ("failed_login", "suspicious_activity", "privilege_escalation", "data_breach"),
        "default_severity": Severity.CRITICAL,
    },
    ActivityCategory.SYSTEM: {
        "actions": ("backup", "restore", "maintenance", "error", "performance_issue"),
        "default_severity": Severity.MEDIUM,
    },
}


def freeze(value: Any) -> Any:
    """Recursively convert mappings to read-only proxies and lists to tuples."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    """Inverse of freeze(): plain dicts and lists, ready for json.dumps."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [thaw(v) for v in value]
    return value


def generate_event_id() -> str:
    """
    Generate unique event ID.

    Returns:
        UUID string for event identification
    """
    return str(uuid.uuid4())


@dataclass
class Occurrence:
    """
    Raw, unfiltered happening observed by the capture layer.

    Mutable and unvalidated; the filter turns it into an Event or drops it.
    """
    kind: str
    target: Optional[str] = None
    action: Optional[str] = None
    entity: Optional[str] = None
    entity_id: Optional[str] = None
    actor_id: Optional[str] = None
    actor_name: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    changes: Optional[Dict[str, Any]] = None
    category: Optional[str] = None
    severity: Optional[str] = None
    status: Optional[str] = None
    duration_ms: Optional[float] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class Event:
    """One captured occurrence, redacted and immutable."""
    id: str
    kind: str
    timestamp: datetime
    session_id: str
    actor_id: Optional[str] = None
    actor_name: Optional[str] = None
    target: Optional[str] = None
    action: Optional[str] = None
    entity: Optional[str] = None
    entity_id: Optional[str] = None
    payload: Mapping[str, Any] = field(default_factory=dict)
    changes: Optional[Mapping[str, Any]] = None
    severity: Optional[Severity] = None
    status: Optional[Status] = None
    duration_ms: Optional[float] = None
    # client details, set by the caller (e.g. the server handling the request)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "payload", freeze(self.payload or {}))
        if self.changes is not None:
            object.__setattr__(self, "changes", freeze(self.changes))

    @property
    def category(self) -> str:
        """Kind doubles as the category for activity-log events."""
        return self.kind

    @property
    def is_activity(self) -> bool:
        return self.severity is not None

    @property
    def actor(self) -> Optional[str]:
        return self.actor_name or self.actor_id

    def searchable_text(self) -> str:
        """Lower-cased action + entity + actor + serialized metadata."""
        parts = [
            self.action or "",
            self.entity or "",
            self.actor or "",
            json.dumps(thaw(self.payload), sort_keys=True, default=str),
        ]
        return " ".join(parts).lower()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, omitting unset optional fields."""
        data = {
            "id": self.id,
            "kind": self.kind,
            "timestamp": self.timestamp.isoformat(),
            "session_id": self.session_id,
            "payload": thaw(self.payload),
        }

        optional = {
            "actor_id": self.actor_id,
            "actor_name": self.actor_name,
            "target": self.target,
            "action": self.action,
            "entity": self.entity,
            "entity_id": self.entity_id,
            "duration_ms": self.duration_ms,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
        }
        for key, value in optional.items():
            if value is not None:
                data[key] = value

        if self.changes is not None:
            data["changes"] = thaw(self.changes)
        if self.severity is not None:
            data["severity"] = self.severity.value
        if self.status is not None:
            data["status"] = self.status.value

        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Event":
        """Rebuild an event from its to_dict() form (e.g. a stored JSON line)."""
        timestamp = parse_timestamp(data.get("timestamp", ""))
        if timestamp is None:
            raise ValueError(f"Invalid timestamp in event {data.get('id')!r}")

        severity = data.get("severity")
        status = data.get("status")
        return cls(
            id=data["id"],
            kind=data["kind"],
            timestamp=timestamp,
            session_id=data.get("session_id", ""),
            actor_id=data.get("actor_id"),
            actor_name=data.get("actor_name"),
            target=data.get("target"),
            action=data.get("action"),
            entity=data.get("entity"),
            entity_id=data.get("entity_id"),
            payload=data.get("payload") or {},
            changes=data.get("changes"),
            severity=Severity(severity) if severity else None,
            status=Status(status) if status else None,
            duration_ms=data.get("duration_ms"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
        )


@dataclass(frozen=True)
class Batch:
    """Ordered events drained from the buffer for one delivery."""
    events: Tuple[Event, ...] = ()
    batch_id: str = field(default_factory=generate_event_id)

    def __len__(self) -> int:
        return len(self.events)

    def __iter__(self) -> Iterator[Event]:
        return iter(self.events)

    def to_list(self) -> List[Dict[str, Any]]:
        return [event.to_dict() for event in self.events]
