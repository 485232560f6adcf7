"""
Event policies: tag set and severity resolution per pipeline variant.

The telemetry variant accepts user-interaction kinds and never carries a
severity. The activity variant resolves a category and a default severity
from the admin action, and requires an acting user.
"""

from collections import namedtuple
from typing import Optional

from .errors import ConfigurationError, ValidationError
from .schema import ACTIVITY_CATEGORIES, ActivityCategory, Occurrence, Severity, Status, TelemetryKind

Resolution = namedtuple("Resolution", ["kind", "action", "severity", "status"])


def _parse_enum(enum_cls, value, field_name):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(
            f"Invalid {field_name} {value!r} (expected one of: {allowed})",
            details={"field": field_name, "value": value},
        )


class EventPolicy:
    """Resolves an occurrence's kind, action, severity and status."""

    name = "base"
    kinds = frozenset()

    def resolve(self, occurrence: Occurrence) -> Resolution:
        raise NotImplementedError


class TelemetryPolicy(EventPolicy):
    """User-interaction tracking: clicks, scrolls, page views, form submits."""

    name = "telemetry"
    kinds = frozenset(kind.value for kind in TelemetryKind)

    # Browser event names folded into the interaction kind
    ALIASES = {
        "click": TelemetryKind.INTERACTION,
        "focus": TelemetryKind.INTERACTION,
        "keypress": TelemetryKind.INTERACTION,
    }

    def resolve(self, occurrence: Occurrence) -> Resolution:
        raw_kind = (occurrence.kind or "").strip().lower()
        action = occurrence.action

        if raw_kind in self.ALIASES:
            kind = self.ALIASES[raw_kind]
            action = action or raw_kind
        else:
            kind = _parse_enum(TelemetryKind, raw_kind, "kind")

        return Resolution(kind.value, action, None, None)


class ActivityPolicy(EventPolicy):
    """Admin audit log: category and severity derived from the action."""

    name = "activity"
    kinds = frozenset(category.value for category in ActivityCategory)

    @staticmethod
    def category_for_action(action: str) -> ActivityCategory:
        """Exact match on a known action first, then substring containment."""
        for category, entry in ACTIVITY_CATEGORIES.items():
            if action in entry["actions"]:
                return category
        for category, entry in ACTIVITY_CATEGORIES.items():
            if any(known in action for known in entry["actions"]):
                return category
        return ActivityCategory.SYSTEM

    def resolve(self, occurrence: Occurrence) -> Resolution:
        action = (occurrence.action or "").strip()
        if not action:
            raise ValidationError("Activity entry has no action")
        if not occurrence.actor_id:
            raise ValidationError(
                "Cannot log activity: no current user provided",
                details={"action": action},
            )

        category = self._category(occurrence, action)
        if occurrence.severity:
            severity = _parse_enum(Severity, occurrence.severity, "severity")
        else:
            severity = ACTIVITY_CATEGORIES[category]["default_severity"]

        status = Status.SUCCESS
        if occurrence.status:
            status = _parse_enum(Status, occurrence.status, "status")

        return Resolution(category.value, action, severity, status)

    def _category(self, occurrence: Occurrence, action: str) -> ActivityCategory:
        explicit: Optional[str] = occurrence.category
        if not explicit and occurrence.kind in self.kinds:
            explicit = occurrence.kind
        if explicit:
            return _parse_enum(ActivityCategory, explicit, "category")
        return self.category_for_action(action)


POLICIES = {
    TelemetryPolicy.name: TelemetryPolicy(),
    ActivityPolicy.name: ActivityPolicy(),
}


def get_policy(name: str) -> EventPolicy:
    try:
        return POLICIES[name]
    except KeyError:
        raise ConfigurationError(f"Unknown pipeline variant {name!r}")
