"""
Sampling and privacy filtering for captured occurrences.

Decides keep/drop for each occurrence and replaces sensitive payload values
with a one-way digest. Redaction is a privacy convenience for dashboards and
exports, not a confidentiality guarantee: the digest is unsalted, so a small
set of guessable values (PINs, short codes) can be recovered by brute force.
"""

import fnmatch
import hashlib
import json
import random
import re
import threading
from collections import namedtuple
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional, Pattern, Tuple

from metrics.config import DEFAULT_SENSITIVE_FIELD_PATTERNS

from .context import get_current_session_id
from .errors import ConfigurationError, ValidationError
from .policies import EventPolicy
from .schema import Event, Occurrence, Severity, generate_event_id

FilterDecision = namedtuple("FilterDecision", ["event", "reason"])

# Drop reasons
DISABLED_KIND = "disabled_kind"
CATEGORY_EXCLUDED = "category_excluded"
SELECTOR_EXCLUDED = "selector_excluded"
ACTION_EXCLUDED = "action_excluded"
BELOW_MIN_SEVERITY = "below_min_severity"
SAMPLED_OUT = "sampled_out"
SCROLL_UNCHANGED = "scroll_unchanged"

REDACTION_PREFIX = "redacted:"


def redact_value(value: Any) -> str:
    """
    Replace a sensitive value with a deterministic one-way digest.

    Same input gives the same output; the raw value is not kept.
    """
    # JSON text keeps "1" and 1 apart
    text = json.dumps(value, sort_keys=True, default=str)
    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]
    return REDACTION_PREFIX + digest


def is_sensitive(name: str, patterns: Tuple[Pattern, ...]) -> bool:
    return any(pattern.search(name) for pattern in patterns)


def redact_mapping(data: Mapping[str, Any], patterns: Tuple[Pattern, ...]) -> Dict[str, Any]:
    """Copy ``data`` with every sensitive-named field digested, recursively."""
    redacted = {}
    for key, value in data.items():
        if is_sensitive(str(key), patterns):
            if isinstance(value, Mapping) and set(value) <= {"from", "to"}:
                # change record: keep the shape, hide both sides
                redacted[key] = {k: redact_value(v) for k, v in value.items()}
            else:
                redacted[key] = redact_value(value)
        elif isinstance(value, Mapping):
            redacted[key] = redact_mapping(value, patterns)
        elif isinstance(value, (list, tuple)):
            redacted[key] = [
                redact_mapping(item, patterns) if isinstance(item, Mapping) else item
                for item in value
            ]
        else:
            redacted[key] = value
    return redacted


def _compile_patterns(patterns) -> Tuple[Pattern, ...]:
    compiled = []
    for pattern in patterns:
        if isinstance(pattern, re.Pattern):
            compiled.append(pattern)
            continue
        try:
            compiled.append(re.compile(pattern, re.IGNORECASE))
        except re.error as e:
            raise ConfigurationError(
                f"Invalid sensitive field pattern {pattern!r}: {e}",
                details={"pattern": pattern},
            )
    return tuple(compiled)


@dataclass(frozen=True)
class FilterRule:
    """Read-only filter configuration."""
    sample_rate: float = 1.0
    enabled_kinds: FrozenSet[str] = frozenset()
    include_categories: FrozenSet[str] = frozenset()
    excluded_selectors: FrozenSet[str] = frozenset()
    excluded_actions: FrozenSet[str] = frozenset()
    sensitive_field_patterns: Tuple[Any, ...] = field(
        default_factory=lambda: tuple(DEFAULT_SENSITIVE_FIELD_PATTERNS)
    )
    min_severity: Severity = Severity.LOW

    def __post_init__(self):
        try:
            rate = float(self.sample_rate)
        except (TypeError, ValueError):
            raise ConfigurationError(f"sample_rate must be a number, got {self.sample_rate!r}")
        if not 0.0 <= rate <= 1.0:
            raise ConfigurationError(f"sample_rate must be within [0, 1], got {rate}")

        try:
            min_severity = Severity(self.min_severity)
        except ValueError:
            raise ConfigurationError(f"Unknown min_severity {self.min_severity!r}")

        object.__setattr__(self, "sample_rate", rate)
        object.__setattr__(self, "min_severity", min_severity)
        object.__setattr__(self, "enabled_kinds", frozenset(self.enabled_kinds))
        object.__setattr__(self, "include_categories", frozenset(self.include_categories))
        object.__setattr__(self, "excluded_selectors", frozenset(self.excluded_selectors))
        object.__setattr__(self, "excluded_actions", frozenset(self.excluded_actions))
        object.__setattr__(
            self, "sensitive_field_patterns", _compile_patterns(self.sensitive_field_patterns)
        )

    @classmethod
    def from_config(cls, section: Mapping[str, Any]) -> "FilterRule":
        """
        Build a rule from a config section (e.g. ``config.section("telemetry")``).

        Args:
            section: Mapping with the filter keys of one pipeline variant

        Returns:
            FilterRule
        """
        patterns = section.get("sensitive_field_patterns")
        if patterns is None:
            patterns = DEFAULT_SENSITIVE_FIELD_PATTERNS
        return cls(
            sample_rate=section.get("sample_rate", 1.0),
            enabled_kinds=section.get("enabled_kinds") or (),
            include_categories=section.get("include_categories") or (),
            excluded_selectors=section.get("excluded_selectors") or (),
            excluded_actions=section.get("excluded_actions") or (),
            sensitive_field_patterns=tuple(patterns),
            min_severity=section.get("min_severity") or Severity.LOW,
        )

    def selector_excluded(self, target: Optional[str]) -> bool:
        if not target:
            return False
        return any(
            selector in target or ("*" in selector and fnmatch.fnmatchcase(target, selector))
            for selector in self.excluded_selectors
        )

    def action_excluded(self, action: Optional[str]) -> bool:
        if not action:
            return False
        return any(excluded in action for excluded in self.excluded_actions)


class EventFilter:
    """
    Turns occurrences into redacted events, or drops them.

    Pure apart from the injected random source and clock: no I/O, no shared
    mutable state.
    """

    def __init__(
        self,
        rule: FilterRule,
        policy: EventPolicy,
        session_provider: Callable[[], str] = get_current_session_id,
        rng: Optional[random.Random] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.rule = rule
        self.policy = policy
        self._session_provider = session_provider
        self._rng = rng or random.Random()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def evaluate(self, occurrence: Occurrence) -> FilterDecision:
        """
        Decide what happens to one occurrence.

        Args:
            occurrence: Raw occurrence from the capture layer

        Returns:
            FilterDecision with the event (or None) and the drop reason (or None)

        Raises:
            ValidationError: If the occurrence is malformed
        """
        if occurrence.payload is not None and not isinstance(occurrence.payload, Mapping):
            raise ValidationError("Occurrence payload must be a mapping")
        if occurrence.changes is not None and not isinstance(occurrence.changes, Mapping):
            raise ValidationError("Occurrence changes must be a mapping")

        resolution = self.policy.resolve(occurrence)
        rule = self.rule

        if rule.enabled_kinds and resolution.kind not in rule.enabled_kinds:
            return FilterDecision(None, DISABLED_KIND)
        if rule.include_categories and resolution.kind not in rule.include_categories:
            return FilterDecision(None, CATEGORY_EXCLUDED)
        if rule.selector_excluded(occurrence.target):
            return FilterDecision(None, SELECTOR_EXCLUDED)
        if rule.action_excluded(resolution.action):
            return FilterDecision(None, ACTION_EXCLUDED)
        if resolution.severity is not None and not resolution.severity.at_least(rule.min_severity):
            return FilterDecision(None, BELOW_MIN_SEVERITY)
        if not self._rng.random() < rule.sample_rate:
            return FilterDecision(None, SAMPLED_OUT)

        return FilterDecision(self._build(occurrence, resolution), None)

    def accept(self, occurrence: Occurrence) -> Optional[Event]:
        """Return the redacted event, or None if the occurrence is dropped."""
        return self.evaluate(occurrence).event

    def _build(self, occurrence: Occurrence, resolution) -> Event:
        patterns = self.rule.sensitive_field_patterns
        payload = redact_mapping(occurrence.payload or {}, patterns)
        changes = None
        if occurrence.changes is not None:
            changes = redact_mapping(occurrence.changes, patterns)

        return Event(
            id=generate_event_id(),
            kind=resolution.kind,
            timestamp=self._clock(),
            session_id=self._session_provider(),
            actor_id=occurrence.actor_id,
            actor_name=occurrence.actor_name,
            target=occurrence.target,
            action=resolution.action,
            entity=occurrence.entity,
            entity_id=occurrence.entity_id,
            payload=payload,
            changes=changes,
            severity=resolution.severity,
            status=resolution.status,
            duration_ms=occurrence.duration_ms,
            ip_address=occurrence.ip_address,
            user_agent=occurrence.user_agent,
        )


class ScrollDepthGate:
    """
    Drops scroll occurrences whose depth moved less than ``step`` points
    since the last one let through.

    Passing occurrences get a ``direction`` ("down"/"up") in their payload.
    A step of 0 lets every scroll through.
    """

    def __init__(self, step: float = 10):
        if isinstance(step, bool) or not isinstance(step, (int, float)) or step < 0:
            raise ConfigurationError(f"scroll_depth_step must be a number >= 0, got {step!r}")
        self.step = step
        self._last_depth = 0
        self._lock = threading.Lock()

    def admit(self, occurrence: Occurrence) -> bool:
        if self.step == 0 or occurrence.kind != "scroll" or not isinstance(occurrence.payload, Mapping):
            return True
        depth = occurrence.payload.get("depth")
        if isinstance(depth, bool) or not isinstance(depth, (int, float)):
            return True

        with self._lock:
            if abs(depth - self._last_depth) < self.step:
                return False
            direction = "down" if depth > self._last_depth else "up"
            self._last_depth = depth

        if "direction" not in occurrence.payload:
            occurrence.payload = {**occurrence.payload, "direction": direction}
        return True
