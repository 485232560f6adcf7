"""
Statistics and search over retained events.

Everything here is a pure fold over an event snapshot: nothing is cached and
nothing is mutated, so dashboards can call it as often as they like.
"""

import re
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np
from rank_bm25 import BM25Okapi

from telemetry.schema import Event, Severity, Status

ANONYMOUS = "anonymous"


def tokenize(text: str) -> List[str]:
    """Tokenize text for BM25 ranking."""
    return re.findall(r'\w+', text.lower())


def compute_stats(events: Sequence[Event], recent: int = 10) -> Dict[str, Any]:
    """
    Aggregate counts over a set of events.

    Args:
        events: Retained events in arrival order
        recent: Size of the most-recent slice

    Returns:
        Dictionary with grouped counts and the most recent events
    """
    by_kind = Counter()
    by_severity = Counter()
    by_status = Counter()
    by_actor = Counter()
    top_actions = Counter()
    sessions = set()
    pages = set()
    first = None
    last = None

    for event in events:
        by_kind[event.kind] += 1
        if event.severity is not None:
            by_severity[event.severity.value] += 1
        if event.status is not None:
            by_status[event.status.value] += 1
        by_actor[event.actor or ANONYMOUS] += 1
        if event.action:
            top_actions[event.action] += 1
        sessions.add(event.session_id)
        if event.kind == "page_view" and event.payload.get("path"):
            pages.add(event.payload["path"])

        if first is None or event.timestamp < first:
            first = event.timestamp
        if last is None or event.timestamp > last:
            last = event.timestamp

    recent_slice = list(events[-recent:]) if recent > 0 else []
    recent_slice.reverse()

    return {
        "total_events": len(events),
        "by_kind": dict(by_kind),
        "by_severity": dict(by_severity),
        "by_status": dict(by_status),
        "by_actor": dict(by_actor),
        "top_actions": dict(top_actions.most_common(10)),
        "unique_sessions": len(sessions),
        "unique_pages": len(pages),
        "first_timestamp": first.isoformat() if first else None,
        "last_timestamp": last.isoformat() if last else None,
        "recent": [event.to_dict() for event in recent_slice],
    }


@dataclass(frozen=True)
class SearchCriteria:
    """Conjunctive filters; unset fields match everything."""
    kind: Optional[str] = None
    actor: Optional[str] = None
    severity: Optional[str] = None
    status: Optional[str] = None
    action: Optional[str] = None
    entity: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    text: Optional[str] = None

    def __post_init__(self):
        # Validate enum names early so typos don't silently match nothing
        if self.severity is not None:
            object.__setattr__(self, "severity", Severity(self.severity).value)
        if self.status is not None:
            object.__setattr__(self, "status", Status(self.status).value)
        # event timestamps are UTC-aware
        for name in ("since", "until"):
            bound = getattr(self, name)
            if bound is not None and bound.tzinfo is None:
                object.__setattr__(self, name, bound.replace(tzinfo=timezone.utc))

    def matches(self, event: Event) -> bool:
        if self.kind and event.kind != self.kind:
            return False
        if self.actor and self.actor not in (event.actor_id, event.actor_name):
            return False
        if self.severity and (event.severity is None or event.severity.value != self.severity):
            return False
        if self.status and (event.status is None or event.status.value != self.status):
            return False
        if self.action and (not event.action or self.action not in event.action):
            return False
        if self.entity and (not event.entity or self.entity not in event.entity):
            return False
        if self.since and event.timestamp < self.since:
            return False
        if self.until and event.timestamp > self.until:
            return False
        if self.text and self.text.lower() not in event.searchable_text():
            return False
        return True


class EventSearch:
    """
    Lazy, restartable search over an event source.

    Each iteration takes a fresh snapshot and reapplies the criteria.
    """

    def __init__(self, source: Callable[[], Sequence[Event]], criteria: Optional[SearchCriteria] = None):
        self._source = source
        self.criteria = criteria or SearchCriteria()

    def __iter__(self) -> Iterator[Event]:
        for event in self._source():
            if self.criteria.matches(event):
                yield event

    def count(self) -> int:
        return sum(1 for _ in self)

    def first(self) -> Optional[Event]:
        return next(iter(self), None)

    def ranked(self, limit: Optional[int] = None) -> List[Tuple[Event, float]]:
        """
        Order matches by BM25 relevance to the criteria text.

        Without text, matches come back in arrival order with score 0.

        Args:
            limit: Maximum number of results

        Returns:
            List of (event, normalized score) pairs, best first
        """
        snapshot = list(self._source())
        positions = [i for i, event in enumerate(snapshot) if self.criteria.matches(event)]
        matches = [snapshot[i] for i in positions]
        query_tokens = tokenize(self.criteria.text or "")
        if not matches or not query_tokens:
            scored = [(event, 0.0) for event in matches]
            return scored[:limit] if limit else scored

        # IDF comes from the whole snapshot; every match contains the query text
        corpus = [tokenize(event.searchable_text()) or ["_"] for event in snapshot]
        bm25 = BM25Okapi(corpus)
        scores = np.asarray(bm25.get_scores(query_tokens), dtype=float)[positions]

        max_score = scores.max() if scores.size else 0.0
        if max_score > 0:
            scores = scores / max_score

        # stable sort keeps arrival order among ties
        order = np.argsort(-scores, kind="stable")
        scored = [(matches[i], float(scores[i])) for i in order]
        return scored[:limit] if limit else scored
