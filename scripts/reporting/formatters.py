"""
Output formatters for event exports and activity summaries.

Exports: JSON array and fixed-column CSV.
Summaries: Markdown (with ASCII charts) and JSON.
"""

import csv
import io
import json
from datetime import datetime
from typing import Any, Dict, Iterable, List

from telemetry.schema import Event, thaw

CSV_COLUMNS = [
    "ID", "Timestamp", "Actor", "Action", "Entity", "Category",
    "Severity", "Status", "Duration", "Changes", "Metadata",
]


def events_to_json(events: Iterable[Event], indent: int = 2) -> str:
    """Serialize events as a JSON array."""
    return json.dumps([event.to_dict() for event in events], indent=indent, default=str)


def events_to_csv(events: Iterable[Event]) -> str:
    """
    Serialize events as CSV with a fixed header.

    Every field is quoted; changes and metadata are embedded JSON strings.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for event in events:
        writer.writerow([
            event.id,
            event.timestamp.isoformat(),
            event.actor or "",
            event.action or "",
            event.entity or "",
            event.category,
            event.severity.value if event.severity else "",
            event.status.value if event.status else "",
            "" if event.duration_ms is None else event.duration_ms,
            json.dumps(thaw(event.changes) if event.changes is not None else {}, default=str),
            json.dumps(thaw(event.payload), default=str),
        ])
    return buffer.getvalue()


EXPORTERS = {
    "json": events_to_json,
    "csv": events_to_csv,
}


def export_events(events: Iterable[Event], fmt: str = "json") -> str:
    try:
        exporter = EXPORTERS[fmt]
    except KeyError:
        raise ValueError(f"Unsupported export format {fmt!r} (expected json or csv)")
    return exporter(events)


class ASCIIChart:
    """Simple ASCII chart generator."""

    @staticmethod
    def bar_chart(data: Dict[str, float], max_width: int = 40) -> str:
        """
        Generate horizontal bar chart.

        Args:
            data: Dictionary of label -> value
            max_width: Maximum bar width in characters

        Returns:
            ASCII bar chart as string
        """
        if not data:
            return "No data"

        max_value = max(data.values())
        lines = []

        for label, value in sorted(data.items(), key=lambda x: x[1], reverse=True):
            bar_width = int((value / max_value) * max_width) if max_value > 0 else 0
            bar = "#" * bar_width
            lines.append(f"{label:20s} {bar} {value}")

        return "\n".join(lines)


class MarkdownFormatter:
    """Format activity statistics as Markdown."""

    SECTIONS = [
        ("by_kind", "Events by Category"),
        ("by_severity", "Events by Severity"),
        ("by_status", "Events by Status"),
        ("by_actor", "Events by Actor"),
        ("top_actions", "Top Actions"),
    ]

    @staticmethod
    def format(stats: Dict[str, Any], title: str = "Activity Report") -> str:
        """
        Format stats from compute_stats() as Markdown.

        Args:
            stats: Aggregated statistics
            title: Report heading

        Returns:
            Markdown formatted report
        """
        sections = []

        sections.append(f"# {title}")
        sections.append("")
        sections.append(f"**Generated:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        sections.append("")

        sections.append("## Summary")
        sections.append("")
        sections.append(f"- **Total Events:** {stats['total_events']}")
        sections.append(f"- **Unique Sessions:** {stats['unique_sessions']}")
        sections.append(f"- **Unique Pages:** {stats['unique_pages']}")
        if stats.get("first_timestamp"):
            sections.append(f"- **From:** {stats['first_timestamp']}")
            sections.append(f"- **To:** {stats['last_timestamp']}")
        sections.append("")

        for key, heading in MarkdownFormatter.SECTIONS:
            if stats.get(key):
                sections.append(f"## {heading}")
                sections.append("```")
                sections.append(ASCIIChart.bar_chart(stats[key]))
                sections.append("```")
                sections.append("")

        recent: List[Dict[str, Any]] = stats.get("recent") or []
        if recent:
            sections.append("## Recent Activity")
            sections.append("")
            sections.append("| Time | Category | Action | Actor | Severity |")
            sections.append("|------|----------|--------|-------|----------|")
            for entry in recent:
                sections.append(
                    f"| {entry['timestamp']} | {entry['kind']} | {entry.get('action', '')} "
                    f"| {entry.get('actor_name') or entry.get('actor_id') or ''} "
                    f"| {entry.get('severity', '')} |"
                )
            sections.append("")

        return "\n".join(sections)


class JSONFormatter:
    """Format activity statistics as JSON."""

    @staticmethod
    def format(stats: Dict[str, Any]) -> str:
        output = {
            "generated_at": datetime.now().isoformat(),
            "report_data": stats,
        }
        return json.dumps(output, indent=2, default=str)
