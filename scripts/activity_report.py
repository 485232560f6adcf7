#!/usr/bin/env python3
"""
CLI tool for reporting on stored activity logs.

Usage:
    python3 scripts/activity_report.py [options]

Examples:
    # Markdown summary of the last 30 days
    python3 scripts/activity_report.py --days 30

    # Critical security events as CSV
    python3 scripts/activity_report.py --kind security --severity critical --export csv

    # Free-text search, best matches first
    python3 scripts/activity_report.py --text "role_assignment admin" --export json --ranked

    # Preview retention cleanup
    python3 scripts/activity_report.py --trim --retention-days 90 --dry-run
"""

import argparse
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from metrics.config import config
from metrics.jsonl_utils import analyze_log, parse_timestamp
from reporting import EventSearch, JSONFormatter, MarkdownFormatter, SearchCriteria, compute_stats, export_events
from telemetry.sinks import KeyedFileSink


def _timestamp_arg(value: str) -> datetime:
    parsed = parse_timestamp(value)
    if parsed is None:
        raise argparse.ArgumentTypeError(f"not an ISO-8601 timestamp: {value!r}")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Report on, search, export and trim stored activity logs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --days 30
  %(prog)s --format json --output stats.json
  %(prog)s --kind security --severity critical --export csv
  %(prog)s --text "failed_login" --export json --ranked
  %(prog)s --trim --retention-days 90 --dry-run
        """,
    )

    store = parser.add_argument_group("store")
    store.add_argument(
        "--store-dir",
        type=str,
        metavar="PATH",
        help="Directory holding keyed stores (default: activity.sink.directory)",
    )
    store.add_argument(
        "--key",
        type=str,
        help="Store key (default: activity.sink.key)",
    )

    output = parser.add_argument_group("output")
    output.add_argument(
        "--format",
        choices=["markdown", "json"],
        default="markdown",
        help="Summary format (default: markdown)",
    )
    output.add_argument(
        "--export",
        choices=["json", "csv"],
        help="Export matching events instead of a summary",
    )
    output.add_argument(
        "--ranked",
        action="store_true",
        help="Order exported events by relevance to --text",
    )
    output.add_argument(
        "--limit",
        type=int,
        metavar="N",
        help="Maximum number of exported events",
    )
    output.add_argument(
        "--output",
        type=str,
        metavar="PATH",
        help="Output file path (default: print to stdout)",
    )

    search = parser.add_argument_group("search filters")
    search.add_argument("--kind", help="Category or telemetry kind")
    search.add_argument("--actor", help="Actor id or name")
    search.add_argument("--severity", choices=["low", "medium", "high", "critical"])
    search.add_argument("--status", choices=["success", "failure", "partial"])
    search.add_argument("--action", help="Action substring")
    search.add_argument("--entity", help="Entity substring")
    search.add_argument("--text", help="Case-insensitive text over action, entity, actor, metadata")
    search.add_argument("--since", type=_timestamp_arg, metavar="ISO", help="Earliest timestamp")
    search.add_argument("--until", type=_timestamp_arg, metavar="ISO", help="Latest timestamp")
    search.add_argument("--days", type=int, metavar="DAYS", help="Only read the last N days")

    retention = parser.add_argument_group("retention")
    retention.add_argument(
        "--trim",
        action="store_true",
        help="Remove entries older than --retention-days instead of reporting",
    )
    retention.add_argument(
        "--retention-days",
        type=int,
        metavar="DAYS",
        help="Days of entries to keep (default: activity.retention_days)",
    )
    retention.add_argument("--dry-run", action="store_true", help="Preview trim without modifying files")
    retention.add_argument("--backup", action="store_true", help="Copy the store to <name>.backup before trimming")

    return parser


def open_store(args) -> KeyedFileSink:
    directory = args.store_dir or config.get("activity.sink.directory", ".")
    key = args.key or config.get("activity.sink.key", "admin_activity_logs")
    return KeyedFileSink(Path(directory), key)


def trim_store(store: KeyedFileSink, retention_days: int, dry_run: bool, backup: bool) -> str:
    cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
    stats = analyze_log(store.path, cutoff)
    if stats is None:
        return f"No store at {store.path}"

    removed = store.writer.trim_older_than(cutoff, backup=backup, dry_run=dry_run)
    verb = "Would remove" if dry_run else "Removed"
    lines = [
        f"Store:     {store.path}",
        f"Entries:   {stats['total_entries']}",
        f"Cutoff:    {cutoff.isoformat()} ({retention_days} days)",
        f"{verb}: {removed} entries, keeping {stats['total_entries'] - removed}",
    ]
    if dry_run:
        lines.append("This was a dry run - no files were modified")
    return "\n".join(lines)


def render(args, store: KeyedFileSink) -> str:
    events = store.read(days=args.days)
    criteria = SearchCriteria(
        kind=args.kind,
        actor=args.actor,
        severity=args.severity,
        status=args.status,
        action=args.action,
        entity=args.entity,
        since=args.since,
        until=args.until,
        text=args.text,
    )
    search = EventSearch(lambda: events, criteria)

    if args.export:
        if args.ranked:
            matches = [event for event, _ in search.ranked(args.limit)]
        else:
            matches = list(search)
            if args.limit:
                matches = matches[:args.limit]
        return export_events(matches, args.export)

    stats = compute_stats(list(search))
    if args.format == "json":
        return JSONFormatter.format(stats)
    return MarkdownFormatter.format(stats, title=f"Activity Report: {store.key}")


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        store = open_store(args)
    except Exception as e:
        print(f"Error: Failed to open store: {e}", file=sys.stderr)
        return 1

    try:
        if args.trim:
            retention_days = args.retention_days or config.get("activity.retention_days", 90)
            report = trim_store(store, retention_days, args.dry_run, args.backup)
        else:
            report = render(args, store)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"Error: Failed to read {store.path}: {e}", file=sys.stderr)
        return 1

    if args.output:
        output_path = Path(args.output)
        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            output_path.write_text(report)
        except OSError as e:
            print(f"Error: Failed to write report: {e}", file=sys.stderr)
            return 1
        print(f"Report saved to: {output_path}")
    else:
        print(report)

    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nCancelled by user", file=sys.stderr)
        sys.exit(1)
