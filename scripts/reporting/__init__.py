"""
Activity reporting: statistics, search, and export over retained events.
"""

from .aggregator import EventSearch, SearchCriteria, compute_stats, tokenize
from .formatters import (
    ASCIIChart,
    CSV_COLUMNS,
    JSONFormatter,
    MarkdownFormatter,
    events_to_csv,
    events_to_json,
    export_events,
)

__all__ = [
    'EventSearch',
    'SearchCriteria',
    'compute_stats',
    'tokenize',
    'ASCIIChart',
    'CSV_COLUMNS',
    'JSONFormatter',
    'MarkdownFormatter',
    'events_to_csv',
    'events_to_json',
    'export_events',
]
