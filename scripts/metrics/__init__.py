"""
Shared utilities for the activity pipeline.

This package provides common utilities used across pipeline components:
- jsonl_utils: JSONL file reading/writing with locking and retention trimming
- config: Unified configuration management
"""

from .jsonl_utils import JSONLReader, JSONLWriter, analyze_log, parse_timestamp
from .config import AnalyticsConfig, config

__all__ = [
    'JSONLReader',
    'JSONLWriter',
    'analyze_log',
    'parse_timestamp',
    'AnalyticsConfig',
    'config',
]

__version__ = '1.0.0'
