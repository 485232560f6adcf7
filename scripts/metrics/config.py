"""
Unified configuration management for the activity pipeline.

Provides centralized configuration with:
- JSON file loading merged over defaults
- Environment variable overrides
- Dot-notation access
- Feature enable/disable flags
"""

import copy
import json
import os
import sys
from pathlib import Path
from typing import Any, Optional

CONFIG_ENV_VAR = "ACTIVITY_PIPELINE_CONFIG"

DEFAULT_SENSITIVE_FIELD_PATTERNS = [
    "password",
    "ssn",
    "social.security",
    "credit.card",
    "card.number",
    "cvv",
    "security.code",
]


class AnalyticsConfig:
    """
    Singleton configuration manager for the pipeline variants.

    Usage:
        from metrics.config import config

        if config.is_enabled('activity'):
            # ... audit logging code

        buffer_size = config.get('activity.buffer_size')
    """

    _instance = None
    _config = None
    _config_loaded = False

    def __new__(cls):
        """Singleton pattern."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def load(self, config_path: Optional[Path] = None):
        """
        Load configuration from file.

        Args:
            config_path: Path to pipeline_config.json (optional)
        """
        if self._config_loaded:
            return  # Already loaded

        if config_path is None:
            env_path = os.environ.get(CONFIG_ENV_VAR)
            if env_path:
                config_path = Path(env_path)
            else:
                config_path = Path(__file__).parent.parent.parent / "config" / "pipeline_config.json"

        self._config = self._get_defaults()
        if config_path.exists():
            try:
                with open(config_path) as f:
                    self._merge(self._config, json.load(f))
            except Exception as e:
                print(f"Warning: Failed to load config from {config_path}: {e}", file=sys.stderr)
                self._config = self._get_defaults()

        # Apply environment variable overrides
        self._apply_env_overrides()

        self._config_loaded = True

    def _get_defaults(self) -> dict:
        """
        Get default configuration.

        Returns:
            Dictionary with default settings
        """
        return {
            "version": "1.0.0",
            "debug": False,
            "telemetry": {
                "enabled": True,
                "enabled_kinds": ["interaction", "scroll", "page_view", "form_submit", "custom"],
                "include_categories": [],
                "sample_rate": 1.0,
                "buffer_size": 50,
                "flush_interval_sec": 10.0,
                "max_retries": 3,
                "base_retry_delay_sec": 1.0,
                "excluded_selectors": [".sensitive", "[data-private]"],
                "excluded_actions": [],
                "sensitive_field_patterns": list(DEFAULT_SENSITIVE_FIELD_PATTERNS),
                "min_severity": "low",
                "scroll_depth_step": 10,
                "retention_days": None,
                "sink": {
                    "type": "memory",
                },
            },
            "activity": {
                "enabled": True,
                "enabled_kinds": [],
                "include_categories": [],
                "sample_rate": 1.0,
                "buffer_size": 100,
                "flush_interval_sec": 30.0,
                "max_retries": 3,
                "base_retry_delay_sec": 2.0,
                "excluded_selectors": [],
                "excluded_actions": [],
                "sensitive_field_patterns": list(DEFAULT_SENSITIVE_FIELD_PATTERNS),
                "min_severity": "low",
                "retention_days": 90,
                "sink": {
                    "type": "file",
                    "directory": "~/.activity_pipeline/logs",
                    "key": "admin_activity_logs",
                },
            },
        }

    @classmethod
    def _merge(cls, target: dict, source: dict):
        """Deep merge source dictionary into target."""
        for key, value in source.items():
            if key in target and isinstance(target[key], dict) and isinstance(value, dict):
                cls._merge(target[key], value)
            else:
                target[key] = value

    def _apply_env_overrides(self):
        """Apply environment variable overrides to configuration."""
        # ACTIVITY_PIPELINE_TELEMETRY_ENABLED=false
        for section in ("telemetry", "activity"):
            env_name = f"ACTIVITY_PIPELINE_{section.upper()}_ENABLED"
            if env_name in os.environ:
                value = os.environ[env_name].lower()
                self._config[section]["enabled"] = value in ("true", "1", "yes")

        if "ACTIVITY_PIPELINE_SAMPLE_RATE" in os.environ:
            try:
                rate = float(os.environ["ACTIVITY_PIPELINE_SAMPLE_RATE"])
                self._config["telemetry"]["sample_rate"] = rate
            except ValueError:
                print("Warning: Ignoring non-numeric ACTIVITY_PIPELINE_SAMPLE_RATE", file=sys.stderr)

        if "ACTIVITY_PIPELINE_DEBUG" in os.environ:
            value = os.environ["ACTIVITY_PIPELINE_DEBUG"].lower()
            self._config["debug"] = value in ("true", "1", "yes")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value with dot notation.

        Args:
            key: Configuration key (e.g., "telemetry.enabled")
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        if not self._config_loaded:
            self.load()

        keys = key.split('.')
        value = self._config

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default

        return value if value is not None else default

    def set(self, key: str, value: Any):
        """
        Set configuration value (runtime only, not persisted).

        Args:
            key: Configuration key (dot notation)
            value: Value to set
        """
        if not self._config_loaded:
            self.load()

        keys = key.split('.')
        config = self._config

        # Navigate to parent
        for k in keys[:-1]:
            if k not in config:
                config[k] = {}
            config = config[k]

        config[keys[-1]] = value

    def section(self, name: str) -> dict:
        """
        Get a deep copy of one top-level section.

        Args:
            name: Section name ("telemetry" or "activity")

        Returns:
            Section dictionary (empty if missing)
        """
        if not self._config_loaded:
            self.load()
        return copy.deepcopy(self._config.get(name) or {})

    def is_enabled(self, feature: str) -> bool:
        """
        Check if a feature is enabled.

        Args:
            feature: Feature name (e.g., "telemetry", "activity")

        Returns:
            True if enabled, False otherwise
        """
        return self.get(f"{feature}.enabled", False)

    def reload(self):
        """Force reload configuration from file."""
        self._config_loaded = False
        self.load()


# Singleton instance for import
config = AnalyticsConfig()

# Auto-load on import
config.load()
