"""
Application settings and YAML-backed runtime configuration
"""
import logging
import os
from copy import deepcopy
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)


class Settings:
    """Environment-driven process settings"""

    def __init__(self):
        self.CONFIG_DIR = Path(os.getenv("CONFIG_DIR", "/config"))
        self.WEB_PORT = int(os.getenv("WEB_PORT", "8080"))
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self.DATABASE_URL = os.getenv(
            "DATABASE_URL",
            f"sqlite+aiosqlite:///{self.CONFIG_DIR / 'fleet_ops.db'}",
        )

    @property
    def CONFIG_FILE(self) -> Path:
        return self.CONFIG_DIR / "config.yaml"


settings = Settings()


DEFAULT_CONFIG: dict[str, Any] = {
    "scheduler": {
        "timezone": "UTC",
        "jobs": {
            "connector-poll": {"schedule": "0 * * * *", "enabled": True},
            "alert-scan": {"schedule": "*/15 * * * *", "enabled": True},
            "statement-generation": {"schedule": "0 9 * * 1", "enabled": True},
            "retention-cleanup": {"schedule": "0 2 * * *", "enabled": True},
            "repricing-scan": {"schedule": "0 */6 * * *", "enabled": True},
        },
    },
    "alerts": {
        "retention_days": 30,
        "earnings_drop_percent": 30,
        "earnings_baseline_days": 7,
        "thresholds": {
            "cpu_high": 80,
            "memory_high": 90,
            "uptime_low": 95,
            "utilization_low": 30,
        },
        "severity": {},
    },
    "metrics": {
        "retention_days": 90,
        "source_url": None,
        "timeout_seconds": 10,
    },
    "statements": {
        "default_rev_share": 0.15,
    },
    "repricing": {
        "low_threshold": 30,
        "high_threshold": 90,
        "increase_percent": 10,
        "decrease_percent": 10,
        "min_price": 0.01,
        "auto_apply": False,
    },
}


def _merge(base: dict, override: dict) -> dict:
    merged = deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class AppConfig:
    """
    Runtime configuration loaded from config.yaml with dotted-key access.

    Missing keys fall back to DEFAULT_CONFIG, so a fresh install runs with
    no config file at all.
    """

    def __init__(self, path: Optional[Path] = None, data: Optional[dict] = None):
        self.path = path
        self._config: dict[str, Any] = deepcopy(DEFAULT_CONFIG)
        if data:
            self._config = _merge(self._config, data)
        elif path is not None:
            self.load()

    def load(self):
        """Load config.yaml over the defaults"""
        if self.path is None or not self.path.exists():
            return
        try:
            with open(self.path, "r") as f:
                loaded = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error("Failed to load config from %s: %s", self.path, e)
            return
        if not isinstance(loaded, dict):
            logger.warning("Ignoring config file %s: top level is not a mapping", self.path)
            return
        self._config = _merge(DEFAULT_CONFIG, loaded)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a value by dotted key, e.g. ``alerts.thresholds.cpu_high``"""
        node: Any = self._config
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def set(self, key: str, value: Any):
        """Set a value by dotted key, creating intermediate sections"""
        parts = key.split(".")
        node = self._config
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value

    def save(self):
        """Persist the current configuration to config.yaml"""
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            yaml.safe_dump(self._config, f, default_flow_style=False, sort_keys=True)


app_config = AppConfig(settings.CONFIG_FILE)


def _as_dict(value, default=None):
    """Safely coerce config values to a dict."""
    if isinstance(value, dict):
        return value
    return {} if default is None else default


def _as_int(value, default: int) -> int:
    """Safely coerce config values to int."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_float(value, default: float) -> float:
    """Safely coerce config values to float."""
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _as_bool(value, default: bool) -> bool:
    """Safely coerce config values to bool."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return default
