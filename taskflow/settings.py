"""Load orchestrator settings from config/settings.yaml."""

import copy
import logging
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

_DEFAULTS: dict[str, Any] = {
    "workflows": {
        "dir": "workflows",
    },
    "queue": {
        "tick_sec": 1.0,
        "max_tasks_per_tick": 10,
        "max_concurrency": 1,
        "default_timeout_sec": 60,
        "default_max_retries": 3,
    },
    "retry": {
        # 0 re-queues a failed task immediately; > 0 enables exponential backoff
        "backoff_base_sec": 0,
        "backoff_max_sec": 300,
        "jitter": True,
    },
    "sla": {
        "check_interval_sec": 300,
        "alert_to": "ceo",
        "alert_after_minutes": 60,
        "max_duration_minutes": 120,
    },
    "cleanup": {
        "interval_sec": 3600,
        "max_age_hours": 24,
    },
    "audit": {
        "enabled": True,
        "db_path": "data/audit.db",
        "busy_timeout": 5000,
        "retention_days": 30,
    },
    # event type -> workflow definition id
    "triggers": {},
    "logging": {
        "file": "data/logs/taskflow.log",
        "level": "INFO",
        "log_to_console": True,
        "max_bytes": 10485760,  # 10 MB
        "backup_count": 3,
        "loggers": {},
    },
}

_cached: dict[str, Any] | None = None


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Merge overlay into base recursively. Mutates base; None values keep the default."""
    for key, value in overlay.items():
        if value is None:
            continue
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def get_default_settings() -> dict[str, Any]:
    return copy.deepcopy(_DEFAULTS)


def get_setting(settings: dict[str, Any], path: str, default: Any = None) -> Any:
    """Get a nested value by dot path (e.g. 'queue.tick_sec')."""
    current: Any = settings
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def reload_settings() -> None:
    """Clear the settings cache so the next load_settings() rereads the file."""
    global _cached
    _cached = None


def load_settings(config_dir: Path | None = None) -> dict[str, Any]:
    """Return defaults merged with config/settings.yaml.

    The default location is cached; an explicit ``config_dir`` is always read fresh.
    """
    global _cached
    use_cache = config_dir is None
    if use_cache and _cached is not None:
        return _cached

    if config_dir is None:
        config_dir = Path(__file__).resolve().parent.parent / "config"
    path = config_dir / "settings.yaml"

    result = get_default_settings()
    if path.exists():
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                _deep_merge(result, data)
            elif data is not None:
                logger.warning("settings: %s is not a mapping, using defaults", path)
        except (yaml.YAMLError, OSError) as e:
            logger.warning("settings: failed to read %s, using defaults: %s", path, e)

    if use_cache:
        _cached = result
    return result
