"""Logging configuration for the orchestrator process."""

import logging
import logging.handlers
from pathlib import Path
from typing import Any

_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _file_handler(project_root: Path, cfg: dict[str, Any], level: int) -> logging.Handler:
    log_path = project_root / cfg.get("file", "data/logs/taskflow.log")
    log_path.parent.mkdir(parents=True, exist_ok=True)
    h = logging.handlers.RotatingFileHandler(
        log_path,
        maxBytes=int(cfg.get("max_bytes", 10 * 1024 * 1024)),
        backupCount=int(cfg.get("backup_count", 3)),
        encoding="utf-8",
    )
    h.setLevel(level)
    return h


def _level(name: Any, fallback: int = logging.INFO) -> int:
    return getattr(logging, str(name).upper(), fallback)


def setup_logging(project_root: Path, settings: dict[str, Any]) -> None:
    """Configure the root logger from the ``logging`` settings section.

    Always logs to a rotating file under project_root; console output is
    optional. ``loggers`` maps logger names to per-module levels, e.g.
    ``{"taskflow.queue.store": "WARNING"}`` to quiet store debug lines.
    """
    cfg = settings.get("logging", {})
    level = _level(cfg.get("level", "INFO"))
    formatter = logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    root = logging.getLogger()
    root.setLevel(level)
    for h in root.handlers[:]:
        root.removeHandler(h)

    handlers = [_file_handler(project_root, cfg, level)]
    if cfg.get("log_to_console", True):
        console = logging.StreamHandler()
        console.setLevel(level)
        handlers.append(console)
    for h in handlers:
        h.setFormatter(formatter)
        root.addHandler(h)

    for name, name_level in (cfg.get("loggers") or {}).items():
        logging.getLogger(name).setLevel(_level(name_level, level))
