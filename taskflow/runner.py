"""Entry point for the orchestrator process: load config, build the engine, run its loops."""

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable

from dotenv import load_dotenv

from taskflow.audit import AuditJournal
from taskflow.builtin import register_builtin
from taskflow.logging_config import setup_logging
from taskflow.notifications import LoggingNotifier
from taskflow.queue.engine import WorkflowEngine
from taskflow.queue.executor import CapabilityRegistry
from taskflow.queue.retry import RetryPolicy
from taskflow.settings import get_setting, load_settings
from taskflow.workflows import WorkflowCatalog

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _build_audit(settings: dict) -> AuditJournal | None:
    if not get_setting(settings, "audit.enabled", True):
        return None
    return AuditJournal(
        db_path=_PROJECT_ROOT / get_setting(settings, "audit.db_path", "data/audit.db"),
        busy_timeout=get_setting(settings, "audit.busy_timeout", 5000),
    )


def _build_catalog(settings: dict) -> WorkflowCatalog:
    return WorkflowCatalog.from_directory(
        _PROJECT_ROOT / get_setting(settings, "workflows.dir", "workflows")
    )


def _build_engine(
    settings: dict,
    catalog: WorkflowCatalog,
    registry: CapabilityRegistry,
    audit: AuditJournal | None,
) -> WorkflowEngine:
    retry_cfg = settings.get("retry", {})
    return WorkflowEngine(
        catalog=catalog,
        registry=registry,
        notifier=LoggingNotifier(),
        audit=audit,
        retry_policy=RetryPolicy(
            backoff_base=float(retry_cfg.get("backoff_base_sec", 0)),
            backoff_max=float(retry_cfg.get("backoff_max_sec", 300)),
            jitter=bool(retry_cfg.get("jitter", True)),
        ),
        tick_sec=get_setting(settings, "queue.tick_sec", 1.0),
        max_tasks_per_tick=get_setting(settings, "queue.max_tasks_per_tick", 10),
        max_concurrency=get_setting(settings, "queue.max_concurrency", 1),
        default_timeout_sec=get_setting(settings, "queue.default_timeout_sec", 60),
        default_max_retries=get_setting(settings, "queue.default_max_retries", 3),
        sla_check_interval_sec=get_setting(settings, "sla.check_interval_sec", 300),
        sla_alert_to=get_setting(settings, "sla.alert_to", "ceo"),
        sla_alert_after_minutes=get_setting(settings, "sla.alert_after_minutes", 60),
        sla_max_duration_minutes=get_setting(settings, "sla.max_duration_minutes", 120),
        cleanup_interval_sec=get_setting(settings, "cleanup.interval_sec", 3600),
        cleanup_max_age_hours=get_setting(settings, "cleanup.max_age_hours", 24),
        audit_retention_days=get_setting(settings, "audit.retention_days", 30),
        triggers=settings.get("triggers") or {},
    )


async def main_async(
    register_capabilities: Callable[[CapabilityRegistry], Any] | None = None,
) -> None:
    """Bootstrap: settings -> logging -> workflows -> capabilities -> engine -> run until cancelled.

    ``register_capabilities`` lets an embedding system add its business
    capabilities to the registry before the loops start.
    """
    settings = load_settings()
    setup_logging(_PROJECT_ROOT, settings)
    catalog = _build_catalog(settings)
    registry = CapabilityRegistry()
    register_builtin(registry)
    if register_capabilities is not None:
        register_capabilities(registry)
    audit = _build_audit(settings)
    engine = _build_engine(settings, catalog, registry, audit)
    try:
        await engine.run_background()
    except asyncio.CancelledError:
        pass
    finally:
        if audit is not None:
            await audit.close()
        logger.info("runner: shutdown complete")


def main() -> None:
    """Synchronous entry for the orchestrator process."""
    load_dotenv(_PROJECT_ROOT / ".env")
    try:
        asyncio.run(main_async())
    except KeyboardInterrupt:
        pass


__all__ = ["main", "main_async"]
