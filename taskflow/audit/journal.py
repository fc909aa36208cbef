"""SQLite audit journal: task and workflow transitions for dashboards and metrics."""

import json
import logging
import time
from pathlib import Path
from typing import Any, Callable

import aiosqlite

from taskflow.audit.models import AuditRecord, PerformanceMetrics, TriggerMetrics, WorkflowMetrics
from taskflow.audit.topics import AuditTopics

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS audit_log (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    topic        TEXT    NOT NULL,
    workflow_id  TEXT,
    instance_id  TEXT,
    task_id      TEXT,
    capability   TEXT,
    action       TEXT,
    status       TEXT,
    error        TEXT,
    payload      TEXT    NOT NULL,
    created_at   REAL    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_al_topic_created ON audit_log(topic, created_at);
CREATE INDEX IF NOT EXISTS idx_al_instance ON audit_log(instance_id);
CREATE INDEX IF NOT EXISTS idx_al_task ON audit_log(task_id);
"""

_COLUMNS = "id, topic, workflow_id, instance_id, task_id, capability, action, status, error, payload, created_at"


def _row_to_record(row: tuple) -> AuditRecord:
    payload = json.loads(row[9]) if isinstance(row[9], str) else row[9]
    return AuditRecord(
        id=row[0],
        topic=row[1],
        workflow_id=row[2],
        instance_id=row[3],
        task_id=row[4],
        capability=row[5],
        action=row[6],
        status=row[7],
        error=row[8],
        payload=payload or {},
        created_at=row[10],
    )


class AuditJournal:
    """SQLite-backed AuditSink. One connection per instance."""

    def __init__(
        self,
        db_path: Path,
        busy_timeout: int = 5000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db_path = db_path
        self._busy_timeout = busy_timeout
        self._clock = clock
        self._conn: aiosqlite.Connection | None = None

    async def _ensure_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = await aiosqlite.connect(str(self._db_path))
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute("PRAGMA synchronous=NORMAL")
            await self._conn.execute(f"PRAGMA busy_timeout={self._busy_timeout}")
            await self._conn.executescript(_SCHEMA)
            await self._conn.commit()
        return self._conn

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def record(self, topic: str, payload: dict[str, Any]) -> int:
        """Append one record and return its row id."""
        conn = await self._ensure_conn()
        cursor = await conn.execute(
            """
            INSERT INTO audit_log
                (topic, workflow_id, instance_id, task_id, capability, action, status, error, payload, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                topic,
                payload.get("workflow_id"),
                payload.get("instance_id"),
                payload.get("task_id"),
                payload.get("capability"),
                payload.get("action"),
                payload.get("status"),
                payload.get("error"),
                json.dumps(payload, ensure_ascii=False, default=str),
                self._clock(),
            ),
        )
        await conn.commit()
        return cursor.lastrowid or 0

    async def recent(
        self,
        limit: int = 50,
        topic: str | None = None,
        instance_id: str | None = None,
    ) -> list[AuditRecord]:
        """Newest records first, optionally filtered by topic or instance."""
        conn = await self._ensure_conn()
        clauses: list[str] = []
        params: list[Any] = []
        if topic is not None:
            clauses.append("topic = ?")
            params.append(topic)
        if instance_id is not None:
            clauses.append("instance_id = ?")
            params.append(instance_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cursor = await conn.execute(
            f"SELECT {_COLUMNS} FROM audit_log {where} ORDER BY id DESC LIMIT ?",
            [*params, limit],
        )
        rows = await cursor.fetchall()
        return [_row_to_record(row) for row in rows]

    async def performance_metrics(self, days: float = 7, now: float | None = None) -> PerformanceMetrics:
        """Aggregate finished workflow instances recorded in the last ``days``."""
        conn = await self._ensure_conn()
        cutoff = (self._clock() if now is None else now) - days * 86400
        cursor = await conn.execute(
            "SELECT workflow_id, status, payload FROM audit_log WHERE topic = ? AND created_at > ?",
            (AuditTopics.WORKFLOW_FINISHED, cutoff),
        )
        rows = await cursor.fetchall()

        metrics = PerformanceMetrics(days=days, total_executions=len(rows))
        durations: list[float] = []
        successful = 0
        for workflow_id, status, raw_payload in rows:
            payload = json.loads(raw_payload) if raw_payload else {}
            wf = metrics.by_workflow.setdefault(workflow_id or "unknown", WorkflowMetrics())
            wf.count += 1
            if status == "completed":
                wf.success += 1
                successful += 1
            elif status == "completed_with_errors":
                wf.with_errors += 1
            else:
                wf.failed += 1
            trigger = payload.get("triggered_by") or "unknown"
            metrics.by_trigger.setdefault(trigger, TriggerMetrics()).count += 1
            if isinstance(payload.get("duration_sec"), (int, float)):
                durations.append(float(payload["duration_sec"]))

        if rows:
            metrics.success_rate = round(successful / len(rows) * 100, 1)
        if durations:
            metrics.avg_duration_sec = round(sum(durations) / len(durations), 1)
        return metrics

    async def cleanup(self, max_age_days: float = 30) -> int:
        """Delete records older than max_age_days. Returns count removed."""
        conn = await self._ensure_conn()
        cutoff = self._clock() - max_age_days * 86400
        cursor = await conn.execute("DELETE FROM audit_log WHERE created_at < ?", (cutoff,))
        await conn.commit()
        deleted = cursor.rowcount or 0
        if deleted:
            logger.info("audit: cleaned up %d records older than %s days", deleted, max_age_days)
        return deleted
