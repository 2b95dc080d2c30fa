"""
Cronkeeper: Job Heartbeat Monitor

One ``job_heartbeat`` row per job, overwritten each time the job reaches
a running or terminal state. External monitoring answers "is job X alive"
with a single row read instead of scanning run history.

Key responsibilities:
- Upsert the latest status of a job (best-effort)
- Evaluate staleness and failure for one job or a set of jobs

External dependencies:
- psycopg2: PostgreSQL access and JSONB adaptation

Database tables accessed:
- runtime_db.job_heartbeat (Read/Write)

Thread safety: Thread-safe (stateless apart from injected collaborators)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

import psycopg2

from cronkeeper.coordination.run_ledger import (
    HEARTBEAT_ERROR_MARKER,
    HEARTBEAT_ERROR_MAX_LENGTH,
    JobStatus,
    encode_meta,
    truncate_message,
)
from cronkeeper.core.database import DatabaseError, DatabaseManager
from cronkeeper.core.logging import get_logger
from cronkeeper.core.time import utc_now

logger = get_logger(__name__)

DEFAULT_STALE_THRESHOLD_HOURS = 25.0


@dataclass
class HeartbeatRecord:
    job_name: str
    last_seen_at: datetime
    last_status: JobStatus
    last_run_id: Optional[str] = None
    last_target_date: Optional[date] = None
    last_error: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class HealthStatus:
    healthy: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class JobHealth:
    job_name: str
    healthy: bool
    reason: Optional[str]
    last_seen_at: Optional[datetime]
    last_status: Optional[JobStatus]


@dataclass(frozen=True)
class HealthReport:
    """Aggregate health across jobs; ``healthy`` only if every job is."""

    healthy: bool
    jobs: List[JobHealth]

    def unhealthy_jobs(self) -> List[JobHealth]:
        return [job for job in self.jobs if not job.healthy]


def evaluate_health(
    record: Optional[HeartbeatRecord],
    stale_threshold_hours: float = DEFAULT_STALE_THRESHOLD_HOURS,
    now: Optional[datetime] = None,
) -> HealthStatus:
    """Judge a single heartbeat.

    Unhealthy when the record is missing, older than the threshold, or its
    last status is failed. Staleness is reported before failure.
    """

    if record is None:
        return HealthStatus(healthy=False, reason="No heartbeat record found")

    now = now or utc_now()
    hours_since = (now - record.last_seen_at).total_seconds() / 3600.0
    if hours_since > stale_threshold_hours:
        return HealthStatus(
            healthy=False,
            reason=f"Stale: last seen {hours_since:.1f} hours ago",
        )

    if record.last_status == JobStatus.FAILED:
        return HealthStatus(
            healthy=False,
            reason=f"Last run failed: {record.last_error or 'Unknown error'}",
        )

    return HealthStatus(healthy=True)


class HeartbeatMonitor:
    """Read and write ``job_heartbeat`` rows."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_manager = db_manager
        self._clock = clock

    def update(
        self,
        job_name: str,
        status: JobStatus,
        *,
        run_id: Optional[str] = None,
        target_date: Optional[date] = None,
        error: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Upsert the heartbeat for ``job_name``.

        Best-effort: storage failures are logged and reported as False.
        """

        sql = """
            INSERT INTO job_heartbeat (
                job_name, last_seen_at, last_status, last_run_id,
                last_target_date, last_error, meta
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (job_name) DO UPDATE SET
                last_seen_at = EXCLUDED.last_seen_at,
                last_status = EXCLUDED.last_status,
                last_run_id = EXCLUDED.last_run_id,
                last_target_date = EXCLUDED.last_target_date,
                last_error = EXCLUDED.last_error,
                meta = EXCLUDED.meta
        """
        params = (
            job_name,
            self._clock(),
            JobStatus(status).value,
            run_id,
            target_date,
            truncate_message(error, HEARTBEAT_ERROR_MAX_LENGTH, HEARTBEAT_ERROR_MARKER),
            encode_meta(meta),
        )

        try:
            with self.db_manager.get_runtime_connection() as conn:
                cursor = conn.cursor()
                try:
                    cursor.execute(sql, params)
                    conn.commit()
                finally:
                    cursor.close()
        except (psycopg2.Error, DatabaseError, TypeError, ValueError) as exc:
            logger.error("Failed to update heartbeat for job=%s: %s", job_name, exc)
            return False
        return True

    def _select(self, where: str, params: tuple) -> List[HeartbeatRecord]:
        sql = f"""
            SELECT job_name, last_seen_at, last_status, last_run_id,
                   last_target_date, last_error, meta
            FROM job_heartbeat
            {where}
            ORDER BY job_name
        """
        with self.db_manager.get_runtime_connection() as conn:
            cursor = conn.cursor()
            try:
                cursor.execute(sql, params)
                rows = cursor.fetchall()
            finally:
                cursor.close()

        return [
            HeartbeatRecord(
                job_name=name,
                last_seen_at=last_seen_at,
                last_status=JobStatus(last_status),
                last_run_id=last_run_id,
                last_target_date=last_target_date,
                last_error=last_error,
                meta=meta or {},
            )
            for name, last_seen_at, last_status, last_run_id, last_target_date, last_error, meta in rows
        ]

    def get(self, job_name: str) -> Optional[HeartbeatRecord]:
        records = self._select("WHERE job_name = %s", (job_name,))
        return records[0] if records else None

    def get_all(self) -> List[HeartbeatRecord]:
        return self._select("", ())

    def is_healthy(
        self,
        job_name: str,
        stale_threshold_hours: float = DEFAULT_STALE_THRESHOLD_HOURS,
    ) -> HealthStatus:
        return evaluate_health(self.get(job_name), stale_threshold_hours, now=self._clock())

    def check_all(
        self,
        job_names: Iterable[str],
        stale_threshold_hours: float = DEFAULT_STALE_THRESHOLD_HOURS,
    ) -> HealthReport:
        """Evaluate every job in ``job_names`` from one table read."""

        records = {record.job_name: record for record in self.get_all()}
        now = self._clock()

        jobs: List[JobHealth] = []
        for name in job_names:
            record = records.get(name)
            status = evaluate_health(record, stale_threshold_hours, now=now)
            jobs.append(
                JobHealth(
                    job_name=name,
                    healthy=status.healthy,
                    reason=status.reason,
                    last_seen_at=record.last_seen_at if record else None,
                    last_status=record.last_status if record else None,
                )
            )
            if not status.healthy:
                logger.warning("Job %s unhealthy: %s", name, status.reason)

        return HealthReport(healthy=all(job.healthy for job in jobs), jobs=jobs)
