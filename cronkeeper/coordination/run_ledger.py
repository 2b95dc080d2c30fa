"""
Cronkeeper: Run Ledger

Execution history for scheduled jobs. Every invocation that gets past the
lock records a ``job_runs`` row; jobs that process several datasets add
one ``job_run_items`` row per dataset.

Key responsibilities:
- Start runs idempotently per (job_name, target_date)
- Record terminal status, errors and meta for runs and items
- Answer history queries used by catch-up logic and monitoring
- Recover runs left in ``running`` by crashed workers

External dependencies:
- psycopg2: PostgreSQL access and JSONB adaptation

Database tables accessed:
- runtime_db.job_runs (Read/Write)
- runtime_db.job_run_items (Read/Write)

Thread safety: Thread-safe (no shared mutable state; each call uses its own
pooled connection)

Author: Cronkeeper Team
Created: 2026-10-19
Last Modified: 2026-10-19
Status: Development
Version: v0.1.0
"""

# ============================================================================
# Imports
# ============================================================================

from __future__ import annotations

import json
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Set

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2.extras import Json

from cronkeeper.core.database import DatabaseError, DatabaseManager
from cronkeeper.core.ids import generate_uuid
from cronkeeper.core.logging import get_logger
from cronkeeper.core.time import utc_now

# ============================================================================
# Module Setup
# ============================================================================

logger = get_logger(__name__)

RUN_ERROR_MAX_LENGTH = 10000
RUN_ERROR_MARKER = "... (truncated)"
HEARTBEAT_ERROR_MAX_LENGTH = 1000
HEARTBEAT_ERROR_MARKER = "..."

DEFAULT_FAILED_RUNS_LIMIT = 10
ALREADY_EXECUTED_MESSAGE = "Job already executed for this target date"

_RUN_COLUMNS = (
    "run_id, job_name, target_date, status, started_at, finished_at, error_message, meta"
)
_ITEM_COLUMNS = (
    "run_id, dataset, status, row_count, page_count, started_at, finished_at, "
    "error_message, meta"
)


class RunLedgerError(Exception):
    """Raised when the ledger cannot record or read run history."""


class JobStatus(str, Enum):
    """Lifecycle status shared by runs, items and heartbeats."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


def truncate_message(
    message: Optional[str],
    limit: int = RUN_ERROR_MAX_LENGTH,
    marker: str = RUN_ERROR_MARKER,
) -> Optional[str]:
    """Keep the first ``limit`` characters of ``message`` and append ``marker``."""

    if message is None or len(message) <= limit:
        return message
    return message[:limit] + marker


def encode_meta(meta: Optional[Dict[str, Any]]) -> Json:
    """Adapt ``meta`` for a JSONB column. Values JSON cannot encode, such as
    dates, are stored as their ``str()``."""

    return Json(meta or {}, dumps=partial(json.dumps, default=str))


# ============================================================================
# Data Models
# ============================================================================


@dataclass
class JobRun:
    run_id: str
    job_name: str
    target_date: Optional[date]
    status: JobStatus
    started_at: datetime
    finished_at: Optional[datetime] = None
    error_message: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class JobRunItem:
    run_id: str
    dataset: str
    status: JobStatus
    row_count: Optional[int] = None
    page_count: Optional[int] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error_message: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RunStart:
    """Result of :meth:`RunLedger.start_run`.

    ``already_executed`` is the normal skip signal for a target date that
    already has a run; ``run_id`` is None in that case.
    """

    run_id: Optional[str]
    already_executed: bool = False

    @property
    def started(self) -> bool:
        return self.run_id is not None and not self.already_executed


def _row_to_run(row: tuple) -> JobRun:
    run_id, job_name, target_date, status, started_at, finished_at, error_message, meta = row
    return JobRun(
        run_id=run_id,
        job_name=job_name,
        target_date=target_date,
        status=JobStatus(status),
        started_at=started_at,
        finished_at=finished_at,
        error_message=error_message,
        meta=meta or {},
    )


def _row_to_item(row: tuple) -> JobRunItem:
    (
        run_id,
        dataset,
        status,
        row_count,
        page_count,
        started_at,
        finished_at,
        error_message,
        meta,
    ) = row
    return JobRunItem(
        run_id=run_id,
        dataset=dataset,
        status=JobStatus(status),
        row_count=row_count,
        page_count=page_count,
        started_at=started_at,
        finished_at=finished_at,
        error_message=error_message,
        meta=meta or {},
    )


# ============================================================================
# Ledger
# ============================================================================


class RunLedger:
    """Read/write access to ``job_runs`` and ``job_run_items``.

    Only :meth:`start_run` raises on storage failure; completion and item
    writes are best-effort and log instead, so a ledger outage cannot turn
    a finished job into a failed one. Query helpers raise
    :class:`RunLedgerError`.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        *,
        clock: Callable[[], datetime] = utc_now,
        run_id_factory: Callable[[], str] = generate_uuid,
    ) -> None:
        self.db_manager = db_manager
        self._clock = clock
        self._run_id_factory = run_id_factory

    # ======================================================================
    # Internal helpers
    # ======================================================================

    @contextmanager
    def _errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except (psycopg2.Error, DatabaseError) as exc:
            raise RunLedgerError(f"{operation} failed: {exc}") from exc

    def _write(self, sql: str, params: tuple) -> int:
        with self.db_manager.get_runtime_connection() as conn:
            cursor = conn.cursor()
            try:
                cursor.execute(sql, params)
                affected = cursor.rowcount
                conn.commit()
            finally:
                cursor.close()
        return affected

    def _best_effort_write(self, description: str, sql: str, params: tuple) -> bool:
        try:
            self._write(sql, params)
        except (psycopg2.Error, DatabaseError, TypeError, ValueError) as exc:
            logger.error("Failed to %s: %s", description, exc)
            return False
        return True

    def _fetch(self, sql: str, params: tuple) -> List[tuple]:
        with self.db_manager.get_runtime_connection() as conn:
            cursor = conn.cursor()
            try:
                cursor.execute(sql, params)
                rows = cursor.fetchall()
            finally:
                cursor.close()
        return rows

    # ======================================================================
    # Runs
    # ======================================================================

    def start_run(
        self,
        job_name: str,
        target_date: Optional[date] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> RunStart:
        """Insert a ``running`` row for this job.

        Returns:
            :class:`RunStart` with the new ``run_id``, or with
            ``already_executed=True`` when ``(job_name, target_date)`` is
            already recorded.

        Raises:
            RunLedgerError: On any other storage failure.
        """

        run_id = self._run_id_factory()
        sql = f"""
            INSERT INTO job_runs ({_RUN_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, NULL, NULL, %s)
        """
        params = (
            run_id,
            job_name,
            target_date,
            JobStatus.RUNNING.value,
            self._clock(),
            encode_meta(meta),
        )

        with self._errors(f"start_run({job_name})"):
            with self.db_manager.get_runtime_connection() as conn:
                cursor = conn.cursor()
                try:
                    cursor.execute(sql, params)
                    conn.commit()
                except pg_errors.UniqueViolation:
                    conn.rollback()
                    logger.info(
                        "%s: job=%s target_date=%s", ALREADY_EXECUTED_MESSAGE, job_name, target_date
                    )
                    return RunStart(run_id=None, already_executed=True)
                finally:
                    cursor.close()

        logger.info("Run started: job=%s run_id=%s target_date=%s", job_name, run_id, target_date)
        return RunStart(run_id=run_id)

    def complete_run(
        self,
        run_id: str,
        status: JobStatus,
        error_message: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Record the terminal status of a run (best-effort, last write wins).

        ``meta`` is merged into the stored meta. Returns False if the write
        failed.
        """

        sql = """
            UPDATE job_runs
            SET status = %s,
                finished_at = %s,
                error_message = %s,
                meta = COALESCE(meta, '{}'::jsonb) || %s::jsonb
            WHERE run_id = %s
        """
        params = (
            JobStatus(status).value,
            self._clock(),
            truncate_message(error_message),
            encode_meta(meta),
            run_id,
        )
        ok = self._best_effort_write(f"complete run {run_id}", sql, params)
        if ok:
            logger.info("Run completed: run_id=%s status=%s", run_id, JobStatus(status).value)
        return ok

    def get_run(self, run_id: str) -> Optional[JobRun]:
        sql = f"SELECT {_RUN_COLUMNS} FROM job_runs WHERE run_id = %s"
        with self._errors("get_run"):
            rows = self._fetch(sql, (run_id,))
        return _row_to_run(rows[0]) if rows else None

    # ======================================================================
    # Items
    # ======================================================================

    def start_item(
        self,
        run_id: str,
        dataset: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Record that ``dataset`` started processing within ``run_id``."""

        sql = """
            INSERT INTO job_run_items (run_id, dataset, status, started_at, meta)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (run_id, dataset) DO UPDATE SET
                status = EXCLUDED.status,
                started_at = EXCLUDED.started_at,
                finished_at = NULL,
                error_message = NULL,
                meta = EXCLUDED.meta
        """
        params = (run_id, dataset, JobStatus.RUNNING.value, self._clock(), encode_meta(meta))
        return self._best_effort_write(f"start item {run_id}/{dataset}", sql, params)

    def complete_item(
        self,
        run_id: str,
        dataset: str,
        status: JobStatus,
        *,
        row_count: Optional[int] = None,
        page_count: Optional[int] = None,
        error_message: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Record the terminal status of one dataset (best-effort)."""

        sql = """
            UPDATE job_run_items
            SET status = %s,
                finished_at = %s,
                row_count = %s,
                page_count = %s,
                error_message = %s,
                meta = COALESCE(meta, '{}'::jsonb) || %s::jsonb
            WHERE run_id = %s AND dataset = %s
        """
        params = (
            JobStatus(status).value,
            self._clock(),
            row_count,
            page_count,
            truncate_message(error_message),
            encode_meta(meta),
            run_id,
            dataset,
        )
        return self._best_effort_write(f"complete item {run_id}/{dataset}", sql, params)

    def get_items(self, run_id: str) -> List[JobRunItem]:
        sql = f"""
            SELECT {_ITEM_COLUMNS}
            FROM job_run_items
            WHERE run_id = %s
            ORDER BY started_at ASC
        """
        with self._errors("get_items"):
            rows = self._fetch(sql, (run_id,))
        return [_row_to_item(row) for row in rows]

    # ======================================================================
    # Queries
    # ======================================================================

    def latest_run(self, job_name: str, status: Optional[JobStatus] = None) -> Optional[JobRun]:
        """Return the most recently started run of ``job_name``."""

        sql = f"SELECT {_RUN_COLUMNS} FROM job_runs WHERE job_name = %s"
        params: tuple = (job_name,)
        if status is not None:
            sql += " AND status = %s"
            params += (JobStatus(status).value,)
        sql += " ORDER BY started_at DESC LIMIT 1"

        with self._errors("latest_run"):
            rows = self._fetch(sql, params)
        return _row_to_run(rows[0]) if rows else None

    def has_run_for_date(
        self,
        job_name: str,
        target_date: date,
        status: Optional[JobStatus] = None,
    ) -> bool:
        sql = "SELECT 1 FROM job_runs WHERE job_name = %s AND target_date = %s"
        params: tuple = (job_name, target_date)
        if status is not None:
            sql += " AND status = %s"
            params += (JobStatus(status).value,)
        sql += " LIMIT 1"

        with self._errors("has_run_for_date"):
            rows = self._fetch(sql, params)
        return bool(rows)

    def failed_runs(self, job_name: str, limit: int = DEFAULT_FAILED_RUNS_LIMIT) -> List[JobRun]:
        """Return the most recent failed runs of ``job_name``, newest first."""

        sql = f"""
            SELECT {_RUN_COLUMNS}
            FROM job_runs
            WHERE job_name = %s AND status = %s
            ORDER BY started_at DESC
            LIMIT %s
        """
        with self._errors("failed_runs"):
            rows = self._fetch(sql, (job_name, JobStatus.FAILED.value, limit))
        return [_row_to_run(row) for row in rows]

    def successful_target_dates(self, job_name: str, dates: Iterable[date]) -> Set[date]:
        """Return the subset of ``dates`` that have a successful run."""

        candidates = list(dates)
        if not candidates:
            return set()

        sql = """
            SELECT DISTINCT target_date
            FROM job_runs
            WHERE job_name = %s
              AND status = %s
              AND target_date = ANY(%s)
        """
        with self._errors("successful_target_dates"):
            rows = self._fetch(sql, (job_name, JobStatus.SUCCESS.value, candidates))
        return {row[0] for row in rows}

    def last_successful_target_date(self, job_name: str) -> Optional[date]:
        sql = """
            SELECT MAX(target_date)
            FROM job_runs
            WHERE job_name = %s AND status = %s AND target_date IS NOT NULL
        """
        with self._errors("last_successful_target_date"):
            rows = self._fetch(sql, (job_name, JobStatus.SUCCESS.value))
        return rows[0][0] if rows else None

    # ======================================================================
    # Maintenance
    # ======================================================================

    def recover_stale_runs(self, older_than_hours: float, job_name: Optional[str] = None) -> int:
        """Mark ``running`` rows older than the cutoff as failed.

        A worker that crashed mid-run leaves its row in ``running``; this
        closes such rows so history and catch-up see a terminal state.
        """

        cutoff = self._clock() - timedelta(hours=older_than_hours)
        message = f"Recovered stale run: still running after {older_than_hours:g} hours"
        sql = """
            UPDATE job_runs
            SET status = %s, finished_at = %s, error_message = %s
            WHERE status = %s AND started_at < %s
        """
        params: tuple = (
            JobStatus.FAILED.value,
            self._clock(),
            message,
            JobStatus.RUNNING.value,
            cutoff,
        )
        if job_name is not None:
            sql += " AND job_name = %s"
            params += (job_name,)

        with self._errors("recover_stale_runs"):
            count = self._write(sql, params)
        if count:
            logger.warning("Marked %d stale running runs as failed", count)
        return count

    def clear_failed_run(self, job_name: str, target_date: date) -> bool:
        """Delete a failed run for ``target_date`` so the date can be re-run.

        Only rows in ``failed`` status are removed; items cascade.
        """

        sql = """
            DELETE FROM job_runs
            WHERE job_name = %s AND target_date = %s AND status = %s
        """
        with self._errors("clear_failed_run"):
            count = self._write(sql, (job_name, target_date, JobStatus.FAILED.value))
        if count:
            logger.info("Cleared failed run: job=%s target_date=%s", job_name, target_date)
        return count > 0
