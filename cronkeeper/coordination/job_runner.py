"""
Cronkeeper: Guarded Job Execution

The top-level handler for scheduled jobs. It wires the lock, the run
ledger, the heartbeat and the notifier around a job function so that
every job gets the same lifecycle:

    acquire lock -> start run -> heartbeat(running) -> handler
        -> complete run -> heartbeat -> notify -> release lock

This is the only place that converts an uncaught handler error into a
failed run record and a failure notification. Lock release always runs,
whichever way the handler exits.

External dependencies:
- None beyond the coordination modules

Database tables accessed:
- runtime_db.job_locks, job_runs, job_run_items, job_heartbeat (via
  collaborators)

Thread safety: Not intended for concurrent use of one instance; run one
job at a time per worker.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Callable, Dict, Optional

from cronkeeper.coordination.heartbeat import HeartbeatMonitor
from cronkeeper.coordination.job_lock import (
    DEFAULT_LOCK_TTL_SECONDS,
    DistributedLock,
    PostgresLockStore,
)
from cronkeeper.coordination.run_ledger import JobStatus, RunLedger, RunStart, truncate_message
from cronkeeper.core.config import CronkeeperConfig
from cronkeeper.core.database import DatabaseManager
from cronkeeper.core.logging import get_logger
from cronkeeper.notification.notifier import (
    JobFailureNotification,
    JobSuccessNotification,
    Notifier,
    build_notifier,
)

logger = get_logger(__name__)


class JobAction(str, Enum):
    """What happened to a job invocation."""

    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED_LOCKED = "skipped_locked"
    SKIPPED_ALREADY_EXECUTED = "skipped_already_executed"


@dataclass
class JobOutcome:
    job_name: str
    action: JobAction
    run_id: Optional[str] = None
    target_date: Optional[date] = None
    result: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        """Skips count as success; only failures do not."""

        return self.action != JobAction.FAILED


@dataclass
class JobContext:
    """Handle passed to job handlers for the duration of one run."""

    job_name: str
    run_id: str
    target_date: Optional[date]
    lock_token: str
    lock: DistributedLock
    ledger: RunLedger
    lock_ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS

    def extend_lock(self, ttl_seconds: Optional[int] = None) -> bool:
        """Push the lock expiry forward for long-running handlers."""

        return self.lock.extend(
            self.job_name, self.lock_token, ttl_seconds or self.lock_ttl_seconds
        )

    def start_item(self, dataset: str, meta: Optional[Dict[str, Any]] = None) -> bool:
        return self.ledger.start_item(self.run_id, dataset, meta)

    def complete_item(self, dataset: str, status: JobStatus, **kwargs: Any) -> bool:
        return self.ledger.complete_item(self.run_id, dataset, status, **kwargs)


JobHandler = Callable[[JobContext], Optional[Dict[str, Any]]]


class JobRunner:
    """Run job handlers under the lock/ledger/heartbeat lifecycle."""

    def __init__(
        self,
        lock: DistributedLock,
        ledger: RunLedger,
        heartbeat: HeartbeatMonitor,
        notifier: Optional[Notifier] = None,
        *,
        lock_ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.lock = lock
        self.ledger = ledger
        self.heartbeat = heartbeat
        self.notifier = notifier
        self.lock_ttl_seconds = lock_ttl_seconds
        self._clock = clock

    def _elapsed_ms(self, started: float) -> int:
        return int((self._clock() - started) * 1000)

    def _notify_failure(
        self,
        job_name: str,
        error: str,
        run_id: Optional[str],
        target_date: Optional[date],
    ) -> None:
        if self.notifier is None:
            return
        self.notifier.notify_failure(
            JobFailureNotification(
                job_name=job_name,
                error=error,
                run_id=run_id,
                target_date=target_date,
            )
        )

    def _start(
        self,
        job_name: str,
        target_date: Optional[date],
        meta: Optional[Dict[str, Any]],
        retry_failed: bool,
    ) -> RunStart:
        start = self.ledger.start_run(job_name, target_date, meta)
        if (
            start.already_executed
            and retry_failed
            and target_date is not None
            and self.ledger.clear_failed_run(job_name, target_date)
        ):
            logger.info("Retrying failed run: job=%s target_date=%s", job_name, target_date)
            start = self.ledger.start_run(job_name, target_date, meta)
        return start

    def run(
        self,
        job_name: str,
        handler: JobHandler,
        *,
        target_date: Optional[date] = None,
        meta: Optional[Dict[str, Any]] = None,
        retry_failed: bool = False,
    ) -> JobOutcome:
        """Execute ``handler`` once under the job lifecycle.

        Args:
            job_name: Lock and ledger key.
            handler: Callable receiving a :class:`JobContext`; may return a
                dict merged into the run meta.
            target_date: Business date the run covers, if any.
            meta: Initial run meta.
            retry_failed: When the date already has a *failed* run, clear
                it and run again instead of skipping.

        Returns:
            A :class:`JobOutcome`. Errors are reported in the outcome, not
            raised.
        """

        started = self._clock()
        lock_result = self.lock.acquire(job_name, self.lock_ttl_seconds)

        if not lock_result.granted:
            if lock_result.contended:
                logger.info("Skipping job=%s: %s", job_name, lock_result.reason)
                return JobOutcome(
                    job_name=job_name,
                    action=JobAction.SKIPPED_LOCKED,
                    target_date=target_date,
                    error=lock_result.reason,
                    duration_ms=self._elapsed_ms(started),
                )

            error = f"Lock acquisition failed: {lock_result.reason}"
            logger.error("job=%s: %s", job_name, error)
            self._notify_failure(job_name, error, None, target_date)
            return JobOutcome(
                job_name=job_name,
                action=JobAction.FAILED,
                target_date=target_date,
                error=error,
                duration_ms=self._elapsed_ms(started),
            )

        assert lock_result.token is not None
        token = lock_result.token
        run_id: Optional[str] = None
        try:
            try:
                start = self._start(job_name, target_date, meta, retry_failed)
            except Exception as exc:
                error = f"Failed to start run: {exc}"
                logger.exception("job=%s: %s", job_name, error)
                self._notify_failure(job_name, error, None, target_date)
                return JobOutcome(
                    job_name=job_name,
                    action=JobAction.FAILED,
                    target_date=target_date,
                    error=error,
                    duration_ms=self._elapsed_ms(started),
                )

            if start.already_executed:
                return JobOutcome(
                    job_name=job_name,
                    action=JobAction.SKIPPED_ALREADY_EXECUTED,
                    target_date=target_date,
                    duration_ms=self._elapsed_ms(started),
                )

            run_id = start.run_id
            assert run_id is not None
            self.heartbeat.update(
                job_name, JobStatus.RUNNING, run_id=run_id, target_date=target_date
            )

            context = JobContext(
                job_name=job_name,
                run_id=run_id,
                target_date=target_date,
                lock_token=token,
                lock=self.lock,
                ledger=self.ledger,
                lock_ttl_seconds=self.lock_ttl_seconds,
            )

            try:
                result = handler(context) or {}
            except Exception as exc:
                error = truncate_message(str(exc) or exc.__class__.__name__) or ""
                logger.exception("Job failed: job=%s run_id=%s", job_name, run_id)
                self.ledger.complete_run(run_id, JobStatus.FAILED, error_message=error)
                self.heartbeat.update(
                    job_name,
                    JobStatus.FAILED,
                    run_id=run_id,
                    target_date=target_date,
                    error=error,
                )
                self._notify_failure(job_name, error, run_id, target_date)
                return JobOutcome(
                    job_name=job_name,
                    action=JobAction.FAILED,
                    run_id=run_id,
                    target_date=target_date,
                    error=error,
                    duration_ms=self._elapsed_ms(started),
                )

            duration_ms = self._elapsed_ms(started)
            self.ledger.complete_run(run_id, JobStatus.SUCCESS, meta=result)
            self.heartbeat.update(
                job_name,
                JobStatus.SUCCESS,
                run_id=run_id,
                target_date=target_date,
                meta=result,
            )
            if self.notifier is not None:
                self.notifier.notify_success(
                    JobSuccessNotification(
                        job_name=job_name,
                        run_id=run_id,
                        target_date=target_date,
                        row_count=result.get("row_count"),
                        duration_ms=duration_ms,
                        meta=result,
                    )
                )
            logger.info("Job completed: job=%s run_id=%s in %dms", job_name, run_id, duration_ms)
            return JobOutcome(
                job_name=job_name,
                action=JobAction.COMPLETED,
                run_id=run_id,
                target_date=target_date,
                result=result,
                duration_ms=duration_ms,
            )
        finally:
            self.lock.release(job_name, token)


def build_job_runner(
    config: CronkeeperConfig,
    db_manager: DatabaseManager,
    notifier: Optional[Notifier] = None,
) -> JobRunner:
    """Assemble a :class:`JobRunner` backed by the runtime database."""

    return JobRunner(
        lock=DistributedLock(PostgresLockStore(db_manager)),
        ledger=RunLedger(db_manager),
        heartbeat=HeartbeatMonitor(db_manager),
        notifier=notifier or build_notifier(config.notification),
        lock_ttl_seconds=config.lock.ttl_seconds,
    )
