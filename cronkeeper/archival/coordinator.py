"""
Cronkeeper: Archival Coordinator

Self-gating job that keeps the primary store under a size threshold by
moving the oldest trading days to cold storage. The delete is
irreversible, so it only runs after the exported row count has been
matched exactly against the live table.

Procedure:
1. Measure database size; below the threshold, skip.
2. Read the table's date range and distinct trading-day count; empty, skip.
3. archive_days = min(target_days, trading_day_count - min_remaining_days);
   if <= 0, skip (insufficient data).
4. cutoff = archive_days-th oldest distinct trading day.
5. Re-check remaining days >= min_remaining_days (fatal otherwise).
6. Export rows with date <= cutoff in pages, ordered by a stable key.
7. Gzip the CSV and upload it to cold storage.
8. Re-count matching rows; abort without deleting on any mismatch.
9. Delete the archived rows, then VACUUM FULL.
10. Record sizes and duration; notify.

Key responsibilities:
- Plan the archival window and enforce the retention floor twice
- Gate the delete on an exact row-count match
- Record the run in the ledger and heartbeat and send notifications

External dependencies:
- psycopg2 (through the archival store), boto3 (through S3 cold storage)

Database tables accessed:
- historical_db.<archive table> (Read/Delete)
- runtime_db.job_runs, job_heartbeat (Write)

Thread safety: Not thread-safe; run one archival job at a time.

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

import argparse
import json
import time
from dataclasses import asdict, dataclass
from datetime import date
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from cronkeeper.archival.cold_storage import ColdStorage, build_archive_path, build_cold_storage
from cronkeeper.archival.errors import ArchivalError, ArchivalSafetyError, RowCountMismatchError
from cronkeeper.archival.export import CsvArchiveWriter
from cronkeeper.archival.store import (
    ArchivalStore,
    ArchiveTable,
    DataRange,
    PostgresArchivalStore,
    bytes_to_mb,
)
from cronkeeper.coordination.heartbeat import HeartbeatMonitor
from cronkeeper.coordination.run_ledger import JobStatus, RunLedger
from cronkeeper.core.config import ArchivalConfig, get_config
from cronkeeper.core.database import get_db_manager
from cronkeeper.core.logging import get_logger
from cronkeeper.notification.notifier import (
    JobFailureNotification,
    JobSuccessNotification,
    Notifier,
    build_notifier,
)

# ============================================================================
# Module Setup
# ============================================================================

logger = get_logger(__name__)

JOB_NAME = "db-archival"


class ArchivalAction(str, Enum):
    SKIPPED = "skipped"
    SKIPPED_EMPTY_TABLE = "skipped_empty_table"
    SKIPPED_INSUFFICIENT_DATA = "skipped_insufficient_data"
    ARCHIVED = "archived"


# ============================================================================
# Data Models
# ============================================================================


@dataclass(frozen=True)
class ArchivalPlan:
    """Window chosen for one archival run."""

    min_date: date
    max_date: date
    trading_day_count: int
    archive_days: int
    cutoff_date: date
    remaining_days: int

    def to_meta(self) -> Dict[str, Any]:
        return {
            "min_date": self.min_date.isoformat(),
            "max_date": self.max_date.isoformat(),
            "trading_day_count": self.trading_day_count,
            "archive_days": self.archive_days,
            "cutoff_date": self.cutoff_date.isoformat(),
            "remaining_days": self.remaining_days,
        }


@dataclass
class ArchivalResult:
    action: ArchivalAction
    db_size_mb_before: float
    threshold_mb: float
    run_id: Optional[str] = None
    trading_day_count: Optional[int] = None
    archive_range: Optional[str] = None
    rows_archived: Optional[int] = None
    archive_days: Optional[int] = None
    remaining_days: Optional[int] = None
    storage_path: Optional[str] = None
    storage_location: Optional[str] = None
    compressed_size_bytes: Optional[int] = None
    db_size_mb_after: Optional[float] = None
    saved_mb: Optional[float] = None
    duration_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["action"] = self.action.value
        return {key: value for key, value in data.items() if value is not None}


def compute_archive_days(trading_day_count: int, target_days: int, min_remaining_days: int) -> int:
    """Number of oldest trading days to archive; <= 0 means nothing."""

    return min(target_days, trading_day_count - min_remaining_days)


# ============================================================================
# Coordinator
# ============================================================================


class ArchivalCoordinator:
    """Run the archival procedure against an :class:`ArchivalStore`."""

    def __init__(
        self,
        store: ArchivalStore,
        cold_storage: ColdStorage,
        ledger: RunLedger,
        heartbeat: HeartbeatMonitor,
        notifier: Optional[Notifier] = None,
        config: Optional[ArchivalConfig] = None,
        *,
        table_name: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.cold_storage = cold_storage
        self.ledger = ledger
        self.heartbeat = heartbeat
        self.notifier = notifier
        self.config = config or ArchivalConfig()
        self.table_name = table_name or self.config.table_name
        self._clock = clock

    def plan(self, data_range: DataRange) -> Optional[ArchivalPlan]:
        """Return the archival window for ``data_range``, or None if too small."""

        archive_days = compute_archive_days(
            data_range.trading_day_count,
            self.config.target_days,
            self.config.min_remaining_days,
        )
        if archive_days <= 0:
            return None

        cutoff = self.store.cutoff_date(archive_days)
        if cutoff is None:
            raise ArchivalError(f"Could not determine cutoff date for {archive_days} days")

        return ArchivalPlan(
            min_date=data_range.min_date,
            max_date=data_range.max_date,
            trading_day_count=data_range.trading_day_count,
            archive_days=archive_days,
            cutoff_date=cutoff,
            remaining_days=data_range.trading_day_count - archive_days,
        )

    def run(self, threshold_mb: Optional[float] = None) -> ArchivalResult:
        """Execute one archival pass.

        Returns:
            :class:`ArchivalResult` describing what was done or skipped.

        Raises:
            Exception: Any fatal error is re-raised after the run has been
                marked failed and the failure notification sent.
        """

        started = self._clock()
        threshold = self.config.threshold_mb if threshold_mb is None else threshold_mb

        try:
            size_before = bytes_to_mb(self.store.database_size_bytes())
        except Exception as exc:
            logger.exception("Failed to measure database size")
            self._notify_failure(str(exc) or exc.__class__.__name__, None, {})
            raise
        logger.info("Database size: %.2f MB (threshold %.2f MB)", size_before, threshold)

        if size_before < threshold:
            logger.info("Below threshold, nothing to archive")
            result = ArchivalResult(
                action=ArchivalAction.SKIPPED,
                db_size_mb_before=size_before,
                threshold_mb=threshold,
                duration_ms=self._elapsed_ms(started),
            )
            self.heartbeat.update(JOB_NAME, JobStatus.SUCCESS, meta=result.to_dict())
            return result

        try:
            start = self.ledger.start_run(
                JOB_NAME, meta={"threshold_mb": threshold, "db_size_mb_before": size_before}
            )
        except Exception as exc:
            logger.exception("Failed to start archival run")
            self._notify_failure(str(exc) or exc.__class__.__name__, None, {})
            raise
        run_id = start.run_id
        assert run_id is not None

        progress: Dict[str, Any] = {}
        try:
            result = self._archive(run_id, size_before, threshold, started, progress)
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            logger.exception("Archival run %s failed", run_id)
            self.ledger.complete_run(run_id, JobStatus.FAILED, error_message=error, meta=progress)
            self.heartbeat.update(JOB_NAME, JobStatus.FAILED, run_id=run_id, error=error)
            self._notify_failure(error, run_id, progress)
            raise

        meta = result.to_dict()
        self.ledger.complete_run(run_id, JobStatus.SUCCESS, meta=meta)
        self.heartbeat.update(JOB_NAME, JobStatus.SUCCESS, run_id=run_id, meta=meta)
        if result.action == ArchivalAction.ARCHIVED and self.notifier is not None:
            self.notifier.notify_success(
                JobSuccessNotification(
                    job_name=JOB_NAME,
                    run_id=run_id,
                    row_count=result.rows_archived,
                    duration_ms=result.duration_ms,
                    meta=meta,
                )
            )
        return result

    # ======================================================================
    # Internal helpers
    # ======================================================================

    def _elapsed_ms(self, started: float) -> int:
        return int((self._clock() - started) * 1000)

    def _notify_failure(
        self, error: str, run_id: Optional[str], progress: Dict[str, Any]
    ) -> None:
        if self.notifier is None:
            return
        self.notifier.notify_failure(
            JobFailureNotification(
                job_name=JOB_NAME,
                run_id=run_id,
                error=error,
                dataset=self.table_name,
                meta=progress,
            )
        )

    def _archive(
        self,
        run_id: str,
        size_before: float,
        threshold: float,
        started: float,
        progress: Dict[str, Any],
    ) -> ArchivalResult:
        data_range = self.store.data_range()
        if data_range is None:
            logger.info("Table %s is empty, nothing to archive", self.table_name)
            return ArchivalResult(
                action=ArchivalAction.SKIPPED_EMPTY_TABLE,
                run_id=run_id,
                db_size_mb_before=size_before,
                threshold_mb=threshold,
                duration_ms=self._elapsed_ms(started),
            )

        plan = self.plan(data_range)
        if plan is None:
            logger.info(
                "Insufficient data: %d trading days, need more than %d",
                data_range.trading_day_count,
                self.config.min_remaining_days,
            )
            return ArchivalResult(
                action=ArchivalAction.SKIPPED_INSUFFICIENT_DATA,
                run_id=run_id,
                db_size_mb_before=size_before,
                threshold_mb=threshold,
                trading_day_count=data_range.trading_day_count,
                duration_ms=self._elapsed_ms(started),
            )

        progress["plan"] = plan.to_meta()
        logger.info(
            "Archival plan: %s..%s (%d days), %d days remain",
            plan.min_date,
            plan.cutoff_date,
            plan.archive_days,
            plan.remaining_days,
        )

        if plan.remaining_days < self.config.min_remaining_days:
            raise ArchivalSafetyError(
                f"Safety check failed: remaining days {plan.remaining_days} < "
                f"minimum {self.config.min_remaining_days}"
            )

        writer = CsvArchiveWriter()
        pages = 0
        for page in self.store.iter_pages(plan.cutoff_date, self.config.page_size):
            writer.write_page(page.columns, page.rows)
            pages += 1
            if pages % 50 == 0:
                logger.info("Exported %d rows (%d pages)", writer.row_count, pages)

        exported_rows = writer.row_count
        progress["exported_rows"] = exported_rows
        if exported_rows == 0:
            raise ArchivalError(f"No rows exported through {plan.cutoff_date}; aborting")

        data = writer.finish()
        path = build_archive_path(self.table_name, plan.min_date, plan.cutoff_date)
        location = self.cold_storage.upload(path, data)
        progress["storage_path"] = path
        logger.info("Uploaded %d rows (%d bytes) to %s", exported_rows, len(data), location)

        live_rows = self.store.count_rows_through(plan.cutoff_date)
        if live_rows != exported_rows:
            raise RowCountMismatchError(exported_rows, live_rows, plan.cutoff_date)

        deleted = self.store.delete_rows_through(plan.cutoff_date, exported_rows)
        progress["deleted_rows"] = deleted
        self.store.reclaim_space()

        size_after = bytes_to_mb(self.store.database_size_bytes())
        return ArchivalResult(
            action=ArchivalAction.ARCHIVED,
            run_id=run_id,
            db_size_mb_before=size_before,
            threshold_mb=threshold,
            trading_day_count=plan.trading_day_count,
            archive_range=f"{plan.min_date.isoformat()} to {plan.cutoff_date.isoformat()}",
            rows_archived=deleted,
            archive_days=plan.archive_days,
            remaining_days=plan.remaining_days,
            storage_path=path,
            storage_location=location,
            compressed_size_bytes=len(data),
            db_size_mb_after=size_after,
            saved_mb=round(size_before - size_after, 2),
            duration_ms=self._elapsed_ms(started),
        )


# ============================================================================
# CLI
# ============================================================================


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Archive the oldest trading days to cold storage when the database is too large"
    )
    parser.add_argument(
        "--threshold-mb",
        type=float,
        default=None,
        help="Database size (MB) above which archival runs (default: ARCHIVE_THRESHOLD_MB or 450)",
    )

    args = parser.parse_args(argv)
    if args.threshold_mb is not None and args.threshold_mb <= 0:
        parser.error("--threshold-mb must be positive")
    return args


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entrypoint for the archival job.

    Example::

        python -m cronkeeper.archival.coordinator --threshold-mb 450
    """

    args = _parse_args(argv)

    config = get_config()
    db_manager = get_db_manager()
    archival_config = config.archival
    coordinator = ArchivalCoordinator(
        store=PostgresArchivalStore(db_manager, ArchiveTable.from_config(archival_config)),
        cold_storage=build_cold_storage(config.cold_storage),
        ledger=RunLedger(db_manager),
        heartbeat=HeartbeatMonitor(db_manager),
        notifier=build_notifier(config.notification),
        config=archival_config,
    )

    try:
        result = coordinator.run(threshold_mb=args.threshold_mb)
    except Exception as exc:
        logger.error("Archival failed: %s", exc)
        raise SystemExit(1) from exc
    finally:
        db_manager.close_all()

    print(json.dumps(result.to_dict(), indent=2, default=str))


if __name__ == "__main__":  # pragma: no cover
    main()
