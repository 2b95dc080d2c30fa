"""
Cronkeeper: Tests for the Job Heartbeat Monitor

Covers health evaluation rules, the upsert written on each update and the
aggregate report across several jobs.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from unittest.mock import MagicMock

import psycopg2
import pytest

from cronkeeper.coordination.heartbeat import HeartbeatMonitor, HeartbeatRecord, evaluate_health
from cronkeeper.coordination.run_ledger import JobStatus

NOW = datetime(2025, 1, 7, 12, 0, 0)


def _record(status: JobStatus, hours_ago: float, error=None, name="daily-sync") -> HeartbeatRecord:
    return HeartbeatRecord(
        job_name=name,
        last_seen_at=NOW - timedelta(hours=hours_ago),
        last_status=status,
        last_error=error,
    )


def _row(record: HeartbeatRecord) -> tuple:
    return (
        record.job_name,
        record.last_seen_at,
        record.last_status.value,
        record.last_run_id,
        record.last_target_date,
        record.last_error,
        record.meta,
    )


@pytest.fixture
def mock_db():
    db = MagicMock()
    conn = MagicMock()
    cursor = MagicMock()
    conn.cursor.return_value = cursor
    conn.__enter__.return_value = conn
    conn.__exit__.return_value = False
    db.get_runtime_connection.return_value = conn
    return db, conn, cursor


class TestEvaluateHealth:
    def test_missing_record(self) -> None:
        status = evaluate_health(None, 25, now=NOW)

        assert not status.healthy
        assert status.reason == "No heartbeat record found"

    def test_recent_success_is_healthy(self) -> None:
        assert evaluate_health(_record(JobStatus.SUCCESS, 2), 25, now=NOW).healthy

    def test_running_job_is_healthy(self) -> None:
        assert evaluate_health(_record(JobStatus.RUNNING, 0.1), 25, now=NOW).healthy

    def test_stale_record(self) -> None:
        """A success seen 30 hours ago is stale against a 25 hour threshold."""

        status = evaluate_health(_record(JobStatus.SUCCESS, 30), 25, now=NOW)

        assert not status.healthy
        assert status.reason == "Stale: last seen 30.0 hours ago"

    def test_exact_threshold_is_not_stale(self) -> None:
        assert evaluate_health(_record(JobStatus.SUCCESS, 25), 25, now=NOW).healthy

    def test_failed_record_reports_error(self) -> None:
        status = evaluate_health(_record(JobStatus.FAILED, 1, error="HTTP 500"), 25, now=NOW)

        assert not status.healthy
        assert status.reason == "Last run failed: HTTP 500"

    def test_failed_without_error_text(self) -> None:
        status = evaluate_health(_record(JobStatus.FAILED, 1), 25, now=NOW)

        assert status.reason == "Last run failed: Unknown error"

    def test_staleness_reported_before_failure(self) -> None:
        status = evaluate_health(_record(JobStatus.FAILED, 48, error="x"), 25, now=NOW)

        assert status.reason.startswith("Stale:")


class TestHeartbeatMonitor:
    def test_update_upserts_with_truncated_error(self, mock_db) -> None:
        db, conn, cursor = mock_db
        monitor = HeartbeatMonitor(db, clock=lambda: NOW)

        ok = monitor.update(
            "daily-sync",
            JobStatus.FAILED,
            run_id="run-1",
            target_date=date(2025, 1, 6),
            error="e" * 1500,
        )

        assert ok
        sql, params = cursor.execute.call_args[0]
        assert "ON CONFLICT (job_name) DO UPDATE" in sql
        assert params[:5] == ("daily-sync", NOW, "failed", "run-1", date(2025, 1, 6))
        assert params[5] == "e" * 1000 + "..."
        conn.commit.assert_called_once()

    def test_update_failure_returns_false(self, mock_db) -> None:
        db, _, cursor = mock_db
        cursor.execute.side_effect = psycopg2.OperationalError("down")

        assert HeartbeatMonitor(db, clock=lambda: NOW).update("daily-sync", JobStatus.SUCCESS) is False

    def test_update_with_date_meta_is_written(self, mock_db) -> None:
        db, conn, cursor = mock_db

        def serialize(sql, params):
            params[-1].dumps(params[-1].adapted)

        cursor.execute.side_effect = serialize
        monitor = HeartbeatMonitor(db, clock=lambda: NOW)

        assert monitor.update("daily-sync", JobStatus.SUCCESS, meta={"target_date": date(2025, 1, 6)})
        conn.commit.assert_called_once()

    def test_unencodable_meta_returns_false(self, mock_db) -> None:
        db, _, cursor = mock_db
        cursor.execute.side_effect = TypeError("Object of type bytes is not JSON serializable")

        assert HeartbeatMonitor(db, clock=lambda: NOW).update("daily-sync", JobStatus.SUCCESS) is False

    def test_is_healthy_reads_single_row(self, mock_db) -> None:
        db, _, cursor = mock_db
        cursor.fetchall.return_value = [_row(_record(JobStatus.SUCCESS, 30))]

        status = HeartbeatMonitor(db, clock=lambda: NOW).is_healthy("daily-sync", 25)

        assert not status.healthy
        assert cursor.execute.call_args[0][1] == ("daily-sync",)

    def test_check_all_aggregates(self, mock_db) -> None:
        """One stale job makes the report unhealthy and is listed."""

        db, _, cursor = mock_db
        cursor.fetchall.return_value = [
            _row(_record(JobStatus.SUCCESS, 1, name="daily-sync")),
            _row(_record(JobStatus.SUCCESS, 40, name="db-archival")),
        ]
        monitor = HeartbeatMonitor(db, clock=lambda: NOW)

        report = monitor.check_all(["daily-sync", "db-archival", "weekly-report"], 25)

        assert not report.healthy
        unhealthy = {job.job_name: job.reason for job in report.unhealthy_jobs()}
        assert set(unhealthy) == {"db-archival", "weekly-report"}
        assert unhealthy["weekly-report"] == "No heartbeat record found"
        assert cursor.execute.call_count == 1

    def test_check_all_healthy(self, mock_db) -> None:
        db, _, cursor = mock_db
        cursor.fetchall.return_value = [_row(_record(JobStatus.SUCCESS, 1))]

        report = HeartbeatMonitor(db, clock=lambda: NOW).check_all(["daily-sync"])

        assert report.healthy
        assert report.jobs[0].last_status is JobStatus.SUCCESS
