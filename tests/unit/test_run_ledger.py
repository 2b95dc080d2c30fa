"""
Cronkeeper: Tests for the Run Ledger

Test suite for ``cronkeeper.coordination.run_ledger``. Covers:
- Idempotent run start per (job_name, target_date)
- Best-effort completion with error truncation and meta merge
- Item tracking
- History queries and maintenance helpers
"""

from __future__ import annotations

import json
from datetime import date, datetime
from unittest.mock import MagicMock

import psycopg2
import pytest
from psycopg2 import errors as pg_errors
from psycopg2.extras import Json

from cronkeeper.core.database import DatabaseError
from cronkeeper.coordination.run_ledger import (
    RUN_ERROR_MARKER,
    JobStatus,
    RunLedger,
    RunLedgerError,
    encode_meta,
    truncate_message,
)

NOW = datetime(2025, 1, 7, 6, 0, 0)


def _serialize_json_params(sql, params):
    """Encode JSON parameters the way psycopg2 does when quoting them."""

    for value in params:
        if isinstance(value, Json):
            value.dumps(value.adapted)


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


@pytest.fixture
def ledger(mock_db) -> RunLedger:
    db, _, _ = mock_db
    return RunLedger(db, clock=lambda: NOW, run_id_factory=lambda: "run-1")


class TestTruncateMessage:
    def test_short_messages_untouched(self) -> None:
        assert truncate_message("boom") == "boom"
        assert truncate_message(None) is None

    def test_long_messages_keep_prefix_and_marker(self) -> None:
        message = "e" * 10050

        truncated = truncate_message(message)

        assert truncated == "e" * 10000 + RUN_ERROR_MARKER

    def test_custom_limit_and_marker(self) -> None:
        assert truncate_message("abcdef", limit=3, marker="...") == "abc..."


class TestEncodeMeta:
    def test_dates_are_stored_as_iso_strings(self) -> None:
        adapter = encode_meta({"params": {"date": date(2024, 1, 15)}})

        assert json.loads(adapter.dumps(adapter.adapted)) == {"params": {"date": "2024-01-15"}}

    def test_missing_meta_is_empty_object(self) -> None:
        assert encode_meta(None).adapted == {}


class TestStartRun:
    def test_inserts_running_row(self, ledger: RunLedger, mock_db) -> None:
        _, conn, cursor = mock_db

        result = ledger.start_run("daily-sync", date(2025, 1, 6), meta={"source": "cron"})

        assert result.run_id == "run-1"
        assert result.started
        assert not result.already_executed
        params = cursor.execute.call_args[0][1]
        assert params[:5] == ("run-1", "daily-sync", date(2025, 1, 6), "running", NOW)
        assert params[5].adapted == {"source": "cron"}
        conn.commit.assert_called_once()

    def test_duplicate_target_date_is_already_executed(self, ledger: RunLedger, mock_db) -> None:
        """A unique violation is the normal skip signal, not an error."""

        _, conn, cursor = mock_db
        cursor.execute.side_effect = pg_errors.UniqueViolation("duplicate key value violates unique constraint")

        result = ledger.start_run("daily-sync", date(2025, 1, 6))

        assert result.already_executed
        assert result.run_id is None
        assert not result.started
        conn.rollback.assert_called_once()

    def test_other_storage_failures_raise(self, ledger: RunLedger, mock_db) -> None:
        _, _, cursor = mock_db
        cursor.execute.side_effect = psycopg2.OperationalError("connection lost")

        with pytest.raises(RunLedgerError):
            ledger.start_run("daily-sync", date(2025, 1, 6))

    def test_connection_failure_raises(self, mock_db) -> None:
        db, _, _ = mock_db
        db.get_runtime_connection.side_effect = DatabaseError("pool exhausted")

        with pytest.raises(RunLedgerError):
            RunLedger(db).start_run("daily-sync")


class TestCompleteRun:
    def test_records_status_truncated_error_and_meta(self, ledger: RunLedger, mock_db) -> None:
        _, _, cursor = mock_db

        ok = ledger.complete_run("run-1", JobStatus.FAILED, "x" * 20000, meta={"rows": 3})

        assert ok
        sql, params = cursor.execute.call_args[0]
        assert "COALESCE(meta, '{}'::jsonb) || %s::jsonb" in sql
        assert params[0] == "failed"
        assert params[1] == NOW
        assert params[2] == "x" * 10000 + RUN_ERROR_MARKER
        assert params[3].adapted == {"rows": 3}
        assert params[4] == "run-1"

    def test_failure_is_logged_not_raised(self, ledger: RunLedger, mock_db) -> None:
        """A ledger outage must not turn a finished job into a crash."""

        _, _, cursor = mock_db
        cursor.execute.side_effect = psycopg2.OperationalError("down")

        assert ledger.complete_run("run-1", JobStatus.SUCCESS) is False

    def test_accepts_plain_status_strings(self, ledger: RunLedger, mock_db) -> None:
        _, _, cursor = mock_db

        ledger.complete_run("run-1", "success")

        assert cursor.execute.call_args[0][1][0] == "success"


class TestItems:
    def test_start_item_upserts(self, ledger: RunLedger, mock_db) -> None:
        _, _, cursor = mock_db

        assert ledger.start_item("run-1", "equity_bars")

        sql, params = cursor.execute.call_args[0]
        assert "ON CONFLICT (run_id, dataset)" in sql
        assert params[:4] == ("run-1", "equity_bars", "running", NOW)

    def test_complete_item_records_counts(self, ledger: RunLedger, mock_db) -> None:
        _, _, cursor = mock_db

        ledger.complete_item("run-1", "equity_bars", JobStatus.SUCCESS, row_count=4200, page_count=5)

        params = cursor.execute.call_args[0][1]
        assert params[0] == "success"
        assert params[2:4] == (4200, 5)
        assert params[-2:] == ("run-1", "equity_bars")

    def test_start_item_with_date_params_is_written(self, ledger: RunLedger, mock_db) -> None:
        _, conn, cursor = mock_db
        cursor.execute.side_effect = _serialize_json_params

        assert ledger.start_item("run-1", "equity_bars", meta={"params": {"date": date(2024, 1, 15)}})
        conn.commit.assert_called_once()

    def test_unencodable_meta_is_logged_not_raised(self, ledger: RunLedger, mock_db) -> None:
        _, _, cursor = mock_db
        cursor.execute.side_effect = ValueError("Circular reference detected")

        assert ledger.complete_item("run-1", "equity_bars", JobStatus.SUCCESS) is False
        assert ledger.complete_run("run-1", JobStatus.SUCCESS) is False

    def test_get_items_maps_rows(self, ledger: RunLedger, mock_db) -> None:
        _, _, cursor = mock_db
        cursor.fetchall.return_value = [
            ("run-1", "equity_bars", "success", 10, 1, NOW, NOW, None, None),
        ]

        items = ledger.get_items("run-1")

        assert len(items) == 1
        assert items[0].status is JobStatus.SUCCESS
        assert items[0].row_count == 10
        assert items[0].meta == {}


class TestQueries:
    def test_latest_run_filters_by_status(self, ledger: RunLedger, mock_db) -> None:
        _, _, cursor = mock_db
        cursor.fetchall.return_value = [
            ("run-9", "daily-sync", date(2025, 1, 6), "success", NOW, NOW, None, {"rows": 1}),
        ]

        run = ledger.latest_run("daily-sync", status=JobStatus.SUCCESS)

        assert run is not None
        assert run.run_id == "run-9"
        assert run.meta == {"rows": 1}
        sql, params = cursor.execute.call_args[0]
        assert sql.endswith("ORDER BY started_at DESC LIMIT 1")
        assert params == ("daily-sync", "success")

    def test_latest_run_none_when_no_history(self, ledger: RunLedger, mock_db) -> None:
        _, _, cursor = mock_db
        cursor.fetchall.return_value = []

        assert ledger.latest_run("daily-sync") is None

    def test_successful_target_dates(self, ledger: RunLedger, mock_db) -> None:
        _, _, cursor = mock_db
        cursor.fetchall.return_value = [(date(2025, 1, 6),)]

        found = ledger.successful_target_dates("daily-sync", [date(2025, 1, 6), date(2025, 1, 7)])

        assert found == {date(2025, 1, 6)}

    def test_successful_target_dates_empty_input_skips_query(
        self, ledger: RunLedger, mock_db
    ) -> None:
        _, _, cursor = mock_db

        assert ledger.successful_target_dates("daily-sync", []) == set()
        cursor.execute.assert_not_called()

    def test_has_run_for_date(self, ledger: RunLedger, mock_db) -> None:
        _, _, cursor = mock_db
        cursor.fetchall.return_value = [(1,)]

        assert ledger.has_run_for_date("daily-sync", date(2025, 1, 6))

    def test_query_failure_raises(self, ledger: RunLedger, mock_db) -> None:
        _, _, cursor = mock_db
        cursor.execute.side_effect = psycopg2.OperationalError("down")

        with pytest.raises(RunLedgerError):
            ledger.failed_runs("daily-sync")


class TestMaintenance:
    def test_recover_stale_runs(self, ledger: RunLedger, mock_db) -> None:
        _, _, cursor = mock_db
        cursor.rowcount = 2

        assert ledger.recover_stale_runs(6, job_name="daily-sync") == 2

        sql, params = cursor.execute.call_args[0]
        assert params[0] == "failed"
        assert params[3] == "running"
        assert params[4] == datetime(2025, 1, 7, 0, 0, 0)
        assert params[-1] == "daily-sync"

    def test_clear_failed_run(self, ledger: RunLedger, mock_db) -> None:
        _, _, cursor = mock_db
        cursor.rowcount = 1

        assert ledger.clear_failed_run("daily-sync", date(2025, 1, 6))
        assert cursor.execute.call_args[0][1] == ("daily-sync", date(2025, 1, 6), "failed")
