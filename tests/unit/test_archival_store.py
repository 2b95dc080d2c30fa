"""
Cronkeeper: Tests for PostgreSQL Archival Store Queries

Connections are mocked; these tests check paging, result mapping and the
row-count gate on delete.
"""

from __future__ import annotations

from datetime import date
from unittest.mock import MagicMock

import pytest

from cronkeeper.archival.errors import RowCountMismatchError
from cronkeeper.archival.store import ArchiveTable, PostgresArchivalStore, bytes_to_mb
from cronkeeper.core.config import ArchivalConfig


@pytest.fixture
def mock_db():
    db = MagicMock()
    conn = MagicMock()
    cursor = MagicMock()
    conn.cursor.return_value = cursor
    conn.__enter__.return_value = conn
    conn.__exit__.return_value = False
    db.get_historical_connection.return_value = conn
    return db, conn, cursor


@pytest.fixture
def store(mock_db) -> PostgresArchivalStore:
    db, _, _ = mock_db
    return PostgresArchivalStore(db, ArchiveTable.from_config(ArchivalConfig()))


class TestHelpers:
    def test_bytes_to_mb(self) -> None:
        assert bytes_to_mb(471859200) == 450.0
        assert bytes_to_mb(1572864) == 1.5

    def test_table_from_config(self) -> None:
        table = ArchiveTable.from_config(ArchivalConfig())

        assert (table.schema, table.name) == ("jquants_core", "equity_bar_daily")
        assert table.order_columns == ("trade_date", "local_code", "session")


class TestPostgresArchivalStore:
    def test_data_range(self, store: PostgresArchivalStore, mock_db) -> None:
        _, _, cursor = mock_db
        cursor.fetchone.return_value = (date(2023, 1, 4), date(2024, 8, 30), 400)

        data_range = store.data_range()

        assert data_range.trading_day_count == 400
        assert data_range.min_date == date(2023, 1, 4)

    def test_data_range_empty_table(self, store: PostgresArchivalStore, mock_db) -> None:
        _, _, cursor = mock_db
        cursor.fetchone.return_value = (None, None, 0)

        assert store.data_range() is None

    def test_cutoff_uses_zero_based_offset(self, store: PostgresArchivalStore, mock_db) -> None:
        _, _, cursor = mock_db
        cursor.fetchone.return_value = (date(2023, 5, 30),)

        assert store.cutoff_date(100) == date(2023, 5, 30)
        assert cursor.execute.call_args[0][1] == (99,)

    def test_cutoff_rejects_non_positive_days(self, store: PostgresArchivalStore) -> None:
        with pytest.raises(ValueError):
            store.cutoff_date(0)

    def test_iter_pages_until_short_page(self, store: PostgresArchivalStore, mock_db) -> None:
        _, _, cursor = mock_db
        cursor.description = [("trade_date",), ("local_code",)]
        cursor.fetchall.side_effect = [
            [(date(2023, 1, 4), "7203"), (date(2023, 1, 4), "9984")],
            [(date(2023, 1, 5), "7203")],
        ]

        pages = list(store.iter_pages(date(2023, 5, 30), page_size=2))

        assert [len(p.rows) for p in pages] == [2, 1]
        assert pages[0].columns == ("trade_date", "local_code")
        offsets = [c.args[1][2] for c in cursor.execute.call_args_list]
        assert offsets == [0, 2]

    def test_iter_pages_stops_on_empty_page(self, store: PostgresArchivalStore, mock_db) -> None:
        _, _, cursor = mock_db
        cursor.description = [("trade_date",)]
        cursor.fetchall.side_effect = [[(date(2023, 1, 4),), (date(2023, 1, 5),)], []]

        pages = list(store.iter_pages(date(2023, 5, 30), page_size=2))

        assert len(pages) == 1

    def test_delete_commits_on_expected_count(self, store: PostgresArchivalStore, mock_db) -> None:
        _, conn, cursor = mock_db
        cursor.rowcount = 200

        assert store.delete_rows_through(date(2023, 5, 30), 200) == 200
        conn.commit.assert_called_once()
        conn.rollback.assert_not_called()

    def test_delete_rolls_back_on_mismatch(self, store: PostgresArchivalStore, mock_db) -> None:
        _, conn, cursor = mock_db
        cursor.rowcount = 201

        with pytest.raises(RowCountMismatchError) as excinfo:
            store.delete_rows_through(date(2023, 5, 30), 200)

        conn.rollback.assert_called()
        conn.commit.assert_not_called()
        assert excinfo.value.live_rows == 201

    def test_reclaim_space_runs_outside_transaction(
        self, store: PostgresArchivalStore, mock_db
    ) -> None:
        _, conn, cursor = mock_db
        conn.autocommit = False
        seen = {}
        cursor.execute.side_effect = lambda query: seen.setdefault("autocommit", conn.autocommit)

        store.reclaim_space()

        assert seen["autocommit"] is True
        assert conn.autocommit is False
