"""
Cronkeeper: Tests for Database Connection Management

Test suite for ``cronkeeper.core.database``. Covers:
- Connection string construction
- Pool reuse and connection return
- Rollback of the open transaction on error
- Basic connection acquisition (integration, optional)
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from cronkeeper.core.config import CronkeeperConfig, DatabaseConfig, get_config
from cronkeeper.core.database import DatabaseManager


class TestDatabaseManagerUnit:
    """Unit-level tests for DatabaseManager internals."""

    def test_create_connection_string(self) -> None:
        """Connection string should embed host, port, db name, user, and password."""

        db_config = DatabaseConfig(
            host="testhost",
            port=5433,
            name="testdb",
            user="testuser",
            password="testpass",
        )

        conn_str = DatabaseManager._create_connection_string(db_config)

        assert "host=testhost" in conn_str
        assert "port=5433" in conn_str
        assert "dbname=testdb" in conn_str
        assert "user=testuser" in conn_str
        assert "password=testpass" in conn_str

    def test_pool_is_created_once_and_connection_returned(self) -> None:
        """The runtime pool is lazily created, reused and gets its connection back."""

        pool_mock = MagicMock()
        conn = MagicMock()
        pool_mock.getconn.return_value = conn

        with patch(
            "cronkeeper.core.database.pool.SimpleConnectionPool", return_value=pool_mock
        ) as factory:
            manager = DatabaseManager(CronkeeperConfig())
            with manager.get_runtime_connection() as first:
                assert first is conn
            with manager.get_runtime_connection():
                pass

        assert factory.call_count == 1
        assert pool_mock.putconn.call_count == 2

    def test_exception_rolls_back_and_returns_connection(self) -> None:
        """A failing block rolls back before the connection goes back to the pool."""

        pool_mock = MagicMock()
        conn = MagicMock()
        conn.closed = 0
        pool_mock.getconn.return_value = conn

        manager = DatabaseManager(CronkeeperConfig())
        manager._historical_pool = pool_mock

        with pytest.raises(RuntimeError):
            with manager.get_historical_connection():
                raise RuntimeError("boom")

        conn.rollback.assert_called_once()
        pool_mock.putconn.assert_called_once_with(conn)

    def test_close_all_closes_pools(self) -> None:
        """close_all closes and forgets both pools."""

        manager = DatabaseManager(CronkeeperConfig())
        historical, runtime = MagicMock(), MagicMock()
        manager._historical_pool = historical
        manager._runtime_pool = runtime

        manager.close_all()

        historical.closeall.assert_called_once()
        runtime.closeall.assert_called_once()
        assert manager._historical_pool is None
        assert manager._runtime_pool is None


@pytest.mark.integration
class TestDatabaseManagerIntegration:
    """Integration tests that require a running PostgreSQL instance.

    These tests expect that the historical and runtime databases are
    reachable using the credentials provided in the environment (.env).
    """

    def test_get_runtime_connection_executes_simple_query(self) -> None:
        """Should be able to obtain a runtime connection and execute SELECT 1."""

        db_manager = DatabaseManager(get_config())

        with db_manager.get_runtime_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT 1")
            result = cursor.fetchone()
            cursor.close()

        assert result is not None
        assert result[0] == 1

    def test_get_historical_connection_executes_simple_query(self) -> None:
        """Should be able to obtain a historical connection and execute SELECT 1."""

        db_manager = DatabaseManager(get_config())

        with db_manager.get_historical_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT 1")
            result = cursor.fetchone()
            cursor.close()

        assert result is not None
        assert result[0] == 1
