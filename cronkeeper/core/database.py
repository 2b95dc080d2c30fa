"""
Cronkeeper: Database Connection Management

This module provides connection pooling and convenience helpers for
connecting to the historical (data store) and runtime (coordination)
PostgreSQL databases. It uses psycopg2's ``SimpleConnectionPool`` with a
thin wrapper that exposes context managers for acquiring connections.

Key responsibilities:
- Maintain connection pools for historical_db and runtime_db
- Provide context managers to acquire/release connections safely
- Roll back the open transaction when the managed block raises
- Encapsulate connection string construction from configuration

External dependencies:
- psycopg2-binary: PostgreSQL client and connection pooling

Database tables accessed:
- None directly (this module is infrastructure only)

Thread safety: Thread-safe under normal psycopg2 pool usage. The
DatabaseManager should be treated as a process-wide singleton.

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

from contextlib import contextmanager
from typing import Generator, Optional

import psycopg2
from psycopg2 import pool
from psycopg2.extensions import connection as PsycopgConnection

from cronkeeper.core.config import CronkeeperConfig, DatabaseConfig, get_config
from cronkeeper.core.logging import get_logger

# ============================================================================
# Module Setup
# ============================================================================

logger = get_logger(__name__)


class DatabaseError(Exception):
    """Raised when a database connection or operation fails."""


class DatabaseManager:
    """Manage connection pools for Cronkeeper databases.

    Typical usage::

        from cronkeeper.core.database import get_db_manager

        db = get_db_manager()
        with db.get_runtime_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT 1")
            result = cursor.fetchone()
            cursor.close()

    Attributes:
        config: Global Cronkeeper configuration instance.
        _historical_pool: Connection pool for the historical DB.
        _runtime_pool: Connection pool for the runtime DB.
    """

    def __init__(self, config: CronkeeperConfig) -> None:
        self.config = config
        self._historical_pool: Optional[pool.SimpleConnectionPool] = None
        self._runtime_pool: Optional[pool.SimpleConnectionPool] = None
        logger.info("DatabaseManager initialised")

    # ======================================================================
    # Internal helpers
    # ======================================================================

    @staticmethod
    def _create_connection_string(db_config: DatabaseConfig) -> str:
        """Build a PostgreSQL connection string from configuration."""

        return (
            f"host={db_config.host} "
            f"port={db_config.port} "
            f"dbname={db_config.name} "
            f"user={db_config.user} "
            f"password={db_config.password}"
        )

    def _get_or_create_pool(
        self,
        attr_name: str,
        db_config: DatabaseConfig,
    ) -> pool.SimpleConnectionPool:
        """Return an existing pool or create a new one.

        Args:
            attr_name: Attribute name for the pool ("_historical_pool" or
                "_runtime_pool").
            db_config: Database configuration for the target database.

        Raises:
            DatabaseError: If the pool cannot be created.
        """

        existing = getattr(self, attr_name)
        if existing is not None:
            return existing

        dsn = self._create_connection_string(db_config)
        try:
            new_pool = pool.SimpleConnectionPool(
                minconn=1,
                maxconn=db_config.pool_size,
                dsn=dsn,
            )
        except psycopg2.Error as exc:  # pragma: no cover - connection errors
            logger.error("Failed to create connection pool: %s", exc)
            raise DatabaseError("Failed to create database connection pool") from exc

        setattr(self, attr_name, new_pool)
        logger.info("Created connection pool for database '%s'", db_config.name)
        return new_pool

    @contextmanager
    def _pooled_connection(
        self,
        attr_name: str,
        db_config: DatabaseConfig,
        label: str,
    ) -> Generator[PsycopgConnection, None, None]:
        pool_obj = self._get_or_create_pool(attr_name, db_config)
        try:
            conn = pool_obj.getconn()
        except psycopg2.Error as exc:  # pragma: no cover - connection errors
            logger.error("Failed to acquire %s connection: %s", label, exc)
            raise DatabaseError(f"Failed to acquire {label} connection") from exc

        try:
            yield conn
        except BaseException:
            # Leave the pooled connection usable for the next borrower.
            if not conn.closed:
                conn.rollback()
            raise
        finally:
            pool_obj.putconn(conn)

    # ======================================================================
    # Public context managers
    # ======================================================================

    @contextmanager
    def get_historical_connection(self) -> Generator[PsycopgConnection, None, None]:
        """Yield a connection to the historical (data store) database.

        Raises:
            DatabaseError: If a connection cannot be acquired.
        """

        with self._pooled_connection(
            "_historical_pool", self.config.historical_db, "historical_db"
        ) as conn:
            yield conn

    @contextmanager
    def get_runtime_connection(self) -> Generator[PsycopgConnection, None, None]:
        """Yield a connection to the runtime (coordination) database.

        Raises:
            DatabaseError: If a connection cannot be acquired.
        """

        with self._pooled_connection(
            "_runtime_pool", self.config.runtime_db, "runtime_db"
        ) as conn:
            yield conn

    # ======================================================================
    # Lifecycle
    # ======================================================================

    def close_all(self) -> None:
        """Close all connection pools."""

        if self._historical_pool is not None:
            self._historical_pool.closeall()
            self._historical_pool = None
            logger.info("Closed historical_db connection pool")

        if self._runtime_pool is not None:
            self._runtime_pool.closeall()
            self._runtime_pool = None
            logger.info("Closed runtime_db connection pool")


# ============================================================================
# Global Accessor
# ============================================================================

_db_manager: Optional[DatabaseManager] = None


def get_db_manager() -> DatabaseManager:
    """Return the global :class:`DatabaseManager` singleton."""

    global _db_manager
    if _db_manager is None:
        config = get_config()
        _db_manager = DatabaseManager(config)
    return _db_manager
