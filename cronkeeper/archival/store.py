"""
Cronkeeper: Archival Store Access

Queries the archival job runs against the primary (historical) store:
size measurement, date-range discovery, paged export, verification count,
delete and space reclamation.

Key responsibilities:
- Describe the archived table and its ordering
- Read the distinct trading-day range of the table
- Stream rows up to a cutoff in stable order, one page at a time
- Delete archived rows only when the deleted count matches expectations

External dependencies:
- psycopg2: PostgreSQL access and safe identifier composition

Database tables accessed:
- historical_db.<archive table> (Read/Delete)

Thread safety: Thread-safe (no shared mutable state)

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

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from typing import Any, Iterator, List, Optional, Sequence, Tuple

from psycopg2 import sql

from cronkeeper.archival.errors import RowCountMismatchError
from cronkeeper.core.config import ArchivalConfig
from cronkeeper.core.database import DatabaseManager
from cronkeeper.core.logging import get_logger

# ============================================================================
# Module Setup
# ============================================================================

logger = get_logger(__name__)

BYTES_PER_MB = 1024 * 1024


def bytes_to_mb(size_bytes: int) -> float:
    return round(size_bytes / BYTES_PER_MB, 2)


# ============================================================================
# Data Models
# ============================================================================


@dataclass(frozen=True)
class ArchiveTable:
    """The table being archived and its stable export ordering."""

    schema: str
    name: str
    date_column: str = "trade_date"
    order_columns: Tuple[str, ...] = ("trade_date", "local_code", "session")

    @classmethod
    def from_config(cls, config: ArchivalConfig) -> "ArchiveTable":
        return cls(
            schema=config.table_schema,
            name=config.table_name,
            date_column=config.date_column,
            order_columns=tuple(config.order_columns),
        )

    @property
    def identifier(self) -> sql.Identifier:
        return sql.Identifier(self.schema, self.name)


@dataclass(frozen=True)
class DataRange:
    min_date: date
    max_date: date
    trading_day_count: int


@dataclass(frozen=True)
class ExportPage:
    columns: Tuple[str, ...]
    rows: List[Sequence[Any]]


# ============================================================================
# Store port
# ============================================================================


class ArchivalStore(ABC):
    """Operations the archival coordinator needs from the primary store."""

    @abstractmethod
    def database_size_bytes(self) -> int:
        """Return the current physical size of the database."""

    @abstractmethod
    def data_range(self) -> Optional[DataRange]:
        """Return the date range and distinct day count, or None if empty."""

    @abstractmethod
    def cutoff_date(self, archive_days: int) -> Optional[date]:
        """Return the ``archive_days``-th oldest distinct trading day."""

    @abstractmethod
    def iter_pages(self, cutoff: date, page_size: int) -> Iterator[ExportPage]:
        """Yield all rows with date <= ``cutoff`` in stable order."""

    @abstractmethod
    def count_rows_through(self, cutoff: date) -> int:
        """Count rows with date <= ``cutoff``."""

    @abstractmethod
    def delete_rows_through(self, cutoff: date, expected_rows: int) -> int:
        """Delete rows with date <= ``cutoff``.

        Must leave the store unchanged and raise
        :class:`RowCountMismatchError` if the number of matching rows is
        not ``expected_rows``.
        """

    @abstractmethod
    def reclaim_space(self) -> None:
        """Return freed pages to the operating system."""


class PostgresArchivalStore(ArchivalStore):
    """:class:`ArchivalStore` on the historical database."""

    def __init__(self, db_manager: DatabaseManager, table: ArchiveTable) -> None:
        self.db_manager = db_manager
        self.table = table

    def _fetchone(self, query: Any, params: tuple = ()) -> Optional[tuple]:
        with self.db_manager.get_historical_connection() as conn:
            cursor = conn.cursor()
            try:
                cursor.execute(query, params)
                return cursor.fetchone()
            finally:
                cursor.close()

    def database_size_bytes(self) -> int:
        row = self._fetchone("SELECT pg_database_size(current_database())")
        return int(row[0]) if row else 0

    def data_range(self) -> Optional[DataRange]:
        query = sql.SQL(
            "SELECT MIN({col}), MAX({col}), COUNT(DISTINCT {col}) FROM {table}"
        ).format(col=sql.Identifier(self.table.date_column), table=self.table.identifier)
        row = self._fetchone(query)
        if row is None or row[0] is None or not row[2]:
            return None
        return DataRange(min_date=row[0], max_date=row[1], trading_day_count=int(row[2]))

    def cutoff_date(self, archive_days: int) -> Optional[date]:
        if archive_days < 1:
            raise ValueError("archive_days must be >= 1")

        query = sql.SQL(
            "SELECT DISTINCT {col} FROM {table} ORDER BY {col} ASC OFFSET %s LIMIT 1"
        ).format(col=sql.Identifier(self.table.date_column), table=self.table.identifier)
        row = self._fetchone(query, (archive_days - 1,))
        return row[0] if row else None

    def iter_pages(self, cutoff: date, page_size: int) -> Iterator[ExportPage]:
        query = sql.SQL(
            "SELECT * FROM {table} WHERE {col} <= %s ORDER BY {order} LIMIT %s OFFSET %s"
        ).format(
            table=self.table.identifier,
            col=sql.Identifier(self.table.date_column),
            order=sql.SQL(", ").join(sql.Identifier(c) for c in self.table.order_columns),
        )

        offset = 0
        while True:
            with self.db_manager.get_historical_connection() as conn:
                cursor = conn.cursor()
                try:
                    cursor.execute(query, (cutoff, page_size, offset))
                    rows = cursor.fetchall()
                    columns = tuple(desc[0] for desc in cursor.description or ())
                finally:
                    cursor.close()

            if not rows:
                return
            yield ExportPage(columns=columns, rows=list(rows))
            if len(rows) < page_size:
                return
            offset += page_size

    def count_rows_through(self, cutoff: date) -> int:
        query = sql.SQL("SELECT COUNT(*) FROM {table} WHERE {col} <= %s").format(
            table=self.table.identifier, col=sql.Identifier(self.table.date_column)
        )
        row = self._fetchone(query, (cutoff,))
        return int(row[0]) if row else 0

    def delete_rows_through(self, cutoff: date, expected_rows: int) -> int:
        query = sql.SQL("DELETE FROM {table} WHERE {col} <= %s").format(
            table=self.table.identifier, col=sql.Identifier(self.table.date_column)
        )
        with self.db_manager.get_historical_connection() as conn:
            cursor = conn.cursor()
            try:
                cursor.execute(query, (cutoff,))
                deleted = cursor.rowcount
                if deleted != expected_rows:
                    conn.rollback()
                    raise RowCountMismatchError(expected_rows, deleted, cutoff)
                conn.commit()
            finally:
                cursor.close()

        logger.info("Deleted %d rows from %s.%s", deleted, self.table.schema, self.table.name)
        return deleted

    def reclaim_space(self) -> None:
        # VACUUM cannot run inside a transaction block.
        query = sql.SQL("VACUUM FULL {table}").format(table=self.table.identifier)
        with self.db_manager.get_historical_connection() as conn:
            previous = conn.autocommit
            conn.autocommit = True
            cursor = conn.cursor()
            try:
                cursor.execute(query)
            finally:
                cursor.close()
                conn.autocommit = previous
        logger.info("VACUUM FULL completed on %s.%s", self.table.schema, self.table.name)
