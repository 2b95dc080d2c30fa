"""Cronkeeper – per-dataset sync recorded in the run ledger.

A sync pulls every page of one upstream endpoint and hands each page to a
:class:`RowWriter`. The dataset is tracked as a ``job_run_items`` row so a
multi-dataset run shows which part failed and how far it got.

Writes are idempotent upserts: re-running a date after a partial failure
rewrites the same rows instead of duplicating them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence

from psycopg2 import sql

from cronkeeper.coordination.run_ledger import JobStatus, RunLedger
from cronkeeper.core.database import DatabaseManager
from cronkeeper.core.logging import get_logger
from cronkeeper.ingestion.api_client import ApiClient

logger = get_logger(__name__)


class RowWriter(Protocol):
    def upsert(self, dataset: str, rows: List[Dict[str, Any]]) -> int:
        """Persist ``rows`` and return how many were written."""


@dataclass(frozen=True)
class DatasetSyncResult:
    dataset: str
    row_count: int
    page_count: int


@dataclass
class PostgresUpsertWriter:
    """Upsert API rows into one historical_db table.

    ``columns`` maps table columns to the payload keys; rows missing a key
    are written with NULL for that column.
    """

    db_manager: DatabaseManager
    schema: str
    table: str
    columns: Sequence[str]
    conflict_columns: Sequence[str]

    def _statement(self) -> sql.Composed:
        update_columns = [c for c in self.columns if c not in self.conflict_columns]
        if update_columns:
            on_conflict = sql.SQL("DO UPDATE SET {}").format(
                sql.SQL(", ").join(
                    sql.SQL("{} = EXCLUDED.{}").format(sql.Identifier(c), sql.Identifier(c))
                    for c in update_columns
                )
            )
        else:
            on_conflict = sql.SQL("DO NOTHING")

        return sql.SQL(
            "INSERT INTO {table} ({columns}) VALUES ({values}) ON CONFLICT ({keys}) {action}"
        ).format(
            table=sql.Identifier(self.schema, self.table),
            columns=sql.SQL(", ").join(sql.Identifier(c) for c in self.columns),
            values=sql.SQL(", ").join(sql.Placeholder() for _ in self.columns),
            keys=sql.SQL(", ").join(sql.Identifier(c) for c in self.conflict_columns),
            action=on_conflict,
        )

    def upsert(self, dataset: str, rows: List[Dict[str, Any]]) -> int:
        if not rows:
            return 0

        params = [tuple(row.get(column) for column in self.columns) for row in rows]
        with self.db_manager.get_historical_connection() as conn:
            cursor = conn.cursor()
            try:
                cursor.executemany(self._statement(), params)
                conn.commit()
            finally:
                cursor.close()

        logger.debug("Upserted %d rows into %s.%s (%s)", len(rows), self.schema, self.table, dataset)
        return len(rows)


def sync_dataset(
    client: ApiClient,
    ledger: RunLedger,
    run_id: str,
    dataset: str,
    endpoint: str,
    writer: RowWriter,
    *,
    data_key: Optional[str] = None,
    params: Optional[Dict[str, Any]] = None,
) -> DatasetSyncResult:
    """Fetch every page of ``endpoint`` and write it through ``writer``.

    The item row is completed as failed (with the counts reached so far)
    if any page fails, and the error is re-raised to the job handler.
    """

    ledger.start_item(run_id, dataset, meta={"endpoint": endpoint, "params": params or {}})

    row_count = 0
    page_count = 0
    try:
        for page in client.iter_pages(endpoint, data_key or dataset, params):
            page_count += 1
            row_count += writer.upsert(dataset, page.items)
    except Exception as exc:
        ledger.complete_item(
            run_id,
            dataset,
            JobStatus.FAILED,
            row_count=row_count,
            page_count=page_count,
            error_message=str(exc),
        )
        raise

    ledger.complete_item(
        run_id,
        dataset,
        JobStatus.SUCCESS,
        row_count=row_count,
        page_count=page_count,
    )
    logger.info(
        "Synced dataset=%s run_id=%s rows=%d pages=%d", dataset, run_id, row_count, page_count
    )
    return DatasetSyncResult(dataset=dataset, row_count=row_count, page_count=page_count)
