"""Cronkeeper – archival error types."""

from __future__ import annotations


class ArchivalError(Exception):
    """Raised when an archival run cannot complete."""


class ArchivalSafetyError(ArchivalError):
    """Raised when a plan would leave fewer trading days than required."""


class RowCountMismatchError(ArchivalError):
    """Raised when the live row count differs from the exported count.

    Nothing has been deleted when this is raised.
    """

    def __init__(self, exported_rows: int, live_rows: int, cutoff: object) -> None:
        super().__init__(
            f"Row count mismatch: exported {exported_rows} rows but DB has {live_rows} rows "
            f"with date <= {cutoff}. Aborting delete."
        )
        self.exported_rows = exported_rows
        self.live_rows = live_rows
