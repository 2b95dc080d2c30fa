"""Cronkeeper – gzip CSV writer for archive exports.

Pages are encoded and compressed as they arrive, so only the compressed
archive is held in memory rather than the whole CSV text. The header row
comes from the first page and every later page must carry the same
columns.

Quoting is the ``csv`` module's minimal mode: fields containing a comma,
a double quote or a line break are wrapped in double quotes with inner
quotes doubled.
"""

from __future__ import annotations

import csv
import gzip
import io
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable, Optional, Sequence, Tuple

from cronkeeper.archival.errors import ArchivalError


def format_value(value: Any) -> str:
    """Render one database value as CSV text (NULL becomes empty)."""

    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


class CsvArchiveWriter:
    """Accumulate export pages into a gzip-compressed CSV document."""

    def __init__(self, compresslevel: int = 9) -> None:
        self._buffer = io.BytesIO()
        # mtime=0 keeps the output deterministic for identical input.
        self._gzip = gzip.GzipFile(
            fileobj=self._buffer, mode="wb", compresslevel=compresslevel, mtime=0
        )
        self._text = io.TextIOWrapper(self._gzip, encoding="utf-8", newline="")
        self._writer = csv.writer(self._text, lineterminator="\n")
        self._finished: Optional[bytes] = None
        self.header: Optional[Tuple[str, ...]] = None
        self.row_count = 0

    def write_page(self, columns: Sequence[str], rows: Iterable[Sequence[Any]]) -> int:
        """Append one page; returns the number of rows written."""

        if self._finished is not None:
            raise ArchivalError("Cannot write to a finished archive")

        columns = tuple(columns)
        if self.header is None:
            self.header = columns
            self._writer.writerow(columns)
        elif columns != self.header:
            raise ArchivalError(
                f"Export columns changed mid-export: {list(self.header)} -> {list(columns)}"
            )

        written = 0
        for row in rows:
            self._writer.writerow([format_value(value) for value in row])
            written += 1
        self.row_count += written
        return written

    def finish(self) -> bytes:
        """Close the gzip stream and return the compressed bytes."""

        if self._finished is None:
            self._text.flush()
            self._text.close()
            self._finished = self._buffer.getvalue()
        return self._finished
