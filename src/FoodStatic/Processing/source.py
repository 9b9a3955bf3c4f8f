# === NAVMAP v1 ===
# {
#   "module": "FoodStatic.Processing.source",
#   "purpose": "Streaming gzip TSV reader that yields fixed-size row batches.",
#   "sections": [
#     {
#       "id": "sourcestats",
#       "name": "SourceStats",
#       "anchor": "class-sourcestats",
#       "kind": "class"
#     },
#     {
#       "id": "recordsource",
#       "name": "RecordSource",
#       "anchor": "class-recordsource",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""Streaming gzip TSV reader that yields fixed-size row batches.

The Open Food Facts export is several gigabytes once decompressed, so the
source never materialises it: the gzip stream is decoded and split into rows on
demand, and rows are grouped lazily into batches of ``batch_size``. Each call to
:meth:`RecordSource.iter_batches` reopens the file, which makes the sequence
restartable.

Problems that make the input unusable (missing file, not gzip, empty, no
``code`` column) surface as :class:`FatalStartupError` from
:meth:`RecordSource.open` so the pipeline can abort before writing anything.
Rows with the wrong number of columns are counted and skipped. A stream that
breaks part-way through raises :class:`SourceReadError` from the iterator.
"""

from __future__ import annotations

import csv
import gzip
import sys
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Iterator, List, Optional, Tuple

from .errors import FatalStartupError, SourceReadError
from .logging import get_logger, log_event
from .normalizer import ColumnIndex

__all__ = ["RawRow", "RecordSource", "SourceStats"]

RawRow = List[str]

LOGGER = get_logger(__name__, base_fields={"stage": "source"})

_FIELD_SIZE_LIMIT = min(sys.maxsize, 2**31 - 1)
_MALFORMED_LOG_LIMIT = 20


@dataclass(slots=True)
class SourceStats:
    """Counters for one pass over the input."""

    rows: int = 0
    malformed_rows: int = 0
    batches: int = 0


class RecordSource:
    """Restartable, lazily decoded sequence of row batches from a gzip TSV file."""

    def __init__(self, path: Path, *, batch_size: int = 1000, delimiter: str = "\t") -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.path = Path(path)
        self.batch_size = batch_size
        self.delimiter = delimiter
        self.stats = SourceStats()
        self._columns: Optional[ColumnIndex] = None

    @property
    def columns(self) -> ColumnIndex:
        if self._columns is None:
            self._columns = self.open()
        return self._columns

    def _open_text(self) -> IO[str]:
        return gzip.open(self.path, "rt", encoding="utf-8", errors="replace", newline="")

    def _reader(self, handle: IO[str]) -> Iterator[List[str]]:
        csv.field_size_limit(_FIELD_SIZE_LIMIT)
        return csv.reader(handle, delimiter=self.delimiter, quoting=csv.QUOTE_NONE)

    def open(self) -> ColumnIndex:
        """Validate the input and return the header-derived :class:`ColumnIndex`."""

        if not self.path.exists():
            raise FatalStartupError(
                f"Input file not found: {self.path}. Download the export first.",
                path=self.path,
            )
        if not self.path.is_file():
            raise FatalStartupError(f"Input path is not a file: {self.path}", path=self.path)
        try:
            with self._open_text() as handle:
                header = next(self._reader(handle), None)
        except (OSError, EOFError, zlib.error) as exc:
            raise FatalStartupError(
                f"Input file is unreadable or not gzip-compressed: {self.path} ({exc})",
                path=self.path,
            ) from exc
        if not header:
            raise FatalStartupError(f"Input file has no header row: {self.path}", path=self.path)
        columns = ColumnIndex.from_header(header)
        if "code" not in columns:
            raise FatalStartupError(
                f"Input header has no 'code' column: {self.path}", path=self.path
            )
        self._columns = columns
        log_event(
            LOGGER,
            "info",
            "Opened input",
            path=str(self.path),
            columns=columns.width,
        )
        return columns

    def _read_error(self, exc: BaseException, line: int) -> SourceReadError:
        return SourceReadError(
            f"Input stream failed after line {line} of {self.path}: "
            f"{type(exc).__name__}: {exc}",
            path=self.path,
            line=line,
        )

    def _rows(self) -> Iterator[Tuple[int, RawRow]]:
        """Yield ``(line, row)`` pairs after the header; stream errors become typed."""

        line = 0
        try:
            with self._open_text() as handle:
                reader = self._reader(handle)
                next(reader, None)
                while True:
                    try:
                        row = next(reader)
                    except StopIteration:
                        return
                    except (OSError, EOFError, zlib.error, csv.Error) as exc:
                        raise self._read_error(exc, reader.line_num) from exc
                    line = reader.line_num
                    yield line, row
        except (OSError, EOFError, zlib.error) as exc:
            raise self._read_error(exc, line) from exc

    def iter_batches(self) -> Iterator[List[RawRow]]:
        """Yield batches of at most ``batch_size`` well-formed data rows.

        The header row is consumed and never yielded. A final partial batch is
        yielded when rows remain at end of input. A truncated or corrupt stream
        raises :class:`SourceReadError` at the point of failure.
        """

        columns = self.columns
        self.stats = SourceStats()
        stats = self.stats
        batch: List[RawRow] = []
        for line, row in self._rows():
            if not row:
                continue
            if len(row) != columns.width:
                stats.malformed_rows += 1
                if stats.malformed_rows <= _MALFORMED_LOG_LIMIT:
                    log_event(
                        LOGGER,
                        "warning",
                        "Skipping malformed row",
                        line=line,
                        expected=columns.width,
                        observed=len(row),
                        error_code="MALFORMED_ROW",
                    )
                continue
            stats.rows += 1
            batch.append(row)
            if len(batch) >= self.batch_size:
                stats.batches += 1
                yield batch
                batch = []
        if batch:
            stats.batches += 1
            yield batch
