"""
core/batch_writer.py
--------------------
Chunked writes of one table's insert records into a destination.

Design Decisions:
    * Chunks run strictly one after another on the caller's connection;
      chunk *i* completes before chunk *i+1* begins.
    * The column list comes from the first record's keys. A record missing
      one of those keys supplies ``None``; composite values that slipped
      through normalization are bound as their string form.
    * A failed chunk raises :class:`WriteFailure` immediately with the row
      range. There is no partial-chunk retry; the orchestrator decides what
      to roll back.
    * Progress is reported after every chunk as ``(written_so_far, total)``.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import date, datetime, time as dt_time
from decimal import Decimal
from typing import Any, Callable, Mapping, Sequence

from config import CONFIG
from core.database import DatabaseError, Destination
from core.errors import WriteFailure
from logger import get_logger
from shared.chunking import ChunkPlanner
from shared.utils import calculate_throughput

log = get_logger(__name__)

ProgressCallback = Callable[[int, int], None]  # written_so_far, total


@dataclass
class BatchResult:
    """Outcome of writing one table."""
    table_name: str
    written: int
    duration: float
    chunks: int = 0

    @property
    def throughput(self) -> float:
        return calculate_throughput(self.written, self.duration)


_BINDABLE = (str, int, float, bool, Decimal, datetime, date, dt_time, bytes, bytearray)


def bind_ready(value: Any) -> Any:
    """Driver-bindable scalars pass through; anything else is bound as its string form."""
    if value is None or isinstance(value, _BINDABLE):
        return value
    return str(value)


class BatchWriter:
    """
    Writes insert records in bounded chunks.

    Args:
        destination: Connected destination handle (borrowed, never closed here).
        chunk_size:  Rows per chunk; defaults to ``MIGRATION_CHUNK_SIZE``.
        cancel_check: Called before every chunk; raises to abort the table.

    Example::

        writer = BatchWriter(dest, chunk_size=1000)
        result = writer.write("users", rows, progress_cb=lambda n, t: print(n, t))
    """

    def __init__(
        self,
        destination: Destination,
        chunk_size: int | None = None,
        cancel_check: Callable[[], None] | None = None,
    ) -> None:
        self._destination = destination
        self._planner = ChunkPlanner(chunk_size or CONFIG.migration.chunk_size)
        self._cancel_check = cancel_check

    @property
    def chunk_size(self) -> int:
        return self._planner.chunk_size

    def write(
        self,
        table_name: str,
        records: Sequence[Mapping[str, Any]],
        progress_cb: ProgressCallback | None = None,
    ) -> BatchResult:
        """
        Write *records* into *table_name*.

        Returns:
            :class:`BatchResult` with the number of rows written.

        Raises:
            WriteFailure: If the destination rejects a chunk.
            MigrationCancelled: If the cancel check fires between chunks.
        """
        start = time.monotonic()
        total = len(records)
        if total == 0:
            log.info("No rows to write for '%s'.", table_name)
            return BatchResult(table_name=table_name, written=0, duration=0.0)

        columns = list(records[0].keys())
        written = 0
        chunks = 0
        for chunk, part in self._planner.iter_chunks(records):
            if self._cancel_check is not None:
                self._cancel_check()
            rows = [tuple(bind_ready(record.get(c)) for c in columns) for record in part]
            try:
                self._destination.write_batch(table_name, columns, rows)
            except DatabaseError as exc:
                log.error(
                    "Chunk %d of '%s' (rows %d-%d) failed: %s",
                    chunk.index, table_name, chunk.start_row, chunk.end_row - 1, exc,
                )
                raise WriteFailure(table_name, chunk.start_row, chunk.end_row, exc) from exc
            written += chunk.size
            chunks += 1
            if progress_cb is not None:
                progress_cb(written, total)

        result = BatchResult(
            table_name=table_name,
            written=written,
            duration=time.monotonic() - start,
            chunks=chunks,
        )
        log.info(
            "Wrote %d row(s) into '%s' in %d chunk(s) (%.2fs, %s rows/s).",
            written, table_name, chunks, result.duration, result.throughput,
        )
        return result
