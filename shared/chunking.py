"""
Chunking logic for splitting a table's records into bounded writes.
"""
from typing import Iterator, List, Sequence, Tuple, TypeVar
import math

from shared.models import ChunkRange
from logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class ChunkPlanner:
    """Handles chunk range calculation for a batch of records."""

    def __init__(self, chunk_size: int = 1000):
        """
        Initialize chunk planner.

        Args:
            chunk_size: Maximum number of records per chunk

        Raises:
            ValueError: If chunk_size is not positive
        """
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self.chunk_size = chunk_size

    def calculate_chunks(self, total_rows: int) -> List[ChunkRange]:
        """
        Calculate consecutive chunk ranges covering ``total_rows`` records.

        Args:
            total_rows: Number of records to write

        Returns:
            List of chunk ranges; empty when there is nothing to write
        """
        if total_rows <= 0:
            return []

        num_chunks = math.ceil(total_rows / self.chunk_size)
        chunks = [
            ChunkRange(
                index=i,
                start_row=i * self.chunk_size,
                end_row=min((i + 1) * self.chunk_size, total_rows),
            )
            for i in range(num_chunks)
        ]
        logger.debug(
            "Planned %d chunk(s) of up to %d rows for %d records",
            len(chunks), self.chunk_size, total_rows,
        )
        return chunks

    def iter_chunks(self, records: Sequence[T]) -> Iterator[Tuple[ChunkRange, Sequence[T]]]:
        """
        Yield ``(range, slice)`` pairs over *records* in order.

        Args:
            records: Records to split

        Yields:
            The chunk range and the matching slice of records
        """
        for chunk in self.calculate_chunks(len(records)):
            yield chunk, records[chunk.start_row:chunk.end_row]


def rows_per_statement(column_count: int, max_params: int, chunk_rows: int) -> int:
    """
    Largest number of rows one multi-row INSERT may carry without exceeding
    a driver's bind-parameter limit.

    Args:
        column_count: Columns per row
        max_params: Bind parameters allowed in one statement
        chunk_rows: Rows in the chunk being written

    Returns:
        Row count per statement (at least 1)
    """
    if column_count <= 0:
        return max(chunk_rows, 1)
    return max(1, min(chunk_rows, max_params // column_count))
