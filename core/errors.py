"""
core/errors.py
--------------
Exception taxonomy for migration runs.

Inference ambiguity and dependency cycles are deliberately absent: they are
recoverable and travel as warnings (``kind`` metadata on a run log entry).
"""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from core.report import MigrationReport

# Warning kinds attached to run log entries
INFERENCE_AMBIGUITY = "inference_ambiguity"
DEPENDENCY_CYCLE = "dependency_cycle"
EXTERNAL_ENHANCEMENT = "external_enhancement"


class MigrationError(Exception):
    """Raised when a migration cannot proceed."""


class SchemaError(MigrationError):
    """Raised when a supplied table definition breaks its invariants."""


class ConnectionFailure(MigrationError):
    """Raised when the destination cannot be reached."""


class WriteFailure(MigrationError):
    """
    Raised when a chunk cannot be written.

    Attributes:
        table:     Table whose chunk failed.
        start_row: First row index of the failed chunk (inclusive).
        end_row:   Last row index of the failed chunk (exclusive).
    """

    def __init__(self, table: str, start_row: int, end_row: int, cause: Exception | str) -> None:
        self.table = table
        self.start_row = start_row
        self.end_row = end_row
        self.cause = cause
        super().__init__(
            f"Write to '{table}' failed for rows {start_row}-{end_row - 1}: {cause}"
        )


class MigrationCancelled(MigrationError):
    """Raised between chunks once a run's cancellation token is set."""


class ExternalEnhancementFailure(MigrationError):
    """Raised by a suggestion hook; always downgraded to a warning by the orchestrator."""


class MigrationFailed(MigrationError):
    """Raised by ``MigrationReport.raise_for_status`` for a failed run."""

    def __init__(self, report: "MigrationReport") -> None:
        self.report = report
        super().__init__(report.error or "Migration failed")
