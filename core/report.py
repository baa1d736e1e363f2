"""
Result of one migration run.

The report is what every run returns, successful or not: the accumulated
log and progress snapshot travel with it so a caller can see exactly which
table and row range failed.
"""
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field

from core.errors import MigrationFailed
from shared.models import LogEntry, LogLevel, MigrationState, TableProgress
from shared.utils import calculate_throughput, format_duration


class MigrationReport(BaseModel):
    """Outcome of :meth:`MigrationOrchestrator.run`."""
    run_id: str
    state: MigrationState = MigrationState.PENDING
    destination: str = ""
    tables: List[str] = Field(default_factory=list)
    order: List[str] = Field(default_factory=list)
    cycles: List[List[str]] = Field(default_factory=list)
    waves: List[List[str]] = Field(default_factory=list)
    progress: List[TableProgress] = Field(default_factory=list)
    logs: List[LogEntry] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    type_corrections: List[Dict[str, Any]] = Field(default_factory=list)
    ddl: List[str] = Field(default_factory=list)
    rows_written: int = 0
    rows_attempted: int = 0
    persisted_tables: List[str] = Field(default_factory=list)
    rolled_back: bool = False
    partial_success: bool = False
    cancelled: bool = False
    error: Optional[str] = None
    failed_table: Optional[str] = None
    failed_rows: Optional[List[int]] = None  # [start_row, end_row)
    phase_durations: Dict[str, float] = Field(default_factory=dict)
    elapsed_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.state == MigrationState.DONE

    @property
    def warnings(self) -> List[LogEntry]:
        return [e for e in self.logs if e.level == LogLevel.WARN]

    @property
    def throughput(self) -> float:
        return calculate_throughput(self.rows_written, self.elapsed_seconds)

    def raise_for_status(self) -> "MigrationReport":
        """Raise :class:`MigrationFailed` unless the run reached ``done``."""
        if not self.succeeded:
            raise MigrationFailed(self)
        return self

    def summary(self) -> str:
        status = "OK" if self.succeeded else "FAILED"
        lines = [
            f"[{status}] run {self.run_id} -> {self.destination}: "
            f"{self.rows_written} rows in {len(self.tables)} table(s), "
            f"{format_duration(self.elapsed_seconds)} ({self.throughput} rows/s)"
        ]
        if self.cycles:
            lines.append("  Cycles: " + "; ".join(" -> ".join(c) for c in self.cycles))
        if self.warnings:
            lines.append(f"  Warnings: {len(self.warnings)}")
        if self.error:
            where = f" in '{self.failed_table}'" if self.failed_table else ""
            lines.append(f"  Error{where}: {self.error}")
        if self.rolled_back:
            lines.append(f"  Transaction rolled back; no rows persisted ({self.rows_attempted} attempted)")
        elif self.partial_success:
            lines.append("  Partially persisted: " + (", ".join(self.persisted_tables) or "none"))
        if self.cancelled:
            lines.append("  Run was cancelled.")
        return "\n".join(lines)

    def __str__(self) -> str:
        return self.summary()
