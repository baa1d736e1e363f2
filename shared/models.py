"""
Shared data models for migration runs.
These models are exchanged between the orchestrator, batch writer and
whatever transport relays progress to a caller.
"""
from enum import Enum
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MigrationState(str, Enum):
    """Orchestrator state machine."""
    PENDING = "pending"
    CONNECTING = "connecting"
    PREPARING = "preparing"
    NORMALIZING = "normalizing"
    WRITING = "writing"
    COMMITTING = "committing"
    DONE = "done"
    FAILED = "failed"


class TableStatus(str, Enum):
    """Per-table write status."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class LogLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class ChunkRange(BaseModel):
    """Half-open row range ``[start_row, end_row)`` of one chunk."""
    index: int
    start_row: int
    end_row: int

    @property
    def size(self) -> int:
        return self.end_row - self.start_row


class TableProgress(BaseModel):
    """Progress information for a single table."""
    table_name: str
    status: TableStatus = TableStatus.PENDING
    total_rows: int = 0
    written_rows: int = 0
    progress_percentage: float = 0.0
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class LogEntry(BaseModel):
    """One append-only run log event."""
    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utcnow)
    level: LogLevel = LogLevel.INFO
    message: str
    phase: Optional[str] = None
    table: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
