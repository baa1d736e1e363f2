"""
core/context.py
---------------
Per-run state shared by the orchestrator and batch writer: the append-only
run log, per-table progress, phase timings and the cancellation token.

Design Decisions:
    * One context per run; nothing here is global. A lock guards every
      mutation so tables written from a worker pool report safely.
    * Every run-log event is mirrored to the Python logger at the matching
      level, so console/file logs and the structured log agree.
    * Listeners are notified after the lock is released. A failing
      listener is logged and ignored; it never aborts the run.
"""
from __future__ import annotations

import threading
import time
import uuid
from typing import Any, Callable

from core.errors import MigrationCancelled
from logger import get_logger, level_for
from shared.models import LogEntry, LogLevel, TableProgress, TableStatus, utcnow
from shared.utils import calculate_progress_percentage

log = get_logger(__name__)

Listener = Callable[[str, Any], None]  # event kind ("log" | "progress"), payload


class MigrationContext:
    """
    Observable state of one migration run.

    Example::

        ctx = MigrationContext()
        unsubscribe = ctx.subscribe(lambda kind, payload: print(kind, payload))
        ctx.log("info", "Connected", phase="connecting")
        unsubscribe()
    """

    def __init__(self, run_id: str | None = None) -> None:
        self.run_id = run_id or uuid.uuid4().hex
        self._lock = threading.RLock()
        self._logs: list[LogEntry] = []
        self._progress: dict[str, TableProgress] = {}
        self._listeners: list[Listener] = []
        self._phase_started: dict[str, float] = {}
        self._phase_durations: dict[str, float] = {}
        self._cancel = threading.Event()

    # ------------------------------------------------------------------
    # Run log
    # ------------------------------------------------------------------

    def log(
        self,
        level: str | LogLevel,
        message: str,
        phase: str | None = None,
        table: str | None = None,
        **metadata: Any,
    ) -> LogEntry:
        """Append an event to the run log and mirror it to the Python logger."""
        level = LogLevel(level) if not isinstance(level, LogLevel) else level
        entry = LogEntry(level=level, message=message, phase=phase, table=table, metadata=metadata)
        with self._lock:
            self._logs.append(entry)
        log.log(
            level_for(level.value),
            "[%s]%s %s",
            phase or "-",
            f" {table}:" if table else "",
            message,
        )
        self._notify("log", entry)
        return entry

    def info(self, message: str, **kwargs: Any) -> LogEntry:
        return self.log(LogLevel.INFO, message, **kwargs)

    def warn(self, message: str, **kwargs: Any) -> LogEntry:
        return self.log(LogLevel.WARN, message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> LogEntry:
        return self.log(LogLevel.ERROR, message, **kwargs)

    @property
    def logs(self) -> list[LogEntry]:
        with self._lock:
            return list(self._logs)

    @property
    def warnings(self) -> list[LogEntry]:
        return [e for e in self.logs if e.level == LogLevel.WARN]

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def start_phase(self, phase: str) -> None:
        with self._lock:
            self._phase_started[phase] = time.monotonic()
        self.info(f"Phase '{phase}' started", phase=phase)

    def end_phase(self, phase: str) -> float:
        """Close *phase* and return its duration in seconds (0.0 if never started)."""
        with self._lock:
            started = self._phase_started.pop(phase, None)
            duration = 0.0 if started is None else time.monotonic() - started
            self._phase_durations[phase] = self._phase_durations.get(phase, 0.0) + duration
        self.info(f"Phase '{phase}' finished in {duration:.3f}s", phase=phase, duration=duration)
        return duration

    @property
    def phase_durations(self) -> dict[str, float]:
        with self._lock:
            return dict(self._phase_durations)

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def track_table(self, table: str, total_rows: int) -> TableProgress:
        with self._lock:
            progress = TableProgress(table_name=table, total_rows=total_rows)
            self._progress[table] = progress
        self._notify("progress", progress.model_copy())
        return progress

    def update_progress(self, table: str, written_rows: int) -> TableProgress:
        """
        Record that *written_rows* rows of *table* are written.

        Progress is monotonic: a lower count than already recorded is ignored.
        """
        with self._lock:
            progress = self._progress.get(table)
            if progress is None:
                progress = self._progress[table] = TableProgress(table_name=table)
            if progress.status == TableStatus.PENDING:
                progress.status = TableStatus.IN_PROGRESS
                progress.started_at = utcnow()
            if written_rows > progress.written_rows:
                progress.written_rows = written_rows
                percentage = calculate_progress_percentage(written_rows, progress.total_rows)
                progress.progress_percentage = max(progress.progress_percentage, percentage)
            snapshot = progress.model_copy()
        self._notify("progress", snapshot)
        return snapshot

    def mark_table(self, table: str, status: TableStatus, error: str | None = None) -> TableProgress:
        with self._lock:
            progress = self._progress.get(table)
            if progress is None:
                progress = self._progress[table] = TableProgress(table_name=table)
            progress.status = status
            progress.error = error
            if status in (TableStatus.COMPLETED, TableStatus.FAILED):
                progress.completed_at = utcnow()
                if progress.started_at is None:
                    progress.started_at = progress.completed_at
            if status == TableStatus.COMPLETED:
                progress.progress_percentage = 100.0
            snapshot = progress.model_copy()
        self._notify("progress", snapshot)
        return snapshot

    def snapshot(self) -> list[TableProgress]:
        """Copies of every table's progress, in tracking order."""
        with self._lock:
            return [p.model_copy() for p in self._progress.values()]

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; returns a function that unregisters it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, kind: str, payload: Any) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(kind, payload)
            except Exception as exc:  # noqa: BLE001
                log.warning("Progress listener %r failed: %s", listener, exc)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        if not self._cancel.is_set():
            self._cancel.set()
            log.info("Cancellation requested for run %s", self.run_id)

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def raise_if_cancelled(self) -> None:
        if self._cancel.is_set():
            raise MigrationCancelled(f"Run {self.run_id} was cancelled")
