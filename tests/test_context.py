"""
tests/test_context.py
----------------------
Unit tests for core/context.py (run log, progress, listeners, cancellation).
Run with: python -m pytest tests/
"""
from __future__ import annotations

import pydantic
import pytest

from core.context import MigrationContext
from core.errors import MigrationCancelled
from shared.models import LogLevel, TableStatus


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def ctx() -> MigrationContext:
    return MigrationContext(run_id="run-1")


# ---------------------------------------------------------------------------
# Run log
# ---------------------------------------------------------------------------

class TestRunLog:
    def test_entries_keep_context(self, ctx: MigrationContext) -> None:
        entry = ctx.warn("Value dropped", phase="normalizing", table="users", kind="inference_ambiguity")
        assert entry.level == LogLevel.WARN
        assert entry.table == "users"
        assert entry.metadata == {"kind": "inference_ambiguity"}
        assert ctx.logs == [entry]
        assert ctx.warnings == [entry]

    def test_log_is_append_only(self, ctx: MigrationContext) -> None:
        ctx.info("first")
        ctx.logs.clear()
        assert len(ctx.logs) == 1

    def test_entries_are_frozen(self, ctx: MigrationContext) -> None:
        entry = ctx.info("hello")
        with pytest.raises(pydantic.ValidationError):
            entry.message = "changed"

    def test_string_levels_accepted(self, ctx: MigrationContext) -> None:
        assert ctx.log("error", "boom").level == LogLevel.ERROR

    def test_generated_run_ids_differ(self) -> None:
        assert MigrationContext().run_id != MigrationContext().run_id


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------

class TestProgress:
    def test_progress_is_monotonic(self, ctx: MigrationContext) -> None:
        ctx.track_table("users", 100)
        ctx.update_progress("users", 60)
        snapshot = ctx.update_progress("users", 40)
        assert snapshot.written_rows == 60
        assert snapshot.progress_percentage == 60.0
        assert snapshot.status == TableStatus.IN_PROGRESS
        assert snapshot.started_at is not None

    def test_completed_table_is_full(self, ctx: MigrationContext) -> None:
        ctx.track_table("users", 0)
        snapshot = ctx.mark_table("users", TableStatus.COMPLETED)
        assert snapshot.progress_percentage == 100.0
        assert snapshot.completed_at is not None

    def test_failed_table_keeps_error(self, ctx: MigrationContext) -> None:
        ctx.track_table("users", 10)
        snapshot = ctx.mark_table("users", TableStatus.FAILED, error="rejected")
        assert snapshot.error == "rejected"
        assert snapshot.progress_percentage == 0.0

    def test_snapshot_is_a_copy(self, ctx: MigrationContext) -> None:
        ctx.track_table("users", 10)
        ctx.snapshot()[0].written_rows = 99
        assert ctx.snapshot()[0].written_rows == 0


# ---------------------------------------------------------------------------
# Listeners, phases, cancellation
# ---------------------------------------------------------------------------

class TestListeners:
    def test_subscribe_and_unsubscribe(self, ctx: MigrationContext) -> None:
        events: list[tuple[str, object]] = []
        unsubscribe = ctx.subscribe(lambda kind, payload: events.append((kind, payload)))
        ctx.track_table("users", 5)
        ctx.info("hi")
        unsubscribe()
        ctx.info("ignored")
        assert [kind for kind, _ in events] == ["progress", "log"]

    def test_failing_listener_is_ignored(self, ctx: MigrationContext) -> None:
        def broken(kind: str, payload: object) -> None:
            raise RuntimeError("listener bug")

        seen: list[str] = []
        ctx.subscribe(broken)
        ctx.subscribe(lambda kind, payload: seen.append(kind))
        ctx.info("still delivered")
        assert seen == ["log"]


class TestPhasesAndCancellation:
    def test_phase_durations(self, ctx: MigrationContext) -> None:
        ctx.start_phase("writing")
        duration = ctx.end_phase("writing")
        assert duration >= 0.0
        assert ctx.phase_durations == {"writing": duration}

    def test_unstarted_phase_is_zero(self, ctx: MigrationContext) -> None:
        assert ctx.end_phase("committing") == 0.0

    def test_cancel(self, ctx: MigrationContext) -> None:
        ctx.raise_if_cancelled()
        ctx.cancel()
        assert ctx.cancelled
        with pytest.raises(MigrationCancelled):
            ctx.raise_if_cancelled()
