"""
tests/test_migrator.py
-----------------------
Unit tests for core/migrator.py.

Relational runs use real SQLite files; document runs use a MongoDB
destination with a mocked client.
Run with: python -m pytest tests/
"""
from __future__ import annotations

from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest
from pymongo.errors import PyMongoError

from core.context import MigrationContext
from core.database import DatabaseError, SQLiteDestination
from core.document_store import MongoDestination
from core.enhancer import EnhancementResult
from core.errors import (
    DEPENDENCY_CYCLE,
    EXTERNAL_ENHANCEMENT,
    ExternalEnhancementFailure,
    MigrationFailed,
)
from core.migrator import MigrationOrchestrator, plan_migration
from core.sources import DocumentSource, RelationalSource
from models.schema import ColumnDef, ForeignKeyDef, StorageType, TableDefinition
from shared.models import MigrationState, TableStatus

OBJECT_ID = "507f1f77bcf86cd799439011"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def users() -> DocumentSource:
    return DocumentSource(
        records=[
            {
                "_id": OBJECT_ID,
                "email": "a@b.com",
                "address": {"city": "Oslo", "zip": "0150"},
                "tags": ["admin", "staff"],
                "orders": [{"id": 1, "total": 9.5}, {"id": 2, "total": 3}],
            },
            {
                "_id": "507f1f77bcf86cd799439012",
                "email": "c@d.com",
                "address": {"city": "Bergen", "zip": "5003"},
                "tags": ["staff"],
                "orders": [],
            },
        ],
        root_name="users",
    )


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "target.db"


class FailingSQLiteDestination(SQLiteDestination):
    """Rejects every write into one table."""

    def __init__(self, path: Path, fail_table: str, error: Exception | None = None) -> None:
        super().__init__(path)
        self.fail_table = fail_table
        self.error = error or DatabaseError("simulated constraint violation")

    def write_batch(self, table, columns, rows) -> int:
        if table == self.fail_table:
            raise self.error
        return super().write_batch(table, columns, rows)


class RecordingEnhancer:
    def __init__(self, result: EnhancementResult | None = None, error: Exception | None = None) -> None:
        self.result = result or EnhancementResult()
        self.error = error
        self.calls: list[tuple[list[str], list[Any]]] = []

    def enhance(self, ddl, sample) -> EnhancementResult:
        self.calls.append((list(ddl), list(sample)))
        if self.error is not None:
            raise self.error
        return self.result


def _mongo(collections: dict[str, MagicMock]) -> MongoDestination:
    client = MagicMock()
    client.__getitem__.return_value.__getitem__.side_effect = (
        lambda name: collections.setdefault(name, MagicMock())
    )
    return MongoDestination("mongodb://localhost", "shop", client=client, retry_delay=0)


def _count(path: Path, table: str) -> int:
    with SQLiteDestination(path) as dest:
        return dest.count_rows(table)


def _tables_in(path: Path) -> list[str]:
    with SQLiteDestination(path) as dest:
        rows = dest.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    return sorted(r[0] for r in rows if not r[0].startswith("sqlite_"))


def _cyclic_definitions() -> list[TableDefinition]:
    def table(name: str, ref: str) -> TableDefinition:
        return TableDefinition(
            name=name,
            columns=[
                ColumnDef("id", StorageType.INTEGER, nullable=False, is_primary_key=True),
                ColumnDef(f"{ref.lower()}_id", StorageType.INTEGER),
            ],
            primary_key="id",
            foreign_keys=[ForeignKeyDef(f"{ref.lower()}_id", ref, "id")],
        )

    return [table("A", "B"), table("B", "A")]


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------

class TestPlanMigration:
    def test_document_plan(self, users: DocumentSource) -> None:
        plan = plan_migration(users, "postgres")
        assert plan.order[0] == "users"
        assert plan.waves == [["users"], ["users_address", "users_tags", "users_orders"]]
        assert plan.ddl[0].startswith('CREATE TABLE "users"')
        assert any(s.startswith('ALTER TABLE "users_address"') for s in plan.ddl)
        assert plan.cycles == []

    def test_no_dialect_means_no_ddl(self, users: DocumentSource) -> None:
        assert plan_migration(users).ddl == []

    def test_flatten_is_deferred(self, users: DocumentSource) -> None:
        plan = plan_migration(users)
        assert plan.flatten().total_rows == 9

    def test_unknown_references_are_listed(self) -> None:
        orders = TableDefinition(
            name="orders",
            columns=[
                ColumnDef("id", StorageType.INTEGER, nullable=False, is_primary_key=True),
                ColumnDef("customer_id", StorageType.INTEGER),
            ],
            primary_key="id",
            foreign_keys=[ForeignKeyDef("customer_id", "customers", "id")],
        )
        plan = plan_migration(RelationalSource([("orders", [])], definitions=[orders]))
        assert plan.unknown_references == ["customers"]
        assert plan.order == ["orders"]

    def test_rows_without_definition_warn(self) -> None:
        source = RelationalSource(
            [("A", [{"id": 1}]), ("stray", [{"id": 1}])], definitions=_cyclic_definitions()
        )
        plan = plan_migration(source)
        assert any("stray" in w for w in plan.warnings)

    def test_unsupported_source(self) -> None:
        with pytest.raises(TypeError):
            plan_migration([{"id": 1}])


# ---------------------------------------------------------------------------
# Transactional destination
# ---------------------------------------------------------------------------

class TestSQLiteRuns:
    def test_successful_run(self, users: DocumentSource, db_path: Path) -> None:
        report = MigrationOrchestrator(SQLiteDestination(db_path), chunk_size=2).run(users)
        assert report.succeeded
        assert report.state == MigrationState.DONE
        assert report.order == ["users", "users_address", "users_tags", "users_orders"]
        assert report.persisted_tables == report.order
        assert report.rows_written == 9
        assert {p.table_name: p.status for p in report.progress} == {
            name: TableStatus.COMPLETED for name in report.order
        }
        assert _count(db_path, "users") == 2
        assert _count(db_path, "users_tags") == 3
        assert set(report.phase_durations) == {
            "connecting", "preparing", "normalizing", "writing", "committing",
        }

    def test_failure_rolls_back_everything(self, users: DocumentSource, db_path: Path) -> None:
        dest = FailingSQLiteDestination(db_path, "users_tags")
        report = MigrationOrchestrator(dest, chunk_size=10).run(users)
        assert report.state == MigrationState.FAILED
        assert report.rolled_back
        assert report.persisted_tables == []
        assert report.failed_table == "users_tags"
        assert report.failed_rows == [0, 3]
        assert "users_tags" in report.error
        assert _tables_in(db_path) == []
        assert report.rows_written == 0
        assert report.rows_attempted == sum(p.written_rows for p in report.progress) > 0
        assert ": 0 rows in" in report.summary()
        statuses = {p.table_name: p.status for p in report.progress}
        assert statuses["users"] == TableStatus.COMPLETED
        assert statuses["users_tags"] == TableStatus.FAILED

    def test_integers_beyond_64_bits_are_stored_as_decimal(self, db_path: Path) -> None:
        source = DocumentSource(records=[{"id": 1, "counter": 2 ** 70}], root_name="stats")
        report = MigrationOrchestrator(SQLiteDestination(db_path)).run(source)
        assert report.succeeded
        assert any('"counter" DECIMAL(38,0)' in stmt for stmt in report.ddl)
        assert any("counter" in w.message for w in report.warnings)
        assert _count(db_path, "stats") == 1

    def test_unbindable_integer_fails_run_instead_of_raising(self, db_path: Path) -> None:
        counters = TableDefinition(
            name="counters",
            columns=[
                ColumnDef("id", StorageType.INTEGER, nullable=False, is_primary_key=True),
                ColumnDef("hits", StorageType.BIGINT),
            ],
            primary_key="id",
        )
        source = RelationalSource([("counters", [{"id": 1, "hits": 2 ** 70}])], definitions=[counters])
        report = MigrationOrchestrator(SQLiteDestination(db_path)).run(source)
        assert report.state == MigrationState.FAILED
        assert report.failed_table == "counters"
        assert report.rolled_back
        assert report.rows_written == 0
        assert _tables_in(db_path) == []

    def test_raise_for_status(self, users: DocumentSource, db_path: Path) -> None:
        report = MigrationOrchestrator(FailingSQLiteDestination(db_path, "users")).run(users)
        with pytest.raises(MigrationFailed) as exc_info:
            report.raise_for_status()
        assert exc_info.value.report is report
        assert report.summary().startswith("[FAILED]")

    def test_connection_failure(self, users: DocumentSource, tmp_path: Path) -> None:
        dest = SQLiteDestination(tmp_path / "missing" / "dir" / "x.db")
        report = MigrationOrchestrator(dest).run(users)
        assert report.state == MigrationState.FAILED
        assert "Could not connect" in report.error
        assert not report.rolled_back
        assert report.tables == []

    def test_cancellation_between_chunks(self, users: DocumentSource, db_path: Path) -> None:
        ctx = MigrationContext()
        orchestrator = MigrationOrchestrator(
            SQLiteDestination(db_path),
            chunk_size=1,
            context=ctx,
            progress_cb=lambda msg, current, total: ctx.cancel(),
        )
        report = orchestrator.run(users)
        assert report.state == MigrationState.FAILED
        assert report.cancelled
        assert report.rolled_back
        assert _tables_in(db_path) == []

    def test_unexpected_error_propagates_after_rollback(self, users: DocumentSource, db_path: Path) -> None:
        dest = FailingSQLiteDestination(db_path, "users_address", error=RuntimeError("driver bug"))
        orchestrator = MigrationOrchestrator(dest)
        with pytest.raises(RuntimeError):
            orchestrator.run(users)
        assert orchestrator.state == MigrationState.FAILED
        assert _tables_in(db_path) == []

    def test_cyclic_definitions_commit(self, db_path: Path) -> None:
        source = RelationalSource(
            [("A", [{"id": 1, "b_id": 1}]), ("B", [{"id": 1, "a_id": 1}])],
            definitions=_cyclic_definitions(),
        )
        report = MigrationOrchestrator(SQLiteDestination(db_path)).run(source)
        assert report.succeeded
        assert sorted(report.cycles[0]) == ["A", "B"]
        cycle_warnings = [w for w in report.warnings if w.metadata.get("kind") == DEPENDENCY_CYCLE]
        assert len(cycle_warnings) == 1
        assert _count(db_path, "A") == 1
        assert _count(db_path, "B") == 1

    def test_invalid_definition_fails_run(self, db_path: Path) -> None:
        bad = TableDefinition(name="bad", columns=[ColumnDef("x", StorageType.VARCHAR)])
        report = MigrationOrchestrator(SQLiteDestination(db_path)).run(
            RelationalSource([("bad", [{"x": "1"}])], definitions=[bad])
        )
        assert report.state == MigrationState.FAILED
        assert report.error.startswith("Invalid definition for table 'bad'")

    def test_relational_rows_without_definitions(self, db_path: Path) -> None:
        source = RelationalSource([
            ("customers", [{"id": 1, "name": "Ada"}]),
            ("orders", [{"id": 10, "customer_id": 1, "meta": {"gift": True}}]),
        ])
        report = MigrationOrchestrator(SQLiteDestination(db_path)).run(source)
        assert report.succeeded
        assert sorted(report.tables) == ["customers", "orders"]
        assert report.rows_written == 2

    def test_plan_does_not_touch_destination(self, users: DocumentSource, db_path: Path) -> None:
        plan = MigrationOrchestrator(SQLiteDestination(db_path)).plan(users)
        assert plan.ddl
        assert not db_path.exists()

    def test_listener_sees_monotonic_progress(self, users: DocumentSource, db_path: Path) -> None:
        ctx = MigrationContext()
        written: list[int] = []
        ctx.subscribe(
            lambda kind, payload: written.append(payload.written_rows)
            if kind == "progress" and payload.table_name == "users_tags" else None
        )
        MigrationOrchestrator(SQLiteDestination(db_path), chunk_size=1, context=ctx).run(users)
        assert written == sorted(written)
        assert written[-1] == 3

    def test_second_run_gets_fresh_context(self, users: DocumentSource, db_path: Path) -> None:
        orchestrator = MigrationOrchestrator(SQLiteDestination(db_path))
        first = orchestrator.run(users)
        second = orchestrator.run(users)
        assert first.run_id != second.run_id
        assert second.succeeded


# ---------------------------------------------------------------------------
# Suggestion hook
# ---------------------------------------------------------------------------

class TestEnhancer:
    def test_failure_is_a_warning(self, users: DocumentSource, db_path: Path) -> None:
        enhancer = RecordingEnhancer(error=ExternalEnhancementFailure("service down"))
        report = MigrationOrchestrator(SQLiteDestination(db_path), enhancer=enhancer).run(users)
        assert report.succeeded
        kinds = [w.metadata.get("kind") for w in report.warnings]
        assert kinds.count(EXTERNAL_ENHANCEMENT) == 1
        assert report.suggestions == []

    def test_suggestions_are_reported(self, users: DocumentSource, db_path: Path) -> None:
        enhancer = RecordingEnhancer(EnhancementResult(suggestions=["Index users.email"]))
        report = MigrationOrchestrator(SQLiteDestination(db_path), enhancer=enhancer).run(users)
        assert report.suggestions == ["Index users.email"]
        ddl, sample = enhancer.calls[0]
        assert ddl[0].startswith('CREATE TABLE "users"')
        assert sample[0]["_id"] == OBJECT_ID


# ---------------------------------------------------------------------------
# Document destination
# ---------------------------------------------------------------------------

class TestMongoRuns:
    def test_partial_success(self, users: DocumentSource) -> None:
        collections: dict[str, MagicMock] = {"users_tags": MagicMock()}
        collections["users_tags"].insert_many.side_effect = PyMongoError("write concern error")
        report = MigrationOrchestrator(_mongo(collections)).run(users)
        assert report.state == MigrationState.FAILED
        assert not report.rolled_back
        assert report.partial_success
        assert report.persisted_tables == ["users", "users_address"]
        assert report.failed_table == "users_tags"
        assert "users_orders" not in collections

    def test_parallel_waves(self, users: DocumentSource) -> None:
        collections: dict[str, MagicMock] = {}
        report = MigrationOrchestrator(_mongo(collections), max_parallel_tables=3).run(users)
        assert report.succeeded
        assert report.persisted_tables == report.order
        assert report.waves == [["users"], ["users_address", "users_tags", "users_orders"]]
        documents = collections["users_tags"].insert_many.call_args.args[0]
        assert {d["value"] for d in documents} == {"admin", "staff"}
        assert report.ddl == [
            "drop collection users_orders",
            "drop collection users_tags",
            "drop collection users_address",
            "drop collection users",
        ]
