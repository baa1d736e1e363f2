"""
core/migrator.py
----------------
Migration orchestrator: schema inference, ordering, destination
preparation and chunked writes, driven as one state machine per run.

    pending → connecting → preparing → normalizing → writing → committing → done
                                      (any of them) → failed

Design Decisions:
    * The orchestrator is a plain class with an injected destination. It
      reads the destination's capability flags and never branches on a
      backend name.
    * Transactional destinations get one unit of work spanning preparing,
      writing and committing, with foreign-key checks deferred so cyclic
      leftovers can be written in any order. When DDL cannot be rolled
      back, the schema is prepared first and the tables it created are
      dropped again if the run fails.
    * Document destinations commit each table on its own. A failure aborts
      the remaining tables and the report lists what was persisted.
    * Every run returns a :class:`MigrationReport`, also on failure, with
      the run log and progress snapshot attached. Only unexpected
      exceptions propagate, after the unit of work is rolled back.
    * Progress is reported via a callback (``progress_cb``) as well as the
      run context, so CLI callers and observers stay decoupled.
"""
from __future__ import annotations

import copy
import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from config import CONFIG
from core.batch_writer import BatchWriter
from core.context import MigrationContext
from core.database import DatabaseError, Destination
from core.ddl import Dialect, render_schema
from core.dependency_graph import build_dependency_graph, group_by_dependency_level, topological_sort
from core.enhancer import SchemaEnhancer, run_enhancer
from core.errors import (
    DEPENDENCY_CYCLE,
    EXTERNAL_ENHANCEMENT,
    INFERENCE_AMBIGUITY,
    ConnectionFailure,
    MigrationCancelled,
    MigrationError,
    SchemaError,
    WriteFailure,
)
from core.normalizer import (
    FlattenResult,
    RecordFlattener,
    SchemaNormalizer,
    project_rows,
)
from core.report import MigrationReport
from core.sources import DocumentSource, RelationalSource
from logger import get_logger
from models.schema import InsertRecord, TableDefinition
from shared.models import MigrationState, TableStatus

log = get_logger(__name__)

ProgressCallback = Callable[[str, int, int], None]  # message, current, total
Source = DocumentSource | RelationalSource

ENHANCER_SAMPLE_SIZE = 5

_NEXT_STATES: dict[MigrationState, tuple[MigrationState, ...]] = {
    MigrationState.PENDING: (MigrationState.CONNECTING,),
    MigrationState.CONNECTING: (MigrationState.PREPARING,),
    MigrationState.PREPARING: (MigrationState.NORMALIZING,),
    MigrationState.NORMALIZING: (MigrationState.WRITING,),
    MigrationState.WRITING: (MigrationState.COMMITTING,),
    MigrationState.COMMITTING: (MigrationState.DONE,),
    MigrationState.DONE: (),
    MigrationState.FAILED: (),
}


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------

@dataclass
class MigrationPlan:
    """
    Everything decided before any row is written.

    Attributes:
        tables:             Table definitions (parents before children).
        order:              Write order: acyclic portion, then cyclic leftovers.
        cycles:             Dependency cycles (diagnostic groups).
        independent:        Tables without dependencies.
        waves:              Dependency levels; tables of one wave are independent.
        ddl:                Creation script for ``dialect`` (empty without one).
        warnings:           Inference and structure warnings.
        unknown_references: Referenced tables that are not part of the plan.
        sample:             JSON-safe copy of a few source records.
        flatten:            Produces the per-table insert records.
    """
    tables: list[TableDefinition]
    order: list[str]
    cycles: list[list[str]]
    independent: list[str]
    waves: list[list[str]]
    ddl: list[str]
    warnings: list[str]
    unknown_references: list[str]
    sample: list[Any]
    dialect: Dialect | None = None
    flatten: Callable[[], FlattenResult] = field(default=FlattenResult, repr=False, compare=False)

    def table(self, name: str) -> TableDefinition | None:
        return next((t for t in self.tables if t.name == name), None)


def _json_safe_sample(records: Sequence[Any]) -> list[Any]:
    return json.loads(json.dumps(copy.deepcopy(list(records)), default=str))


def _document_schema(source: DocumentSource, sample_size: int | None):
    result = SchemaNormalizer(root_name=source.root_name, sample_size=sample_size).normalize(source.records)

    def flatten() -> FlattenResult:
        if result.layout is None:
            return FlattenResult()
        return RecordFlattener(result).flatten(source.records)

    sample = source.records[:ENHANCER_SAMPLE_SIZE]
    return result.tables, result.warnings, flatten, sample


def _relational_schema(source: RelationalSource, sample_size: int | None):
    warnings: list[str] = []
    sample = [row for _, rows in source.tables for row in rows][:ENHANCER_SAMPLE_SIZE]

    if source.definitions is not None:
        defined = list(source.definitions)
        for table in defined:
            problems = table.validate()
            if problems:
                raise SchemaError(f"Invalid definition for table '{table.name}': {'; '.join(problems)}")
        known = {t.name for t in defined}
        for name in source.table_rows:
            if name not in known:
                warnings.append(f"Rows for '{name}' have no table definition; skipped")

        def flatten_defined() -> FlattenResult:
            return FlattenResult(rows={
                t.name: project_rows(t, source.table_rows.get(t.name, [])) for t in defined
            })

        return defined, warnings, flatten_defined, sample

    normalizer = SchemaNormalizer(sample_size=sample_size)
    tables: list[TableDefinition] = []
    flatteners: list[tuple[RecordFlattener, Sequence[Any]]] = []
    for name, rows in source.tables:
        result = normalizer.normalize_flat(name, rows)
        warnings.extend(result.warnings)
        if result.layout is None:
            continue
        tables.extend(result.tables)
        flatteners.append((RecordFlattener(result), rows))

    def flatten_inferred() -> FlattenResult:
        merged = FlattenResult()
        for flattener, rows in flatteners:
            part = flattener.flatten(rows)
            merged.rows.update(part.rows)
            merged.warnings.extend(part.warnings)
        return merged

    return tables, warnings, flatten_inferred, sample


def plan_migration(
    source: Source,
    dialect: Dialect | str | None = None,
    sample_size: int | None = None,
) -> MigrationPlan:
    """
    Infer the schema and write order for *source* without touching a destination.

    Args:
        source:      Document or relational source.
        dialect:     Render DDL for this dialect; ``None`` skips DDL.
        sample_size: Records consulted for type evidence.

    Raises:
        SchemaError: If a supplied table definition is malformed.

    Example::

        plan = plan_migration(load_document_source("users.json"), "postgres")
        print("\\n".join(plan.ddl))
    """
    if isinstance(source, DocumentSource):
        tables, warnings, flatten, sample = _document_schema(source, sample_size)
    elif isinstance(source, RelationalSource):
        tables, warnings, flatten, sample = _relational_schema(source, sample_size)
    else:
        raise TypeError(f"Unsupported source: {type(source).__name__}")

    known = [t.name for t in tables]
    known_set = set(known)
    unknown = [n for n in build_dependency_graph(tables) if n not in known_set]

    sort = topological_sort(tables)
    order = [n for n in sort.write_order() if n in known_set]
    cycles = [[n for n in c if n in known_set] for c in sort.cycles]
    waves = [w for w in ([n for n in wave if n in known_set] for wave in group_by_dependency_level(tables)) if w]

    resolved = Dialect(dialect) if dialect is not None else None
    ddl = render_schema(tables, resolved, order) if resolved is not None else []
    return MigrationPlan(
        tables=tables,
        order=order,
        cycles=[c for c in cycles if c],
        independent=[n for n in sort.independent if n in known_set],
        waves=waves,
        ddl=ddl,
        warnings=list(warnings),
        unknown_references=unknown,
        sample=_json_safe_sample(sample),
        dialect=resolved,
        flatten=flatten,
    )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class MigrationOrchestrator:
    """
    Runs one migration into one destination.

    Args:
        destination:         Unconnected destination handle; the run opens
                             and closes it.
        chunk_size:          Rows per write chunk.
        drop_existing:       Drop tables/collections before creating them.
        max_parallel_tables: Worker threads per dependency wave (document
                             destinations only; 1 = sequential).
        sample_size:         Records consulted for type evidence.
        enhancer:            Optional suggestion hook.
        enhancer_timeout:    Seconds to wait for the hook.
        context:             Run context (log, progress, cancellation).
        progress_cb:         Optional callback ``(message, current, total)``.

    Example::

        orchestrator = MigrationOrchestrator(SQLiteDestination("out.db"))
        report = orchestrator.run(load_document_source("users.json"))
        print(report.summary())
    """

    def __init__(
        self,
        destination: Destination,
        chunk_size: int | None = None,
        drop_existing: bool | None = None,
        max_parallel_tables: int | None = None,
        sample_size: int | None = None,
        enhancer: SchemaEnhancer | None = None,
        enhancer_timeout: float | None = None,
        context: MigrationContext | None = None,
        progress_cb: ProgressCallback | None = None,
    ) -> None:
        self._destination = destination
        self._chunk_size = chunk_size or CONFIG.migration.chunk_size
        self._drop_existing = CONFIG.migration.drop_existing if drop_existing is None else drop_existing
        self._max_parallel = max(1, max_parallel_tables or CONFIG.migration.max_parallel_tables)
        self._sample_size = sample_size
        self._enhancer = enhancer
        self._enhancer_timeout = enhancer_timeout or CONFIG.migration.enhancer_timeout
        self._progress_cb = progress_cb or self._default_progress
        self.context = context or MigrationContext()
        self.state = MigrationState.PENDING
        self._context_used = False
        self._lock = threading.Lock()
        self._completed: list[str] = []

    @staticmethod
    def _default_progress(msg: str, current: int, total: int) -> None:
        log.info("%s (%d/%s)", msg, current, total if total else "?")

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def plan(self, source: Source) -> MigrationPlan:
        """Dry run: schema, order, waves and DDL for this destination."""
        return plan_migration(source, getattr(self._destination, "dialect", None), self._sample_size)

    def cancel(self) -> None:
        """Ask the active run to stop before its next chunk."""
        self.context.cancel()

    def run(self, source: Source) -> MigrationReport:
        """
        Migrate *source* into the destination.

        Returns:
            :class:`MigrationReport`; ``state`` is ``done`` or ``failed``.

        Raises:
            Exception: Only for unexpected errors, after rolling back.
        """
        if self._context_used:
            self.context = MigrationContext()
        self._context_used = True
        self.state = MigrationState.PENDING
        self._completed = []

        ctx = self.context
        dest = self._destination
        started = time.monotonic()
        report = MigrationReport(run_id=ctx.run_id, destination=dest.describe())
        unit_open = False
        created: list[str] = []

        try:
            self._enter(MigrationState.CONNECTING)
            try:
                dest.connect()
            except DatabaseError as exc:
                raise ConnectionFailure(str(exc)) from exc

            self._enter(MigrationState.PREPARING)
            plan = self.plan(source)
            self._record_plan(plan, report)
            self._enhance(plan, report)
            ctx.raise_if_cancelled()

            if dest.transactional_ddl:
                dest.begin_unit_of_work()
                unit_open = True
            try:
                report.ddl = dest.prepare_schema(plan.tables, plan.order, self._drop_existing)
            except DatabaseError:
                if self._drop_existing and self._cleans_on_failure:
                    created = list(plan.order)
                raise
            if self._cleans_on_failure:
                created = list(plan.order)
            if dest.supports_transactions and not unit_open:
                dest.begin_unit_of_work()
                unit_open = True

            self._enter(MigrationState.NORMALIZING)
            flattened = plan.flatten()
            for warning in flattened.warnings:
                ctx.warn(warning, phase=self.state.value, kind=INFERENCE_AMBIGUITY)
            rows = {name: flattened.rows.get(name, []) for name in plan.order}
            for name in plan.order:
                ctx.track_table(name, len(rows[name]))
            ctx.info(
                f"Prepared {sum(len(r) for r in rows.values())} row(s) for {len(plan.order)} table(s)",
                phase=self.state.value,
            )

            self._enter(MigrationState.WRITING)
            if dest.supports_concurrent_writes and self._max_parallel > 1:
                for wave in plan.waves:
                    self._write_wave(wave, rows, plan)
            else:
                for name in plan.order:
                    self._write_table(name, rows[name], plan.table(name))

            self._enter(MigrationState.COMMITTING)
            dest.commit()
            unit_open = False
            report.persisted_tables = [n for n in plan.order if n in self._completed]
            self._enter(MigrationState.DONE)

        except (MigrationError, DatabaseError) as exc:
            self._abort(report, exc, unit_open, created)
        except Exception as exc:
            log.exception("Unexpected error during migration run %s", ctx.run_id)
            self._abort(report, exc, unit_open, created)
            raise
        finally:
            try:
                dest.close()
            finally:
                self._finish_report(report, started)
        return report

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @property
    def _cleans_on_failure(self) -> bool:
        dest = self._destination
        return dest.supports_transactions and not dest.transactional_ddl

    def _enter(self, state: MigrationState) -> None:
        if state not in _NEXT_STATES[self.state]:
            raise MigrationError(f"Illegal state transition {self.state.value} -> {state.value}")
        previous = self.state
        if previous != MigrationState.PENDING:
            self.context.end_phase(previous.value)
        self.state = state
        if state != MigrationState.DONE:
            self.context.start_phase(state.value)
        else:
            self.context.info("Migration completed", phase=state.value)

    def _record_plan(self, plan: MigrationPlan, report: MigrationReport) -> None:
        ctx = self.context
        phase = self.state.value
        for warning in plan.warnings:
            ctx.warn(warning, phase=phase, kind=INFERENCE_AMBIGUITY)
        for name in plan.unknown_references:
            ctx.warn(f"Table '{name}' is referenced but not part of this migration", phase=phase)
        for cycle in plan.cycles:
            ctx.warn(
                "Circular dependency; tables written best-effort: " + " -> ".join(cycle),
                phase=phase, kind=DEPENDENCY_CYCLE, cycle=list(cycle),
            )
        ctx.info(
            f"Inferred {len(plan.tables)} table(s); write order: {', '.join(plan.order) or '(none)'}",
            phase=phase,
        )
        report.tables = [t.name for t in plan.tables]
        report.order = list(plan.order)
        report.cycles = [list(c) for c in plan.cycles]
        report.waves = [list(w) for w in plan.waves]

    def _enhance(self, plan: MigrationPlan, report: MigrationReport) -> None:
        if self._enhancer is None or not plan.tables:
            return
        ddl = plan.ddl or render_schema(plan.tables, Dialect.POSTGRES, plan.order)
        result, warning = run_enhancer(self._enhancer, ddl, plan.sample, self._enhancer_timeout)
        if warning:
            self.context.warn(warning, phase=self.state.value, kind=EXTERNAL_ENHANCEMENT)
            return
        report.suggestions = result.suggestions
        report.type_corrections = result.type_corrections
        self.context.info(
            f"Suggestion hook returned {len(result.suggestions)} suggestion(s) and "
            f"{len(result.type_corrections)} type correction(s)",
            phase=self.state.value,
        )

    def _write_table(
        self, name: str, records: Sequence[InsertRecord], table: TableDefinition | None
    ) -> None:
        ctx = self.context
        ctx.raise_if_cancelled()
        writer = BatchWriter(self._destination, self._chunk_size, cancel_check=ctx.raise_if_cancelled)

        def on_chunk(written: int, total: int) -> None:
            ctx.update_progress(name, written)
            self._progress_cb(f"Writing {name}", written, total)

        try:
            result = writer.write(name, records, progress_cb=on_chunk)
            if table is not None:
                try:
                    self._destination.finalize_table(table)
                except DatabaseError as exc:
                    raise WriteFailure(name, 0, len(records), exc) from exc
        except MigrationError as exc:
            ctx.mark_table(name, TableStatus.FAILED, str(exc))
            raise

        ctx.mark_table(name, TableStatus.COMPLETED)
        ctx.info(
            f"Wrote {result.written} row(s) in {result.chunks} chunk(s) ({result.throughput} rows/s)",
            phase=MigrationState.WRITING.value, table=name,
            rows=result.written, duration=result.duration,
        )
        with self._lock:
            self._completed.append(name)

    def _write_wave(
        self, wave: Sequence[str], rows: dict[str, list[InsertRecord]], plan: MigrationPlan
    ) -> None:
        if len(wave) == 1:
            self._write_table(wave[0], rows[wave[0]], plan.table(wave[0]))
            return
        failure: BaseException | None = None
        workers = min(self._max_parallel, len(wave))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="wave") as pool:
            futures = [pool.submit(self._write_table, n, rows[n], plan.table(n)) for n in wave]
            for future in as_completed(futures):
                if future.cancelled():
                    continue
                exc = future.exception()
                if exc is not None and failure is None:
                    failure = exc
                    for other in futures:
                        other.cancel()
        if failure is not None:
            raise failure

    def _abort(
        self, report: MigrationReport, exc: BaseException, unit_open: bool, created: list[str]
    ) -> None:
        ctx = self.context
        dest = self._destination
        phase = self.state.value

        report.error = str(exc)
        report.cancelled = isinstance(exc, MigrationCancelled)
        if isinstance(exc, WriteFailure):
            report.failed_table = exc.table
            report.failed_rows = [exc.start_row, exc.end_row]
        else:
            report.failed_table = next(
                (p.table_name for p in ctx.snapshot() if p.status == TableStatus.FAILED), None
            )
        ctx.error(
            str(exc), phase=phase, table=report.failed_table,
            error_type=type(exc).__name__, rows=report.failed_rows,
        )

        if dest.supports_transactions:
            if unit_open:
                dest.rollback()
                report.rolled_back = True
                ctx.warn("Transaction rolled back; no rows persisted", phase=phase)
            if created:
                try:
                    dest.drop_tables(created)
                    ctx.warn(f"Dropped {len(created)} table(s) created by this run", phase=phase)
                except DatabaseError as cleanup_exc:
                    ctx.error(f"Cleanup of created tables failed: {cleanup_exc}", phase=phase)
            report.persisted_tables = []
        else:
            report.persisted_tables = [n for n in report.order if n in self._completed]
            report.partial_success = bool(report.persisted_tables)
            if report.partial_success:
                ctx.warn(
                    "Partial success; persisted table(s): " + ", ".join(report.persisted_tables),
                    phase=phase,
                )

        if self.state != MigrationState.PENDING:
            ctx.end_phase(phase)
        self.state = MigrationState.FAILED

    def _finish_report(self, report: MigrationReport, started: float) -> None:
        ctx = self.context
        report.state = self.state
        report.progress = ctx.snapshot()
        report.rows_attempted = sum(p.written_rows for p in report.progress)
        report.rows_written = 0 if report.rolled_back else report.rows_attempted
        report.logs = ctx.logs
        report.phase_durations = ctx.phase_durations
        report.elapsed_seconds = round(time.monotonic() - started, 3)
        log.info("Run %s finished: %s", ctx.run_id, report.summary().splitlines()[0])
