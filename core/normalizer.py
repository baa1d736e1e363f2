"""
core/normalizer.py
------------------
Schema normalization: semi-structured records → linked relational tables.

Two steps, kept separate so a schema can be planned without touching data:

    * :class:`SchemaNormalizer` walks the first record (the structural
      template) and produces one root table plus one child table per nested
      object or array field. Up to ``sample_size`` records supply value
      evidence for types and nullability.
    * :class:`RecordFlattener` walks every record along the resulting
      :class:`TableLayout` tree and emits per-table ``InsertRecord`` lists,
      assigning synthetic keys and wiring each child row to its parent key.

Design Decisions:
    * Nested objects and arrays never become columns of their owner.
    * A child's foreign-key column copies the parent's actual primary-key
      column (name-derived, type-identical), never an assumed integer.
    * Ambiguity and structural surprises append warnings; nothing here
      raises for data-shape reasons.
"""
from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping, Sequence

from config import CONFIG
from core.type_inference import (
    as_decimal,
    detect_identifier,
    infer_column,
    is_scalar,
    is_self_reference,
    parse_iso,
    synthetic_key,
)
from logger import get_logger
from models.schema import (
    ColumnDef,
    ForeignKeyDef,
    InsertRecord,
    StorageType,
    TableDefinition,
)
from shared.utils import sanitize_identifier, to_snake_case

log = get_logger(__name__)

COLLECTION_FIELD = "_collection"
VALUE_COLUMN = "value"

_TRUE_STRINGS = frozenset({"true", "t", "yes", "y", "1"})
_FALSE_STRINGS = frozenset({"false", "f", "no", "n", "0"})


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class TableLayout:
    """
    How one level of a record tree maps onto a table.

    Attributes:
        table:         Table name.
        primary_key:   Primary-key column name.
        key_field:     Source field supplying the key; ``None`` for synthetic keys.
        parent_column: Column holding the parent's key (child tables only).
        columns:       Source field → column name for scalar fields.
        children:      Nested object / array fields, in template order.
        value_column:  Set for scalar-array tables; holds each element.
    """
    table: str
    primary_key: str
    key_field: str | None = None
    parent_column: str | None = None
    columns: dict[str, str] = field(default_factory=dict)
    children: list["ChildLayout"] = field(default_factory=list)
    value_column: str | None = None

    def walk(self) -> Iterable["TableLayout"]:
        yield self
        for child in self.children:
            yield from child.layout.walk()


@dataclass
class ChildLayout:
    """A nested field of a parent object and the table it normalizes into."""
    field: str
    is_array: bool
    layout: TableLayout


@dataclass
class NormalizationResult:
    """Tables (parents before children), warnings and the layout used to flatten."""
    tables: list[TableDefinition] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    layout: TableLayout | None = None

    def table(self, name: str) -> TableDefinition | None:
        return next((t for t in self.tables if t.name == name), None)

    @property
    def root_table(self) -> str | None:
        return self.layout.table if self.layout else None


@dataclass
class FlattenResult:
    """Per-table insert records produced from a batch of source records."""
    rows: dict[str, list[InsertRecord]] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    @property
    def total_rows(self) -> int:
        return sum(len(r) for r in self.rows.values())


# ---------------------------------------------------------------------------
# Schema inference
# ---------------------------------------------------------------------------

class SchemaNormalizer:
    """
    Infers a normalized table forest from semi-structured records.

    Args:
        root_name:   Root table name when the template has no ``_collection``.
        sample_size: Records consulted for value evidence (first record is
                     always the structural template).

    Example::

        result = SchemaNormalizer(root_name="users").normalize(records)
        for table in result.tables:
            print(table.name, table.primary_key)
    """

    def __init__(self, root_name: str | None = None, sample_size: int | None = None) -> None:
        self._root_name = root_name or CONFIG.migration.root_table
        self._sample_size = max(1, sample_size or CONFIG.migration.sample_size)
        self._tables: list[TableDefinition] = []
        self._warnings: list[str] = []

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def normalize(self, records: Sequence[Any]) -> NormalizationResult:
        """
        Build the table forest for *records*.

        Returns:
            :class:`NormalizationResult`; empty input yields zero tables and
            a warning.
        """
        self._tables = []
        self._warnings = []

        objects = [r for r in records if isinstance(r, Mapping)]
        if len(objects) < len(records):
            self._warn(f"Skipped {len(records) - len(objects)} record(s) that are not objects")
        if not objects:
            self._warn("No records to normalize; no tables generated")
            return NormalizationResult(warnings=list(self._warnings))

        template = objects[0]
        sample = objects[: self._sample_size]
        layout = self._build_table(self._root_table_name(template), template, sample, parent=None)

        log.info(
            "Normalized %d record(s) into %d table(s) with %d warning(s)",
            len(objects), len(self._tables), len(self._warnings),
        )
        return NormalizationResult(
            tables=list(self._tables), warnings=list(self._warnings), layout=layout
        )

    def normalize_flat(self, name: str, rows: Sequence[Any]) -> NormalizationResult:
        """
        Infer a single table for already-relational rows.

        Nested values stay on the table as JSON columns instead of spawning
        child tables.
        """
        self._tables = []
        self._warnings = []
        objects = [r for r in rows if isinstance(r, Mapping)]
        if not objects:
            self._warn(f"Table '{name}' has no rows; no definition inferred")
            return NormalizationResult(warnings=list(self._warnings))
        layout = self._build_table(name, objects[0], objects[: self._sample_size], parent=None, flat=True)
        return NormalizationResult(
            tables=list(self._tables), warnings=list(self._warnings), layout=layout
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _warn(self, message: str) -> None:
        log.warning(message)
        self._warnings.append(message)

    def _root_table_name(self, template: Mapping[str, Any]) -> str:
        collection = template.get(COLLECTION_FIELD)
        if isinstance(collection, str) and collection.strip():
            return collection
        return self._root_name

    def _claim_table_name(self, base: str) -> str:
        name = sanitize_identifier(base, fallback="table")
        taken = {t.name for t in self._tables}
        if name not in taken:
            return name
        suffix = 2
        while f"{name}_{suffix}" in taken:
            suffix += 1
        self._warn(f"Table name '{name}' already used; renamed to '{name}_{suffix}'")
        return f"{name}_{suffix}"

    def _claim_column_name(self, table: TableDefinition, base: str) -> str:
        name = sanitize_identifier(base)
        if not table.has_column(name):
            return name
        suffix = 2
        while table.has_column(f"{name}_{suffix}"):
            suffix += 1
        self._warn(
            f"Column '{name}' already exists on '{table.name}'; field '{base}' stored as '{name}_{suffix}'"
        )
        return f"{name}_{suffix}"

    def _parent_column_name(self, table: TableDefinition, parent: TableDefinition,
                            template: Mapping[str, Any]) -> str:
        parent_key = parent.primary_key.lstrip("_") or "id"
        base = sanitize_identifier(f"{to_snake_case(parent.name)}_{parent_key}")
        field_names = {sanitize_identifier(k) for k in template}
        if base in field_names or table.has_column(base):
            renamed = self._claim_column_name(table, f"{base}_ref")
            self._warn(
                f"Field '{base}' on '{table.name}' collides with the parent key column; "
                f"parent key stored as '{renamed}'"
            )
            return renamed
        return base

    def _build_table(
        self,
        base_name: str,
        template: Mapping[str, Any],
        samples: Sequence[Mapping[str, Any]],
        parent: TableDefinition | None,
        flat: bool = False,
    ) -> TableLayout:
        table = TableDefinition(name=self._claim_table_name(base_name))
        self._tables.append(table)

        key_field = detect_identifier(template)
        if key_field is not None:
            inferred = infer_column(key_field, [s.get(key_field) for s in samples], primary_key=True)
            self._absorb(table, inferred.warnings)
            pk_col = inferred.to_column(sanitize_identifier(key_field))
        else:
            pk_col = synthetic_key("id" if "id" not in template else "row_id")
        table.columns.append(pk_col)
        table.primary_key = pk_col.name

        layout = TableLayout(table=table.name, primary_key=pk_col.name, key_field=key_field)
        if key_field is not None:
            layout.columns[key_field] = pk_col.name

        if parent is not None:
            fk_name = self._parent_column_name(table, parent, template)
            table.columns.append(parent.primary_key_column.as_reference(fk_name))
            table.foreign_keys.append(ForeignKeyDef(fk_name, parent.name, parent.primary_key))
            layout.parent_column = fk_name

        for field_name, value in template.items():
            if field_name == key_field or (parent is None and field_name == COLLECTION_FIELD):
                continue
            field_samples = [s.get(field_name) for s in samples]
            shape = self._shape_value(value, field_samples)

            if not flat and isinstance(shape, Mapping):
                child_samples = [v for v in field_samples if isinstance(v, Mapping)]
                child = self._build_table(
                    f"{table.name}_{sanitize_identifier(field_name)}", shape, child_samples, parent=table
                )
                layout.children.append(ChildLayout(field_name, False, child))
            elif not flat and isinstance(shape, (list, tuple)):
                child = self._build_array_table(table, field_name, field_samples)
                if child is not None:
                    layout.children.append(ChildLayout(field_name, True, child))
            else:
                self._add_scalar_column(table, layout, field_name, field_samples, pk_col, key_field)

        return layout

    @staticmethod
    def _shape_value(value: Any, samples: Sequence[Any]) -> Any:
        """Template value, or the first informative sample when the template is empty."""
        if value is not None and value != [] and value != {}:
            return value
        for sample in samples:
            if sample is not None and sample != [] and sample != {}:
                return sample
        return value

    def _build_array_table(
        self, table: TableDefinition, field_name: str, field_samples: Sequence[Any]
    ) -> TableLayout | None:
        elements = [
            e for v in field_samples if isinstance(v, (list, tuple)) for e in v if e is not None
        ]
        if not elements:
            self._warn(
                f"Field '{field_name}' on '{table.name}' is an empty array in every sampled record; skipped"
            )
            return None

        child_name = f"{table.name}_{sanitize_identifier(field_name)}"
        first = elements[0]
        if isinstance(first, Mapping):
            objects = [e for e in elements if isinstance(e, Mapping)]
            if len(objects) < len(elements):
                self._warn(
                    f"Array '{field_name}' on '{table.name}' mixes objects and scalars; scalars skipped"
                )
            return self._build_table(child_name, first, objects, parent=table)
        return self._build_value_table(child_name, field_name, elements, parent=table)

    def _build_value_table(
        self, base_name: str, field_name: str, elements: Sequence[Any], parent: TableDefinition
    ) -> TableLayout:
        table = TableDefinition(name=self._claim_table_name(base_name))
        self._tables.append(table)

        pk_col = synthetic_key("id")
        table.columns.append(pk_col)
        table.primary_key = pk_col.name

        fk_name = self._parent_column_name(table, parent, {})
        table.columns.append(parent.primary_key_column.as_reference(fk_name))
        table.foreign_keys.append(ForeignKeyDef(fk_name, parent.name, parent.primary_key))

        if any(isinstance(e, (list, tuple)) for e in elements):
            self._warn(
                f"Array '{field_name}' on '{parent.name}' contains nested arrays; elements stored as JSON"
            )
            value_col = ColumnDef(name=VALUE_COLUMN, type=StorageType.JSON, nullable=False)
        else:
            inferred = infer_column(field_name, elements)
            self._absorb(table, inferred.warnings)
            value_col = inferred.to_column(VALUE_COLUMN)
            value_col.nullable = False
        table.columns.append(value_col)

        return TableLayout(
            table=table.name,
            primary_key=pk_col.name,
            parent_column=fk_name,
            value_column=VALUE_COLUMN,
        )

    def _add_scalar_column(
        self,
        table: TableDefinition,
        layout: TableLayout,
        field_name: str,
        field_samples: Sequence[Any],
        pk_col: ColumnDef,
        key_field: str | None,
    ) -> None:
        owner_key = pk_col if key_field is not None else None
        if key_field is None and is_self_reference(field_name):
            self._warn(
                f"'{table.name}.{field_name}' looks like a self reference but the table has a "
                f"synthetic key; stored as a plain column"
            )
        inferred = infer_column(field_name, field_samples, owner_key=owner_key)
        self._absorb(table, inferred.warnings)

        column_name = self._claim_column_name(table, field_name)
        table.columns.append(inferred.to_column(column_name))
        layout.columns[field_name] = column_name

        if inferred.self_reference:
            table.foreign_keys.append(ForeignKeyDef(column_name, table.name, pk_col.name))
        if inferred.unique:
            table.unique_constraints.append(column_name)

    def _absorb(self, table: TableDefinition, warnings: Iterable[str]) -> None:
        for warning in warnings:
            self._warn(f"{table.name}: {warning}")


# ---------------------------------------------------------------------------
# Flattening
# ---------------------------------------------------------------------------

def coerce_value(column: ColumnDef, value: Any) -> Any:
    """
    Bring *value* into a shape every backend accepts for *column*.

    Objects and arrays are serialized as JSON text; ISO strings bound for
    DATE/TIMESTAMP columns are parsed; numbers bound for DECIMAL become
    exact decimals. Anything that does not convert is returned unchanged
    and left for the destination to judge.
    """
    if value is None:
        return None
    kind = column.type

    if kind == StorageType.JSON or not is_scalar(value):
        return json.dumps(value, default=str, ensure_ascii=False)

    if kind in (StorageType.DATE, StorageType.TIMESTAMP):
        if isinstance(value, str):
            parsed = parse_iso(value)
            if parsed is None:
                return value
            value = parsed
        if kind == StorageType.DATE and isinstance(value, datetime):
            return value.date()
        return value

    if kind == StorageType.DECIMAL:
        number = as_decimal(value)
        return value if number is None else number

    if kind.is_textual and not isinstance(value, str):
        return str(value)

    if kind.is_integral and isinstance(value, str):
        text = value.strip()
        if text.lstrip("-").isdigit():
            return int(text)
        return value

    if kind == StorageType.BOOLEAN and isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    return value


class RecordFlattener:
    """
    Splits records into per-table insert rows following a :class:`TableLayout`.

    Synthetic keys are numbered ``1..n`` per table in visiting order, so a
    child row can carry its parent's key before anything is written.
    """

    def __init__(self, result: NormalizationResult) -> None:
        if result.layout is None:
            raise ValueError("Cannot flatten records without a table layout")
        self._layout = result.layout
        self._tables = {t.name: t for t in result.tables}
        self._rows: dict[str, list[InsertRecord]] = {}
        self._counters: dict[str, int] = {}
        self._seen_keys: dict[str, set] = {}
        self._warnings: list[str] = []
        self._warned: set[tuple[str, str]] = set()

    def flatten(self, records: Iterable[Any]) -> FlattenResult:
        self._rows = {t: [] for t in self._tables}
        self._counters = {t: 0 for t in self._tables}
        self._seen_keys = {t: set() for t in self._tables}
        self._warnings = []
        self._warned = set()

        for record in records:
            if not isinstance(record, Mapping):
                self._warn_once(self._layout.table, "non-object", "Skipped a record that is not an object")
                continue
            self._emit(self._layout, record, parent_key=None, root=True)

        result = FlattenResult(rows=self._rows, warnings=list(self._warnings))
        log.info(
            "Flattened records into %d row(s) across %d table(s)",
            result.total_rows, len(self._rows),
        )
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _warn_once(self, table: str, key: str, message: str) -> None:
        if (table, key) in self._warned:
            return
        self._warned.add((table, key))
        log.warning(message)
        self._warnings.append(message)

    def _next_key(self, table: str) -> int:
        self._counters[table] += 1
        return self._counters[table]

    def _fallback_key(self, table: TableDefinition) -> Any:
        pk = table.primary_key_column
        if pk.type.is_integral:
            numeric = [k for k in self._seen_keys[table.name] if isinstance(k, int)]
            return max(numeric, default=0) + 1
        return uuid.uuid4().hex

    def _emit(self, layout: TableLayout, obj: Mapping[str, Any], parent_key: Any, root: bool = False) -> None:
        table = self._tables[layout.table]
        pk = table.primary_key_column

        if layout.key_field is None:
            key = self._next_key(table.name)
        else:
            raw = obj.get(layout.key_field)
            if raw is None or not is_scalar(raw):
                self._warn_once(
                    table.name, "missing-key",
                    f"Records without '{layout.key_field}' in '{table.name}' received generated keys",
                )
                raw = self._fallback_key(table)
            key = coerce_value(pk, raw)
            if key in self._seen_keys[table.name]:
                self._warn_once(
                    table.name, f"duplicate:{key}",
                    f"Duplicate primary key {key!r} in '{table.name}'; repeated row skipped",
                )
                return
        self._seen_keys[table.name].add(key)

        row: InsertRecord = {layout.primary_key: key}
        if layout.parent_column is not None:
            row[layout.parent_column] = parent_key
        for field_name, column_name in layout.columns.items():
            if field_name == layout.key_field:
                continue
            row[column_name] = coerce_value(table.get_column(column_name), obj.get(field_name))
        self._rows[table.name].append(row)

        known = set(layout.columns) | {c.field for c in layout.children}
        if root:
            known.add(COLLECTION_FIELD)
        for extra in obj:
            if extra not in known and extra != layout.key_field:
                self._warn_once(
                    table.name, f"extra:{extra}",
                    f"Field '{extra}' is not part of the '{table.name}' template; values dropped",
                )

        for child in layout.children:
            self._emit_child(child, obj.get(child.field), key, table.name)

    def _emit_child(self, child: ChildLayout, value: Any, parent_key: Any, parent_table: str) -> None:
        if value is None:
            return
        layout = child.layout
        if not child.is_array:
            if isinstance(value, Mapping):
                self._emit(layout, value, parent_key)
            else:
                self._warn_once(
                    layout.table, "not-object",
                    f"Field '{child.field}' on '{parent_table}' is not always an object; non-object values dropped",
                )
            return

        elements = value if isinstance(value, (list, tuple)) else [value]
        for element in elements:
            if element is None:
                continue
            if layout.value_column is not None:
                table = self._tables[layout.table]
                self._rows[layout.table].append({
                    layout.primary_key: self._next_key(layout.table),
                    layout.parent_column: parent_key,
                    layout.value_column: coerce_value(table.get_column(layout.value_column), element),
                })
            elif isinstance(element, Mapping):
                self._emit(layout, element, parent_key)
            else:
                self._warn_once(
                    layout.table, "scalar-element",
                    f"Array '{child.field}' on '{parent_table}' holds non-object elements; they were dropped",
                )


def project_rows(table: TableDefinition, rows: Iterable[Mapping[str, Any]]) -> list[InsertRecord]:
    """
    Map already-relational rows onto *table*'s columns, coercing each value.

    Columns missing from a row become ``None``; keys that are not columns
    are ignored.
    """
    projected: list[InsertRecord] = []
    for row in rows:
        projected.append({c.name: coerce_value(c, row.get(c.name)) for c in table.columns})
    return projected
