"""
models/schema.py
----------------
Typed data models for inferred or externally supplied relational schemas.

Design Decision:
    Using ``@dataclass`` and ``Enum`` instead of plain dicts ensures:
    * A single source of truth for valid storage types.
    * Structural equality, so two inference passes over the same sample
      can be compared directly.
    * Explicit ``to_dict`` / ``from_dict`` methods for the JSON shape
      exchanged with the DDL renderer and external SQL parsers.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


class StorageType(str, Enum):
    """Backend-neutral storage type tags."""
    INTEGER = "integer"
    BIGINT = "bigint"
    DECIMAL = "decimal"
    CHAR = "char"
    VARCHAR = "varchar"
    TEXT = "text"
    DATE = "date"
    TIMESTAMP = "timestamp"
    BOOLEAN = "boolean"
    BINARY = "binary"
    JSON = "json"

    @property
    def is_textual(self) -> bool:
        return self in (StorageType.CHAR, StorageType.VARCHAR, StorageType.TEXT)

    @property
    def is_integral(self) -> bool:
        return self in (StorageType.INTEGER, StorageType.BIGINT)


# A single row handed to a batch writer: column name → scalar or None.
InsertRecord = dict[str, Any]


@dataclass
class ColumnDef:
    """
    One column of a table.

    Attributes:
        name:            Column name (already sanitised).
        type:            Storage type tag.
        nullable:        Whether NULL is allowed.
        is_primary_key:  Exactly one column per table sets this.
        default:         Optional literal default value.
        length:          Width for CHAR/VARCHAR.
        precision/scale: Digits for DECIMAL.
        auto_increment:  Synthetic key filled by the destination when omitted.
    """
    name: str
    type: StorageType
    nullable: bool = True
    is_primary_key: bool = False
    default: Any = None
    length: int | None = None
    precision: int | None = None
    scale: int | None = None
    auto_increment: bool = False

    def same_storage(self, other: "ColumnDef") -> bool:
        """True when *other* has an identical type, width and precision."""
        return (
            self.type == other.type
            and self.length == other.length
            and self.precision == other.precision
            and self.scale == other.scale
        )

    def as_reference(self, name: str) -> "ColumnDef":
        """Copy this column's storage shape under a new name for use as a foreign key."""
        return replace(
            self,
            name=name,
            nullable=False,
            is_primary_key=False,
            default=None,
            auto_increment=False,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "type": self.type.value,
            "nullable": self.nullable,
            "isPrimaryKey": self.is_primary_key,
        }
        for key in ("default", "length", "precision", "scale"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        if self.auto_increment:
            data["autoIncrement"] = True
        return data

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "ColumnDef":
        return ColumnDef(
            name=data["name"],
            type=StorageType(data["type"]),
            nullable=data.get("nullable", True),
            is_primary_key=data.get("isPrimaryKey", False),
            default=data.get("default"),
            length=data.get("length"),
            precision=data.get("precision"),
            scale=data.get("scale"),
            auto_increment=data.get("autoIncrement", False),
        )


@dataclass(frozen=True)
class ForeignKeyDef:
    """``column`` on the owning table references ``referenced_table.referenced_column``."""
    column: str
    referenced_table: str
    referenced_column: str

    def to_dict(self) -> dict[str, str]:
        return {
            "column": self.column,
            "referencedTable": self.referenced_table,
            "referencedColumn": self.referenced_column,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "ForeignKeyDef":
        return ForeignKeyDef(
            column=data["column"],
            referenced_table=data["referencedTable"],
            referenced_column=data["referencedColumn"],
        )


@dataclass
class TableDefinition:
    """
    A table with its columns, key and constraints.

    Invariants (checked by :meth:`validate`):
        * column names are unique;
        * exactly one column is the primary key and its name equals
          ``primary_key``;
        * every foreign-key column exists in ``columns``.
    """
    name: str
    columns: list[ColumnDef] = field(default_factory=list)
    primary_key: str = ""
    foreign_keys: list[ForeignKeyDef] = field(default_factory=list)
    unique_constraints: list[str] = field(default_factory=list)

    def get_column(self, name: str) -> ColumnDef | None:
        return next((c for c in self.columns if c.name == name), None)

    def has_column(self, name: str) -> bool:
        return self.get_column(name) is not None

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    @property
    def primary_key_column(self) -> ColumnDef:
        column = self.get_column(self.primary_key)
        if column is None:
            raise KeyError(f"Table '{self.name}' has no primary key column '{self.primary_key}'")
        return column

    def dependencies(self) -> list[str]:
        """Referenced tables other than this one, in foreign-key order, without duplicates."""
        seen: list[str] = []
        for fk in self.foreign_keys:
            if fk.referenced_table != self.name and fk.referenced_table not in seen:
                seen.append(fk.referenced_table)
        return seen

    def validate(self) -> list[str]:
        """Return a list of invariant violations (empty when the table is well formed)."""
        problems: list[str] = []
        names = self.column_names
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            problems.append(f"duplicate column(s): {', '.join(duplicates)}")
        pk_columns = [c.name for c in self.columns if c.is_primary_key]
        if len(pk_columns) != 1:
            problems.append(f"expected exactly one primary key column, found {len(pk_columns)}")
        elif pk_columns[0] != self.primary_key:
            problems.append(
                f"primary key '{self.primary_key}' does not match flagged column '{pk_columns[0]}'"
            )
        for fk in self.foreign_keys:
            if fk.column not in names:
                problems.append(f"foreign key column '{fk.column}' is not a column")
        for col in self.unique_constraints:
            if col not in names:
                problems.append(f"unique constraint column '{col}' is not a column")
        return problems

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "columns": [c.to_dict() for c in self.columns],
            "primaryKey": self.primary_key,
            "foreignKeys": [fk.to_dict() for fk in self.foreign_keys],
            "uniqueConstraints": list(self.unique_constraints),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "TableDefinition":
        columns = [ColumnDef.from_dict(c) for c in data.get("columns", [])]
        primary_key = data.get("primaryKey") or next(
            (c.name for c in columns if c.is_primary_key), ""
        )
        return TableDefinition(
            name=data["name"],
            columns=columns,
            primary_key=primary_key,
            foreign_keys=[ForeignKeyDef.from_dict(f) for f in data.get("foreignKeys", [])],
            unique_constraints=list(data.get("uniqueConstraints", [])),
        )


@dataclass(frozen=True)
class TableDependency:
    """Derived per run from foreign keys; never persisted."""
    table_name: str
    depends_on: tuple[str, ...] = ()

    @staticmethod
    def from_table(table: TableDefinition) -> "TableDependency":
        return TableDependency(table.name, tuple(table.dependencies()))
