"""
core/ddl.py
-----------
Renders :class:`TableDefinition` objects as dialect-specific DDL.

Supported dialects: PostgreSQL, MySQL and SQLite.

Design Decisions:
    * The renderer is a set of pure functions (no side effects) to simplify
      testing; destinations decide when to execute the statements.
    * All identifiers are quoted (backticks for MySQL, double quotes
      elsewhere) to avoid reserved-word collisions.
    * Where the dialect allows it, foreign keys are emitted as separate
      ``ALTER TABLE`` statements after every table exists, so mutually
      referencing tables can be created. SQLite cannot add constraints
      later but accepts references to tables that do not exist yet, so its
      foreign keys stay inline.
    * PostgreSQL foreign keys are ``DEFERRABLE`` so a transaction can defer
      their checks until commit.
"""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable

from models.schema import ColumnDef, StorageType, TableDefinition
from shared.utils import short_hash

_MAX_CONSTRAINT_NAME = 60
_MYSQL_TABLE_OPTIONS = "ENGINE=InnoDB DEFAULT CHARSET=utf8mb4 COLLATE=utf8mb4_unicode_ci"
_SQL_KEYWORD_DEFAULTS = frozenset({"CURRENT_TIMESTAMP", "CURRENT_DATE", "CURRENT_TIME"})


class Dialect(str, Enum):
    POSTGRES = "postgres"
    MYSQL = "mysql"
    SQLITE = "sqlite"


# storage type → dialect type keyword (parameterised types handled in render_column_type)
_TYPE_NAMES: dict[StorageType, dict[Dialect, str]] = {
    StorageType.INTEGER: {Dialect.POSTGRES: "INTEGER", Dialect.MYSQL: "INT", Dialect.SQLITE: "INTEGER"},
    StorageType.BIGINT: {Dialect.POSTGRES: "BIGINT", Dialect.MYSQL: "BIGINT", Dialect.SQLITE: "BIGINT"},
    StorageType.TEXT: {Dialect.POSTGRES: "TEXT", Dialect.MYSQL: "LONGTEXT", Dialect.SQLITE: "TEXT"},
    StorageType.DATE: {Dialect.POSTGRES: "DATE", Dialect.MYSQL: "DATE", Dialect.SQLITE: "DATE"},
    StorageType.TIMESTAMP: {Dialect.POSTGRES: "TIMESTAMP", Dialect.MYSQL: "DATETIME", Dialect.SQLITE: "TIMESTAMP"},
    StorageType.BOOLEAN: {Dialect.POSTGRES: "BOOLEAN", Dialect.MYSQL: "BOOLEAN", Dialect.SQLITE: "BOOLEAN"},
    StorageType.BINARY: {Dialect.POSTGRES: "BYTEA", Dialect.MYSQL: "LONGBLOB", Dialect.SQLITE: "BLOB"},
    StorageType.JSON: {Dialect.POSTGRES: "JSONB", Dialect.MYSQL: "JSON", Dialect.SQLITE: "TEXT"},
}


def quote_identifier(name: str, dialect: Dialect) -> str:
    if dialect == Dialect.MYSQL:
        return "`" + name.replace("`", "``") + "`"
    return '"' + name.replace('"', '""') + '"'


def inline_foreign_keys(dialect: Dialect) -> bool:
    """True when foreign keys must be declared inside ``CREATE TABLE``."""
    return dialect == Dialect.SQLITE


def constraint_name(prefix: str, table: str, column: str) -> str:
    """Deterministic constraint name that fits every supported dialect's limit."""
    raw = f"{prefix}_{table}_{column}"
    if len(raw) <= _MAX_CONSTRAINT_NAME:
        return raw
    return f"{raw[:_MAX_CONSTRAINT_NAME - 9]}_{short_hash(raw)}"


def render_literal(value: Any, dialect: Dialect) -> str:
    """Render a default value as a SQL literal."""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        if dialect == Dialect.SQLITE:
            return "1" if value else "0"
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, (datetime, date)):
        value = value.isoformat()
    text = str(value)
    if text.upper() in _SQL_KEYWORD_DEFAULTS:
        return text.upper()
    return "'" + text.replace("'", "''") + "'"


def render_column_type(column: ColumnDef, dialect: Dialect) -> str:
    """
    Render the dialect type for *column*.

    Examples::

        render_column_type(ColumnDef("price", StorageType.DECIMAL, precision=12, scale=2), Dialect.MYSQL)
        # "DECIMAL(12,2)"
    """
    kind = column.type
    if column.auto_increment and column.is_primary_key:
        wide = kind == StorageType.BIGINT
        if dialect == Dialect.POSTGRES:
            return "BIGSERIAL" if wide else "SERIAL"
        if dialect == Dialect.MYSQL:
            return "BIGINT AUTO_INCREMENT" if wide else "INT AUTO_INCREMENT"
        return "INTEGER"
    if kind == StorageType.DECIMAL:
        return f"DECIMAL({column.precision or 12},{column.scale if column.scale is not None else 2})"
    if kind == StorageType.CHAR:
        return f"CHAR({column.length or 1})"
    if kind == StorageType.VARCHAR:
        return f"VARCHAR({column.length or 255})"
    return _TYPE_NAMES[kind][dialect]


def render_column(column: ColumnDef, dialect: Dialect) -> str:
    name = quote_identifier(column.name, dialect)
    if dialect == Dialect.SQLITE and column.auto_increment and column.is_primary_key:
        return f"{name} INTEGER PRIMARY KEY AUTOINCREMENT"
    parts = [name, render_column_type(column, dialect)]
    if not column.nullable or column.is_primary_key:
        parts.append("NOT NULL")
    if column.default is not None:
        parts.append(f"DEFAULT {render_literal(column.default, dialect)}")
    return " ".join(parts)


def _foreign_key_clause(table: TableDefinition, index: int, dialect: Dialect) -> str:
    fk = table.foreign_keys[index]
    clause = (
        f"CONSTRAINT {quote_identifier(constraint_name('fk', table.name, fk.column), dialect)} "
        f"FOREIGN KEY ({quote_identifier(fk.column, dialect)}) "
        f"REFERENCES {quote_identifier(fk.referenced_table, dialect)} "
        f"({quote_identifier(fk.referenced_column, dialect)})"
    )
    if dialect in (Dialect.POSTGRES, Dialect.SQLITE):
        clause += " DEFERRABLE INITIALLY IMMEDIATE"
    return clause


def render_create_table(
    table: TableDefinition,
    dialect: Dialect,
    include_foreign_keys: bool | None = None,
) -> str:
    """
    Generate a ``CREATE TABLE`` statement for *table*.

    Args:
        table:                Table to render.
        dialect:              Target dialect.
        include_foreign_keys: Declare foreign keys inline; defaults to
                              :func:`inline_foreign_keys` for the dialect.

    Returns:
        A complete ``CREATE TABLE …;`` statement.
    """
    if include_foreign_keys is None:
        include_foreign_keys = inline_foreign_keys(dialect)

    lines = [f"  {render_column(c, dialect)}" for c in table.columns]
    pk = table.get_column(table.primary_key)
    if pk is not None and not (dialect == Dialect.SQLITE and pk.auto_increment):
        lines.append(f"  PRIMARY KEY ({quote_identifier(pk.name, dialect)})")
    for column in table.unique_constraints:
        lines.append(
            f"  CONSTRAINT {quote_identifier(constraint_name('uq', table.name, column), dialect)} "
            f"UNIQUE ({quote_identifier(column, dialect)})"
        )
    if include_foreign_keys:
        lines.extend(f"  {_foreign_key_clause(table, i, dialect)}" for i in range(len(table.foreign_keys)))

    body = ",\n".join(lines)
    statement = f"CREATE TABLE {quote_identifier(table.name, dialect)} (\n{body}\n)"
    if dialect == Dialect.MYSQL:
        statement += f" {_MYSQL_TABLE_OPTIONS}"
    return statement + ";"


def render_foreign_keys(table: TableDefinition, dialect: Dialect) -> list[str]:
    """``ALTER TABLE … ADD CONSTRAINT`` statements; empty for inline dialects."""
    if inline_foreign_keys(dialect):
        return []
    return [
        f"ALTER TABLE {quote_identifier(table.name, dialect)} ADD {_foreign_key_clause(table, i, dialect)};"
        for i in range(len(table.foreign_keys))
    ]


def render_drop_table(name: str, dialect: Dialect) -> str:
    statement = f"DROP TABLE IF EXISTS {quote_identifier(name, dialect)}"
    if dialect == Dialect.POSTGRES:
        statement += " CASCADE"
    return statement + ";"


def render_sequence_reset(table: TableDefinition, dialect: Dialect) -> str | None:
    """
    Statement advancing a PostgreSQL serial sequence past explicitly inserted keys.

    MySQL AUTO_INCREMENT and SQLite AUTOINCREMENT track explicit values on
    their own, so nothing is needed there.
    """
    pk = table.get_column(table.primary_key)
    if dialect != Dialect.POSTGRES or pk is None or not pk.auto_increment:
        return None
    qtable = quote_identifier(table.name, dialect)
    qcol = quote_identifier(pk.name, dialect)
    table_literal = qtable.replace("'", "''")
    column_literal = pk.name.replace("'", "''")
    return (
        f"SELECT setval(pg_get_serial_sequence('{table_literal}', '{column_literal}'), "
        f"COALESCE(MAX({qcol}), 1), MAX({qcol}) IS NOT NULL) FROM {qtable};"
    )


def render_schema(
    tables: Iterable[TableDefinition],
    dialect: Dialect,
    order: Iterable[str] | None = None,
) -> list[str]:
    """
    Full creation script: every ``CREATE TABLE`` in *order*, then the
    foreign-key statements for dialects that add them separately.
    """
    by_name = {t.name: t for t in tables}
    names = [n for n in order if n in by_name] if order is not None else list(by_name)
    names += [n for n in by_name if n not in names]
    statements = [render_create_table(by_name[n], dialect) for n in names]
    for name in names:
        statements.extend(render_foreign_keys(by_name[name], dialect))
    return statements
