"""
core/database.py
----------------
Destination handles: the capability interface every backend implements,
plus the three relational backends (PostgreSQL, MySQL, SQLite).

Design Decisions:
    * The orchestrator never branches on a backend name. It reads capability
      flags (transactions, deferred constraint checks, transactional DDL,
      concurrent writes) and calls the same handful of primitives on every
      destination.
    * Each destination is a context manager so callers can use it with
      ``with`` statements and be guaranteed the connection is closed on exit.
    * Driver exceptions are wrapped into :class:`DatabaseError` at this
      boundary; nothing above this module imports a driver.
    * Retry logic is implemented for transient connection errors with a
      growing delay (configurable via ``max_retries`` / ``retry_delay``).
    * Only quoted structural identifiers are interpolated into SQL. Every
      data value is bound as a parameter.
"""
from __future__ import annotations

import sqlite3
import time
from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Sequence

import mysql.connector
import psycopg2

from config import CONFIG
from core.ddl import (
    Dialect,
    inline_foreign_keys,
    quote_identifier,
    render_create_table,
    render_drop_table,
    render_foreign_keys,
    render_sequence_reset,
)
from logger import get_logger
from models.schema import TableDefinition
from shared.chunking import rows_per_statement

log = get_logger(__name__)


class DatabaseError(Exception):
    """Raised for destination-level failures reported by this module."""


class ConnectionLostError(DatabaseError):
    """Raised when a destination is used without an open connection."""


# ---------------------------------------------------------------------------
# Capability interface
# ---------------------------------------------------------------------------

class Destination(ABC):
    """
    Write-side handle for one migration run.

    Capability flags:
        supports_transactions:          One unit of work spans every table.
        supports_deferred_constraints:  Foreign-key checks can wait until commit.
        transactional_ddl:              CREATE/DROP can be rolled back.
        supports_concurrent_writes:     Independent tables may be written from
                                        several threads at once.
        accepts_documents:              Rows land in a document store.
    """

    name = "destination"
    supports_transactions = False
    supports_deferred_constraints = False
    transactional_ddl = False
    supports_concurrent_writes = False
    accepts_documents = False

    def __init__(self, max_retries: int = 3, retry_delay: float = 1.0) -> None:
        self._max_retries = max(1, max_retries)
        self._retry_delay = retry_delay

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    def __enter__(self) -> "Destination":
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_type is not None:
            log.warning("Unhandled exception in %s context: %s", self.name, exc_val)
            self.rollback()
        self.close()
        return False  # Never suppress exceptions

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """
        Open the connection, retrying with a growing delay.

        Raises:
            DatabaseError: If the connection fails after all retries.
        """
        last_error: Exception | None = None
        for attempt in range(1, self._max_retries + 1):
            try:
                log.info(
                    "Connecting to %s (attempt %d/%d)",
                    self.describe(), attempt, self._max_retries,
                )
                self._open()
                log.info("Connected to %s.", self.describe())
                return
            except DatabaseError as exc:
                last_error = exc
                log.warning("Connection attempt %d failed: %s", attempt, exc)
                if attempt < self._max_retries:
                    time.sleep(self._retry_delay * attempt)
        raise DatabaseError(
            f"Could not connect to {self.describe()} after {self._max_retries} attempts: {last_error}"
        )

    def describe(self) -> str:
        return self.name

    @abstractmethod
    def _open(self) -> None:
        """Open the underlying connection; raise :class:`DatabaseError` on failure."""

    @abstractmethod
    def close(self) -> None: ...

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    def begin_unit_of_work(self) -> None:
        """Start the run's transaction (no-op for non-transactional backends)."""

    def commit(self) -> None:
        """Make the unit of work durable (no-op for non-transactional backends)."""

    def rollback(self) -> None:
        """Discard the unit of work (no-op for non-transactional backends)."""

    # ------------------------------------------------------------------
    # Schema and data
    # ------------------------------------------------------------------

    @abstractmethod
    def prepare_schema(
        self, tables: Sequence[TableDefinition], order: Sequence[str], drop_existing: bool
    ) -> list[str]:
        """Drop (optionally) and create *tables*; return what was executed."""

    @abstractmethod
    def drop_tables(self, names: Sequence[str]) -> None:
        """Remove tables created by a failed run."""

    @abstractmethod
    def write_batch(self, table: str, columns: Sequence[str], rows: Sequence[Sequence[Any]]) -> int:
        """Insert one chunk; return the number of rows written."""

    def finalize_table(self, table: TableDefinition) -> None:
        """Backend-specific fix-ups after a table's rows are written."""


# ---------------------------------------------------------------------------
# Relational base
# ---------------------------------------------------------------------------

class RelationalDestination(Destination):
    """
    Shared SQL plumbing: quoting, DDL execution and multi-row INSERTs.

    Subclasses provide ``_open``, the driver error type and the
    constraint-deferral statement.
    """

    dialect: Dialect = Dialect.POSTGRES
    placeholder = "%s"
    max_bind_params = 65535
    supports_transactions = True
    driver_error: type[Exception] = Exception

    def __init__(self, max_retries: int = 3, retry_delay: float = 1.0) -> None:
        super().__init__(max_retries=max_retries, retry_delay=retry_delay)
        self._conn: Any = None
        self._cursor: Any = None

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    def _ensure_connected(self) -> None:
        if not self.is_connected:
            raise ConnectionLostError(
                f"{self.name} connection is not open. Call connect() first."
            )

    def close(self) -> None:
        """Close cursor and connection, logging any cleanup errors."""
        try:
            if self._cursor is not None:
                self._cursor.close()
        except self.driver_error as exc:
            log.debug("Cursor close failed: %s", exc)
        try:
            if self._conn is not None:
                self._conn.close()
                log.info("%s connection closed.", self.name)
        except self.driver_error as exc:
            log.debug("Connection close failed: %s", exc)
        self._cursor = None
        self._conn = None

    def execute(self, sql: str, params: Sequence[Any] | None = None) -> Any:
        """
        Execute a SQL statement and return the cursor.

        Raises:
            ConnectionLostError: If not connected.
            DatabaseError: On driver execution errors or values the driver cannot bind.
        """
        self._ensure_connected()
        try:
            if params:
                self._cursor.execute(sql, params)
            else:
                self._cursor.execute(sql)
            return self._cursor
        except (self.driver_error, OverflowError) as exc:
            log.error("SQL execution error: %s | SQL: %.500s", exc, sql)
            raise DatabaseError(str(exc)) from exc

    def execute_many(self, sql: str, rows: Sequence[Sequence[Any]]) -> None:
        self._ensure_connected()
        try:
            self._cursor.executemany(sql, rows)
        except (self.driver_error, OverflowError) as exc:
            log.error("SQL execution error: %s | SQL: %.500s", exc, sql)
            raise DatabaseError(str(exc)) from exc

    def quote(self, name: str) -> str:
        return quote_identifier(name, self.dialect)

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    def begin_unit_of_work(self) -> None:
        self._ensure_connected()
        self._begin()
        if self.supports_deferred_constraints:
            self._defer_constraints()
            log.debug("Foreign-key checks deferred until commit.")

    def _begin(self) -> None:
        """Drivers used here open a transaction implicitly on the first statement."""

    def _defer_constraints(self) -> None:
        """Statement(s) deferring foreign-key checks inside the open transaction."""

    def commit(self) -> None:
        self._ensure_connected()
        try:
            self._conn.commit()
            log.debug("Transaction committed.")
        except self.driver_error as exc:
            raise DatabaseError(f"Commit failed: {exc}") from exc

    def rollback(self) -> None:
        try:
            if self._conn is not None:
                self._conn.rollback()
                log.debug("Transaction rolled back.")
        except self.driver_error as exc:
            log.warning("Rollback failed: %s", exc)

    # ------------------------------------------------------------------
    # Schema and data
    # ------------------------------------------------------------------

    def prepare_schema(
        self, tables: Sequence[TableDefinition], order: Sequence[str], drop_existing: bool
    ) -> list[str]:
        """
        Drop existing tables in reverse write order, create every table in
        write order, then add foreign keys where the dialect allows it.
        """
        by_name = {t.name: t for t in tables}
        names = [n for n in order if n in by_name] + [n for n in by_name if n not in order]
        statements: list[str] = []
        if drop_existing:
            statements.extend(render_drop_table(n, self.dialect) for n in reversed(names))
        statements.extend(render_create_table(by_name[n], self.dialect) for n in names)
        if not inline_foreign_keys(self.dialect):
            for name in names:
                statements.extend(render_foreign_keys(by_name[name], self.dialect))

        for statement in statements:
            self.execute(statement)
        if self.transactional_ddl and self.supports_deferred_constraints:
            self._defer_constraints()
        log.info("Prepared %d table(s) on %s.", len(names), self.describe())
        return statements

    def drop_tables(self, names: Sequence[str]) -> None:
        for name in reversed(list(names)):
            try:
                self.execute(render_drop_table(name, self.dialect))
            except DatabaseError as exc:
                log.warning("Could not drop '%s' during cleanup: %s", name, exc)
        self.commit()

    def bind_value(self, value: Any) -> Any:
        """Driver-specific parameter adaptation (identity by default)."""
        return value

    def write_batch(self, table: str, columns: Sequence[str], rows: Sequence[Sequence[Any]]) -> int:
        if not rows:
            return 0
        column_sql = ", ".join(self.quote(c) for c in columns)
        row_sql = "(" + ", ".join([self.placeholder] * len(columns)) + ")"
        step = rows_per_statement(len(columns), self.max_bind_params, len(rows))
        for start in range(0, len(rows), step):
            part = rows[start:start + step]
            sql = f"INSERT INTO {self.quote(table)} ({column_sql}) VALUES {', '.join([row_sql] * len(part))}"
            params = [self.bind_value(v) for row in part for v in row]
            self.execute(sql, params)
        return len(rows)

    def finalize_table(self, table: TableDefinition) -> None:
        statement = render_sequence_reset(table, self.dialect)
        if statement:
            self.execute(statement)
            log.debug("Sequence for '%s.%s' advanced.", table.name, table.primary_key)


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

class PostgresDestination(RelationalDestination):
    """
    PostgreSQL via psycopg2.

    DDL is transactional and ``SET CONSTRAINTS ALL DEFERRED`` postpones the
    (deferrable) foreign-key checks to commit, so the whole run is one
    transaction.
    """

    name = "postgres"
    dialect = Dialect.POSTGRES
    supports_deferred_constraints = True
    transactional_ddl = True
    driver_error = psycopg2.Error

    def __init__(
        self,
        host: str,
        port: int,
        user: str,
        password: str,
        database: str,
        connect_timeout: int = 10,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        super().__init__(max_retries=max_retries, retry_delay=retry_delay)
        self._host = host
        self._port = port
        self._user = user
        self._password = password
        self._database = database
        self._connect_timeout = connect_timeout

    @classmethod
    def from_config(cls, user: str, password: str, database: str | None = None) -> "PostgresDestination":
        """Convenience factory using values from the application config."""
        return cls(
            host=CONFIG.db.host,
            port=CONFIG.db.port,
            user=user,
            password=password,
            database=database or CONFIG.db.database,
            connect_timeout=CONFIG.db.connect_timeout,
            max_retries=CONFIG.db.max_retries,
            retry_delay=CONFIG.db.retry_delay,
        )

    def describe(self) -> str:
        return f"PostgreSQL at {self._host}:{self._port}/{self._database}"

    def _open(self) -> None:
        try:
            self._conn = psycopg2.connect(
                host=self._host,
                port=self._port,
                user=self._user,
                password=self._password,
                dbname=self._database,
                connect_timeout=self._connect_timeout,
            )
            self._conn.autocommit = False
            self._cursor = self._conn.cursor()
        except psycopg2.Error as exc:
            raise DatabaseError(str(exc)) from exc

    def _defer_constraints(self) -> None:
        self.execute("SET CONSTRAINTS ALL DEFERRED")


class MySQLDestination(RelationalDestination):
    """
    MySQL via mysql-connector-python.

    MySQL commits implicitly around DDL, so the schema is prepared before
    the data transaction opens and ``transactional_ddl`` is False. Foreign-key
    checks are switched off for the session until commit.
    """

    name = "mysql"
    dialect = Dialect.MYSQL
    supports_deferred_constraints = True
    transactional_ddl = False
    driver_error = mysql.connector.Error

    def __init__(
        self,
        host: str,
        port: int,
        user: str,
        password: str,
        database: str,
        charset: str = "utf8mb4",
        connect_timeout: int = 10,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        super().__init__(max_retries=max_retries, retry_delay=retry_delay)
        self._host = host
        self._port = port
        self._user = user
        self._password = password
        self._database = database
        self._charset = charset
        self._connect_timeout = connect_timeout

    @classmethod
    def from_config(cls, user: str, password: str, database: str | None = None) -> "MySQLDestination":
        """Convenience factory using values from the application config."""
        return cls(
            host=CONFIG.db.host,
            port=CONFIG.db.port,
            user=user,
            password=password,
            database=database or CONFIG.db.database,
            charset=CONFIG.db.charset,
            connect_timeout=CONFIG.db.connect_timeout,
            max_retries=CONFIG.db.max_retries,
            retry_delay=CONFIG.db.retry_delay,
        )

    def describe(self) -> str:
        return f"MySQL at {self._host}:{self._port}/{self._database}"

    def _open(self) -> None:
        try:
            self._conn = mysql.connector.connect(
                host=self._host,
                port=self._port,
                user=self._user,
                password=self._password,
                database=self._database,
                charset=self._charset,
                connect_timeout=self._connect_timeout,
                autocommit=False,
            )
            self._cursor = self._conn.cursor()
        except mysql.connector.Error as exc:
            raise DatabaseError(str(exc)) from exc

    def prepare_schema(
        self, tables: Sequence[TableDefinition], order: Sequence[str], drop_existing: bool
    ) -> list[str]:
        self.execute("SET FOREIGN_KEY_CHECKS = 0")
        return super().prepare_schema(tables, order, drop_existing)

    def drop_tables(self, names: Sequence[str]) -> None:
        self.execute("SET FOREIGN_KEY_CHECKS = 0")
        super().drop_tables(names)

    def _begin(self) -> None:
        try:
            if not self._conn.in_transaction:
                self._conn.start_transaction()
        except mysql.connector.Error as exc:
            raise DatabaseError(f"Could not start transaction: {exc}") from exc

    def _defer_constraints(self) -> None:
        self.execute("SET FOREIGN_KEY_CHECKS = 0")

    def commit(self) -> None:
        super().commit()
        self.execute("SET FOREIGN_KEY_CHECKS = 1")


class SQLiteDestination(RelationalDestination):
    """
    SQLite via the standard library driver.

    The connection runs in autocommit mode and the unit of work is managed
    with explicit ``BEGIN``/``COMMIT``, which also makes DDL transactional.
    ``PRAGMA defer_foreign_keys`` holds foreign-key checks until commit.
    """

    name = "sqlite"
    dialect = Dialect.SQLITE
    placeholder = "?"
    max_bind_params = 32766
    supports_deferred_constraints = True
    transactional_ddl = True
    driver_error = sqlite3.Error

    def __init__(self, path: str | Path, max_retries: int = 1, retry_delay: float = 0.0) -> None:
        super().__init__(max_retries=max_retries, retry_delay=retry_delay)
        self._path = str(path)

    def describe(self) -> str:
        return f"SQLite database {self._path}"

    def _open(self) -> None:
        try:
            self._conn = sqlite3.connect(self._path, isolation_level=None, check_same_thread=False)
            self._cursor = self._conn.cursor()
            self._cursor.execute("PRAGMA foreign_keys = ON")
        except sqlite3.Error as exc:
            raise DatabaseError(str(exc)) from exc

    def _begin(self) -> None:
        self.execute("BEGIN")

    def _defer_constraints(self) -> None:
        self.execute("PRAGMA defer_foreign_keys = ON")

    def commit(self) -> None:
        self._ensure_connected()
        if self._conn.in_transaction:
            self.execute("COMMIT")
            log.debug("Transaction committed.")

    def rollback(self) -> None:
        try:
            if self._conn is not None and self._conn.in_transaction:
                self._conn.execute("ROLLBACK")
                log.debug("Transaction rolled back.")
        except sqlite3.Error as exc:
            log.warning("Rollback failed: %s", exc)

    def bind_value(self, value: Any) -> Any:
        if isinstance(value, datetime):
            return value.isoformat(sep=" ")
        if isinstance(value, date):
            return value.isoformat()
        if isinstance(value, Decimal):
            return str(value)
        return value

    def write_batch(self, table: str, columns: Sequence[str], rows: Sequence[Sequence[Any]]) -> int:
        if not rows:
            return 0
        column_sql = ", ".join(self.quote(c) for c in columns)
        sql = (
            f"INSERT INTO {self.quote(table)} ({column_sql}) "
            f"VALUES ({', '.join(['?'] * len(columns))})"
        )
        self.execute_many(sql, [[self.bind_value(v) for v in row] for row in rows])
        return len(rows)

    def count_rows(self, table: str) -> int:
        row = self.execute(f"SELECT COUNT(*) FROM {self.quote(table)}").fetchone()
        return row[0] if row else 0


def create_destination(kind: str, **params: Any) -> Destination:
    """
    Build a destination by backend name.

    Args:
        kind:   ``postgres``, ``mysql``, ``sqlite`` or ``mongo``.
        params: Constructor arguments for the chosen backend.

    Raises:
        ValueError: For an unknown backend name.
    """
    kind = kind.lower()
    if kind in ("postgres", "postgresql"):
        return PostgresDestination(**params)
    if kind == "mysql":
        return MySQLDestination(**params)
    if kind == "sqlite":
        return SQLiteDestination(**params)
    if kind in ("mongo", "mongodb"):
        from core.document_store import MongoDestination

        return MongoDestination(**params)
    raise ValueError(f"Unknown destination type: {kind!r}")
