"""
tests/test_ddl.py
------------------
Unit tests for core/ddl.py (dialect-specific DDL rendering).
Run with: python -m pytest tests/
"""
from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from core.ddl import (
    Dialect,
    constraint_name,
    quote_identifier,
    render_column_type,
    render_create_table,
    render_drop_table,
    render_foreign_keys,
    render_literal,
    render_schema,
    render_sequence_reset,
)
from models.schema import ColumnDef, ForeignKeyDef, StorageType, TableDefinition


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def customers() -> TableDefinition:
    return TableDefinition(
        name="customers",
        columns=[
            ColumnDef("id", StorageType.INTEGER, nullable=False, is_primary_key=True, auto_increment=True),
            ColumnDef("email", StorageType.VARCHAR, length=255),
            ColumnDef("balance", StorageType.DECIMAL, precision=12, scale=2, default=0),
        ],
        primary_key="id",
        unique_constraints=["email"],
    )


@pytest.fixture
def orders() -> TableDefinition:
    return TableDefinition(
        name="orders",
        columns=[
            ColumnDef("id", StorageType.BIGINT, nullable=False, is_primary_key=True),
            ColumnDef("customer_id", StorageType.INTEGER, nullable=False),
            ColumnDef("placed_at", StorageType.TIMESTAMP),
        ],
        primary_key="id",
        foreign_keys=[ForeignKeyDef("customer_id", "customers", "id")],
    )


# ---------------------------------------------------------------------------
# Column rendering
# ---------------------------------------------------------------------------

class TestColumnTypes:
    @pytest.mark.parametrize(
        "column,dialect,expected",
        [
            (ColumnDef("p", StorageType.DECIMAL, precision=10, scale=4), Dialect.MYSQL, "DECIMAL(10,4)"),
            (ColumnDef("p", StorageType.DECIMAL), Dialect.POSTGRES, "DECIMAL(12,2)"),
            (ColumnDef("k", StorageType.CHAR, length=24), Dialect.SQLITE, "CHAR(24)"),
            (ColumnDef("s", StorageType.VARCHAR), Dialect.POSTGRES, "VARCHAR(255)"),
            (ColumnDef("t", StorageType.TEXT), Dialect.MYSQL, "LONGTEXT"),
            (ColumnDef("j", StorageType.JSON), Dialect.POSTGRES, "JSONB"),
            (ColumnDef("j", StorageType.JSON), Dialect.SQLITE, "TEXT"),
            (ColumnDef("b", StorageType.BINARY), Dialect.POSTGRES, "BYTEA"),
            (ColumnDef("at", StorageType.TIMESTAMP), Dialect.MYSQL, "DATETIME"),
            (ColumnDef("n", StorageType.INTEGER), Dialect.MYSQL, "INT"),
        ],
    )
    def test_type_names(self, column: ColumnDef, dialect: Dialect, expected: str) -> None:
        assert render_column_type(column, dialect) == expected

    @pytest.mark.parametrize(
        "kind,dialect,expected",
        [
            (StorageType.INTEGER, Dialect.POSTGRES, "SERIAL"),
            (StorageType.BIGINT, Dialect.POSTGRES, "BIGSERIAL"),
            (StorageType.INTEGER, Dialect.MYSQL, "INT AUTO_INCREMENT"),
            (StorageType.BIGINT, Dialect.MYSQL, "BIGINT AUTO_INCREMENT"),
        ],
    )
    def test_auto_increment_keys(self, kind: StorageType, dialect: Dialect, expected: str) -> None:
        column = ColumnDef("id", kind, nullable=False, is_primary_key=True, auto_increment=True)
        assert render_column_type(column, dialect) == expected

    def test_identifier_quoting(self) -> None:
        assert quote_identifier("order", Dialect.MYSQL) == "`order`"
        assert quote_identifier("order", Dialect.POSTGRES) == '"order"'
        assert quote_identifier('we"ird', Dialect.SQLITE) == '"we""ird"'


class TestLiterals:
    @pytest.mark.parametrize(
        "value,dialect,expected",
        [
            (None, Dialect.POSTGRES, "NULL"),
            (True, Dialect.POSTGRES, "TRUE"),
            (False, Dialect.SQLITE, "0"),
            (42, Dialect.MYSQL, "42"),
            (Decimal("1.50"), Dialect.MYSQL, "1.50"),
            ("it's", Dialect.POSTGRES, "'it''s'"),
            ("current_timestamp", Dialect.MYSQL, "CURRENT_TIMESTAMP"),
            (date(2024, 1, 5), Dialect.SQLITE, "'2024-01-05'"),
        ],
    )
    def test_render_literal(self, value: object, dialect: Dialect, expected: str) -> None:
        assert render_literal(value, dialect) == expected


# ---------------------------------------------------------------------------
# Table statements
# ---------------------------------------------------------------------------

class TestCreateTable:
    def test_postgres(self, customers: TableDefinition) -> None:
        sql = render_create_table(customers, Dialect.POSTGRES)
        assert sql.startswith('CREATE TABLE "customers" (')
        assert '"id" SERIAL NOT NULL' in sql
        assert '"balance" DECIMAL(12,2) DEFAULT 0' in sql
        assert 'PRIMARY KEY ("id")' in sql
        assert 'CONSTRAINT "uq_customers_email" UNIQUE ("email")' in sql
        assert sql.endswith(";")

    def test_mysql_has_table_options(self, customers: TableDefinition) -> None:
        sql = render_create_table(customers, Dialect.MYSQL)
        assert "`id` INT AUTO_INCREMENT NOT NULL" in sql
        assert sql.endswith("ENGINE=InnoDB DEFAULT CHARSET=utf8mb4 COLLATE=utf8mb4_unicode_ci;")

    def test_sqlite_auto_increment_key_is_inline(self, customers: TableDefinition) -> None:
        sql = render_create_table(customers, Dialect.SQLITE)
        assert '"id" INTEGER PRIMARY KEY AUTOINCREMENT' in sql
        assert "PRIMARY KEY (" not in sql

    def test_sqlite_foreign_keys_are_inline(self, orders: TableDefinition) -> None:
        sql = render_create_table(orders, Dialect.SQLITE)
        assert (
            'CONSTRAINT "fk_orders_customer_id" FOREIGN KEY ("customer_id") '
            'REFERENCES "customers" ("id") DEFERRABLE INITIALLY IMMEDIATE'
        ) in sql
        assert render_foreign_keys(orders, Dialect.SQLITE) == []

    def test_postgres_foreign_keys_are_separate_and_deferrable(self, orders: TableDefinition) -> None:
        assert "FOREIGN KEY" not in render_create_table(orders, Dialect.POSTGRES)
        statements = render_foreign_keys(orders, Dialect.POSTGRES)
        assert statements == [
            'ALTER TABLE "orders" ADD CONSTRAINT "fk_orders_customer_id" FOREIGN KEY ("customer_id") '
            'REFERENCES "customers" ("id") DEFERRABLE INITIALLY IMMEDIATE;'
        ]

    def test_mysql_foreign_keys_are_not_deferrable(self, orders: TableDefinition) -> None:
        statement = render_foreign_keys(orders, Dialect.MYSQL)[0]
        assert statement.startswith("ALTER TABLE `orders` ADD CONSTRAINT")
        assert "DEFERRABLE" not in statement

    def test_drop_table(self) -> None:
        assert render_drop_table("orders", Dialect.POSTGRES) == 'DROP TABLE IF EXISTS "orders" CASCADE;'
        assert render_drop_table("orders", Dialect.MYSQL) == "DROP TABLE IF EXISTS `orders`;"


class TestConstraintNames:
    def test_short_names_unchanged(self) -> None:
        assert constraint_name("fk", "orders", "customer_id") == "fk_orders_customer_id"

    def test_long_names_truncated_and_distinct(self) -> None:
        first = constraint_name("fk", "t" * 50, "first_column_name")
        second = constraint_name("fk", "t" * 50, "second_column_name")
        assert len(first) <= 60
        assert len(second) <= 60
        assert first != second


class TestSchema:
    def test_creates_before_foreign_keys(self, customers: TableDefinition, orders: TableDefinition) -> None:
        statements = render_schema([orders, customers], Dialect.POSTGRES, order=["customers", "orders"])
        assert statements[0].startswith('CREATE TABLE "customers"')
        assert statements[1].startswith('CREATE TABLE "orders"')
        assert statements[2].startswith('ALTER TABLE "orders"')

    def test_tables_missing_from_order_are_appended(self, customers: TableDefinition, orders: TableDefinition) -> None:
        statements = render_schema([customers, orders], Dialect.SQLITE, order=["orders"])
        assert len(statements) == 2
        assert statements[0].startswith('CREATE TABLE "orders"')

    def test_sequence_reset_only_for_postgres_serials(
        self, customers: TableDefinition, orders: TableDefinition
    ) -> None:
        statement = render_sequence_reset(customers, Dialect.POSTGRES)
        assert statement.startswith("SELECT setval(pg_get_serial_sequence('\"customers\"', 'id')")
        assert render_sequence_reset(customers, Dialect.MYSQL) is None
        assert render_sequence_reset(orders, Dialect.POSTGRES) is None
