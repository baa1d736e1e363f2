"""
tests/test_normalizer.py
-------------------------
Unit tests for core/normalizer.py (schema inference and record flattening).
Run with: python -m pytest tests/
"""
from __future__ import annotations

import json
from datetime import date, datetime
from decimal import Decimal

import pytest

from core.normalizer import (
    NormalizationResult,
    RecordFlattener,
    SchemaNormalizer,
    coerce_value,
    project_rows,
)
from models.schema import ColumnDef, StorageType, TableDefinition

OBJECT_ID = "507f1f77bcf86cd799439011"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def users() -> list[dict]:
    return [
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
    ]


@pytest.fixture
def result(users: list[dict]) -> NormalizationResult:
    return SchemaNormalizer(root_name="users").normalize(users)


def _referenced_column(result: NormalizationResult, table: TableDefinition, fk) -> ColumnDef:
    return result.table(fk.referenced_table).get_column(fk.referenced_column)


# ---------------------------------------------------------------------------
# Table forest
# ---------------------------------------------------------------------------

class TestNormalize:
    def test_table_names(self, result: NormalizationResult) -> None:
        assert [t.name for t in result.tables] == [
            "users", "users_address", "users_tags", "users_orders",
        ]

    def test_root_key_is_document_id(self, result: NormalizationResult) -> None:
        root = result.table("users")
        assert root.primary_key == "_id"
        assert root.primary_key_column.type == StorageType.CHAR

    def test_nested_values_are_never_columns(self, result: NormalizationResult) -> None:
        root = result.table("users")
        assert root.column_names == ["_id", "email"]

    def test_child_gets_parent_key_as_foreign_key(self, result: NormalizationResult) -> None:
        address = result.table("users_address")
        assert address.primary_key == "id"
        assert address.primary_key_column.auto_increment
        fk = address.foreign_keys[0]
        assert (fk.column, fk.referenced_table, fk.referenced_column) == ("users_id", "users", "_id")

    def test_foreign_key_types_match_referenced_keys(self, result: NormalizationResult) -> None:
        for table in result.tables:
            for fk in table.foreign_keys:
                column = table.get_column(fk.column)
                assert column.same_storage(_referenced_column(result, table, fk))
                assert column.type != StorageType.INTEGER

    def test_nested_identifier_becomes_child_key(self, result: NormalizationResult) -> None:
        orders = result.table("users_orders")
        assert orders.primary_key == "id"
        assert not orders.primary_key_column.auto_increment
        assert orders.get_column("total").type == StorageType.DECIMAL

    def test_scalar_array_becomes_value_table(self, result: NormalizationResult) -> None:
        tags = result.table("users_tags")
        assert tags.column_names == ["id", "users_id", "value"]
        assert not tags.get_column("value").nullable

    def test_unique_hint_on_email(self, result: NormalizationResult) -> None:
        assert result.table("users").unique_constraints == ["email"]

    def test_definitions_are_valid(self, result: NormalizationResult) -> None:
        for table in result.tables:
            assert table.validate() == []

    def test_inference_is_idempotent(self, users: list[dict]) -> None:
        first = SchemaNormalizer(root_name="users").normalize(users)
        second = SchemaNormalizer(root_name="users").normalize(users)
        assert json.dumps([t.to_dict() for t in first.tables]) == json.dumps(
            [t.to_dict() for t in second.tables]
        )

    def test_empty_input_warns(self) -> None:
        result = SchemaNormalizer(root_name="users").normalize([])
        assert result.tables == []
        assert len(result.warnings) == 1
        assert result.root_table is None

    def test_collection_field_names_root(self) -> None:
        result = SchemaNormalizer(root_name="ignored").normalize(
            [{"_collection": "people", "name": "Ada"}]
        )
        root = result.table("people")
        assert root is not None
        assert "_collection" not in root.column_names

    def test_text_parent_key_propagates_to_grandchildren(self) -> None:
        records = [{"uuid": "u-1", "profile": {"bio": "x", "links": [{"url": "http://a"}]}}]
        result = SchemaNormalizer(root_name="accounts").normalize(records)
        for table in result.tables:
            for fk in table.foreign_keys:
                assert table.get_column(fk.column).same_storage(_referenced_column(result, table, fk))
        links = result.table("accounts_profile_links")
        assert links.foreign_keys[0].referenced_table == "accounts_profile"

    def test_self_reference_recorded_on_same_table(self) -> None:
        records = [{"id": 1, "manager_id": None}, {"id": 2, "manager_id": 1}]
        table = SchemaNormalizer(root_name="employees").normalize(records).table("employees")
        fk = table.foreign_keys[0]
        assert (fk.column, fk.referenced_table, fk.referenced_column) == ("manager_id", "employees", "id")
        assert table.get_column("manager_id").same_storage(table.primary_key_column)
        assert table.dependencies() == []

    def test_self_reference_without_identifier_warns(self) -> None:
        result = SchemaNormalizer(root_name="nodes").normalize([{"name": "a", "parent_id": 3}])
        assert result.table("nodes").foreign_keys == []
        assert any("self reference" in w for w in result.warnings)

    def test_parent_column_collision_is_renamed(self) -> None:
        records = [{"id": 5, "items": [{"sku": "a", "orders_id": 9}]}]
        result = SchemaNormalizer(root_name="orders").normalize(records)
        items = result.table("orders_items")
        assert items.foreign_keys[0].column == "orders_id_ref"
        assert result.warnings

    def test_empty_array_is_skipped_with_warning(self) -> None:
        result = SchemaNormalizer(root_name="posts").normalize([{"id": 1, "likes": []}])
        assert [t.name for t in result.tables] == ["posts"]
        assert result.warnings

    def test_normalize_flat_keeps_nested_values_as_json(self) -> None:
        result = SchemaNormalizer().normalize_flat("events", [{"id": 1, "payload": {"a": 1}}])
        assert [t.name for t in result.tables] == ["events"]
        assert result.table("events").get_column("payload").type == StorageType.JSON


# ---------------------------------------------------------------------------
# Flattening
# ---------------------------------------------------------------------------

class TestRecordFlattener:
    def test_row_counts(self, result: NormalizationResult, users: list[dict]) -> None:
        rows = RecordFlattener(result).flatten(users).rows
        assert {name: len(r) for name, r in rows.items()} == {
            "users": 2, "users_address": 2, "users_tags": 3, "users_orders": 2,
        }

    def test_children_carry_parent_key(self, result: NormalizationResult, users: list[dict]) -> None:
        rows = RecordFlattener(result).flatten(users).rows
        assert rows["users_tags"][0] == {"id": 1, "users_id": OBJECT_ID, "value": "admin"}
        assert rows["users_address"][1]["users_id"] == "507f1f77bcf86cd799439012"
        assert [r["users_id"] for r in rows["users_orders"]] == [OBJECT_ID, OBJECT_ID]

    def test_synthetic_keys_are_sequential(self, result: NormalizationResult, users: list[dict]) -> None:
        rows = RecordFlattener(result).flatten(users).rows
        assert [r["id"] for r in rows["users_address"]] == [1, 2]
        assert [r["id"] for r in rows["users_tags"]] == [1, 2, 3]

    def test_decimal_values_coerced(self, result: NormalizationResult, users: list[dict]) -> None:
        rows = RecordFlattener(result).flatten(users).rows
        assert rows["users_orders"][0]["total"] == Decimal("9.5")

    def test_duplicate_key_skipped_with_warning(self) -> None:
        records = [{"id": 1, "name": "a"}, {"id": 1, "name": "b"}]
        result = SchemaNormalizer(root_name="people").normalize(records)
        flattened = RecordFlattener(result).flatten(records)
        assert [r["name"] for r in flattened.rows["people"]] == ["a"]
        assert flattened.warnings

    def test_missing_identifier_gets_generated_key(self) -> None:
        records = [{"id": 4, "name": "a"}, {"name": "b"}]
        result = SchemaNormalizer(root_name="people").normalize(records)
        rows = RecordFlattener(result).flatten(records).rows["people"]
        assert [r["id"] for r in rows] == [4, 5]

    def test_unknown_fields_are_dropped_with_one_warning(self) -> None:
        records = [{"id": 1}, {"id": 2, "extra": 1}, {"id": 3, "extra": 2}]
        result = SchemaNormalizer(root_name="things").normalize(records)
        flattened = RecordFlattener(result).flatten(records)
        assert "extra" not in flattened.rows["things"][1]
        assert len([w for w in flattened.warnings if "extra" in w]) == 1

    def test_requires_layout(self) -> None:
        with pytest.raises(ValueError):
            RecordFlattener(NormalizationResult())


# ---------------------------------------------------------------------------
# Value coercion
# ---------------------------------------------------------------------------

class TestCoerceValue:
    @pytest.mark.parametrize(
        "column,value,expected",
        [
            (ColumnDef("at", StorageType.TIMESTAMP), "2024-01-05T10:00:00", datetime(2024, 1, 5, 10, 0)),
            (ColumnDef("on", StorageType.DATE), "2024-01-05T10:00:00", date(2024, 1, 5)),
            (ColumnDef("price", StorageType.DECIMAL), 9.5, Decimal("9.5")),
            (ColumnDef("flag", StorageType.BOOLEAN), "yes", True),
            (ColumnDef("flag", StorageType.BOOLEAN), "0", False),
            (ColumnDef("n", StorageType.INTEGER), "42", 42),
            (ColumnDef("s", StorageType.VARCHAR), 5, "5"),
            (ColumnDef("s", StorageType.VARCHAR), None, None),
            (ColumnDef("at", StorageType.TIMESTAMP), "not a date", "not a date"),
        ],
    )
    def test_coercion(self, column: ColumnDef, value: object, expected: object) -> None:
        assert coerce_value(column, value) == expected

    def test_objects_become_json_text(self) -> None:
        assert coerce_value(ColumnDef("meta", StorageType.JSON), {"a": 1}) == '{"a": 1}'

    def test_project_rows(self) -> None:
        table = TableDefinition(
            name="customers",
            columns=[
                ColumnDef("id", StorageType.INTEGER, nullable=False, is_primary_key=True),
                ColumnDef("name", StorageType.VARCHAR, length=50),
            ],
            primary_key="id",
        )
        assert project_rows(table, [{"id": "1", "name": "x", "extra": 1}, {"id": 2}]) == [
            {"id": 1, "name": "x"},
            {"id": 2, "name": None},
        ]
