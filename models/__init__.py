"""models/__init__.py"""
from models.schema import (
    StorageType,
    ColumnDef,
    ForeignKeyDef,
    TableDefinition,
    TableDependency,
    InsertRecord,
)

__all__ = [
    "StorageType",
    "ColumnDef",
    "ForeignKeyDef",
    "TableDefinition",
    "TableDependency",
    "InsertRecord",
]
