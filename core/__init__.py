"""core/__init__.py"""
from core.database import (
    DatabaseError,
    ConnectionLostError,
    Destination,
    PostgresDestination,
    MySQLDestination,
    SQLiteDestination,
    create_destination,
)
from core.errors import (
    MigrationError,
    SchemaError,
    ConnectionFailure,
    WriteFailure,
    MigrationCancelled,
    ExternalEnhancementFailure,
    MigrationFailed,
)
from core.type_inference import InferredType, infer_column, infer_storage_type
from core.normalizer import SchemaNormalizer, NormalizationResult, RecordFlattener
from core.dependency_graph import SortResult, topological_sort, group_by_dependency_level
from core.ddl import Dialect, render_schema
from core.batch_writer import BatchWriter, BatchResult
from core.context import MigrationContext
from core.report import MigrationReport
from core.sources import DocumentSource, RelationalSource, load_document_source
from core.migrator import MigrationOrchestrator, MigrationPlan, plan_migration

__all__ = [
    "DatabaseError",
    "ConnectionLostError",
    "Destination",
    "PostgresDestination",
    "MySQLDestination",
    "SQLiteDestination",
    "create_destination",
    "MigrationError",
    "SchemaError",
    "ConnectionFailure",
    "WriteFailure",
    "MigrationCancelled",
    "ExternalEnhancementFailure",
    "MigrationFailed",
    "InferredType",
    "infer_column",
    "infer_storage_type",
    "SchemaNormalizer",
    "NormalizationResult",
    "RecordFlattener",
    "SortResult",
    "topological_sort",
    "group_by_dependency_level",
    "Dialect",
    "render_schema",
    "BatchWriter",
    "BatchResult",
    "MigrationContext",
    "MigrationReport",
    "DocumentSource",
    "RelationalSource",
    "load_document_source",
    "MigrationOrchestrator",
    "MigrationPlan",
    "plan_migration",
]
