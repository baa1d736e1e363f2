"""
core/document_store.py
----------------------
MongoDB destination: one collection per normalized table.

Design Decisions:
    * There is no cross-collection transaction. Every ``insert_many`` is
      durable on its own, so a failure after table *k* leaves the earlier
      collections in place and the orchestrator reports partial success.
    * ``MongoClient`` is thread-safe, which is what allows independent
      tables of one dependency wave to be written concurrently.
    * Values BSON cannot encode natively (``Decimal``, ``date``) are
      converted before insert; everything else is stored as-is.
"""
from __future__ import annotations

from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Sequence

from bson.decimal128 import Decimal128
from pymongo import MongoClient
from pymongo.errors import PyMongoError

from config import CONFIG
from core.database import ConnectionLostError, DatabaseError, Destination
from core.type_inference import fits_int64
from logger import get_logger
from models.schema import TableDefinition

log = get_logger(__name__)


def to_bson_value(value: Any) -> Any:
    """Convert values pymongo cannot encode into their closest BSON type."""
    if isinstance(value, Decimal):
        return Decimal128(value)
    if isinstance(value, int) and not isinstance(value, bool) and not fits_int64(value):
        return str(value)
    if isinstance(value, date) and not isinstance(value, datetime):
        return datetime.combine(value, time.min)
    return value


class MongoDestination(Destination):
    """
    Document-store handle backed by pymongo.

    Args:
        uri:                          MongoDB connection string.
        database:                     Target database name.
        server_selection_timeout_ms:  How long to wait for a reachable server.
        client:                       Pre-built client (used by tests).

    Example::

        with MongoDestination.from_config() as dest:
            dest.write_batch("users", ["_id", "email"], [("1", "a@b.com")])
    """

    name = "mongo"
    supports_transactions = False
    supports_deferred_constraints = False
    transactional_ddl = False
    supports_concurrent_writes = True
    accepts_documents = True

    def __init__(
        self,
        uri: str,
        database: str,
        server_selection_timeout_ms: int = 5000,
        client: Any = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        super().__init__(max_retries=max_retries, retry_delay=retry_delay)
        self._uri = uri
        self._database_name = database
        self._timeout_ms = server_selection_timeout_ms
        self._client = client
        self._owns_client = client is None
        self._db: Any = None

    @classmethod
    def from_config(cls, database: str | None = None) -> "MongoDestination":
        """Convenience factory using values from the application config."""
        return cls(
            uri=CONFIG.mongo.uri,
            database=database or CONFIG.mongo.database,
            server_selection_timeout_ms=CONFIG.mongo.server_selection_timeout_ms,
        )

    def describe(self) -> str:
        return f"MongoDB database {self._database_name}"

    def _open(self) -> None:
        try:
            if self._client is None:
                self._client = MongoClient(self._uri, serverSelectionTimeoutMS=self._timeout_ms)
            self._client.admin.command("ping")
            self._db = self._client[self._database_name]
        except PyMongoError as exc:
            if self._owns_client and self._client is not None:
                self._client.close()
                self._client = None
            raise DatabaseError(str(exc)) from exc

    def close(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()
            log.info("MongoDB connection closed.")
            self._client = None
        self._db = None

    def _ensure_connected(self) -> None:
        if self._db is None:
            raise ConnectionLostError("MongoDB connection is not open. Call connect() first.")

    def prepare_schema(
        self, tables: Sequence[TableDefinition], order: Sequence[str], drop_existing: bool
    ) -> list[str]:
        """Drop existing collections when asked; collections are created on first insert."""
        self._ensure_connected()
        operations: list[str] = []
        if not drop_existing:
            return operations
        names = [t.name for t in tables]
        for name in reversed([n for n in order if n in names] + [n for n in names if n not in order]):
            try:
                self._db.drop_collection(name)
            except PyMongoError as exc:
                raise DatabaseError(f"Could not drop collection '{name}': {exc}") from exc
            operations.append(f"drop collection {name}")
        log.info("Dropped %d collection(s) in %s.", len(operations), self.describe())
        return operations

    def drop_tables(self, names: Sequence[str]) -> None:
        self._ensure_connected()
        for name in names:
            try:
                self._db.drop_collection(name)
            except PyMongoError as exc:
                log.warning("Could not drop collection '%s' during cleanup: %s", name, exc)

    def write_batch(self, table: str, columns: Sequence[str], rows: Sequence[Sequence[Any]]) -> int:
        if not rows:
            return 0
        self._ensure_connected()
        documents = [
            {column: to_bson_value(value) for column, value in zip(columns, row)}
            for row in rows
        ]
        try:
            result = self._db[table].insert_many(documents, ordered=True)
        except (PyMongoError, OverflowError) as exc:
            log.error("insert_many into '%s' failed: %s", table, exc)
            raise DatabaseError(str(exc)) from exc
        return len(result.inserted_ids)
