"""
core/sources.py
---------------
Input record streams consumed by the orchestrator.

Two shapes are accepted:
    * :class:`DocumentSource`: semi-structured records (JSON-like trees),
      normalized into a table forest.
    * :class:`RelationalSource`: ``(table_name, rows)`` pairs already
      extracted from a relational store, optionally with their
      :class:`TableDefinition` list from an external parser.

Store-native values (BSON ObjectId, Decimal128, MongoDB extended JSON
wrappers such as ``{"$oid": ...}``) are converted to plain scalars before
any inference happens.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Mapping, Sequence

from bson import ObjectId
from bson.decimal128 import Decimal128

from logger import get_logger
from models.schema import TableDefinition

log = get_logger(__name__)

_NDJSON_SUFFIXES = frozenset({".ndjson", ".jsonl"})


class SourceError(Exception):
    """Raised when an input file cannot be read or decoded."""


@dataclass
class DocumentSource:
    """Semi-structured records; the first record is the structural template."""
    records: Sequence[Any]
    root_name: str | None = None

    def __len__(self) -> int:
        return len(self.records)


@dataclass
class RelationalSource:
    """Rows per table, with optional externally supplied definitions."""
    tables: Sequence[tuple[str, Sequence[Mapping[str, Any]]]]
    definitions: Sequence[TableDefinition] | None = None
    table_rows: dict[str, Sequence[Mapping[str, Any]]] = field(init=False)

    def __post_init__(self) -> None:
        self.table_rows = {name: rows for name, rows in self.tables}

    def __len__(self) -> int:
        return sum(len(rows) for _, rows in self.tables)


# ---------------------------------------------------------------------------
# Store-native values
# ---------------------------------------------------------------------------

def _from_extended_json(value: Mapping[str, Any]) -> Any:
    (key, inner), = value.items()
    if key == "$oid":
        return str(inner)
    if key in ("$numberLong", "$numberInt"):
        return int(inner)
    if key == "$numberDouble":
        return float(inner)
    if key == "$numberDecimal":
        return Decimal(str(inner))
    if key == "$date":
        if isinstance(inner, Mapping):
            inner = _from_extended_json(inner)
        if isinstance(inner, (int, float)):
            return datetime.fromtimestamp(inner / 1000, tz=timezone.utc)
        return datetime.fromisoformat(str(inner).replace("Z", "+00:00"))
    return {key: normalize_store_document(inner)}


def normalize_store_document(value: Any) -> Any:
    """
    Recursively replace store-native values with plain scalars.

    Example::

        normalize_store_document({"_id": {"$oid": "507f1f77bcf86cd799439011"}})
        # {"_id": "507f1f77bcf86cd799439011"}
    """
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, Mapping):
        if len(value) == 1 and next(iter(value)).startswith("$"):
            try:
                return _from_extended_json(value)
            except (TypeError, ValueError) as exc:
                log.warning("Could not decode extended JSON value %r: %s", value, exc)
                return dict(value)
        return {k: normalize_store_document(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [normalize_store_document(v) for v in value]
    return value


def normalize_store_documents(documents: Sequence[Any]) -> list[Any]:
    return [normalize_store_document(d) for d in documents]


# ---------------------------------------------------------------------------
# File loading
# ---------------------------------------------------------------------------

def _is_wrapped_collection(data: Any) -> bool:
    """``{"name": [{...}, ...]}``: one key holding an array of objects."""
    if not isinstance(data, dict) or len(data) != 1:
        return False
    items = next(iter(data.values()))
    return isinstance(items, list) and all(isinstance(item, dict) for item in items)


def load_document_source(path: str | Path, root_name: str | None = None) -> DocumentSource:
    """
    Read a JSON or NDJSON file into a :class:`DocumentSource`.

    Accepted layouts:
        * a JSON array of records;
        * a JSON object with exactly one array of objects (``{"users": [...]}``),
          whose key names the root table;
        * a single JSON object (one record);
        * NDJSON / JSON Lines (``.ndjson`` / ``.jsonl``), one record per line.

    Raises:
        SourceError: If the file cannot be read or decoded.
    """
    file_path = Path(path)
    try:
        text = file_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise SourceError(f"Cannot read input file '{file_path}': {exc}") from exc

    suggested: str | None = None
    try:
        if file_path.suffix.lower() in _NDJSON_SUFFIXES:
            records = [json.loads(line) for line in text.splitlines() if line.strip()]
        else:
            data = json.loads(text)
            if isinstance(data, list):
                records = data
            elif _is_wrapped_collection(data):
                suggested, records = next(iter(data.items()))
            else:
                records = [data]
    except json.JSONDecodeError as exc:
        raise SourceError(f"Invalid JSON in '{file_path}': {exc}") from exc

    log.info("Loaded %d record(s) from '%s'.", len(records), file_path.name)
    return DocumentSource(
        records=normalize_store_documents(records),
        root_name=root_name or suggested or file_path.stem,
    )
