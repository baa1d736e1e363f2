"""
core/type_inference.py
----------------------
Storage type, nullability and key inference for semi-structured fields.

Rules, in priority order:
    1. ``_id`` (document-store identifier) → fixed-width text.
    2. Identifier candidates (``_id``, ``id``, ``uuid`` and casing variants)
       become the owning object's primary key; otherwise a synthetic
       auto-increment integer key is created by the caller.
    3. Name patterns override value evidence for common domains
       (email, phone, money, dates).
    4. Otherwise the runtime shape of the sampled values decides.

A ``<name>_id`` field whose ``<name>`` is in the self-reference vocabulary
(manager, supervisor, ...) is a same-table foreign key and copies the
owning table's primary-key type.

Design Decision:
    Pure functions with no side effects make this module trivially testable.
    Ambiguity never raises: it widens the type and returns a warning, so
    the normalizer can keep going.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Sequence

from models.schema import ColumnDef, StorageType

IDENTIFIER_CANDIDATES = ("_id", "id", "uuid", "ID", "Id", "UUID")
SELF_REFERENCE_NAMES = frozenset(
    {"manager", "supervisor", "parent", "reports_to", "referred_by"}
)

_UNIQUE_NAME_PARTS = ("email", "username")
_UNIQUE_NAMES = frozenset({"ssn", "passport"})
_MONEY_PARTS = ("price", "salary", "amount", "cost", "budget")

INT32_MIN = -(2 ** 31)
INT32_MAX = 2 ** 31 - 1
INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1
OBJECT_ID_LENGTH = 24
DEFAULT_VARCHAR = 255
PHONE_VARCHAR = 25
MONEY_PRECISION = 12
MONEY_SCALE = 2
MIN_DECIMAL_SCALE = 2
MAX_DECIMAL_SCALE = 6
MAX_DECIMAL_PRECISION = 38

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_RE = re.compile(r"^[\d\s\-()+]{8,20}$")


@dataclass(frozen=True)
class InferredType:
    """Outcome of inferring one column from its samples."""
    type: StorageType
    nullable: bool = True
    length: int | None = None
    precision: int | None = None
    scale: int | None = None
    unique: bool = False
    primary_key: bool = False
    self_reference: bool = False
    warnings: tuple[str, ...] = ()

    def to_column(self, name: str) -> ColumnDef:
        return ColumnDef(
            name=name,
            type=self.type,
            nullable=self.nullable and not self.primary_key,
            is_primary_key=self.primary_key,
            length=self.length,
            precision=self.precision,
            scale=self.scale,
        )


# ---------------------------------------------------------------------------
# Name predicates
# ---------------------------------------------------------------------------

def is_scalar(value: Any) -> bool:
    return not isinstance(value, (dict, list, tuple, set))


def fits_int64(value: int) -> bool:
    return INT64_MIN <= value <= INT64_MAX


def detect_identifier(obj: Mapping[str, Any]) -> str | None:
    """
    Return the first identifier candidate present on *obj* with a scalar,
    non-null value, or ``None`` when a synthetic key is needed.
    """
    for candidate in IDENTIFIER_CANDIDATES:
        if candidate in obj and obj[candidate] is not None and is_scalar(obj[candidate]):
            return candidate
    return None


def is_self_reference(name: str) -> bool:
    lower = name.lower()
    return lower.endswith("_id") and lower[:-3] in SELF_REFERENCE_NAMES


def is_unique_field(name: str) -> bool:
    lower = name.lower()
    return any(part in lower for part in _UNIQUE_NAME_PARTS) or lower in _UNIQUE_NAMES


def is_key_shaped(name: str) -> bool:
    lower = name.lower()
    return lower == "id" or lower.endswith("_id")


def _is_date_name(lower: str) -> bool:
    return "date" in lower or lower.endswith("_at") or lower.endswith("_on")


def synthetic_key(name: str = "id") -> ColumnDef:
    """Auto-increment integer primary key for objects without an identifier."""
    return ColumnDef(
        name=name,
        type=StorageType.INTEGER,
        nullable=False,
        is_primary_key=True,
        auto_increment=True,
    )


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------

def parse_iso(value: str) -> datetime | None:
    """Parse an ISO-8601 date or timestamp string, or return ``None``."""
    text = value.strip()
    if not _ISO_DATE_RE.match(text):
        return None
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None


def iso_shape(value: str) -> str | None:
    """Return ``"date"`` / ``"timestamp"`` for ISO-8601 strings, else ``None``."""
    if parse_iso(value) is None:
        return None
    return "timestamp" if len(value.strip()) > 10 else "date"


def as_decimal(value: Any) -> Decimal | None:
    """Exact decimal for numbers and numeric strings; ``None`` for anything else."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, Decimal)):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(repr(value)) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            parsed = Decimal(value.strip())
        except InvalidOperation:
            return None
        return parsed if parsed.is_finite() else None
    return None


def _decimal_shape(values: Sequence[Any]) -> tuple[int, int]:
    """Largest integer-digit count and scale observed among *values*."""
    int_digits, scale = 1, 0
    for value in values:
        number = as_decimal(value)
        if number is None:
            continue
        _, digits, exponent = number.as_tuple()
        if not isinstance(exponent, int):
            continue
        scale = max(scale, -exponent if exponent < 0 else 0)
        int_digits = max(int_digits, len(digits) + exponent)
    return int_digits, scale


def _kind(value: Any) -> str:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, int):
        return "int"
    if isinstance(value, (float, Decimal)):
        return "decimal"
    if isinstance(value, datetime):
        return "timestamp"
    if isinstance(value, date):
        return "date"
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "binary"
    if isinstance(value, (dict, list, tuple, set)):
        return "json"
    return "str"


def _text_type(values: Sequence[Any]) -> tuple[StorageType, int | None]:
    longest = max((len(str(v)) for v in values), default=0)
    if longest > DEFAULT_VARCHAR:
        return StorageType.TEXT, None
    return StorageType.VARCHAR, DEFAULT_VARCHAR


# ---------------------------------------------------------------------------
# Inference
# ---------------------------------------------------------------------------

def infer_column(
    name: str,
    samples: Sequence[Any],
    *,
    primary_key: bool = False,
    owner_key: ColumnDef | None = None,
) -> InferredType:
    """
    Infer a column's storage type from its name and sampled values.

    Args:
        name:        Field name as found in the source record.
        samples:     Values observed for the field; absent fields count as ``None``.
        primary_key: The caller selected this field as the object's identifier.
        owner_key:   Primary key of the owning table, used for self references.

    Returns:
        :class:`InferredType`; ``warnings`` lists any ambiguity encountered.

    Example::

        infer_column("_id", ["507f1f77bcf86cd799439011"], primary_key=True).type
        # StorageType.CHAR
    """
    present = [v for v in samples if v is not None]
    nullable = not samples or len(present) < len(samples)
    lower = name.lower()

    if name == "_id":
        width = max([OBJECT_ID_LENGTH] + [len(str(v)) for v in present])
        return InferredType(
            StorageType.CHAR, nullable=nullable, length=width, primary_key=primary_key
        )

    if owner_key is not None and not primary_key and is_self_reference(name):
        return InferredType(
            owner_key.type,
            nullable=True,
            length=owner_key.length,
            precision=owner_key.precision,
            scale=owner_key.scale,
            self_reference=True,
        )

    warnings: list[str] = []
    result = _infer_by_name(name, lower, present, nullable, warnings)
    if result is None:
        result = _infer_by_values(name, present, nullable, warnings)

    unique = (
        is_unique_field(name)
        and not primary_key
        and result.type not in (StorageType.TEXT, StorageType.JSON, StorageType.BINARY)
    )
    return InferredType(
        result.type,
        nullable=result.nullable,
        length=result.length,
        precision=result.precision,
        scale=result.scale,
        unique=unique,
        primary_key=primary_key,
        warnings=tuple(warnings),
    )


def infer_storage_type(name: str, value: Any) -> InferredType:
    """Single-sample convenience wrapper around :func:`infer_column`."""
    return infer_column(name, [value])


def _infer_by_name(
    name: str,
    lower: str,
    present: list[Any],
    nullable: bool,
    warnings: list[str],
) -> InferredType | None:
    if is_key_shaped(name):
        if all(isinstance(v, int) and not isinstance(v, bool) for v in present):
            return _integer_type(name, present, nullable, warnings, wide=True)
        return None

    if "email" in lower:
        if all(isinstance(v, str) for v in present):
            longest = max((len(v) for v in present), default=0)
            if longest <= DEFAULT_VARCHAR:
                return InferredType(StorageType.VARCHAR, nullable=nullable, length=DEFAULT_VARCHAR)
            warnings.append(f"Field '{name}' holds values longer than {DEFAULT_VARCHAR} characters; using TEXT")
            return InferredType(StorageType.TEXT, nullable=nullable)
        warnings.append(f"Field '{name}' looks like an email but holds non-text values; inferred from values")
        return None

    if "phone" in lower or "mobile" in lower:
        if all(isinstance(v, (str, int)) and not isinstance(v, bool) for v in present):
            longest = max((len(str(v)) for v in present), default=0)
            if longest <= PHONE_VARCHAR:
                return InferredType(StorageType.VARCHAR, nullable=nullable, length=PHONE_VARCHAR)
            warnings.append(
                f"Field '{name}' looks like a phone number but holds values longer than "
                f"{PHONE_VARCHAR} characters; widened to VARCHAR({DEFAULT_VARCHAR})"
            )
            return InferredType(StorageType.VARCHAR, nullable=nullable, length=DEFAULT_VARCHAR)
        warnings.append(f"Field '{name}' looks like a phone number but holds non-text values; inferred from values")
        return None

    if any(part in lower for part in _MONEY_PARTS):
        if all(as_decimal(v) is not None for v in present):
            int_digits, scale = _decimal_shape(present)
            if scale > MONEY_SCALE:
                warnings.append(
                    f"Field '{name}' has values with {scale} decimal places; "
                    f"stored with {MONEY_SCALE}"
                )
            precision = min(max(MONEY_PRECISION, int_digits + MONEY_SCALE), MAX_DECIMAL_PRECISION)
            return InferredType(
                StorageType.DECIMAL, nullable=nullable, precision=precision, scale=MONEY_SCALE
            )
        warnings.append(f"Field '{name}' looks monetary but holds non-numeric values; inferred from values")
        return None

    if _is_date_name(lower):
        shapes = set()
        for value in present:
            if isinstance(value, datetime):
                shapes.add("timestamp")
            elif isinstance(value, date):
                shapes.add("date")
            elif isinstance(value, str) and iso_shape(value):
                shapes.add(iso_shape(value))
            else:
                shapes.add(None)
        if None not in shapes:
            kind = StorageType.TIMESTAMP if "timestamp" in shapes else StorageType.DATE
            return InferredType(kind, nullable=nullable)
        if any(isinstance(v, str) for v in present):
            warnings.append(f"Field '{name}' looks like a date but holds non-date values; inferred from values")
        return None

    return None


def _infer_by_values(
    name: str,
    present: list[Any],
    nullable: bool,
    warnings: list[str],
) -> InferredType:
    if not present:
        return InferredType(StorageType.VARCHAR, nullable=True, length=DEFAULT_VARCHAR)

    kinds = {_kind(v) for v in present}

    if kinds == {"bool"}:
        return InferredType(StorageType.BOOLEAN, nullable=nullable)

    if kinds == {"int"}:
        return _integer_type(name, present, nullable, warnings)

    if kinds <= {"int", "decimal"}:
        if "int" in kinds:
            warnings.append(f"Field '{name}' mixes integers and fractions; widened to DECIMAL")
        return _decimal_type(name, present, nullable, warnings)

    if kinds <= {"date", "timestamp"}:
        kind = StorageType.TIMESTAMP if "timestamp" in kinds else StorageType.DATE
        return InferredType(kind, nullable=nullable)

    if kinds == {"binary"}:
        return InferredType(StorageType.BINARY, nullable=nullable)

    if kinds == {"json"}:
        return InferredType(StorageType.JSON, nullable=nullable)

    if kinds == {"str"}:
        shapes = {iso_shape(v) for v in present}
        if None not in shapes:
            kind = StorageType.TIMESTAMP if "timestamp" in shapes else StorageType.DATE
            return InferredType(kind, nullable=nullable)
        if all(_EMAIL_RE.match(v) for v in present):
            return InferredType(StorageType.VARCHAR, nullable=nullable, length=DEFAULT_VARCHAR)
        if all(_PHONE_RE.match(v) for v in present):
            return InferredType(StorageType.VARCHAR, nullable=nullable, length=PHONE_VARCHAR)
        text_type, length = _text_type(present)
        return InferredType(text_type, nullable=nullable, length=length)

    if "json" in kinds:
        warnings.append(
            f"Field '{name}' mixes nested and scalar values ({', '.join(sorted(kinds))}); stored as JSON"
        )
        return InferredType(StorageType.JSON, nullable=nullable)

    warnings.append(
        f"Field '{name}' has mixed value types ({', '.join(sorted(kinds))}); stored as text"
    )
    text_type, length = _text_type(present)
    return InferredType(text_type, nullable=nullable, length=length)


def _integer_type(
    name: str, present: list[Any], nullable: bool, warnings: list[str], wide: bool = False
) -> InferredType:
    low, high = min(present, default=0), max(present, default=0)
    if fits_int64(low) and fits_int64(high):
        if wide or low < INT32_MIN or high > INT32_MAX:
            return InferredType(StorageType.BIGINT, nullable=nullable)
        return InferredType(StorageType.INTEGER, nullable=nullable)

    digits = max(len(str(abs(low))), len(str(abs(high))))
    if digits > MAX_DECIMAL_PRECISION:
        warnings.append(
            f"Field '{name}' holds integers wider than {MAX_DECIMAL_PRECISION} digits; stored as text"
        )
        text_type, length = _text_type(present)
        return InferredType(text_type, nullable=nullable, length=length)
    warnings.append(f"Field '{name}' holds integers beyond the 64-bit range; stored as DECIMAL")
    return InferredType(
        StorageType.DECIMAL, nullable=nullable, precision=MAX_DECIMAL_PRECISION, scale=0
    )


def _decimal_type(
    name: str, present: list[Any], nullable: bool, warnings: list[str]
) -> InferredType:
    if any(isinstance(v, float) and not math.isfinite(v) for v in present):
        warnings.append(f"Field '{name}' contains NaN or infinite values; stored as text")
        text_type, length = _text_type(present)
        return InferredType(text_type, nullable=nullable, length=length)

    int_digits, scale = _decimal_shape(present)
    scale = min(max(scale, MIN_DECIMAL_SCALE), MAX_DECIMAL_SCALE)
    precision = max(MONEY_PRECISION, int_digits + scale)
    if precision > MAX_DECIMAL_PRECISION:
        warnings.append(
            f"Field '{name}' needs more than {MAX_DECIMAL_PRECISION} digits; precision capped"
        )
        precision = MAX_DECIMAL_PRECISION
    return InferredType(StorageType.DECIMAL, nullable=nullable, precision=precision, scale=scale)
