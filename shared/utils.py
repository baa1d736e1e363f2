"""
Shared utility functions for the migration core.
"""
import hashlib
import re


_IDENTIFIER_RE = re.compile(r"[^a-zA-Z0-9_]")
_CAMEL_RE = re.compile(r"(?<=[a-z0-9])([A-Z])")


def short_hash(text: str, length: int = 8) -> str:
    """
    Stable short digest of *text*, used to keep generated constraint names
    unique after truncation.

    Args:
        text: Input string
        length: Number of hex characters to keep

    Returns:
        Hexadecimal prefix of the MD5 digest
    """
    return hashlib.md5(text.encode("utf-8")).hexdigest()[:length]


def calculate_progress_percentage(completed: int, total: int) -> float:
    """
    Calculate progress percentage.

    Args:
        completed: Number of completed items
        total: Total number of items

    Returns:
        Progress percentage (0-100)
    """
    if total == 0:
        return 0.0
    return round(min(completed, total) / total * 100, 2)


def calculate_throughput(rows_processed: int, duration_seconds: float) -> float:
    """
    Calculate throughput in rows per second.

    Args:
        rows_processed: Number of rows processed
        duration_seconds: Duration in seconds

    Returns:
        Rows per second
    """
    if duration_seconds <= 0:
        return 0.0
    return round(rows_processed / duration_seconds, 2)


def format_duration(seconds: float) -> str:
    """
    Format duration in human-readable format.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string (e.g., "2h 30m 15s"); sub-second durations as "0.42s"
    """
    if seconds < 1:
        return f"{seconds:.2f}s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")

    return " ".join(parts)


def sanitize_identifier(name: str, fallback: str = "field") -> str:
    """
    Make *name* safe to use as an unquoted SQL identifier.

    Every character outside ``[a-zA-Z0-9_]`` becomes ``_``; a leading digit
    gets an underscore prefix.

    Args:
        name: Raw field or table name
        fallback: Returned when nothing usable remains

    Returns:
        Sanitized identifier
    """
    cleaned = _IDENTIFIER_RE.sub("_", str(name).strip('`"\' '))
    if not cleaned.strip("_"):
        return fallback
    if cleaned[0].isdigit():
        cleaned = f"_{cleaned}"
    return cleaned


def to_snake_case(name: str) -> str:
    """
    Convert camelCase / PascalCase / spaced names to snake_case.

    Args:
        name: Raw name

    Returns:
        Lower-case snake_case name
    """
    spaced = _CAMEL_RE.sub(r"_\1", name.strip())
    return re.sub(r"[\s\-]+", "_", spaced).lower()
