"""
core/enhancer.py
----------------
Optional schema suggestion hook.

Given the generated DDL and a small data sample, an external service may
return human-readable suggestions and type-correction hints. The result is
advisory metadata only: it never changes the inferred schema.

Design Decisions:
    * The hook runs on a worker thread bounded by a timeout, so a slow
      service cannot hold up the migration.
    * Every failure (network error, bad payload, timeout) becomes a single
      warning; the migration continues unchanged.
"""
from __future__ import annotations

import json
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

import requests

from config import CONFIG
from core.errors import ExternalEnhancementFailure
from logger import get_logger

log = get_logger(__name__)


@dataclass
class EnhancementResult:
    suggestions: list[str] = field(default_factory=list)
    type_corrections: list[dict[str, Any]] = field(default_factory=list)


class SchemaEnhancer(Protocol):
    def enhance(self, ddl: Sequence[str], sample: Sequence[Any]) -> EnhancementResult: ...


class HttpSchemaEnhancer:
    """
    Posts ``{"ddl": ..., "sample": ...}`` to *url* and reads back
    ``{"suggestions": [...], "typeCorrections": [...]}``.

    Args:
        url:     Service endpoint.
        timeout: Request timeout in seconds.
        session: Optional ``requests.Session`` (connection reuse, tests).
    """

    def __init__(self, url: str, timeout: float | None = None, session: Any = None) -> None:
        self.url = url
        self.timeout = timeout or CONFIG.migration.enhancer_timeout
        self._http = session or requests

    @classmethod
    def from_config(cls) -> "HttpSchemaEnhancer | None":
        if not CONFIG.migration.enhancer_url:
            return None
        return cls(CONFIG.migration.enhancer_url, CONFIG.migration.enhancer_timeout)

    def enhance(self, ddl: Sequence[str], sample: Sequence[Any]) -> EnhancementResult:
        """
        Raises:
            ExternalEnhancementFailure: On transport errors or an unusable response.
        """
        payload = {"ddl": "\n\n".join(ddl), "sample": json.loads(json.dumps(list(sample), default=str))}
        try:
            response = self._http.post(self.url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except requests.RequestException as exc:
            raise ExternalEnhancementFailure(f"Suggestion service unavailable: {exc}") from exc
        except ValueError as exc:
            raise ExternalEnhancementFailure(f"Suggestion service returned invalid JSON: {exc}") from exc

        if not isinstance(body, dict):
            raise ExternalEnhancementFailure("Suggestion service returned an unexpected payload")
        suggestions = body.get("suggestions") or []
        corrections = body.get("typeCorrections") or []
        if not isinstance(suggestions, list) or not isinstance(corrections, list):
            raise ExternalEnhancementFailure("Suggestion service returned an unexpected payload")
        return EnhancementResult(
            suggestions=[str(s) for s in suggestions],
            type_corrections=[c for c in corrections if isinstance(c, dict)],
        )


def run_enhancer(
    enhancer: SchemaEnhancer,
    ddl: Sequence[str],
    sample: Sequence[Any],
    timeout: float,
) -> tuple[EnhancementResult, str | None]:
    """
    Call *enhancer* with a deadline.

    Returns:
        ``(result, warning)``; on any failure the result is empty and
        *warning* describes what went wrong.
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="enhancer")
    try:
        future = executor.submit(enhancer.enhance, ddl, sample)
        return future.result(timeout=timeout), None
    except FutureTimeout:
        message = f"Schema suggestion hook timed out after {timeout:g}s"
    except ExternalEnhancementFailure as exc:
        message = f"Schema suggestion hook failed: {exc}"
    except Exception as exc:  # noqa: BLE001
        message = f"Schema suggestion hook raised {type(exc).__name__}: {exc}"
    finally:
        executor.shutdown(wait=False)
    log.warning(message)
    return EnhancementResult(), message
