"""
config.py
---------
Centralised configuration management for the data migration core.

Loads settings from environment variables (with .env file support via
python-dotenv). Provides typed settings as frozen dataclasses so
configuration is immutable at runtime.

Design Decision:
    Using a dataclass with class-level defaults means the tool works
    "out of the box" without any .env file, while still allowing
    environment-based overrides for production deployments.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

_env_path = Path(__file__).parent / ".env"
if _env_path.exists():
    load_dotenv(dotenv_path=_env_path)

_DEFAULT_PORTS = {"postgres": 5432, "mysql": 3306, "sqlite": 0}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _default_port() -> int:
    raw = os.getenv("DB_PORT")
    if raw:
        return int(raw)
    return _DEFAULT_PORTS.get(os.getenv("DB_DIALECT", "postgres").lower(), 5432)


@dataclass(frozen=True)
class DatabaseConfig:
    """Relational destination settings."""
    dialect: str = field(
        default_factory=lambda: os.getenv("DB_DIALECT", "postgres").lower()
    )
    host: str = field(default_factory=lambda: os.getenv("DB_HOST", "localhost"))
    port: int = field(default_factory=_default_port)
    database: str = field(default_factory=lambda: os.getenv("DB_NAME", "migration"))
    charset: str = field(default_factory=lambda: os.getenv("DB_CHARSET", "utf8mb4"))
    connect_timeout: int = field(
        default_factory=lambda: int(os.getenv("DB_CONNECT_TIMEOUT", "10"))
    )
    max_retries: int = field(
        default_factory=lambda: int(os.getenv("DB_MAX_RETRIES", "3"))
    )
    retry_delay: float = field(
        default_factory=lambda: float(os.getenv("DB_RETRY_DELAY", "1.0"))
    )
    # Username / password are NOT stored here; they are supplied at runtime
    # so credentials never persist in config files.


@dataclass(frozen=True)
class DocumentStoreConfig:
    """MongoDB destination settings."""
    uri: str = field(
        default_factory=lambda: os.getenv("MONGO_URI", "mongodb://localhost:27017")
    )
    database: str = field(
        default_factory=lambda: os.getenv("MONGO_DATABASE", "migration")
    )
    server_selection_timeout_ms: int = field(
        default_factory=lambda: int(os.getenv("MONGO_TIMEOUT_MS", "5000"))
    )


@dataclass(frozen=True)
class MigrationConfig:
    """Migration engine settings."""
    chunk_size: int = field(
        default_factory=lambda: int(os.getenv("MIGRATION_CHUNK_SIZE", "1000"))
    )
    sample_size: int = field(
        default_factory=lambda: int(os.getenv("MIGRATION_SAMPLE_SIZE", "100"))
    )
    drop_existing: bool = field(
        default_factory=lambda: _env_bool("MIGRATION_DROP_EXISTING", True)
    )
    max_parallel_tables: int = field(
        default_factory=lambda: int(os.getenv("MIGRATION_MAX_PARALLEL_TABLES", "1"))
    )
    root_table: str = field(
        default_factory=lambda: os.getenv("MIGRATION_ROOT_TABLE", "records")
    )
    enhancer_url: str | None = field(
        default_factory=lambda: os.getenv("ENHANCER_URL")  # None → no hook
    )
    enhancer_timeout: float = field(
        default_factory=lambda: float(os.getenv("ENHANCER_TIMEOUT", "10"))
    )
    log_level: str = field(
        default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").upper()
    )
    log_file: str | None = field(
        default_factory=lambda: os.getenv("LOG_FILE")  # None → log to stderr only
    )


@dataclass(frozen=True)
class AppConfig:
    """Root application configuration."""
    db: DatabaseConfig = field(default_factory=DatabaseConfig)
    mongo: DocumentStoreConfig = field(default_factory=DocumentStoreConfig)
    migration: MigrationConfig = field(default_factory=MigrationConfig)
    app_name: str = "Polystore Migrator"
    app_version: str = "1.0.0"


def load_config() -> AppConfig:
    """
    Build and return the application configuration.

    Returns:
        AppConfig: Fully populated (and frozen) configuration object.

    Example::

        cfg = load_config()
        print(cfg.db.dialect)              # "postgres"
        print(cfg.migration.chunk_size)    # 1000
    """
    return AppConfig()


# Module-level singleton used throughout the application
CONFIG: AppConfig = load_config()


def get_log_level() -> int:
    """Convert string log level from config to logging module constant."""
    level = getattr(logging, CONFIG.migration.log_level, None)
    if not isinstance(level, int):
        return logging.INFO
    return level
