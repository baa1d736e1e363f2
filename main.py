"""
main.py
-------
Command-line entry point.

    python main.py plan users.json --dialect postgres
    python main.py migrate users.json --target sqlite --database out.db
    python main.py migrate orders.ndjson --target mongo --uri mongodb://localhost:27017

Credentials are never read from configuration: the password comes from the
``DB_PASSWORD`` environment variable or an interactive prompt.
"""
from __future__ import annotations

import argparse
import getpass
import os
import sys

from config import CONFIG
from core.database import (
    Destination,
    MySQLDestination,
    PostgresDestination,
    SQLiteDestination,
)
from core.ddl import Dialect
from core.document_store import MongoDestination
from core.enhancer import HttpSchemaEnhancer
from core.errors import MigrationError
from core.migrator import MigrationOrchestrator, plan_migration
from core.sources import SourceError, load_document_source
from logger import get_logger

log = get_logger(__name__)


def _password() -> str:
    return os.getenv("DB_PASSWORD") or getpass.getpass("Database password: ")


def build_destination(args: argparse.Namespace) -> Destination:
    """Destination for ``migrate`` from parsed CLI arguments."""
    target = args.target
    if target == "sqlite":
        return SQLiteDestination(args.database or f"{CONFIG.db.database}.db")
    if target == "mongo":
        return MongoDestination(
            uri=args.uri or CONFIG.mongo.uri,
            database=args.database or CONFIG.mongo.database,
            server_selection_timeout_ms=CONFIG.mongo.server_selection_timeout_ms,
        )
    if target == "mysql":
        return MySQLDestination.from_config(args.user, _password(), args.database)
    return PostgresDestination.from_config(args.user, _password(), args.database)


def cmd_plan(args: argparse.Namespace) -> int:
    source = load_document_source(args.file, args.root)
    plan = plan_migration(source, args.dialect, args.sample_size)
    print("\n\n".join(plan.ddl))
    print()
    print("Write order: " + (", ".join(plan.order) or "(none)"))
    for i, wave in enumerate(plan.waves):
        print(f"  wave {i}: {', '.join(wave)}")
    for cycle in plan.cycles:
        print("Cycle: " + " -> ".join(cycle))
    for warning in plan.warnings:
        print(f"Warning: {warning}")
    return 0


def cmd_migrate(args: argparse.Namespace) -> int:
    source = load_document_source(args.file, args.root)
    orchestrator = MigrationOrchestrator(
        build_destination(args),
        chunk_size=args.chunk_size,
        drop_existing=not args.no_drop,
        max_parallel_tables=args.parallel,
        sample_size=args.sample_size,
        enhancer=HttpSchemaEnhancer.from_config(),
    )
    report = orchestrator.run(source)
    print(report.summary())
    for suggestion in report.suggestions:
        print(f"Suggestion: {suggestion}")
    return 0 if report.succeeded else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="migrator",
        description=f"{CONFIG.app_name} v{CONFIG.app_version}",
    )
    sub = parser.add_subparsers(dest="command")

    def add_source_args(p: argparse.ArgumentParser) -> None:
        p.add_argument("file", help="JSON or NDJSON input file")
        p.add_argument("--root", help="Root table name (defaults to the file's top-level key or name)")
        p.add_argument("--sample-size", type=int, help="Records consulted for type evidence")

    plan = sub.add_parser("plan", help="Print the inferred schema and write order")
    add_source_args(plan)
    plan.add_argument(
        "--dialect", choices=[d.value for d in Dialect], default=CONFIG.db.dialect,
        help="SQL dialect for the generated DDL",
    )

    migrate = sub.add_parser("migrate", help="Migrate records into a destination")
    add_source_args(migrate)
    migrate.add_argument(
        "--target", choices=["postgres", "mysql", "sqlite", "mongo"], default=CONFIG.db.dialect,
    )
    migrate.add_argument("--database", help="Database name (file path for sqlite)")
    migrate.add_argument("--user", default=os.getenv("DB_USER", "root"), help="Database user")
    migrate.add_argument("--uri", help="MongoDB connection string")
    migrate.add_argument("--chunk-size", type=int, help="Rows per write chunk")
    migrate.add_argument("--parallel", type=int, help="Tables written concurrently (mongo only)")
    migrate.add_argument("--no-drop", action="store_true", help="Keep existing tables")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        if args.command == "plan":
            return cmd_plan(args)
        if args.command == "migrate":
            return cmd_migrate(args)
    except (SourceError, MigrationError) as exc:
        log.error("%s", exc)
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    parser.print_help()
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
