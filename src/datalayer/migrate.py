#!/usr/bin/env python3
"""
Database Migration Runner

Usage:
    python -m datalayer.migrate              # Run all pending migrations
    python -m datalayer.migrate --status     # Show migration status
    python -m datalayer.migrate --validate   # Check for drift and gaps
    python -m datalayer.migrate --config     # Show configuration and setup guide
    python -m datalayer.migrate --rollback   # Show rollback instructions

Environment:
    DATABASE_BACKEND, SUPABASE_DB_URL / DATABASE_URL, DB_* and SQLITE_* select
    the database exactly as the application does. MIGRATIONS_DIR overrides
    the migrations directory (default: db/migrations).
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import List, Optional

from . import __version__
from .database.errors import DatabaseError
from .database.migrations import find_rollback_file
from .database.service import DatabaseService
from .observability.logging import configure_logging
from .observability.tracing import init_tracing


def init_observability(verbose: bool = False) -> None:
    """Configure logging and, when a collector is configured, tracing."""
    otlp_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    otel_enabled = os.getenv("OTEL_ENABLED", "false").lower() == "true"
    console_export = os.getenv("OTEL_CONSOLE_EXPORT", "false").lower() == "true"

    configure_logging(
        level="DEBUG" if verbose else os.getenv("LOG_LEVEL", "WARNING"),
        structured=os.getenv("LOG_STRUCTURED", "false").lower() == "true",
        service_name="datalayer-migrate",
    )

    if otel_enabled or otlp_endpoint:
        init_tracing(
            service_name="datalayer-migrate",
            service_version=__version__,
            otlp_endpoint=otlp_endpoint,
            console_export=console_export,
        )


def _banner(title: str) -> None:
    print("=" * 60)
    print(title)
    print("=" * 60)


async def run_all_migrations(service: DatabaseService) -> int:
    """Run all pending migrations."""
    _banner("Database Migration Runner")
    print(f"\nBackend: {service.database_type}")
    print(f"Migrations: {service.migrations_dir}\n")

    await service.initialize(skip_migrations=True)
    try:
        applied = await service.run_migrations()
    finally:
        await service.close()

    if not applied:
        print("No pending migrations. Database is up to date.")
        return 0

    for migration in applied:
        print(f"  ✅ Migration {migration.id} complete ({migration.filename})")

    print("\n" + "=" * 60)
    print(f"✅ {len(applied)} migration(s) applied")
    print("=" * 60)
    return 0


async def show_status(service: DatabaseService) -> int:
    """Show migration status."""
    _banner("Migration Status")
    print(f"\nBackend: {service.database_type}")
    print(f"Migrations: {service.migrations_dir}\n")

    await service.initialize(skip_migrations=True)
    try:
        status = await service.get_migration_status()
    finally:
        await service.close()

    print("Migrations:")
    print("-" * 50)
    for migration in status.migrations:
        if migration.status == "executed":
            label = "✅ Applied"
            if migration.executed_at:
                label += f" at {migration.executed_at.isoformat()}"
            if migration.modified:
                label += " (⚠️  modified since execution)"
        else:
            label = "⏳ Pending"
        print(f"  {migration.id}: {migration.filename}")
        print(f"      Status: {label}")

    print("\n" + "-" * 50)
    print(f"Total: {status.total}  Executed: {status.executed}  Pending: {status.pending}")
    return 0


async def show_validation(service: DatabaseService) -> int:
    """Report drift, missing files and gaps."""
    _banner("Migration Validation")

    await service.initialize(skip_migrations=True)
    try:
        report = await service.validate_migrations()
    finally:
        await service.close()

    if report.valid:
        print("\n✅ Migrations are consistent with the ledger.")
        return 0

    print(f"\n❌ {len(report.issues)} issue(s) found:\n")
    for issue in report.issues:
        print(f"  • {issue}")
    return 1


def show_config(service: DatabaseService) -> int:
    """Print the redacted configuration summary and setup guide."""
    _banner("Database Configuration")
    validation = service.validate_configuration()

    try:
        summary = service.get_config_summary()
    except DatabaseError:
        summary = None
    if summary is not None:
        print(json.dumps(summary, indent=2, default=str))

    for error in validation.errors:
        print(f"  ❌ {error}")
    for warning in validation.warnings:
        print(f"  ⚠️  {warning}")

    print()
    print(service.get_setup_instructions())
    return 0 if validation.is_valid else 1


async def show_rollback(service: DatabaseService) -> int:
    """Show rollback instructions for the last applied migration."""
    _banner("Migration Rollback")
    print("\n⚠️  WARNING: Rollback can cause data loss!")
    print("Rollbacks are never run automatically.\n")

    await service.initialize(skip_migrations=True)
    try:
        status = await service.get_migration_status()
    finally:
        await service.close()

    executed = [m for m in status.migrations if m.status == "executed"]
    if not executed:
        print("No migrations to rollback.")
        return 0

    last = executed[-1]
    rollback_file = find_rollback_file(service.migrations_dir, last.id)
    if rollback_file is None:
        print(f"No rollback file found for migration {last.id}")
        return 1

    print(f"Last applied migration: {last.filename}")
    print(f"Rollback file: {rollback_file.name}")
    print()
    print("To rollback, run the SQL manually, then delete its ledger row:")
    print(f"  psql $SUPABASE_DB_URL -f {rollback_file}")
    print(f"  DELETE FROM migrations WHERE id = '{last.id}';")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="datalayer-migrate",
        description="Database Migration Runner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  datalayer-migrate                      # Run pending migrations
  datalayer-migrate --status             # Show status
  datalayer-migrate --validate           # Check for drift
  datalayer-migrate --dir ./migrations   # Use another migrations directory
        """,
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--status", action="store_true", help="Show migration status")
    mode.add_argument("--validate", action="store_true", help="Check for drift and gaps")
    mode.add_argument("--config", action="store_true", help="Show configuration and setup guide")
    mode.add_argument("--rollback", action="store_true", help="Show rollback instructions")
    parser.add_argument("--dir", type=Path, default=None, help="Migrations directory")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser


async def main(argv: Optional[List[str]] = None, service: Optional[DatabaseService] = None) -> int:
    args = build_parser().parse_args(argv)
    init_observability(args.verbose)

    if service is None:
        # The CLI only applies versioned migrations
        service = DatabaseService(migrations_dir=args.dir, bootstrap_legacy_schema=False)
    elif args.dir is not None:
        service.migrations_dir = args.dir

    try:
        if args.config:
            return show_config(service)
        if args.status:
            return await show_status(service)
        if args.validate:
            return await show_validation(service)
        if args.rollback:
            return await show_rollback(service)
        return await run_all_migrations(service)
    except DatabaseError as e:
        print(f"\n❌ {e}", file=sys.stderr)
        return 1


def run() -> None:
    """Console script entry point."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
