#!/usr/bin/env python3
"""
SQLite -> PostgreSQL Data Transfer

Copies rows from the development SQLite database into the configured
PostgreSQL database. Run the schema migrations against the target first.

Usage:
    python -m datalayer.migrate_data --dry-run            # Count rows, write nothing
    python -m datalayer.migrate_data                      # Copy every table
    python -m datalayer.migrate_data --table users        # Copy one table

Environment:
    SUPABASE_DB_URL / DATABASE_URL / DB_* select the target exactly as the
    application does. SQLITE_FILENAME names the source unless --sqlite is given.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from typing import List, Optional

from .database.adapters import DatabaseAdapter, SqliteAdapter, create_adapter
from .database.config import DEFAULT_SQLITE_FILENAME, ConfigResolver, SqliteConfig
from .database.errors import DatabaseError
from .database.transfer import DEFAULT_BATCH_SIZE, DataTransfer, TransferReport
from .migrate import init_observability


def print_summary(report: TransferReport) -> None:
    print("\n" + "=" * 60)
    print("TRANSFER SUMMARY" + (" (DRY RUN)" if report.dry_run else ""))
    print("=" * 60)

    for table in report.tables:
        status = "✅" if table.verified else "❌"
        print(
            f"  {status} {table.table}: {table.source_rows} rows, "
            f"{table.copied} copied, {table.skipped} already present"
        )
        if table.dropped_columns:
            print(f"      ⚠️  Not copied (missing in target): {', '.join(table.dropped_columns)}")
        for issue in table.issues:
            print(f"      • {issue}")

    for table in report.missing_tables:
        print(f"  ❌ {table}: table missing in target (run migrations first)")

    print("-" * 60)
    print(
        f"Total: {report.total_source_rows} rows  Copied: {report.total_copied}  "
        f"Already present: {report.total_skipped}"
    )
    print("=" * 60)


async def run_transfer(
    source: DatabaseAdapter,
    target: DatabaseAdapter,
    *,
    tables: Optional[List[str]] = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
    dry_run: bool = False,
) -> int:
    print("=" * 60)
    print("SQLite -> PostgreSQL Data Transfer")
    if dry_run:
        print("DRY RUN - No changes will be made")
    print("=" * 60)

    await source.initialize()
    try:
        await target.initialize()
        try:
            transfer = DataTransfer(source, target, batch_size=batch_size, dry_run=dry_run)
            report = await transfer.run(tables)
        finally:
            await target.close()
    finally:
        await source.close()

    print_summary(report)
    if report.ok:
        print("\n✅ Transfer verified")
        return 0
    print("\n❌ Transfer finished with problems")
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="datalayer-migrate-data",
        description="Copy data from SQLite into PostgreSQL",
    )
    parser.add_argument("--dry-run", action="store_true", help="Count rows without writing")
    parser.add_argument(
        "--table", action="append", dest="tables", metavar="TABLE",
        help="Copy only this table (repeatable)",
    )
    parser.add_argument("--batch-size", type=int, default=DEFAULT_BATCH_SIZE, help="Rows per transaction")
    parser.add_argument("--sqlite", default=None, help="SQLite database file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser


def _default_target() -> DatabaseAdapter:
    config = ConfigResolver().resolve()
    if isinstance(config, SqliteConfig):
        raise DatabaseError(
            "The configured database is SQLite; set DATABASE_URL or SUPABASE_DB_URL to the target"
        )
    return create_adapter(config)


async def main(
    argv: Optional[List[str]] = None,
    source: Optional[DatabaseAdapter] = None,
    target: Optional[DatabaseAdapter] = None,
) -> int:
    args = build_parser().parse_args(argv)
    init_observability(args.verbose)

    try:
        if source is None:
            filename = args.sqlite or os.getenv("SQLITE_FILENAME") or DEFAULT_SQLITE_FILENAME
            source = SqliteAdapter(SqliteConfig(filename=filename))
        if target is None:
            target = _default_target()

        return await run_transfer(
            source,
            target,
            tables=args.tables,
            batch_size=args.batch_size,
            dry_run=args.dry_run,
        )
    except (DatabaseError, ValueError) as e:
        print(f"\n❌ {e}", file=sys.stderr)
        return 1


def run() -> None:
    """Console script entry point."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
