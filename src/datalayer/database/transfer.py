"""
Data Transfer: SQLite -> PostgreSQL

Copies the rows of an embedded SQLite database into another backend whose
schema has already been migrated, then checks row counts table by table.

Run:  List tables -> Order by foreign keys -> Copy in batches -> Verify counts

Each batch is inserted in one transaction with ON CONFLICT DO NOTHING, so a
transfer can be re-run after a failure: rows already present are counted as
skipped rather than duplicated. Values are coerced to the target column
types (SQLite keeps booleans as 0/1 and timestamps as text).

Usage:
    transfer = DataTransfer(sqlite_adapter, postgres_adapter, batch_size=500)
    report = await transfer.run()
    if not report.ok:
        for table in report.tables:
            print(table.table, table.issues)
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

from ..observability.tracing import create_span
from .config import DatabaseBackend
from .errors import DataTransferError, UnsupportedOperationError
from .migrations import LEDGER_TABLE
from .sql import quote_identifier

if TYPE_CHECKING:
    from .adapters.base import DatabaseAdapter

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000

# Each backend keeps its own migration history
EXCLUDED_TABLES = frozenset({LEDGER_TABLE, "schema_migrations"})

_SQLITE_TABLES_SQL = (
    "SELECT name FROM sqlite_master "
    "WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
)

_POSTGRES_COLUMNS_SQL = (
    "SELECT column_name AS name, data_type AS type FROM information_schema.columns "
    "WHERE table_schema = current_schema() AND table_name = $1 ORDER BY ordinal_position"
)

_POSTGRES_SEQUENCE_SQL = "SELECT pg_get_serial_sequence($1, $2) AS seq"

_INTEGER_TYPES = ("smallint", "integer", "bigint")
_FLOAT_TYPES = ("real", "double precision")
_TRUE_STRINGS = ("1", "true", "t", "yes", "y", "on")


@dataclass
class TableTransfer:
    """Outcome for one table."""

    table: str
    source_rows: int = 0
    target_rows_before: int = 0
    target_rows_after: int = 0
    copied: int = 0
    skipped: int = 0  # Already present in the target
    columns: List[str] = field(default_factory=list)
    dropped_columns: List[str] = field(default_factory=list)  # Not in the target
    issues: List[str] = field(default_factory=list)

    @property
    def verified(self) -> bool:
        return not self.issues


@dataclass
class TransferReport:
    dry_run: bool
    tables: List[TableTransfer] = field(default_factory=list)
    missing_tables: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.missing_tables and all(t.verified for t in self.tables)

    @property
    def total_source_rows(self) -> int:
        return sum(t.source_rows for t in self.tables)

    @property
    def total_copied(self) -> int:
        return sum(t.copied for t in self.tables)

    @property
    def total_skipped(self) -> int:
        return sum(t.skipped for t in self.tables)


def coerce_value(value: Any, target_type: str) -> Any:
    """
    Convert a SQLite value for a PostgreSQL column of `target_type`.

    `target_type` is information_schema's data_type, e.g. "boolean" or
    "timestamp with time zone". Unknown types pass the value through.
    """
    if value is None:
        return None
    kind = target_type.lower()

    if kind == "boolean":
        if isinstance(value, str):
            return value.strip().lower() in _TRUE_STRINGS
        return bool(value)

    if kind.startswith("timestamp") or kind == "date":
        parsed = _parse_datetime(value)
        if kind == "date":
            return parsed.date()
        if "without time zone" in kind:
            return parsed.astimezone(timezone.utc).replace(tzinfo=None) if parsed.tzinfo else parsed
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    if kind in ("json", "jsonb"):
        if isinstance(value, str):
            try:
                json.loads(value)
                return value
            except ValueError:
                pass
        return json.dumps(value)

    if kind in _INTEGER_TYPES:
        return int(value)
    if kind == "numeric":
        return Decimal(str(value))
    if kind in _FLOAT_TYPES:
        return float(value)
    if kind == "uuid":
        return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
    if kind in ("text", "character varying", "character") and not isinstance(value, str):
        return str(value)
    return value


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, timezone.utc)
    return datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))


def dependency_order(tables: Iterable[str], parents: Dict[str, List[str]]) -> List[str]:
    """
    Order tables so referenced tables come before the tables that reference
    them. Tables caught in a reference cycle keep name order at the end.
    """
    remaining = sorted(tables)
    ordered: List[str] = []
    placed = set()

    while remaining:
        ready = [
            t for t in remaining
            if all(p in placed or p == t or p not in remaining for p in parents.get(t, []))
        ]
        if not ready:
            logger.warning(f"Foreign key cycle between tables: {', '.join(remaining)}")
            ordered.extend(remaining)
            break
        for table in ready:
            ordered.append(table)
            placed.add(table)
        remaining = [t for t in remaining if t not in placed]

    return ordered


class DataTransfer:
    """
    Copies tables from a SQLite adapter to a PostgreSQL or SQLite adapter.

    Both adapters must already be initialized; the caller closes them.
    """

    def __init__(
        self,
        source: "DatabaseAdapter",
        target: "DatabaseAdapter",
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        dry_run: bool = False,
    ):
        if source.backend != DatabaseBackend.SQLITE:
            raise UnsupportedOperationError(
                f"Data transfer reads from SQLite, not {source.backend.value}"
            )
        if target.backend == DatabaseBackend.SUPABASE:
            raise UnsupportedOperationError(
                "Data transfer needs a SQL connection to the target; the Supabase SDK "
                "backend cannot run it. Point DATABASE_URL at the Supabase database instead."
            )
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.source = source
        self.target = target
        self.batch_size = batch_size
        self.dry_run = dry_run

    # =========================================================================
    # Discovery
    # =========================================================================

    async def source_tables(self) -> List[str]:
        """Source tables in foreign-key order, migration ledgers excluded."""
        result = await self.source.query(_SQLITE_TABLES_SQL)
        tables = [row["name"] for row in result.rows if row["name"] not in EXCLUDED_TABLES]

        parents = {}
        for table in tables:
            keys = await self.source.query(f"PRAGMA foreign_key_list({quote_identifier(table)})")
            parents[table] = [row["table"] for row in keys.rows]
        return dependency_order(tables, parents)

    async def _source_columns(self, table: str) -> List[str]:
        result = await self.source.query(f"PRAGMA table_info({quote_identifier(table)})")
        return [row["name"] for row in result.rows]

    async def _target_columns(self, table: str) -> Dict[str, str]:
        if self.target.backend == DatabaseBackend.POSTGRESQL:
            result = await self.target.query(_POSTGRES_COLUMNS_SQL, [table])
        else:
            result = await self.target.query(f"PRAGMA table_info({quote_identifier(table)})")
        return {row["name"]: (row["type"] or "") for row in result.rows}

    async def _count(self, adapter: "DatabaseAdapter", table: str) -> int:
        result = await adapter.query(f"SELECT COUNT(*) AS n FROM {quote_identifier(table)}")
        return int(result.rows[0]["n"])

    # =========================================================================
    # Transfer
    # =========================================================================

    async def run(self, tables: Optional[List[str]] = None) -> TransferReport:
        """
        Copy every source table, or just `tables`, and verify row counts.

        Raises:
            DataTransferError: If a batch fails to insert (that batch is rolled back)
        """
        report = TransferReport(dry_run=self.dry_run)
        available = await self.source_tables()

        if tables:
            unknown = [t for t in tables if t not in available]
            for table in unknown:
                logger.warning(f"Table {table} not found in the SQLite database")
            selected = [t for t in available if t in tables]
        else:
            selected = available

        logger.info(
            f"Transferring {len(selected)} table(s)",
            extra={"tables": selected, "dry_run": self.dry_run, "batch_size": self.batch_size},
        )

        for table in selected:
            if not await self.target.table_exists(table):
                logger.error(f"Table {table} does not exist in the target; run migrations first")
                report.missing_tables.append(table)
                continue
            report.tables.append(await self.transfer_table(table))

        logger.info(
            "Transfer finished",
            extra={
                "source_rows": report.total_source_rows,
                "copied": report.total_copied,
                "skipped": report.total_skipped,
                "ok": report.ok,
            },
        )
        return report

    async def transfer_table(self, table: str) -> TableTransfer:
        """Copy one table in batches and check the counts afterwards."""
        stats = TableTransfer(table=table)

        with create_span("transfer.table", {"db.table": table, "transfer.dry_run": self.dry_run}) as span:
            source_columns = await self._source_columns(table)
            target_types = await self._target_columns(table)
            stats.columns = [c for c in source_columns if c in target_types]
            stats.dropped_columns = [c for c in source_columns if c not in target_types]
            if stats.dropped_columns:
                logger.warning(
                    f"Columns of {table} missing in the target are not copied: "
                    f"{', '.join(stats.dropped_columns)}"
                )

            stats.source_rows = await self._count(self.source, table)
            stats.target_rows_before = await self._count(self.target, table)
            logger.info(f"Exporting {stats.source_rows} rows from {table}")

            if self.dry_run or stats.source_rows == 0:
                stats.target_rows_after = stats.target_rows_before
                span.set_attribute("transfer.rows", 0)
                return stats

            offset = 0
            while offset < stats.source_rows:
                rows = await self._read_batch(table, stats.columns, offset)
                if not rows:
                    break
                copied = await self._write_batch(table, stats.columns, target_types, rows, offset)
                stats.copied += copied
                stats.skipped += len(rows) - copied
                offset += len(rows)

                if stats.source_rows > self.batch_size:
                    logger.info(f"Export progress for {table}: {offset}/{stats.source_rows}")

            if self.target.backend == DatabaseBackend.POSTGRESQL:
                await self._sync_sequences(table, stats.columns, target_types)

            stats.target_rows_after = await self._count(self.target, table)
            self._verify(stats, await self._count(self.source, table))
            span.set_attribute("transfer.rows", stats.copied)

        return stats

    async def _read_batch(self, table: str, columns: List[str], offset: int) -> List[Dict[str, Any]]:
        column_list = ", ".join(quote_identifier(c) for c in columns)
        result = await self.source.query(
            f"SELECT {column_list} FROM {quote_identifier(table)} LIMIT $1 OFFSET $2",
            [self.batch_size, offset],
        )
        return result.rows

    async def _write_batch(
        self,
        table: str,
        columns: List[str],
        target_types: Dict[str, str],
        rows: List[Dict[str, Any]],
        offset: int,
    ) -> int:
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        insert_sql = (
            f"INSERT INTO {quote_identifier(table)} "
            f"({', '.join(quote_identifier(c) for c in columns)}) "
            f"VALUES ({placeholders}) ON CONFLICT DO NOTHING"
        )
        coerce = self.target.backend == DatabaseBackend.POSTGRESQL

        copied = 0
        client = await self.target.get_client()
        try:
            await client.query("BEGIN")
            try:
                for row in rows:
                    values = [
                        coerce_value(row[c], target_types[c]) if coerce else row[c]
                        for c in columns
                    ]
                    result = await client.query(insert_sql, values)
                    copied += result.row_count
                await client.query("COMMIT")
            except Exception as e:
                await client.query("ROLLBACK")
                logger.error(f"Batch at row {offset} of {table} failed: {e}")
                raise DataTransferError(
                    f"Transfer of {table} failed in the batch starting at row {offset}: {e}",
                    table=table,
                    offset=offset,
                ) from e
        finally:
            await client.release()
        return copied

    async def _sync_sequences(self, table: str, columns: List[str], target_types: Dict[str, str]) -> None:
        """Move serial sequences past the copied ids."""
        for column in columns:
            if target_types[column].lower() not in _INTEGER_TYPES:
                continue
            result = await self.target.query(_POSTGRES_SEQUENCE_SQL, [table, column])
            sequence = result.rows[0]["seq"] if result.rows else None
            if not sequence:
                continue
            await self.target.query(
                f"SELECT setval($1::regclass, "
                f"(SELECT COALESCE(MAX({quote_identifier(column)}), 0) + 1 FROM {quote_identifier(table)}), false)",
                [sequence],
            )
            logger.debug(f"Sequence {sequence} synchronized for {table}.{column}")

    def _verify(self, stats: TableTransfer, source_rows_now: int) -> None:
        if source_rows_now != stats.source_rows:
            stats.issues.append(
                f"{stats.table}: source changed during transfer "
                f"({stats.source_rows} rows before, {source_rows_now} after)"
            )
        if stats.copied + stats.skipped != stats.source_rows:
            stats.issues.append(
                f"{stats.table}: read {stats.copied + stats.skipped} of {stats.source_rows} source rows"
            )
        expected = stats.target_rows_before + stats.copied
        if stats.target_rows_after != expected:
            stats.issues.append(
                f"{stats.table}: target has {stats.target_rows_after} rows, expected {expected}"
            )

        if stats.issues:
            for issue in stats.issues:
                logger.error(f"Integrity check failed: {issue}")
        else:
            logger.debug(f"Validated table {stats.table}: {stats.source_rows} rows")
