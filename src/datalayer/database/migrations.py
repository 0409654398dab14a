"""
Database Migration Runner

Applies versioned SQL migration files exactly once and in numeric order,
recording each in the `migrations` ledger table.

Run:  Discover -> Ensure ledger -> Diff -> Execute pending (sequential) -> Record

File format:
    NNN_description.sql            (NNN = numeric ordinal, unique per directory)
    NNN_description_rollback.sql   companion script, never applied

Transactions:
    Where the backend supports transactional DDL, a migration's statements
    and its ledger row run in one transaction on one client. A migration
    containing any statement that cannot run inside a transaction block
    (CREATE/DROP INDEX CONCURRENTLY, REINDEX ... CONCURRENTLY, REFRESH
    MATERIALIZED VIEW CONCURRENTLY, VACUUM, ALTER SYSTEM, CREATE/DROP
    DATABASE or TABLESPACE) runs statement by statement in autocommit
    instead, followed by its ledger row. Keep such statements in a
    migration of their own: a failure part-way leaves the earlier
    statements applied.

A migration already in the ledger is never re-executed, even when its file
has changed since; that drift is logged and reported by
validate_migrations() for an operator to review.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple, Union

from ..observability.tracing import add_event_to_span, create_span, traced
from .config import DEFAULT_MIGRATIONS_DIR
from .errors import DuplicateMigrationError, MigrationError
from .sql import requires_autocommit, split_statements, truncate_query

if TYPE_CHECKING:
    from .adapters.base import DatabaseAdapter, DatabaseClient

logger = logging.getLogger(__name__)

LEDGER_TABLE = "migrations"

MIGRATION_FILENAME = re.compile(r"^(?P<id>\d+)_.+\.sql$", re.IGNORECASE)

# Hand-run companion of a migration: NNN_description_rollback.sql
ROLLBACK_FILENAME = re.compile(r"^(?P<id>\d+)_(?:.*_)?rollback\.sql$", re.IGNORECASE)

CREATE_LEDGER_SQL = """
CREATE TABLE IF NOT EXISTS migrations (
    id VARCHAR(255) PRIMARY KEY,
    filename VARCHAR(255) NOT NULL,
    executed_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    checksum VARCHAR(64) NOT NULL
)
"""

SELECT_LEDGER_SQL = "SELECT id, filename, executed_at, checksum FROM migrations ORDER BY id"

INSERT_LEDGER_SQL = (
    "INSERT INTO migrations (id, filename, executed_at, checksum) "
    "VALUES ($1, $2, CURRENT_TIMESTAMP, $3)"
)


def compute_checksum(content: str) -> str:
    """SHA-256 hex digest of the migration text."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class MigrationFile:
    """A migration read from disk."""

    id: str  # Filename prefix as written, e.g. "001"
    filename: str
    path: Path
    content: str
    checksum: str

    @property
    def ordinal(self) -> int:
        return int(self.id)


@dataclass(frozen=True)
class MigrationRecord:
    """A ledger row."""

    id: str
    filename: str
    executed_at: Optional[datetime]
    checksum: str

    @property
    def ordinal(self) -> int:
        return int(self.id)


@dataclass
class MigrationFileStatus:
    id: str
    filename: str
    status: str  # "executed" | "pending"
    executed_at: Optional[datetime] = None
    modified: bool = False


@dataclass
class MigrationStatus:
    total: int
    executed: int
    pending: int
    migrations: List[MigrationFileStatus] = field(default_factory=list)


@dataclass
class MigrationValidation:
    valid: bool
    issues: List[str] = field(default_factory=list)
    drifted: List[str] = field(default_factory=list)
    missing_files: List[str] = field(default_factory=list)
    gaps: List[Tuple[int, int]] = field(default_factory=list)


def _coerce_timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Unparseable executed_at value in ledger: {value!r}")
        return None


class MigrationRunner:
    """
    Runs migrations from one directory through one adapter.

    Usage:
        runner = MigrationRunner(adapter, Path("db/migrations"))
        applied = await runner.run_migrations()
        report = await runner.validate_migrations()
    """

    def __init__(
        self,
        adapter: "DatabaseAdapter",
        migrations_dir: Optional[Union[str, Path]] = None,
    ):
        self.adapter = adapter
        self.migrations_dir = Path(migrations_dir or DEFAULT_MIGRATIONS_DIR)

    # =========================================================================
    # Discovery
    # =========================================================================

    @traced("migrations.discover", result_attributes=lambda found: {"migrations.found": len(found)})
    def discover_migrations(self) -> List[MigrationFile]:
        """
        Read migration files, sorted by numeric ordinal.

        Raises:
            DuplicateMigrationError: If two files share an ordinal
        """
        if not self.migrations_dir.is_dir():
            logger.warning(f"Migrations directory not found: {self.migrations_dir}")
            return []

        migrations: List[MigrationFile] = []
        seen: Dict[int, str] = {}

        for path in self.migrations_dir.iterdir():
            if not path.is_file() or path.suffix.lower() != ".sql":
                continue
            if ROLLBACK_FILENAME.match(path.name):
                logger.debug(f"Skipping rollback companion {path.name}")
                continue

            match = MIGRATION_FILENAME.match(path.name)
            if not match:
                logger.warning(
                    f"Skipping {path.name}: migration files must be named NNN_description.sql"
                )
                continue

            migration_id = match.group("id")
            ordinal = int(migration_id)
            if ordinal in seen:
                raise DuplicateMigrationError(
                    f"Duplicate migration id {ordinal}: {seen[ordinal]} and {path.name}",
                    migration_id=migration_id,
                    filename=path.name,
                )
            seen[ordinal] = path.name

            content = path.read_text(encoding="utf-8")
            migrations.append(MigrationFile(
                id=migration_id,
                filename=path.name,
                path=path,
                content=content,
                checksum=compute_checksum(content),
            ))

        # Numeric, not lexical: "1000_x.sql" sorts after "999_y.sql"
        migrations.sort(key=lambda m: m.ordinal)
        logger.debug(f"Found {len(migrations)} migration files in {self.migrations_dir}")
        return migrations

    # =========================================================================
    # Ledger
    # =========================================================================

    async def ensure_ledger(self) -> None:
        """Create the ledger table if it does not exist."""
        await self.adapter.query(CREATE_LEDGER_SQL)
        logger.debug("Migrations table ensured")

    async def executed_migrations(self) -> List[MigrationRecord]:
        """Ledger rows, sorted by ordinal. The ledger table must exist."""
        result = await self.adapter.query(SELECT_LEDGER_SQL)
        records = [
            MigrationRecord(
                id=str(row["id"]),
                filename=row["filename"],
                executed_at=_coerce_timestamp(row.get("executed_at")),
                checksum=row["checksum"],
            )
            for row in result.rows
        ]
        records.sort(key=lambda r: r.ordinal)
        return records

    async def _executed_if_ledger(self) -> List[MigrationRecord]:
        if not await self.adapter.table_exists(LEDGER_TABLE):
            return []
        return await self.executed_migrations()

    def find_pending(
        self,
        migrations: List[MigrationFile],
        executed: List[MigrationRecord],
    ) -> List[MigrationFile]:
        """
        Files with no ledger row. Drifted files are logged, never re-run.
        """
        by_ordinal = {record.ordinal: record for record in executed}
        pending = []

        for migration in migrations:
            record = by_ordinal.get(migration.ordinal)
            if record is None:
                pending.append(migration)
                continue
            if record.checksum != migration.checksum:
                logger.warning(
                    f"Migration {migration.id} has been modified since execution",
                    extra={
                        "migration_file": migration.filename,
                        "original_checksum": record.checksum,
                        "current_checksum": migration.checksum,
                    },
                )

        return pending

    async def pending_migrations(self) -> List[MigrationFile]:
        """Pending files without touching the database schema."""
        return self.find_pending(self.discover_migrations(), await self._executed_if_ledger())

    # =========================================================================
    # Execution
    # =========================================================================

    async def run_migrations(self) -> List[MigrationFile]:
        """
        Apply all pending migrations in ascending id order.

        Stops at the first failing migration; later ones are not attempted.

        Returns:
            The migrations applied by this run (empty when up to date)

        Raises:
            MigrationError: If a migration statement or its ledger insert fails
        """
        with create_span(
            "migrations.run",
            {"migrations.dir": str(self.migrations_dir), "db.system": self.adapter.dialect},
        ) as span:
            logger.info("Starting migration process")
            try:
                await self.ensure_ledger()
                migrations = self.discover_migrations()
                executed = await self.executed_migrations()
                pending = self.find_pending(migrations, executed)

                if not pending:
                    logger.info("No pending migrations found")
                    span.set_attribute("migrations.applied", 0)
                    return []

                logger.info(f"Found {len(pending)} pending migration(s)")
                for migration in pending:
                    logger.info(f"  - {migration.filename}")

                applied = []
                for migration in pending:
                    await self._execute_migration(migration)
                    applied.append(migration)
            except Exception as e:
                logger.error(f"Migration process failed: {e}")
                raise

            span.set_attribute("migrations.applied", len(applied))
            logger.info("All migrations completed successfully")
            return applied

    async def _execute_migration(self, migration: MigrationFile) -> None:
        statements = split_statements(migration.content)
        logger.info(f"Executing migration: {migration.filename} ({len(statements)} statements)")

        with create_span(
            "migrations.apply",
            {"migration.id": migration.id, "migration.filename": migration.filename},
        ):
            started = datetime.now()
            autocommit = [i for i, s in enumerate(statements, start=1) if requires_autocommit(s)]
            if self.adapter.supports_transactional_ddl and not autocommit:
                await self._execute_in_transaction(migration, statements)
            else:
                if autocommit and self.adapter.supports_transactional_ddl:
                    logger.info(
                        f"Migration {migration.filename} runs without a transaction: "
                        f"statement(s) {', '.join(map(str, autocommit))} cannot run inside one",
                        extra={"migration_file": migration.filename},
                    )
                    add_event_to_span("migration.autocommit", {"migration.statements": len(autocommit)})
                await self._execute_statements(self.adapter, migration, statements)
                await self._record(self.adapter, migration)

            duration_ms = (datetime.now() - started).total_seconds() * 1000
            add_event_to_span("migration.recorded", {"migration.checksum": migration.checksum})
            logger.info(
                f"Migration {migration.filename} completed successfully",
                extra={"duration_ms": round(duration_ms, 2)},
            )

    async def _execute_in_transaction(
        self,
        migration: MigrationFile,
        statements: List[str],
    ) -> None:
        client = await self.adapter.get_client()
        try:
            await client.query("BEGIN")
            try:
                await self._execute_statements(client, migration, statements)
                await self._record(client, migration)
                await client.query("COMMIT")
            except Exception:
                await _rollback(client, migration)
                raise
        finally:
            await client.release()

    async def _execute_statements(
        self,
        executor: Union["DatabaseAdapter", "DatabaseClient"],
        migration: MigrationFile,
        statements: List[str],
    ) -> None:
        for index, statement in enumerate(statements, start=1):
            try:
                await executor.query(statement)
            except Exception as e:
                logger.error(
                    f"Failed to execute migration statement {index} of {migration.filename}: {e}",
                    extra={"statement": truncate_query(statement)},
                )
                raise MigrationError(
                    f"Migration {migration.filename} failed at statement {index}: {e}",
                    migration_id=migration.id,
                    filename=migration.filename,
                    statement_index=index,
                ) from e

    async def _record(
        self,
        executor: Union["DatabaseAdapter", "DatabaseClient"],
        migration: MigrationFile,
    ) -> None:
        try:
            await executor.query(
                INSERT_LEDGER_SQL,
                [migration.id, migration.filename, migration.checksum],
            )
        except Exception as e:
            raise MigrationError(
                f"Migration {migration.filename} ran but could not be recorded: {e}",
                migration_id=migration.id,
                filename=migration.filename,
            ) from e

    # =========================================================================
    # Diagnostics (read-only)
    # =========================================================================

    async def get_migration_status(self) -> MigrationStatus:
        """Per-file executed/pending status."""
        migrations = self.discover_migrations()
        executed = {r.ordinal: r for r in await self._executed_if_ledger()}

        statuses = []
        for migration in migrations:
            record = executed.get(migration.ordinal)
            statuses.append(MigrationFileStatus(
                id=migration.id,
                filename=migration.filename,
                status="executed" if record else "pending",
                executed_at=record.executed_at if record else None,
                modified=bool(record and record.checksum != migration.checksum),
            ))

        executed_count = sum(1 for s in statuses if s.status == "executed")
        return MigrationStatus(
            total=len(migrations),
            executed=executed_count,
            pending=len(migrations) - executed_count,
            migrations=statuses,
        )

    async def validate_migrations(self) -> MigrationValidation:
        """
        Report drift and gaps without changing anything.

        Findings:
        - files modified since they were executed
        - ledger rows whose file no longer exists
        - non-contiguous ids among the files on disk
        """
        migrations = self.discover_migrations()
        executed = await self._executed_if_ledger()
        files = {m.ordinal: m for m in migrations}

        report = MigrationValidation(valid=True)

        for record in executed:
            migration = files.get(record.ordinal)
            if migration is None:
                report.missing_files.append(record.id)
                report.issues.append(
                    f"Executed migration {record.filename} no longer exists in filesystem"
                )
            elif migration.checksum != record.checksum:
                report.drifted.append(record.id)
                report.issues.append(
                    f"Migration {record.filename} has been modified since execution"
                )

        ordinals = sorted(files)
        for previous, current in zip(ordinals, ordinals[1:]):
            if current != previous + 1:
                gap = (previous + 1, current - 1)
                report.gaps.append(gap)
                missing = str(gap[0]) if gap[0] == gap[1] else f"{gap[0]}-{gap[1]}"
                report.issues.append(f"Gap in migration sequence: missing migration {missing}")

        report.valid = not report.issues
        return report


async def _rollback(client: "DatabaseClient", migration: MigrationFile) -> None:
    try:
        await client.query("ROLLBACK")
    except Exception as e:
        # The original failure is re-raised by the caller
        logger.error(f"Rollback of {migration.filename} failed: {e}")


def find_rollback_file(migrations_dir: Union[str, Path], migration_id: str) -> Optional[Path]:
    """The rollback companion for a migration id, if one exists."""
    directory = Path(migrations_dir)
    if not directory.is_dir():
        return None
    candidates = []
    for path in directory.iterdir():
        match = ROLLBACK_FILENAME.match(path.name)
        if path.is_file() and match and int(match.group("id")) == int(migration_id):
            candidates.append(path)
    candidates.sort()
    return candidates[0] if candidates else None
