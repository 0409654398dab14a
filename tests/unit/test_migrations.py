"""
Tests for the migration runner.

Most run against real SQLite databases; the PostgreSQL tests drive the
runner through PostgresAdapter on the pool fake and inspect the statements
it sent.
"""

import hashlib
import logging
from datetime import datetime

import pytest

from datalayer.database.adapters.postgres import PostgresAdapter
from datalayer.database.errors import DuplicateMigrationError, MigrationError
from datalayer.database.migrations import (
    INSERT_LEDGER_SQL,
    LEDGER_TABLE,
    MigrationRunner,
    compute_checksum,
    find_rollback_file,
)

from conftest import SqlStateError


async def ledger_ids(adapter):
    result = await adapter.query("SELECT id FROM migrations ORDER BY id")
    return [row["id"] for row in result.rows]


class TestDiscovery:
    """Files are found, filtered and ordered numerically."""

    def test_numeric_ordering(self, sqlite_adapter, write_migration):
        write_migration("010_ten.sql", "SELECT 10;")
        write_migration("002_two.sql", "SELECT 2;")
        write_migration("001_one.sql", "SELECT 1;")

        runner = MigrationRunner(sqlite_adapter, sqlite_adapter.migrations_dir)
        assert [m.id for m in runner.discover_migrations()] == ["001", "002", "010"]

    def test_numeric_not_lexical(self, sqlite_adapter, write_migration):
        write_migration("1000_later.sql", "SELECT 1000;")
        write_migration("999_earlier.sql", "SELECT 999;")

        runner = MigrationRunner(sqlite_adapter, sqlite_adapter.migrations_dir)
        assert [m.ordinal for m in runner.discover_migrations()] == [999, 1000]

    def test_rollback_and_unrecognised_files_skipped(self, sqlite_adapter, write_migration, caplog):
        write_migration("001_users.sql", "SELECT 1;")
        write_migration("001_users_rollback.sql", "DROP TABLE users;")
        write_migration("notes.sql", "SELECT 2;")
        write_migration("002_readme.txt", "not sql")

        runner = MigrationRunner(sqlite_adapter, sqlite_adapter.migrations_dir)
        with caplog.at_level(logging.WARNING):
            migrations = runner.discover_migrations()

        assert [m.filename for m in migrations] == ["001_users.sql"]
        assert "notes.sql" in caplog.text

    def test_rollback_in_description_is_still_a_migration(self, sqlite_adapter, write_migration, caplog):
        write_migration("006_users.sql", "SELECT 6;")
        write_migration("006_users_rollback.sql", "DROP TABLE users;")
        write_migration("007_rollback_window.sql", "CREATE TABLE rollback_window (id INTEGER);")

        runner = MigrationRunner(sqlite_adapter, sqlite_adapter.migrations_dir)
        with caplog.at_level(logging.DEBUG, logger="datalayer.database.migrations"):
            migrations = runner.discover_migrations()

        assert [m.filename for m in migrations] == ["006_users.sql", "007_rollback_window.sql"]
        assert "Skipping rollback companion 006_users_rollback.sql" in caplog.text

    def test_find_rollback_file(self, migrations_dir, write_migration):
        write_migration("007_rollback_window.sql", "SELECT 7;")
        write_migration("008_orders.sql", "SELECT 8;")
        write_migration("008_orders_rollback.sql", "DROP TABLE orders;")

        assert find_rollback_file(migrations_dir, "008").name == "008_orders_rollback.sql"
        assert find_rollback_file(migrations_dir, "007") is None
        assert find_rollback_file(migrations_dir / "missing", "008") is None

    def test_duplicate_ordinal_raises(self, sqlite_adapter, write_migration):
        write_migration("001_first.sql", "SELECT 1;")
        write_migration("01_second.sql", "SELECT 2;")

        runner = MigrationRunner(sqlite_adapter, sqlite_adapter.migrations_dir)
        with pytest.raises(DuplicateMigrationError):
            runner.discover_migrations()

    def test_missing_directory_yields_nothing(self, sqlite_adapter, tmp_path):
        runner = MigrationRunner(sqlite_adapter, tmp_path / "does-not-exist")
        assert runner.discover_migrations() == []

    def test_checksum_is_sha256_of_content(self, sqlite_adapter, write_migration):
        sql = "CREATE TABLE a (id INTEGER);\n"
        write_migration("001_a.sql", sql)

        runner = MigrationRunner(sqlite_adapter, sqlite_adapter.migrations_dir)
        migration = runner.discover_migrations()[0]

        expected = hashlib.sha256(sql.encode("utf-8")).hexdigest()
        assert migration.checksum == expected
        assert compute_checksum(sql) == expected
        assert compute_checksum(sql + " ") != expected


class TestRunMigrations:
    """Pending migrations run once, in order, and are recorded."""

    async def test_applies_in_order_and_records(self, sqlite_adapter, write_migration):
        write_migration("001_users.sql", "CREATE TABLE users (id TEXT PRIMARY KEY, email TEXT);")
        write_migration("002_clients.sql", "CREATE TABLE clients (id TEXT PRIMARY KEY, user_id TEXT);")
        write_migration("010_seed.sql", "INSERT INTO users (id, email) VALUES ('u1', 'a@example.com');")

        applied = await sqlite_adapter.run_migrations()

        assert [m.id for m in applied] == ["001", "002", "010"]
        assert await ledger_ids(sqlite_adapter) == ["001", "002", "010"]
        users = await sqlite_adapter.query("SELECT email FROM users")
        assert users.rows == [{"email": "a@example.com"}]

    async def test_second_run_is_a_no_op(self, sqlite_adapter, write_migration):
        write_migration("001_seed.sql", (
            "CREATE TABLE counters (n INTEGER);\n"
            "INSERT INTO counters (n) VALUES (1);"
        ))

        assert len(await sqlite_adapter.run_migrations()) == 1
        assert await sqlite_adapter.run_migrations() == []
        assert await sqlite_adapter.run_migrations() == []

        result = await sqlite_adapter.query("SELECT COUNT(*) AS n FROM counters")
        assert result.rows[0]["n"] == 1
        assert await ledger_ids(sqlite_adapter) == ["001"]

    async def test_new_file_applied_on_next_run(self, sqlite_adapter, write_migration):
        write_migration("001_a.sql", "CREATE TABLE a (id INTEGER);")
        await sqlite_adapter.run_migrations()

        write_migration("002_b.sql", "CREATE TABLE b (id INTEGER);")
        applied = await sqlite_adapter.run_migrations()

        assert [m.id for m in applied] == ["002"]
        assert await sqlite_adapter.table_exists("b")

    async def test_ledger_stores_checksum_and_timestamp(self, sqlite_adapter, write_migration):
        path = write_migration("001_a.sql", "CREATE TABLE a (id INTEGER);")
        await sqlite_adapter.run_migrations()

        runner = MigrationRunner(sqlite_adapter, sqlite_adapter.migrations_dir)
        [record] = await runner.executed_migrations()

        assert record.filename == "001_a.sql"
        assert record.checksum == compute_checksum(path.read_text())
        assert isinstance(record.executed_at, datetime)

    async def test_failure_stops_the_run(self, sqlite_adapter, write_migration):
        write_migration("001_ok.sql", "CREATE TABLE first_table (id INTEGER);")
        write_migration("002_broken.sql", (
            "CREATE TABLE second_table (id INTEGER);\n"
            "INSERT INTO no_such_table (id) VALUES (1);"
        ))
        write_migration("003_never.sql", "CREATE TABLE third_table (id INTEGER);")

        with pytest.raises(MigrationError) as exc_info:
            await sqlite_adapter.run_migrations()

        error = exc_info.value
        assert error.migration_id == "002"
        assert error.filename == "002_broken.sql"
        assert error.statement_index == 2

        assert await ledger_ids(sqlite_adapter) == ["001"]
        assert await sqlite_adapter.table_exists("first_table")
        # The failed migration ran in a transaction and was rolled back
        assert not await sqlite_adapter.table_exists("second_table")
        assert not await sqlite_adapter.table_exists("third_table")

    async def test_vacuum_migration_runs_without_transaction(self, sqlite_adapter, write_migration):
        write_migration("001_compact.sql", (
            "CREATE TABLE scratch (id INTEGER);\n"
            "DROP TABLE scratch;\n"
            "VACUUM;\n"
        ))

        applied = await sqlite_adapter.run_migrations()

        assert [m.id for m in applied] == ["001"]
        assert await ledger_ids(sqlite_adapter) == ["001"]

    async def test_failed_migration_retried_after_fix(self, sqlite_adapter, write_migration):
        write_migration("001_broken.sql", "CREATE TABLE;")
        with pytest.raises(MigrationError):
            await sqlite_adapter.run_migrations()

        write_migration("001_broken.sql", "CREATE TABLE fixed (id INTEGER);")
        applied = await sqlite_adapter.run_migrations()

        assert [m.id for m in applied] == ["001"]

    async def test_empty_directory(self, sqlite_adapter):
        assert await sqlite_adapter.run_migrations() == []
        assert await sqlite_adapter.table_exists(LEDGER_TABLE)


class TestDrift:
    """Modified files are reported, never re-executed."""

    async def test_modified_file_is_not_rerun(self, sqlite_adapter, write_migration, caplog):
        write_migration("001_a.sql", "CREATE TABLE a (id INTEGER);")
        await sqlite_adapter.run_migrations()

        write_migration("001_a.sql", "CREATE TABLE a (id INTEGER, extra TEXT);")
        with caplog.at_level(logging.WARNING):
            applied = await sqlite_adapter.run_migrations()

        assert applied == []
        assert "modified since execution" in caplog.text

        columns = await sqlite_adapter.query("SELECT name FROM pragma_table_info('a')")
        assert [row["name"] for row in columns.rows] == ["id"]

    async def test_validate_reports_drift(self, sqlite_adapter, write_migration):
        write_migration("001_a.sql", "CREATE TABLE a (id INTEGER);")
        await sqlite_adapter.run_migrations()
        write_migration("001_a.sql", "-- edited\nCREATE TABLE a (id INTEGER);")

        report = await MigrationRunner(sqlite_adapter, sqlite_adapter.migrations_dir).validate_migrations()

        assert report.valid is False
        assert report.drifted == ["001"]

    async def test_validate_reports_missing_file(self, sqlite_adapter, write_migration):
        path = write_migration("001_a.sql", "CREATE TABLE a (id INTEGER);")
        await sqlite_adapter.run_migrations()
        path.unlink()

        report = await MigrationRunner(sqlite_adapter, sqlite_adapter.migrations_dir).validate_migrations()

        assert report.missing_files == ["001"]
        assert any("no longer exists" in issue for issue in report.issues)

    async def test_validate_reports_gaps(self, sqlite_adapter, write_migration):
        write_migration("001_a.sql", "SELECT 1;")
        write_migration("004_d.sql", "SELECT 4;")

        report = await MigrationRunner(sqlite_adapter, sqlite_adapter.migrations_dir).validate_migrations()

        assert report.gaps == [(2, 3)]
        assert not report.valid

    async def test_validate_clean(self, sqlite_adapter, write_migration):
        write_migration("001_a.sql", "CREATE TABLE a (id INTEGER);")
        write_migration("002_b.sql", "CREATE TABLE b (id INTEGER);")
        await sqlite_adapter.run_migrations()

        report = await MigrationRunner(sqlite_adapter, sqlite_adapter.migrations_dir).validate_migrations()

        assert report.valid
        assert report.issues == []


class TestStatus:
    """Status reporting is read-only."""

    async def test_status_before_any_run(self, sqlite_adapter, write_migration):
        write_migration("001_a.sql", "CREATE TABLE a (id INTEGER);")
        write_migration("002_b.sql", "CREATE TABLE b (id INTEGER);")

        runner = MigrationRunner(sqlite_adapter, sqlite_adapter.migrations_dir)
        status = await runner.get_migration_status()

        assert (status.total, status.executed, status.pending) == (2, 0, 2)
        assert all(m.status == "pending" for m in status.migrations)
        assert not await sqlite_adapter.table_exists(LEDGER_TABLE)

    async def test_status_after_partial_run(self, sqlite_adapter, write_migration):
        write_migration("001_a.sql", "CREATE TABLE a (id INTEGER);")
        await sqlite_adapter.run_migrations()
        write_migration("002_b.sql", "CREATE TABLE b (id INTEGER);")
        write_migration("001_a.sql", "CREATE TABLE a (id INTEGER, v TEXT);")

        status = await MigrationRunner(sqlite_adapter, sqlite_adapter.migrations_dir).get_migration_status()

        assert (status.total, status.executed, status.pending) == (2, 1, 1)
        first, second = status.migrations
        assert first.status == "executed"
        assert first.modified is True
        assert first.executed_at is not None
        assert second.status == "pending"

    async def test_pending_migrations_does_not_create_ledger(self, sqlite_adapter, write_migration):
        write_migration("001_a.sql", "CREATE TABLE a (id INTEGER);")

        runner = MigrationRunner(sqlite_adapter, sqlite_adapter.migrations_dir)
        pending = await runner.pending_migrations()

        assert [m.id for m in pending] == ["001"]
        assert not await sqlite_adapter.table_exists(LEDGER_TABLE)


@pytest.fixture
async def postgres_adapter(postgres_config, pool_factory, migrations_dir):
    adapter = PostgresAdapter(postgres_config, pool_factory=pool_factory, migrations_dir=migrations_dir)
    await adapter.initialize()
    yield adapter
    await adapter.close()


def sent_after_ledger_read(pool):
    """(connection, statement) pairs sent once the ledger had been read."""
    texts = [text.strip() for _, text, _ in pool.statements]
    start = max(i for i, text in enumerate(texts) if text.startswith("SELECT id, filename")) + 1
    return list(zip(pool.connections[start:], texts[start:]))


def ledger_inserts(pool):
    return [args for _, text, args in pool.statements if text == INSERT_LEDGER_SQL]


class TestPostgresRunner:
    """Per-migration transactions on a pooled connection."""

    async def test_statements_and_ledger_row_share_one_transaction(
        self, postgres_adapter, pool_factory, write_migration
    ):
        path = write_migration("001_accounts.sql", (
            "CREATE TABLE accounts (id SERIAL PRIMARY KEY);\n"
            "CREATE INDEX idx_accounts_id ON accounts(id);\n"
        ))
        pool = pool_factory.pool

        applied = await postgres_adapter.run_migrations()

        assert [m.id for m in applied] == ["001"]
        sent = sent_after_ledger_read(pool)
        assert [text for _, text in sent] == [
            "BEGIN",
            "CREATE TABLE accounts (id SERIAL PRIMARY KEY)",
            "CREATE INDEX idx_accounts_id ON accounts(id)",
            INSERT_LEDGER_SQL,
            "COMMIT",
        ]
        assert len({connection for connection, _ in sent}) == 1
        assert ledger_inserts(pool) == [("001", "001_accounts.sql", compute_checksum(path.read_text()))]
        assert pool.checked_out == 0

    async def test_failure_rolls_back_and_stops(self, postgres_adapter, pool_factory, write_migration):
        write_migration("001_ok.sql", "CREATE TABLE first_table (id INT);")
        write_migration("002_broken.sql", (
            "CREATE TABLE second_table (id INT);\n"
            "INSERT INTO no_such_table (id) VALUES (1);"
        ))
        write_migration("003_never.sql", "CREATE TABLE third_table (id INT);")
        pool = pool_factory.pool
        pool.on("INSERT INTO no_such_table", error=SqlStateError('relation "no_such_table" does not exist', "42P01"))

        with pytest.raises(MigrationError) as exc_info:
            await postgres_adapter.run_migrations()

        assert exc_info.value.migration_id == "002"
        assert exc_info.value.statement_index == 2

        texts = [text for _, text in sent_after_ledger_read(pool)]
        assert texts[-3:] == [
            "CREATE TABLE second_table (id INT)",
            "INSERT INTO no_such_table (id) VALUES (1)",
            "ROLLBACK",
        ]
        assert texts.count("COMMIT") == 1
        assert "CREATE TABLE third_table (id INT)" not in texts
        assert [args[0] for args in ledger_inserts(pool)] == ["001"]
        assert pool.checked_out == 0

    async def test_ledger_insert_failure_rolls_back(self, postgres_adapter, pool_factory, write_migration):
        write_migration("001_accounts.sql", "CREATE TABLE accounts (id INT);")
        pool = pool_factory.pool
        pool.on("INSERT INTO migrations", error=SqlStateError("permission denied for table migrations", "42501"))

        with pytest.raises(MigrationError) as exc_info:
            await postgres_adapter.run_migrations()

        assert "could not be recorded" in str(exc_info.value)
        assert [text for _, text in sent_after_ledger_read(pool)][-1] == "ROLLBACK"
        assert pool.checked_out == 0

    async def test_concurrent_index_migration_runs_outside_a_transaction(
        self, postgres_adapter, pool_factory, write_migration
    ):
        write_migration("015_onboarding.sql", "CREATE TABLE a (id INT);")
        write_migration("016_performance_indexes.sql", (
            "-- Indexes are built without locking writes\n"
            "CREATE INDEX CONCURRENTLY IF NOT EXISTS idx_a ON a(id);\n"
            "CREATE UNIQUE INDEX CONCURRENTLY IF NOT EXISTS idx_a_unique ON a(id);\n"
        ))
        pool = pool_factory.pool

        applied = await postgres_adapter.run_migrations()

        assert [m.id for m in applied] == ["015", "016"]
        texts = [text for _, text in sent_after_ledger_read(pool)]
        assert texts[:4] == ["BEGIN", "CREATE TABLE a (id INT)", INSERT_LEDGER_SQL, "COMMIT"]
        assert texts[4].endswith("CREATE INDEX CONCURRENTLY IF NOT EXISTS idx_a ON a(id)")
        assert texts[5:] == [
            "CREATE UNIQUE INDEX CONCURRENTLY IF NOT EXISTS idx_a_unique ON a(id)",
            INSERT_LEDGER_SQL,
        ]
        assert texts.count("BEGIN") == 1
        assert [args[0] for args in ledger_inserts(pool)] == ["015", "016"]
        assert pool.checked_out == 0

    async def test_failed_concurrent_index_is_not_recorded(self, postgres_adapter, pool_factory, write_migration):
        write_migration("001_indexes.sql", "CREATE INDEX CONCURRENTLY idx_a ON a(id);")
        pool = pool_factory.pool
        pool.on("CONCURRENTLY", error=SqlStateError('relation "a" does not exist', "42P01"))

        with pytest.raises(MigrationError):
            await postgres_adapter.run_migrations()

        assert ledger_inserts(pool) == []
        assert "ROLLBACK" not in [text for _, text in sent_after_ledger_read(pool)]
        assert pool.checked_out == 0
