"""
SQLite Adapter

Single-file development backend on aiosqlite. One connection in autocommit
mode is shared by the whole adapter; an asyncio.Lock serializes access so
a checked-out client has the connection to itself until it is released.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from pathlib import Path
from typing import Any, List, Optional

import aiosqlite

from ...observability.tracing import create_span, query_span
from ..config import DatabaseBackend, SqliteConfig
from ..errors import NotInitializedError, QueryTimeoutError
from ..sql import leading_keyword, truncate_query
from .base import DatabaseAdapter, DatabaseClient, QueryParams, QueryResult

logger = logging.getLogger(__name__)

MEMORY_DATABASE = ":memory:"

_POSITIONAL = re.compile(r"\$(\d+)")

_TABLE_EXISTS_SQL = "SELECT name FROM sqlite_master WHERE type = 'table' AND name = $1"


def to_sqlite_placeholders(text: str) -> str:
    """Rewrite PostgreSQL $n placeholders to SQLite's numbered ?n form."""
    return _POSITIONAL.sub(r"?\1", text)


class SqliteClient(DatabaseClient):
    """Exclusive use of the shared connection until release()."""

    def __init__(self, adapter: "SqliteAdapter"):
        super().__init__()
        self._adapter = adapter

    async def query(self, text: str, params: QueryParams = None) -> QueryResult:
        self._ensure_active()
        return await self._adapter._run(text, params)

    async def _release(self) -> None:
        self._adapter._release_connection()


class SqliteAdapter(DatabaseAdapter):
    """
    SQLite backend.

    Usage:
        adapter = SqliteAdapter(SqliteConfig(filename="./data/development.db"))
        await adapter.initialize()
        await adapter.query("INSERT INTO tasks (id, description, type) VALUES ($1, $2, $3)", [...])
    """

    backend = DatabaseBackend.SQLITE
    dialect = "sqlite"
    supports_transactional_ddl = True

    def __init__(self, config: SqliteConfig, **kwargs: Any):
        super().__init__(**kwargs)
        self.config = config
        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        # Task holding a checked-out client, if any
        self._owner: Optional[asyncio.Task] = None

    @property
    def path(self) -> str:
        if self.config.filename == MEMORY_DATABASE:
            return MEMORY_DATABASE
        return str(Path(self.config.filename).expanduser().resolve())

    async def initialize(self) -> None:
        if self._initialized:
            return

        with create_span("db.initialize", {"db.system": "sqlite", "db.name": self.path}):
            try:
                self._connection = await self._connect()
                await self._apply_pragmas()
            except Exception as e:
                logger.error(f"Failed to initialize SQLite database: {e}")
                await self._close_connection()
                raise

            self._initialized = True
            try:
                await self._maybe_bootstrap_legacy_schema()
            except Exception:
                await self.close()
                raise

    async def _connect(self) -> aiosqlite.Connection:
        path = self.path
        if path == MEMORY_DATABASE:
            connection = await aiosqlite.connect(MEMORY_DATABASE, isolation_level=None)
            logger.info("SQLite in-memory database initialized")
            return connection

        directory = Path(path).parent
        if not directory.exists():
            directory.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created database directory: {directory}")

        connection = await aiosqlite.connect(path, isolation_level=None)
        logger.info(f"SQLite database initialized: {path}")
        return connection

    async def _apply_pragmas(self) -> None:
        if self.config.enable_wal:
            await self._connection.execute("PRAGMA journal_mode = WAL")
            logger.debug("SQLite WAL mode enabled")

        await self._connection.execute("PRAGMA synchronous = NORMAL")
        await self._connection.execute("PRAGMA cache_size = 1000")
        await self._connection.execute("PRAGMA temp_store = memory")

    async def query(self, text: str, params: QueryParams = None) -> QueryResult:
        """
        Run one statement on the shared connection.

        A task that holds a checked-out client (for example inside a
        transaction) runs on that same connection instead of queueing
        behind itself. Other tasks wait at most `lock_timeout_ms`.
        """
        self._ensure_initialized()
        if self._held_by_current_task():
            logger.debug(
                "Query issued while this task holds a checked-out client; running on it",
                extra={"query": truncate_query(text)},
            )
            return await self._run(text, params)

        await self._acquire_connection(text)
        try:
            return await self._run(text, params)
        finally:
            self._lock.release()

    async def get_client(self) -> SqliteClient:
        """Check out the connection. Released by client.release()."""
        self._ensure_initialized()
        if self._held_by_current_task():
            raise QueryTimeoutError(
                "This task already holds the SQLite connection through a checked-out client; "
                "release it before checking out another"
            )
        await self._acquire_connection("client checkout")
        self._owner = asyncio.current_task()
        return SqliteClient(self)

    def _held_by_current_task(self) -> bool:
        return self._owner is not None and self._owner is asyncio.current_task()

    async def _acquire_connection(self, purpose: str) -> None:
        timeout_ms = self.config.lock_timeout_ms
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError as e:
            raise QueryTimeoutError(
                f"Waited {timeout_ms} ms for the SQLite connection, which a checked-out client "
                f"still holds: {truncate_query(purpose)}"
            ) from e

    def _release_connection(self) -> None:
        self._owner = None
        self._lock.release()

    async def table_exists(self, name: str) -> bool:
        result = await self.query(_TABLE_EXISTS_SQL, [name])
        return bool(result.rows)

    async def close(self) -> None:
        if self._connection is None:
            return
        await self._close_connection()
        self._initialized = False
        logger.info("SQLite database connection closed")

    async def _close_connection(self) -> None:
        connection, self._connection = self._connection, None
        if connection is not None:
            await connection.close()

    async def _run(self, text: str, params: QueryParams) -> QueryResult:
        if self._connection is None:
            raise NotInitializedError("SQLite adapter")

        args: List[Any] = list(params or ())
        sql = to_sqlite_placeholders(text) if args else text
        start = time.perf_counter()

        with query_span("sqlite", truncate_query(text), leading_keyword(text)):
            try:
                cursor = await self._connection.execute(sql, args)
                try:
                    if cursor.description:
                        fields = [column[0] for column in cursor.description]
                        rows = [dict(zip(fields, row)) for row in await cursor.fetchall()]
                        result = QueryResult(rows=rows, row_count=len(rows), fields=fields)
                    else:
                        result = QueryResult(rows=[], row_count=max(cursor.rowcount, 0))
                finally:
                    await cursor.close()
            except Exception as e:
                self._log_query_error(text, e)
                raise

        self._log_query(text, params, (time.perf_counter() - start) * 1000, result.row_count)
        return result
