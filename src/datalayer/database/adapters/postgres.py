"""
PostgreSQL Adapter

Pooled asyncpg backend. Connections are checked out per query, or per
client for multi-statement work, and always returned to the pool.
"""

from __future__ import annotations

import asyncio
import logging
import ssl
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import asyncpg

from ...observability.tracing import create_span, query_span
from ..config import DatabaseBackend, PostgresConfig
from ..errors import QueryTimeoutError
from ..sql import leading_keyword, returns_rows, truncate_query
from .base import DatabaseAdapter, DatabaseClient, QueryParams, QueryResult
from .diagnostics import connection_failure

logger = logging.getLogger(__name__)

PoolFactory = Callable[..., Awaitable[Any]]

_TABLE_EXISTS_SQL = """
SELECT EXISTS (
    SELECT 1 FROM information_schema.tables
    WHERE table_schema = current_schema() AND table_name = $1
) AS exists
"""

_QUERY_CANCELED = "57014"


def build_ssl_context(config: PostgresConfig) -> Union[ssl.SSLContext, bool]:
    """TLS setting for asyncpg: a context, or False for plaintext."""
    if not (config.ssl or config.is_managed):
        return False

    context = ssl.create_default_context()
    if config.is_managed:
        # Supabase poolers present a self-signed chain
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def _row_count_from_status(status: Optional[str]) -> int:
    # asyncpg status strings look like "INSERT 0 3", "UPDATE 2", "CREATE TABLE"
    if not status:
        return 0
    last = status.rsplit(" ", 1)[-1]
    return int(last) if last.isdigit() else 0


class PostgresClient(DatabaseClient):
    """A pool connection checked out for one unit of work."""

    def __init__(self, adapter: "PostgresAdapter", pool: Any, connection: Any):
        super().__init__()
        self._adapter = adapter
        self._pool = pool
        self._connection = connection

    async def query(self, text: str, params: QueryParams = None) -> QueryResult:
        self._ensure_active()
        return await self._adapter._run(self._connection, text, params)

    async def _release(self) -> None:
        await self._pool.release(self._connection)
        self._connection = None


class PostgresAdapter(DatabaseAdapter):
    """
    PostgreSQL backend on an asyncpg connection pool.

    Usage:
        adapter = PostgresAdapter(config)
        await adapter.initialize()
        result = await adapter.query("SELECT * FROM users WHERE id = $1", [user_id])
        await adapter.close()
    """

    backend = DatabaseBackend.POSTGRESQL
    dialect = "postgresql"
    supports_transactional_ddl = True

    def __init__(
        self,
        config: PostgresConfig,
        *,
        pool_factory: Optional[PoolFactory] = None,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self.config = config
        self._pool_factory = pool_factory or asyncpg.create_pool
        self._pool: Optional[Any] = None

    @property
    def pool(self) -> Any:
        """The underlying asyncpg pool, for callers that need direct access."""
        self._ensure_initialized()
        return self._pool

    def _pool_options(self) -> Dict[str, Any]:
        config = self.config
        return {
            "host": config.host,
            "port": config.port,
            "user": config.user,
            "password": config.password,
            "database": config.database,
            "ssl": build_ssl_context(config),
            "min_size": min(2, config.pool_max),
            "max_size": config.pool_max,
            "max_inactive_connection_lifetime": config.idle_timeout_ms / 1000,
            "timeout": config.connect_timeout_ms / 1000,
            "command_timeout": config.query_timeout_ms / 1000,
        }

    async def initialize(self) -> None:
        if self._initialized:
            return

        attributes = {
            "db.system": "postgresql",
            "net.peer.name": self.config.host,
            "net.peer.port": self.config.port,
            "db.name": self.config.database,
        }
        with create_span("db.initialize", attributes):
            try:
                self._pool = await self._pool_factory(**self._pool_options())
                await self._validate_connection()
            except Exception as e:
                await self._close_pool()
                failure = connection_failure(e)
                logger.error(
                    failure.message,
                    extra={
                        "error_category": failure.category.value,
                        "host": self.config.host,
                        "port": self.config.port,
                        "database": self.config.database,
                        "suggestions": failure.suggestions,
                    },
                )
                raise failure from e

            self._initialized = True
            try:
                await self._maybe_bootstrap_legacy_schema()
            except Exception:
                await self.close()
                raise

    async def _validate_connection(self) -> None:
        connection = await self._pool.acquire()
        try:
            await connection.fetch("SELECT 1")
        finally:
            await self._pool.release(connection)

        logger.info(
            "PostgreSQL connection test successful",
            extra={
                "host": self.config.host,
                "port": self.config.port,
                "database": self.config.database,
                "ssl": bool(self.config.ssl or self.config.is_managed),
            },
        )

    async def query(self, text: str, params: QueryParams = None) -> QueryResult:
        self._ensure_initialized()
        connection = await self._pool.acquire()
        try:
            return await self._run(connection, text, params)
        finally:
            await self._pool.release(connection)

    async def get_client(self) -> PostgresClient:
        self._ensure_initialized()
        connection = await self._pool.acquire()
        return PostgresClient(self, self._pool, connection)

    async def table_exists(self, name: str) -> bool:
        result = await self.query(_TABLE_EXISTS_SQL, [name])
        return bool(result.rows and result.rows[0].get("exists"))

    async def close(self) -> None:
        if self._pool is None:
            return
        await self._close_pool()
        self._initialized = False
        logger.info("PostgreSQL connection pool closed")

    async def _close_pool(self) -> None:
        pool, self._pool = self._pool, None
        if pool is not None:
            await pool.close()

    async def _run(self, connection: Any, text: str, params: QueryParams) -> QueryResult:
        args = list(params or ())
        start = time.perf_counter()

        with query_span("postgresql", truncate_query(text), leading_keyword(text)):
            try:
                if returns_rows(text):
                    records = await connection.fetch(text, *args)
                    rows = [dict(record) for record in records]
                    result = QueryResult(
                        rows=rows,
                        row_count=len(rows),
                        fields=list(records[0].keys()) if records else [],
                    )
                else:
                    status = await connection.execute(text, *args)
                    result = QueryResult(rows=[], row_count=_row_count_from_status(status))
            except asyncio.TimeoutError as e:
                self._log_query_error(text, e)
                raise QueryTimeoutError(
                    f"Query exceeded {self.config.query_timeout_ms} ms: {truncate_query(text)}"
                ) from e
            except Exception as e:
                self._log_query_error(text, e)
                if getattr(e, "sqlstate", None) == _QUERY_CANCELED:
                    raise QueryTimeoutError(
                        f"Query canceled by server timeout: {truncate_query(text)}"
                    ) from e
                raise

        self._log_query(text, params, (time.perf_counter() - start) * 1000, result.row_count)
        return result
