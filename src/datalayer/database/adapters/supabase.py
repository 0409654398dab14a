"""
Supabase SDK Adapter

Talks to a Supabase project through its client SDK (PostgREST), which has
no raw SQL endpoint. Simple single-table DML is translated to table calls;
DDL, joins, transactions and anything else fail with
UnsupportedOperationError instead of returning an empty result.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, List, Optional

from postgrest.exceptions import APIError
from supabase import acreate_client
from supabase.lib.client_options import AsyncClientOptions

from ...observability.tracing import create_span, query_span
from ..config import DatabaseBackend, SupabaseConfig
from ..errors import ConnectionFailure, UnsupportedOperationError
from ..migrations import MigrationFile, MigrationRunner
from ..sql import leading_keyword, truncate_query
from .base import DatabaseAdapter, DatabaseClient, QueryParams, QueryResult
from .diagnostics import classify_connection_error
from .supabase_query import build_request, parse_statement

logger = logging.getLogger(__name__)

ClientFactory = Callable[..., Awaitable[Any]]

# PostgREST reports a missing relation as either of these
_MISSING_TABLE_CODES = ("42P01", "PGRST205")


class SupabaseClient(DatabaseClient):
    """Client handle for the SDK backend. There is no connection to return."""

    def __init__(self, adapter: "SupabaseAdapter"):
        super().__init__()
        self._adapter = adapter

    async def query(self, text: str, params: QueryParams = None) -> QueryResult:
        self._ensure_active()
        return await self._adapter.query(text, params)

    async def _release(self) -> None:
        return None


class SupabaseAdapter(DatabaseAdapter):
    """
    Supabase backend through the async supabase client.

    Usage:
        adapter = SupabaseAdapter(SupabaseConfig(url=..., api_key=...))
        await adapter.initialize()
        result = await adapter.query("SELECT id, name FROM clients WHERE crm_id = $1", [crm_id])
    """

    backend = DatabaseBackend.SUPABASE
    dialect = "postgresql"
    supports_transactional_ddl = False

    def __init__(
        self,
        config: SupabaseConfig,
        *,
        client_factory: Optional[ClientFactory] = None,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self.config = config
        self._client_factory = client_factory or acreate_client
        self._client: Optional[Any] = None

    async def initialize(self) -> None:
        if self._initialized:
            return

        with create_span("db.initialize", {"db.system": "supabase", "server.address": self.config.url}):
            try:
                options = AsyncClientOptions(
                    schema=self.config.db_schema,
                    auto_refresh_token=False,
                    persist_session=False,
                )
                self._client = await self._client_factory(
                    self.config.url, self.config.api_key, options=options
                )
            except Exception as e:
                self._client = None
                logger.error(
                    f"Supabase client initialization failed: {e}",
                    extra={"url": self.config.url},
                )
                raise ConnectionFailure(
                    f"Supabase initialization failed: {e}",
                    category=classify_connection_error(e),
                    suggestions=[
                        "Check SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY",
                        "Verify the project is not paused in the Supabase dashboard",
                    ],
                ) from e

        self._initialized = True
        logger.info(
            "Supabase client initialized successfully",
            extra={"url": self.config.url, "schema": self.config.db_schema},
        )

    async def query(self, text: str, params: QueryParams = None) -> QueryResult:
        self._ensure_initialized()
        args = list(params or ())
        start = time.perf_counter()

        with query_span("supabase", truncate_query(text), leading_keyword(text)):
            try:
                op = parse_statement(text)
                response = await build_request(self._client, op, args).execute()
            except UnsupportedOperationError as e:
                logger.warning(str(e))
                raise
            except Exception as e:
                self._log_query_error(text, e)
                raise

        data = list(response.data or [])
        if op.action == "select" or op.returning:
            result = QueryResult(rows=data, row_count=len(data), fields=list(data[0]) if data else [])
        else:
            result = QueryResult(rows=[], row_count=len(data))

        self._log_query(text, params, (time.perf_counter() - start) * 1000, result.row_count)
        return result

    async def get_client(self) -> SupabaseClient:
        self._ensure_initialized()
        return SupabaseClient(self)

    async def table_exists(self, name: str) -> bool:
        self._ensure_initialized()
        try:
            await self._client.table(name).select("*").limit(1).execute()
        except APIError as e:
            if e.code in _MISSING_TABLE_CODES:
                return False
            raise
        return True

    async def ping(self) -> None:
        # PostgREST has no bare SELECT
        await self.table_exists("migrations")

    async def run_migrations(self) -> List[MigrationFile]:
        """
        Report pending migrations; the SDK cannot apply them.

        Raises:
            UnsupportedOperationError: If any migration is pending
        """
        self._ensure_initialized()
        pending = await MigrationRunner(self, self.migrations_dir).pending_migrations()
        if pending:
            names = ", ".join(m.filename for m in pending)
            raise UnsupportedOperationError(
                f"Supabase SDK backend cannot apply migrations. Pending: {names}. "
                "Run them with DATABASE_BACKEND=postgresql and SUPABASE_DB_URL set."
            )
        logger.info("No pending migrations found")
        return []

    async def close(self) -> None:
        if self._client is None:
            return
        self._client = None
        self._initialized = False
        logger.info("Supabase client closed")
