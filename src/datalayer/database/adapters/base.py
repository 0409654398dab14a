"""
DatabaseAdapter Abstract Base Class

Defines the capability interface every backend satisfies:
- initialize: connect, validate, optionally bootstrap the legacy schema
- query: single-shot query on an automatically managed connection
- get_client: check out a client for multi-statement work (transactions)
- close: release every pooled resource (idempotent)
- run_migrations: apply pending migrations through this adapter

Query Syntax:
    Use PostgreSQL-style $1, $2 placeholders. Adapters that need another
    placeholder style rewrite them.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from ..config import DEFAULT_MIGRATIONS_DIR, DatabaseBackend
from ..errors import ClientReleasedError, NotInitializedError
from ..migrations import MigrationFile, MigrationRunner
from ..schema import ensure_legacy_schema
from ..sql import truncate_query

logger = logging.getLogger(__name__)

QueryParams = Optional[Sequence[Any]]


@dataclass
class QueryResult:
    """
    Normalized result of a query on any backend.

    rows are plain dictionaries; row_count is the number of rows returned
    or affected; fields lists column names when the backend reports them.
    """

    rows: List[Dict[str, Any]] = field(default_factory=list)
    row_count: int = 0
    fields: Optional[List[str]] = None


class DatabaseClient(ABC):
    """
    A checked-out connection bound to one logical unit of work.

    Owned exclusively by the caller until release(). release() is safe to
    call more than once; only the first call returns the connection.

    Usage:
        async with await adapter.get_client() as client:
            await client.query("BEGIN")
            ...
            await client.query("COMMIT")
    """

    def __init__(self):
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    @abstractmethod
    async def query(self, text: str, params: QueryParams = None) -> QueryResult:
        """Run a query on the checked-out connection."""
        ...

    @abstractmethod
    async def _release(self) -> None:
        """Return the underlying connection. Called at most once."""
        ...

    async def release(self) -> None:
        if self._released:
            logger.debug("release() called on an already released client")
            return
        self._released = True
        await self._release()

    def _ensure_active(self) -> None:
        if self._released:
            raise ClientReleasedError("Database client already released")

    async def __aenter__(self) -> "DatabaseClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()


class DatabaseAdapter(ABC):
    """
    Abstract base class for database backends.

    An adapter is created unconnected; initialize() makes it usable and
    close() tears it down again. Query operations before initialize()
    raise NotInitializedError.
    """

    backend: DatabaseBackend
    dialect: str = "postgresql"
    supports_transactional_ddl: bool = True

    def __init__(
        self,
        *,
        migrations_dir: Optional[Union[str, Path]] = None,
        bootstrap_legacy_schema: bool = False,
    ):
        self.migrations_dir = Path(migrations_dir or DEFAULT_MIGRATIONS_DIR)
        self.bootstrap_legacy_schema = bootstrap_legacy_schema
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    @abstractmethod
    async def initialize(self) -> None:
        """Connect and validate. A second call before close() is a no-op."""
        ...

    @abstractmethod
    async def query(self, text: str, params: QueryParams = None) -> QueryResult:
        """Run one query on an automatically acquired connection."""
        ...

    @abstractmethod
    async def get_client(self) -> DatabaseClient:
        """Check out an exclusive client. The caller must release() it."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release all resources. Safe to call repeatedly."""
        ...

    @abstractmethod
    async def table_exists(self, name: str) -> bool:
        """True if a table with this name exists."""
        ...

    async def ping(self) -> None:
        """Round-trip to the backend. Raises on failure."""
        await self.query("SELECT 1 AS health_check")

    async def run_migrations(self) -> List[MigrationFile]:
        """Apply pending migrations from migrations_dir, in order."""
        self._ensure_initialized()
        runner = MigrationRunner(self, self.migrations_dir)
        return await runner.run_migrations()

    # =========================================================================
    # Utility Methods (common to all backends)
    # =========================================================================

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise NotInitializedError("Database adapter")

    async def _maybe_bootstrap_legacy_schema(self) -> None:
        if not self.bootstrap_legacy_schema:
            return
        await ensure_legacy_schema(self)

    def _log_query(
        self,
        text: str,
        params: QueryParams,
        duration_ms: float,
        row_count: int,
    ) -> None:
        logger.debug(
            "Database query executed",
            extra={
                "query": truncate_query(text),
                "duration_ms": round(duration_ms, 2),
                "rows": row_count,
                "param_count": len(params or ()),
            },
        )

    def _log_query_error(self, text: str, error: BaseException) -> None:
        # Parameters are never logged
        logger.error(
            f"Database query failed: {error}",
            extra={"query": truncate_query(text), "backend": self.backend.value},
        )
