"""
Shared fixtures for data layer unit tests.

PostgreSQL and Supabase are replaced by in-process fakes of the asyncpg
pool and the PostgREST table builder. SQLite tests use real databases in
tmp_path.
"""

import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
from postgrest.exceptions import APIError

from datalayer.database.adapters.sqlite import SqliteAdapter
from datalayer.database.config import PostgresConfig, SqliteConfig, SupabaseConfig


# =============================================================================
# asyncpg pool fake
# =============================================================================


class FakeConnection:
    """Stands in for asyncpg.Connection (fetch/execute only)."""

    def __init__(self, pool: "FakePool", number: int):
        self.pool = pool
        self.number = number

    async def fetch(self, text: str, *args: Any) -> List[Dict[str, Any]]:
        return await self.pool.respond("fetch", text, args, self)

    async def execute(self, text: str, *args: Any) -> str:
        return await self.pool.respond("execute", text, args, self)


class FakePool:
    """Bounded pool that tracks how many connections are checked out."""

    def __init__(self, max_size: int = 10):
        self.max_size = max_size
        self.checked_out = 0
        self.peak = 0
        self.acquired = 0
        self.released = 0
        self.closed = False
        self.statements: List[tuple] = []
        # Checkout number of the connection that ran each entry in statements
        self.connections: List[int] = []
        self.query_delay = 0.0
        self._rules: List[Dict[str, Any]] = []
        self._slots = asyncio.Semaphore(max_size)

    def on(self, fragment: str, *, rows=None, status: Optional[str] = None, error=None) -> None:
        """
        Answer statements containing fragment with rows, a status or an error.

        rows may be a callable taking (text, args) for answers that change
        between calls.
        """
        self._rules.append({"fragment": fragment, "rows": rows, "status": status, "error": error})

    async def respond(self, method: str, text: str, args: tuple, connection: Optional[FakeConnection] = None):
        self.statements.append((method, text, args))
        self.connections.append(connection.number if connection else 0)
        if self.query_delay:
            await asyncio.sleep(self.query_delay)
        for rule in self._rules:
            if rule["fragment"] in text:
                if rule["error"] is not None:
                    raise rule["error"]
                if method == "fetch":
                    rows = rule["rows"]
                    if callable(rows):
                        rows = rows(text, args)
                    return list(rows or [])
                return rule["status"] or "OK"
        return [] if method == "fetch" else "OK"

    async def acquire(self) -> FakeConnection:
        await self._slots.acquire()
        self.acquired += 1
        self.checked_out += 1
        self.peak = max(self.peak, self.checked_out)
        return FakeConnection(self, self.acquired)

    async def release(self, connection: FakeConnection) -> None:
        self.released += 1
        self.checked_out -= 1
        self._slots.release()

    async def close(self) -> None:
        self.closed = True


class FakePoolFactory:
    """Replacement for asyncpg.create_pool that records its arguments."""

    def __init__(self):
        self.kwargs: Dict[str, Any] = {}
        self.pool: Optional[FakePool] = None
        self.error: Optional[BaseException] = None
        self.setup = None

    async def __call__(self, **kwargs: Any) -> FakePool:
        self.kwargs = kwargs
        if self.error is not None:
            raise self.error
        self.pool = FakePool(max_size=kwargs["max_size"])
        if self.setup is not None:
            self.setup(self.pool)
        return self.pool


class SqlStateError(Exception):
    """Driver error carrying a PostgreSQL SQLSTATE, like asyncpg's."""

    def __init__(self, message: str, sqlstate: str):
        super().__init__(message)
        self.sqlstate = sqlstate


# =============================================================================
# PostgREST fake
# =============================================================================


class FakeResponse:
    def __init__(self, data: List[Dict[str, Any]]):
        self.data = data
        self.count = None


class FakeRequest:
    """Chainable builder with just enough in-memory semantics for tests."""

    def __init__(self, client: "FakeSupabaseClient", table: str):
        self.client = client
        self.table_name = table
        self.action = "select"
        self.columns = "*"
        self.payload: Dict[str, Any] = {}
        self.filters: List[tuple] = []
        self.ordering: List[tuple] = []
        self.row_limit: Optional[int] = None

    def _record(self, call: str, *args: Any, **kwargs: Any) -> "FakeRequest":
        self.client.calls.append((self.table_name, call, args, kwargs))
        return self

    def select(self, columns: str = "*") -> "FakeRequest":
        self.action, self.columns = "select", columns
        return self._record("select", columns)

    def insert(self, payload: Dict[str, Any]) -> "FakeRequest":
        self.action, self.payload = "insert", payload
        return self._record("insert", payload)

    def update(self, payload: Dict[str, Any]) -> "FakeRequest":
        self.action, self.payload = "update", payload
        return self._record("update", payload)

    def delete(self) -> "FakeRequest":
        self.action = "delete"
        return self._record("delete")

    def eq(self, column: str, value: Any) -> "FakeRequest":
        self.filters.append((column, value))
        return self._record("eq", column, value)

    def is_(self, column: str, value: str) -> "FakeRequest":
        self.filters.append((column, None))
        return self._record("is_", column, value)

    def order(self, column: str, desc: bool = False) -> "FakeRequest":
        self.ordering.append((column, desc))
        return self._record("order", column, desc=desc)

    def limit(self, size: int) -> "FakeRequest":
        self.row_limit = size
        return self._record("limit", size)

    def _matches(self, row: Dict[str, Any]) -> bool:
        return all(row.get(column) == value for column, value in self.filters)

    async def execute(self) -> FakeResponse:
        if self.client.error is not None:
            raise self.client.error
        if self.table_name not in self.client.tables:
            raise APIError({
                "code": "PGRST205",
                "message": f"Could not find the table 'public.{self.table_name}' in the schema cache",
                "hint": None,
                "details": None,
            })
        rows = self.client.tables[self.table_name]

        if self.action == "insert":
            rows.append(dict(self.payload))
            return FakeResponse([dict(self.payload)])

        matched = [row for row in rows if self._matches(row)]
        if self.action == "update":
            for row in matched:
                row.update(self.payload)
            return FakeResponse([dict(row) for row in matched])
        if self.action == "delete":
            self.client.tables[self.table_name] = [r for r in rows if not self._matches(r)]
            return FakeResponse([dict(row) for row in matched])

        for column, desc in reversed(self.ordering):
            matched.sort(key=lambda r: r.get(column), reverse=desc)
        if self.row_limit is not None:
            matched = matched[: self.row_limit]
        if self.columns != "*":
            wanted = self.columns.split(",")
            matched = [{c: row.get(c) for c in wanted} for row in matched]
        return FakeResponse([dict(row) for row in matched])


class FakeSupabaseClient:
    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.calls: List[tuple] = []
        self.error: Optional[BaseException] = None

    def table(self, name: str) -> FakeRequest:
        return FakeRequest(self, name)


class FakeClientFactory:
    """Replacement for supabase.acreate_client."""

    def __init__(self):
        self.client = FakeSupabaseClient()
        self.args: tuple = ()
        self.options: Any = None
        self.error: Optional[BaseException] = None

    async def __call__(self, url: str, key: str, options: Any = None) -> FakeSupabaseClient:
        self.args = (url, key)
        self.options = options
        if self.error is not None:
            raise self.error
        return self.client


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def pool_factory():
    return FakePoolFactory()


@pytest.fixture
def client_factory():
    return FakeClientFactory()


@pytest.fixture
def postgres_config():
    return PostgresConfig(
        host="localhost",
        port=5432,
        database="relay",
        user="relay",
        password="secret",
        pool_max=10,
        environment="test",
    )


@pytest.fixture
def supabase_config():
    return SupabaseConfig(
        url="https://abcdefgh.supabase.co",
        api_key="service-role-key",
        environment="test",
    )


@pytest.fixture
def migrations_dir(tmp_path):
    path = tmp_path / "migrations"
    path.mkdir()
    return path


@pytest.fixture
def write_migration(migrations_dir):
    """Write NNN_name.sql into the migrations directory."""

    def _write(filename: str, sql: str) -> Path:
        path = migrations_dir / filename
        path.write_text(sql, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def sqlite_config(tmp_path):
    return SqliteConfig(filename=str(tmp_path / "data" / "test.db"), environment="test")


@pytest.fixture
async def sqlite_adapter(sqlite_config, migrations_dir):
    adapter = SqliteAdapter(sqlite_config, migrations_dir=migrations_dir)
    await adapter.initialize()
    yield adapter
    await adapter.close()
