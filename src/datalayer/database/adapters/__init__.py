# Database Adapters
#
# One adapter per backend behind a common capability interface:
# - PostgresAdapter (asyncpg pool, direct SQL)
# - SupabaseAdapter (client SDK, narrow DML subset)
# - SqliteAdapter (aiosqlite, local development)

from .base import DatabaseAdapter, DatabaseClient, QueryResult
from .diagnostics import classify_connection_error, connection_failure
from .factory import create_adapter
from .postgres import PostgresAdapter
from .sqlite import SqliteAdapter
from .supabase import SupabaseAdapter

__all__ = [
    "DatabaseAdapter",
    "DatabaseClient",
    "QueryResult",
    "PostgresAdapter",
    "SqliteAdapter",
    "SupabaseAdapter",
    "classify_connection_error",
    "connection_failure",
    "create_adapter",
]
