# Database Layer
#
# Multi-backend adapters, configuration resolution and versioned migrations:
# - DatabaseService: facade used by application code
# - ConfigResolver: environment -> backend configuration
# - MigrationRunner: applies NNN_description.sql files exactly once, in order
# - DataTransfer: copies SQLite rows into PostgreSQL with row-count checks

from .adapters import (
    DatabaseAdapter,
    DatabaseClient,
    PostgresAdapter,
    QueryResult,
    SqliteAdapter,
    SupabaseAdapter,
    create_adapter,
)
from .config import (
    BackendConfiguration,
    ConfigResolver,
    DatabaseBackend,
    PostgresConfig,
    SqliteConfig,
    SupabaseConfig,
    ValidationResult,
    describe_setup,
    parse_connection_string,
    summarize_config,
    validate_config,
)
from .errors import (
    ClientReleasedError,
    ConfigurationError,
    ConnectionErrorCategory,
    ConnectionFailure,
    DatabaseError,
    DataTransferError,
    DuplicateMigrationError,
    InitializationError,
    MigrationError,
    NotInitializedError,
    QueryTimeoutError,
    UnsupportedOperationError,
)
from .migrations import (
    MigrationFile,
    MigrationRecord,
    MigrationRunner,
    MigrationStatus,
    MigrationValidation,
    compute_checksum,
)
from .service import DatabaseService
from .sql import split_statements
from .transfer import DataTransfer, TableTransfer, TransferReport

__all__ = [
    # Facade
    "DatabaseService",
    # Adapters
    "DatabaseAdapter",
    "DatabaseClient",
    "QueryResult",
    "PostgresAdapter",
    "SqliteAdapter",
    "SupabaseAdapter",
    "create_adapter",
    # Configuration
    "BackendConfiguration",
    "ConfigResolver",
    "DatabaseBackend",
    "PostgresConfig",
    "SqliteConfig",
    "SupabaseConfig",
    "ValidationResult",
    "describe_setup",
    "parse_connection_string",
    "summarize_config",
    "validate_config",
    # Migrations
    "MigrationFile",
    "MigrationRecord",
    "MigrationRunner",
    "MigrationStatus",
    "MigrationValidation",
    "compute_checksum",
    "split_statements",
    # Data transfer
    "DataTransfer",
    "TableTransfer",
    "TransferReport",
    # Errors
    "ClientReleasedError",
    "ConfigurationError",
    "ConnectionErrorCategory",
    "ConnectionFailure",
    "DatabaseError",
    "DataTransferError",
    "DuplicateMigrationError",
    "InitializationError",
    "MigrationError",
    "NotInitializedError",
    "QueryTimeoutError",
    "UnsupportedOperationError",
]
