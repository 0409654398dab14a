"""
Database Configuration

Derives one immutable backend configuration from environment variables,
validates it and renders operator-facing setup guidance.

Resolution order:
    1. DATABASE_BACKEND (explicit override)
    2. SUPABASE_DB_URL / DATABASE_URL (connection string)
    3. DB_HOST, DB_PORT, DB_NAME, DB_USER, DB_PASSWORD, ... (discrete variables)
    4. SUPABASE_URL + SUPABASE_SERVICE_ROLE_KEY (restricted SDK)
    5. APP_ENV default: SQLite outside production, PostgreSQL in production

Usage:
    resolver = ConfigResolver()
    config = resolver.resolve()
    result = validate_config(config)
    if not result.is_valid:
        print(describe_setup(config))
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union
from urllib.parse import parse_qsl, unquote, urlparse

from dotenv import load_dotenv
from pydantic import BaseModel, Field
from typing_extensions import Annotated, Literal

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_POOL_MAX = 20
DEFAULT_IDLE_TIMEOUT_MS = 30000
DEFAULT_CONNECT_TIMEOUT_MS = 2000
# Hosted poolers are further away than a local server
DEFAULT_URL_CONNECT_TIMEOUT_MS = 10000
DEFAULT_QUERY_TIMEOUT_MS = 60000
DEFAULT_SQLITE_FILENAME = "./data/development.db"
DEFAULT_SQLITE_LOCK_TIMEOUT_MS = 5000
DEFAULT_MIGRATIONS_DIR = "db/migrations"

MANAGED_HOST_SUFFIXES = ("supabase.co", "supabase.com")
MANAGED_HOST_PORTS = (5432, 6543)


class DatabaseBackend(str, Enum):
    """Supported database backends."""

    POSTGRESQL = "postgresql"
    SUPABASE = "supabase"
    SQLITE = "sqlite"


_BACKEND_ALIASES = {
    "postgresql": DatabaseBackend.POSTGRESQL,
    "postgres": DatabaseBackend.POSTGRESQL,
    "relational": DatabaseBackend.POSTGRESQL,
    "supabase": DatabaseBackend.SUPABASE,
    "restricted-sdk": DatabaseBackend.SUPABASE,
    "sqlite": DatabaseBackend.SQLITE,
    "embedded-file": DatabaseBackend.SQLITE,
}


def is_managed_host(host: Optional[str]) -> bool:
    """True when the host belongs to a managed Supabase project or pooler."""
    if not host:
        return False
    host = host.lower().rstrip(".")
    return any(host == s or host.endswith("." + s) for s in MANAGED_HOST_SUFFIXES)


# =============================================================================
# Configuration values
# =============================================================================


class _BackendConfigBase(BaseModel):
    environment: Optional[str] = None
    explicit_backend: bool = False

    model_config = {"frozen": True, "extra": "forbid"}


class PostgresConfig(_BackendConfigBase):
    """Pooled PostgreSQL connection parameters."""

    kind: Literal["postgresql"] = "postgresql"
    host: str = ""
    port: int = 5432
    database: str = ""
    user: str = ""
    password: str = ""
    ssl: bool = False
    ssl_explicitly_disabled: bool = False
    pool_max: int = DEFAULT_POOL_MAX
    idle_timeout_ms: int = DEFAULT_IDLE_TIMEOUT_MS
    connect_timeout_ms: int = DEFAULT_CONNECT_TIMEOUT_MS
    query_timeout_ms: int = DEFAULT_QUERY_TIMEOUT_MS
    options: Dict[str, str] = Field(default_factory=dict)
    from_connection_string: bool = False

    @property
    def backend(self) -> DatabaseBackend:
        return DatabaseBackend.POSTGRESQL

    @property
    def is_managed(self) -> bool:
        return is_managed_host(self.host)


class SupabaseConfig(_BackendConfigBase):
    """Supabase project reachable only through its client SDK."""

    kind: Literal["supabase"] = "supabase"
    url: str = ""
    api_key: str = ""
    db_schema: str = "public"

    @property
    def backend(self) -> DatabaseBackend:
        return DatabaseBackend.SUPABASE


class SqliteConfig(_BackendConfigBase):
    """Embedded single-file database."""

    kind: Literal["sqlite"] = "sqlite"
    filename: str = ""
    enable_wal: bool = False
    lock_timeout_ms: int = DEFAULT_SQLITE_LOCK_TIMEOUT_MS

    @property
    def backend(self) -> DatabaseBackend:
        return DatabaseBackend.SQLITE


BackendConfiguration = Annotated[
    Union[PostgresConfig, SupabaseConfig, SqliteConfig],
    Field(discriminator="kind"),
]


@dataclass
class ValidationResult:
    """Outcome of validate_config()."""

    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


# =============================================================================
# Resolution
# =============================================================================


def parse_connection_string(
    connection_string: str,
    *,
    ssl_default: Optional[bool] = None,
    **overrides: Any,
) -> PostgresConfig:
    """
    Parse a postgresql:// URL into a PostgresConfig.

    `sslmode=disable` in the query string turns TLS off, any other sslmode
    turns it on. Managed hosts always get TLS.

    Raises:
        ConfigurationError: If the URL cannot be parsed
    """
    parsed = urlparse(connection_string)
    if parsed.scheme not in ("postgres", "postgresql"):
        raise ConfigurationError(
            f"Invalid connection string: unsupported scheme '{parsed.scheme}'",
            errors=["Connection strings must start with postgresql:// or postgres://"],
        )
    if not parsed.hostname:
        raise ConfigurationError(
            "Invalid connection string: no host",
            errors=["The connection string does not name a host."],
        )
    try:
        port = parsed.port or 5432
    except ValueError as e:
        raise ConfigurationError(
            f"Invalid connection string: {e}",
            errors=["PostgreSQL port must be an integer between 1 and 65535."],
        ) from e

    options = dict(parse_qsl(parsed.query))
    sslmode = options.get("sslmode")
    if sslmode is not None:
        ssl = sslmode != "disable"
        explicitly_disabled = sslmode == "disable"
    else:
        ssl = bool(ssl_default)
        explicitly_disabled = ssl_default is False

    if not is_managed_host(parsed.hostname):
        logger.debug("Connection string does not point at a managed Supabase host")

    config = PostgresConfig(
        host=parsed.hostname,
        port=port,
        database=unquote(parsed.path.lstrip("/")),
        user=unquote(parsed.username or ""),
        password=unquote(parsed.password or ""),
        ssl=ssl,
        ssl_explicitly_disabled=explicitly_disabled,
        options=options,
        from_connection_string=True,
        **overrides,
    )
    return _force_managed_tls(config)


def _force_managed_tls(config: PostgresConfig) -> PostgresConfig:
    if config.is_managed and not config.ssl:
        logger.warning(
            f"TLS was disabled for managed host {config.host}; forcing it on"
        )
        return config.model_copy(update={"ssl": True})
    return config


class ConfigResolver:
    """
    Builds the backend configuration from an environment mapping.

    The resolved value is cached on the resolver instance; call reset() in
    tests after changing the mapping.
    """

    def __init__(
        self,
        environ: Optional[Mapping[str, str]] = None,
        *,
        load_env_file: bool = True,
    ):
        if environ is None:
            if load_env_file:
                load_dotenv()
            environ = os.environ
        self._environ = environ
        self._config: Optional[BackendConfiguration] = None

    @property
    def environment(self) -> Optional[str]:
        return self._get("APP_ENV")

    @property
    def migrations_dir(self) -> Path:
        return Path(self._get("MIGRATIONS_DIR") or DEFAULT_MIGRATIONS_DIR)

    def resolve(self) -> BackendConfiguration:
        """Return the configuration, building it on first use."""
        if self._config is None:
            self._config = self._build()
            logger.info(f"Database configuration loaded: backend={self._config.kind}")
        return self._config

    def reset(self) -> None:
        """Drop the cached configuration."""
        self._config = None

    # -------------------------------------------------------------------------

    def _get(self, name: str) -> Optional[str]:
        value = self._environ.get(name)
        if value is None or not value.strip():
            return None
        return value.strip()

    def _int(self, name: str, default: int) -> int:
        raw = self._get(name)
        if raw is None:
            return default
        try:
            return int(raw)
        except ValueError:
            raise ConfigurationError(
                f"Database configuration invalid: {name} must be an integer",
                errors=[f"{name} must be an integer, got {raw!r}."],
            ) from None

    def _flag(self, name: str) -> Optional[bool]:
        raw = self._get(name)
        if raw is None:
            return None
        return raw.lower() in ("true", "1", "yes", "on")

    def _connection_string(self) -> Optional[str]:
        return self._get("SUPABASE_DB_URL") or self._get("DATABASE_URL")

    def _supabase_key(self) -> Optional[str]:
        return self._get("SUPABASE_SERVICE_ROLE_KEY") or self._get("SUPABASE_KEY")

    def _determine_backend(self) -> Tuple[DatabaseBackend, bool]:
        override = self._get("DATABASE_BACKEND")
        if override:
            backend = _BACKEND_ALIASES.get(override.lower())
            if backend is None:
                raise ConfigurationError(
                    f"Unsupported database backend: {override}",
                    errors=[
                        "DATABASE_BACKEND must be one of: postgresql, supabase, sqlite."
                    ],
                )
            return backend, True

        if self._connection_string() or self._get("DB_HOST"):
            return DatabaseBackend.POSTGRESQL, False
        if self._get("SUPABASE_URL") and self._supabase_key():
            return DatabaseBackend.SUPABASE, False
        if self.environment == "production":
            return DatabaseBackend.POSTGRESQL, False
        return DatabaseBackend.SQLITE, False

    def _build(self) -> BackendConfiguration:
        backend, explicit = self._determine_backend()
        environment = self.environment
        common = {"environment": environment, "explicit_backend": explicit}

        if backend == DatabaseBackend.SQLITE:
            filename = self._get("SQLITE_FILENAME")
            if filename is None and environment != "production":
                filename = DEFAULT_SQLITE_FILENAME
            return SqliteConfig(
                filename=filename or "",
                enable_wal=bool(self._flag("SQLITE_WAL")),
                lock_timeout_ms=self._int("SQLITE_LOCK_TIMEOUT", DEFAULT_SQLITE_LOCK_TIMEOUT_MS),
                **common,
            )

        if backend == DatabaseBackend.SUPABASE:
            return SupabaseConfig(
                url=self._get("SUPABASE_URL") or "",
                api_key=self._supabase_key() or "",
                db_schema=self._get("SUPABASE_SCHEMA") or "public",
                **common,
            )

        pool = {
            "pool_max": self._int("DB_POOL_MAX", DEFAULT_POOL_MAX),
            "idle_timeout_ms": self._int("DB_IDLE_TIMEOUT", DEFAULT_IDLE_TIMEOUT_MS),
            "query_timeout_ms": self._int("DB_QUERY_TIMEOUT", DEFAULT_QUERY_TIMEOUT_MS),
        }

        connection_string = self._connection_string()
        if connection_string:
            return parse_connection_string(
                connection_string,
                ssl_default=self._flag("DB_SSL"),
                connect_timeout_ms=self._int(
                    "DB_CONNECTION_TIMEOUT", DEFAULT_URL_CONNECT_TIMEOUT_MS
                ),
                **pool,
                **common,
            )

        ssl_flag = self._flag("DB_SSL")
        config = PostgresConfig(
            host=self._get("DB_HOST") or "",
            port=self._int("DB_PORT", 5432),
            database=self._get("DB_NAME") or "",
            user=self._get("DB_USER") or "",
            password=self._get("DB_PASSWORD") or "",
            ssl=bool(ssl_flag),
            ssl_explicitly_disabled=ssl_flag is False,
            connect_timeout_ms=self._int("DB_CONNECTION_TIMEOUT", DEFAULT_CONNECT_TIMEOUT_MS),
            **pool,
            **common,
        )
        return _force_managed_tls(config)


# =============================================================================
# Validation and operator guidance
# =============================================================================


def validate_config(config: BackendConfiguration) -> ValidationResult:
    """
    Check a configuration for unusable values (errors) and risky ones (warnings).
    """
    errors: List[str] = []
    warnings: List[str] = []

    if not config.environment:
        warnings.append("APP_ENV is not set. Defaults assume a development environment.")

    if isinstance(config, SqliteConfig):
        _validate_sqlite(config, errors, warnings)
    elif isinstance(config, SupabaseConfig):
        _validate_supabase(config, errors, warnings)
    else:
        _validate_postgres(config, errors, warnings)

    return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)


def _validate_sqlite(config: SqliteConfig, errors: List[str], warnings: List[str]) -> None:
    if not config.filename.strip():
        errors.append("SQLite filename is required but not provided. Set SQLITE_FILENAME.")
    elif config.filename != ":memory:":
        directory = Path(config.filename).expanduser().parent
        if not directory.exists():
            warnings.append(
                f"SQLite directory {directory} does not exist. It will be created automatically."
            )

    if config.environment == "production":
        warnings.append(
            "Using SQLite in production. Consider PostgreSQL/Supabase for better "
            "performance and reliability."
        )


def _validate_supabase(config: SupabaseConfig, errors: List[str], warnings: List[str]) -> None:
    if not config.url:
        errors.append("Supabase project URL is required. Set SUPABASE_URL.")
    elif not config.url.startswith("https://"):
        warnings.append(f"Supabase URL {config.url} is not https.")

    if not config.api_key:
        errors.append(
            "Supabase API key is required. Set SUPABASE_SERVICE_ROLE_KEY (or SUPABASE_KEY)."
        )


def _validate_postgres(config: PostgresConfig, errors: List[str], warnings: List[str]) -> None:
    if config.from_connection_string:
        if not config.database:
            errors.append("The connection string does not name a database.")
    else:
        required = (
            ("host", "host", "DB_HOST"),
            ("database name", "database", "DB_NAME"),
            ("user", "user", "DB_USER"),
            ("password", "password", "DB_PASSWORD"),
        )
        for label, attr, var in required:
            if not getattr(config, attr).strip():
                errors.append(
                    f"PostgreSQL {label} is required. Set {var} or use SUPABASE_DB_URL."
                )

    if not 1 <= config.port <= 65535:
        errors.append(
            f"PostgreSQL port must be an integer between 1 and 65535, got {config.port}."
        )

    if config.pool_max < 1:
        errors.append(f"DB_POOL_MAX must be at least 1, got {config.pool_max}.")
    elif config.pool_max != DEFAULT_POOL_MAX:
        warnings.append(
            f"Connection pool size is {config.pool_max} (default {DEFAULT_POOL_MAX})."
        )

    for label, value in (
        ("DB_IDLE_TIMEOUT", config.idle_timeout_ms),
        ("DB_CONNECTION_TIMEOUT", config.connect_timeout_ms),
        ("DB_QUERY_TIMEOUT", config.query_timeout_ms),
    ):
        if value < 0:
            errors.append(f"{label} must not be negative, got {value}.")

    if config.is_managed:
        if config.from_connection_string and not config.password.strip():
            errors.append(
                "Supabase connections require a password. Check your SUPABASE_DB_URL "
                "or set DB_PASSWORD."
            )
        if not config.ssl or config.ssl_explicitly_disabled:
            warnings.append(
                "TLS was disabled for a Supabase host. Supabase requires TLS, so it "
                "is forced on for this connection."
            )
        if config.port not in MANAGED_HOST_PORTS:
            warnings.append(
                f"Supabase typically uses port 5432 (or 6543 for the transaction "
                f"pooler), but {config.port} is configured."
            )
    elif not config.ssl:
        if config.environment == "production":
            warnings.append("TLS is disabled for a production database. Set DB_SSL=true.")
        else:
            warnings.append(
                "TLS is disabled (DB_SSL is not 'true'). Acceptable for local development only."
            )

    if config.environment == "development" and not config.explicit_backend:
        warnings.append(
            "Using PostgreSQL in development. Consider SQLite for easier setup "
            "(set DATABASE_BACKEND=sqlite)."
        )


def describe_setup(config: Optional[BackendConfiguration]) -> str:
    """Prose setup guide keyed off the detected backend."""
    if config is None:
        return _GENERIC_SETUP

    environment = config.environment or "not set"

    if isinstance(config, SqliteConfig):
        return f"""
SQLite Configuration (Current):
- Database file: {config.filename or '(not set)'}
- WAL mode: {'enabled' if config.enable_wal else 'disabled'}
- Environment: {environment}

Quick Setup for SQLite Development:
1. Ensure the data directory exists: mkdir -p ./data
2. Set environment variables (optional):
   SQLITE_FILENAME=./data/development.db
   SQLITE_WAL=true

To switch to PostgreSQL, set:
DATABASE_BACKEND=postgresql
DB_HOST=your_host
DB_NAME=your_database
DB_USER=your_user
DB_PASSWORD=your_password

For Supabase (recommended for production):
SUPABASE_DB_URL=postgresql://postgres:[password]@[project-ref].pooler.supabase.com:5432/postgres
""".strip()

    if isinstance(config, SupabaseConfig):
        return f"""
Supabase SDK Configuration (Current):
- Project URL: {config.url or '(not set)'}
- API key: {'set' if config.api_key else 'missing'}
- Schema: {config.db_schema}
- Environment: {environment}

Setup:
1. Open your Supabase project dashboard
2. Navigate to Settings > API
3. Set SUPABASE_URL to the project URL
4. Set SUPABASE_SERVICE_ROLE_KEY to the service role key

Limitations:
The SDK cannot execute arbitrary SQL. Schema migrations and transactions
need a direct connection: set SUPABASE_DB_URL to the pooled connection
string from Settings > Database and DATABASE_BACKEND=postgresql.
""".strip()

    pool_line = f"- Pool size: {config.pool_max}"
    troubleshooting = f"""
Common Issues:
- Connection timeout: Check network connectivity and firewall settings
- Authentication failed: Verify username and password
- SSL errors: For Supabase, SSL is required (automatically enabled)
- Pool exhaustion: Increase DB_POOL_MAX if needed (current: {config.pool_max})
"""

    if config.is_managed:
        project = config.host.split(".")[0] if config.host else "unknown"
        supabase_section = f"""
Supabase Setup (Current Configuration):
1. Go to your Supabase project dashboard
2. Navigate to Settings > Database
3. Copy the connection string under "Connection pooling"
4. Set SUPABASE_DB_URL environment variable
5. Ensure your IP is allowed in Supabase network restrictions

Current Supabase Settings:
- Project: {project}
- SSL: {'enabled' if config.ssl else 'disabled'}
{pool_line}
"""
    else:
        supabase_section = """
For Supabase deployment (recommended):
1. Create a Supabase project at https://supabase.com
2. Get your connection string from Settings > Database
3. Set: SUPABASE_DB_URL=postgresql://postgres:[password]@[project-ref].pooler.supabase.com:5432/postgres
"""

    return f"""
PostgreSQL Configuration{' (Supabase)' if config.is_managed else ''}:
- Host: {config.host or '(not set)'}:{config.port}
- Database: {config.database or '(not set)'}
- User: {config.user or '(not set)'}
- SSL: {'enabled' if config.ssl else 'disabled'}
{pool_line}
- Environment: {environment}
{supabase_section}{troubleshooting}
To use SQLite for development instead:
DATABASE_BACKEND=sqlite
SQLITE_FILENAME=./data/development.db
""".strip()


_GENERIC_SETUP = """
Basic Setup Instructions:
1. For development (SQLite):
   APP_ENV=development
   DATABASE_BACKEND=sqlite
   SQLITE_FILENAME=./data/development.db

2. For production (PostgreSQL):
   APP_ENV=production
   DATABASE_BACKEND=postgresql
   DB_HOST=your_host
   DB_NAME=your_database
   DB_USER=your_user
   DB_PASSWORD=your_password

3. For Supabase (recommended):
   SUPABASE_DB_URL=postgresql://postgres:[password]@[project-ref].pooler.supabase.com:5432/postgres

Check your .env file and ensure all required variables are set.
""".strip()


def summarize_config(
    config: BackendConfiguration,
    validation: Optional[ValidationResult] = None,
) -> Dict[str, Any]:
    """
    Configuration summary for health and debugging endpoints.

    Never includes passwords or API keys.
    """
    validation = validation or validate_config(config)
    summary: Dict[str, Any] = {
        "type": config.kind,
        "environment": config.environment or "not set",
        "explicit_type": config.explicit_backend,
        "validation": {
            "is_valid": validation.is_valid,
            "error_count": len(validation.errors),
            "warning_count": len(validation.warnings),
        },
    }

    if isinstance(config, SqliteConfig):
        summary["config"] = {
            "filename": config.filename,
            "enable_wal": config.enable_wal,
            "lock_timeout_ms": config.lock_timeout_ms,
        }
    elif isinstance(config, SupabaseConfig):
        summary["config"] = {
            "url": config.url,
            "schema": config.db_schema,
            "api_key_set": bool(config.api_key),
        }
    else:
        summary["config"] = {
            "host": config.host,
            "port": config.port,
            "database": config.database,
            "user": config.user,
            "ssl": config.ssl,
            "pool_max": config.pool_max,
            "password_set": bool(config.password),
            "is_supabase": config.is_managed,
        }
    return summary
