"""
Database Service

Facade over configuration, adapter selection and migrations. Application
code talks to one DatabaseService and never to an adapter directly.

Usage:
    db = DatabaseService()
    await db.initialize()

    result = await db.query("SELECT * FROM users WHERE email = $1", [email])

    async with db.transaction() as tx:
        await tx.query("INSERT INTO tasks (id, description, type) VALUES ($1, $2, $3)", [...])
        await tx.query("UPDATE clients SET updated_at = CURRENT_TIMESTAMP WHERE id = $1", [...])

    await db.close()
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Union

from ..observability.tracing import create_span, traced
from .adapters.base import DatabaseAdapter, DatabaseClient, QueryParams, QueryResult
from .adapters.factory import create_adapter
from .config import (
    DEFAULT_MIGRATIONS_DIR,
    BackendConfiguration,
    ConfigResolver,
    ValidationResult,
    describe_setup,
    summarize_config,
    validate_config,
)
from .errors import ConfigurationError, InitializationError, NotInitializedError
from .migrations import MigrationFile, MigrationRunner, MigrationStatus, MigrationValidation

logger = logging.getLogger(__name__)

AdapterFactory = Callable[..., DatabaseAdapter]


class DatabaseService:
    """
    Owns the active adapter for the lifetime of the application.

    Construct it with an explicit configuration, or let it resolve one from
    the environment through a ConfigResolver. initialize() is idempotent;
    close() returns the service to its uninitialized state so it can be
    initialized again.
    """

    def __init__(
        self,
        config: Optional[BackendConfiguration] = None,
        *,
        resolver: Optional[ConfigResolver] = None,
        migrations_dir: Optional[Union[str, Path]] = None,
        adapter_factory: AdapterFactory = create_adapter,
        bootstrap_legacy_schema: bool = True,
    ):
        if config is None and resolver is None:
            resolver = ConfigResolver()
        self._config = config
        self._resolver = resolver
        self._adapter_factory = adapter_factory
        self._bootstrap_legacy_schema = bootstrap_legacy_schema
        self._adapter: Optional[DatabaseAdapter] = None
        self._initialized = False
        # Serializes initialize() and close()
        self._init_lock = asyncio.Lock()

        if migrations_dir is not None:
            self.migrations_dir = Path(migrations_dir)
        elif resolver is not None:
            self.migrations_dir = resolver.migrations_dir
        else:
            self.migrations_dir = Path(DEFAULT_MIGRATIONS_DIR)

    # =========================================================================
    # Configuration
    # =========================================================================

    @property
    def config(self) -> BackendConfiguration:
        """The active configuration, resolving it on first access."""
        if self._config is None:
            self._config = self._resolver.resolve()
        return self._config

    def validate_configuration(self) -> ValidationResult:
        """Validate the configuration without connecting."""
        try:
            config = self.config
        except ConfigurationError as e:
            return ValidationResult(is_valid=False, errors=e.errors or [e.message], warnings=e.warnings)
        return validate_config(config)

    def get_setup_instructions(self) -> str:
        try:
            config = self.config
        except ConfigurationError:
            config = None
        return describe_setup(config)

    def get_config_summary(self) -> Dict[str, Any]:
        """Redacted configuration summary; never contains secrets."""
        return summarize_config(self.config)

    @property
    def database_type(self) -> str:
        return self.config.kind

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def adapter(self) -> DatabaseAdapter:
        self._ensure_initialized()
        return self._adapter

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self, skip_migrations: bool = False) -> None:
        """
        Validate configuration, connect, and apply pending migrations.

        Args:
            skip_migrations: Connect without running migrations

        Raises:
            ConfigurationError: If the configuration is invalid (nothing is opened)
            InitializationError: If connecting or migrating fails
        """
        if self._initialized:
            return

        async with self._init_lock:
            if self._initialized:
                return
            await self._initialize(skip_migrations)

    async def _initialize(self, skip_migrations: bool) -> None:
        validation = self.validate_configuration()
        if not validation.is_valid:
            logger.error(
                "Database configuration validation failed",
                extra={"errors": validation.errors, "warnings": validation.warnings},
            )
            raise ConfigurationError(
                "Database configuration invalid",
                errors=validation.errors,
                warnings=validation.warnings,
                instructions=self.get_setup_instructions(),
            )

        if validation.warnings:
            logger.warning(
                "Database configuration warnings",
                extra={"warnings": validation.warnings},
            )

        config = self.config
        summary = summarize_config(config, validation)
        logger.info("Database configuration loaded", extra={"config_summary": summary})

        adapter = self._adapter_factory(
            config,
            migrations_dir=self.migrations_dir,
            bootstrap_legacy_schema=self._bootstrap_legacy_schema,
        )

        with create_span("db.service.initialize", {"db.backend": config.kind}):
            try:
                await adapter.initialize()
                if not skip_migrations:
                    await adapter.run_migrations()
            except Exception as e:
                logger.error(
                    f"Database service initialization failed: {e}",
                    extra={"backend": config.kind, "config_summary": summary},
                )
                await _close_quietly(adapter)
                raise InitializationError(
                    f"Database initialization failed: {e}\n\n{describe_setup(config)}"
                ) from e

        self._adapter = adapter
        self._initialized = True
        logger.info(f"Database service initialized successfully (backend={config.kind})")

    async def close(self) -> None:
        """Close the adapter. Safe to call when not initialized."""
        async with self._init_lock:
            adapter, self._adapter = self._adapter, None
            self._initialized = False
            if adapter is not None:
                await adapter.close()
                logger.info("Database service closed")

    # =========================================================================
    # Queries
    # =========================================================================

    async def query(self, text: str, params: QueryParams = None) -> QueryResult:
        self._ensure_initialized()
        return await self._adapter.query(text, params)

    async def get_client(self) -> DatabaseClient:
        """Check out a client. The caller must release() it."""
        self._ensure_initialized()
        return await self._adapter.get_client()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[DatabaseClient]:
        """
        Run a block inside BEGIN/COMMIT on one client.

        Any exception rolls the transaction back and is re-raised. The
        client is always released.
        """
        client = await self.get_client()
        try:
            await client.query("BEGIN")
            try:
                yield client
            except Exception:
                try:
                    await client.query("ROLLBACK")
                except Exception as rollback_error:
                    logger.error(f"Transaction rollback failed: {rollback_error}")
                raise
            await client.query("COMMIT")
        finally:
            await client.release()

    # =========================================================================
    # Migrations
    # =========================================================================

    async def run_migrations(self) -> List[MigrationFile]:
        self._ensure_initialized()
        return await self._adapter.run_migrations()

    async def get_migration_status(self) -> MigrationStatus:
        self._ensure_initialized()
        return await self._runner().get_migration_status()

    async def validate_migrations(self) -> MigrationValidation:
        self._ensure_initialized()
        return await self._runner().validate_migrations()

    def _runner(self) -> MigrationRunner:
        return MigrationRunner(self._adapter, self.migrations_dir)

    # =========================================================================
    # Health
    # =========================================================================

    @traced("db.health_check")
    async def health_check(self) -> Dict[str, Any]:
        """
        Round-trip to the database.

        Never raises; failures are logged and reported as "unhealthy".
        """
        status = "healthy"
        try:
            self._ensure_initialized()
            await self._adapter.ping()
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            status = "unhealthy"

        return {
            "status": status,
            "type": self._type_or_unknown(),
            "timestamp": datetime.now(timezone.utc),
        }

    def _type_or_unknown(self) -> str:
        try:
            return self.database_type
        except ConfigurationError:
            return "unknown"

    def _ensure_initialized(self) -> None:
        if not self._initialized or self._adapter is None:
            raise NotInitializedError("Database service")


async def _close_quietly(adapter: DatabaseAdapter) -> None:
    try:
        await adapter.close()
    except Exception as e:
        logger.warning(f"Error closing adapter after failed initialization: {e}")
