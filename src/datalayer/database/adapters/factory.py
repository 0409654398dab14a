"""
DatabaseAdapter Factory

Creates the adapter matching a resolved backend configuration. The adapter
is returned unconnected; callers own initialize() and close().
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional, Union

from ..config import BackendConfiguration, PostgresConfig, SqliteConfig, SupabaseConfig
from ..errors import ConfigurationError
from .base import DatabaseAdapter
from .postgres import PostgresAdapter
from .sqlite import SqliteAdapter
from .supabase import SupabaseAdapter

logger = logging.getLogger(__name__)


def create_adapter(
    config: BackendConfiguration,
    *,
    migrations_dir: Optional[Union[str, Path]] = None,
    bootstrap_legacy_schema: bool = False,
    **kwargs: Any,
) -> DatabaseAdapter:
    """
    Build the adapter for a configuration.

    Args:
        config: Resolved backend configuration
        migrations_dir: Directory holding NNN_description.sql files
        bootstrap_legacy_schema: Create the baseline schema on first start
        **kwargs: Backend-specific options, e.g. pool_factory for PostgreSQL
                  or client_factory for Supabase.

    Raises:
        ConfigurationError: If the configuration type is not recognised
    """
    common = {
        "migrations_dir": migrations_dir,
        "bootstrap_legacy_schema": bootstrap_legacy_schema,
    }

    if isinstance(config, PostgresConfig):
        adapter: DatabaseAdapter = PostgresAdapter(config, **common, **kwargs)
    elif isinstance(config, SqliteConfig):
        adapter = SqliteAdapter(config, **common, **kwargs)
    elif isinstance(config, SupabaseConfig):
        # The SDK cannot run DDL, so there is nothing to bootstrap
        adapter = SupabaseAdapter(config, migrations_dir=migrations_dir, **kwargs)
    else:
        raise ConfigurationError(
            f"Unsupported database configuration: {type(config).__name__}",
            errors=["DATABASE_BACKEND must be one of: postgresql, supabase, sqlite."],
        )

    logger.info(f"Created {type(adapter).__name__} (backend={adapter.backend.value})")
    return adapter
