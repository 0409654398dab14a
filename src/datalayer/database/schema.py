"""
Legacy Bootstrap Schema

Baseline tables for deployments that predate versioned migrations. Created
once, inside a single transaction, and only when the database has no
migration history, the migrations directory is empty and `users` is absent.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, List

from .migrations import LEDGER_TABLE, MigrationRunner

if TYPE_CHECKING:
    from .adapters.base import DatabaseAdapter

logger = logging.getLogger(__name__)

LEGACY_TABLES = ("users", "clients", "communications", "tasks", "ai_actions", "audit_logs")

POSTGRES_SCHEMA: List[str] = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        email VARCHAR(255) UNIQUE NOT NULL,
        password_hash VARCHAR(255) NOT NULL,
        first_name VARCHAR(100) NOT NULL,
        last_name VARCHAR(100) NOT NULL,
        role VARCHAR(50) DEFAULT 'agent',
        is_active BOOLEAN DEFAULT true,
        created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
        updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS clients (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        crm_id VARCHAR(255) NOT NULL,
        crm_system VARCHAR(50) NOT NULL,
        name VARCHAR(255) NOT NULL,
        email VARCHAR(255),
        phone VARCHAR(50),
        photo_url TEXT,
        personal_details JSONB DEFAULT '{}',
        relationship_health JSONB DEFAULT '{}',
        last_crm_sync TIMESTAMP WITH TIME ZONE,
        created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
        updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
        UNIQUE(crm_system, crm_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS communications (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        client_id UUID REFERENCES clients(id) ON DELETE CASCADE,
        type VARCHAR(20) NOT NULL CHECK (type IN ('email', 'call', 'sms')),
        direction VARCHAR(20) NOT NULL CHECK (direction IN ('inbound', 'outbound')),
        subject TEXT,
        content TEXT NOT NULL,
        timestamp TIMESTAMP WITH TIME ZONE NOT NULL,
        tags TEXT[] DEFAULT '{}',
        sentiment DECIMAL(3,2),
        is_urgent BOOLEAN DEFAULT false,
        source VARCHAR(255),
        metadata JSONB DEFAULT '{}',
        created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        client_id UUID REFERENCES clients(id) ON DELETE SET NULL,
        description TEXT NOT NULL,
        type VARCHAR(50) NOT NULL,
        priority VARCHAR(20) DEFAULT 'medium' CHECK (priority IN ('low', 'medium', 'high')),
        status VARCHAR(20) DEFAULT 'pending' CHECK (status IN ('pending', 'in-progress', 'completed')),
        due_date TIMESTAMP WITH TIME ZONE,
        created_by VARCHAR(20) DEFAULT 'agent' CHECK (created_by IN ('agent', 'ai')),
        ai_context TEXT,
        created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
        updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ai_actions (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        type VARCHAR(100) NOT NULL,
        description TEXT NOT NULL,
        payload JSONB NOT NULL,
        requires_approval BOOLEAN DEFAULT true,
        risk_level VARCHAR(20) DEFAULT 'medium' CHECK (risk_level IN ('low', 'medium', 'high')),
        status VARCHAR(20) DEFAULT 'pending' CHECK (status IN ('pending', 'approved', 'rejected', 'executed')),
        confidence DECIMAL(3,2),
        chain_id UUID,
        step_number INTEGER,
        created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
        updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_logs (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id UUID REFERENCES users(id),
        action VARCHAR(100) NOT NULL,
        resource_type VARCHAR(50),
        resource_id UUID,
        details JSONB DEFAULT '{}',
        ip_address INET,
        user_agent TEXT,
        timestamp TIMESTAMP WITH TIME ZONE DEFAULT NOW()
    )
    """,
]

# SQLite has no UUID, JSONB, INET or array types; ids are generated by the caller
SQLITE_SCHEMA: List[str] = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT UNIQUE NOT NULL,
        password_hash TEXT NOT NULL,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        role TEXT DEFAULT 'agent',
        is_active INTEGER DEFAULT 1,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS clients (
        id TEXT PRIMARY KEY,
        crm_id TEXT NOT NULL,
        crm_system TEXT NOT NULL,
        name TEXT NOT NULL,
        email TEXT,
        phone TEXT,
        photo_url TEXT,
        personal_details TEXT DEFAULT '{}',
        relationship_health TEXT DEFAULT '{}',
        last_crm_sync TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(crm_system, crm_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS communications (
        id TEXT PRIMARY KEY,
        client_id TEXT REFERENCES clients(id) ON DELETE CASCADE,
        type TEXT NOT NULL CHECK (type IN ('email', 'call', 'sms')),
        direction TEXT NOT NULL CHECK (direction IN ('inbound', 'outbound')),
        subject TEXT,
        content TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        tags TEXT DEFAULT '[]',
        sentiment REAL,
        is_urgent INTEGER DEFAULT 0,
        source TEXT,
        metadata TEXT DEFAULT '{}',
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        client_id TEXT REFERENCES clients(id) ON DELETE SET NULL,
        description TEXT NOT NULL,
        type TEXT NOT NULL,
        priority TEXT DEFAULT 'medium' CHECK (priority IN ('low', 'medium', 'high')),
        status TEXT DEFAULT 'pending' CHECK (status IN ('pending', 'in-progress', 'completed')),
        due_date TEXT,
        created_by TEXT DEFAULT 'agent' CHECK (created_by IN ('agent', 'ai')),
        ai_context TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ai_actions (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        description TEXT NOT NULL,
        payload TEXT NOT NULL,
        requires_approval INTEGER DEFAULT 1,
        risk_level TEXT DEFAULT 'medium' CHECK (risk_level IN ('low', 'medium', 'high')),
        status TEXT DEFAULT 'pending' CHECK (status IN ('pending', 'approved', 'rejected', 'executed')),
        confidence REAL,
        chain_id TEXT,
        step_number INTEGER,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_logs (
        id TEXT PRIMARY KEY,
        user_id TEXT REFERENCES users(id),
        action TEXT NOT NULL,
        resource_type TEXT,
        resource_id TEXT,
        details TEXT DEFAULT '{}',
        ip_address TEXT,
        user_agent TEXT,
        timestamp TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
]

LEGACY_INDEXES: List[str] = [
    "CREATE INDEX IF NOT EXISTS idx_clients_crm_system_id ON clients(crm_system, crm_id)",
    "CREATE INDEX IF NOT EXISTS idx_communications_client_id ON communications(client_id)",
    "CREATE INDEX IF NOT EXISTS idx_communications_timestamp ON communications(timestamp DESC)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_client_id ON tasks(client_id)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)",
    "CREATE INDEX IF NOT EXISTS idx_ai_actions_status ON ai_actions(status)",
    "CREATE INDEX IF NOT EXISTS idx_audit_logs_timestamp ON audit_logs(timestamp DESC)",
]


def legacy_statements(dialect: str) -> List[str]:
    """DDL for the baseline schema in the given dialect ("postgresql" or "sqlite")."""
    tables = SQLITE_SCHEMA if dialect == "sqlite" else POSTGRES_SCHEMA
    return [" ".join(s.split()) for s in tables] + list(LEGACY_INDEXES)


async def ensure_legacy_schema(adapter: "DatabaseAdapter") -> bool:
    """
    Create the baseline schema if this database has never been migrated.

    Returns:
        True if the schema was created, False if bootstrap was skipped
    """
    if await adapter.table_exists(LEDGER_TABLE):
        logger.debug("Migration ledger present, skipping legacy schema bootstrap")
        return False

    if MigrationRunner(adapter, adapter.migrations_dir).discover_migrations():
        logger.debug("Migration files present, skipping legacy schema bootstrap")
        return False

    if await adapter.table_exists("users"):
        logger.debug("Legacy schema already present")
        return False

    await create_legacy_schema(adapter)
    return True


async def create_legacy_schema(adapter: "DatabaseAdapter") -> None:
    """
    Create every baseline table and index in one transaction.

    Raises:
        Exception: The first failing statement's error, after rollback
    """
    client = await adapter.get_client()
    try:
        await client.query("BEGIN")
        try:
            for statement in legacy_statements(adapter.dialect):
                await client.query(statement)
            await client.query("COMMIT")
        except Exception as e:
            logger.error(f"Failed to create initial {adapter.dialect} schema: {e}")
            try:
                await client.query("ROLLBACK")
            except Exception as rollback_error:
                logger.error(f"Rollback of legacy schema failed: {rollback_error}")
            raise
        logger.info(f"Initial {adapter.dialect} database schema created successfully")
    finally:
        await client.release()
