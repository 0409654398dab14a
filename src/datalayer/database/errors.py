"""
Database Exception Classes

Typed failures raised by the configuration resolver, the adapters and the
migration runner. Ordinary driver errors from a failing query are re-raised
unchanged and are not wrapped in these classes.
"""

from enum import Enum
from typing import List, Optional, Sequence


class DatabaseError(Exception):
    """Base exception for the data layer."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ConfigurationError(DatabaseError):
    """
    The resolved configuration cannot be used.

    Carries the structured validation output plus the prose setup guide so
    start-up can print everything an operator needs in one place.
    """

    def __init__(
        self,
        message: str,
        errors: Optional[Sequence[str]] = None,
        warnings: Optional[Sequence[str]] = None,
        instructions: Optional[str] = None,
    ):
        self.errors = list(errors or [])
        self.warnings = list(warnings or [])
        self.instructions = instructions
        super().__init__(message)

    def __str__(self) -> str:
        lines = [self.message]
        if self.errors:
            lines.append("")
            lines.append("Errors:")
            lines.extend(f"- {e}" for e in self.errors)
        if self.warnings:
            lines.append("")
            lines.append("Warnings:")
            lines.extend(f"- {w}" for w in self.warnings)
        if self.instructions:
            lines.append("")
            lines.append(self.instructions)
        return "\n".join(lines)


class ConnectionErrorCategory(str, Enum):
    """Triage buckets for a failed connection attempt."""

    HOST_NOT_FOUND = "host_not_found"
    CONNECTION_REFUSED = "connection_refused"
    AUTHENTICATION_FAILED = "authentication_failed"
    DATABASE_MISSING = "database_missing"
    TIMEOUT = "timeout"
    TLS_ERROR = "tls_error"
    CERTIFICATE_ERROR = "certificate_error"
    UNKNOWN = "unknown"


class ConnectionFailure(DatabaseError):
    """The backend could not be reached during initialization."""

    def __init__(
        self,
        message: str,
        category: ConnectionErrorCategory = ConnectionErrorCategory.UNKNOWN,
        suggestions: Optional[List[str]] = None,
    ):
        self.category = category
        self.suggestions = list(suggestions or [])
        super().__init__(message)

    def __str__(self) -> str:
        if not self.suggestions:
            return self.message
        return self.message + "\n\nSuggestions:\n- " + "\n- ".join(self.suggestions)


class InitializationError(DatabaseError):
    """Facade start-up failed after configuration was accepted."""


class NotInitializedError(DatabaseError):
    """An operation was attempted before initialize() succeeded."""

    def __init__(self, what: str = "Database service"):
        super().__init__(f"{what} not initialized. Call initialize() first.")


class UnsupportedOperationError(DatabaseError):
    """The active backend cannot execute the requested statement."""


class QueryTimeoutError(DatabaseError):
    """A query exceeded the configured timeout."""


class ClientReleasedError(DatabaseError):
    """A checked-out client was used after release()."""


class MigrationError(DatabaseError):
    """A migration failed; the run was aborted."""

    def __init__(
        self,
        message: str,
        migration_id: Optional[str] = None,
        filename: Optional[str] = None,
        statement_index: Optional[int] = None,
    ):
        self.migration_id = migration_id
        self.filename = filename
        self.statement_index = statement_index
        super().__init__(message)


class DuplicateMigrationError(MigrationError):
    """Two migration files share one ordinal."""


class DataTransferError(DatabaseError):
    """Copying a table between backends failed; that table's batch was rolled back."""

    def __init__(self, message: str, table: Optional[str] = None, offset: Optional[int] = None):
        self.table = table
        self.offset = offset
        super().__init__(message)
