"""
Connection Failure Triage

Maps a driver exception raised while connecting into a ConnectionFailure
with a category and operator suggestions. No retry happens here.
"""

import asyncio
import socket
import ssl
from typing import List, Optional, Tuple

from ..errors import ConnectionErrorCategory, ConnectionFailure

_AUTH_SQLSTATES = ("28P01", "28000")
_MISSING_DATABASE_SQLSTATE = "3D000"

_MESSAGES = {
    ConnectionErrorCategory.HOST_NOT_FOUND: "Database host not found",
    ConnectionErrorCategory.CONNECTION_REFUSED: "Connection refused by database server",
    ConnectionErrorCategory.AUTHENTICATION_FAILED: "Authentication failed",
    ConnectionErrorCategory.DATABASE_MISSING: "Database does not exist",
    ConnectionErrorCategory.TIMEOUT: "Connection timeout",
    ConnectionErrorCategory.TLS_ERROR: "SSL connection error",
    ConnectionErrorCategory.CERTIFICATE_ERROR: "SSL certificate validation failed",
    ConnectionErrorCategory.UNKNOWN: "PostgreSQL connection failed",
}

_SUGGESTIONS = {
    ConnectionErrorCategory.HOST_NOT_FOUND: [
        "Check DB_HOST or SUPABASE_DB_URL",
        "Verify network connectivity",
    ],
    ConnectionErrorCategory.CONNECTION_REFUSED: [
        "Check if PostgreSQL is running",
        "Verify DB_PORT is correct",
    ],
    ConnectionErrorCategory.AUTHENTICATION_FAILED: [
        "Check DB_USER and DB_PASSWORD",
        "For Supabase, verify your connection string password",
    ],
    ConnectionErrorCategory.DATABASE_MISSING: [
        "Check DB_NAME in your configuration",
        "Create the database first",
    ],
    ConnectionErrorCategory.TIMEOUT: [
        "Check network connectivity",
        "For Supabase, try increasing DB_CONNECTION_TIMEOUT",
    ],
    ConnectionErrorCategory.TLS_ERROR: [
        "For Supabase, ensure SSL is enabled",
        "Check SSL certificate configuration",
    ],
    ConnectionErrorCategory.CERTIFICATE_ERROR: [
        "This is usually fixed automatically for Supabase connections",
        "If the issue persists, check your Supabase project settings",
    ],
    ConnectionErrorCategory.UNKNOWN: [],
}


def classify_connection_error(error: BaseException) -> ConnectionErrorCategory:
    """Pick the triage bucket for a connection-time exception."""
    sqlstate: Optional[str] = getattr(error, "sqlstate", None)
    message = str(error)

    if isinstance(error, socket.gaierror):
        return ConnectionErrorCategory.HOST_NOT_FOUND
    if isinstance(error, ConnectionRefusedError):
        return ConnectionErrorCategory.CONNECTION_REFUSED
    if sqlstate in _AUTH_SQLSTATES:
        return ConnectionErrorCategory.AUTHENTICATION_FAILED
    if sqlstate == _MISSING_DATABASE_SQLSTATE:
        return ConnectionErrorCategory.DATABASE_MISSING
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return ConnectionErrorCategory.TIMEOUT
    if isinstance(error, ssl.SSLCertVerificationError) or (
        "certificate" in message.lower() or "self-signed" in message.lower()
    ):
        return ConnectionErrorCategory.CERTIFICATE_ERROR
    if isinstance(error, ssl.SSLError) or "SSL" in message:
        return ConnectionErrorCategory.TLS_ERROR
    return ConnectionErrorCategory.UNKNOWN


def describe_connection_error(
    error: BaseException,
) -> Tuple[ConnectionErrorCategory, str, List[str]]:
    """Return (category, headline, suggestions) for a connection-time exception."""
    category = classify_connection_error(error)
    return category, _MESSAGES[category], list(_SUGGESTIONS[category])


def connection_failure(error: BaseException) -> ConnectionFailure:
    """Wrap a connection-time exception in a ConnectionFailure."""
    category, headline, suggestions = describe_connection_error(error)
    detail = str(error) or type(error).__name__
    return ConnectionFailure(
        f"{headline}: {detail}",
        category=category,
        suggestions=suggestions,
    )
