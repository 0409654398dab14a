"""
SQL text helpers shared by the adapters and the migration runner.

This is deliberately not a SQL parser. It knows just enough about quoting
to split migration files into executable statements and to tell a
row-returning statement from a command.
"""

import re
from typing import List

# Opening dollar-quote delimiter: $$ or $tag$. Bodies of functions, procedures
# and DO blocks sit between a matching pair and may contain semicolons.
_DOLLAR_TAG = re.compile(r"\$(?:[A-Za-z_][A-Za-z_0-9]*)?\$")
_IDENTIFIER_CHARS = frozenset("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789_$")
_COMMENTS = re.compile(r"--[^\n]*|/\*.*?\*/", re.DOTALL)

_ROW_RETURNING = ("select", "with", "values", "show", "explain", "pragma", "table")
_RETURNING_CLAUSE = re.compile(r"\bRETURNING\b", re.IGNORECASE)
_LEADING_COMMENTS = re.compile(r"^(?:\s*--[^\n]*\n|\s*/\*.*?\*/)*\s*", re.DOTALL)

# Commands PostgreSQL refuses inside a transaction block (SQLSTATE 25001);
# SQLite likewise refuses VACUUM. Matched on the statement head only, so a
# procedural body that mentions them does not count.
_OUTSIDE_TRANSACTION = re.compile(
    r"^(?:"
    r"(?:CREATE\s+(?:UNIQUE\s+)?|DROP\s+)INDEX\s+CONCURRENTLY\b"
    r"|REINDEX\b[^;]*?\bCONCURRENTLY\b"
    r"|REFRESH\s+MATERIALIZED\s+VIEW\s+CONCURRENTLY\b"
    r"|ALTER\s+TABLE\b[^;]*?\bDETACH\s+PARTITION\b[^;]*?\bCONCURRENTLY\b"
    r"|VACUUM\b"
    r"|ALTER\s+SYSTEM\b"
    r"|(?:CREATE|DROP)\s+(?:DATABASE|TABLESPACE)\b"
    r")",
    re.IGNORECASE | re.DOTALL,
)


def split_statements(sql: str) -> List[str]:
    """
    Split migration SQL into individually executable statements.

    Semicolons only end a statement at the top level: inside quoted
    literals, double-quoted identifiers, dollar-quoted bodies and
    comments they are kept as text. Statements are returned without their
    trailing semicolon; empty and comment-only fragments are dropped.
    """
    statements = []
    for fragment in _split_top_level(sql):
        fragment = fragment.strip()
        if not fragment or _is_comment_only(fragment):
            continue
        statements.append(fragment)
    return statements


def _split_top_level(text: str) -> List[str]:
    """Split on semicolons outside quotes, dollar quotes and comments."""
    parts = []
    start = 0
    i = 0
    length = len(text)

    while i < length:
        ch = text[i]

        if ch in ("'", '"'):
            i = _skip_quoted(text, i, ch)
            continue
        if text.startswith("--", i):
            end = text.find("\n", i)
            i = length if end == -1 else end
            continue
        if text.startswith("/*", i):
            end = text.find("*/", i + 2)
            i = length if end == -1 else end + 2
            continue
        if ch == "$" and (i == 0 or text[i - 1] not in _IDENTIFIER_CHARS):
            match = _DOLLAR_TAG.match(text, i)
            if match:
                tag = match.group(0)
                end = text.find(tag, match.end())
                i = length if end == -1 else end + len(tag)
                continue
        if ch == ";":
            parts.append(text[start:i])
            start = i + 1
        i += 1

    parts.append(text[start:])
    return parts


def _skip_quoted(text: str, i: int, quote: str) -> int:
    """Index just past the literal opened at ``i``; a doubled quote is an escape."""
    i += 1
    length = len(text)
    while i < length:
        if text[i] == quote:
            if i + 1 < length and text[i + 1] == quote:
                i += 2
                continue
            return i + 1
        i += 1
    return length


def _is_comment_only(fragment: str) -> bool:
    return not _COMMENTS.sub("", fragment).strip()


def strip_leading_comments(sql: str) -> str:
    return _LEADING_COMMENTS.sub("", sql, count=1)


def leading_keyword(sql: str) -> str:
    """First SQL keyword, lower-cased ('' for empty text)."""
    body = strip_leading_comments(sql).lstrip("(").lstrip()
    match = re.match(r"[A-Za-z]+", body)
    return match.group(0).lower() if match else ""


def returns_rows(sql: str) -> bool:
    """True for queries that produce a result set."""
    if leading_keyword(sql) in _ROW_RETURNING:
        return True
    return bool(_RETURNING_CLAUSE.search(sql))


def truncate_query(sql: str, limit: int = 100) -> str:
    """Single-line preview of a query for log output."""
    flat = " ".join(sql.split())
    if len(flat) > limit:
        return flat[:limit] + "..."
    return flat


def requires_autocommit(sql: str) -> bool:
    """True for statements that cannot run inside BEGIN ... COMMIT."""
    return bool(_OUTSIDE_TRANSACTION.match(strip_leading_comments(sql)))


def quote_identifier(name: str) -> str:
    """Double-quote a table or column name for interpolation into SQL."""
    return '"' + name.replace('"', '""') + '"'
