"""
SQL to PostgREST translation for the Supabase SDK adapter.

Only a narrow, single-table DML subset is recognised:

    SELECT cols FROM t [WHERE c = v [AND ...]] [ORDER BY c [ASC|DESC], ...] [LIMIT n]
    INSERT INTO t (cols) VALUES (v, ...) [RETURNING *]
    UPDATE t SET c = v, ... WHERE c = v [AND ...] [RETURNING *]
    DELETE FROM t WHERE c = v [AND ...] [RETURNING *]

Values are $n placeholders, quoted strings, numbers, TRUE, FALSE or NULL.
WHERE conditions are equalities or `c IS NULL`. Everything else raises
UnsupportedOperationError.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..errors import UnsupportedOperationError
from ..sql import truncate_query

_IDENT = r"[A-Za-z_][A-Za-z_0-9]*"
_VALUE = r"\$\d+|'(?:[^']|'')*'|-?\d+(?:\.\d+)?|TRUE|FALSE|NULL"

_SELECT = re.compile(
    rf"^SELECT\s+(?P<columns>\*|{_IDENT}(?:\s*,\s*{_IDENT})*)\s+FROM\s+(?P<table>{_IDENT})"
    r"(?:\s+WHERE\s+(?P<where>.+?))?"
    r"(?:\s+ORDER\s+BY\s+(?P<order>.+?))?"
    r"(?:\s+LIMIT\s+(?P<limit>\$\d+|\d+))?\s*;?\s*$",
    re.IGNORECASE | re.DOTALL,
)
_INSERT = re.compile(
    rf"^INSERT\s+INTO\s+(?P<table>{_IDENT})\s*\((?P<columns>[^)]*)\)\s*"
    r"VALUES\s*\((?P<values>.*)\)"
    r"(?P<returning>\s+RETURNING\s+\*)?\s*;?\s*$",
    re.IGNORECASE | re.DOTALL,
)
_UPDATE = re.compile(
    rf"^UPDATE\s+(?P<table>{_IDENT})\s+SET\s+(?P<set>.+?)"
    r"(?:\s+WHERE\s+(?P<where>.+?))?"
    r"(?P<returning>\s+RETURNING\s+\*)?\s*;?\s*$",
    re.IGNORECASE | re.DOTALL,
)
_DELETE = re.compile(
    rf"^DELETE\s+FROM\s+(?P<table>{_IDENT})"
    r"(?:\s+WHERE\s+(?P<where>.+?))?"
    r"(?P<returning>\s+RETURNING\s+\*)?\s*;?\s*$",
    re.IGNORECASE | re.DOTALL,
)

_CONDITION = re.compile(
    rf"\s*(?P<column>{_IDENT})\s*(?:=\s*(?P<value>{_VALUE})|(?P<is_null>IS\s+NULL))\s*",
    re.IGNORECASE,
)
_ASSIGNMENT = re.compile(rf"\s*(?P<column>{_IDENT})\s*=\s*(?P<value>{_VALUE})\s*", re.IGNORECASE)
_LIST_VALUE = re.compile(rf"\s*(?P<value>{_VALUE})\s*", re.IGNORECASE)
_ORDER_TERM = re.compile(rf"\s*(?P<column>{_IDENT})(?:\s+(?P<direction>ASC|DESC))?\s*", re.IGNORECASE)
_AND = re.compile(r"AND\b", re.IGNORECASE)


@dataclass
class Condition:
    column: str
    value: Optional[str]  # None means IS NULL


@dataclass
class TableOperation:
    """A statement reduced to one PostgREST table call."""

    action: str  # select | insert | update | delete
    table: str
    columns: List[str] = field(default_factory=list)
    values: List[str] = field(default_factory=list)
    assignments: Dict[str, str] = field(default_factory=dict)
    conditions: List[Condition] = field(default_factory=list)
    order: List[Tuple[str, bool]] = field(default_factory=list)  # (column, descending)
    limit: Optional[str] = None
    returning: bool = False


def _unsupported(sql: str, reason: str) -> UnsupportedOperationError:
    return UnsupportedOperationError(
        f"Supabase SDK backend cannot execute this statement ({reason}): "
        f"{truncate_query(sql)}. Use a direct PostgreSQL connection (SUPABASE_DB_URL) "
        "for arbitrary SQL."
    )


def _parse_conditions(sql: str, where: str) -> List[Condition]:
    conditions = []
    position = 0
    while True:
        match = _CONDITION.match(where, position)
        if not match:
            raise _unsupported(sql, "only 'column = value' conditions joined by AND are supported")
        value = None if match.group("is_null") else match.group("value")
        conditions.append(Condition(match.group("column"), value))
        position = match.end()
        if position == len(where):
            return conditions
        joiner = _AND.match(where, position)
        if not joiner:
            raise _unsupported(sql, "only 'column = value' conditions joined by AND are supported")
        position = joiner.end()


def _parse_list(sql: str, text: str, pattern: "re.Pattern[str]", what: str) -> List["re.Match[str]"]:
    items = []
    position = 0
    while True:
        match = pattern.match(text, position)
        if not match:
            raise _unsupported(sql, f"unrecognised {what}")
        items.append(match)
        position = match.end()
        if position == len(text):
            return items
        if text[position] != ",":
            raise _unsupported(sql, f"unrecognised {what}")
        position += 1


def parse_statement(sql: str) -> TableOperation:
    """
    Reduce a statement to a TableOperation.

    Raises:
        UnsupportedOperationError: If the statement is outside the supported subset
    """
    text = sql.strip()

    match = _SELECT.match(text)
    if match:
        columns = match.group("columns")
        op = TableOperation(
            action="select",
            table=match.group("table"),
            columns=[] if columns == "*" else [c.strip() for c in columns.split(",")],
            limit=match.group("limit"),
        )
        if match.group("where"):
            op.conditions = _parse_conditions(sql, match.group("where"))
        if match.group("order"):
            op.order = [
                (m.group("column"), (m.group("direction") or "").upper() == "DESC")
                for m in _parse_list(sql, match.group("order"), _ORDER_TERM, "ORDER BY clause")
            ]
        return op

    match = _INSERT.match(text)
    if match:
        columns = [c.strip() for c in match.group("columns").split(",")]
        if not all(re.fullmatch(_IDENT, c) for c in columns):
            raise _unsupported(sql, "unrecognised column list")
        values = [
            m.group("value")
            for m in _parse_list(sql, match.group("values"), _LIST_VALUE, "VALUES list")
        ]
        if len(values) != len(columns):
            raise _unsupported(sql, "column and value counts differ")
        return TableOperation(
            action="insert",
            table=match.group("table"),
            columns=columns,
            values=values,
            returning=bool(match.group("returning")),
        )

    for action, pattern in (("update", _UPDATE), ("delete", _DELETE)):
        match = pattern.match(text)
        if not match:
            continue
        if not match.group("where"):
            raise _unsupported(sql, f"{action.upper()} without a WHERE clause is refused")
        op = TableOperation(
            action=action,
            table=match.group("table"),
            conditions=_parse_conditions(sql, match.group("where")),
            returning=bool(match.group("returning")),
        )
        if action == "update":
            op.assignments = {
                m.group("column"): m.group("value")
                for m in _parse_list(sql, match.group("set"), _ASSIGNMENT, "SET clause")
            }
        return op

    raise _unsupported(sql, "no structured SDK equivalent")


def resolve_value(token: str, params: Sequence[Any]) -> Any:
    """Turn a value token into a Python value, reading $n from params."""
    if token.startswith("$"):
        index = int(token[1:])
        if not 1 <= index <= len(params):
            raise ValueError(
                f"Query references {token} but {len(params)} parameter(s) were given"
            )
        return params[index - 1]
    if token.startswith("'"):
        return token[1:-1].replace("''", "'")
    upper = token.upper()
    if upper == "NULL":
        return None
    if upper in ("TRUE", "FALSE"):
        return upper == "TRUE"
    return float(token) if "." in token else int(token)


def build_request(client: Any, op: TableOperation, params: Sequence[Any]) -> Any:
    """Chain PostgREST builder calls for op. The caller awaits .execute()."""
    table = client.table(op.table)

    if op.action == "select":
        request = table.select(",".join(op.columns) or "*")
    elif op.action == "insert":
        request = table.insert({
            column: resolve_value(value, params)
            for column, value in zip(op.columns, op.values)
        })
    elif op.action == "update":
        request = table.update({
            column: resolve_value(value, params)
            for column, value in op.assignments.items()
        })
    else:
        request = table.delete()

    for condition in op.conditions:
        if condition.value is None:
            request = request.is_(condition.column, "null")
        else:
            request = request.eq(condition.column, resolve_value(condition.value, params))

    for column, descending in op.order:
        request = request.order(column, desc=descending)

    if op.limit is not None:
        request = request.limit(int(resolve_value(op.limit, params)))

    return request
