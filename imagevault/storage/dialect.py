"""SQL dialect translation.

Queries in imagevault are written once in the Postgres dialect. The SQLite
driver passes every statement and parameter tuple through here so adapters
never branch on backend type.
"""

import re
from datetime import date, datetime
from typing import Any, Iterable, Optional, Sequence, Tuple

from imagevault.utils import ensure_utc, to_json

_REWRITES = (
    (re.compile(r"\bBIGSERIAL\s+PRIMARY\s+KEY\b", re.IGNORECASE), "INTEGER PRIMARY KEY AUTOINCREMENT"),
    (re.compile(r"\bSERIAL\s+PRIMARY\s+KEY\b", re.IGNORECASE), "INTEGER PRIMARY KEY AUTOINCREMENT"),
    (re.compile(r"\b(?:NOW|CURRENT_TIMESTAMP)\s*\(\s*\)", re.IGNORECASE), "datetime('now')"),
    (re.compile(r"\bTIMESTAMPTZ\b", re.IGNORECASE), "TIMESTAMP"),
    (re.compile(r"\bJSONB?\b", re.IGNORECASE), "TEXT"),
    (re.compile(r"\bBOOLEAN\b", re.IGNORECASE), "INTEGER"),
    (re.compile(r"\bDOUBLE\s+PRECISION\b", re.IGNORECASE), "REAL"),
    (re.compile(r"\bTRUE\b", re.IGNORECASE), "1"),
    (re.compile(r"\bFALSE\b", re.IGNORECASE), "0"),
    (re.compile(r"\bILIKE\b", re.IGNORECASE), "LIKE"),
    # SQLite locks the whole database for a write transaction; no row locks
    (re.compile(r"\s+FOR\s+UPDATE\b", re.IGNORECASE), ""),
)

_DUPLICATE_KEY = re.compile(r"\s+ON\s+DUPLICATE\s+KEY\s+UPDATE\b.*$", re.IGNORECASE | re.DOTALL)
_INSERT_INTO = re.compile(r"^\s*INSERT\s+INTO\b", re.IGNORECASE)
_STRING_LITERAL = re.compile(r"'(?:[^']|'')*'")


def _translate_code(fragment: str) -> str:
    for pattern, replacement in _REWRITES:
        fragment = pattern.sub(replacement, fragment)
    return fragment.replace("%s", "?")


def translate_sql(sql: str) -> str:
    """Rewrite a Postgres-dialect statement for SQLite.

    String literals are left untouched; only the SQL around them changes.
    """
    # MySQL-style upsert from older scripts
    if _DUPLICATE_KEY.search(sql):
        sql = _DUPLICATE_KEY.sub("", sql)
        sql = _INSERT_INTO.sub("INSERT OR REPLACE INTO", sql, count=1)

    parts = []
    last = 0
    for match in _STRING_LITERAL.finditer(sql):
        parts.append(_translate_code(sql[last:match.start()]))
        parts.append(match.group(0))
        last = match.end()
    parts.append(_translate_code(sql[last:]))
    return "".join(parts)


def convert_param(value: Any) -> Any:
    """Coerce one bound parameter into a type sqlite3 stores faithfully."""
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, datetime):
        # stored as UTC text so lexical comparisons order correctly
        return ensure_utc(value).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (dict, list)):
        return to_json(value)
    if hasattr(value, "value") and isinstance(getattr(value, "value"), str):
        # str-valued Enum members
        return value.value
    return value


def convert_params(params: Optional[Iterable[Any]]) -> Tuple[Any, ...]:
    if not params:
        return ()
    return tuple(convert_param(p) for p in params)


def split_statements(script: str) -> Sequence[str]:
    """Split a multi-statement script on semicolons outside string literals."""
    statements = []
    current = []
    in_string = False
    for char in script:
        if char == "'":
            in_string = not in_string
        if char == ";" and not in_string:
            statement = "".join(current).strip()
            if statement:
                statements.append(statement)
            current = []
        else:
            current.append(char)
    tail = "".join(current).strip()
    if tail:
        statements.append(tail)
    return statements
