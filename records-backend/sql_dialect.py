import re
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, NamedTuple, Optional, Sequence, Tuple


# ==================== LEXING ====================

def _segments(sql: str) -> List[Tuple[str, bool]]:
    """Split SQL into (text, is_code) pieces.

    String literals, quoted identifiers and comments come back with
    ``is_code=False`` so callers can leave them alone.
    """
    pieces: List[Tuple[str, bool]] = []
    buf: List[str] = []
    i = 0
    n = len(sql)

    def flush(is_code: bool):
        if buf:
            pieces.append(("".join(buf), is_code))
            buf.clear()

    while i < n:
        ch = sql[i]
        if ch in ("'", '"'):
            flush(True)
            end = i + 1
            while end < n:
                if sql[end] == ch:
                    # '' inside a literal is an escaped quote
                    if end + 1 < n and sql[end + 1] == ch:
                        end += 2
                        continue
                    break
                end += 1
            pieces.append((sql[i:end + 1], False))
            i = end + 1
        elif sql.startswith("--", i):
            flush(True)
            end = sql.find("\n", i)
            end = n if end == -1 else end
            pieces.append((sql[i:end], False))
            i = end
        elif sql.startswith("/*", i):
            flush(True)
            end = sql.find("*/", i + 2)
            end = n if end == -1 else end + 2
            pieces.append((sql[i:end], False))
            i = end
        else:
            buf.append(ch)
            i += 1
    flush(True)
    return pieces


def _is_comment(text: str) -> bool:
    return text.startswith("--") or text.startswith("/*")


def _code_only(sql: str) -> str:
    """SQL with literals blanked and comments removed, for keyword searches."""
    out = []
    for text, is_code in _segments(sql):
        if is_code or text.startswith('"'):
            out.append(text)
        elif not _is_comment(text):
            out.append("''")
    return "".join(out)


# ==================== PLACEHOLDERS ====================

def rewrite_placeholders(sql: str) -> str:
    """Rewrite ``?`` placeholders to the psycopg2 ``%s`` marker.

    psycopg2 formats the whole statement, so every literal ``%`` is
    doubled, including those inside strings and comments.
    """
    out = []
    for text, is_code in _segments(sql):
        text = text.replace("%", "%%")
        if is_code:
            text = text.replace("?", "%s")
        out.append(text)
    return "".join(out)


def count_placeholders(sql: str) -> int:
    return sum(text.count("?") for text, is_code in _segments(sql) if is_code)


# ==================== STATEMENTS ====================

def split_statements(script: str) -> List[str]:
    """Split a script on top-level ``;`` terminators. Comments are dropped."""
    statements: List[str] = []
    current: List[str] = []
    for text, is_code in _segments(script):
        if not is_code:
            if not _is_comment(text):
                current.append(text)
            continue
        parts = text.split(";")
        for idx, part in enumerate(parts):
            current.append(part)
            if idx < len(parts) - 1:
                statements.append("".join(current))
                current = []
    statements.append("".join(current))
    return [s.strip() for s in statements if s.strip()]


_LEADING_WORD = re.compile(r"^\s*\(*\s*([A-Za-z]+)")

_INSERT_TARGET = re.compile(
    r"^\s*INSERT\s+(?:OR\s+(?:IGNORE|REPLACE)\s+)?INTO\s+"
    r"((?:\"[^\"]+\"|[\w]+)(?:\.(?:\"[^\"]+\"|[\w]+))?)"
    r"\s*(?:\(([^)]*)\))?",
    re.IGNORECASE,
)
_INSERT_OR_IGNORE = re.compile(r"^\s*INSERT\s+OR\s+IGNORE\s+INTO\b", re.IGNORECASE)
_ON_CONFLICT = re.compile(r"\bON\s+CONFLICT\b", re.IGNORECASE)
_RETURNING = re.compile(r"\bRETURNING\b", re.IGNORECASE)


def _find_code(pattern, sql: str) -> int:
    """Offset of the first match outside literals and comments, or -1."""
    offset = 0
    for text, is_code in _segments(sql):
        if is_code:
            match = pattern.search(text)
            if match:
                return offset + match.start()
        offset += len(text)
    return -1


def _before_returning(sql: str, clause: str) -> str:
    idx = _find_code(_RETURNING, sql)
    if idx < 0:
        return f"{sql} {clause}"
    return f"{sql[:idx].rstrip()} {clause} {sql[idx:]}"


def statement_kind(sql: str) -> str:
    """Classify a statement as select, insert, update, delete or other."""
    match = _LEADING_WORD.match(_code_only(sql))
    if not match:
        return "other"
    word = match.group(1).lower()
    if word in ("select", "insert", "update", "delete"):
        return word
    if word == "with":
        return "select"
    return "other"


def _unquote(name: str) -> str:
    return name.strip().strip('"').lower()


def insert_target(sql: str) -> Tuple[Optional[str], Tuple[str, ...]]:
    """Return the table name and column list of an INSERT statement."""
    match = _INSERT_TARGET.match(_code_only(sql))
    if not match:
        return None, ()
    table = _unquote(match.group(1).split(".")[-1])
    columns = tuple(_unquote(c) for c in (match.group(2) or "").split(",") if c.strip())
    return table, columns


# ==================== UPSERT INFERENCE ====================

@dataclass(frozen=True)
class UpsertRule:
    """How an INSERT into a table behaves when it hits an existing row."""
    conflict: Tuple[str, ...]
    update: Tuple[str, ...] = ()

    def clause(self, columns: Sequence[str] = ()) -> str:
        target = "(" + ", ".join(self.conflict) + ")"
        wanted = [c for c in self.update if not columns or c in columns]
        if not wanted:
            return f"ON CONFLICT {target} DO NOTHING"
        assignments = ", ".join(f"{c} = EXCLUDED.{c}" for c in wanted)
        return f"ON CONFLICT {target} DO UPDATE SET {assignments}"


DEFAULT_UPSERT_RULES: Dict[str, UpsertRule] = {
    # Re-seeding an account refreshes its credentials and status
    "users": UpsertRule(("email",), ("password", "must_change_password", "status")),
    "students": UpsertRule(("id",)),
    "courses": UpsertRule(("id",)),
    "faculty": UpsertRule(("id",)),
}

# Tables keyed by something other than an ``id`` column
TABLES_WITHOUT_ID: FrozenSet[str] = frozenset({"system_settings"})


class PreparedWrite(NamedTuple):
    sql: str
    returns_id: bool
    table: Optional[str]
    kind: str


def prepare_write(
    sql: str,
    rules: Optional[Dict[str, UpsertRule]] = None,
    tables_without_id: Iterable[str] = TABLES_WITHOUT_ID,
) -> PreparedWrite:
    """Turn a SQLite-flavoured write statement into its PostgreSQL form."""
    rules = DEFAULT_UPSERT_RULES if rules is None else rules
    # Comments go first so a trailing "-- note" cannot swallow appended clauses
    text = "".join(t for t, is_code in _segments(sql) if is_code or not _is_comment(t))
    text = rewrite_placeholders(text).strip().rstrip(";").rstrip()
    kind = statement_kind(text)
    if kind != "insert":
        return PreparedWrite(text, False, None, kind)

    ignore = bool(_INSERT_OR_IGNORE.match(text))
    if ignore:
        text = _INSERT_OR_IGNORE.sub("INSERT INTO", text, count=1)

    table, columns = insert_target(text)

    if _find_code(_ON_CONFLICT, text) < 0:
        rule = rules.get(table) if table else None
        if rule is not None:
            text = _before_returning(text, rule.clause(columns))
        elif ignore:
            text = _before_returning(text, "ON CONFLICT DO NOTHING")

    returns_id = _find_code(_RETURNING, text) >= 0
    if not returns_id and table not in set(tables_without_id):
        text = f"{text} RETURNING id"
        returns_id = True

    return PreparedWrite(text, returns_id, table, kind)


# ==================== DDL ====================

_DDL_REWRITES = [
    (re.compile(r"\bINTEGER\s+PRIMARY\s+KEY\s+AUTOINCREMENT\b", re.IGNORECASE), "SERIAL PRIMARY KEY"),
    (re.compile(r"\bdatetime\(\s*'now'\s*\)", re.IGNORECASE), "CURRENT_TIMESTAMP"),
    (re.compile(r"\bdate\(\s*'now'\s*\)", re.IGNORECASE), "CURRENT_DATE"),
    (re.compile(r"\bDATETIME\s+DEFAULT\s+CURRENT_TIMESTAMP\b", re.IGNORECASE), "TIMESTAMP DEFAULT CURRENT_TIMESTAMP"),
    (re.compile(r"\bDATETIME\b", re.IGNORECASE), "TIMESTAMP"),
    (re.compile(r"\bBOOLEAN\s+DEFAULT\s+1\b", re.IGNORECASE), "BOOLEAN DEFAULT TRUE"),
    (re.compile(r"\bBOOLEAN\s+DEFAULT\s+0\b", re.IGNORECASE), "BOOLEAN DEFAULT FALSE"),
]

_PRAGMA = re.compile(r"^\s*PRAGMA\b", re.IGNORECASE)


def _sub_in_code(pattern, replacement: str, sql: str) -> str:
    """Like ``pattern.sub`` but only for matches that start outside literals and comments."""
    ranges = []
    offset = 0
    for text, is_code in _segments(sql):
        if is_code:
            ranges.append((offset, offset + len(text)))
        offset += len(text)

    def replace(match):
        start = match.start()
        if any(lo <= start < hi for lo, hi in ranges):
            return replacement
        return match.group(0)

    return pattern.sub(replace, sql)


def translate_column_definition(definition: str) -> str:
    for pattern, replacement in _DDL_REWRITES:
        definition = _sub_in_code(pattern, replacement, definition)
    return definition


def _translate_statement(statement: str) -> Optional[str]:
    if _PRAGMA.match(statement):
        return None
    statement = translate_column_definition(statement)
    if _INSERT_OR_IGNORE.match(statement):
        statement = _INSERT_OR_IGNORE.sub("INSERT INTO", statement, count=1)
        if _find_code(_ON_CONFLICT, statement) < 0:
            statement = f"{statement} ON CONFLICT DO NOTHING"
    return statement


def translate_schema(ddl: str) -> str:
    """Translate a SQLite schema script into PostgreSQL."""
    translated = []
    for statement in split_statements(ddl):
        result = _translate_statement(statement)
        if result:
            translated.append(result + ";")
    return "\n\n".join(translated)
