from unittest.mock import MagicMock

import psycopg2
import pytest

import db_manager
from db_manager import DatabaseError, DatabaseManager, DatabaseSettings, POSTGRES, PostgresBackend, RunResult


def make_backend(rows=None, description=True, rowcount=1):
    cursor = MagicMock()
    cursor.description = [("id",)] if description else None
    cursor.fetchall.return_value = rows or []
    cursor.fetchone.return_value = rows[0] if rows else None
    cursor.rowcount = rowcount

    conn = MagicMock()
    conn.cursor.return_value.__enter__.return_value = cursor

    pool = MagicMock()
    pool.getconn.return_value = conn

    backend = PostgresBackend("postgresql://localhost/records")
    backend.pool = pool
    return backend, pool, conn, cursor


def test_connect_builds_a_pool(monkeypatch):
    pool_cls = MagicMock()
    monkeypatch.setattr(db_manager, "ThreadedConnectionPool", pool_cls)

    backend = PostgresBackend("postgresql://localhost/records", sslmode="require", minconn=2, maxconn=4).connect()

    pool_cls.assert_called_once_with(2, 4, dsn="postgresql://localhost/records", sslmode="require")
    assert backend.handle is pool_cls.return_value


def test_query_rewrites_placeholders_and_returns_dicts():
    backend, pool, conn, cursor = make_backend(rows=[{"id": "S001", "name": "Asha"}])

    rows = backend.query("SELECT * FROM students WHERE id = ?", ["S001"])

    cursor.execute.assert_called_once_with("SELECT * FROM students WHERE id = %s", ("S001",))
    assert rows == [{"id": "S001", "name": "Asha"}]
    conn.commit.assert_called_once()
    pool.putconn.assert_called_once_with(conn)


def test_query_one_and_statements_without_rows():
    backend, _, _, _ = make_backend(rows=[{"n": 1}, {"n": 2}])
    assert backend.query_one("SELECT n FROM t") == {"n": 1}

    backend, _, _, _ = make_backend(description=False)
    assert backend.query("SET search_path TO public") == []
    assert backend.query_one("SET search_path TO public") is None


def test_run_insert_reads_returning_id():
    backend, _, _, cursor = make_backend(rows=[{"id": 42}])

    result = backend.run("INSERT INTO grades (student_id, score) VALUES (?, ?)", ("S001", 91))

    assert result == RunResult(42, 1)
    cursor.execute.assert_called_once_with(
        "INSERT INTO grades (student_id, score) VALUES (%s, %s) RETURNING id", ("S001", 91)
    )


def test_run_insert_ignored_by_conflict_has_no_id():
    backend, _, _, _ = make_backend(rows=[], rowcount=0)
    result = backend.run("INSERT INTO students (id, name, email) VALUES (?, ?, ?)", ("S001", "Asha", "a@x.edu"))
    assert result == RunResult(None, 0)


def test_run_update_reports_rowcount():
    backend, _, _, cursor = make_backend(description=False, rowcount=3)

    result = backend.run("UPDATE courses SET status = ? WHERE department = ?", ("Inactive", "Arts"))

    assert result == RunResult(None, 3)
    cursor.fetchone.assert_not_called()


def test_run_uses_custom_upsert_rules():
    backend, _, _, cursor = make_backend(rows=[{"id": 1}])
    backend.upsert_rules = {}
    backend.run("INSERT INTO users (email, password) VALUES (?, ?)", ("a@x.edu", "hash"))
    assert "ON CONFLICT" not in cursor.execute.call_args[0][0]


def test_driver_error_rolls_back_and_releases_connection():
    backend, pool, conn, cursor = make_backend()
    cursor.execute.side_effect = psycopg2.OperationalError("server closed the connection")

    with pytest.raises(psycopg2.OperationalError):
        backend.run("DELETE FROM sessions WHERE id = ?", (7,))

    conn.rollback.assert_called_once()
    conn.commit.assert_not_called()
    pool.putconn.assert_called_once_with(conn)


def test_column_exists_uses_information_schema():
    backend, _, _, cursor = make_backend(rows=[{"column_name": "name"}])

    assert backend.column_exists("users", "name")
    cursor.execute.assert_called_once_with(
        "SELECT column_name FROM information_schema.columns "
        "WHERE table_schema = 'public' AND table_name = %s AND column_name = %s",
        ("users", "name"),
    )


def test_execute_sends_ddl_untouched():
    backend, _, _, cursor = make_backend(description=False)
    backend.execute("CREATE TABLE t (note TEXT DEFAULT '100%')")
    cursor.execute.assert_called_once_with("CREATE TABLE t (note TEXT DEFAULT '100%')")


def test_close_releases_pool():
    backend, pool, _, _ = make_backend()
    backend.close()
    pool.closeall.assert_called_once()
    assert backend.pool is None


# ==================== SCHEMA INITIALIZATION ====================

SCHEMA = """PRAGMA foreign_keys = ON;
CREATE TABLE IF NOT EXISTS users (id INTEGER PRIMARY KEY AUTOINCREMENT, email TEXT UNIQUE NOT NULL);
CREATE TABLE broken (;
INSERT OR IGNORE INTO departments (name) VALUES ('Science');
"""


def test_postgres_initialization_tolerates_existing_objects(tmp_path, monkeypatch, capsys):
    schema_path = tmp_path / "schema.sql"
    schema_path.write_text(SCHEMA, encoding="utf-8")

    fake_backend = MagicMock()
    fake_backend.execute.side_effect = [
        psycopg2.ProgrammingError('relation "users" already exists'),
        psycopg2.ProgrammingError('syntax error at or near ";"'),
        None,
    ]

    settings = DatabaseSettings(backend=POSTGRES, database_url="postgresql://localhost/records")
    manager = DatabaseManager(settings, auto_initialize=False, schema_path=str(schema_path))
    monkeypatch.setattr(manager, "_connect", lambda: fake_backend)
    monkeypatch.setattr(db_manager, "apply_migrations", lambda m: ["users.name"])

    assert manager.initialize_database() == ["users.name"]

    executed = [c.args[0] for c in fake_backend.execute.call_args_list]
    assert executed == [
        "CREATE TABLE IF NOT EXISTS users (id SERIAL PRIMARY KEY, email TEXT UNIQUE NOT NULL)",
        "CREATE TABLE broken (",
        "INSERT INTO departments (name) VALUES ('Science') ON CONFLICT DO NOTHING",
    ]

    out = capsys.readouterr().out
    assert "Postgres Init Warning: syntax error" in out
    assert "already exists" not in out


def test_parameter_count_mismatch_is_rejected_before_execution():
    backend, pool, _, cursor = make_backend()

    with pytest.raises(DatabaseError, match="expects 2 parameters, got 1"):
        backend.query("SELECT * FROM grades WHERE student_id = ? AND course = ?", ("S001",))
    with pytest.raises(DatabaseError):
        backend.run("UPDATE grades SET remarks = '?' WHERE id = ?", (1, "extra"))

    cursor.execute.assert_not_called()
    pool.getconn.assert_not_called()
