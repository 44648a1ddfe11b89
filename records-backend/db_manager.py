import os
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterator, List, Mapping, NamedTuple, Optional, Sequence

import psycopg2
from dotenv import load_dotenv
from psycopg2.extras import RealDictCursor
from psycopg2.pool import ThreadedConnectionPool
from pymongo.errors import PyMongoError

from migrations import apply_migrations
from sql_dialect import (
    DEFAULT_UPSERT_RULES,
    TABLES_WITHOUT_ID,
    UpsertRule,
    count_placeholders,
    prepare_write,
    rewrite_placeholders,
    split_statements,
    translate_schema,
)

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
ENV_PATH = os.path.join(BASE_DIR, ".env")
SCHEMA_PATH = os.path.join(BASE_DIR, "schema.sql")
DEFAULT_SQLITE_PATH = os.path.join(BASE_DIR, "database.sqlite")

SQLITE = "sqlite"
POSTGRES = "postgres"
MONGODB = "mongodb"

_BACKEND_ALIASES = {
    "sqlite": SQLITE,
    "sqlite3": SQLITE,
    "postgres": POSTGRES,
    "postgresql": POSTGRES,
    "pg": POSTGRES,
    "mongodb": MONGODB,
    "mongo": MONGODB,
}

# PostgreSQL schema errors that only mean "this part is already there"
_TOLERATED_INIT_ERRORS = ("already exists", "already a primary key", "duplicate key")


class DatabaseError(Exception):
    """Base error for the database layer"""


class ConfigurationError(DatabaseError, ValueError):
    """The environment does not describe a usable backend"""


class SQLNotSupportedError(DatabaseError):
    """SQL was sent to the MongoDB backend"""


class RunResult(NamedTuple):
    last_id: Any
    changes: int


def normalize_postgres_url(url: str) -> str:
    """Hosted providers still hand out ``postgres://`` URLs; libpq wants ``postgresql://``."""
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


@dataclass
class DatabaseSettings:
    backend: str
    sqlite_path: str = DEFAULT_SQLITE_PATH
    database_url: Optional[str] = None
    sslmode: str = "prefer"
    pool_min: int = 1
    pool_max: int = 10
    mongo_uri: Optional[str] = None
    mongo_db_name: str = "academic_records"
    app_env: str = "development"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "DatabaseSettings":
        """
        Pick the backend from the environment.

        An explicit DB_TYPE wins. Otherwise MongoDB takes priority, then
        PostgreSQL, then the local SQLite file.
        """
        env = os.environ if environ is None else environ

        mongo_uri = env.get("MONGODB_URI") or env.get("MONGO_URI")
        database_url = env.get("DATABASE_URL")

        db_type = (env.get("DB_TYPE") or "").strip().lower()
        if db_type:
            if db_type not in _BACKEND_ALIASES:
                raise ConfigurationError(f"Unknown DB_TYPE '{db_type}' (expected sqlite, postgres or mongodb)")
            backend = _BACKEND_ALIASES[db_type]
        elif mongo_uri:
            backend = MONGODB
        elif database_url:
            backend = POSTGRES
        else:
            backend = SQLITE

        if backend == MONGODB and not mongo_uri:
            raise ConfigurationError("MONGODB_URI environment variable not set")
        if backend == POSTGRES and not database_url:
            raise ConfigurationError("DATABASE_URL environment variable not set")

        return cls(
            backend=backend,
            sqlite_path=env.get("SQLITE_PATH") or DEFAULT_SQLITE_PATH,
            database_url=normalize_postgres_url(database_url) if database_url else None,
            sslmode=env.get("PGSSLMODE", "prefer"),
            pool_min=int(env.get("PG_POOL_MIN", 1)),
            pool_max=int(env.get("PG_POOL_MAX", 10)),
            mongo_uri=mongo_uri,
            mongo_db_name=env.get("MONGO_DB_NAME", "academic_records"),
            app_env=env.get("APP_ENV", "development").lower(),
        )


# ==================== SQLITE ====================

class SQLiteBackend:
    """Local file database. One shared connection, serialized by a lock."""

    name = SQLITE

    def __init__(self, path: str):
        self.path = path
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    def connect(self) -> "SQLiteBackend":
        db_dir = os.path.dirname(os.path.abspath(self.path))
        if not os.path.exists(db_dir):
            print(f"📁 Creating missing database directory: {db_dir}")
            os.makedirs(db_dir, exist_ok=True)

        self.conn = sqlite3.connect(self.path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        print(f"📂 Connected to local SQLite ({self.path})")
        return self

    @property
    def handle(self) -> sqlite3.Connection:
        return self.conn

    def query(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        with self._lock:
            cursor = self.conn.execute(sql, tuple(params))
            return [dict(row) for row in cursor.fetchall()]

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self.conn.execute(sql, tuple(params)).fetchone()
            return dict(row) if row is not None else None

    def run(self, sql: str, params: Sequence[Any] = ()) -> RunResult:
        with self._lock:
            try:
                cursor = self.conn.execute(sql, tuple(params))
                self.conn.commit()
            except sqlite3.Error:
                self.conn.rollback()
                raise
            return RunResult(cursor.lastrowid, cursor.rowcount)

    def executescript(self, script: str):
        with self._lock:
            self.conn.executescript(script)
            self.conn.commit()

    def list_tables(self) -> List[str]:
        rows = self.query(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
        )
        return [row["name"] for row in rows]

    def table_exists(self, table: str) -> bool:
        row = self.query_one("SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?", (table,))
        return row is not None

    def column_exists(self, table: str, column: str) -> bool:
        with self._lock:
            rows = self.conn.execute(f"PRAGMA table_info({table})").fetchall()
        return any(row["name"] == column for row in rows)

    def close(self):
        if self.conn is not None:
            self.conn.close()
            self.conn = None


# ==================== POSTGRESQL ====================

class PostgresBackend:
    """PostgreSQL through a psycopg2 connection pool.

    Callers write SQLite-flavoured SQL; statements are rewritten here.
    """

    name = POSTGRES

    def __init__(
        self,
        url: str,
        sslmode: str = "prefer",
        minconn: int = 1,
        maxconn: int = 10,
        upsert_rules: Optional[Dict[str, UpsertRule]] = None,
    ):
        self.url = url
        self.sslmode = sslmode
        self.minconn = minconn
        self.maxconn = maxconn
        self.upsert_rules = DEFAULT_UPSERT_RULES if upsert_rules is None else upsert_rules
        self.pool: Optional[ThreadedConnectionPool] = None

    def connect(self) -> "PostgresBackend":
        self.pool = ThreadedConnectionPool(self.minconn, self.maxconn, dsn=self.url, sslmode=self.sslmode)
        print("🐘 Connected to PostgreSQL")
        return self

    @property
    def handle(self) -> ThreadedConnectionPool:
        return self.pool

    @contextmanager
    def _cursor(self) -> Iterator[RealDictCursor]:
        conn = self.pool.getconn()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                yield cursor
            conn.commit()
        except psycopg2.Error:
            conn.rollback()
            raise
        finally:
            self.pool.putconn(conn)

    @staticmethod
    def _check_params(sql: str, params: Sequence[Any]):
        expected = count_placeholders(sql)
        if expected != len(params):
            raise DatabaseError(f"Statement expects {expected} parameters, got {len(params)}")

    def query(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        self._check_params(sql, params)
        with self._cursor() as cursor:
            cursor.execute(rewrite_placeholders(sql), tuple(params))
            if cursor.description is None:
                return []
            return [dict(row) for row in cursor.fetchall()]

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        rows = self.query(sql, params)
        return rows[0] if rows else None

    def run(self, sql: str, params: Sequence[Any] = ()) -> RunResult:
        self._check_params(sql, params)
        prepared = prepare_write(sql, self.upsert_rules, TABLES_WITHOUT_ID)
        with self._cursor() as cursor:
            cursor.execute(prepared.sql, tuple(params))
            last_id = None
            if prepared.returns_id and cursor.description is not None:
                row = cursor.fetchone()
                last_id = row.get("id") if row else None
            return RunResult(last_id, cursor.rowcount)

    def execute(self, statement: str):
        """Run a raw statement without placeholder handling (schema DDL)."""
        with self._cursor() as cursor:
            cursor.execute(statement)

    def list_tables(self) -> List[str]:
        rows = self.query(
            "SELECT table_name FROM information_schema.tables "
            "WHERE table_schema = 'public' AND table_type = 'BASE TABLE' ORDER BY table_name"
        )
        return [row["table_name"] for row in rows]

    def table_exists(self, table: str) -> bool:
        row = self.query_one(
            "SELECT table_name FROM information_schema.tables WHERE table_schema = 'public' AND table_name = ?",
            (table,),
        )
        return row is not None

    def column_exists(self, table: str, column: str) -> bool:
        row = self.query_one(
            "SELECT column_name FROM information_schema.columns "
            "WHERE table_schema = 'public' AND table_name = ? AND column_name = ?",
            (table, column),
        )
        return row is not None

    def close(self):
        if self.pool is not None:
            self.pool.closeall()
            self.pool = None


# ==================== MANAGER ====================

class DatabaseManager:
    """Runs the same handler code against SQLite, PostgreSQL or MongoDB"""

    errors = (sqlite3.Error, psycopg2.Error, PyMongoError, DatabaseError)

    def __init__(
        self,
        settings: DatabaseSettings,
        auto_initialize: bool = True,
        schema_path: str = SCHEMA_PATH,
        upsert_rules: Optional[Dict[str, UpsertRule]] = None,
    ):
        self.settings = settings
        self.auto_initialize = auto_initialize
        self.schema_path = schema_path
        self.upsert_rules = upsert_rules
        self._backend = None
        self._connect_lock = threading.Lock()
        self._init_lock = threading.RLock()
        self._initialized = False
        self._initializing = False

    @property
    def backend_name(self) -> str:
        return self.settings.backend

    def is_mongo(self) -> bool:
        return self.settings.backend == MONGODB

    def is_postgres(self) -> bool:
        return self.settings.backend == POSTGRES

    def _connect(self):
        settings = self.settings
        if settings.backend == MONGODB:
            from mongodb_manager import MongoDBManager
            return MongoDBManager(settings.mongo_uri, settings.mongo_db_name, create_indexes=False)

        if settings.backend == POSTGRES:
            return PostgresBackend(
                settings.database_url,
                sslmode=settings.sslmode,
                minconn=settings.pool_min,
                maxconn=settings.pool_max,
                upsert_rules=self.upsert_rules,
            ).connect()

        if settings.app_env == "production":
            print("⚠️ WARNING: No MONGODB_URI or DATABASE_URL found in production environment.")
            print("⚠️ Falling back to local SQLite. Data will NOT persist across deployments.")
        return SQLiteBackend(settings.sqlite_path).connect()

    def _connected_backend(self):
        if self._backend is None:
            with self._connect_lock:
                if self._backend is None:
                    self._backend = self._connect()
        return self._backend

    def get_db(self):
        """Return the live connection handle, connecting (and initializing) on first use."""
        backend = self._connected_backend()
        if self.auto_initialize and not self._initialized:
            self._ensure_initialized()
        return backend.handle

    def _ensure_initialized(self):
        # Threads racing on first use wait here; only the first one initializes
        with self._init_lock:
            if self._initialized or self._initializing:
                return
            self.initialize_database()

    @property
    def mongo(self):
        if not self.is_mongo():
            raise DatabaseError(f"MongoDB is not the active backend ({self.backend_name})")
        self.get_db()
        return self._backend

    def _sql_backend(self):
        if self.is_mongo():
            raise SQLNotSupportedError("SQL queries are not available on MongoDB; use the collection API")
        self.get_db()
        return self._backend

    # ==================== QUERIES ====================

    def query(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        """Run a read and return every row as a dict"""
        return self._sql_backend().query(sql, params)

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        """Run a read and return the first row, or None"""
        return self._sql_backend().query_one(sql, params)

    def run(self, sql: str, params: Sequence[Any] = ()) -> RunResult:
        """Run a write and report the inserted id and affected row count"""
        return self._sql_backend().run(sql, params)

    def ping(self) -> bool:
        """Round-trip to the backend; raises one of ``errors`` when it is unreachable"""
        if self.is_mongo():
            self.mongo.client.admin.command("ping")
        else:
            self.query_one("SELECT 1 AS ok")
        return True

    def table_exists(self, table: str) -> bool:
        return self._sql_backend().table_exists(table)

    def column_exists(self, table: str, column: str) -> bool:
        return self._sql_backend().column_exists(table, column)

    # ==================== SCHEMA ====================

    def initialize_database(self, schema_path: Optional[str] = None) -> List[str]:
        """
        Create the schema and apply pending migrations.

        Safe to run repeatedly. Returns the names of migrations applied
        by this call.
        """
        with self._init_lock:
            if self._initializing:
                return []
            self._initializing = True
            try:
                applied = self._initialize(schema_path or self.schema_path)
            finally:
                self._initializing = False
            self._initialized = True
            return applied

    def _initialize(self, schema_path: str) -> List[str]:
        backend = self._connected_backend()

        if self.is_mongo():
            print("ℹ️ MongoDB detected. Schemas are implied by the collections; ensuring indexes.")
            backend.ensure_indexes()
            return []

        if not os.path.exists(schema_path):
            print(f"❌ Schema file not found at: {schema_path}")
            return []

        with open(schema_path, "r", encoding="utf-8") as f:
            schema = f.read()

        if self.is_postgres():
            self._initialize_postgres(backend, schema)
        else:
            self._initialize_sqlite(backend, schema)

        return apply_migrations(self)

    def _initialize_postgres(self, backend: PostgresBackend, schema: str):
        print("🐘 Initializing PostgreSQL schema...")
        for statement in split_statements(translate_schema(schema)):
            try:
                backend.execute(statement)
            except psycopg2.Error as e:
                message = str(e).lower()
                if not any(marker in message for marker in _TOLERATED_INIT_ERRORS):
                    print(f"⚠️ Postgres Init Warning: {e}")
        print("✅ PostgreSQL Schema checked/initialized")

    def _initialize_sqlite(self, backend: SQLiteBackend, schema: str):
        try:
            backend.executescript(schema)
            print("✅ SQLite Database initialized successfully")
        except sqlite3.IntegrityError:
            print("ℹ️ SQLite Database already initialized")
        except sqlite3.OperationalError as e:
            if "already exists" not in str(e):
                print(f"❌ SQLite Initialization Error: {e}")
                raise
            print("ℹ️ SQLite Database already initialized")

    # ==================== DATABASE STATS ====================

    def get_database_stats(self) -> Dict[str, Any]:
        """Row counts per table (or documents per collection)"""
        self.get_db()
        backend = self._backend
        if self.is_mongo():
            return backend.get_database_stats()

        counts = {}
        for table in backend.list_tables():
            row = backend.query_one(f'SELECT COUNT(*) AS count FROM "{table}"')
            counts[table] = int(row["count"]) if row else 0

        return {
            "database": self.backend_name,
            "tables": counts,
            "total_records": sum(counts.values()),
            "timestamp": datetime.utcnow().isoformat(),
        }

    def close(self):
        with self._connect_lock:
            if self._backend is not None:
                self._backend.close()
                self._backend = None
        self._initialized = False


def create_database_manager(env_path: str = ENV_PATH, **kwargs) -> DatabaseManager:
    """Build a manager from the process environment and the optional .env file"""
    load_dotenv(dotenv_path=env_path)
    settings = DatabaseSettings.from_env()
    print(f"✅ Using {settings.backend} for storage")
    return DatabaseManager(settings, **kwargs)
