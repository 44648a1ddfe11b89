"""
Test configuration and fixtures
"""
import os
import tempfile

import pytest

# The app module builds its manager at import time; point it at a throwaway SQLite file
_TEST_DIR = tempfile.mkdtemp(prefix="records-tests-")
os.environ["DB_TYPE"] = "sqlite"
os.environ["SQLITE_PATH"] = os.path.join(_TEST_DIR, "app.sqlite")
os.environ.setdefault("APP_ENV", "testing")
os.environ["CORS_ORIGINS"] = "https://records.example.edu, https://admin.example.edu"

from db_manager import DatabaseManager, DatabaseSettings, SQLITE


@pytest.fixture
def sqlite_settings(tmp_path) -> DatabaseSettings:
    return DatabaseSettings(backend=SQLITE, sqlite_path=str(tmp_path / "records.sqlite"))


@pytest.fixture
def sqlite_db(sqlite_settings):
    """A manager on a fresh SQLite file, schema created on first use"""
    manager = DatabaseManager(sqlite_settings)
    yield manager
    manager.close()


@pytest.fixture
def bare_sqlite_db(sqlite_settings):
    """A manager that never creates the schema on its own"""
    manager = DatabaseManager(sqlite_settings, auto_initialize=False)
    yield manager
    manager.close()
