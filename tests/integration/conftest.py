"""Integration test fixtures.

Applies the migrations in migrations/ against an ephemeral PostgreSQL
database provided by pytest-postgresql.  Tests are skipped when no local
PostgreSQL server binaries are installed.
"""

from __future__ import annotations

import shutil
from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

from clubhouse_sync.store import PgStore

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = [
    PROJECT_ROOT / "migrations" / "0001_core_entities.sql",
    PROJECT_ROOT / "migrations" / "0002_run_log.sql",
]

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Schema fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(request):
    """Return (connection, dsn) with schema applied.

    Each test gets a fresh database via function scope so tests are isolated.
    """
    if shutil.which("pg_ctl") is None:
        pytest.skip("pg_ctl not found; PostgreSQL is not installed")
    pg = request.getfixturevalue("postgresql")
    dsn = (
        f"host={pg.info.host} "
        f"port={pg.info.port} "
        f"dbname={pg.info.dbname} "
        f"user={pg.info.user} "
        f"password={pg.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            conn.execute(migration.read_text(encoding="utf-8"))
        yield conn, dsn
    finally:
        conn.close()


@pytest.fixture
def pg_store(db_conn) -> PgStore:
    conn, _ = db_conn
    return PgStore(conn)
