"""Integration test fixtures.

Applies the project migrations against an ephemeral PostgreSQL database
provided by pytest-postgresql before each integration test.
"""

from __future__ import annotations

from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = [
    PROJECT_ROOT / "migrations" / "0001_harvest.sql",
    PROJECT_ROOT / "migrations" / "0002_warehouse.sql",
]

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Schema fixture
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(postgresql):
    """Return (connection, dsn) with schema applied.

    Each test gets a fresh schema via function scope so tests are isolated.
    """
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            sql = migration.read_text(encoding="utf-8")
            conn.execute(sql)
        conn.autocommit = False
        yield conn, dsn
    finally:
        conn.close()


@pytest.fixture()
def conn(db_conn):
    connection, _ = db_conn
    yield connection


@pytest.fixture()
def dsn(db_conn):
    _, dsn = db_conn
    yield dsn


# ---------------------------------------------------------------------------
# Shared data helpers
# ---------------------------------------------------------------------------

GENERATOR_TAX_ID = "11111111000111"
TRANSPORTER_TAX_ID = "12345678901"
RECEIVER_TAX_ID = "33333333000133"


def insert_entity(conn, tax_id: str, name: str, person_type: str | None = None) -> int:
    ptype = person_type or ("F" if len(tax_id) == 11 else "J")
    row = conn.execute(
        "INSERT INTO entity (tax_id, name, person_type) VALUES (%s, %s, %s) RETURNING id",
        (tax_id, name, ptype),
    ).fetchone()
    conn.commit()
    return row[0]


@pytest.fixture()
def parties(conn):
    """Pre-enriched generator, individual transporter and receiver."""
    return {
        "generator": insert_entity(conn, GENERATOR_TAX_ID, "GERADORA LTDA"),
        "transporter": insert_entity(conn, TRANSPORTER_TAX_ID, "JOSE PEREIRA"),
        "receiver": insert_entity(conn, RECEIVER_TAX_ID, "DESTINO SA"),
    }


@pytest.fixture()
def make_entity(conn):
    def _make(tax_id: str, name: str, person_type: str | None = None) -> int:
        return insert_entity(conn, tax_id, name, person_type)
    return _make
