from __future__ import annotations

from pathlib import Path

import pytest

from site_ledger.db import apply_sqlite_migration, connect_sqlite
from site_ledger.services import LedgerSession

ROOT = Path(__file__).resolve().parents[1]
MIGRATION_PATH = ROOT / "migrations" / "sqlite" / "001_initial_schema.sql"


@pytest.fixture
def conn():
    connection = connect_sqlite()
    apply_sqlite_migration(connection, MIGRATION_PATH)
    yield connection
    connection.close()


@pytest.fixture
def session(conn):
    return LedgerSession(conn)


@pytest.fixture
def project(session):
    return session.projects.create_project(
        "Harbor Street Duplex", budget=100_000, fee_type="Percentage", fee_value="15", client_name="M. Chen"
    )


@pytest.fixture
def workshop(session):
    return session.inventory.create_workshop("Central Workshop", "Dock 4")
