from __future__ import annotations

import threading
from decimal import Decimal
from pathlib import Path

import pytest

from site_ledger.db import apply_sqlite_migration, connect_sqlite
from site_ledger.errors import InsufficientStock, StorageError
from site_ledger.services import LedgerSession

MIGRATION_PATH = Path(__file__).resolve().parents[1] / "migrations" / "sqlite" / "001_initial_schema.sql"


@pytest.fixture
def shared_db(tmp_path):
    """A file database seeded with one project and 25 units of stock."""
    db_path = tmp_path / "shared.sqlite3"
    conn = connect_sqlite(db_path)
    apply_sqlite_migration(conn, MIGRATION_PATH)
    session = LedgerSession(conn)
    project = session.projects.create_project("Cedar Lane Garage", budget=50_000, fee_type="Fixed", fee_value="0")
    workshop = session.inventory.create_workshop("North Yard")
    material = session.inventory.add_material(workshop.id, "Anchor bolts", "25", "pcs", cost_per_unit=150)
    session.close()
    return db_path, project.id, material.id


def test_stale_session_cannot_overdraw_stock(shared_db):
    db_path, project_id, material_id = shared_db
    first = LedgerSession(connect_sqlite(db_path))
    second = LedgerSession(connect_sqlite(db_path))

    try:
        seen = second.inventory.get_material(material_id).quantity
        first.issue_material(project_id, material_id, "20")

        with pytest.raises(InsufficientStock):
            second.issue_material(project_id, material_id, seen - 10)

        assert second.inventory.get_material(material_id).quantity == Decimal("5")
        assert [issue.quantity for issue in second.view(project_id).project.worksite_materials] == [Decimal("20")]
    finally:
        first.close()
        second.close()


def test_concurrent_issues_are_serialized(shared_db):
    db_path, project_id, material_id = shared_db
    barrier = threading.Barrier(2)
    outcomes: list[str] = []

    def issue_fifteen() -> None:
        session = LedgerSession(connect_sqlite(db_path, timeout=5.0))
        try:
            barrier.wait()
            session.inventory.issue_material(project_id, material_id, "15")
            outcomes.append("issued")
        except InsufficientStock:
            outcomes.append("insufficient")
        finally:
            session.close()

    workers = [threading.Thread(target=issue_fifteen) for _ in range(2)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()

    assert sorted(outcomes) == ["insufficient", "issued"]
    conn = connect_sqlite(db_path)
    try:
        assert LedgerSession(conn).inventory.get_material(material_id).quantity == Decimal("10")
    finally:
        conn.close()


def test_stock_swap_with_stale_quantity_is_rejected(session, workshop):
    material = session.inventory.add_material(workshop.id, "Washers", "25", "pcs")

    with pytest.raises(StorageError):
        session.inventory.workshops.swap_quantity(material.id, Decimal("30"), Decimal("5"))

    assert session.inventory.get_material(material.id).quantity == Decimal("25")
