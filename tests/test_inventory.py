from __future__ import annotations

from decimal import Decimal

import pytest

from site_ledger.errors import ExcessReturn, InsufficientStock, NotFound, OutOfRange, ValidationError


@pytest.fixture
def lumber(session, workshop):
    return session.inventory.add_material(workshop.id, "2x4 Lumber", "25", "pcs", cost_per_unit=800)


def stock_of(session, material_id) -> Decimal:
    return session.inventory.get_material(material_id).quantity


def test_issue_and_return_conserve_quantity(session, project, lumber):
    issue, view = session.issue_material(project.id, lumber.id, "10")

    assert stock_of(session, lumber.id) == Decimal("15")
    assert issue.quantity == Decimal("10")
    assert view.financials.total_materials == 8_000

    returned, view = session.return_material(project.id, issue.id, "4")

    assert stock_of(session, lumber.id) == Decimal("19")
    assert returned.quantity == Decimal("6")
    assert returned.issued_quantity == Decimal("10")
    assert view.financials.total_materials == 4_800


def test_excess_return_leaves_state_unchanged(session, project, lumber):
    issue, _ = session.issue_material(project.id, lumber.id, "10")
    session.return_material(project.id, issue.id, "4")

    with pytest.raises(ExcessReturn):
        session.return_material(project.id, issue.id, "10")

    assert stock_of(session, lumber.id) == Decimal("19")
    assert session.inventory.issuances.get(issue.id).quantity == Decimal("6")


def test_issue_beyond_stock_is_rejected(session, project, lumber):
    with pytest.raises(InsufficientStock) as excinfo:
        session.issue_material(project.id, lumber.id, "30")

    assert excinfo.value.http_status == 409
    assert stock_of(session, lumber.id) == Decimal("25")
    assert session.view(project.id).project.worksite_materials == ()


def test_non_positive_quantity_is_rejected(session, project, lumber):
    with pytest.raises(ValidationError):
        session.issue_material(project.id, lumber.id, "0")
    with pytest.raises(ValidationError):
        session.issue_material(project.id, lumber.id, "-3")


def test_repeat_issue_appends_to_open_record(session, project, lumber):
    first, _ = session.issue_material(project.id, lumber.id, "10", is_billable=True)
    second, view = session.issue_material(project.id, lumber.id, "5", is_billable=True)

    assert second.id == first.id
    assert second.quantity == Decimal("15")
    assert second.issued_quantity == Decimal("15")
    assert len(view.project.worksite_materials) == 1


def test_issue_with_different_billing_opens_new_record(session, project, lumber):
    first, _ = session.issue_material(project.id, lumber.id, "10", is_billable=True)
    second, view = session.issue_material(project.id, lumber.id, "5", is_billable=False)

    assert second.id != first.id
    assert len(view.project.worksite_materials) == 2
    assert stock_of(session, lumber.id) == Decimal("10")


def test_unused_quantity_is_bounded_and_does_not_move_stock(session, project, lumber):
    issue, _ = session.issue_material(project.id, lumber.id, "6")

    with pytest.raises(OutOfRange):
        session.record_unused(project.id, "inventory_issue", issue.id, "7")

    updated, _ = session.record_unused(project.id, "inventory_issue", issue.id, "3")
    assert updated.unused_quantity == Decimal("3")
    assert stock_of(session, lumber.id) == Decimal("19")

    # returning 4 would leave 2 outstanding, below the 3 recorded as unused
    with pytest.raises(OutOfRange):
        session.return_material(project.id, issue.id, "4")
    assert stock_of(session, lumber.id) == Decimal("19")


def test_unused_quantity_on_expense(session, project):
    with_quantity, _ = session.add_expense(
        project.id, description="Tiles", amount=12_000, category="Materials", quantity="30", unit="m2"
    )
    without_quantity, _ = session.add_expense(project.id, description="Permit", amount=5_000, category="Fees")

    updated, _ = session.record_unused(project.id, "expense", with_quantity.id, "4")
    assert updated.unused_quantity == Decimal("4")

    with pytest.raises(ValidationError):
        session.record_unused(project.id, "expense", without_quantity.id, "1")

    rows, total = session.projects.unused_materials(project.id)
    assert [row.item_id for row in rows] == [with_quantity.id]
    assert total == 1_600


def test_issuance_from_another_project_is_not_found(session, project, lumber):
    other = session.projects.create_project("Other", budget=0, fee_type="Fixed", fee_value="0")
    issue, _ = session.issue_material(project.id, lumber.id, "2")

    with pytest.raises(NotFound):
        session.return_material(other.id, issue.id, "1")


def test_transfer_merges_into_matching_material(session, workshop, lumber):
    yard = session.inventory.create_workshop("East Yard", "Lot 9")

    target = session.inventory.transfer_material(lumber.id, yard.id, "5")
    assert target.workshop_id == yard.id
    assert target.quantity == Decimal("5")

    merged = session.inventory.transfer_material(lumber.id, yard.id, "2")
    assert merged.id == target.id
    assert merged.quantity == Decimal("7")
    assert stock_of(session, lumber.id) == Decimal("18")

    with pytest.raises(InsufficientStock):
        session.inventory.transfer_material(lumber.id, yard.id, "50")
    with pytest.raises(ValidationError):
        session.inventory.transfer_material(lumber.id, workshop.id, "1")


def test_low_stock_alerts(session, workshop, lumber):
    session.inventory.add_material(workshop.id, "Wood glue", "3", "bottle")
    session.inventory.add_material(workshop.id, "Sealant", "12", "tube", low_stock_threshold="15")

    alerts = session.inventory.low_stock_alerts(workshop.id)

    assert sorted(alert.name for alert in alerts) == ["Sealant", "Wood glue"]
