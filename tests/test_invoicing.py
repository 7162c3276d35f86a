from __future__ import annotations

from dataclasses import replace
from decimal import Decimal

import pytest

from site_ledger.config import LedgerSettings
from site_ledger.errors import AlreadyInvoiced, EmptyInvoice, InvalidTransition, NotApproved, NotFound
from site_ledger.services import LedgerSession, LineRequest


@pytest.fixture
def billable(session, project, workshop):
    expense, _ = session.add_expense(
        project.id,
        description="Electrical rough-in",
        amount=10_000,
        category="Labor",
        taxes=[{"name": "GST", "rate": "10"}],
    )
    change_order, _ = session.create_change_order(
        project.id, "Extra outlet", [{"description": "Outlet", "quantity": "2", "unit_price": 2_500}]
    )
    session.update_change_order_status(change_order.id, "Sent")
    change_order, _ = session.update_change_order_status(change_order.id, "Approved")
    conduit = session.inventory.add_material(workshop.id, "Conduit", "50", "m", cost_per_unit=300)
    issue, _ = session.issue_material(project.id, conduit.id, "10", is_billable=True)
    return {"expense": expense, "change_order": change_order, "issue": issue}


def full_request(billable):
    return [
        LineRequest("expense", billable["expense"].id),
        LineRequest("change_order", billable["change_order"].id),
        LineRequest("inventory_issue", billable["issue"].id),
        LineRequest(description="Site cleanup", quantity="1", unit_price=2_000),
    ]


def billed_rows(conn):
    return conn.execute("SELECT COUNT(*) FROM billed_source").fetchone()[0]


def test_create_invoice_marks_sources(session, conn, project, billable):
    invoice, view = session.create_invoice(project.id, full_request(billable), tax_rate="10")

    assert invoice.invoice_number == "INV-0001"
    assert invoice.status == "Draft"
    assert invoice.subtotal == 20_000
    assert invoice.tax == 2_000
    assert invoice.total == 22_000
    assert [line.description for line in invoice.line_items][1:3] == ["Change Order: Extra outlet", "Conduit (m)"]

    assert all(expense.invoiced for expense in view.project.expenses)
    assert all(issue.invoiced for issue in view.project.worksite_materials)
    assert billed_rows(conn) == 3
    assert session.unbilled(project.id).is_empty()


def test_source_cannot_be_billed_on_two_invoices(session, conn, project, billable):
    session.create_invoice(project.id, full_request(billable))

    with pytest.raises(AlreadyInvoiced):
        session.create_invoice(project.id, [LineRequest("change_order", billable["change_order"].id)])
    with pytest.raises(AlreadyInvoiced):
        session.create_invoice(project.id, [LineRequest("expense", billable["expense"].id)])

    assert len(session.view(project.id).invoices) == 1
    assert billed_rows(conn) == 3


def test_billed_source_table_rejects_second_claim(session, project, billable):
    first, _ = session.create_invoice(project.id, [LineRequest("change_order", billable["change_order"].id)])
    second, _ = session.create_invoice(project.id, [LineRequest(description="Travel", unit_price=1_000)])

    with pytest.raises(AlreadyInvoiced):
        session.invoices.invoices.claim_sources(replace(first, id=second.id))


def test_void_releases_sources(session, conn, project, billable):
    invoice, _ = session.create_invoice(project.id, full_request(billable))

    voided, view = session.update_invoice_status(invoice.id, "Void")

    assert voided.status == "Void"
    assert billed_rows(conn) == 0
    assert not any(expense.invoiced for expense in view.project.expenses)
    assert not any(issue.invoiced for issue in view.project.worksite_materials)

    reissued, _ = session.create_invoice(project.id, full_request(billable))
    assert reissued.invoice_number == "INV-0002"


def test_paying_invoice_records_deposit_once(session, project, billable):
    invoice, _ = session.create_invoice(project.id, full_request(billable), tax_rate="10")
    session.update_invoice_status(invoice.id, "Sent")

    paid, _ = session.update_invoice_status(invoice.id, "Paid", payment_date="2026-05-01")
    again, _ = session.update_invoice_status(invoice.id, "Paid")

    assert paid.payment_date == "2026-05-01"
    assert again.status == "Paid"
    deposits = session.invoices.deposits_for_project(project.id)
    assert len(deposits) == 1
    assert deposits[0].amount == 22_000
    assert deposits[0].description == "Payment for Invoice INV-0001"


def test_illegal_invoice_transitions(session, project, billable):
    invoice, _ = session.create_invoice(project.id, full_request(billable))

    with pytest.raises(InvalidTransition):
        session.update_invoice_status(invoice.id, "Paid")

    session.update_invoice_status(invoice.id, "Sent")
    session.update_invoice_status(invoice.id, "Paid")
    with pytest.raises(InvalidTransition):
        session.update_invoice_status(invoice.id, "Void")


def test_rejected_invoice_writes_nothing(session, conn, project, billable):
    draft, _ = session.create_change_order(project.id, "Skylight", [{"description": "Skylight", "quantity": "1", "unit_price": 90_000}])

    with pytest.raises(EmptyInvoice):
        session.create_invoice(project.id, [])
    with pytest.raises(NotApproved):
        session.create_invoice(
            project.id, [LineRequest("expense", billable["expense"].id), LineRequest("change_order", draft.id)]
        )

    assert session.view(project.id).invoices == ()
    assert billed_rows(conn) == 0
    assert not session.projects.expenses.get(billable["expense"].id).invoiced


def test_source_from_another_project_is_not_found(session, project, billable):
    other = session.projects.create_project("Other", budget=0, fee_type="Fixed", fee_value="0")

    with pytest.raises(NotFound):
        session.create_invoice(other.id, [LineRequest("expense", billable["expense"].id)])


def test_supplier_materials_may_be_billed_repeatedly(session, project):
    cement = session.projects.add_supplier_material("sup-1", "Cement", "bag", 1_250)

    first, _ = session.create_invoice(project.id, [LineRequest("material", cement.id)])
    second, _ = session.create_invoice(project.id, [LineRequest("material", cement.id, quantity="4")])

    assert first.total == 1_250
    assert second.line_items[0].quantity == Decimal("4")
    assert second.total == 5_000


def test_settings_drive_numbering_and_default_tax(conn, project):
    session = LedgerSession(conn, LedgerSettings(invoice_number_prefix="SL", default_tax_rate="5"))

    invoice, _ = session.create_invoice(project.id, [LineRequest(description="Design", unit_price=40_000)])

    assert invoice.invoice_number == "SL-0001"
    assert invoice.tax == 2_000


def test_invoiced_expense_cannot_be_deleted(session, project, billable):
    session.create_invoice(project.id, [LineRequest("expense", billable["expense"].id)])

    with pytest.raises(AlreadyInvoiced):
        session.projects.delete_expense(project.id, billable["expense"].id)


def test_fully_returned_issue_is_not_offered_for_billing(session, project, workshop):
    conduit = session.inventory.add_material(workshop.id, "Conduit", "20", "m", cost_per_unit=300)
    returned, _ = session.issue_material(project.id, conduit.id, "4", is_billable=True)
    cable = session.inventory.add_material(workshop.id, "Cable", "20", "m", cost_per_unit=300)
    kept, _ = session.issue_material(project.id, cable.id, "3", is_billable=True)
    session.return_material(project.id, returned.id, "4")

    selection = session.unbilled(project.id)
    assert [issue.id for issue in selection.inventory_issues] == [kept.id]

    lines = [LineRequest("inventory_issue", issue.id) for issue in selection.inventory_issues]
    invoice, _ = session.create_invoice(project.id, lines)
    assert invoice.total == 900


def test_flags_are_stored_as_integers(session, conn, project, billable):
    session.create_invoice(project.id, [LineRequest("inventory_issue", billable["issue"].id)])

    row = conn.execute(
        "SELECT typeof(is_billable), is_billable, typeof(invoiced), invoiced FROM worksite_material_issue"
    ).fetchone()
    assert tuple(row) == ("integer", 1, "integer", 1)
    assert conn.execute("SELECT invoiced FROM expense").fetchone()[0] == 0
