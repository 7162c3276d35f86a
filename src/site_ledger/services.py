from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional, Sequence

from .config import LedgerSettings
from .core import (
    BillableItem,
    CostBreakdown,
    CustomLine,
    ProjectFinancials,
    StockAlert,
    SupplierMaterialLine,
    UnbilledSelection,
    UnusedMaterialRow,
    as_cents,
    as_decimal,
    assemble_invoice,
    billed_sources,
    check_unused,
    cost_breakdown,
    format_invoice_number,
    issue_from_stock,
    line_total,
    low_stock_alerts,
    project_financials,
    require_positive,
    return_to_stock,
    select_unbilled,
    transition_change_order,
    transition_invoice,
    unused_materials_report,
)
from .errors import AlreadyInvoiced, ConservationError, LedgerError, NotFound, ValidationError
from .db import write_transaction
from .models import (
    ChangeOrder,
    ChangeOrderItem,
    Deposit,
    Expense,
    ExpenseSource,
    InventoryIssueSource,
    Invoice,
    Project,
    SupplierMaterial,
    Tax,
    Workshop,
    WorkshopMaterial,
    WorksiteMaterialIssue,
)
from .repositories import (
    ChangeOrderRepository,
    DepositRepository,
    ExpenseRepository,
    IssuanceRepository,
    InvoiceRepository,
    ProjectRepository,
    SupplierMaterialRepository,
    WorkshopRepository,
    new_id,
)

logger = logging.getLogger(__name__)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _require_text(value: Optional[str], field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} is required", field=field_name)
    return value.strip()


class ProjectService:
    """Projects, their expenses, and the read-side aggregates built from them."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.projects = ProjectRepository(conn)
        self.expenses = ExpenseRepository(conn)
        self.change_orders = ChangeOrderRepository(conn)
        self.invoices = InvoiceRepository(conn)
        self.supplier_materials = SupplierMaterialRepository(conn)

    def create_project(
        self,
        name: str,
        budget: int,
        fee_type: str,
        fee_value: Any,
        client_name: str = "",
    ) -> Project:
        if fee_type not in ("Percentage", "Fixed"):
            raise ValidationError("feeType must be Percentage or Fixed", field="feeType")
        value = as_decimal(fee_value, "feeValue")
        if value < 0:
            raise ValidationError("feeValue cannot be negative", field="feeValue")
        if fee_type == "Fixed" and value != value.to_integral_value():
            raise ValidationError("A fixed fee must be a whole number of cents", field="feeValue")
        project = Project(
            id=new_id(),
            name=_require_text(name, "name"),
            client_name=client_name,
            budget=as_cents(budget, "budget"),
            fee_type=fee_type,
            fee_value=value,
        )
        with write_transaction(self.conn):
            self.projects.create(project)
        logger.info("Created project %s (%s)", project.id, project.name)
        return project

    def add_expense(
        self,
        project_id: str,
        description: str,
        amount: int,
        category: str,
        date: Optional[str] = None,
        taxes: Iterable[Mapping[str, Any]] = (),
        quantity: Any = None,
        unit: Optional[str] = None,
        work_stage: Optional[str] = None,
        area: Optional[str] = None,
        personnel_id: Optional[str] = None,
    ) -> Expense:
        tax_lines = []
        for raw in taxes:
            rate = as_decimal(raw.get("rate"), "tax rate")
            if rate < 0:
                raise ValidationError("Tax rate cannot be negative", field="taxes")
            tax_lines.append(Tax(id=raw.get("id") or new_id(), name=_require_text(raw.get("name"), "tax name"), rate=rate))
        expense = Expense(
            id=new_id(),
            project_id=project_id,
            description=_require_text(description, "description"),
            amount=as_cents(amount),
            date=date or utc_now(),
            category=_require_text(category, "category"),
            taxes=tuple(tax_lines),
            quantity=require_positive(quantity) if quantity is not None else None,
            unit=unit,
            work_stage=work_stage,
            area=area,
            personnel_id=personnel_id,
        )
        with write_transaction(self.conn):
            self.projects.ensure_exists(project_id)
            self.expenses.create(expense)
        logger.info("Added expense %s to project %s: %s cents", expense.id, project_id, expense.amount)
        return expense

    def delete_expense(self, project_id: str, expense_id: str) -> None:
        with write_transaction(self.conn):
            expense = self._project_expense(project_id, expense_id)
            if expense.invoiced:
                logger.warning("Refused to delete invoiced expense %s", expense_id)
                raise AlreadyInvoiced("Invoiced expenses cannot be deleted", expense_id=expense_id)
            self.expenses.delete(expense_id)
        logger.info("Deleted expense %s from project %s", expense_id, project_id)

    def add_supplier_material(self, supplier_id: str, name: str, unit: str, price: int) -> SupplierMaterial:
        material = SupplierMaterial(
            id=new_id(),
            supplier_id=_require_text(supplier_id, "supplierId"),
            name=_require_text(name, "name"),
            unit=_require_text(unit, "unit"),
            price=as_cents(price, "price"),
        )
        with write_transaction(self.conn):
            self.supplier_materials.create(material)
        return material

    def get_project(self, project_id: str) -> Project:
        return self.projects.get(project_id)

    def financials(self, project_id: str) -> ProjectFinancials:
        project = self.projects.get(project_id)
        return project_financials(project, self.change_orders.list_for_project(project_id))

    def unbilled(
        self, project_id: str, work_stage: Optional[str] = None, area: Optional[str] = None
    ) -> UnbilledSelection:
        project = self.projects.get(project_id)
        return select_unbilled(
            project,
            self.change_orders.list_for_project(project_id),
            self.invoices.list_for_project(project_id),
            supplier_materials=self.supplier_materials.list_all(),
            work_stage=work_stage,
            area=area,
        )

    def cost_breakdown(self, project_id: str) -> CostBreakdown:
        return cost_breakdown(self.projects.get(project_id))

    def unused_materials(self, project_id: str) -> tuple[list[UnusedMaterialRow], int]:
        return unused_materials_report(self.projects.get(project_id))

    def _project_expense(self, project_id: str, expense_id: str) -> Expense:
        expense = self.expenses.get(expense_id)
        if expense.project_id != project_id:
            raise NotFound("Expense not found in project", project_id=project_id, expense_id=expense_id)
        return expense


class InventoryService:
    """Moves stock between workshops and project sites.

    Every movement runs inside one write transaction: the stock read, the
    conservation check and both writes either all happen or none do.
    """

    def __init__(self, conn: sqlite3.Connection, default_low_stock_threshold: Decimal = Decimal("10")):
        self.conn = conn
        self.default_low_stock_threshold = default_low_stock_threshold
        self.projects = ProjectRepository(conn)
        self.workshops = WorkshopRepository(conn)
        self.issuances = IssuanceRepository(conn)
        self.expenses = ExpenseRepository(conn)

    def create_workshop(self, name: str, location: str = "") -> Workshop:
        workshop = Workshop(id=new_id(), name=_require_text(name, "name"), location=location)
        with write_transaction(self.conn):
            self.workshops.create_workshop(workshop)
        return workshop

    def add_material(
        self,
        workshop_id: str,
        name: str,
        quantity: Any,
        unit: str,
        cost_per_unit: Optional[int] = None,
        low_stock_threshold: Any = None,
    ) -> WorkshopMaterial:
        stock = as_decimal(quantity, "quantity")
        if stock < 0:
            raise ValidationError("quantity cannot be negative", field="quantity")
        material = WorkshopMaterial(
            id=new_id(),
            workshop_id=workshop_id,
            name=_require_text(name, "name"),
            quantity=stock,
            unit=_require_text(unit, "unit"),
            cost_per_unit=as_cents(cost_per_unit, "costPerUnit") if cost_per_unit is not None else None,
            low_stock_threshold=as_decimal(low_stock_threshold, "lowStockThreshold")
            if low_stock_threshold is not None
            else None,
        )
        with write_transaction(self.conn):
            self.workshops.get_workshop(workshop_id)
            self.workshops.create_material(material)
        logger.info("Stocked %s %s of %s in workshop %s", stock, material.unit, material.name, workshop_id)
        return material

    def get_material(self, material_id: str) -> WorkshopMaterial:
        return self.workshops.get_material(material_id)

    def issue_material(
        self,
        project_id: str,
        material_id: str,
        quantity: Any,
        is_billable: bool = False,
        area: Optional[str] = None,
    ) -> WorksiteMaterialIssue:
        qty = require_positive(quantity)
        with write_transaction(self.conn):
            self.projects.ensure_exists(project_id)
            material = self.workshops.get_material(material_id)
            try:
                remaining = issue_from_stock(material, qty)
            except ConservationError as exc:
                logger.warning("Issue of %s %s rejected: %s", qty, material.name, exc.message)
                raise
            self.workshops.swap_quantity(material.id, material.quantity, remaining.quantity)

            unit_cost = material.cost_per_unit or 0
            existing = self.issuances.find_open(project_id, material.id, bool(is_billable), unit_cost)
            if existing is not None:
                issue = replace(
                    existing,
                    quantity=existing.quantity + qty,
                    issued_quantity=existing.issued_quantity + qty,
                )
                self.issuances.update_fields(
                    issue.id, {"quantity": issue.quantity, "issued_quantity": issue.issued_quantity}
                )
            else:
                issue = WorksiteMaterialIssue(
                    id=new_id(),
                    project_id=project_id,
                    workshop_material_id=material.id,
                    material_name=material.name,
                    quantity=qty,
                    issued_quantity=qty,
                    unit=material.unit,
                    issue_date=utc_now(),
                    unit_cost=unit_cost,
                    is_billable=bool(is_billable),
                    area=area,
                )
                self.issuances.create(issue)
        logger.info(
            "Issued %s %s of %s to project %s (stock now %s)",
            qty, material.unit, material.name, project_id, remaining.quantity,
        )
        return issue

    def return_material(self, project_id: str, issuance_id: str, quantity: Any) -> WorksiteMaterialIssue:
        qty = require_positive(quantity)
        with write_transaction(self.conn):
            issue = self._project_issuance(project_id, issuance_id)
            try:
                updated = return_to_stock(issue, qty)
            except ConservationError as exc:
                logger.warning("Return to stock rejected: %s", exc.message)
                raise
            material = self.workshops.get_material(issue.workshop_material_id)
            self.workshops.swap_quantity(material.id, material.quantity, material.quantity + qty)
            self.issuances.update_fields(issue.id, {"quantity": updated.quantity})
        logger.info(
            "Returned %s %s of %s from project %s to stock", qty, issue.unit, issue.material_name, project_id
        )
        return updated

    def record_unused_issuance(self, project_id: str, issuance_id: str, unused: Any) -> WorksiteMaterialIssue:
        """Annotate how much of an issuance went unused. Stock does not move."""
        value = as_decimal(unused, "unusedQuantity")
        with write_transaction(self.conn):
            issue = self._project_issuance(project_id, issuance_id)
            try:
                check_unused(issue.quantity, value, issue.id)
            except ConservationError as exc:
                logger.warning("Unused quantity rejected: %s", exc.message)
                raise
            self.issuances.update_fields(issue.id, {"unused_quantity": value})
        return replace(issue, unused_quantity=value)

    def record_unused_expense(self, project_id: str, expense_id: str, unused: Any) -> Expense:
        value = as_decimal(unused, "unusedQuantity")
        with write_transaction(self.conn):
            expense = self.expenses.get(expense_id)
            if expense.project_id != project_id:
                raise NotFound("Expense not found in project", project_id=project_id, expense_id=expense_id)
            try:
                check_unused(expense.quantity, value, expense.id)
            except ConservationError as exc:
                logger.warning("Unused quantity rejected: %s", exc.message)
                raise
            self.expenses.update_fields(expense.id, {"unused_quantity": value})
        return replace(expense, unused_quantity=value)

    def transfer_material(self, material_id: str, target_workshop_id: str, quantity: Any) -> WorkshopMaterial:
        """Move stock to another workshop, merging into a matching name/unit record there."""
        qty = require_positive(quantity)
        with write_transaction(self.conn):
            source = self.workshops.get_material(material_id)
            target_workshop = self.workshops.get_workshop(target_workshop_id)
            if target_workshop.id == source.workshop_id:
                raise ValidationError("Source and target workshop are the same", workshop_id=target_workshop_id)
            try:
                remaining = issue_from_stock(source, qty)
            except ConservationError as exc:
                logger.warning("Transfer of %s %s rejected: %s", qty, source.name, exc.message)
                raise
            self.workshops.swap_quantity(source.id, source.quantity, remaining.quantity)

            target = self.workshops.find_material(target_workshop.id, source.name, source.unit)
            if target is not None:
                self.workshops.swap_quantity(target.id, target.quantity, target.quantity + qty)
                target = replace(target, quantity=target.quantity + qty)
            else:
                target = WorkshopMaterial(
                    id=new_id(),
                    workshop_id=target_workshop.id,
                    name=source.name,
                    quantity=qty,
                    unit=source.unit,
                    cost_per_unit=source.cost_per_unit,
                    low_stock_threshold=source.low_stock_threshold,
                )
                self.workshops.create_material(target)
        logger.info("Moved %s %s of %s to workshop %s", qty, source.unit, source.name, target_workshop.name)
        return target

    def low_stock_alerts(self, workshop_id: Optional[str] = None) -> list[StockAlert]:
        return low_stock_alerts(self.workshops.list_materials(workshop_id), self.default_low_stock_threshold)

    def _project_issuance(self, project_id: str, issuance_id: str) -> WorksiteMaterialIssue:
        issue = self.issuances.get(issuance_id)
        if issue.project_id != project_id:
            raise NotFound(
                "Material issue record not found in project", project_id=project_id, issuance_id=issuance_id
            )
        return issue


class ChangeOrderService:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.projects = ProjectRepository(conn)
        self.change_orders = ChangeOrderRepository(conn)

    def create_change_order(
        self,
        project_id: str,
        title: str,
        items: Iterable[Mapping[str, Any]],
        description: str = "",
    ) -> ChangeOrder:
        priced = []
        for raw in items:
            quantity = require_positive(raw.get("quantity"))
            unit_price = as_cents(raw.get("unit_price"), "unitPrice")
            priced.append(
                ChangeOrderItem(
                    id=new_id(),
                    description=_require_text(raw.get("description"), "description"),
                    quantity=quantity,
                    unit_price=unit_price,
                    total=line_total(quantity, unit_price),
                    material_id=raw.get("material_id"),
                )
            )
        change_order = ChangeOrder(
            id=new_id(),
            project_id=project_id,
            title=_require_text(title, "title"),
            description=description,
            items=tuple(priced),
            total_amount=sum(item.total for item in priced),
            status="Draft",
            date=utc_now(),
        )
        with write_transaction(self.conn):
            self.projects.ensure_exists(project_id)
            self.change_orders.create(change_order)
        logger.info("Created change order %s for project %s: %s cents", change_order.id, project_id, change_order.total_amount)
        return change_order

    def update_status(self, change_order_id: str, status: str) -> ChangeOrder:
        with write_transaction(self.conn):
            change_order = self.change_orders.get(change_order_id)
            try:
                updated = transition_change_order(change_order, status)
            except LedgerError as exc:
                logger.warning("Change order %s status update rejected: %s", change_order_id, exc.message)
                raise
            self.change_orders.set_status(change_order.id, change_order.status, updated.status)
        logger.info("Change order %s moved from %s to %s", change_order_id, change_order.status, updated.status)
        return updated

    def get(self, change_order_id: str) -> ChangeOrder:
        return self.change_orders.get(change_order_id)

    def list_for_project(self, project_id: str) -> list[ChangeOrder]:
        return self.change_orders.list_for_project(project_id)


@dataclass(frozen=True)
class LineRequest:
    """One requested invoice line: a reference to a source record, or a custom line."""

    source_type: str = "custom"
    source_id: Optional[str] = None
    description: Optional[str] = None
    quantity: Any = None
    unit_price: Optional[int] = None


class InvoiceService:
    def __init__(self, conn: sqlite3.Connection, number_prefix: str = "INV", default_tax_rate: Decimal = Decimal("0")):
        self.conn = conn
        self.number_prefix = number_prefix
        self.default_tax_rate = default_tax_rate
        self.projects = ProjectRepository(conn)
        self.expenses = ExpenseRepository(conn)
        self.issuances = IssuanceRepository(conn)
        self.change_orders = ChangeOrderRepository(conn)
        self.supplier_materials = SupplierMaterialRepository(conn)
        self.invoices = InvoiceRepository(conn)
        self.deposits = DepositRepository(conn)

    def create_invoice(
        self,
        project_id: str,
        lines: Sequence[LineRequest],
        tax_rate: Any = None,
        due_date: Optional[str] = None,
        issue_date: Optional[str] = None,
    ) -> Invoice:
        """Create an invoice from a snapshot of the requested sources.

        The invoice, its billed-source claims and the ``invoiced`` flags of
        its expenses and issuances are written in one transaction.
        """
        rate = as_decimal(tax_rate, "tax") if tax_rate is not None else self.default_tax_rate
        with write_transaction(self.conn):
            self.projects.ensure_exists(project_id)
            items = [self._resolve(project_id, line) for line in lines]
            billed = billed_sources(self.invoices.list_for_project(project_id))
            try:
                draft = assemble_invoice(items, rate, billed)
            except LedgerError as exc:
                logger.warning("Invoice for project %s rejected: %s", project_id, exc.message)
                raise
            issued_on = issue_date or date.today().isoformat()
            invoice = Invoice(
                id=new_id(),
                invoice_number=format_invoice_number(self.number_prefix, self.invoices.count()),
                project_id=project_id,
                issue_date=issued_on,
                due_date=due_date or issued_on,
                line_items=draft.line_items,
                subtotal=draft.subtotal,
                tax_rate=draft.tax_rate,
                tax=draft.tax,
                total=draft.total,
                status="Draft",
            )
            self.invoices.create(invoice)
            self._mark_sources(invoice, invoiced=True)
        logger.info(
            "Created invoice %s for project %s with %d lines, total %s cents",
            invoice.invoice_number, project_id, len(invoice.line_items), invoice.total,
        )
        return invoice

    def update_status(self, invoice_id: str, status: str, payment_date: Optional[str] = None) -> Invoice:
        with write_transaction(self.conn):
            invoice = self.invoices.get(invoice_id)
            if invoice.status == "Paid" and status == "Paid":
                return invoice
            try:
                updated = transition_invoice(invoice, status)
            except LedgerError as exc:
                logger.warning("Invoice %s status update rejected: %s", invoice.invoice_number, exc.message)
                raise
            if status == "Paid":
                paid_on = payment_date or utc_now()
                updated = replace(updated, payment_date=paid_on)
                self.invoices.set_status(invoice.id, invoice.status, status, paid_on)
                self.deposits.create(
                    Deposit(
                        id=new_id(),
                        project_id=invoice.project_id,
                        amount=invoice.total,
                        date=paid_on,
                        description=f"Payment for Invoice {invoice.invoice_number}",
                    )
                )
            elif status == "Void":
                self.invoices.set_status(invoice.id, invoice.status, status)
                self.invoices.release_sources(invoice.id)
                self._mark_sources(invoice, invoiced=False)
            else:
                self.invoices.set_status(invoice.id, invoice.status, status)
        logger.info("Invoice %s moved from %s to %s", invoice.invoice_number, invoice.status, status)
        return updated

    def get(self, invoice_id: str) -> Invoice:
        return self.invoices.get(invoice_id)

    def list_for_project(self, project_id: str) -> list[Invoice]:
        return self.invoices.list_for_project(project_id)

    def deposits_for_project(self, project_id: str) -> list[Deposit]:
        return self.deposits.list_for_project(project_id)

    def _resolve(self, project_id: str, line: LineRequest) -> BillableItem:
        if line.source_type == "custom":
            return CustomLine(
                description=line.description or "",
                quantity=as_decimal(line.quantity if line.quantity is not None else 1, "quantity"),
                unit_price=as_cents(line.unit_price, "unitPrice"),
            )
        if not line.source_id:
            raise ValidationError(f"sourceId is required for {line.source_type} lines", source_type=line.source_type)
        if line.source_type == "expense":
            record: Any = self.expenses.get(line.source_id)
        elif line.source_type == "change_order":
            record = self.change_orders.get(line.source_id)
        elif line.source_type == "inventory_issue":
            record = self.issuances.get(line.source_id)
        elif line.source_type == "material":
            material = self.supplier_materials.get(line.source_id)
            quantity = as_decimal(line.quantity if line.quantity is not None else 1, "quantity")
            return SupplierMaterialLine(material, quantity)
        else:
            raise ValidationError(f"Unknown source type: {line.source_type}", source_type=line.source_type)
        if record.project_id != project_id:
            raise NotFound(
                f"{line.source_type} {line.source_id} does not belong to project {project_id}",
                source_type=line.source_type,
                source_id=line.source_id,
            )
        return record

    def _mark_sources(self, invoice: Invoice, invoiced: bool) -> None:
        expense_ids = [line.source.expense_id for line in invoice.line_items if isinstance(line.source, ExpenseSource)]
        issuance_ids = [
            line.source.issuance_id for line in invoice.line_items if isinstance(line.source, InventoryIssueSource)
        ]
        self.expenses.set_invoiced(expense_ids, invoiced)
        self.issuances.set_invoiced(issuance_ids, invoiced)


@dataclass(frozen=True)
class ProjectView:
    project: Project
    change_orders: tuple[ChangeOrder, ...]
    invoices: tuple[Invoice, ...]
    financials: ProjectFinancials

    @property
    def approved_change_orders(self) -> tuple[ChangeOrder, ...]:
        return tuple(co for co in self.change_orders if co.status == "Approved")


class LedgerSession:
    """Request- or session-scoped state: services plus a per-project view cache.

    Views are built on first use and dropped for the affected project after
    each mutating call made through the session, which then returns the
    freshly loaded view. ``close`` drops every view and the connection.
    """

    def __init__(self, conn: sqlite3.Connection, settings: Optional[LedgerSettings] = None):
        self.conn = conn
        self.settings = settings or LedgerSettings()
        self.projects = ProjectService(conn)
        self.inventory = InventoryService(conn, self.settings.default_low_stock_threshold)
        self.change_orders = ChangeOrderService(conn)
        self.invoices = InvoiceService(conn, self.settings.invoice_number_prefix, self.settings.default_tax_rate)
        self._views: dict[str, ProjectView] = {}

    def view(self, project_id: str) -> ProjectView:
        cached = self._views.get(project_id)
        if cached is not None:
            return cached
        project = self.projects.get_project(project_id)
        change_orders = tuple(self.change_orders.list_for_project(project_id))
        view = ProjectView(
            project=project,
            change_orders=change_orders,
            invoices=tuple(self.invoices.list_for_project(project_id)),
            financials=project_financials(project, change_orders),
        )
        self._views[project_id] = view
        return view

    def invalidate(self, project_id: Optional[str] = None) -> None:
        if project_id is None:
            self._views.clear()
        else:
            self._views.pop(project_id, None)

    def resync(self, project_id: str) -> ProjectView:
        self.invalidate(project_id)
        return self.view(project_id)

    def close(self) -> None:
        self._views.clear()
        self.conn.close()

    def unbilled(self, project_id: str, work_stage: Optional[str] = None, area: Optional[str] = None) -> UnbilledSelection:
        view = self.view(project_id)
        return select_unbilled(
            view.project,
            view.change_orders,
            view.invoices,
            supplier_materials=self.projects.supplier_materials.list_all(),
            work_stage=work_stage,
            area=area,
        )

    def add_expense(self, project_id: str, **fields: Any) -> tuple[Expense, ProjectView]:
        expense = self.projects.add_expense(project_id, **fields)
        return expense, self.resync(project_id)

    def issue_material(self, project_id: str, material_id: str, quantity: Any, **options: Any) -> tuple[WorksiteMaterialIssue, ProjectView]:
        issue = self.inventory.issue_material(project_id, material_id, quantity, **options)
        return issue, self.resync(project_id)

    def return_material(self, project_id: str, issuance_id: str, quantity: Any) -> tuple[WorksiteMaterialIssue, ProjectView]:
        issue = self.inventory.return_material(project_id, issuance_id, quantity)
        return issue, self.resync(project_id)

    def record_unused(self, project_id: str, item_type: str, item_id: str, unused: Any) -> tuple[Any, ProjectView]:
        if item_type == "expense":
            record: Any = self.inventory.record_unused_expense(project_id, item_id, unused)
        elif item_type == "inventory_issue":
            record = self.inventory.record_unused_issuance(project_id, item_id, unused)
        else:
            raise ValidationError(f"Unknown item type: {item_type}", item_type=item_type)
        return record, self.resync(project_id)

    def create_change_order(self, project_id: str, title: str, items: Iterable[Mapping[str, Any]], description: str = "") -> tuple[ChangeOrder, ProjectView]:
        change_order = self.change_orders.create_change_order(project_id, title, items, description)
        return change_order, self.resync(project_id)

    def update_change_order_status(self, change_order_id: str, status: str) -> tuple[ChangeOrder, ProjectView]:
        change_order = self.change_orders.update_status(change_order_id, status)
        return change_order, self.resync(change_order.project_id)

    def create_invoice(self, project_id: str, lines: Sequence[LineRequest], **options: Any) -> tuple[Invoice, ProjectView]:
        invoice = self.invoices.create_invoice(project_id, lines, **options)
        return invoice, self.resync(project_id)

    def update_invoice_status(self, invoice_id: str, status: str, payment_date: Optional[str] = None) -> tuple[Invoice, ProjectView]:
        invoice = self.invoices.update_status(invoice_id, status, payment_date)
        return invoice, self.resync(invoice.project_id)
