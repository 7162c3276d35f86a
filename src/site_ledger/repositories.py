from __future__ import annotations

import sqlite3
from decimal import Decimal
from typing import Any, Iterable, Optional
from uuid import uuid4

from .core import billing_key, make_source, source_reference
from .errors import AlreadyInvoiced, NotFound, StorageError
from .models import (
    ChangeOrder,
    ChangeOrderItem,
    Deposit,
    Expense,
    Invoice,
    InvoiceLineItem,
    Project,
    SupplierMaterial,
    Tax,
    Workshop,
    WorkshopMaterial,
    WorksiteMaterialIssue,
)


def _normalize_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, bool):
        return int(value)
    return value


def _decimal(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def new_id() -> str:
    return str(uuid4())


class ProjectRepository:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def create(self, project: Project) -> Project:
        self.conn.execute(
            """
            INSERT INTO project(id, name, client_name, budget, fee_type, fee_value)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                project.id,
                project.name,
                project.client_name,
                project.budget,
                project.fee_type,
                _normalize_value(project.fee_value),
            ),
        )
        return project

    def ensure_exists(self, project_id: str) -> None:
        row = self.conn.execute("SELECT 1 FROM project WHERE id = ?", (project_id,)).fetchone()
        if row is None:
            raise NotFound("Project not found", project_id=project_id)

    def get(self, project_id: str) -> Project:
        row = self.conn.execute("SELECT * FROM project WHERE id = ?", (project_id,)).fetchone()
        if row is None:
            raise NotFound("Project not found", project_id=project_id)
        return Project(
            id=row["id"],
            name=row["name"],
            client_name=row["client_name"],
            budget=row["budget"],
            fee_type=row["fee_type"],
            fee_value=Decimal(row["fee_value"]),
            expenses=tuple(ExpenseRepository(self.conn).list_for_project(project_id)),
            worksite_materials=tuple(IssuanceRepository(self.conn).list_for_project(project_id)),
        )


class ExpenseRepository:
    UPDATABLE_FIELDS = {"unused_quantity", "invoiced"}

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def create(self, expense: Expense) -> Expense:
        self.conn.execute(
            """
            INSERT INTO expense(
                id, project_id, description, amount, date, category, quantity, unit,
                unused_quantity, invoiced, work_stage, area, personnel_id
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                expense.id,
                expense.project_id,
                expense.description,
                expense.amount,
                expense.date,
                expense.category,
                _normalize_value(expense.quantity),
                expense.unit,
                _normalize_value(expense.unused_quantity),
                _normalize_value(expense.invoiced),
                expense.work_stage,
                expense.area,
                expense.personnel_id,
            ),
        )
        self.conn.executemany(
            "INSERT INTO expense_tax(id, expense_id, position, name, rate) VALUES (?, ?, ?, ?, ?)",
            [
                (tax.id, expense.id, position, tax.name, _normalize_value(tax.rate))
                for position, tax in enumerate(expense.taxes)
            ],
        )
        return expense

    def get(self, expense_id: str) -> Expense:
        row = self.conn.execute("SELECT * FROM expense WHERE id = ?", (expense_id,)).fetchone()
        if row is None:
            raise NotFound("Expense not found", expense_id=expense_id)
        return self._from_row(row)

    def list_for_project(self, project_id: str) -> list[Expense]:
        rows = self.conn.execute(
            "SELECT * FROM expense WHERE project_id = ? ORDER BY date, rowid", (project_id,)
        ).fetchall()
        return [self._from_row(row) for row in rows]

    def update_fields(self, expense_id: str, fields: dict[str, Any]) -> None:
        if not fields:
            return
        invalid = set(fields) - self.UPDATABLE_FIELDS
        if invalid:
            raise ValueError(f"Invalid expense fields: {sorted(invalid)}")

        assignments = ", ".join(f"{field} = ?" for field in fields)
        values = [_normalize_value(fields[field]) for field in fields]
        values.append(expense_id)
        self.conn.execute(f"UPDATE expense SET {assignments} WHERE id = ?", values)

    def set_invoiced(self, expense_ids: Iterable[str], invoiced: bool) -> None:
        self.conn.executemany(
            "UPDATE expense SET invoiced = ? WHERE id = ?",
            [(_normalize_value(invoiced), expense_id) for expense_id in expense_ids],
        )

    def delete(self, expense_id: str) -> None:
        self.conn.execute("DELETE FROM expense WHERE id = ?", (expense_id,))

    def _taxes(self, expense_id: str) -> tuple[Tax, ...]:
        rows = self.conn.execute(
            "SELECT * FROM expense_tax WHERE expense_id = ? ORDER BY position", (expense_id,)
        ).fetchall()
        return tuple(Tax(id=row["id"], name=row["name"], rate=Decimal(row["rate"])) for row in rows)

    def _from_row(self, row: sqlite3.Row) -> Expense:
        return Expense(
            id=row["id"],
            project_id=row["project_id"],
            description=row["description"],
            amount=row["amount"],
            date=row["date"],
            category=row["category"],
            taxes=self._taxes(row["id"]),
            quantity=_decimal(row["quantity"]),
            unit=row["unit"],
            unused_quantity=_decimal(row["unused_quantity"]),
            invoiced=bool(row["invoiced"]),
            work_stage=row["work_stage"],
            area=row["area"],
            personnel_id=row["personnel_id"],
        )


class WorkshopRepository:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def create_workshop(self, workshop: Workshop) -> Workshop:
        self.conn.execute(
            "INSERT INTO workshop(id, name, location) VALUES (?, ?, ?)",
            (workshop.id, workshop.name, workshop.location),
        )
        return workshop

    def get_workshop(self, workshop_id: str) -> Workshop:
        row = self.conn.execute("SELECT * FROM workshop WHERE id = ?", (workshop_id,)).fetchone()
        if row is None:
            raise NotFound("Workshop not found", workshop_id=workshop_id)
        return Workshop(id=row["id"], name=row["name"], location=row["location"])

    def create_material(self, material: WorkshopMaterial) -> WorkshopMaterial:
        self.conn.execute(
            """
            INSERT INTO workshop_material(
                id, workshop_id, name, quantity, unit, cost_per_unit, low_stock_threshold, status
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                material.id,
                material.workshop_id,
                material.name,
                _normalize_value(material.quantity),
                material.unit,
                material.cost_per_unit,
                _normalize_value(material.low_stock_threshold),
                material.status,
            ),
        )
        return material

    def get_material(self, material_id: str) -> WorkshopMaterial:
        row = self.conn.execute("SELECT * FROM workshop_material WHERE id = ?", (material_id,)).fetchone()
        if row is None:
            raise NotFound("Workshop material not found", material_id=material_id)
        return self._material_from_row(row)

    def find_material(self, workshop_id: str, name: str, unit: str) -> Optional[WorkshopMaterial]:
        row = self.conn.execute(
            "SELECT * FROM workshop_material WHERE workshop_id = ? AND name = ? AND unit = ? ORDER BY rowid LIMIT 1",
            (workshop_id, name, unit),
        ).fetchone()
        return self._material_from_row(row) if row else None

    def list_materials(self, workshop_id: Optional[str] = None) -> list[WorkshopMaterial]:
        if workshop_id is None:
            rows = self.conn.execute("SELECT * FROM workshop_material ORDER BY name, rowid").fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM workshop_material WHERE workshop_id = ? ORDER BY name, rowid", (workshop_id,)
            ).fetchall()
        return [self._material_from_row(row) for row in rows]

    def swap_quantity(self, material_id: str, expected: Decimal, new_quantity: Decimal) -> None:
        """Compare-and-set the stock quantity; fails if another writer got there first."""
        cursor = self.conn.execute(
            "UPDATE workshop_material SET quantity = ? WHERE id = ? AND quantity = ?",
            (_normalize_value(new_quantity), material_id, _normalize_value(expected)),
        )
        if cursor.rowcount != 1:
            raise StorageError("Stock quantity changed concurrently", material_id=material_id)

    @staticmethod
    def _material_from_row(row: sqlite3.Row) -> WorkshopMaterial:
        return WorkshopMaterial(
            id=row["id"],
            workshop_id=row["workshop_id"],
            name=row["name"],
            quantity=Decimal(row["quantity"]),
            unit=row["unit"],
            cost_per_unit=row["cost_per_unit"],
            low_stock_threshold=_decimal(row["low_stock_threshold"]),
            status=row["status"],
        )


class IssuanceRepository:
    UPDATABLE_FIELDS = {"quantity", "issued_quantity", "unused_quantity", "invoiced"}

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def create(self, issue: WorksiteMaterialIssue) -> WorksiteMaterialIssue:
        self.conn.execute(
            """
            INSERT INTO worksite_material_issue(
                id, project_id, workshop_material_id, material_name, quantity, issued_quantity,
                unit, issue_date, unit_cost, is_billable, invoiced, unused_quantity, area
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                issue.id,
                issue.project_id,
                issue.workshop_material_id,
                issue.material_name,
                _normalize_value(issue.quantity),
                _normalize_value(issue.issued_quantity),
                issue.unit,
                issue.issue_date,
                issue.unit_cost,
                _normalize_value(issue.is_billable),
                _normalize_value(issue.invoiced),
                _normalize_value(issue.unused_quantity),
                issue.area,
            ),
        )
        return issue

    def get(self, issuance_id: str) -> WorksiteMaterialIssue:
        row = self.conn.execute("SELECT * FROM worksite_material_issue WHERE id = ?", (issuance_id,)).fetchone()
        if row is None:
            raise NotFound("Material issue record not found", issuance_id=issuance_id)
        return self._from_row(row)

    def list_for_project(self, project_id: str) -> list[WorksiteMaterialIssue]:
        rows = self.conn.execute(
            "SELECT * FROM worksite_material_issue WHERE project_id = ? ORDER BY issue_date, rowid", (project_id,)
        ).fetchall()
        return [self._from_row(row) for row in rows]

    def find_open(
        self, project_id: str, material_id: str, is_billable: bool, unit_cost: Optional[int]
    ) -> Optional[WorksiteMaterialIssue]:
        row = self.conn.execute(
            """
            SELECT * FROM worksite_material_issue
            WHERE project_id = ? AND workshop_material_id = ? AND is_billable = ? AND invoiced = 0
              AND unit_cost IS ?
            ORDER BY rowid LIMIT 1
            """,
            (project_id, material_id, _normalize_value(bool(is_billable)), unit_cost),
        ).fetchone()
        return self._from_row(row) if row else None

    def update_fields(self, issuance_id: str, fields: dict[str, Any]) -> None:
        if not fields:
            return
        invalid = set(fields) - self.UPDATABLE_FIELDS
        if invalid:
            raise ValueError(f"Invalid issuance fields: {sorted(invalid)}")

        assignments = ", ".join(f"{field} = ?" for field in fields)
        values = [_normalize_value(fields[field]) for field in fields]
        values.append(issuance_id)
        self.conn.execute(f"UPDATE worksite_material_issue SET {assignments} WHERE id = ?", values)

    def set_invoiced(self, issuance_ids: Iterable[str], invoiced: bool) -> None:
        self.conn.executemany(
            "UPDATE worksite_material_issue SET invoiced = ? WHERE id = ?",
            [(_normalize_value(invoiced), issuance_id) for issuance_id in issuance_ids],
        )

    @staticmethod
    def _from_row(row: sqlite3.Row) -> WorksiteMaterialIssue:
        return WorksiteMaterialIssue(
            id=row["id"],
            project_id=row["project_id"],
            workshop_material_id=row["workshop_material_id"],
            material_name=row["material_name"],
            quantity=Decimal(row["quantity"]),
            issued_quantity=Decimal(row["issued_quantity"]),
            unit=row["unit"],
            issue_date=row["issue_date"],
            unit_cost=row["unit_cost"],
            is_billable=bool(row["is_billable"]),
            invoiced=bool(row["invoiced"]),
            unused_quantity=_decimal(row["unused_quantity"]),
            area=row["area"],
        )


class SupplierMaterialRepository:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def create(self, material: SupplierMaterial) -> SupplierMaterial:
        self.conn.execute(
            "INSERT INTO supplier_material(id, supplier_id, name, unit, price) VALUES (?, ?, ?, ?, ?)",
            (material.id, material.supplier_id, material.name, material.unit, material.price),
        )
        return material

    def get(self, material_id: str) -> SupplierMaterial:
        row = self.conn.execute("SELECT * FROM supplier_material WHERE id = ?", (material_id,)).fetchone()
        if row is None:
            raise NotFound("Supplier material not found", material_id=material_id)
        return self._from_row(row)

    def list_all(self) -> list[SupplierMaterial]:
        rows = self.conn.execute("SELECT * FROM supplier_material ORDER BY name, rowid").fetchall()
        return [self._from_row(row) for row in rows]

    @staticmethod
    def _from_row(row: sqlite3.Row) -> SupplierMaterial:
        return SupplierMaterial(
            id=row["id"], supplier_id=row["supplier_id"], name=row["name"], unit=row["unit"], price=row["price"]
        )


class ChangeOrderRepository:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def create(self, change_order: ChangeOrder) -> ChangeOrder:
        self.conn.execute(
            """
            INSERT INTO change_order(id, project_id, title, description, total_amount, status, date)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                change_order.id,
                change_order.project_id,
                change_order.title,
                change_order.description,
                change_order.total_amount,
                change_order.status,
                change_order.date,
            ),
        )
        self.conn.executemany(
            """
            INSERT INTO change_order_item(
                id, change_order_id, position, description, quantity, unit_price, total, material_id
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    item.id,
                    change_order.id,
                    position,
                    item.description,
                    _normalize_value(item.quantity),
                    item.unit_price,
                    item.total,
                    item.material_id,
                )
                for position, item in enumerate(change_order.items)
            ],
        )
        return change_order

    def get(self, change_order_id: str) -> ChangeOrder:
        row = self.conn.execute("SELECT * FROM change_order WHERE id = ?", (change_order_id,)).fetchone()
        if row is None:
            raise NotFound("Change Order not found", change_order_id=change_order_id)
        return self._from_row(row)

    def list_for_project(self, project_id: str) -> list[ChangeOrder]:
        rows = self.conn.execute(
            "SELECT * FROM change_order WHERE project_id = ? ORDER BY date, rowid", (project_id,)
        ).fetchall()
        return [self._from_row(row) for row in rows]

    def set_status(self, change_order_id: str, expected: str, status: str) -> None:
        cursor = self.conn.execute(
            "UPDATE change_order SET status = ? WHERE id = ? AND status = ?",
            (status, change_order_id, expected),
        )
        if cursor.rowcount != 1:
            raise StorageError("Change order status changed concurrently", change_order_id=change_order_id)

    def _from_row(self, row: sqlite3.Row) -> ChangeOrder:
        item_rows = self.conn.execute(
            "SELECT * FROM change_order_item WHERE change_order_id = ? ORDER BY position", (row["id"],)
        ).fetchall()
        items = tuple(
            ChangeOrderItem(
                id=item["id"],
                description=item["description"],
                quantity=Decimal(item["quantity"]),
                unit_price=item["unit_price"],
                total=item["total"],
                material_id=item["material_id"],
            )
            for item in item_rows
        )
        return ChangeOrder(
            id=row["id"],
            project_id=row["project_id"],
            title=row["title"],
            description=row["description"],
            items=items,
            total_amount=row["total_amount"],
            status=row["status"],
            date=row["date"],
        )


class InvoiceRepository:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def count(self) -> int:
        return int(self.conn.execute("SELECT COUNT(*) FROM invoice").fetchone()[0])

    def create(self, invoice: Invoice) -> Invoice:
        self.conn.execute(
            """
            INSERT INTO invoice(
                id, invoice_number, project_id, issue_date, due_date, subtotal, tax_rate, tax, total,
                status, payment_date
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                invoice.id,
                invoice.invoice_number,
                invoice.project_id,
                invoice.issue_date,
                invoice.due_date,
                invoice.subtotal,
                _normalize_value(invoice.tax_rate),
                invoice.tax,
                invoice.total,
                invoice.status,
                invoice.payment_date,
            ),
        )
        self.conn.executemany(
            """
            INSERT INTO invoice_line_item(
                id, invoice_id, position, description, quantity, unit_price, total, source_type, source_id
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    line.id,
                    invoice.id,
                    position,
                    line.description,
                    _normalize_value(line.quantity),
                    line.unit_price,
                    line.total,
                    line.source.source_type,
                    source_reference(line.source),
                )
                for position, line in enumerate(invoice.line_items)
            ],
        )
        self.claim_sources(invoice)
        return invoice

    def claim_sources(self, invoice: Invoice) -> None:
        for line in invoice.line_items:
            key = billing_key(line.source)
            if key is None:
                continue
            try:
                self.conn.execute(
                    "INSERT INTO billed_source(source_type, source_id, invoice_id) VALUES (?, ?, ?)",
                    (key[0], key[1], invoice.id),
                )
            except sqlite3.IntegrityError as exc:
                raise AlreadyInvoiced(
                    f"{key[0]} {key[1]} is already on an invoice", source_type=key[0], source_id=key[1]
                ) from exc

    def release_sources(self, invoice_id: str) -> None:
        self.conn.execute("DELETE FROM billed_source WHERE invoice_id = ?", (invoice_id,))

    def get(self, invoice_id: str) -> Invoice:
        row = self.conn.execute("SELECT * FROM invoice WHERE id = ?", (invoice_id,)).fetchone()
        if row is None:
            raise NotFound("Invoice not found", invoice_id=invoice_id)
        return self._from_row(row)

    def list_for_project(self, project_id: str) -> list[Invoice]:
        rows = self.conn.execute(
            "SELECT * FROM invoice WHERE project_id = ? ORDER BY rowid", (project_id,)
        ).fetchall()
        return [self._from_row(row) for row in rows]

    def set_status(self, invoice_id: str, expected: str, status: str, payment_date: Optional[str] = None) -> None:
        cursor = self.conn.execute(
            "UPDATE invoice SET status = ?, payment_date = COALESCE(?, payment_date) WHERE id = ? AND status = ?",
            (status, payment_date, invoice_id, expected),
        )
        if cursor.rowcount != 1:
            raise StorageError("Invoice status changed concurrently", invoice_id=invoice_id)

    def _from_row(self, row: sqlite3.Row) -> Invoice:
        line_rows = self.conn.execute(
            "SELECT * FROM invoice_line_item WHERE invoice_id = ? ORDER BY position", (row["id"],)
        ).fetchall()
        lines = tuple(
            InvoiceLineItem(
                id=line["id"],
                description=line["description"],
                quantity=Decimal(line["quantity"]),
                unit_price=line["unit_price"],
                total=line["total"],
                source=make_source(line["source_type"], line["source_id"]),
            )
            for line in line_rows
        )
        return Invoice(
            id=row["id"],
            invoice_number=row["invoice_number"],
            project_id=row["project_id"],
            issue_date=row["issue_date"],
            due_date=row["due_date"],
            line_items=lines,
            subtotal=row["subtotal"],
            tax_rate=Decimal(row["tax_rate"]),
            tax=row["tax"],
            total=row["total"],
            status=row["status"],
            payment_date=row["payment_date"],
        )


class DepositRepository:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def create(self, deposit: Deposit) -> Deposit:
        self.conn.execute(
            "INSERT INTO deposit(id, project_id, amount, date, description) VALUES (?, ?, ?, ?, ?)",
            (deposit.id, deposit.project_id, deposit.amount, deposit.date, deposit.description),
        )
        return deposit

    def list_for_project(self, project_id: str) -> list[Deposit]:
        rows = self.conn.execute(
            "SELECT * FROM deposit WHERE project_id = ? ORDER BY date, rowid", (project_id,)
        ).fetchall()
        return [
            Deposit(
                id=row["id"],
                project_id=row["project_id"],
                amount=row["amount"],
                date=row["date"],
                description=row["description"],
            )
            for row in rows
        ]
