from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Callable, Iterable, Optional, Sequence, Union
from uuid import uuid4

from .errors import (
    AlreadyInvoiced,
    BusinessRuleError,
    EmptyInvoice,
    ExcessReturn,
    InsufficientStock,
    InvalidTransition,
    NotApproved,
    OutOfRange,
    ValidationError,
)
from .models import (
    ChangeOrder,
    ChangeOrderSource,
    CustomSource,
    Expense,
    ExpenseSource,
    InventoryIssueSource,
    Invoice,
    InvoiceLineItem,
    LineSource,
    Project,
    SupplierMaterial,
    SupplierMaterialSource,
    WorkshopMaterial,
    WorksiteMaterialIssue,
)

CENT = Decimal("1")
PERCENT_PLACES = Decimal("0.01")
HUNDRED = Decimal("100")
ZERO = Decimal("0")

CHANGE_ORDER_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "Draft": ("Sent",),
    "Sent": ("Approved", "Rejected"),
    "Approved": (),
    "Rejected": (),
}

INVOICE_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "Draft": ("Sent", "Void"),
    "Sent": ("Paid", "Void"),
    "Paid": (),
    "Void": (),
}

BillingKey = tuple[str, str]


# -----------------------------
# Money helpers
# -----------------------------


def as_decimal(value: Any, field_name: str = "value") -> Decimal:
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool) or value is None:
        raise ValidationError(f"{field_name} must be a number", field=field_name)
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise ValidationError(f"{field_name} must be a number", field=field_name) from None
    if not result.is_finite():
        raise ValidationError(f"{field_name} must be a finite number", field=field_name)
    return result


def as_cents(value: Any, field_name: str = "amount") -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field_name} must be a whole number of cents", field=field_name)
    if value < 0:
        raise ValidationError(f"{field_name} cannot be negative", field=field_name)
    return value


def to_cents(value: Decimal) -> int:
    """Round a Decimal amount of cents to a whole cent, half away from zero."""
    return int(value.quantize(CENT, rounding=ROUND_HALF_UP))


def percent_of(amount: int, rate: Decimal) -> int:
    return to_cents(Decimal(amount) * rate / HUNDRED)


def line_total(quantity: Decimal, unit_price: int) -> int:
    return to_cents(quantity * Decimal(unit_price))


def require_positive(quantity: Any, field_name: str = "quantity") -> Decimal:
    value = as_decimal(quantity, field_name)
    if value <= ZERO:
        raise ValidationError(f"{field_name} must be greater than 0", field=field_name)
    return value


def total_of(expense: Expense) -> int:
    """Expense amount plus every tax line, each tax rounded on its own."""
    subtotal = expense.amount
    tax_total = 0
    for tax in expense.taxes:
        if tax.rate < ZERO:
            raise ValidationError(f"Tax '{tax.name}' has a negative rate", tax_id=tax.id)
        tax_total += percent_of(subtotal, tax.rate)
    return subtotal + tax_total


# -----------------------------
# Project cost aggregation
# -----------------------------


@dataclass(frozen=True)
class ProjectFinancials:
    total_expenses: int
    total_materials: int
    base_cost: int
    contractor_fee: int
    current_budget: int
    total_cost: int
    budget_utilization: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalExpenses": self.total_expenses,
            "totalMaterials": self.total_materials,
            "baseCost": self.base_cost,
            "contractorFee": self.contractor_fee,
            "currentBudget": self.current_budget,
            "totalCost": self.total_cost,
            "budgetUtilization": str(self.budget_utilization),
        }


def issuance_cost(issue: WorksiteMaterialIssue) -> int:
    return line_total(issue.quantity, issue.unit_cost or 0)


def contractor_fee(project: Project, base_cost: int) -> int:
    if project.fee_value < ZERO:
        raise ValidationError("Contractor fee cannot be negative", project_id=project.id)
    if project.fee_type == "Fixed":
        return to_cents(project.fee_value)
    if project.fee_type == "Percentage":
        return percent_of(base_cost, project.fee_value)
    raise ValidationError(f"Unknown fee type: {project.fee_type}", project_id=project.id)


def current_budget(project: Project, change_orders: Iterable[ChangeOrder]) -> int:
    return project.budget + sum(co.total_amount for co in change_orders if counts_toward_budget(co))


def project_financials(project: Project, change_orders: Iterable[ChangeOrder] = ()) -> ProjectFinancials:
    """Roll every cost source of a project up against its current budget.

    Materials use the outstanding issued quantity, so returned stock stops
    counting as project cost as soon as it is back in the workshop. The
    percentage fee and the utilization are rounded half-up.
    """
    total_expenses = sum(total_of(expense) for expense in project.expenses)
    total_materials = sum(issuance_cost(issue) for issue in project.worksite_materials)
    base_cost = total_expenses + total_materials
    fee = contractor_fee(project, base_cost)
    budget = current_budget(project, change_orders)
    total_cost = base_cost + fee
    if budget > 0:
        utilization = (Decimal(total_cost) * HUNDRED / Decimal(budget)).quantize(
            PERCENT_PLACES, rounding=ROUND_HALF_UP
        )
    else:
        utilization = ZERO.quantize(PERCENT_PLACES)
    return ProjectFinancials(
        total_expenses=total_expenses,
        total_materials=total_materials,
        base_cost=base_cost,
        contractor_fee=fee,
        current_budget=budget,
        total_cost=total_cost,
        budget_utilization=utilization,
    )


@dataclass(frozen=True)
class CostBreakdown:
    by_stage: tuple[tuple[str, int], ...]
    by_area: tuple[tuple[str, int], ...]


def _ranked(totals: dict[str, int]) -> tuple[tuple[str, int], ...]:
    return tuple(sorted(totals.items(), key=lambda item: (-item[1], item[0])))


def cost_breakdown(project: Project) -> CostBreakdown:
    by_stage: dict[str, int] = {}
    by_area: dict[str, int] = {}
    for expense in project.expenses:
        amount = total_of(expense)
        stage = expense.work_stage or "Unassigned"
        area = expense.area or "General Project"
        by_stage[stage] = by_stage.get(stage, 0) + amount
        by_area[area] = by_area.get(area, 0) + amount
    for issue in project.worksite_materials:
        area = issue.area or "General Project"
        by_area[area] = by_area.get(area, 0) + issuance_cost(issue)
    return CostBreakdown(by_stage=_ranked(by_stage), by_area=_ranked(by_area))


# -----------------------------
# Change order approval gate
# -----------------------------


def can_transition(transitions: dict[str, tuple[str, ...]], current: str, new: str) -> bool:
    return new in transitions.get(current, ())


def transition_change_order(change_order: ChangeOrder, new_status: str) -> ChangeOrder:
    if new_status not in CHANGE_ORDER_TRANSITIONS:
        raise ValidationError(f"Unknown change order status: {new_status}", status=new_status)
    if not can_transition(CHANGE_ORDER_TRANSITIONS, change_order.status, new_status):
        raise InvalidTransition(
            f"Change order cannot move from {change_order.status} to {new_status}",
            change_order_id=change_order.id,
            current=change_order.status,
            requested=new_status,
        )
    return replace(change_order, status=new_status)


def counts_toward_budget(change_order: ChangeOrder) -> bool:
    return change_order.status == "Approved"


def ensure_approved(change_order: ChangeOrder) -> None:
    if change_order.status != "Approved":
        raise NotApproved(
            f"Change order '{change_order.title}' is {change_order.status}, not Approved",
            change_order_id=change_order.id,
            status=change_order.status,
        )


def validate_change_order(change_order: ChangeOrder) -> None:
    for item in change_order.items:
        if item.total != line_total(item.quantity, item.unit_price):
            raise ValidationError("Change order item total does not match quantity * unit price", item_id=item.id)
    if change_order.total_amount != sum(item.total for item in change_order.items):
        raise ValidationError("Change order total does not match its items", change_order_id=change_order.id)


# -----------------------------
# Line sources and the double-billing guard
# -----------------------------


def source_reference(source: LineSource) -> Optional[str]:
    if isinstance(source, ExpenseSource):
        return source.expense_id
    if isinstance(source, SupplierMaterialSource):
        return source.material_id
    if isinstance(source, ChangeOrderSource):
        return source.change_order_id
    if isinstance(source, InventoryIssueSource):
        return source.issuance_id
    if isinstance(source, CustomSource):
        return None
    raise TypeError(f"Unknown invoice line source: {source!r}")


def billing_key(source: LineSource) -> Optional[BillingKey]:
    """Key used by the double-billing guard, or None for sources that may repeat."""
    if isinstance(source, (ExpenseSource, ChangeOrderSource, InventoryIssueSource)):
        return source.source_type, source_reference(source)
    if isinstance(source, (SupplierMaterialSource, CustomSource)):
        return None
    raise TypeError(f"Unknown invoice line source: {source!r}")


def make_source(source_type: Optional[str], source_id: Optional[str]) -> LineSource:
    if source_type in (None, "custom"):
        return CustomSource()
    if not source_id:
        raise ValidationError(f"sourceId is required for {source_type} lines", source_type=source_type)
    if source_type == "expense":
        return ExpenseSource(source_id)
    if source_type == "material":
        return SupplierMaterialSource(source_id)
    if source_type == "change_order":
        return ChangeOrderSource(source_id)
    if source_type == "inventory_issue":
        return InventoryIssueSource(source_id)
    raise ValidationError(f"Unknown source type: {source_type}", source_type=source_type)


def billed_sources(invoices: Iterable[Invoice]) -> frozenset[BillingKey]:
    keys: set[BillingKey] = set()
    for invoice in invoices:
        if invoice.status == "Void":
            continue
        for line in invoice.line_items:
            key = billing_key(line.source)
            if key is not None:
                keys.add(key)
    return frozenset(keys)


# -----------------------------
# Unbilled-item selection
# -----------------------------


@dataclass(frozen=True)
class UnbilledSelection:
    expenses: tuple[Expense, ...]
    change_orders: tuple[ChangeOrder, ...]
    inventory_issues: tuple[WorksiteMaterialIssue, ...]
    supplier_materials: tuple[SupplierMaterial, ...] = ()

    def is_empty(self) -> bool:
        return not (self.expenses or self.change_orders or self.inventory_issues)


def select_unbilled(
    project: Project,
    change_orders: Iterable[ChangeOrder],
    invoices: Iterable[Invoice],
    supplier_materials: Iterable[SupplierMaterial] = (),
    work_stage: Optional[str] = None,
    area: Optional[str] = None,
) -> UnbilledSelection:
    billed = billed_sources(invoices)

    expenses = tuple(
        expense
        for expense in project.expenses
        if not expense.invoiced
        and ("expense", expense.id) not in billed
        and (work_stage is None or expense.work_stage == work_stage)
        and (area is None or expense.area == area)
    )
    orders = tuple(
        co
        for co in change_orders
        if co.project_id == project.id and counts_toward_budget(co) and ("change_order", co.id) not in billed
    )
    issues = tuple(
        issue
        for issue in project.worksite_materials
        if issue.is_billable
        and not issue.invoiced
        and issue.quantity > ZERO
        and ("inventory_issue", issue.id) not in billed
    )
    return UnbilledSelection(
        expenses=expenses,
        change_orders=orders,
        inventory_issues=issues,
        supplier_materials=tuple(supplier_materials),
    )


# -----------------------------
# Invoice assembly
# -----------------------------


@dataclass(frozen=True)
class CustomLine:
    description: str
    quantity: Decimal
    unit_price: int


@dataclass(frozen=True)
class SupplierMaterialLine:
    material: SupplierMaterial
    quantity: Decimal = Decimal("1")


BillableItem = Union[Expense, SupplierMaterial, SupplierMaterialLine, ChangeOrder, WorksiteMaterialIssue, CustomLine]


@dataclass(frozen=True)
class InvoiceDraft:
    line_items: tuple[InvoiceLineItem, ...]
    subtotal: int
    tax_rate: Decimal
    tax: int
    total: int


def _line(description: str, quantity: Decimal, unit_price: int, source: LineSource, new_id: Callable[[], str]) -> InvoiceLineItem:
    if quantity <= ZERO:
        raise ValidationError(f"Line '{description}' must have a positive quantity")
    if unit_price < 0:
        raise ValidationError(f"Line '{description}' cannot have a negative unit price")
    return InvoiceLineItem(
        id=new_id(),
        description=description,
        quantity=quantity,
        unit_price=unit_price,
        total=line_total(quantity, unit_price),
        source=source,
    )


def to_line_item(item: BillableItem, new_id: Callable[[], str] = lambda: str(uuid4())) -> InvoiceLineItem:
    if isinstance(item, Expense):
        if item.invoiced:
            raise AlreadyInvoiced(f"Expense '{item.description}' is already invoiced", expense_id=item.id)
        return _line(item.description, Decimal("1"), item.amount, ExpenseSource(item.id), new_id)
    if isinstance(item, ChangeOrder):
        ensure_approved(item)
        return _line(f"Change Order: {item.title}", Decimal("1"), item.total_amount, ChangeOrderSource(item.id), new_id)
    if isinstance(item, WorksiteMaterialIssue):
        if not item.is_billable:
            raise BusinessRuleError(f"Issued material '{item.material_name}' is not billable", issuance_id=item.id)
        if item.invoiced:
            raise AlreadyInvoiced(f"Issued material '{item.material_name}' is already invoiced", issuance_id=item.id)
        return _line(
            f"{item.material_name} ({item.unit})",
            item.quantity,
            item.unit_cost or 0,
            InventoryIssueSource(item.id),
            new_id,
        )
    if isinstance(item, SupplierMaterial):
        item = SupplierMaterialLine(item)
    if isinstance(item, SupplierMaterialLine):
        material = item.material
        return _line(
            f"{material.name} ({material.unit})",
            item.quantity,
            material.price,
            SupplierMaterialSource(material.id),
            new_id,
        )
    if isinstance(item, CustomLine):
        if not item.description.strip():
            raise ValidationError("Custom lines need a description")
        return _line(item.description, item.quantity, item.unit_price, CustomSource(), new_id)
    raise TypeError(f"Unsupported billable item: {item!r}")


def assemble_invoice(
    items: Sequence[BillableItem],
    tax_rate: Decimal = ZERO,
    billed: frozenset[BillingKey] = frozenset(),
    new_id: Callable[[], str] = lambda: str(uuid4()),
) -> InvoiceDraft:
    """Turn selected items and custom lines into invoice lines and totals.

    ``billed`` holds the keys already present on non-void invoices of the
    project; any selected source found there, or repeated within ``items``,
    is rejected instead of being billed twice.
    """
    if not items:
        raise EmptyInvoice()
    if tax_rate < ZERO:
        raise ValidationError("Tax rate cannot be negative", tax_rate=str(tax_rate))

    seen: set[BillingKey] = set()
    lines: list[InvoiceLineItem] = []
    for item in items:
        line = to_line_item(item, new_id)
        key = billing_key(line.source)
        if key is not None:
            if key in billed or key in seen:
                raise AlreadyInvoiced(
                    f"{key[0]} {key[1]} is already on an invoice",
                    source_type=key[0],
                    source_id=key[1],
                )
            seen.add(key)
        lines.append(line)

    subtotal = sum(line.total for line in lines)
    tax = percent_of(subtotal, tax_rate)
    return InvoiceDraft(
        line_items=tuple(lines),
        subtotal=subtotal,
        tax_rate=tax_rate,
        tax=tax,
        total=subtotal + tax,
    )


def transition_invoice(invoice: Invoice, new_status: str) -> Invoice:
    if new_status not in INVOICE_TRANSITIONS:
        raise ValidationError(f"Unknown invoice status: {new_status}", status=new_status)
    if not can_transition(INVOICE_TRANSITIONS, invoice.status, new_status):
        raise InvalidTransition(
            f"Invoice {invoice.invoice_number} cannot move from {invoice.status} to {new_status}",
            invoice_id=invoice.id,
            current=invoice.status,
            requested=new_status,
        )
    return replace(invoice, status=new_status)


def format_invoice_number(prefix: str, existing_count: int) -> str:
    return f"{prefix}-{existing_count + 1:04d}"


# -----------------------------
# Inventory stock checks
# -----------------------------


def issue_from_stock(material: WorkshopMaterial, quantity: Decimal) -> WorkshopMaterial:
    if quantity > material.quantity:
        raise InsufficientStock(
            f"Not enough stock of {material.name}. Available: {material.quantity} {material.unit}",
            material_id=material.id,
            available=str(material.quantity),
            requested=str(quantity),
        )
    return replace(material, quantity=material.quantity - quantity)


def return_to_stock(issue: WorksiteMaterialIssue, quantity: Decimal) -> WorksiteMaterialIssue:
    if quantity > issue.quantity:
        raise ExcessReturn(
            f"Cannot return {quantity} {issue.unit} of {issue.material_name}; only {issue.quantity} outstanding",
            issuance_id=issue.id,
            outstanding=str(issue.quantity),
            requested=str(quantity),
        )
    remaining = issue.quantity - quantity
    if issue.unused_quantity is not None and issue.unused_quantity > remaining:
        raise OutOfRange(
            f"Returning {quantity} would leave {remaining} {issue.unit} outstanding, "
            f"below the {issue.unused_quantity} recorded as unused",
            issuance_id=issue.id,
            unused=str(issue.unused_quantity),
            remaining=str(remaining),
        )
    return replace(issue, quantity=remaining)


def check_unused(total_quantity: Optional[Decimal], unused: Decimal, item_id: str) -> None:
    if total_quantity is None:
        raise ValidationError("Item has no quantity to report unused stock against", item_id=item_id)
    if unused < ZERO or unused > total_quantity:
        raise OutOfRange(
            f"Unused quantity must be between 0 and {total_quantity}",
            item_id=item_id,
            unused=str(unused),
            total=str(total_quantity),
        )


# -----------------------------
# Reports
# -----------------------------


@dataclass(frozen=True)
class UnusedMaterialRow:
    item_id: str
    item_type: str
    name: str
    unit: str
    total_quantity: Decimal
    unused_quantity: Decimal
    unit_cost: int

    @property
    def unused_value(self) -> int:
        return line_total(self.unused_quantity, self.unit_cost)


def unused_materials_report(project: Project) -> tuple[list[UnusedMaterialRow], int]:
    rows: list[UnusedMaterialRow] = []
    for expense in project.expenses:
        if expense.category != "Materials" or not expense.quantity or expense.quantity <= ZERO:
            continue
        rows.append(
            UnusedMaterialRow(
                item_id=expense.id,
                item_type="expense",
                name=expense.description,
                unit=expense.unit or "",
                total_quantity=expense.quantity,
                unused_quantity=expense.unused_quantity or ZERO,
                unit_cost=to_cents(Decimal(expense.amount) / expense.quantity),
            )
        )
    for issue in project.worksite_materials:
        rows.append(
            UnusedMaterialRow(
                item_id=issue.id,
                item_type="inventory_issue",
                name=issue.material_name,
                unit=issue.unit,
                total_quantity=issue.quantity,
                unused_quantity=issue.unused_quantity or ZERO,
                unit_cost=issue.unit_cost or 0,
            )
        )
    return rows, sum(row.unused_value for row in rows)


@dataclass(frozen=True)
class StockAlert:
    material_id: str
    name: str
    quantity: Decimal
    unit: str
    threshold: Decimal

    @property
    def message(self) -> str:
        return f"{self.quantity} {self.unit} remaining (Threshold: {self.threshold})"


def low_stock_alerts(materials: Iterable[WorkshopMaterial], default_threshold: Decimal = Decimal("10")) -> list[StockAlert]:
    alerts: list[StockAlert] = []
    for material in materials:
        threshold = material.low_stock_threshold if material.low_stock_threshold is not None else default_threshold
        if material.quantity < threshold:
            alerts.append(
                StockAlert(
                    material_id=material.id,
                    name=material.name,
                    quantity=material.quantity,
                    unit=material.unit,
                    threshold=threshold,
                )
            )
    return alerts
