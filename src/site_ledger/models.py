from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Literal, Optional, Union

FeeType = Literal["Percentage", "Fixed"]
ChangeOrderStatus = Literal["Draft", "Sent", "Approved", "Rejected"]
InvoiceStatus = Literal["Draft", "Sent", "Paid", "Void"]
SourceType = Literal["expense", "material", "change_order", "custom", "inventory_issue"]


@dataclass(frozen=True)
class Tax:
    id: str
    name: str
    rate: Decimal


@dataclass(frozen=True)
class Expense:
    id: str
    project_id: str
    description: str
    amount: int
    date: str
    category: str
    taxes: tuple[Tax, ...] = ()
    quantity: Optional[Decimal] = None
    unit: Optional[str] = None
    unused_quantity: Optional[Decimal] = None
    invoiced: bool = False
    work_stage: Optional[str] = None
    area: Optional[str] = None
    personnel_id: Optional[str] = None


@dataclass(frozen=True)
class ChangeOrderItem:
    id: str
    description: str
    quantity: Decimal
    unit_price: int
    total: int
    material_id: Optional[str] = None


@dataclass(frozen=True)
class ChangeOrder:
    id: str
    project_id: str
    title: str
    items: tuple[ChangeOrderItem, ...]
    total_amount: int
    status: ChangeOrderStatus
    date: str
    description: str = ""


@dataclass(frozen=True)
class Workshop:
    id: str
    name: str
    location: str


@dataclass(frozen=True)
class WorkshopMaterial:
    id: str
    workshop_id: str
    name: str
    quantity: Decimal
    unit: str
    cost_per_unit: Optional[int] = None
    low_stock_threshold: Optional[Decimal] = None
    status: str = "Available"


@dataclass(frozen=True)
class WorksiteMaterialIssue:
    id: str
    project_id: str
    workshop_material_id: str
    material_name: str
    quantity: Decimal
    issued_quantity: Decimal
    unit: str
    issue_date: str
    unit_cost: Optional[int] = None
    is_billable: bool = False
    invoiced: bool = False
    unused_quantity: Optional[Decimal] = None
    area: Optional[str] = None


@dataclass(frozen=True)
class SupplierMaterial:
    id: str
    supplier_id: str
    name: str
    unit: str
    price: int


@dataclass(frozen=True)
class Deposit:
    id: str
    project_id: str
    amount: int
    date: str
    description: Optional[str] = None


@dataclass(frozen=True)
class Project:
    id: str
    name: str
    client_name: str
    budget: int
    fee_type: FeeType
    fee_value: Decimal
    expenses: tuple[Expense, ...] = ()
    worksite_materials: tuple[WorksiteMaterialIssue, ...] = ()


# Invoice line sources. One variant per source kind, each carrying only the
# reference that kind can have.


@dataclass(frozen=True)
class ExpenseSource:
    expense_id: str
    source_type: Literal["expense"] = field(default="expense", init=False)


@dataclass(frozen=True)
class SupplierMaterialSource:
    material_id: str
    source_type: Literal["material"] = field(default="material", init=False)


@dataclass(frozen=True)
class ChangeOrderSource:
    change_order_id: str
    source_type: Literal["change_order"] = field(default="change_order", init=False)


@dataclass(frozen=True)
class InventoryIssueSource:
    issuance_id: str
    source_type: Literal["inventory_issue"] = field(default="inventory_issue", init=False)


@dataclass(frozen=True)
class CustomSource:
    source_type: Literal["custom"] = field(default="custom", init=False)


LineSource = Union[ExpenseSource, SupplierMaterialSource, ChangeOrderSource, InventoryIssueSource, CustomSource]


@dataclass(frozen=True)
class InvoiceLineItem:
    id: str
    description: str
    quantity: Decimal
    unit_price: int
    total: int
    source: LineSource = field(default_factory=CustomSource)


@dataclass(frozen=True)
class Invoice:
    id: str
    invoice_number: str
    project_id: str
    issue_date: str
    due_date: str
    line_items: tuple[InvoiceLineItem, ...]
    subtotal: int
    tax_rate: Decimal
    tax: int
    total: int
    status: InvoiceStatus
    payment_date: Optional[str] = None
