from __future__ import annotations

import logging
import sqlite3
import tempfile
from contextlib import asynccontextmanager
from decimal import Decimal
from pathlib import Path
from typing import Any, AsyncIterator, Iterator, Literal, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, Field

from backend.services.excel_export import ExcelExportService, build_cost_report_payload
from site_ledger.config import LedgerSettings, load_settings
from site_ledger.core import UnusedMaterialRow, cost_breakdown, source_reference
from site_ledger.db import apply_sqlite_migration, connect_sqlite
from site_ledger.errors import LedgerError, ValidationError
from site_ledger.models import ChangeOrder, Expense, Invoice, WorkshopMaterial, WorksiteMaterialIssue
from site_ledger.services import LedgerSession, LineRequest, ProjectView

logger = logging.getLogger(__name__)

router = APIRouter()


def get_settings(request: Request) -> LedgerSettings:
    return request.app.state.settings


def get_session(config: LedgerSettings = Depends(get_settings)) -> Iterator[LedgerSession]:
    conn = connect_sqlite(config.database_path, timeout=config.busy_timeout_seconds, check_same_thread=False)
    session = LedgerSession(conn, config)
    try:
        yield session
    finally:
        session.close()


def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    return JSONResponse(status_code=exc.http_status, content=exc.to_response())


def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    error = ValidationError("Invalid request body", errors=jsonable_encoder(exc.errors()))
    return JSONResponse(status_code=error.http_status, content=error.to_response())


def storage_error_handler(request: Request, exc: sqlite3.Error) -> JSONResponse:
    logger.error("Storage failure on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={"success": False, "error": "Storage is temporarily unavailable", "code": "STORAGE_UNAVAILABLE"},
    )


def ok(data: Any) -> dict[str, Any]:
    return {"success": True, "data": data}


# -----------------------------
# Serialization
# -----------------------------


def _qty(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def expense_json(expense: Expense) -> dict[str, Any]:
    return {
        "id": expense.id,
        "description": expense.description,
        "amount": expense.amount,
        "date": expense.date,
        "category": expense.category,
        "taxes": [{"id": tax.id, "name": tax.name, "rate": str(tax.rate)} for tax in expense.taxes],
        "quantity": _qty(expense.quantity),
        "unit": expense.unit,
        "unusedQuantity": _qty(expense.unused_quantity),
        "invoiced": expense.invoiced,
        "workStage": expense.work_stage,
        "area": expense.area,
    }


def issue_json(issue: WorksiteMaterialIssue) -> dict[str, Any]:
    return {
        "id": issue.id,
        "workshopMaterialId": issue.workshop_material_id,
        "materialName": issue.material_name,
        "quantity": str(issue.quantity),
        "issuedQuantity": str(issue.issued_quantity),
        "unit": issue.unit,
        "issueDate": issue.issue_date,
        "unitCost": issue.unit_cost,
        "isBillable": issue.is_billable,
        "invoiced": issue.invoiced,
        "unusedQuantity": _qty(issue.unused_quantity),
        "area": issue.area,
    }


def material_json(material: WorkshopMaterial) -> dict[str, Any]:
    return {
        "id": material.id,
        "workshopId": material.workshop_id,
        "name": material.name,
        "quantity": str(material.quantity),
        "unit": material.unit,
        "costPerUnit": material.cost_per_unit,
        "lowStockThreshold": _qty(material.low_stock_threshold),
        "status": material.status,
    }


def change_order_json(change_order: ChangeOrder) -> dict[str, Any]:
    return {
        "id": change_order.id,
        "projectId": change_order.project_id,
        "title": change_order.title,
        "description": change_order.description,
        "items": [
            {
                "id": item.id,
                "description": item.description,
                "quantity": str(item.quantity),
                "unitPrice": item.unit_price,
                "total": item.total,
                "materialId": item.material_id,
            }
            for item in change_order.items
        ],
        "totalAmount": change_order.total_amount,
        "status": change_order.status,
        "date": change_order.date,
    }


def invoice_json(invoice: Invoice) -> dict[str, Any]:
    return {
        "id": invoice.id,
        "invoiceNumber": invoice.invoice_number,
        "projectId": invoice.project_id,
        "issueDate": invoice.issue_date,
        "dueDate": invoice.due_date,
        "lineItems": [
            {
                "id": line.id,
                "description": line.description,
                "quantity": str(line.quantity),
                "unitPrice": line.unit_price,
                "total": line.total,
                "sourceType": line.source.source_type,
                "sourceId": source_reference(line.source),
            }
            for line in invoice.line_items
        ],
        "subtotal": invoice.subtotal,
        "taxRate": str(invoice.tax_rate),
        "tax": invoice.tax,
        "total": invoice.total,
        "status": invoice.status,
        "paymentDate": invoice.payment_date,
    }


def unused_row_json(row: UnusedMaterialRow) -> dict[str, Any]:
    return {
        "id": row.item_id,
        "type": row.item_type,
        "name": row.name,
        "unit": row.unit,
        "totalQuantity": str(row.total_quantity),
        "unusedQuantity": str(row.unused_quantity),
        "unitCost": row.unit_cost,
        "unusedValue": row.unused_value,
    }


def view_json(view: ProjectView) -> dict[str, Any]:
    project = view.project
    return {
        "id": project.id,
        "name": project.name,
        "clientName": project.client_name,
        "budget": project.budget,
        "feeType": project.fee_type,
        "feeValue": str(project.fee_value),
        "expenses": [expense_json(expense) for expense in project.expenses],
        "worksiteMaterials": [issue_json(issue) for issue in project.worksite_materials],
        "financials": view.financials.to_dict(),
    }


# -----------------------------
# Request payloads
# -----------------------------


class ProjectCreate(BaseModel):
    name: str
    clientName: str = ""
    budget: int = 0
    feeType: Literal["Percentage", "Fixed"] = "Percentage"
    feeValue: Decimal = Decimal("0")


class TaxPayload(BaseModel):
    name: str
    rate: Decimal


class ExpenseCreate(BaseModel):
    description: str
    amount: int
    category: str
    date: Optional[str] = None
    taxes: list[TaxPayload] = Field(default_factory=list)
    quantity: Optional[Decimal] = None
    unit: Optional[str] = None
    workStage: Optional[str] = None
    area: Optional[str] = None
    personnelId: Optional[str] = None


class WorkshopCreate(BaseModel):
    name: str
    location: str = ""


class WorkshopMaterialCreate(BaseModel):
    name: str
    quantity: Decimal
    unit: str
    costPerUnit: Optional[int] = None
    lowStockThreshold: Optional[Decimal] = None


class IssueMaterialRequest(BaseModel):
    workshopMaterialId: str
    quantity: Decimal
    isBillable: bool = False
    area: Optional[str] = None


class ReturnMaterialRequest(BaseModel):
    worksiteMaterialId: str
    quantity: Decimal


class UnusedQuantityRequest(BaseModel):
    unusedQuantity: Decimal


class MoveMaterialRequest(BaseModel):
    sourceMaterialId: str
    targetWorkshopId: str
    quantity: Decimal


class InvoiceLinePayload(BaseModel):
    sourceType: Literal["expense", "material", "change_order", "custom", "inventory_issue"] = "custom"
    sourceId: Optional[str] = None
    description: Optional[str] = None
    quantity: Optional[Decimal] = None
    unitPrice: Optional[int] = None


class InvoiceCreate(BaseModel):
    projectId: str
    lineItems: list[InvoiceLinePayload] = Field(default_factory=list)
    tax: Optional[Decimal] = None
    dueDate: Optional[str] = None
    issueDate: Optional[str] = None


class InvoiceStatusUpdate(BaseModel):
    status: Literal["Draft", "Sent", "Paid", "Void"]
    paymentDate: Optional[str] = None


class ChangeOrderItemPayload(BaseModel):
    description: str
    quantity: Decimal
    unitPrice: int
    materialId: Optional[str] = None


class ChangeOrderCreate(BaseModel):
    projectId: str
    title: str
    description: str = ""
    items: list[ChangeOrderItemPayload] = Field(default_factory=list)


class ChangeOrderStatusUpdate(BaseModel):
    status: Literal["Draft", "Sent", "Approved", "Rejected"]


# -----------------------------
# Routes
# -----------------------------


@router.post("/projects")
def create_project(payload: ProjectCreate, session: LedgerSession = Depends(get_session)):
    project = session.projects.create_project(
        payload.name, payload.budget, payload.feeType, payload.feeValue, client_name=payload.clientName
    )
    return ok(view_json(session.view(project.id)))


@router.post("/projects/{project_id}/expenses")
def add_expense(project_id: str, payload: ExpenseCreate, session: LedgerSession = Depends(get_session)):
    expense, view = session.add_expense(
        project_id,
        description=payload.description,
        amount=payload.amount,
        category=payload.category,
        date=payload.date,
        taxes=[{"name": tax.name, "rate": tax.rate} for tax in payload.taxes],
        quantity=payload.quantity,
        unit=payload.unit,
        work_stage=payload.workStage,
        area=payload.area,
        personnel_id=payload.personnelId,
    )
    return ok({"expense": expense_json(expense), "project": view_json(view)})


@router.post("/workshops")
def create_workshop(payload: WorkshopCreate, session: LedgerSession = Depends(get_session)):
    workshop = session.inventory.create_workshop(payload.name, payload.location)
    return ok({"id": workshop.id, "name": workshop.name, "location": workshop.location})


@router.post("/workshops/{workshop_id}/materials")
def add_workshop_material(
    workshop_id: str, payload: WorkshopMaterialCreate, session: LedgerSession = Depends(get_session)
):
    material = session.inventory.add_material(
        workshop_id,
        payload.name,
        payload.quantity,
        payload.unit,
        cost_per_unit=payload.costPerUnit,
        low_stock_threshold=payload.lowStockThreshold,
    )
    return ok(material_json(material))


@router.get("/projects/{project_id}")
def get_project(project_id: str, session: LedgerSession = Depends(get_session)):
    return ok(view_json(session.view(project_id)))


@router.get("/projects/{project_id}/financials")
def get_financials(project_id: str, session: LedgerSession = Depends(get_session)):
    return ok(session.view(project_id).financials.to_dict())


@router.get("/projects/{project_id}/unbilled")
def get_unbilled(
    project_id: str,
    workStage: Optional[str] = None,
    area: Optional[str] = None,
    session: LedgerSession = Depends(get_session),
):
    selection = session.unbilled(project_id, work_stage=workStage, area=area)
    return ok(
        {
            "expenses": [expense_json(expense) for expense in selection.expenses],
            "changeOrders": [change_order_json(co) for co in selection.change_orders],
            "inventoryIssues": [issue_json(issue) for issue in selection.inventory_issues],
            "supplierMaterials": [
                {"id": m.id, "supplierId": m.supplier_id, "name": m.name, "unit": m.unit, "price": m.price}
                for m in selection.supplier_materials
            ],
        }
    )


@router.post("/projects/{project_id}/issue-material")
def issue_material(project_id: str, payload: IssueMaterialRequest, session: LedgerSession = Depends(get_session)):
    issue, view = session.issue_material(
        project_id, payload.workshopMaterialId, payload.quantity, is_billable=payload.isBillable, area=payload.area
    )
    return ok({"issue": issue_json(issue), "project": view_json(view)})


@router.post("/projects/{project_id}/return-material")
def return_material(project_id: str, payload: ReturnMaterialRequest, session: LedgerSession = Depends(get_session)):
    issue, view = session.return_material(project_id, payload.worksiteMaterialId, payload.quantity)
    return ok({"issue": issue_json(issue), "project": view_json(view)})


@router.put("/projects/{project_id}/expenses/{expense_id}/unused")
def record_unused_expense(
    project_id: str, expense_id: str, payload: UnusedQuantityRequest, session: LedgerSession = Depends(get_session)
):
    expense, view = session.record_unused(project_id, "expense", expense_id, payload.unusedQuantity)
    return ok({"expense": expense_json(expense), "project": view_json(view)})


@router.put("/projects/{project_id}/worksite-materials/{issuance_id}/unused")
def record_unused_issuance(
    project_id: str, issuance_id: str, payload: UnusedQuantityRequest, session: LedgerSession = Depends(get_session)
):
    issue, view = session.record_unused(project_id, "inventory_issue", issuance_id, payload.unusedQuantity)
    return ok({"issue": issue_json(issue), "project": view_json(view)})


@router.get("/projects/{project_id}/unused-materials")
def unused_materials(project_id: str, session: LedgerSession = Depends(get_session)):
    rows, total_value = session.projects.unused_materials(project_id)
    return ok({"items": [unused_row_json(row) for row in rows], "totalUnusedValue": total_value})


@router.post("/workshop-materials/move")
def move_material(payload: MoveMaterialRequest, session: LedgerSession = Depends(get_session)):
    target = session.inventory.transfer_material(payload.sourceMaterialId, payload.targetWorkshopId, payload.quantity)
    source = session.inventory.get_material(payload.sourceMaterialId)
    return ok({"source": material_json(source), "target": material_json(target)})


@router.get("/workshop-materials/alerts")
def stock_alerts(workshopId: Optional[str] = None, session: LedgerSession = Depends(get_session)):
    alerts = session.inventory.low_stock_alerts(workshopId)
    return ok(
        [
            {
                "materialId": alert.material_id,
                "name": alert.name,
                "quantity": str(alert.quantity),
                "threshold": str(alert.threshold),
                "message": alert.message,
            }
            for alert in alerts
        ]
    )


@router.post("/invoices")
def create_invoice(payload: InvoiceCreate, session: LedgerSession = Depends(get_session)):
    lines = [
        LineRequest(
            source_type=line.sourceType,
            source_id=line.sourceId,
            description=line.description,
            quantity=line.quantity,
            unit_price=line.unitPrice,
        )
        for line in payload.lineItems
    ]
    invoice, view = session.create_invoice(
        payload.projectId, lines, tax_rate=payload.tax, due_date=payload.dueDate, issue_date=payload.issueDate
    )
    return ok({"invoice": invoice_json(invoice), "project": view_json(view)})


@router.put("/invoices/{invoice_id}")
def update_invoice(invoice_id: str, payload: InvoiceStatusUpdate, session: LedgerSession = Depends(get_session)):
    invoice, view = session.update_invoice_status(invoice_id, payload.status, payload.paymentDate)
    return ok({"invoice": invoice_json(invoice), "project": view_json(view)})


@router.post("/change-orders")
def create_change_order(payload: ChangeOrderCreate, session: LedgerSession = Depends(get_session)):
    items = [
        {
            "description": item.description,
            "quantity": item.quantity,
            "unit_price": item.unitPrice,
            "material_id": item.materialId,
        }
        for item in payload.items
    ]
    change_order, view = session.create_change_order(payload.projectId, payload.title, items, payload.description)
    return ok({"changeOrder": change_order_json(change_order), "project": view_json(view)})


@router.put("/change-orders/{change_order_id}/status")
def update_change_order_status(
    change_order_id: str, payload: ChangeOrderStatusUpdate, session: LedgerSession = Depends(get_session)
):
    change_order, view = session.update_change_order_status(change_order_id, payload.status)
    return ok({"changeOrder": change_order_json(change_order), "project": view_json(view)})


@router.get("/projects/{project_id}/cost-report.xlsx")
def export_cost_report(project_id: str, session: LedgerSession = Depends(get_session)):
    view = session.view(project_id)
    payload = build_cost_report_payload(view.project, view.financials, cost_breakdown(view.project))

    export_dir = Path(tempfile.gettempdir()) / "site-ledger-exports"
    export_path = ExcelExportService().generate_export(payload, export_dir / f"cost-report-{project_id}.xlsx")

    return FileResponse(
        export_path,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        filename=f"cost-report-{project_id}.xlsx",
    )


@router.get("/health")
def health():
    return {"status": "ok"}


def create_app(config: Optional[LedgerSettings] = None) -> FastAPI:
    config = config or load_settings()

    @asynccontextmanager
    async def lifespan(application: FastAPI) -> AsyncIterator[None]:
        conn = connect_sqlite(config.database_path, timeout=config.busy_timeout_seconds)
        try:
            apply_sqlite_migration(conn, config.migration_path)
        finally:
            conn.close()
        logger.info("Schema ready at %s", config.database_path)
        yield

    application = FastAPI(title="Site Ledger API", lifespan=lifespan)
    application.state.settings = config

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_exception_handler(LedgerError, ledger_error_handler)
    application.add_exception_handler(RequestValidationError, request_validation_handler)
    application.add_exception_handler(sqlite3.Error, storage_error_handler)
    application.include_router(router)
    return application


settings = load_settings()
logging.basicConfig(level=settings.log_level)

app = create_app(settings)
