from __future__ import annotations

from io import BytesIO
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from openpyxl import load_workbook

import backend.app.main as api
from backend.app.main import create_app
from site_ledger.config import LedgerSettings

MIGRATION_PATH = Path(__file__).resolve().parents[1] / "migrations" / "sqlite" / "001_initial_schema.sql"


@pytest.fixture
def client(tmp_path):
    settings = LedgerSettings(database_path=str(tmp_path / "api.sqlite3"), migration_path=str(MIGRATION_PATH))
    with TestClient(create_app(settings)) as test_client:
        yield test_client


@pytest.fixture
def project_id(client):
    response = client.post(
        "/projects", json={"name": "Maple Ave Addition", "clientName": "R. Singh", "budget": 100_000, "feeValue": "15"}
    )
    assert response.status_code == 200
    return response.json()["data"]["id"]


@pytest.fixture
def material_id(client):
    workshop = client.post("/workshops", json={"name": "Main Yard"}).json()["data"]
    response = client.post(
        f"/workshops/{workshop['id']}/materials",
        json={"name": "Rebar", "quantity": "25", "unit": "pcs", "costPerUnit": 800},
    )
    return response.json()["data"]["id"]


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_issue_and_return_material(client, project_id, material_id):
    response = client.post(
        f"/projects/{project_id}/issue-material", json={"workshopMaterialId": material_id, "quantity": "10"}
    )
    body = response.json()
    issue_id = body["data"]["issue"]["id"]

    assert body["success"] is True
    assert body["data"]["issue"]["quantity"] == "10"
    assert body["data"]["project"]["financials"]["totalMaterials"] == 8_000

    response = client.post(
        f"/projects/{project_id}/return-material", json={"worksiteMaterialId": issue_id, "quantity": "4"}
    )
    assert response.json()["data"]["issue"]["quantity"] == "6"

    response = client.post(
        f"/projects/{project_id}/return-material", json={"worksiteMaterialId": issue_id, "quantity": "10"}
    )
    assert response.status_code == 409
    assert response.json()["code"] == "EXCESS_RETURN"

    response = client.post(
        f"/projects/{project_id}/issue-material", json={"workshopMaterialId": material_id, "quantity": "30"}
    )
    assert response.status_code == 409
    assert response.json()["code"] == "INSUFFICIENT_STOCK"


def test_record_unused_on_issuance(client, project_id, material_id):
    issue = client.post(
        f"/projects/{project_id}/issue-material", json={"workshopMaterialId": material_id, "quantity": "5"}
    ).json()["data"]["issue"]

    response = client.put(
        f"/projects/{project_id}/worksite-materials/{issue['id']}/unused", json={"unusedQuantity": "2"}
    )
    assert response.json()["data"]["issue"]["unusedQuantity"] == "2"

    response = client.put(
        f"/projects/{project_id}/worksite-materials/{issue['id']}/unused", json={"unusedQuantity": "9"}
    )
    assert response.status_code == 409
    assert response.json()["code"] == "OUT_OF_RANGE"

    report = client.get(f"/projects/{project_id}/unused-materials").json()["data"]
    assert report["totalUnusedValue"] == 1_600


def test_invoice_lifecycle(client, project_id):
    expense = client.post(
        f"/projects/{project_id}/expenses",
        json={"description": "Foundation pour", "amount": 120_000, "category": "Subcontractor"},
    ).json()["data"]["expense"]

    unbilled = client.get(f"/projects/{project_id}/unbilled").json()["data"]
    assert [item["id"] for item in unbilled["expenses"]] == [expense["id"]]

    request = {"projectId": project_id, "lineItems": [{"sourceType": "expense", "sourceId": expense["id"]}]}
    response = client.post("/invoices", json=request)
    invoice = response.json()["data"]["invoice"]

    assert invoice["invoiceNumber"] == "INV-0001"
    assert invoice["total"] == 120_000

    duplicate = client.post("/invoices", json=request)
    assert duplicate.status_code == 422
    assert duplicate.json()["code"] == "ALREADY_INVOICED"

    client.put(f"/invoices/{invoice['id']}", json={"status": "Sent"})
    paid = client.put(f"/invoices/{invoice['id']}", json={"status": "Paid", "paymentDate": "2026-07-01"})
    assert paid.json()["data"]["invoice"]["paymentDate"] == "2026-07-01"


def test_change_order_approval_extends_budget(client, project_id):
    change_order = client.post(
        "/change-orders",
        json={
            "projectId": project_id,
            "title": "Second-floor deck",
            "items": [{"description": "Decking", "quantity": "10", "unitPrice": 3_000}],
        },
    ).json()["data"]["changeOrder"]

    skipped = client.put(f"/change-orders/{change_order['id']}/status", json={"status": "Approved"})
    assert skipped.status_code == 422
    assert skipped.json()["code"] == "INVALID_TRANSITION"

    client.put(f"/change-orders/{change_order['id']}/status", json={"status": "Sent"})
    client.put(f"/change-orders/{change_order['id']}/status", json={"status": "Approved"})

    financials = client.get(f"/projects/{project_id}/financials").json()["data"]
    assert financials["currentBudget"] == 130_000


def test_error_envelopes(client, project_id):
    empty = client.post("/invoices", json={"projectId": project_id, "lineItems": []})
    assert empty.status_code == 400
    assert empty.json()["code"] == "EMPTY_INVOICE"

    malformed = client.post("/invoices", json={"lineItems": []})
    assert malformed.status_code == 400
    assert malformed.json()["code"] == "VALIDATION_ERROR"

    missing = client.get("/projects/unknown/financials")
    assert missing.status_code == 404
    assert missing.json()["success"] is False


def test_move_material_and_alerts(client, material_id):
    yard = client.post("/workshops", json={"name": "Annex"}).json()["data"]

    moved = client.post(
        "/workshop-materials/move",
        json={"sourceMaterialId": material_id, "targetWorkshopId": yard["id"], "quantity": "20"},
    ).json()["data"]
    assert moved["source"]["quantity"] == "5"
    assert moved["target"]["quantity"] == "20"

    alerts = client.get("/workshop-materials/alerts").json()["data"]
    assert [alert["materialId"] for alert in alerts] == [material_id]


def test_cost_report_download(client, project_id):
    client.post(
        f"/projects/{project_id}/expenses",
        json={"description": "Drywall", "amount": 40_000, "category": "Materials", "workStage": "Interior"},
    )

    response = client.get(f"/projects/{project_id}/cost-report.xlsx")

    assert response.status_code == 200
    sheet = load_workbook(BytesIO(response.content))["Cost Report"]
    assert sheet["B3"].value == "Maple Ave Addition"
    assert sheet["A18"].value == "Interior"


def test_schema_is_migrated_once_at_startup(tmp_path, monkeypatch):
    calls = []
    original = api.apply_sqlite_migration
    monkeypatch.setattr(api, "apply_sqlite_migration", lambda conn, path: calls.append(path) or original(conn, path))
    settings = LedgerSettings(database_path=str(tmp_path / "once.sqlite3"), migration_path=str(MIGRATION_PATH))

    with TestClient(create_app(settings)) as client:
        client.post("/projects", json={"name": "Lakeside Cabin"})
        client.post("/workshops", json={"name": "Barn"})
        response = client.get("/workshop-materials/alerts")

    assert response.status_code == 200
    assert calls == [str(MIGRATION_PATH)]
