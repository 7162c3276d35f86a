from __future__ import annotations

from pathlib import Path

from backend.services.excel_export import ExcelExportService, build_cost_report_payload, read_cells
from site_ledger.db import apply_sqlite_migration, connect_sqlite
from site_ledger.services import LedgerSession


def build_sample_project(session: LedgerSession) -> str:
    """Seed a small project with expenses and inventory issues across stages and areas."""
    project = session.projects.create_project(
        "Riverside Kitchen Remodel", budget=1_500_000, fee_type="Percentage", fee_value="15", client_name="J. Ortega"
    )
    session.add_expense(
        project.id,
        description="Cabinet hardware",
        amount=42_000,
        category="Materials",
        taxes=[{"name": "Sales tax", "rate": "8.25"}],
        quantity="40",
        unit="pcs",
        work_stage="Finishing",
        area="Kitchen",
    )
    session.add_expense(
        project.id,
        description="Demolition crew",
        amount=180_000,
        category="Labor",
        work_stage="Demolition",
    )

    workshop = session.inventory.create_workshop("Main Yard", "North depot")
    drywall = session.inventory.add_material(workshop.id, "Drywall sheet", "60", "sheet", cost_per_unit=1_450)
    session.issue_material(project.id, drywall.id, "24", is_billable=True, area="Kitchen")
    return project.id


def main() -> int:
    service = ExcelExportService()

    conn = connect_sqlite()
    apply_sqlite_migration(conn, "migrations/sqlite/001_initial_schema.sql")
    session = LedgerSession(conn)
    try:
        project_id = build_sample_project(session)
        view = session.view(project_id)
        payload = build_cost_report_payload(
            view.project, view.financials, session.projects.cost_breakdown(project_id)
        )
    finally:
        session.close()

    output_path = Path("artifacts/sample_cost_report.xlsx")
    service.generate_export(payload, output_path)

    mandatory_cells = service.get_mandatory_cells()
    values = read_cells(output_path, mandatory_cells, service.sheet_name)
    missing = [cell for cell, value in values.items() if value in (None, "")]

    if missing:
        print("Verification failed. Missing mandatory values in:", ", ".join(missing))
        return 1

    print(f"Verification passed. Export generated at {output_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
