from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

import yaml
from openpyxl import Workbook, load_workbook
from openpyxl.styles import Font
from openpyxl.utils.cell import column_index_from_string, coordinate_from_string, get_column_letter
from openpyxl.worksheet.worksheet import Worksheet

from site_ledger.core import CostBreakdown, ProjectFinancials
from site_ledger.models import Project

DEFAULT_MAPPING_PATH = Path(__file__).resolve().parents[1] / "config" / "excel_mapping.yaml"
MONEY_FORMAT = "#,##0.00"

LABELS = {
    "project_name": "Project",
    "client_name": "Client",
    "generated_at": "Generated",
    "total_expenses": "Expenses (incl. tax)",
    "total_materials": "Inventory materials",
    "base_cost": "Base cost",
    "contractor_fee": "Contractor fee",
    "total_cost": "Total cost",
    "current_budget": "Current budget",
    "budget_utilization": "Budget utilization (%)",
}


def cents_to_units(amount: int) -> Decimal:
    return Decimal(amount) / Decimal(100)


def build_cost_report_payload(
    project: Project, financials: ProjectFinancials, breakdown: CostBreakdown, generated_at: Optional[str] = None
) -> dict[str, Any]:
    return {
        "meta": {
            "project_name": project.name,
            "client_name": project.client_name,
            "generated_at": generated_at or datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
        },
        "summary": {
            "total_expenses": financials.total_expenses,
            "total_materials": financials.total_materials,
            "base_cost": financials.base_cost,
            "contractor_fee": financials.contractor_fee,
            "total_cost": financials.total_cost,
            "current_budget": financials.current_budget,
            "budget_utilization": financials.budget_utilization,
        },
        "by_stage": [{"name": name, "amount": amount} for name, amount in breakdown.by_stage],
        "by_area": [{"name": name, "amount": amount} for name, amount in breakdown.by_area],
    }


@dataclass
class ExcelExportService:
    """Write a project cost report into a workbook laid out by a YAML cell mapping."""

    mapping_path: Path = DEFAULT_MAPPING_PATH
    template_path: Optional[Path] = None

    def __post_init__(self) -> None:
        self.mapping = self._load_mapping(self.mapping_path)

    @staticmethod
    def _load_mapping(mapping_path: Path) -> dict[str, Any]:
        with mapping_path.open("r", encoding="utf-8") as mapping_file:
            loaded = yaml.safe_load(mapping_file)

        if not isinstance(loaded, dict):
            msg = f"Mapping file must contain a dictionary at root: {mapping_path}"
            raise ValueError(msg)

        return loaded

    @property
    def sheet_name(self) -> str:
        return self.mapping["workbook"]["sheet_name"]

    def generate_export(self, payload: dict[str, Any], output_path: Path | str) -> Path:
        """Fill mapped cells from the payload and save the workbook to output_path."""
        if self.template_path is not None and Path(self.template_path).exists():
            workbook = load_workbook(self.template_path)
            worksheet = workbook[self.sheet_name]
        else:
            workbook, worksheet = self._blank_workbook()

        self._map_cells(worksheet, self.mapping["meta"], payload.get("meta", {}))
        self._map_cells(worksheet, self.mapping["summary"], payload.get("summary", {}), money=True)
        self._map_rows(worksheet, self.mapping["by_stage"], payload.get("by_stage", []))
        self._map_rows(worksheet, self.mapping["by_area"], payload.get("by_area", []))

        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        workbook.save(output_path)

        return output_path

    def _blank_workbook(self) -> tuple[Workbook, Worksheet]:
        workbook = Workbook()
        sheet = workbook.active
        sheet.title = self.sheet_name
        sheet["A1"] = "Project Cost Report"
        sheet["A1"].font = Font(bold=True, size=14)

        for section in ("meta", "summary"):
            for field, cell in self.mapping[section].items():
                column, row = coordinate_from_string(cell)
                label_column = get_column_letter(max(column_index_from_string(column) - 1, 1))
                sheet[f"{label_column}{row}"] = LABELS.get(field, field)

        for section, title in (("by_stage", "Cost by work stage"), ("by_area", "Cost by area")):
            columns = self.mapping[section]["columns"]
            header_row = int(self.mapping[section]["start_row"]) - 1
            sheet[f"{columns['name']}{header_row}"] = title
            sheet[f"{columns['name']}{header_row}"].font = Font(bold=True)
        return workbook, sheet

    @staticmethod
    def _map_cells(sheet: Worksheet, cells: dict[str, str], values: dict[str, Any], money: bool = False) -> None:
        for field, cell in cells.items():
            value = values.get(field)
            if money and isinstance(value, int) and not isinstance(value, bool):
                sheet[cell] = cents_to_units(value)
                sheet[cell].number_format = MONEY_FORMAT
            else:
                sheet[cell] = value

    @staticmethod
    def _map_rows(sheet: Worksheet, section: dict[str, Any], rows: list[dict[str, Any]]) -> None:
        start_row = int(section["start_row"])
        columns = section["columns"]

        for offset, entry in enumerate(rows):
            row = start_row + offset
            sheet[f"{columns['name']}{row}"] = entry.get("name")
            amount_cell = f"{columns['amount']}{row}"
            sheet[amount_cell] = cents_to_units(entry.get("amount", 0))
            sheet[amount_cell].number_format = MONEY_FORMAT

    def get_mandatory_cells(self) -> list[str]:
        verification = self.mapping.get("verification", {})
        mandatory_cells = verification.get("mandatory_cells", [])
        if not isinstance(mandatory_cells, list):
            msg = "verification.mandatory_cells must be a list of cell references"
            raise ValueError(msg)
        return mandatory_cells


def read_cells(path: Path | str, cells: list[str], sheet_name: str) -> dict[str, Any]:
    """Utility for validation/testing: read exact cell values from an exported workbook."""
    workbook: Workbook = load_workbook(path, data_only=False)
    sheet = workbook[sheet_name]
    return {cell: sheet[cell].value for cell in cells}
