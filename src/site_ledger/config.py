from __future__ import annotations

import os
from dataclasses import dataclass, fields
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml

CONFIG_ENV_VAR = "SITE_LEDGER_CONFIG"
DEFAULT_CONFIG_PATH = Path("backend/config/ledger.yaml")


@dataclass
class LedgerSettings:
    database_path: str = "site_ledger.sqlite3"
    migration_path: str = "migrations/sqlite/001_initial_schema.sql"
    busy_timeout_seconds: float = 5.0
    invoice_number_prefix: str = "INV"
    default_tax_rate: Decimal = Decimal("0")
    default_low_stock_threshold: Decimal = Decimal("10")
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        self.busy_timeout_seconds = float(self.busy_timeout_seconds)
        self.default_tax_rate = Decimal(str(self.default_tax_rate))
        self.default_low_stock_threshold = Decimal(str(self.default_low_stock_threshold))
        self.log_level = str(self.log_level).upper()


def load_settings(path: str | Path | None = None) -> LedgerSettings:
    """Read settings from YAML; unknown keys are rejected, missing ones keep defaults."""
    config_path = Path(path or os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH)
    if not config_path.exists():
        return LedgerSettings()

    with config_path.open("r", encoding="utf-8") as config_file:
        loaded: Any = yaml.safe_load(config_file)

    if loaded is None:
        return LedgerSettings()
    if not isinstance(loaded, dict):
        msg = f"Config file must contain a dictionary at root: {config_path}"
        raise ValueError(msg)

    known = {f.name for f in fields(LedgerSettings)}
    unknown = set(loaded) - known
    if unknown:
        raise ValueError(f"Unknown settings in {config_path}: {sorted(unknown)}")
    return LedgerSettings(**loaded)
