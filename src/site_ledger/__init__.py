from .core import (
    InvoiceDraft,
    ProjectFinancials,
    UnbilledSelection,
    assemble_invoice,
    project_financials,
    select_unbilled,
    total_of,
)
from .errors import (
    AlreadyInvoiced,
    EmptyInvoice,
    ExcessReturn,
    InsufficientStock,
    LedgerError,
    NotApproved,
    OutOfRange,
)
from .services import LedgerSession, LineRequest

__all__ = [
    "AlreadyInvoiced",
    "EmptyInvoice",
    "ExcessReturn",
    "InsufficientStock",
    "InvoiceDraft",
    "LedgerError",
    "LedgerSession",
    "LineRequest",
    "NotApproved",
    "OutOfRange",
    "ProjectFinancials",
    "UnbilledSelection",
    "assemble_invoice",
    "project_financials",
    "select_unbilled",
    "total_of",
]
