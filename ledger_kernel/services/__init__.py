"""Services for the ledger kernel (write side)."""

from ledger_kernel.services.chart_service import ChartOfAccountsService
from ledger_kernel.services.escrow_service import (
    EscrowQuery,
    EscrowService,
    PendingTotals,
    RiderEscrowSummary,
)
from ledger_kernel.services.ledger_service import LedgerResult, LedgerService, PostStatus
from ledger_kernel.services.posting_engine import (
    PostingEngine,
    PostingEventType,
    PostingResult,
    PostingStatus,
    SettlementEntryType,
)
from ledger_kernel.services.sequence_service import SequenceService

__all__ = [
    "ChartOfAccountsService",
    "EscrowQuery",
    "EscrowService",
    "LedgerResult",
    "LedgerService",
    "PendingTotals",
    "PostStatus",
    "PostingEngine",
    "PostingEventType",
    "PostingResult",
    "PostingStatus",
    "RiderEscrowSummary",
    "SequenceService",
    "SettlementEntryType",
]
