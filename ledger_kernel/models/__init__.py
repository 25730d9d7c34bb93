"""ORM models.  Importing this package registers every table on Base.metadata."""

from ledger_kernel.models.account import Account, AccountStatus, AccountType, NormalBalance
from ledger_kernel.models.escrow import (
    EscrowClaim,
    EscrowTracking,
    EscrowType,
    RemittanceStatus,
)
from ledger_kernel.models.journal import JournalEntry, JournalEntryStatus, JournalLine
from ledger_kernel.models.reconciliation import (
    ItemStatus,
    MatchType,
    ReconciliationItem,
    ReconciliationRecord,
    ReconciliationStatus,
)
from ledger_kernel.models.sequence import SequenceCounter
from ledger_kernel.models.settlement import PartnerSettlement, SettlementLineItem

__all__ = [
    "Account",
    "AccountStatus",
    "AccountType",
    "NormalBalance",
    "EscrowClaim",
    "EscrowTracking",
    "EscrowType",
    "RemittanceStatus",
    "JournalEntry",
    "JournalEntryStatus",
    "JournalLine",
    "ItemStatus",
    "MatchType",
    "ReconciliationItem",
    "ReconciliationRecord",
    "ReconciliationStatus",
    "SequenceCounter",
    "PartnerSettlement",
    "SettlementLineItem",
]
