"""
ledger_services -- Package init and public API.

Responsibility:
    Stateful orchestration over the kernel and the pure engines: partner
    settlements, the monthly commission run, statement reconciliation and
    financial reports.

Architecture position:
    Services -- outermost layer.

        ledger_services/ -> ledger_engines/  (allowed)
        ledger_services/ -> ledger_kernel/   (allowed)
        ledger_engines/  -> ledger_services/ (FORBIDDEN)
        ledger_kernel/   -> ledger_services/ (FORBIDDEN)
"""

from ledger_kernel.logging_config import get_logger

logger = get_logger("services")

from ledger_services.commission_service import CommissionRun, CommissionService
from ledger_services.reconciliation_service import (
    ReconciliationItemRecord,
    ReconciliationReport,
    ReconciliationService,
)
from ledger_services.reporting_service import ReportingService
from ledger_services.settlement_service import PartnerSettlementSummary, SettlementService

__all__ = [
    "CommissionRun",
    "CommissionService",
    "PartnerSettlementSummary",
    "ReconciliationItemRecord",
    "ReconciliationReport",
    "ReconciliationService",
    "ReportingService",
    "SettlementService",
]
