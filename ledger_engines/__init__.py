"""
Module: ledger_engines
Responsibility:
    Pure calculation engines: commission distribution and statement
    matching.  Zero I/O; every public engine call is traced with
    ``@traced_engine``.

Architecture position:
    Engines -- may import ledger_config schemas and the kernel's logging
    and exceptions.  MUST NOT import ledger_services or touch the database.
"""

from ledger_engines.commission import (
    CommissionCalculator,
    CommissionResult,
    CommissionValidation,
    PartnerCommissionSummary,
    RiderPremium,
)
from ledger_engines.matching import (
    LedgerTransaction,
    MatchKind,
    MatchOutcome,
    MatchTolerance,
    StatementLine,
    StatementMatch,
    StatementMatcher,
)
from ledger_engines.tracer import compute_input_fingerprint, traced_engine

__all__ = [
    "CommissionCalculator",
    "CommissionResult",
    "CommissionValidation",
    "PartnerCommissionSummary",
    "RiderPremium",
    "LedgerTransaction",
    "MatchKind",
    "MatchOutcome",
    "MatchTolerance",
    "StatementLine",
    "StatementMatch",
    "StatementMatcher",
    "compute_input_fingerprint",
    "traced_engine",
]
