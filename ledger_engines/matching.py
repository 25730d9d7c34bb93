"""
ledger_engines.matching -- statement-to-ledger matching for reconciliation.

Responsibility:
    Pair each external statement line with at most one internal ledger
    transaction, scoring each candidate pair.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Persistence of the
    outcome is ReconciliationService's job.

Invariants enforced:
    - Amounts must be equal; a pair with any amount difference scores 0.
    - Value dates must be within ``date_tolerance_days``.
    - Identical references score ``exact_score`` (EXACT); case-insensitive
      containment either way scores ``fuzzy_score`` (FUZZY).
    - Each transaction is consumed by at most one statement line.  Exact
      references are paired before any fuzzy match can take their
      transaction; ties go to the earliest transaction date, then the
      reference.

Usage:
    matcher = StatementMatcher()
    outcome = matcher.match(lines, transactions, MatchTolerance(date_tolerance_days=1))
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date
from enum import Enum
from uuid import UUID

from ledger_engines.tracer import traced_engine
from ledger_kernel.logging_config import get_logger

logger = get_logger("engines.matching")


class MatchKind(str, Enum):
    EXACT = "exact"
    FUZZY = "fuzzy"


@dataclass(frozen=True)
class MatchTolerance:
    date_tolerance_days: int = 1
    exact_score: int = 100
    fuzzy_score: int = 80


@dataclass(frozen=True)
class StatementLine:
    """One line of an external (bank or gateway) statement."""

    reference: str
    amount: int
    value_date: date
    description: str | None = None


@dataclass(frozen=True)
class LedgerTransaction:
    """An internal receipt as recorded by the ledger."""

    transaction_ref: str
    amount: int
    transaction_date: date
    entry_id: UUID | None = None


@dataclass(frozen=True)
class StatementMatch:
    line_index: int
    line: StatementLine
    transaction: LedgerTransaction
    kind: MatchKind
    score: int


@dataclass(frozen=True)
class MatchOutcome:
    matches: tuple[StatementMatch, ...]
    unmatched_lines: tuple[tuple[int, StatementLine], ...]
    unmatched_transactions: tuple[LedgerTransaction, ...]

    @property
    def matched_count(self) -> int:
        return len(self.matches)


class StatementMatcher:
    """
    Greedy one-to-one matcher.

    Contract:
        Pure -- no I/O, no clock.  EXACT pairs are assigned first, then
        FUZZY ones; within each pass statement lines go in input order.
    """

    @traced_engine(
        "statement_matching", "1.0", fingerprint_fields=("lines", "transactions", "tolerance")
    )
    def match(
        self,
        lines: Sequence[StatementLine],
        transactions: Sequence[LedgerTransaction],
        tolerance: MatchTolerance,
    ) -> MatchOutcome:
        t0 = time.monotonic()
        logger.info("match_search_started", extra={
            "statement_line_count": len(lines),
            "transaction_count": len(transactions),
        })

        available = list(transactions)
        found: dict[int, StatementMatch] = {}

        # Exact references claim their transactions before any fuzzy pairing.
        for kind in (MatchKind.EXACT, MatchKind.FUZZY):
            for index, line in enumerate(lines):
                if index in found:
                    continue
                best = self._best_candidate(line, available, tolerance, kind)
                if best is None:
                    continue
                score, txn = best
                available.remove(txn)
                found[index] = StatementMatch(
                    line_index=index, line=line, transaction=txn, kind=kind, score=score
                )

        matches = [found[index] for index in sorted(found)]
        unmatched = [(index, line) for index, line in enumerate(lines) if index not in found]

        duration_ms = round((time.monotonic() - t0) * 1000, 2)
        logger.info("match_search_completed", extra={
            "matched_count": len(matches),
            "unmatched_line_count": len(unmatched),
            "unmatched_transaction_count": len(available),
            "duration_ms": duration_ms,
        })

        return MatchOutcome(
            matches=tuple(matches),
            unmatched_lines=tuple(unmatched),
            unmatched_transactions=tuple(available),
        )

    def _best_candidate(
        self,
        line: StatementLine,
        available: Sequence[LedgerTransaction],
        tolerance: MatchTolerance,
        kind: MatchKind,
    ) -> tuple[int, LedgerTransaction] | None:
        best: tuple[int, LedgerTransaction] | None = None
        for txn in available:
            scored = self.score(line, txn, tolerance)
            if scored is None or scored[1] != kind:
                continue
            if best is None or _better(scored[0], txn, best[0], best[1]):
                best = (scored[0], txn)
        return best

    def score(
        self,
        line: StatementLine,
        transaction: LedgerTransaction,
        tolerance: MatchTolerance,
    ) -> tuple[int, MatchKind] | None:
        """Score one pair, or None when they cannot match."""
        if line.amount != transaction.amount:
            return None
        if abs((line.value_date - transaction.transaction_date).days) > tolerance.date_tolerance_days:
            return None

        statement_ref = line.reference.strip()
        ledger_ref = transaction.transaction_ref.strip()
        if not statement_ref or not ledger_ref:
            return None
        if statement_ref == ledger_ref:
            return tolerance.exact_score, MatchKind.EXACT
        a, b = statement_ref.lower(), ledger_ref.lower()
        if a in b or b in a:
            return tolerance.fuzzy_score, MatchKind.FUZZY
        return None


def _better(
    score: int, txn: LedgerTransaction, best_score: int, best_txn: LedgerTransaction
) -> bool:
    if score != best_score:
        return score > best_score
    return (txn.transaction_date, txn.transaction_ref) < (
        best_txn.transaction_date,
        best_txn.transaction_ref,
    )
