"""
Statement matcher tests.

Verifies:
- Exact and fuzzy reference matching under amount and date gates
- One transaction per statement line; best score wins, ties by date
- The matcher emits its trace record
"""

from datetime import date

import pytest

from ledger_engines.matching import (
    LedgerTransaction,
    MatchKind,
    MatchTolerance,
    StatementLine,
    StatementMatcher,
)

D = date(2024, 1, 15)


@pytest.fixture
def matcher():
    return StatementMatcher()


@pytest.fixture
def tolerance():
    return MatchTolerance(date_tolerance_days=1, exact_score=100, fuzzy_score=80)


def _txn(ref: str, amount: int = 8700, on: date = D) -> LedgerTransaction:
    return LedgerTransaction(transaction_ref=ref, amount=amount, transaction_date=on)


class TestScore:
    """Covers: single-pair scoring."""

    def test_exact(self, matcher, tolerance):
        assert matcher.score(StatementLine("MP-1", 8700, D), _txn("MP-1"), tolerance) == (
            100,
            MatchKind.EXACT,
        )

    def test_fuzzy_containment_either_way(self, matcher, tolerance):
        assert matcher.score(StatementLine("payment mp-1 ok", 8700, D), _txn("MP-1"), tolerance) == (
            80,
            MatchKind.FUZZY,
        )
        assert matcher.score(StatementLine("MP", 8700, D), _txn("MP-1"), tolerance)[1] == MatchKind.FUZZY

    def test_amount_difference_never_matches(self, matcher, tolerance):
        assert matcher.score(StatementLine("MP-1", 8701, D), _txn("MP-1"), tolerance) is None

    def test_date_outside_tolerance(self, matcher, tolerance):
        assert matcher.score(StatementLine("MP-1", 8700, date(2024, 1, 17)), _txn("MP-1"), tolerance) is None
        assert matcher.score(StatementLine("MP-1", 8700, date(2024, 1, 16)), _txn("MP-1"), tolerance) is not None

    def test_blank_reference(self, matcher, tolerance):
        assert matcher.score(StatementLine("  ", 8700, D), _txn("MP-1"), tolerance) is None


class TestMatch:
    """Covers: greedy one-to-one assignment."""

    def test_each_transaction_used_once(self, matcher, tolerance):
        lines = [StatementLine("MP-1", 8700, D), StatementLine("MP-1", 8700, D)]

        outcome = matcher.match(lines, [_txn("MP-1")], tolerance)

        assert outcome.matched_count == 1
        assert outcome.unmatched_lines == ((1, lines[1]),)
        assert outcome.unmatched_transactions == ()

    def test_exact_beats_fuzzy(self, matcher, tolerance):
        outcome = matcher.match(
            [StatementLine("MP-1", 8700, D)], [_txn("MP-10"), _txn("MP-1")], tolerance
        )

        assert outcome.matches[0].transaction.transaction_ref == "MP-1"
        assert outcome.matches[0].kind == MatchKind.EXACT
        assert [t.transaction_ref for t in outcome.unmatched_transactions] == ["MP-10"]

    def test_fuzzy_line_cannot_take_later_exact_pair(self, matcher, tolerance):
        lines = [StatementLine("PAY", 8700, D), StatementLine("PAY-1", 8700, D)]

        outcome = matcher.match(lines, [_txn("PAY-1"), _txn("PAY-12")], tolerance)

        by_line = {m.line_index: m for m in outcome.matches}
        assert by_line[1].transaction.transaction_ref == "PAY-1"
        assert by_line[1].kind == MatchKind.EXACT
        assert by_line[0].transaction.transaction_ref == "PAY-12"
        assert by_line[0].kind == MatchKind.FUZZY
        assert [m.line_index for m in outcome.matches] == [0, 1]

    def test_tie_goes_to_earliest_transaction(self, matcher, tolerance):
        later = _txn("MP-1-B", on=date(2024, 1, 16))
        earlier = _txn("MP-1-A", on=date(2024, 1, 14))

        outcome = matcher.match([StatementLine("MP-1", 8700, D)], [later, earlier], tolerance)

        assert outcome.matches[0].transaction == earlier

    def test_empty_inputs(self, matcher, tolerance):
        outcome = matcher.match([], [], tolerance)

        assert outcome.matched_count == 0
        assert outcome.unmatched_lines == ()

    def test_trace_emitted(self, matcher, tolerance, captured_logs):
        matcher.match([StatementLine("MP-1", 8700, D)], [_txn("MP-1")], tolerance)

        logs = captured_logs()
        trace = next(r for r in logs if r["message"] == "LEDGER_ENGINE_TRACE")
        assert trace["engine_name"] == "statement_matching"
        assert len(trace["input_fingerprint"]) == 16
        completed = next(r for r in logs if r["message"] == "match_search_completed")
        assert completed["matched_count"] == 1
