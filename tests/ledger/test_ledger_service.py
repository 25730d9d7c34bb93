"""
Ledger store tests.

Verifies:
- Balanced entries post and move running balances by normal side
- Unbalanced, empty, zero and negative lines are rejected without writes
- Unknown and inactive accounts are rejected
- A repeated transaction_ref returns the original entry
- Reversal restores balances and cannot be chained
- Balance verification against the line history
"""

from datetime import date
from uuid import uuid4

import pytest
from sqlalchemy import select

from ledger_kernel.domain.dtos import LineSide, LineSpec
from ledger_kernel.exceptions import (
    AccountInactiveError,
    AccountNotFoundError,
    EntryNotFoundError,
    EntryNotReversibleError,
    InvalidLineError,
    UnbalancedEntryError,
)
from ledger_kernel.models.account import Account
from ledger_kernel.services.chart_service import ChartOfAccountsService
from ledger_kernel.services.ledger_service import REVERSAL_ENTRY_TYPE, PostStatus


def _receipt_lines(amount: int = 8700) -> list[LineSpec]:
    return [
        LineSpec.debit("1001", amount),
        LineSpec.credit("2001", amount - 300),
        LineSpec.credit("2002", 100),
        LineSpec.credit("2003", 100),
        LineSpec.credit("4001", 100),
    ]


def _post(ledger_service, lines, ref=None, actor="test-actor"):
    return ledger_service.post_lines(
        lines,
        entry_type="TEST",
        transaction_ref=ref or f"txn-{uuid4()}",
        actor_id=actor,
    )


class TestPostLines:
    """Covers: posting, balance updates and entry metadata."""

    def test_balanced_entry_posts(self, ledger_service, balance_of):
        result = _post(ledger_service, _receipt_lines(), ref="txn-1")

        assert result.status == PostStatus.POSTED
        entry = result.unwrap()
        assert entry.is_balanced
        assert entry.total_debits == 8700
        assert entry.transaction_ref == "txn-1"
        assert [line.line_seq for line in entry.lines] == [0, 1, 2, 3, 4]
        assert balance_of("1001") == 8700
        assert balance_of("2001") == 8400
        assert balance_of("4001") == 100

    def test_entry_numbers_increase(self, ledger_service):
        first = _post(ledger_service, _receipt_lines()).unwrap()
        second = _post(ledger_service, _receipt_lines()).unwrap()

        assert first.entry_number.startswith("JE-")
        assert second.entry_number > first.entry_number

    def test_effective_date_defaults_to_clock(self, ledger_service, deterministic_clock):
        entry = _post(ledger_service, _receipt_lines()).unwrap()

        assert entry.effective_date == deterministic_clock.today()

    def test_debit_normal_balance_goes_down_on_credit(self, ledger_service, balance_of):
        _post(ledger_service, _receipt_lines())
        _post(ledger_service, [LineSpec.debit("2001", 500), LineSpec.credit("1001", 500)])

        assert balance_of("1001") == 8200
        assert balance_of("2001") == 7900


class TestPostLinesRejections:
    """Covers: nothing is written when validation fails."""

    def test_unbalanced_rejected(self, ledger_service, balance_of):
        result = _post(ledger_service, [LineSpec.debit("1001", 100), LineSpec.credit("2001", 90)])

        assert result.status == PostStatus.REJECTED
        assert isinstance(result.error, UnbalancedEntryError)
        assert balance_of("1001") == 0

    def test_empty_lines_rejected(self, ledger_service):
        result = _post(ledger_service, [])

        assert isinstance(result.error, InvalidLineError)

    @pytest.mark.parametrize("amount", [0, -100])
    def test_non_positive_amount_rejected(self, ledger_service, amount):
        result = _post(
            ledger_service,
            [LineSpec.debit("1001", amount), LineSpec.credit("2001", amount)],
        )

        assert result.status == PostStatus.REJECTED
        assert isinstance(result.error, InvalidLineError)

    def test_unknown_account_rejected(self, ledger_service, session):
        result = _post(ledger_service, [LineSpec.debit("9999", 100), LineSpec.credit("2001", 100)], ref="txn-x")

        assert isinstance(result.error, AccountNotFoundError)
        assert ledger_service.get_entry_by_transaction_ref("txn-x") is None

    def test_inactive_account_rejected(self, ledger_service, session):
        ChartOfAccountsService(session).deactivate("4001")

        result = _post(ledger_service, _receipt_lines())

        assert isinstance(result.error, AccountInactiveError)
        with pytest.raises(AccountInactiveError):
            result.unwrap()


class TestIdempotency:
    """Covers: at-most-once posting per transaction_ref."""

    def test_second_post_returns_existing(self, ledger_service, balance_of):
        first = _post(ledger_service, _receipt_lines(), ref="txn-dup")
        second = _post(ledger_service, _receipt_lines(), ref="txn-dup")

        assert second.status == PostStatus.ALREADY_POSTED
        assert second.is_success
        assert second.entry_id == first.entry_id
        assert balance_of("1001") == 8700

    def test_duplicate_logged(self, ledger_service, captured_logs):
        _post(ledger_service, _receipt_lines(), ref="txn-dup")
        _post(ledger_service, _receipt_lines(), ref="txn-dup")

        messages = [r["message"] for r in captured_logs()]
        assert messages.count("journal_entry_posted") == 1
        assert "posting_already_exists" in messages


class TestReversal:
    """Covers: mirror entries, reversal idempotency and guards."""

    def test_reversal_restores_balances(self, ledger_service, balance_of):
        original = _post(ledger_service, _receipt_lines()).unwrap()

        reversal = ledger_service.reverse(original.id, actor_id="auditor", reason="duplicate receipt")

        entry = reversal.unwrap()
        assert entry.entry_type == REVERSAL_ENTRY_TYPE
        assert entry.reverses_entry_id == original.id
        assert entry.transaction_ref == f"reversal:{original.id}"
        assert entry.amount_for("1001", LineSide.CREDIT) == 8700
        for code in ("1001", "2001", "2002", "2003", "4001"):
            assert balance_of(code) == 0

    def test_second_reversal_returns_first(self, ledger_service):
        original = _post(ledger_service, _receipt_lines()).unwrap()

        first = ledger_service.reverse(original.id, actor_id="a", reason="r")
        second = ledger_service.reverse(original.id, actor_id="a", reason="r")

        assert second.status == PostStatus.ALREADY_POSTED
        assert second.entry_id == first.entry_id

    def test_reversal_of_reversal_rejected(self, ledger_service):
        original = _post(ledger_service, _receipt_lines()).unwrap()
        reversal = ledger_service.reverse(original.id, actor_id="a", reason="r").unwrap()

        result = ledger_service.reverse(reversal.id, actor_id="a", reason="again")

        assert isinstance(result.error, EntryNotReversibleError)

    def test_unknown_entry(self, ledger_service):
        result = ledger_service.reverse(uuid4(), actor_id="a", reason="r")

        assert isinstance(result.error, EntryNotFoundError)

    def test_reversal_allowed_on_inactive_account(self, ledger_service, session, balance_of):
        original = _post(ledger_service, _receipt_lines()).unwrap()
        ChartOfAccountsService(session).deactivate("4001")

        result = ledger_service.reverse(original.id, actor_id="a", reason="r")

        assert result.is_success
        assert balance_of("4001") == 0


class TestBalanceVerification:
    """Covers: stored balances agree with the line history."""

    def test_consistent_ledger_has_no_drift(self, ledger_service):
        _post(ledger_service, _receipt_lines())
        _post(ledger_service, _receipt_lines(104800))

        assert ledger_service.verify_balances() == {}
        assert ledger_service.recompute_balance("1001") == 113500

    def test_drift_detected(self, ledger_service, session):
        _post(ledger_service, _receipt_lines())

        account = session.execute(select(Account).where(Account.code == "1001")).scalar_one()
        account.balance = 1
        session.flush()

        assert ledger_service.verify_balances() == {"1001": (1, 8700)}

    def test_get_account_unknown(self, ledger_service):
        with pytest.raises(AccountNotFoundError):
            ledger_service.get_account("0000")

    def test_list_accounts_ordered(self, ledger_service):
        codes = [a.code for a in ledger_service.list_accounts()]

        assert codes == sorted(codes)
        assert len(codes) == 15
