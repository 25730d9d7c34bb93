"""
Financial report tests.

Verifies:
- Trial balance debits equal credits
- Balance sheet equation holds with current-period income
- Income statement, partner statement and account activity
"""

from datetime import date

import pytest

from ledger_kernel.domain.dtos import LineSide
from ledger_kernel.domain.settlement import PartnerType
from ledger_kernel.exceptions import AccountNotFoundError, ValidationError
from ledger_kernel.services.posting_engine import PostingEventType

JAN_1 = date(2024, 1, 1)
JAN_10 = date(2024, 1, 10)
JAN_12 = date(2024, 1, 12)
JAN_31 = date(2024, 1, 31)


@pytest.fixture
def activity(posting_engine):
    """Day 1 deposit on Jan 10, then a daily payment on Jan 15."""
    posting_engine.post_event(
        PostingEventType.INITIAL_DEPOSIT, "MPESA-001", 104800, effective_date=JAN_10
    ).unwrap()
    posting_engine.post_event(PostingEventType.DAILY_PAYMENT, "MPESA-002", 8700).unwrap()


class TestTrialBalance:
    def test_balanced(self, reporting_service, activity):
        report = reporting_service.trial_balance()

        rows = {r.account_code: r for r in report.rows}
        assert report.is_balanced
        assert report.total_debits == 113500
        assert rows["1001"].debit_balance == 113500
        assert rows["2001"].credit_balance == 112900
        assert rows["4001"].credit_balance == 200
        assert len(report.rows) == 15

    def test_as_of_cuts_off_later_entries(self, reporting_service, activity):
        report = reporting_service.trial_balance(as_of=JAN_12)

        rows = {r.account_code: r for r in report.rows}
        assert rows["1001"].debit_balance == 104800
        assert report.is_balanced

    def test_empty_ledger(self, reporting_service):
        report = reporting_service.trial_balance()

        assert report.total_debits == 0
        assert report.is_balanced


class TestBalanceSheet:
    def test_equation_holds(self, reporting_service, activity):
        sheet = reporting_service.balance_sheet()

        assert sheet.total_assets == 113500
        assert sheet.total_liabilities == 113300
        assert sheet.net_income == 200
        assert sheet.is_balanced

    def test_equation_holds_after_refund(self, reporting_service, activity, posting_engine):
        posting_engine.post_event(
            PostingEventType.REFUND_INITIATION, "refund-1", 8700, day_count=1
        ).unwrap()

        sheet = reporting_service.balance_sheet()

        assert sheet.is_balanced
        assert sheet.net_income == 100 + 609


class TestIncomeStatement:
    def test_period_income(self, reporting_service, activity):
        statement = reporting_service.income_statement(JAN_12, JAN_31)

        income = {i.account_code: i.amount for i in statement.income}
        assert income["4001"] == 100
        assert statement.total_expenses == 0
        assert statement.net_income == 100

    def test_inverted_period(self, reporting_service):
        with pytest.raises(ValidationError):
            reporting_service.income_statement(JAN_31, JAN_1)


class TestPartnerStatement:
    def test_partner_payables_and_settlements(self, reporting_service, activity, settlement_service):
        settlement_service.create_commission_settlement(
            PartnerType.MOBILIZATION_A, JAN_1, JAN_31, 8900
        ).unwrap()

        statement = reporting_service.partner_statement(PartnerType.MOBILIZATION_A, JAN_1, JAN_31)

        assert statement.payables == {"service_fee": 200, "commission": 8900}
        assert statement.total_payable == 9100
        assert statement.pending_amount == 8900
        assert statement.settled_amount == 0
        assert statement.settlement_count == 1

    def test_underwriter_premium(self, reporting_service, activity):
        statement = reporting_service.partner_statement(PartnerType.UNDERWRITER, JAN_1, JAN_31)

        assert statement.payables == {"premium": 112900}


class TestAccountActivity:
    def test_running_balance(self, reporting_service, activity, posting_engine):
        posting_engine.post_event(PostingEventType.REMITTANCE_BULK, "remit-1", 8400).unwrap()

        report = reporting_service.account_activity("1001", JAN_12, JAN_31)

        assert report.opening_balance == 104800
        assert [(line.side, line.amount) for line in report.lines] == [
            (LineSide.DEBIT, 8700),
            (LineSide.CREDIT, 8400),
        ]
        assert [line.running_balance for line in report.lines] == [113500, 105100]
        assert report.closing_balance == 105100

    def test_unknown_account(self, reporting_service):
        with pytest.raises(AccountNotFoundError):
            reporting_service.account_activity("9999", JAN_1, JAN_31)
