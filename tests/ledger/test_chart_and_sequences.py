"""
Chart of accounts and sequence counter tests.
"""

import pytest

from ledger_kernel.exceptions import AccountNotFoundError
from ledger_kernel.services.chart_service import ChartOfAccountsService
from ledger_kernel.services.sequence_service import SequenceService


class TestChartSeeding:
    """Covers: idempotent seeding and status changes."""

    def test_seed_creates_chart(self, session, rate_table):
        created = ChartOfAccountsService(session).seed(rate_table)

        by_code = {a.code: a for a in created}
        assert len(created) == 15
        assert by_code["1001"].normal_balance == "debit"
        assert by_code["2001"].normal_balance == "credit"
        assert all(a.balance == 0 for a in created)

    def test_seed_is_idempotent(self, session, rate_table, chart):
        assert ChartOfAccountsService(session).seed(rate_table) == []

    def test_deactivate_and_activate(self, session, chart):
        service = ChartOfAccountsService(session)

        assert not service.deactivate("5001").is_active
        assert service.activate("5001").is_active

    def test_unknown_account(self, session, chart):
        with pytest.raises(AccountNotFoundError):
            ChartOfAccountsService(session).deactivate("0000")


class TestSequences:
    def test_first_value_is_one(self, session):
        assert SequenceService(session).next_value("test:a") == 1

    def test_values_increase_per_name(self, session):
        sequences = SequenceService(session)
        sequences.next_value("test:a")

        assert sequences.next_value("test:a") == 2
        assert sequences.next_value("test:b") == 1
        assert sequences.current_value("test:a") == 2
        assert sequences.current_value("test:missing") is None
