"""
ORM immutability tests.

Verifies:
- Posted journal entries and lines reject updates and deletes
- Referenced accounts keep their type, normal balance and code
- Unreferenced accounts stay editable
"""

from uuid import uuid4

import pytest
from sqlalchemy import select

from ledger_kernel.domain.dtos import LineSpec
from ledger_kernel.exceptions import ImmutabilityViolationError
from ledger_kernel.models.account import Account
from ledger_kernel.models.journal import JournalEntry, JournalLine


@pytest.fixture
def posted_entry(ledger_service, session):
    record = ledger_service.post_lines(
        [LineSpec.debit("1001", 500), LineSpec.credit("2001", 500)],
        entry_type="TEST",
        transaction_ref=f"txn-{uuid4()}",
        actor_id="test-actor",
    ).unwrap()
    return session.get(JournalEntry, record.id)


def _account(session, code):
    return session.execute(select(Account).where(Account.code == code)).scalar_one()


class TestJournalImmutability:
    """Covers: append-only journal."""

    def test_entry_update_blocked(self, session, posted_entry):
        posted_entry.description = "edited"

        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_entry_delete_blocked(self, session, posted_entry):
        session.delete(posted_entry)

        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_line_update_blocked(self, session, posted_entry):
        line = session.execute(
            select(JournalLine).where(JournalLine.journal_entry_id == posted_entry.id)
        ).scalars().first()
        line.amount = 1

        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_violation_logged(self, session, posted_entry, captured_logs):
        posted_entry.transaction_ref = "other"

        with pytest.raises(ImmutabilityViolationError):
            session.flush()

        assert any(r["message"] == "immutability_violation_blocked" for r in captured_logs())


class TestAccountImmutability:
    """Covers: structural fields of referenced accounts."""

    def test_referenced_account_type_change_blocked(self, session, posted_entry):
        account = _account(session, "1001")
        account.account_type = "liability"

        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_referenced_account_rename_allowed(self, session, posted_entry):
        account = _account(session, "1001")
        account.name = "Escrow Cash"
        session.flush()

        assert _account(session, "1001").name == "Escrow Cash"

    def test_unreferenced_account_type_change_allowed(self, session, chart):
        account = _account(session, "5002")
        account.account_type = "asset"
        session.flush()

        assert _account(session, "5002").account_type == "asset"
