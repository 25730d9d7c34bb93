"""
Transaction scope tests.

These use session_scope() against the suite's engine directly, so they do
not take the rolled-back ``session`` fixture and clean up after themselves.
"""

from uuid import uuid4

import pytest
from sqlalchemy import delete

from ledger_kernel.db.engine import get_session, is_postgres, session_scope
from ledger_kernel.models.sequence import SequenceCounter
from ledger_kernel.services.sequence_service import SequenceService


@pytest.fixture
def counter_name(db_tables):
    name = f"scope-test-{uuid4()}"
    yield name
    with session_scope() as session:
        session.execute(delete(SequenceCounter).where(SequenceCounter.name == name))


class TestSessionScope:
    """Covers: commit on success, rollback on error."""

    def test_commits_on_success(self, counter_name):
        with session_scope() as session:
            assert SequenceService(session).next_value(counter_name) == 1

        with session_scope() as session:
            assert SequenceService(session).current_value(counter_name) == 1

    def test_rolls_back_on_error(self, counter_name, captured_logs):
        with pytest.raises(RuntimeError):
            with session_scope() as session:
                SequenceService(session).next_value(counter_name)
                session.flush()
                raise RuntimeError("boom")

        with session_scope() as session:
            assert SequenceService(session).current_value(counter_name) is None
        assert any(r["message"] == "transaction_rolled_back" for r in captured_logs())

    def test_sessions_are_independent(self, db_tables):
        first = get_session()
        second = get_session()
        try:
            assert first is not second
        finally:
            first.close()
            second.close()

    def test_dialect_flag_matches_url(self, db_engine):
        assert is_postgres() == (db_engine.dialect.name == "postgresql")
