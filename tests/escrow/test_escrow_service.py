"""
Escrow tracking tests.

Verifies:
- Input validation and escrow type by payment day
- Idempotent recording by transaction_ref
- Query filters, including "not yet claimed for"
- Exclusive claims for settlements and remittances, and their release
- Refund marking and per-rider summaries
"""

from datetime import date, datetime, timezone

import pytest

from ledger_kernel.domain.settlement import PartnerType, SettlementType
from ledger_kernel.exceptions import EscrowAlreadyClaimedError, InvalidEscrowError
from ledger_kernel.models.escrow import EscrowType, RemittanceStatus
from ledger_kernel.services.escrow_service import EscrowQuery


class TestRecordEscrow:
    """Covers: validation and escrow type."""

    def test_day_one_is_immediate(self, escrow_service):
        record = escrow_service.record_escrow("rider-1", 104500, 1)

        assert record.escrow_type == EscrowType.DAY_1_IMMEDIATE.value
        assert record.remittance_status == RemittanceStatus.PENDING.value

    def test_later_days_accumulate(self, escrow_service):
        record = escrow_service.record_escrow("rider-1", 8400, 2)

        assert record.escrow_type == EscrowType.DAYS_2_31_ACCUMULATED.value

    @pytest.mark.parametrize("amount", [0, -1])
    def test_non_positive_premium_rejected(self, escrow_service, amount):
        with pytest.raises(InvalidEscrowError):
            escrow_service.record_escrow("rider-1", amount, 2)

    @pytest.mark.parametrize("day", [0, 32])
    def test_payment_day_out_of_range(self, escrow_service, day):
        with pytest.raises(InvalidEscrowError):
            escrow_service.record_escrow("rider-1", 8400, day)

    def test_repeated_transaction_ref_returns_existing(self, escrow_service):
        first = escrow_service.record_escrow("rider-1", 8400, 2, transaction_ref="mpesa-1")
        second = escrow_service.record_escrow("rider-1", 8400, 2, transaction_ref="mpesa-1")

        assert second.id == first.id
        assert len(escrow_service.find(EscrowQuery(rider_id="rider-1"))) == 1


class TestFind:
    """Covers: filters combine with AND; unset filters do not apply."""

    def test_period_filter(self, escrow_service, deterministic_clock):
        deterministic_clock.set_time(datetime(2024, 1, 10, 8, 0, tzinfo=timezone.utc))
        escrow_service.record_escrow("rider-1", 8400, 2)
        deterministic_clock.set_time(datetime(2024, 1, 20, 8, 0, tzinfo=timezone.utc))
        escrow_service.record_escrow("rider-1", 8400, 3)

        rows = escrow_service.find(EscrowQuery(period_start=date(2024, 1, 1), period_end=date(2024, 1, 15)))

        assert [r.payment_day for r in rows] == [2]

    def test_status_and_type_filters(self, escrow_service):
        escrow_service.record_escrow("rider-1", 104500, 1)
        escrow_service.record_escrow("rider-2", 8400, 2)

        rows = escrow_service.find(
            EscrowQuery(
                remittance_status=RemittanceStatus.PENDING,
                escrow_type=EscrowType.DAYS_2_31_ACCUMULATED,
            )
        )

        assert [r.rider_id for r in rows] == ["rider-2"]

    def test_unclaimed_for_excludes_claimed_rows(self, escrow_service, settlement_row):
        first = escrow_service.record_escrow("rider-1", 8400, 2)
        second = escrow_service.record_escrow("rider-1", 8400, 3)
        escrow_service.claim_for_settlement(
            [first.id], PartnerType.MOBILIZATION_A, SettlementType.SERVICE_FEE, settlement_row()
        )

        for_a = escrow_service.find(
            EscrowQuery(unclaimed_for=(PartnerType.MOBILIZATION_A, SettlementType.SERVICE_FEE))
        )
        for_b = escrow_service.find(
            EscrowQuery(unclaimed_for=(PartnerType.MOBILIZATION_B, SettlementType.SERVICE_FEE))
        )

        assert [r.id for r in for_a] == [second.id]
        assert len(for_b) == 2


class TestClaims:
    """Covers: at-most-once use of an escrow row per partner and type."""

    def test_second_claim_conflicts(self, escrow_service, settlement_row, session):
        row = escrow_service.record_escrow("rider-1", 8400, 2)
        escrow_service.claim_for_settlement(
            [row.id], PartnerType.MOBILIZATION_A, SettlementType.SERVICE_FEE, settlement_row()
        )

        with pytest.raises(EscrowAlreadyClaimedError):
            escrow_service.claim_for_settlement(
                [row.id], PartnerType.MOBILIZATION_A, SettlementType.SERVICE_FEE, settlement_row()
            )

    def test_claim_is_all_or_nothing(self, escrow_service, settlement_row):
        claimed = escrow_service.record_escrow("rider-1", 8400, 2)
        free = escrow_service.record_escrow("rider-1", 8400, 3)
        escrow_service.claim_for_settlement(
            [claimed.id], PartnerType.MOBILIZATION_A, SettlementType.SERVICE_FEE, settlement_row()
        )

        with pytest.raises(EscrowAlreadyClaimedError):
            escrow_service.claim_for_settlement(
                [free.id, claimed.id], PartnerType.MOBILIZATION_A, SettlementType.SERVICE_FEE, settlement_row()
            )

        unclaimed = escrow_service.find(
            EscrowQuery(unclaimed_for=(PartnerType.MOBILIZATION_A, SettlementType.SERVICE_FEE))
        )
        assert [r.id for r in unclaimed] == [free.id]

    def test_other_partner_can_claim_same_row(self, escrow_service, settlement_row):
        row = escrow_service.record_escrow("rider-1", 8400, 2)
        escrow_service.claim_for_settlement(
            [row.id], PartnerType.MOBILIZATION_A, SettlementType.SERVICE_FEE, settlement_row()
        )

        assert escrow_service.claim_for_settlement(
            [row.id], PartnerType.MOBILIZATION_B, SettlementType.SERVICE_FEE, settlement_row()
        ) == 1

    def test_empty_claim_is_noop(self, escrow_service, settlement_row):
        assert escrow_service.claim_for_settlement(
            [], PartnerType.MOBILIZATION_A, SettlementType.SERVICE_FEE, settlement_row()
        ) == 0

    def test_remittance_claim_flips_status(self, escrow_service, settlement_row, deterministic_clock):
        row = escrow_service.record_escrow("rider-1", 104500, 1)
        settlement_id = settlement_row()

        assert escrow_service.claim_for_remittance([row.id], settlement_id) == 1

        stored = escrow_service.get(row.id)
        assert stored.remittance_status == RemittanceStatus.REMITTED.value
        assert stored.remittance_settlement_id == settlement_id
        assert stored.remitted_at is None

    def test_remittance_claim_race_rolls_back(self, escrow_service, settlement_row, session):
        taken = escrow_service.record_escrow("rider-1", 104500, 1)
        free = escrow_service.record_escrow("rider-2", 104500, 1)
        escrow_service.claim_for_remittance([taken.id], settlement_row())

        with pytest.raises(EscrowAlreadyClaimedError):
            escrow_service.claim_for_remittance([free.id, taken.id], settlement_row())

        session.expire_all()
        assert escrow_service.get(free.id).remittance_status == RemittanceStatus.PENDING.value

    def test_release_returns_rows_to_pending(self, escrow_service, settlement_row):
        row = escrow_service.record_escrow("rider-1", 104500, 1)
        settlement_id = settlement_row()
        escrow_service.claim_for_remittance([row.id], settlement_id)

        assert escrow_service.release_claims(settlement_id) == 1

        stored = escrow_service.get(row.id)
        assert stored.remittance_status == RemittanceStatus.PENDING.value
        assert stored.remittance_settlement_id is None

    def test_remittance_paid_stamps_only_its_rows(self, escrow_service, settlement_row, deterministic_clock):
        paid = escrow_service.record_escrow("rider-1", 104500, 1)
        other = escrow_service.record_escrow("rider-2", 104500, 1)
        settlement_id = settlement_row()
        escrow_service.claim_for_remittance([paid.id], settlement_id)
        escrow_service.claim_for_remittance([other.id], settlement_row())
        deterministic_clock.set_time(datetime(2024, 1, 20, 9, 0, tzinfo=timezone.utc))

        assert escrow_service.mark_remittance_paid(settlement_id) == 1

        assert escrow_service.get(paid.id).remitted_at is not None
        assert escrow_service.get(other.id).remitted_at is None
        assert escrow_service.mark_remittance_paid(settlement_id) == 0


class TestRefundsAndSummaries:
    def test_mark_refunded_skips_remitted_rows(self, escrow_service, settlement_row):
        remitted = escrow_service.record_escrow("rider-1", 104500, 1)
        escrow_service.record_escrow("rider-1", 8400, 2)
        escrow_service.record_escrow("rider-1", 8400, 3)
        escrow_service.claim_for_remittance([remitted.id], settlement_row())

        assert escrow_service.mark_refunded("rider-1", "refund-1") == 2

        summary = escrow_service.rider_summary("rider-1")
        assert summary.total_premium == 121300
        assert summary.remitted_amount == 104500
        assert summary.refunded_amount == 16800
        assert summary.refunded_count == 2
        assert summary.pending_count == 0
        assert summary.days_paid == 3

    def test_unknown_rider_summary_is_empty(self, escrow_service):
        summary = escrow_service.rider_summary("nobody")

        assert summary.total_premium == 0
        assert summary.days_paid == 0

    def test_pending_totals(self, escrow_service):
        escrow_service.record_escrow("rider-1", 104500, 1)
        escrow_service.record_escrow("rider-2", 104500, 1)
        escrow_service.record_escrow("rider-1", 8400, 2)

        totals = escrow_service.pending_totals()

        assert totals.day1_amount == 209000
        assert totals.day1_count == 2
        assert totals.accumulated_amount == 8400
        assert totals.total_amount == 217400
