"""
Posting engine tests.

Verifies:
- Receipt splits for Day 1 and daily payments
- Amount and day-count validation before anything reaches the ledger
- Refund initiation split between rider, platform and partners
- Settlement journals and the rate table version on every entry
"""

from uuid import uuid4

import pytest

from ledger_config.schema import RefundRates
from ledger_kernel.domain.dtos import LineSide
from ledger_kernel.domain.settlement import PartnerType, RemittanceKind, SettlementType
from ledger_kernel.exceptions import AmountMismatchError, ValidationError
from ledger_kernel.services.posting_engine import (
    PostingEventType,
    PostingStatus,
    build_event_lines,
    split_refund,
)


def _ref() -> str:
    return f"mpesa-{uuid4()}"


class TestReceipts:
    """Covers: INITIAL_DEPOSIT and DAILY_PAYMENT splits."""

    def test_initial_deposit_five_lines(self, posting_engine, balance_of):
        result = posting_engine.post_event(PostingEventType.INITIAL_DEPOSIT, _ref(), 104800)

        assert result.status == PostingStatus.POSTED
        entry = result.unwrap()
        assert len(entry.lines) == 5
        assert entry.is_balanced
        assert entry.amount_for("1001", LineSide.DEBIT) == 104800
        assert entry.amount_for("2001", LineSide.CREDIT) == 104500
        assert entry.amount_for("2002", LineSide.CREDIT) == 100
        assert entry.amount_for("2003", LineSide.CREDIT) == 100
        assert entry.amount_for("4001", LineSide.CREDIT) == 100
        assert balance_of("1001") == 104800

    def test_daily_payment_multiple_days(self, posting_engine, balance_of):
        entry = posting_engine.post_event("DAILY_PAYMENT", _ref(), 26100, day_count=3).unwrap()

        assert entry.amount_for("2001", LineSide.CREDIT) == 25200
        assert entry.amount_for("4001", LineSide.CREDIT) == 300
        assert entry.metadata["day_count"] == 3
        assert balance_of("2002") == 300

    def test_daily_payment_defaults_to_one_day(self, posting_engine):
        entry = posting_engine.post_event(PostingEventType.DAILY_PAYMENT, _ref(), 8700).unwrap()

        assert entry.amount_for("2001", LineSide.CREDIT) == 8400

    def test_rate_table_version_recorded(self, posting_engine, rate_table):
        entry = posting_engine.post_event(PostingEventType.DAILY_PAYMENT, _ref(), 8700).unwrap()

        assert entry.rate_table_version == rate_table.version
        assert entry.entry_type == "DAILY_PAYMENT"


class TestValidation:
    """Covers: VALIDATION_FAILED results never touch the ledger."""

    def test_amount_mismatch(self, posting_engine, balance_of):
        result = posting_engine.post_event(PostingEventType.DAILY_PAYMENT, _ref(), 8000, day_count=1)

        assert result.status == PostingStatus.VALIDATION_FAILED
        assert isinstance(result.error, AmountMismatchError)
        assert not result.is_success
        assert balance_of("1001") == 0

    def test_initial_deposit_more_than_one_day(self, posting_engine):
        result = posting_engine.post_event(PostingEventType.INITIAL_DEPOSIT, _ref(), 104800, day_count=2)

        assert result.status == PostingStatus.VALIDATION_FAILED

    @pytest.mark.parametrize("amount", [0, -8700])
    def test_non_positive_amount(self, posting_engine, amount):
        result = posting_engine.post_event(PostingEventType.DAILY_PAYMENT, _ref(), amount)

        assert result.status == PostingStatus.VALIDATION_FAILED

    def test_unknown_event_type(self, posting_engine):
        result = posting_engine.post_event("LOAN_DISBURSEMENT", _ref(), 8700)

        assert result.status == PostingStatus.VALIDATION_FAILED
        assert result.event_type == "LOAN_DISBURSEMENT"
        assert isinstance(result.error, ValidationError)

    def test_refund_requires_day_count(self, posting_engine):
        result = posting_engine.post_event(PostingEventType.REFUND_INITIATION, _ref(), 87000)

        assert result.status == PostingStatus.VALIDATION_FAILED

    def test_validation_failure_logged(self, posting_engine, captured_logs):
        posting_engine.post_event(PostingEventType.DAILY_PAYMENT, _ref(), 1)

        record = next(r for r in captured_logs() if r["message"] == "posting_validation_failed")
        assert record["error_code"] == "AMOUNT_MISMATCH"


class TestIdempotentPosting:
    def test_same_transaction_posts_once(self, posting_engine, balance_of):
        ref = _ref()
        first = posting_engine.post_event(PostingEventType.DAILY_PAYMENT, ref, 8700)
        second = posting_engine.post_event(PostingEventType.DAILY_PAYMENT, ref, 8700)

        assert second.status == PostingStatus.ALREADY_POSTED
        assert second.journal_entry_id == first.journal_entry_id
        assert balance_of("1001") == 8700


class TestRefunds:
    """Covers: REFUND_INITIATION and REFUND_PAYOUT."""

    def test_refund_ten_days(self, posting_engine, balance_of):
        posting_engine.post_event(PostingEventType.DAILY_PAYMENT, _ref(), 87000, day_count=10)

        entry = posting_engine.post_event(
            PostingEventType.REFUND_INITIATION, _ref(), 87000, day_count=10
        ).unwrap()

        assert entry.is_balanced
        assert entry.amount_for("2101", LineSide.CREDIT) == 78300
        assert entry.amount_for("4004", LineSide.CREDIT) == 6090
        assert entry.amount_for("2002", LineSide.CREDIT) == 1305
        assert entry.amount_for("2003", LineSide.CREDIT) == 1305
        assert balance_of("2001") == 0
        assert balance_of("4001") == 0
        assert balance_of("2002") == 1305
        assert balance_of("2101") == 78300

    def test_refund_payout(self, posting_engine, balance_of):
        posting_engine.post_event(PostingEventType.DAILY_PAYMENT, _ref(), 8700)
        posting_engine.post_event(PostingEventType.REFUND_INITIATION, _ref(), 8700, day_count=1)

        entry = posting_engine.post_event(PostingEventType.REFUND_PAYOUT, _ref(), 7830).unwrap()

        assert entry.amount_for("1002", LineSide.CREDIT) == 7830
        assert balance_of("2101") == 0

    def test_commission_receipt(self, posting_engine, balance_of):
        entry = posting_engine.post_event(PostingEventType.COMMISSION_RECEIPT, _ref(), 31500).unwrap()

        assert entry.amount_for("1002", LineSide.DEBIT) == 31500
        assert entry.amount_for("1101", LineSide.CREDIT) == 31500


class TestSplitRefund:
    """Covers: pure refund split arithmetic."""

    def test_shares_sum_to_amount(self, rate_table):
        split = split_refund(87000, rate_table.refund)

        assert split.rider_refund == 78300
        assert split.reversal_fee == 8700
        assert (
            split.rider_refund
            + split.platform_share
            + split.mobilization_a_share
            + split.mobilization_b_share
        ) == 87000

    def test_remainder_goes_to_named_party(self):
        rates = RefundRates(
            rider_percent=90,
            platform_percent=70,
            mobilization_a_percent=15,
            mobilization_b_percent=15,
            remainder_party="mobilization_b",
        )

        split = split_refund(8701, rates)

        assert split.rider_refund == 7830
        assert split.reversal_fee == 871
        assert split.platform_share == 609
        assert split.mobilization_a_share == 130
        assert split.mobilization_b_share == 132

    def test_build_lines_rejects_bool_amount(self, rate_table):
        with pytest.raises(ValidationError):
            build_event_lines(rate_table, PostingEventType.DAILY_PAYMENT, True)


class TestSettlementJournals:
    """Covers: funding, commission accrual and payout entries."""

    def test_funding_moves_escrow_to_operating(self, posting_engine, balance_of):
        posting_engine.post_event(PostingEventType.DAILY_PAYMENT, _ref(), 8700)
        settlement_id = uuid4()

        result = posting_engine.post_settlement_funding(
            settlement_id, PartnerType.MOBILIZATION_A, 100, actor_id="ops"
        )

        entry = result.unwrap()
        assert entry.transaction_ref == f"settlement:{settlement_id}:funding"
        assert balance_of("1002") == 100
        assert balance_of("1001") == 8600

    def test_platform_accrual_split(self, posting_engine, balance_of):
        entry = posting_engine.post_commission_accrual(
            uuid4(), PartnerType.PLATFORM, 18700, actor_id="ops", om_amount=10000, profit_amount=8700
        ).unwrap()

        assert entry.amount_for("1101", LineSide.DEBIT) == 18700
        assert balance_of("4002") == 10000
        assert balance_of("4003") == 8700

    def test_platform_accrual_split_must_add_up(self, posting_engine):
        result = posting_engine.post_commission_accrual(
            uuid4(), PartnerType.PLATFORM, 18700, actor_id="ops", om_amount=10000, profit_amount=1
        )

        assert result.status == PostingStatus.VALIDATION_FAILED

    def test_underwriter_accrual_unsupported(self, posting_engine):
        result = posting_engine.post_commission_accrual(
            uuid4(), PartnerType.UNDERWRITER, 100, actor_id="ops"
        )

        assert result.status == PostingStatus.VALIDATION_FAILED
        assert result.error.code == "UNSUPPORTED_PARTNER"

    def test_remittance_payout_uses_day1_event(self, posting_engine, balance_of):
        posting_engine.post_event(PostingEventType.INITIAL_DEPOSIT, _ref(), 104800)

        entry = posting_engine.post_settlement_payout(
            uuid4(),
            PartnerType.UNDERWRITER,
            SettlementType.REMITTANCE,
            104500,
            actor_id="ops",
            remittance_kind=RemittanceKind.DAY1,
        ).unwrap()

        assert entry.entry_type == "REMITTANCE_DAY1"
        assert balance_of("2001") == 0
        assert balance_of("1001") == 300
