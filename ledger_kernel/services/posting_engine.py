"""
Posting Engine - turns business money movements into balanced entries.

Responsibility:
    Maps each event type to journal lines using the allocation rules of
    the rate table it was built with, then hands the lines to the
    LedgerService keyed by the originating transaction id.

    Event type          Lines
    ------------------  -----------------------------------------------------
    INITIAL_DEPOSIT     Dr escrow cash; Cr premium payable, both service fee
                        payables and platform fee income
    DAILY_PAYMENT       Same split per day paid
    REMITTANCE_DAY1     Dr premium payable; Cr escrow cash
    REMITTANCE_BULK     Dr premium payable; Cr escrow cash
    REFUND_INITIATION   Reverse the receipt split for the refunded days; Cr
                        refund payable for the rider share and split the
                        reversal fee between platform and partners
    REFUND_PAYOUT       Dr refund payable; Cr operating cash
    COMMISSION_RECEIPT  Dr operating cash; Cr commission receivable

    Settlement journals (funding, commission accrual, payout) are built
    here too, keyed on the settlement id.

Invariants enforced:
    - Receipt and refund amounts equal count x the fixed daily total.
    - Every entry balances and records the rate table version.
    - A repeated transaction id returns ALREADY_POSTED with the original
      entry.

Failure modes:
    - VALIDATION_FAILED result for bad amounts, counts or event types.
    - REJECTED result when the ledger refuses the lines (unknown or inactive
      account).
"""

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from ledger_config.schema import RateTable, RefundRates
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.dtos import JournalEntryRecord, LineSpec
from ledger_kernel.domain.settlement import (
    PartnerType,
    RemittanceKind,
    SettlementType,
)
from ledger_kernel.exceptions import (
    AmountMismatchError,
    LedgerKernelError,
    UnsupportedPartnerError,
    ValidationError,
)
from ledger_kernel.logging_config import get_logger
from ledger_kernel.services.ledger_service import LedgerResult, LedgerService, PostStatus

logger = get_logger("services.posting_engine")


class PostingEventType(str, Enum):
    INITIAL_DEPOSIT = "INITIAL_DEPOSIT"
    DAILY_PAYMENT = "DAILY_PAYMENT"
    REMITTANCE_DAY1 = "REMITTANCE_DAY1"
    REMITTANCE_BULK = "REMITTANCE_BULK"
    REFUND_INITIATION = "REFUND_INITIATION"
    REFUND_PAYOUT = "REFUND_PAYOUT"
    COMMISSION_RECEIPT = "COMMISSION_RECEIPT"


class SettlementEntryType(str, Enum):
    FUNDING = "SETTLEMENT_FUNDING"
    COMMISSION_ACCRUAL = "COMMISSION_ACCRUAL"
    PAYOUT = "SETTLEMENT_PAYOUT"


class PostingStatus(str, Enum):
    """Status of a posting operation."""

    POSTED = "posted"
    ALREADY_POSTED = "already_posted"
    VALIDATION_FAILED = "validation_failed"
    REJECTED = "rejected"


@dataclass(frozen=True)
class PostingResult:
    """Result of a posting operation."""

    status: PostingStatus
    event_type: str
    transaction_id: str
    entry: JournalEntryRecord | None = None
    error: LedgerKernelError | None = None
    message: str | None = None

    @property
    def is_success(self) -> bool:
        """Check if posting was successful (including idempotent success)."""
        return self.status in (PostingStatus.POSTED, PostingStatus.ALREADY_POSTED)

    @property
    def journal_entry_id(self) -> UUID | None:
        return self.entry.id if self.entry is not None else None

    def unwrap(self) -> JournalEntryRecord:
        if self.error is not None:
            raise self.error
        assert self.entry is not None
        return self.entry


@dataclass(frozen=True)
class RefundSplit:
    rider_refund: int
    reversal_fee: int
    platform_share: int
    mobilization_a_share: int
    mobilization_b_share: int


def split_refund(amount: int, rates: RefundRates) -> RefundSplit:
    """
    Split a refundable amount between the rider and the reversal fee parties.

    Every share is floored; the fee party named ``remainder_party`` takes
    what the floors leave over, so the shares always sum to ``amount``.
    """
    rider_refund = amount * rates.rider_percent // 100
    fee = amount - rider_refund
    shares = {
        "platform": fee * rates.platform_percent // 100,
        "mobilization_a": fee * rates.mobilization_a_percent // 100,
        "mobilization_b": fee * rates.mobilization_b_percent // 100,
    }
    shares[rates.remainder_party] += fee - sum(shares.values())
    return RefundSplit(
        rider_refund=rider_refund,
        reversal_fee=fee,
        platform_share=shares["platform"],
        mobilization_a_share=shares["mobilization_a"],
        mobilization_b_share=shares["mobilization_b"],
    )


def _positive_lines(lines: list[LineSpec]) -> list[LineSpec]:
    # A floored share can be zero on tiny amounts; zero lines are never posted
    return [line for line in lines if line.amount != 0]


def build_event_lines(
    rate_table: RateTable,
    event_type: PostingEventType,
    amount: int,
    day_count: int | None = None,
) -> list[LineSpec]:
    """
    Lines for one business event.  Pure; raises ValidationError.
    """
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError(f"Amount must be a positive integer, got {amount!r}", field="amount")
    if day_count is not None and (
        isinstance(day_count, bool) or not isinstance(day_count, int) or day_count < 1
    ):
        raise ValidationError(f"day_count must be a positive integer, got {day_count!r}", field="day_count")

    receipt = rate_table.receipt
    acct = rate_table.accounts

    if event_type == PostingEventType.INITIAL_DEPOSIT:
        if day_count not in (None, 1):
            raise ValidationError("INITIAL_DEPOSIT covers exactly one day", field="day_count")
        if amount != receipt.day1_total:
            raise AmountMismatchError(event_type.value, receipt.day1_total, amount)
        return [
            LineSpec.debit(acct.escrow_cash, amount, "Day 1 premium receipt"),
            LineSpec.credit(acct.premium_payable, receipt.day1_premium, "Day 1 premium"),
            LineSpec.credit(acct.service_fee_payable_a, receipt.service_fee_a, "Service fee A"),
            LineSpec.credit(acct.service_fee_payable_b, receipt.service_fee_b, "Service fee B"),
            LineSpec.credit(acct.service_fee_income, receipt.platform_fee, "Platform fee"),
        ]

    if event_type == PostingEventType.DAILY_PAYMENT:
        days = day_count or 1
        expected = receipt.daily_total * days
        if amount != expected:
            raise AmountMismatchError(event_type.value, expected, amount)
        return [
            LineSpec.debit(acct.escrow_cash, amount, f"Daily premium receipt x{days}"),
            LineSpec.credit(acct.premium_payable, receipt.daily_premium * days, "Daily premium"),
            LineSpec.credit(acct.service_fee_payable_a, receipt.service_fee_a * days, "Service fee A"),
            LineSpec.credit(acct.service_fee_payable_b, receipt.service_fee_b * days, "Service fee B"),
            LineSpec.credit(acct.service_fee_income, receipt.platform_fee * days, "Platform fee"),
        ]

    if event_type in (PostingEventType.REMITTANCE_DAY1, PostingEventType.REMITTANCE_BULK):
        return [
            LineSpec.debit(acct.premium_payable, amount, "Premium remitted to underwriter"),
            LineSpec.credit(acct.escrow_cash, amount, "Premium remitted to underwriter"),
        ]

    if event_type == PostingEventType.REFUND_INITIATION:
        if day_count is None:
            raise ValidationError("REFUND_INITIATION requires day_count", field="day_count")
        expected = receipt.daily_total * day_count
        if amount != expected:
            raise AmountMismatchError(event_type.value, expected, amount)
        split = split_refund(amount, rate_table.refund)
        return _positive_lines([
            LineSpec.debit(acct.premium_payable, receipt.daily_premium * day_count, "Refunded premium"),
            LineSpec.debit(acct.service_fee_payable_a, receipt.service_fee_a * day_count, "Refunded service fee A"),
            LineSpec.debit(acct.service_fee_payable_b, receipt.service_fee_b * day_count, "Refunded service fee B"),
            LineSpec.debit(acct.service_fee_income, receipt.platform_fee * day_count, "Refunded platform fee"),
            LineSpec.credit(acct.refund_payable, split.rider_refund, "Refund due to rider"),
            LineSpec.credit(acct.reversal_fee_income, split.platform_share, "Reversal fee - platform"),
            LineSpec.credit(acct.service_fee_payable_a, split.mobilization_a_share, "Reversal fee - partner A"),
            LineSpec.credit(acct.service_fee_payable_b, split.mobilization_b_share, "Reversal fee - partner B"),
        ])

    if event_type == PostingEventType.REFUND_PAYOUT:
        return [
            LineSpec.debit(acct.refund_payable, amount, "Refund paid to rider"),
            LineSpec.credit(acct.operating_cash, amount, "Refund paid to rider"),
        ]

    if event_type == PostingEventType.COMMISSION_RECEIPT:
        return [
            LineSpec.debit(acct.operating_cash, amount, "Commission received"),
            LineSpec.credit(acct.commission_receivable, amount, "Commission received"),
        ]

    raise ValidationError(f"Unsupported event type {event_type!r}", field="event_type")


class PostingEngine:
    """
    Builds and posts journal entries from business events.

    Holds one rate table for its lifetime; every entry records its version.
    Never commits.
    """

    def __init__(
        self,
        session: Session,
        rate_table: RateTable,
        clock: Clock | None = None,
        ledger: LedgerService | None = None,
    ):
        self._session = session
        self._rate_table = rate_table
        self._clock = clock or SystemClock()
        self._ledger = ledger or LedgerService(session, self._clock)

    @property
    def rate_table(self) -> RateTable:
        return self._rate_table

    def post_event(
        self,
        event_type: PostingEventType | str,
        transaction_id: str,
        amount: int,
        day_count: int | None = None,
        *,
        actor_id: str = "system",
        effective_date: date | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> PostingResult:
        """
        Post one business event.

        Args:
            event_type: One of PostingEventType (name or member).
            transaction_id: Originating transaction; the idempotency key.
            amount: Total amount in minor units.
            day_count: Days paid or refunded (DAILY_PAYMENT defaults to 1).

        Returns:
            PostingResult; ``unwrap()`` gives the journal entry.
        """
        event_name = getattr(event_type, "value", event_type)
        try:
            event = PostingEventType(event_type)
        except ValueError:
            return self._validation_failed(
                str(event_name),
                transaction_id,
                ValidationError(f"Unknown event type {event_name!r}", field="event_type"),
            )

        try:
            lines = build_event_lines(self._rate_table, event, amount, day_count)
        except ValidationError as exc:
            return self._validation_failed(event.value, transaction_id, exc)

        entry_metadata = dict(metadata or {})
        if day_count is not None:
            entry_metadata["day_count"] = day_count

        result = self._ledger.post_lines(
            lines,
            entry_type=event.value,
            transaction_ref=transaction_id,
            actor_id=actor_id,
            description=f"{event.value} {transaction_id}",
            effective_date=effective_date,
            rate_table_version=self._rate_table.version,
            metadata=entry_metadata,
        )
        return self._from_ledger(event.value, transaction_id, result)

    # ------------------------------------------------------------------
    # Settlement journals
    # ------------------------------------------------------------------

    def post_settlement_funding(
        self,
        settlement_id: UUID,
        partner_type: PartnerType,
        amount: int,
        *,
        actor_id: str,
    ) -> PostingResult:
        """Move a partner's service fees from escrow cash to operating cash."""
        acct = self._rate_table.accounts
        return self._post_settlement(
            SettlementEntryType.FUNDING,
            settlement_id,
            [
                LineSpec.debit(acct.operating_cash, amount, f"Service fee funding {partner_type.value}"),
                LineSpec.credit(acct.escrow_cash, amount, f"Service fee funding {partner_type.value}"),
            ],
            actor_id=actor_id,
            partner_type=partner_type,
        )

    def post_commission_accrual(
        self,
        settlement_id: UUID,
        partner_type: PartnerType,
        amount: int,
        *,
        actor_id: str,
        om_amount: int = 0,
        profit_amount: int = 0,
    ) -> PostingResult:
        """
        Recognise commission due from the underwriter.

        Partners: Dr commission receivable, Cr the partner's commission
        payable.  Platform: Cr O&M income and profit-share income, which
        must add up to ``amount``.
        """
        acct = self._rate_table.accounts
        lines = [LineSpec.debit(acct.commission_receivable, amount, "Commission receivable")]
        if partner_type == PartnerType.PLATFORM:
            if om_amount + profit_amount != amount:
                return self._validation_failed(
                    SettlementEntryType.COMMISSION_ACCRUAL.value,
                    f"settlement:{settlement_id}:accrual",
                    ValidationError(
                        f"Platform commission split {om_amount} + {profit_amount} != {amount}",
                        field="metadata",
                    ),
                )
            lines += [
                LineSpec.credit(acct.commission_income_om, om_amount, "Commission income - O&M"),
                LineSpec.credit(acct.commission_income_profit, profit_amount, "Commission income - profit share"),
            ]
        elif partner_type in (PartnerType.MOBILIZATION_A, PartnerType.MOBILIZATION_B):
            lines.append(
                LineSpec.credit(
                    acct.commission_payable(partner_type.value), amount, "Commission payable"
                )
            )
        else:
            return self._validation_failed(
                SettlementEntryType.COMMISSION_ACCRUAL.value,
                f"settlement:{settlement_id}:accrual",
                UnsupportedPartnerError(partner_type.value, SettlementType.COMMISSION.value),
            )
        return self._post_settlement(
            SettlementEntryType.COMMISSION_ACCRUAL,
            settlement_id,
            _positive_lines(lines),
            actor_id=actor_id,
            partner_type=partner_type,
        )

    def post_settlement_payout(
        self,
        settlement_id: UUID,
        partner_type: PartnerType,
        settlement_type: SettlementType,
        amount: int,
        *,
        actor_id: str,
        remittance_kind: RemittanceKind | None = None,
    ) -> PostingResult:
        """Post the cash movement of a completed settlement."""
        acct = self._rate_table.accounts
        transaction_id = f"settlement:{settlement_id}:payout"

        if settlement_type == SettlementType.REMITTANCE:
            event = (
                PostingEventType.REMITTANCE_DAY1
                if remittance_kind == RemittanceKind.DAY1
                else PostingEventType.REMITTANCE_BULK
            )
            return self.post_event(
                event,
                transaction_id,
                amount,
                actor_id=actor_id,
                metadata={"settlement_id": str(settlement_id)},
            )

        if settlement_type == SettlementType.SERVICE_FEE:
            payable = acct.service_fee_payable(partner_type.value)
            lines = [
                LineSpec.debit(payable, amount, "Service fee paid"),
                LineSpec.credit(acct.operating_cash, amount, "Service fee paid"),
            ]
        elif partner_type == PartnerType.PLATFORM:
            lines = [
                LineSpec.debit(acct.operating_cash, amount, "Platform commission received"),
                LineSpec.credit(acct.commission_receivable, amount, "Platform commission received"),
            ]
        else:
            payable = acct.commission_payable(partner_type.value)
            lines = [
                LineSpec.debit(payable, amount, "Commission paid"),
                LineSpec.credit(acct.operating_cash, amount, "Commission paid"),
            ]

        return self._post_settlement(
            SettlementEntryType.PAYOUT,
            settlement_id,
            lines,
            actor_id=actor_id,
            partner_type=partner_type,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _post_settlement(
        self,
        entry_type: SettlementEntryType,
        settlement_id: UUID,
        lines: list[LineSpec],
        *,
        actor_id: str,
        partner_type: PartnerType,
    ) -> PostingResult:
        suffix = {
            SettlementEntryType.FUNDING: "funding",
            SettlementEntryType.COMMISSION_ACCRUAL: "accrual",
            SettlementEntryType.PAYOUT: "payout",
        }[entry_type]
        transaction_id = f"settlement:{settlement_id}:{suffix}"
        result = self._ledger.post_lines(
            lines,
            entry_type=entry_type.value,
            transaction_ref=transaction_id,
            actor_id=actor_id,
            description=f"{entry_type.value} {partner_type.value}",
            rate_table_version=self._rate_table.version,
            metadata={
                "settlement_id": str(settlement_id),
                "partner_type": partner_type.value,
            },
        )
        return self._from_ledger(entry_type.value, transaction_id, result)

    def _from_ledger(
        self, event_type: str, transaction_id: str, result: LedgerResult
    ) -> PostingResult:
        status = {
            PostStatus.POSTED: PostingStatus.POSTED,
            PostStatus.ALREADY_POSTED: PostingStatus.ALREADY_POSTED,
            PostStatus.REJECTED: PostingStatus.REJECTED,
        }[result.status]
        return PostingResult(
            status=status,
            event_type=event_type,
            transaction_id=transaction_id,
            entry=result.entry,
            error=result.error,
            message=result.message,
        )

    def _validation_failed(
        self, event_type: str, transaction_id: str, error: LedgerKernelError
    ) -> PostingResult:
        logger.warning(
            "posting_validation_failed",
            extra={
                "event_type": event_type,
                "transaction_ref": transaction_id,
                "error_code": error.code,
                "reason": str(error),
            },
        )
        return PostingResult(
            status=PostingStatus.VALIDATION_FAILED,
            event_type=event_type,
            transaction_id=transaction_id,
            error=error,
            message=str(error),
        )
