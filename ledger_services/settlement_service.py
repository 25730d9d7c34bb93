"""
ledger_services.settlement_service -- partner settlement lifecycle.

Responsibility:
    Creates settlements that pay mobilization partners their service fees,
    accrue commission to partners and the platform, and remit premium to
    the underwriter, then drives each one through
    PENDING -> APPROVED -> PROCESSING -> COMPLETED (or CANCELLED).

Architecture position:
    Services -- stateful orchestration over the kernel.  Composes
    EscrowService (claims), PostingEngine (journals), LedgerService
    (reversals) and SequenceService (settlement numbers).

Invariants enforced:
    - Transitions follow SETTLEMENT_TRANSITIONS; any other move raises
      SettlementStateConflictError and changes nothing.
    - An escrow row feeds at most one settlement per (partner, settlement
      type); remittance claims flip PENDING rows to REMITTED atomically.
    - Creation (row, line items, claims, journal) and every transition
      (guard, mutation, journal) run inside one savepoint: any failure
      leaves no trace.
    - Processing requires a bank reference.
    - Cancellation reverses the creation journal and releases the escrow
      claims so a later settlement can pick the rows up again.

Failure modes:
    - Creation returns a failed SettlementResult (VALIDATION_ERROR,
      STATE_CONFLICT, ...); database errors propagate.
    - Transitions raise SettlementNotFoundError,
      SettlementStateConflictError, MissingPayoutReferenceError or the
      posting error that aborted them.

Usage:
    service = SettlementService(session, rate_table, clock)
    result = service.create_service_fee_settlement(
        PartnerType.MOBILIZATION_A, date(2024, 1, 1), date(2024, 1, 31), "ops",
    )
    settlement = result.unwrap()
    service.approve_settlement(settlement.id, "finance-lead")
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from ledger_config.schema import RateTable
from ledger_kernel.domain.clock import Clock, SystemClock, utc_date
from ledger_kernel.domain.dtos import EscrowRecord
from ledger_kernel.domain.settlement import (
    PARTNER_CODES,
    SETTLEMENT_PARTNERS,
    SETTLEMENT_TRANSITIONS,
    SETTLEMENT_TYPE_CODES,
    TERMINAL_SETTLEMENT_STATUSES,
    CommissionMetadata,
    DailyCount,
    PartnerType,
    RemittanceKind,
    RemittanceMetadata,
    ServiceFeeMetadata,
    SettlementMetadata,
    SettlementRecord,
    SettlementResult,
    SettlementStatus,
    SettlementType,
    allowed_sources,
    metadata_from_dict,
    metadata_to_dict,
    settlement_number,
)
from ledger_kernel.exceptions import (
    LedgerKernelError,
    MissingPayoutReferenceError,
    SettlementNotFoundError,
    SettlementStateConflictError,
    UnsupportedPartnerError,
    ValidationError,
)
from ledger_kernel.logging_config import LogContext, get_logger
from ledger_kernel.models.escrow import EscrowType, RemittanceStatus
from ledger_kernel.models.settlement import PartnerSettlement, SettlementLineItem
from ledger_kernel.services.escrow_service import EscrowQuery, EscrowService
from ledger_kernel.services.ledger_service import LedgerService
from ledger_kernel.services.posting_engine import PostingEngine
from ledger_kernel.services.sequence_service import SequenceService

logger = get_logger("services.settlement")


@dataclass(frozen=True)
class PartnerSettlementSummary:
    """Settlement totals for one partner over a period."""

    partner_type: PartnerType
    period_start: date
    period_end: date
    settlement_count: int
    total_amount: int
    completed_amount: int
    open_amount: int
    cancelled_amount: int
    amount_by_type: dict[str, int] = field(default_factory=dict)


class SettlementService:
    """
    Creates partner settlements and moves them through their lifecycle.

    Contract:
        Never commits.  Runs in the caller's session; each operation is
        atomic through a savepoint.

    Non-goals:
        - Does NOT talk to banks; bank references are supplied by the caller.
        - Does NOT compute commission (CommissionService does).
    """

    def __init__(
        self,
        session: Session,
        rate_table: RateTable,
        clock: Clock | None = None,
        posting_engine: PostingEngine | None = None,
        escrow_service: EscrowService | None = None,
    ):
        self._session = session
        self._rate_table = rate_table
        self._clock = clock or SystemClock()
        self._ledger = LedgerService(session, self._clock)
        self._posting = posting_engine or PostingEngine(
            session, rate_table, self._clock, ledger=self._ledger
        )
        self._escrow = escrow_service or EscrowService(session, self._clock)
        self._sequences = SequenceService(session)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_service_fee_settlement(
        self,
        partner_type: PartnerType,
        period_start: date,
        period_end: date,
        actor_id: str = "system",
    ) -> SettlementResult:
        """
        Settle a partner's service fees on escrow rows created in the period.

        Rows already claimed by this partner's earlier service-fee
        settlements and refunded rows are skipped.  A period with nothing
        left to settle is a zero-amount success without a settlement.
        """
        try:
            partner = self._check_partner(partner_type, SettlementType.SERVICE_FEE)
            self._check_period(period_start, period_end)
        except ValidationError as exc:
            return self._rejected(SettlementType.SERVICE_FEE, partner_type, exc)

        rows = [
            row
            for row in self._escrow.find(
                EscrowQuery(
                    period_start=period_start,
                    period_end=period_end,
                    unclaimed_for=(partner, SettlementType.SERVICE_FEE),
                )
            )
            if row.remittance_status != RemittanceStatus.REFUNDED.value
        ]
        if not rows:
            return self._empty(SettlementType.SERVICE_FEE, partner, period_start, period_end)

        fee = self._rate_table.service_fee_for(partner.value)
        breakdown = _daily_counts(rows, unit_amount=fee)
        metadata = ServiceFeeMetadata(
            fee_per_transaction=fee,
            escrow_count=len(rows),
            daily_breakdown=breakdown,
        )

        try:
            with self._session.begin_nested():
                settlement = self._insert_settlement(
                    partner,
                    SettlementType.SERVICE_FEE,
                    period_start,
                    period_end,
                    total_amount=fee * len(rows),
                    transaction_count=len(rows),
                    metadata=metadata,
                    line_items=[
                        (d.reference_date, d.amount, d.count, f"Service fees {d.reference_date}")
                        for d in breakdown
                    ],
                    actor_id=actor_id,
                )
                self._escrow.claim_for_settlement(
                    [row.id for row in rows], partner, SettlementType.SERVICE_FEE, settlement.id
                )
                posting = self._posting.post_settlement_funding(
                    settlement.id, partner, settlement.total_amount, actor_id=actor_id
                )
                if not posting.is_success:
                    raise posting.error
                settlement.journal_entry_id = posting.journal_entry_id
                self._session.flush()
        except LedgerKernelError as exc:
            return self._rejected(SettlementType.SERVICE_FEE, partner, exc)

        return self._created(settlement)

    def create_commission_settlement(
        self,
        partner_type: PartnerType,
        period_start: date,
        period_end: date,
        commission_amount: int,
        metadata: CommissionMetadata | None = None,
        actor_id: str = "system",
    ) -> SettlementResult:
        """
        Record commission owed to a partner or the platform for a period.

        For the platform, ``metadata.om_amount`` and
        ``metadata.profit_amount`` split the accrual between the two income
        accounts; without metadata the whole amount is O&M income.
        """
        try:
            partner = self._check_partner(partner_type, SettlementType.COMMISSION)
            self._check_period(period_start, period_end)
        except ValidationError as exc:
            return self._rejected(SettlementType.COMMISSION, partner_type, exc)

        if commission_amount <= 0:
            return self._empty(SettlementType.COMMISSION, partner, period_start, period_end)

        if metadata is None:
            metadata = CommissionMetadata(
                total_commission=commission_amount,
                om_amount=commission_amount if partner == PartnerType.PLATFORM else 0,
            )

        try:
            with self._session.begin_nested():
                settlement = self._insert_settlement(
                    partner,
                    SettlementType.COMMISSION,
                    period_start,
                    period_end,
                    total_amount=commission_amount,
                    transaction_count=1,
                    metadata=metadata,
                    line_items=[
                        (
                            period_end,
                            commission_amount,
                            1,
                            f"Commission {period_start} to {period_end}",
                        )
                    ],
                    actor_id=actor_id,
                )
                posting = self._posting.post_commission_accrual(
                    settlement.id,
                    partner,
                    commission_amount,
                    actor_id=actor_id,
                    om_amount=metadata.om_amount,
                    profit_amount=metadata.profit_amount,
                )
                if not posting.is_success:
                    raise posting.error
                settlement.journal_entry_id = posting.journal_entry_id
                self._session.flush()
        except LedgerKernelError as exc:
            return self._rejected(SettlementType.COMMISSION, partner, exc)

        return self._created(settlement)

    def create_remittance_settlement(
        self,
        period_start: date,
        period_end: date,
        actor_id: str = "system",
        *,
        remittance_kind: RemittanceKind = RemittanceKind.BULK,
    ) -> SettlementResult:
        """
        Sweep pending premium of one kind into an underwriter remittance.

        DAY1 takes Day-1 escrow rows, BULK takes days 2-31.  The rows turn
        REMITTED at once; the cash entry is posted on completion.
        """
        try:
            self._check_period(period_start, period_end)
        except ValidationError as exc:
            return self._rejected(SettlementType.REMITTANCE, PartnerType.UNDERWRITER, exc)

        escrow_type = (
            EscrowType.DAY_1_IMMEDIATE
            if remittance_kind == RemittanceKind.DAY1
            else EscrowType.DAYS_2_31_ACCUMULATED
        )
        rows = self._escrow.find(
            EscrowQuery(
                period_start=period_start,
                period_end=period_end,
                remittance_status=RemittanceStatus.PENDING,
                escrow_type=escrow_type,
            )
        )
        if not rows:
            return self._empty(
                SettlementType.REMITTANCE, PartnerType.UNDERWRITER, period_start, period_end
            )

        breakdown = _daily_counts(rows)
        try:
            with self._session.begin_nested():
                settlement = self._insert_settlement(
                    PartnerType.UNDERWRITER,
                    SettlementType.REMITTANCE,
                    period_start,
                    period_end,
                    total_amount=sum(row.premium_amount for row in rows),
                    transaction_count=len(rows),
                    metadata=RemittanceMetadata(
                        remittance_kind=remittance_kind, escrow_count=len(rows)
                    ),
                    line_items=[
                        (d.reference_date, d.amount, d.count, f"Premium {d.reference_date}")
                        for d in breakdown
                    ],
                    actor_id=actor_id,
                )
                self._escrow.claim_for_remittance([row.id for row in rows], settlement.id)
        except LedgerKernelError as exc:
            return self._rejected(SettlementType.REMITTANCE, PartnerType.UNDERWRITER, exc)

        return self._created(settlement)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def approve_settlement(self, settlement_id: UUID, actor_id: str) -> SettlementRecord:
        with self._session.begin_nested():
            settlement = self._lock(settlement_id)
            source = self._guard(settlement, SettlementStatus.APPROVED)
            now = self._clock.now()
            settlement.status = SettlementStatus.APPROVED.value
            settlement.approved_by = actor_id
            settlement.approved_at = now
            settlement.updated_by_id = actor_id
            self._session.flush()
        return self._transitioned(settlement, source, actor_id)

    def process_settlement(
        self,
        settlement_id: UUID,
        actor_id: str,
        bank_reference: str,
        bank_account: str | None = None,
    ) -> SettlementRecord:
        """
        Mark an approved settlement as sent to the bank.

        Raises:
            MissingPayoutReferenceError: ``bank_reference`` is blank.
        """
        with self._session.begin_nested():
            settlement = self._lock(settlement_id)
            source = self._guard(settlement, SettlementStatus.PROCESSING)
            if not bank_reference or not bank_reference.strip():
                raise MissingPayoutReferenceError(str(settlement_id))
            settlement.status = SettlementStatus.PROCESSING.value
            settlement.processed_by = actor_id
            settlement.processed_at = self._clock.now()
            settlement.bank_reference = bank_reference.strip()
            settlement.bank_account = bank_account
            settlement.updated_by_id = actor_id
            self._session.flush()
        return self._transitioned(settlement, source, actor_id)

    def complete_settlement(
        self,
        settlement_id: UUID,
        actor_id: str,
        confirmation_reference: str | None = None,
    ) -> SettlementRecord:
        """Confirm payment and post the payout entry."""
        with self._session.begin_nested():
            settlement = self._lock(settlement_id)
            source = self._guard(settlement, SettlementStatus.COMPLETED)

            remittance_kind = None
            metadata = metadata_from_dict(settlement.settlement_metadata)
            if isinstance(metadata, RemittanceMetadata):
                remittance_kind = metadata.remittance_kind

            posting = self._posting.post_settlement_payout(
                settlement.id,
                PartnerType(settlement.partner_type),
                SettlementType(settlement.settlement_type),
                settlement.total_amount,
                actor_id=actor_id,
                remittance_kind=remittance_kind,
            )
            if not posting.is_success:
                raise posting.error
            if settlement.settlement_type == SettlementType.REMITTANCE.value:
                self._escrow.mark_remittance_paid(settlement.id)

            settlement.status = SettlementStatus.COMPLETED.value
            settlement.completed_by = actor_id
            settlement.completed_at = self._clock.now()
            settlement.confirmation_reference = confirmation_reference
            settlement.payout_entry_id = posting.journal_entry_id
            settlement.updated_by_id = actor_id
            self._session.flush()
        return self._transitioned(settlement, source, actor_id)

    def cancel_settlement(self, settlement_id: UUID, actor_id: str, reason: str) -> SettlementRecord:
        """
        Cancel a settlement that has not gone to the bank yet.

        The creation journal is reversed and the escrow claims released.

        Raises:
            ValidationError: ``reason`` is blank.
        """
        if not reason or not reason.strip():
            raise ValidationError("A cancellation reason is required", field="reason")

        with self._session.begin_nested():
            settlement = self._lock(settlement_id)
            source = self._guard(settlement, SettlementStatus.CANCELLED)

            if settlement.journal_entry_id is not None:
                reversal = self._ledger.reverse(
                    settlement.journal_entry_id,
                    actor_id=actor_id,
                    reason=f"Settlement {settlement.settlement_number} cancelled: {reason}",
                )
                if not reversal.is_success:
                    raise reversal.error
            self._escrow.release_claims(settlement.id)

            settlement.status = SettlementStatus.CANCELLED.value
            settlement.cancelled_by = actor_id
            settlement.cancelled_at = self._clock.now()
            settlement.cancellation_reason = reason.strip()
            settlement.updated_by_id = actor_id
            self._session.flush()
        return self._transitioned(settlement, source, actor_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_settlement(self, settlement_id: UUID) -> SettlementRecord | None:
        settlement = self._session.get(PartnerSettlement, settlement_id)
        return settlement.to_dto() if settlement is not None else None

    def list_settlements(
        self,
        status: SettlementStatus | None = None,
        partner_type: PartnerType | None = None,
        settlement_type: SettlementType | None = None,
    ) -> list[SettlementRecord]:
        stmt = select(PartnerSettlement)
        if status is not None:
            stmt = stmt.where(PartnerSettlement.status == SettlementStatus(status).value)
        if partner_type is not None:
            stmt = stmt.where(PartnerSettlement.partner_type == PartnerType(partner_type).value)
        if settlement_type is not None:
            stmt = stmt.where(
                PartnerSettlement.settlement_type == SettlementType(settlement_type).value
            )
        stmt = stmt.order_by(PartnerSettlement.created_at, PartnerSettlement.settlement_number)
        return [s.to_dto() for s in self._session.execute(stmt).scalars()]

    def partner_summary(
        self,
        partner_type: PartnerType,
        period_start: date,
        period_end: date,
    ) -> PartnerSettlementSummary:
        """Totals of the partner's settlements whose period lies in the range."""
        partner = PartnerType(partner_type)
        settlements = self._session.execute(
            select(PartnerSettlement).where(
                PartnerSettlement.partner_type == partner.value,
                PartnerSettlement.period_start >= period_start,
                PartnerSettlement.period_end <= period_end,
            )
        ).scalars().all()

        completed = cancelled = open_amount = 0
        by_type: dict[str, int] = defaultdict(int)
        for s in settlements:
            status = SettlementStatus(s.status)
            if status == SettlementStatus.CANCELLED:
                cancelled += s.total_amount
                continue
            by_type[s.settlement_type] += s.total_amount
            if status == SettlementStatus.COMPLETED:
                completed += s.total_amount
            else:
                open_amount += s.total_amount

        return PartnerSettlementSummary(
            partner_type=partner,
            period_start=period_start,
            period_end=period_end,
            settlement_count=len(settlements),
            total_amount=completed + open_amount,
            completed_amount=completed,
            open_amount=open_amount,
            cancelled_amount=cancelled,
            amount_by_type=dict(by_type),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_partner(self, partner_type: PartnerType | str, settlement_type: SettlementType) -> PartnerType:
        try:
            partner = PartnerType(partner_type)
        except ValueError:
            raise UnsupportedPartnerError(str(partner_type), settlement_type.value) from None
        if partner not in SETTLEMENT_PARTNERS[settlement_type]:
            raise UnsupportedPartnerError(partner.value, settlement_type.value)
        return partner

    @staticmethod
    def _check_period(period_start: date, period_end: date) -> None:
        if period_end < period_start:
            raise ValidationError(
                f"period_end {period_end} is before period_start {period_start}",
                field="period_end",
            )

    def _next_number(self, partner: PartnerType, settlement_type: SettlementType) -> str:
        today = self._clock.today()
        prefix = f"{PARTNER_CODES[partner]}-{SETTLEMENT_TYPE_CODES[settlement_type]}-{today:%Y%m%d}"
        seq = self._sequences.next_value(f"settlement:{prefix}")
        return settlement_number(partner, settlement_type, today, seq)

    def _insert_settlement(
        self,
        partner: PartnerType,
        settlement_type: SettlementType,
        period_start: date,
        period_end: date,
        *,
        total_amount: int,
        transaction_count: int,
        metadata: SettlementMetadata,
        line_items: list[tuple[date | None, int, int, str]],
        actor_id: str,
    ) -> PartnerSettlement:
        settlement = PartnerSettlement(
            settlement_number=self._next_number(partner, settlement_type),
            partner_type=partner.value,
            settlement_type=settlement_type.value,
            period_start=period_start,
            period_end=period_end,
            total_amount=total_amount,
            transaction_count=transaction_count,
            status=SettlementStatus.PENDING.value,
            settlement_metadata=metadata_to_dict(metadata),
            created_at=self._clock.now(),
            created_by_id=actor_id,
        )
        settlement.line_items = [
            SettlementLineItem(
                line_number=n,
                reference_date=reference_date,
                amount=amount,
                count=count,
                description=description,
            )
            for n, (reference_date, amount, count, description) in enumerate(line_items, start=1)
        ]
        self._session.add(settlement)
        self._session.flush()
        return settlement

    def _lock(self, settlement_id: UUID) -> PartnerSettlement:
        settlement = self._session.execute(
            select(PartnerSettlement)
            .where(PartnerSettlement.id == settlement_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if settlement is None:
            raise SettlementNotFoundError(str(settlement_id))
        return settlement

    def _guard(self, settlement: PartnerSettlement, target: SettlementStatus) -> SettlementStatus:
        current = SettlementStatus(settlement.status)
        if target not in SETTLEMENT_TRANSITIONS[current]:
            expected = "|".join(sorted(s.value for s in allowed_sources(target)))
            logger.warning(
                "settlement_transition_rejected",
                extra={
                    "settlement_id": str(settlement.id),
                    "from_status": current.value,
                    "to_status": target.value,
                    "terminal": current in TERMINAL_SETTLEMENT_STATUSES,
                },
            )
            raise SettlementStateConflictError(str(settlement.id), expected, current.value)
        return current

    def _created(self, settlement: PartnerSettlement) -> SettlementResult:
        record = settlement.to_dto()
        with LogContext.bind(settlement_id=str(record.id)):
            logger.info(
                "settlement_created",
                extra={
                    "settlement_number": record.settlement_number,
                    "partner_type": record.partner_type.value,
                    "settlement_type": record.settlement_type.value,
                    "total_amount": record.total_amount,
                    "transaction_count": record.transaction_count,
                    "journal_entry_id": str(record.journal_entry_id) if record.journal_entry_id else None,
                },
            )
        return SettlementResult.created(record)

    def _transitioned(
        self, settlement: PartnerSettlement, source: SettlementStatus, actor_id: str
    ) -> SettlementRecord:
        record = settlement.to_dto()
        with LogContext.bind(settlement_id=str(record.id), actor_id=actor_id):
            logger.info(
                "settlement_transition",
                extra={
                    "settlement_number": record.settlement_number,
                    "from_status": source.value,
                    "to_status": record.status.value,
                },
            )
        return record

    def _empty(
        self,
        settlement_type: SettlementType,
        partner: PartnerType,
        period_start: date,
        period_end: date,
    ) -> SettlementResult:
        logger.info(
            "settlement_nothing_to_settle",
            extra={
                "partner_type": partner.value,
                "settlement_type": settlement_type.value,
                "period_start": period_start,
                "period_end": period_end,
            },
        )
        return SettlementResult.empty(
            f"No {settlement_type.value} to settle for {partner.value} "
            f"between {period_start} and {period_end}"
        )

    def _rejected(
        self,
        settlement_type: SettlementType,
        partner: PartnerType | str,
        error: LedgerKernelError,
    ) -> SettlementResult:
        logger.warning(
            "settlement_rejected",
            extra={
                "partner_type": getattr(partner, "value", partner),
                "settlement_type": settlement_type.value,
                "error_code": error.code,
                "reason": str(error),
            },
        )
        return SettlementResult.failure(error)


def _daily_counts(rows: list[EscrowRecord], unit_amount: int | None = None) -> tuple[DailyCount, ...]:
    """
    Group escrow rows by the calendar day they were created.

    With ``unit_amount`` each row counts that much (a flat fee); otherwise
    its premium is summed.
    """
    counts: dict[date, int] = defaultdict(int)
    amounts: dict[date, int] = defaultdict(int)
    for row in rows:
        day = utc_date(row.created_at)
        counts[day] += 1
        amounts[day] += unit_amount if unit_amount is not None else row.premium_amount
    return tuple(
        DailyCount(reference_date=day, count=counts[day], amount=amounts[day])
        for day in sorted(counts)
    )
