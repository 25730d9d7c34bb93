"""
EscrowService -- per-payment escrow rows and the claims placed on them.

Responsibility:
    Records each rider payment's premium held in escrow, answers the
    queries settlements need, and hands escrow rows to settlements at most
    once per (partner, settlement type).

Invariants enforced:
    - premium_amount > 0, 1 <= payment_day <= 31; escrow_type follows the
      payment day.
    - A repeated transaction_ref returns the existing row.
    - Service-fee claims are exclusive through the uq_escrow_claim unique
      constraint; remittance claims through a conditional UPDATE that only
      flips PENDING rows.  Either way a lost race aborts the whole claim
      with EscrowAlreadyClaimedError and nothing is half-claimed.

Concurrency:
    Claims run inside savepoints of the caller's transaction.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from typing import Iterable
from uuid import UUID

from sqlalchemy import and_, delete, exists, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledger_kernel.domain.clock import Clock, SystemClock, period_bounds
from ledger_kernel.domain.dtos import EscrowRecord
from ledger_kernel.domain.settlement import PartnerType, SettlementType
from ledger_kernel.exceptions import EscrowAlreadyClaimedError, InvalidEscrowError
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.escrow import (
    EscrowClaim,
    EscrowTracking,
    EscrowType,
    RemittanceStatus,
)

logger = get_logger("services.escrow")


@dataclass(frozen=True)
class EscrowQuery:
    """
    Filters for ``EscrowService.find``.  Unset fields do not filter.

    ``unclaimed_for`` keeps only rows without a claim for that
    (partner, settlement type).
    """

    period_start: date | None = None
    period_end: date | None = None
    remittance_status: RemittanceStatus | None = None
    rider_id: str | None = None
    escrow_type: EscrowType | None = None
    unclaimed_for: tuple[PartnerType, SettlementType] | None = None


@dataclass(frozen=True)
class RiderEscrowSummary:
    rider_id: str
    total_premium: int
    pending_amount: int
    remitted_amount: int
    refunded_amount: int
    pending_count: int
    remitted_count: int
    refunded_count: int
    days_paid: int


@dataclass(frozen=True)
class PendingTotals:
    day1_amount: int
    day1_count: int
    accumulated_amount: int
    accumulated_count: int

    @property
    def total_amount(self) -> int:
        return self.day1_amount + self.accumulated_amount


class EscrowService:
    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    def record_escrow(
        self,
        rider_id: str,
        premium_amount: int,
        payment_day: int,
        *,
        transaction_ref: str | None = None,
        actor_id: str = "system",
    ) -> EscrowRecord:
        """
        Record the premium portion of one payment.

        Raises:
            InvalidEscrowError: Non-positive premium or payment day outside 1..31.
        """
        if isinstance(premium_amount, bool) or not isinstance(premium_amount, int) or premium_amount <= 0:
            raise InvalidEscrowError(
                f"premium_amount must be a positive integer, got {premium_amount!r}",
                field="premium_amount",
            )
        if isinstance(payment_day, bool) or not isinstance(payment_day, int) or not 1 <= payment_day <= 31:
            raise InvalidEscrowError(
                f"payment_day must be between 1 and 31, got {payment_day!r}",
                field="payment_day",
            )

        if transaction_ref is not None:
            existing = self._by_transaction_ref(transaction_ref)
            if existing is not None:
                logger.info(
                    "escrow_already_recorded",
                    extra={"escrow_id": str(existing.id), "transaction_ref": transaction_ref},
                )
                return existing.to_dto()

        row = EscrowTracking(
            rider_id=rider_id,
            transaction_ref=transaction_ref,
            premium_amount=premium_amount,
            payment_day=payment_day,
            escrow_type=EscrowType.for_payment_day(payment_day).value,
            remittance_status=RemittanceStatus.PENDING.value,
            created_at=self._clock.now(),
            created_by_id=actor_id,
        )
        try:
            with self._session.begin_nested():
                self._session.add(row)
                self._session.flush()
        except IntegrityError:
            existing = self._by_transaction_ref(transaction_ref) if transaction_ref else None
            if existing is None:
                raise
            return existing.to_dto()

        logger.info(
            "escrow_recorded",
            extra={
                "escrow_id": str(row.id),
                "rider_id": rider_id,
                "premium_amount": premium_amount,
                "payment_day": payment_day,
                "escrow_type": row.escrow_type,
            },
        )
        return row.to_dto()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, escrow_id: UUID) -> EscrowRecord | None:
        row = self._session.get(EscrowTracking, escrow_id)
        return row.to_dto() if row is not None else None

    def find(self, query: EscrowQuery) -> list[EscrowRecord]:
        """Rows matching every set filter, oldest first."""
        stmt = select(EscrowTracking)
        if query.period_start is not None:
            start, _ = period_bounds(query.period_start, query.period_start)
            stmt = stmt.where(EscrowTracking.created_at >= start)
        if query.period_end is not None:
            _, end = period_bounds(query.period_end, query.period_end)
            stmt = stmt.where(EscrowTracking.created_at < end)
        if query.remittance_status is not None:
            stmt = stmt.where(EscrowTracking.remittance_status == query.remittance_status.value)
        if query.rider_id is not None:
            stmt = stmt.where(EscrowTracking.rider_id == query.rider_id)
        if query.escrow_type is not None:
            stmt = stmt.where(EscrowTracking.escrow_type == query.escrow_type.value)
        if query.unclaimed_for is not None:
            partner_type, settlement_type = query.unclaimed_for
            stmt = stmt.where(
                ~exists().where(
                    and_(
                        EscrowClaim.escrow_id == EscrowTracking.id,
                        EscrowClaim.partner_type == partner_type.value,
                        EscrowClaim.settlement_type == settlement_type.value,
                    )
                )
            )
        stmt = stmt.order_by(EscrowTracking.created_at, EscrowTracking.id)
        return [row.to_dto() for row in self._session.execute(stmt).scalars()]

    def rider_summary(self, rider_id: str) -> RiderEscrowSummary:
        rows = list(
            self._session.execute(
                select(EscrowTracking).where(EscrowTracking.rider_id == rider_id)
            ).scalars()
        )
        amounts: dict[str, int] = defaultdict(int)
        counts: dict[str, int] = defaultdict(int)
        for row in rows:
            amounts[row.remittance_status] += row.premium_amount
            counts[row.remittance_status] += 1
        return RiderEscrowSummary(
            rider_id=rider_id,
            total_premium=sum(amounts.values()),
            pending_amount=amounts[RemittanceStatus.PENDING.value],
            remitted_amount=amounts[RemittanceStatus.REMITTED.value],
            refunded_amount=amounts[RemittanceStatus.REFUNDED.value],
            pending_count=counts[RemittanceStatus.PENDING.value],
            remitted_count=counts[RemittanceStatus.REMITTED.value],
            refunded_count=counts[RemittanceStatus.REFUNDED.value],
            days_paid=len({row.payment_day for row in rows}),
        )

    def pending_totals(self) -> PendingTotals:
        """Pending Day-1 premium vs accumulated (days 2-31) premium."""
        rows = self._session.execute(
            select(
                EscrowTracking.escrow_type,
                func.coalesce(func.sum(EscrowTracking.premium_amount), 0),
                func.count(EscrowTracking.id),
            )
            .where(EscrowTracking.remittance_status == RemittanceStatus.PENDING.value)
            .group_by(EscrowTracking.escrow_type)
        ).all()
        by_type = {escrow_type: (int(amount), int(count)) for escrow_type, amount, count in rows}
        day1 = by_type.get(EscrowType.DAY_1_IMMEDIATE.value, (0, 0))
        accumulated = by_type.get(EscrowType.DAYS_2_31_ACCUMULATED.value, (0, 0))
        return PendingTotals(
            day1_amount=day1[0],
            day1_count=day1[1],
            accumulated_amount=accumulated[0],
            accumulated_count=accumulated[1],
        )

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    def claim_for_settlement(
        self,
        escrow_ids: Iterable[UUID],
        partner_type: PartnerType,
        settlement_type: SettlementType,
        settlement_id: UUID,
    ) -> int:
        """
        Claim escrow rows for one partner's settlement.

        Raises:
            EscrowAlreadyClaimedError: Any row already claimed for this
                partner and settlement type.  No claim row survives.
        """
        ids = list(escrow_ids)
        if not ids:
            return 0
        now = self._clock.now()
        try:
            with self._session.begin_nested():
                self._session.add_all(
                    EscrowClaim(
                        escrow_id=escrow_id,
                        partner_type=partner_type.value,
                        settlement_type=settlement_type.value,
                        settlement_id=settlement_id,
                        claimed_at=now,
                    )
                    for escrow_id in ids
                )
                self._session.flush()
        except IntegrityError as exc:
            error = EscrowAlreadyClaimedError(
                f"{partner_type.value}:{settlement_type.value}", len(ids), 0
            )
            logger.warning("escrow_claim_conflict", extra={"settlement_id": str(settlement_id)})
            raise error from exc

        logger.info(
            "escrow_claimed",
            extra={
                "settlement_id": str(settlement_id),
                "partner_type": partner_type.value,
                "settlement_type": settlement_type.value,
                "escrow_count": len(ids),
            },
        )
        return len(ids)

    def claim_for_remittance(self, escrow_ids: Iterable[UUID], settlement_id: UUID) -> int:
        """
        Flip PENDING rows to REMITTED for an underwriter remittance.

        ``remitted_at`` stays unset until the remittance is paid
        (``mark_remittance_paid``).

        The conditional UPDATE only touches rows still PENDING; if fewer rows
        change than were requested another settlement won the race and the
        whole claim is rolled back.
        """
        ids = list(escrow_ids)
        if not ids:
            return 0
        now = self._clock.now()
        updated = 0
        try:
            with self._session.begin_nested():
                result = self._session.execute(
                    update(EscrowTracking)
                    .where(
                        EscrowTracking.id.in_(ids),
                        EscrowTracking.remittance_status == RemittanceStatus.PENDING.value,
                    )
                    .values(
                        remittance_status=RemittanceStatus.REMITTED.value,
                        remittance_settlement_id=settlement_id,
                    )
                    .execution_options(synchronize_session="fetch")
                )
                updated = result.rowcount
                if updated != len(ids):
                    raise EscrowAlreadyClaimedError(
                        f"{PartnerType.UNDERWRITER.value}:{SettlementType.REMITTANCE.value}",
                        len(ids),
                        updated,
                    )
                self._session.add_all(
                    EscrowClaim(
                        escrow_id=escrow_id,
                        partner_type=PartnerType.UNDERWRITER.value,
                        settlement_type=SettlementType.REMITTANCE.value,
                        settlement_id=settlement_id,
                        claimed_at=now,
                    )
                    for escrow_id in ids
                )
                self._session.flush()
        except EscrowAlreadyClaimedError:
            logger.warning(
                "escrow_claim_conflict",
                extra={"settlement_id": str(settlement_id), "requested": len(ids), "claimed": updated},
            )
            raise
        except IntegrityError as exc:
            raise EscrowAlreadyClaimedError(
                f"{PartnerType.UNDERWRITER.value}:{SettlementType.REMITTANCE.value}",
                len(ids),
                0,
            ) from exc

        logger.info(
            "escrow_remitted",
            extra={"settlement_id": str(settlement_id), "escrow_count": updated},
        )
        return updated

    def release_claims(self, settlement_id: UUID) -> int:
        """
        Undo a cancelled settlement's claims.

        Remitted rows of the settlement go back to PENDING so the next
        settlement can pick them up.
        """
        with self._session.begin_nested():
            self._session.execute(
                update(EscrowTracking)
                .where(
                    EscrowTracking.remittance_settlement_id == settlement_id,
                    EscrowTracking.remittance_status == RemittanceStatus.REMITTED.value,
                )
                .values(
                    remittance_status=RemittanceStatus.PENDING.value,
                    remitted_at=None,
                    remittance_settlement_id=None,
                )
                .execution_options(synchronize_session="fetch")
            )
            result = self._session.execute(
                delete(EscrowClaim)
                .where(EscrowClaim.settlement_id == settlement_id)
                .execution_options(synchronize_session="fetch")
            )
        released = result.rowcount
        logger.info(
            "escrow_claims_released",
            extra={"settlement_id": str(settlement_id), "escrow_count": released},
        )
        return released

    def mark_remittance_paid(self, settlement_id: UUID) -> int:
        """Stamp ``remitted_at`` on the rows of a completed remittance."""
        now = self._clock.now()
        result = self._session.execute(
            update(EscrowTracking)
            .where(
                EscrowTracking.remittance_settlement_id == settlement_id,
                EscrowTracking.remittance_status == RemittanceStatus.REMITTED.value,
                EscrowTracking.remitted_at.is_(None),
            )
            .values(remitted_at=now)
            .execution_options(synchronize_session="fetch")
        )
        logger.info(
            "escrow_remittance_paid",
            extra={"settlement_id": str(settlement_id), "escrow_count": result.rowcount},
        )
        return result.rowcount

    def mark_refunded(self, rider_id: str, refund_ref: str) -> int:
        """PENDING rows of the rider become REFUNDED; remitted rows stay."""
        now = self._clock.now()
        result = self._session.execute(
            update(EscrowTracking)
            .where(
                EscrowTracking.rider_id == rider_id,
                EscrowTracking.remittance_status == RemittanceStatus.PENDING.value,
            )
            .values(
                remittance_status=RemittanceStatus.REFUNDED.value,
                refunded_at=now,
                refund_ref=refund_ref,
            )
            .execution_options(synchronize_session="fetch")
        )
        logger.info(
            "escrow_refunded",
            extra={"rider_id": rider_id, "refund_ref": refund_ref, "escrow_count": result.rowcount},
        )
        return result.rowcount

    def _by_transaction_ref(self, transaction_ref: str) -> EscrowTracking | None:
        return self._session.execute(
            select(EscrowTracking).where(EscrowTracking.transaction_ref == transaction_ref)
        ).scalar_one_or_none()
