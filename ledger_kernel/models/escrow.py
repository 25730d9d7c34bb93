"""
Module: ledger_kernel.models.escrow
Responsibility: ORM persistence for per-payment escrow rows and the claims
    that settlements place on them.
Architecture position: Kernel > Models.

Invariants enforced:
    - premium_amount > 0 and 1 <= payment_day <= 31 (check constraints).
    - transaction_ref is unique when supplied (uq_escrow_transaction_ref).
    - One claim per (escrow row, partner, settlement type)
      (uq_escrow_claim): an escrow row feeds at most one service-fee
      settlement per partner and at most one remittance.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import Base, TrackedBase, UUIDString
from ledger_kernel.domain.dtos import EscrowRecord


class EscrowType(str, Enum):
    DAY_1_IMMEDIATE = "day_1_immediate"
    DAYS_2_31_ACCUMULATED = "days_2_31_accumulated"

    @classmethod
    def for_payment_day(cls, payment_day: int) -> "EscrowType":
        return cls.DAY_1_IMMEDIATE if payment_day == 1 else cls.DAYS_2_31_ACCUMULATED


class RemittanceStatus(str, Enum):
    PENDING = "pending"
    REMITTED = "remitted"
    REFUNDED = "refunded"


class EscrowTracking(TrackedBase):
    """Premium held in escrow for one rider payment."""

    __tablename__ = "escrow_tracking"

    __table_args__ = (
        UniqueConstraint("transaction_ref", name="uq_escrow_transaction_ref"),
        CheckConstraint("premium_amount > 0", name="ck_escrow_premium_positive"),
        CheckConstraint(
            "payment_day >= 1 AND payment_day <= 31", name="ck_escrow_payment_day"
        ),
        Index("idx_escrow_rider", "rider_id"),
        Index("idx_escrow_status", "remittance_status"),
        Index("idx_escrow_created_at", "created_at"),
    )

    rider_id: Mapped[str] = mapped_column(String(100), nullable=False)

    transaction_ref: Mapped[str | None] = mapped_column(String(150), nullable=True)

    premium_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    payment_day: Mapped[int] = mapped_column(Integer, nullable=False)

    escrow_type: Mapped[EscrowType] = mapped_column(String(30), nullable=False)

    remittance_status: Mapped[RemittanceStatus] = mapped_column(
        String(20),
        nullable=False,
        default=RemittanceStatus.PENDING.value,
    )

    remitted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    remittance_settlement_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), nullable=True
    )

    refunded_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    refund_ref: Mapped[str | None] = mapped_column(String(150), nullable=True)

    def __repr__(self) -> str:
        return f"<EscrowTracking {self.rider_id} day={self.payment_day} {self.remittance_status}>"

    def to_dto(self) -> EscrowRecord:
        return EscrowRecord(
            id=self.id,
            rider_id=self.rider_id,
            premium_amount=self.premium_amount,
            payment_day=self.payment_day,
            escrow_type=EscrowType(self.escrow_type).value,
            remittance_status=RemittanceStatus(self.remittance_status).value,
            created_at=self.created_at,
            transaction_ref=self.transaction_ref,
            remitted_at=self.remitted_at,
            remittance_settlement_id=self.remittance_settlement_id,
            refunded_at=self.refunded_at,
            refund_ref=self.refund_ref,
        )


class EscrowClaim(Base):
    """Marks an escrow row as consumed by one settlement."""

    __tablename__ = "escrow_claims"

    __table_args__ = (
        UniqueConstraint(
            "escrow_id", "partner_type", "settlement_type", name="uq_escrow_claim"
        ),
        Index("idx_escrow_claim_settlement", "settlement_id"),
    )

    escrow_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("escrow_tracking.id"),
        nullable=False,
    )

    partner_type: Mapped[str] = mapped_column(String(30), nullable=False)

    settlement_type: Mapped[str] = mapped_column(String(30), nullable=False)

    settlement_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("partner_settlements.id"),
        nullable=False,
    )

    claimed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
