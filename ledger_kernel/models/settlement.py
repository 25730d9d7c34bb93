"""
Module: ledger_kernel.models.settlement
Responsibility: ORM persistence for partner settlements and their line
    items.
Architecture position: Kernel > Models.  Lifecycle rules live in
    domain/settlement.py and are applied by ledger_services.settlement_service.

Invariants enforced:
    - settlement_number is unique (uq_settlement_number).
    - total_amount >= 0 and transaction_count >= 0.
    - journal_entry_id links the entry posted at creation (if any) and
      payout_entry_id the entry posted at completion.
"""

from datetime import date, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledger_kernel.db.base import Base, TrackedBase, UUIDString
from ledger_kernel.domain.settlement import (
    PartnerType,
    SettlementLineItemRecord,
    SettlementRecord,
    SettlementStatus,
    SettlementType,
    metadata_from_dict,
)


class PartnerSettlement(TrackedBase):
    """A payable to (or receivable from) one partner for one period."""

    __tablename__ = "partner_settlements"

    __table_args__ = (
        UniqueConstraint("settlement_number", name="uq_settlement_number"),
        CheckConstraint("total_amount >= 0", name="ck_settlement_total_non_negative"),
        CheckConstraint(
            "transaction_count >= 0", name="ck_settlement_count_non_negative"
        ),
        Index("idx_settlement_partner_period", "partner_type", "period_start"),
        Index("idx_settlement_status", "status"),
    )

    settlement_number: Mapped[str] = mapped_column(String(40), nullable=False)

    partner_type: Mapped[PartnerType] = mapped_column(String(30), nullable=False)

    settlement_type: Mapped[SettlementType] = mapped_column(String(30), nullable=False)

    period_start: Mapped[date] = mapped_column(Date, nullable=False)

    period_end: Mapped[date] = mapped_column(Date, nullable=False)

    total_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    transaction_count: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[SettlementStatus] = mapped_column(
        String(20),
        nullable=False,
        default=SettlementStatus.PENDING.value,
    )

    approved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    processed_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    completed_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    cancelled_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    bank_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    bank_account: Mapped[str | None] = mapped_column(String(100), nullable=True)
    confirmation_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)

    journal_entry_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("journal_entries.id"), nullable=True
    )
    payout_entry_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("journal_entries.id"), nullable=True
    )

    settlement_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata", JSON, nullable=True
    )

    line_items: Mapped[list["SettlementLineItem"]] = relationship(
        back_populates="settlement",
        cascade="all, delete-orphan",
        order_by="SettlementLineItem.line_number",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<PartnerSettlement {self.settlement_number} {self.status}>"

    def to_dto(self) -> SettlementRecord:
        return SettlementRecord(
            id=self.id,
            settlement_number=self.settlement_number,
            partner_type=PartnerType(self.partner_type),
            settlement_type=SettlementType(self.settlement_type),
            period_start=self.period_start,
            period_end=self.period_end,
            total_amount=self.total_amount,
            transaction_count=self.transaction_count,
            status=SettlementStatus(self.status),
            created_by=self.created_by_id,
            created_at=self.created_at,
            line_items=tuple(item.to_dto() for item in self.line_items),
            metadata=metadata_from_dict(self.settlement_metadata),
            approved_by=self.approved_by,
            approved_at=self.approved_at,
            processed_by=self.processed_by,
            processed_at=self.processed_at,
            completed_by=self.completed_by,
            completed_at=self.completed_at,
            cancelled_by=self.cancelled_by,
            cancelled_at=self.cancelled_at,
            cancellation_reason=self.cancellation_reason,
            bank_reference=self.bank_reference,
            bank_account=self.bank_account,
            confirmation_reference=self.confirmation_reference,
            journal_entry_id=self.journal_entry_id,
            payout_entry_id=self.payout_entry_id,
        )


class SettlementLineItem(Base):
    __tablename__ = "settlement_line_items"

    __table_args__ = (
        UniqueConstraint("settlement_id", "line_number", name="uq_settlement_line"),
    )

    settlement_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("partner_settlements.id"), nullable=False
    )

    line_number: Mapped[int] = mapped_column(Integer, nullable=False)

    reference_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    description: Mapped[str | None] = mapped_column(String(500), nullable=True)

    settlement: Mapped["PartnerSettlement"] = relationship(back_populates="line_items")

    def to_dto(self) -> SettlementLineItemRecord:
        return SettlementLineItemRecord(
            line_number=self.line_number,
            amount=self.amount,
            count=self.count,
            reference_date=self.reference_date,
            description=self.description,
        )
