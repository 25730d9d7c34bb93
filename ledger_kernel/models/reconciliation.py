"""
Module: ledger_kernel.models.reconciliation
Responsibility: ORM persistence for reconciliation runs and their items.
Architecture position: Kernel > Models.

Invariants enforced:
    - A CLOSED record and its items are no longer changed
      (ReconciliationService raises ReconciliationClosedError).
    - An item is statement-only (no ledger side), ledger-only (no statement
      side) or matched (both sides).
"""

from datetime import date, datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    BigInteger,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledger_kernel.db.base import TrackedBase, UUIDString


class ReconciliationStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class ItemStatus(str, Enum):
    MATCHED = "matched"
    UNMATCHED = "unmatched"
    RESOLVED = "resolved"


class MatchType(str, Enum):
    EXACT = "exact"
    FUZZY = "fuzzy"
    MANUAL = "manual"


class ReconciliationRecord(TrackedBase):
    """One reconciliation run of an external statement against the ledger."""

    __tablename__ = "reconciliation_records"

    __table_args__ = (
        Index("idx_reconciliation_period", "period_start", "period_end"),
        Index("idx_reconciliation_status", "status"),
    )

    source_name: Mapped[str] = mapped_column(String(100), nullable=False)

    period_start: Mapped[date] = mapped_column(Date, nullable=False)

    period_end: Mapped[date] = mapped_column(Date, nullable=False)

    status: Mapped[ReconciliationStatus] = mapped_column(
        String(10),
        nullable=False,
        default=ReconciliationStatus.OPEN.value,
    )

    source_total: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    ledger_total: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    variance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    matched_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unmatched_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    auto_matched_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    manual_matched_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    items: Mapped[list["ReconciliationItem"]] = relationship(
        back_populates="record",
        cascade="all, delete-orphan",
        order_by="ReconciliationItem.item_seq",
        lazy="selectin",
    )

    @property
    def is_closed(self) -> bool:
        return self.status == ReconciliationStatus.CLOSED

    def refresh_counts(self) -> None:
        """Recompute the summary counters from the items."""
        self.matched_count = sum(1 for i in self.items if i.status == ItemStatus.MATCHED)
        self.unmatched_count = sum(1 for i in self.items if i.status == ItemStatus.UNMATCHED)
        self.auto_matched_count = sum(
            1
            for i in self.items
            if i.status == ItemStatus.MATCHED and i.match_type != MatchType.MANUAL
        )
        self.manual_matched_count = sum(
            1
            for i in self.items
            if i.status == ItemStatus.MATCHED and i.match_type == MatchType.MANUAL
        )


class ReconciliationItem(TrackedBase):
    __tablename__ = "reconciliation_items"

    __table_args__ = (
        Index("idx_reconciliation_item_record", "reconciliation_id"),
        Index("idx_reconciliation_item_status", "status"),
    )

    reconciliation_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("reconciliation_records.id"), nullable=False
    )

    item_seq: Mapped[int] = mapped_column(Integer, nullable=False)

    # Statement side
    source_reference: Mapped[str | None] = mapped_column(String(150), nullable=True)
    source_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    source_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    source_description: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Ledger side
    ledger_transaction_ref: Mapped[str | None] = mapped_column(String(150), nullable=True)
    ledger_entry_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    ledger_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    ledger_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    status: Mapped[ItemStatus] = mapped_column(String(20), nullable=False)
    match_type: Mapped[MatchType | None] = mapped_column(String(20), nullable=True)
    match_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    variance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    matched_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    resolved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    record: Mapped["ReconciliationRecord"] = relationship(back_populates="items")

    @property
    def is_ledger_only(self) -> bool:
        return self.source_reference is None and self.source_amount is None
