"""
Module: ledger_kernel.models.journal
Responsibility: ORM persistence for journal entries and journal lines, the
    single source of financial truth.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ only.

Invariants enforced:
    - transaction_ref is unique (uq_journal_transaction_ref): an originating
      transaction posts at most once.
    - entry_number is unique and allocated from a locked sequence counter.
    - Every line amount is positive (ck_journal_line_amount_positive); the
      side column makes "exactly one of debit or credit" true by construction.
    - Entries are created POSTED and never updated or deleted
      (db/immutability.py).

Failure modes:
    - IntegrityError on duplicate transaction_ref, turned into an
      ALREADY_POSTED result by LedgerService.
    - ImmutabilityViolationError on UPDATE/DELETE of an entry or line.
"""

from datetime import date, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any
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

from ledger_kernel.db.base import TrackedBase, UUIDString
from ledger_kernel.domain.dtos import JournalEntryRecord, JournalLineRecord, LineSide

if TYPE_CHECKING:
    from ledger_kernel.models.account import Account


class JournalEntryStatus(str, Enum):
    """Entries are written once, already posted."""

    POSTED = "posted"


class JournalEntry(TrackedBase):
    """A balanced set of journal lines posted for one originating transaction."""

    __tablename__ = "journal_entries"

    __table_args__ = (
        UniqueConstraint("transaction_ref", name="uq_journal_transaction_ref"),
        UniqueConstraint("entry_number", name="uq_journal_entry_number"),
        Index("idx_journal_entry_type", "entry_type"),
        Index("idx_journal_effective_date", "effective_date"),
        Index("idx_journal_reverses", "reverses_entry_id"),
    )

    entry_number: Mapped[str] = mapped_column(String(30), nullable=False)

    # Originating event tag (INITIAL_DEPOSIT, SETTLEMENT_PAYOUT, REVERSAL, ...)
    entry_type: Mapped[str] = mapped_column(String(50), nullable=False)

    status: Mapped[JournalEntryStatus] = mapped_column(
        String(20),
        nullable=False,
        default=JournalEntryStatus.POSTED.value,
    )

    transaction_ref: Mapped[str] = mapped_column(String(150), nullable=False)

    reverses_entry_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("journal_entries.id"),
        nullable=True,
    )

    posted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    effective_date: Mapped[date] = mapped_column(Date, nullable=False)

    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    rate_table_version: Mapped[str | None] = mapped_column(String(50), nullable=True)

    entry_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata", JSON, nullable=True
    )

    lines: Mapped[list["JournalLine"]] = relationship(
        back_populates="entry",
        cascade="all, delete-orphan",
        order_by="JournalLine.line_seq",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<JournalEntry {self.entry_number} {self.entry_type} {self.transaction_ref}>"

    @property
    def total_debits(self) -> int:
        return sum(line.debit_amount for line in self.lines)

    @property
    def total_credits(self) -> int:
        return sum(line.credit_amount for line in self.lines)

    @property
    def is_balanced(self) -> bool:
        return self.total_debits == self.total_credits

    @property
    def is_reversal(self) -> bool:
        return self.reverses_entry_id is not None

    def to_dto(self) -> JournalEntryRecord:
        return JournalEntryRecord(
            id=self.id,
            entry_number=self.entry_number,
            entry_type=self.entry_type,
            transaction_ref=self.transaction_ref,
            status=JournalEntryStatus(self.status).value,
            created_by=self.created_by_id,
            posted_at=self.posted_at,
            effective_date=self.effective_date,
            lines=tuple(line.to_dto() for line in self.lines),
            description=self.description,
            reverses_entry_id=self.reverses_entry_id,
            rate_table_version=self.rate_table_version,
            metadata=dict(self.entry_metadata or {}),
        )


class JournalLine(TrackedBase):
    """One debit or credit against one account."""

    __tablename__ = "journal_lines"

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_journal_line_amount_positive"),
        Index("idx_line_entry", "journal_entry_id"),
        Index("idx_line_account", "account_id"),
    )

    journal_entry_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("journal_entries.id"),
        nullable=False,
    )

    account_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("accounts.id"),
        nullable=False,
    )

    side: Mapped[LineSide] = mapped_column(String(10), nullable=False)

    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    description: Mapped[str | None] = mapped_column(String(500), nullable=True)

    line_seq: Mapped[int] = mapped_column(Integer, nullable=False)

    entry: Mapped["JournalEntry"] = relationship(back_populates="lines")

    account: Mapped["Account"] = relationship(lazy="joined")

    def __repr__(self) -> str:
        return f"<JournalLine {self.side} {self.amount}>"

    @property
    def is_debit(self) -> bool:
        return self.side == LineSide.DEBIT

    @property
    def debit_amount(self) -> int:
        return self.amount if self.is_debit else 0

    @property
    def credit_amount(self) -> int:
        return 0 if self.is_debit else self.amount

    def to_dto(self) -> JournalLineRecord:
        return JournalLineRecord(
            account_code=self.account.code,
            side=LineSide(self.side),
            amount=self.amount,
            line_seq=self.line_seq,
            description=self.description,
        )
