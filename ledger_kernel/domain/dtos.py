"""
DTOs -- immutable records that cross the service boundary.

Responsibility:
    Services accept and return these frozen dataclasses, never ORM
    instances, so callers cannot mutate persisted state by accident.
    ORM models expose ``to_dto()`` as the boundary converter.

Architecture position:
    Kernel > Domain -- zero I/O, no ORM imports.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any
from uuid import UUID


class LineSide(str, Enum):
    """Debit or credit side of a journal line."""

    DEBIT = "debit"
    CREDIT = "credit"

    @property
    def opposite(self) -> "LineSide":
        return LineSide.CREDIT if self is LineSide.DEBIT else LineSide.DEBIT


@dataclass(frozen=True)
class LineSpec:
    """
    One proposed journal line.

    ``amount`` is a positive integer in minor units; validation of sign and
    balance happens in the ledger before anything is written.
    """

    account_code: str
    side: LineSide
    amount: int
    description: str | None = None

    @classmethod
    def debit(cls, account_code: str, amount: int, description: str | None = None) -> LineSpec:
        return cls(account_code, LineSide.DEBIT, amount, description)

    @classmethod
    def credit(cls, account_code: str, amount: int, description: str | None = None) -> LineSpec:
        return cls(account_code, LineSide.CREDIT, amount, description)

    @property
    def debit_amount(self) -> int:
        return self.amount if self.side == LineSide.DEBIT else 0

    @property
    def credit_amount(self) -> int:
        return self.amount if self.side == LineSide.CREDIT else 0


@dataclass(frozen=True)
class JournalLineRecord:
    account_code: str
    side: LineSide
    amount: int
    line_seq: int
    description: str | None = None

    @property
    def debit_amount(self) -> int:
        return self.amount if self.side == LineSide.DEBIT else 0

    @property
    def credit_amount(self) -> int:
        return self.amount if self.side == LineSide.CREDIT else 0


@dataclass(frozen=True)
class JournalEntryRecord:
    """A posted journal entry with its ordered lines."""

    id: UUID
    entry_number: str
    entry_type: str
    transaction_ref: str
    status: str
    created_by: str
    posted_at: datetime
    effective_date: date
    lines: tuple[JournalLineRecord, ...]
    description: str | None = None
    reverses_entry_id: UUID | None = None
    rate_table_version: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def total_debits(self) -> int:
        return sum(line.debit_amount for line in self.lines)

    @property
    def total_credits(self) -> int:
        return sum(line.credit_amount for line in self.lines)

    @property
    def is_balanced(self) -> bool:
        return self.total_debits == self.total_credits

    def amount_for(self, account_code: str, side: LineSide) -> int:
        """Total of the lines on one account and side."""
        return sum(
            line.amount
            for line in self.lines
            if line.account_code == account_code and line.side == side
        )


@dataclass(frozen=True)
class AccountInfo:
    code: str
    name: str
    account_type: str
    normal_balance: str
    balance: int
    is_active: bool
    description: str | None = None


@dataclass(frozen=True)
class EscrowRecord:
    id: UUID
    rider_id: str
    premium_amount: int
    payment_day: int
    escrow_type: str
    remittance_status: str
    created_at: datetime
    transaction_ref: str | None = None
    remitted_at: datetime | None = None
    remittance_settlement_id: UUID | None = None
    refunded_at: datetime | None = None
    refund_ref: str | None = None
