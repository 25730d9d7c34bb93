"""
Module: ledger_kernel.models.account
Responsibility: ORM persistence for the chart of accounts and the running
    balance of each account.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/dtos.py only.

Invariants enforced:
    - code is unique (uq_account_code).
    - normal_balance follows account_type: ASSET and EXPENSE are debit-normal,
      everything else credit-normal.
    - balance changes only through posted journal lines (LedgerService);
      account_type, normal_balance and code are locked once referenced
      (db/immutability.py).
"""

from enum import Enum

from sqlalchemy import BigInteger, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import TrackedBase
from ledger_kernel.domain.dtos import AccountInfo, LineSide


class AccountType(str, Enum):
    """Types of accounts in the chart of accounts."""

    ASSET = "asset"
    LIABILITY = "liability"
    EQUITY = "equity"
    INCOME = "income"
    EXPENSE = "expense"

    @property
    def normal_balance(self) -> "NormalBalance":
        if self in (AccountType.ASSET, AccountType.EXPENSE):
            return NormalBalance.DEBIT
        return NormalBalance.CREDIT


class NormalBalance(str, Enum):
    """Normal balance side for an account."""

    DEBIT = "debit"
    CREDIT = "credit"


class AccountStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class Account(TrackedBase):
    """
    Chart of Accounts entry holding its running balance.

    ``balance`` is expressed in the account's normal direction, so a
    healthy liability carries a positive balance just like an asset.
    """

    __tablename__ = "accounts"

    __table_args__ = (
        UniqueConstraint("code", name="uq_account_code"),
        Index("idx_account_type", "account_type"),
    )

    code: Mapped[str] = mapped_column(String(20), nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    account_type: Mapped[AccountType] = mapped_column(String(20), nullable=False)

    normal_balance: Mapped[NormalBalance] = mapped_column(String(10), nullable=False)

    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    status: Mapped[AccountStatus] = mapped_column(
        String(10),
        nullable=False,
        default=AccountStatus.ACTIVE.value,
    )

    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<Account {self.code}: {self.name}>"

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    @property
    def is_debit_normal(self) -> bool:
        return self.normal_balance == NormalBalance.DEBIT

    def signed_delta(self, side: LineSide, amount: int) -> int:
        """Balance change caused by a line of ``amount`` on ``side``."""
        if (side == LineSide.DEBIT) == self.is_debit_normal:
            return amount
        return -amount

    def to_dto(self) -> AccountInfo:
        return AccountInfo(
            code=self.code,
            name=self.name,
            account_type=AccountType(self.account_type).value,
            normal_balance=NormalBalance(self.normal_balance).value,
            balance=self.balance,
            is_active=self.is_active,
            description=self.description,
        )
