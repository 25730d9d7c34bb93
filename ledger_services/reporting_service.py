"""
ledger_services.reporting_service -- read-only financial reports.

Responsibility:
    Trial balance, balance sheet, income statement, partner statement and
    account activity, all derived from posted journal lines at query time.

Architecture position:
    Services -- read only.  Never flushes or writes.

Invariants enforced:
    - Trial balance debits equal credits on a consistent ledger
      (``is_balanced``).
    - Balance sheet: assets == liabilities + equity + net income.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from uuid import UUID

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from ledger_config.schema import RateTable
from ledger_kernel.domain.dtos import LineSide
from ledger_kernel.domain.settlement import PartnerType, SettlementStatus
from ledger_kernel.exceptions import AccountNotFoundError, ValidationError
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.account import Account, AccountType
from ledger_kernel.models.journal import JournalEntry, JournalLine
from ledger_kernel.models.settlement import PartnerSettlement

logger = get_logger("services.reporting")


@dataclass(frozen=True)
class TrialBalanceRow:
    account_code: str
    account_name: str
    account_type: str
    debit_total: int
    credit_total: int

    @property
    def debit_balance(self) -> int:
        return max(self.debit_total - self.credit_total, 0)

    @property
    def credit_balance(self) -> int:
        return max(self.credit_total - self.debit_total, 0)


@dataclass(frozen=True)
class TrialBalance:
    as_of: date | None
    rows: tuple[TrialBalanceRow, ...]

    @property
    def total_debits(self) -> int:
        return sum(r.debit_balance for r in self.rows)

    @property
    def total_credits(self) -> int:
        return sum(r.credit_balance for r in self.rows)

    @property
    def is_balanced(self) -> bool:
        return self.total_debits == self.total_credits


@dataclass(frozen=True)
class StatementLineItem:
    account_code: str
    account_name: str
    amount: int


@dataclass(frozen=True)
class BalanceSheet:
    as_of: date | None
    assets: tuple[StatementLineItem, ...]
    liabilities: tuple[StatementLineItem, ...]
    equity: tuple[StatementLineItem, ...]
    net_income: int

    @property
    def total_assets(self) -> int:
        return sum(i.amount for i in self.assets)

    @property
    def total_liabilities(self) -> int:
        return sum(i.amount for i in self.liabilities)

    @property
    def total_equity(self) -> int:
        return sum(i.amount for i in self.equity) + self.net_income

    @property
    def is_balanced(self) -> bool:
        return self.total_assets == self.total_liabilities + self.total_equity


@dataclass(frozen=True)
class IncomeStatement:
    period_start: date
    period_end: date
    income: tuple[StatementLineItem, ...]
    expenses: tuple[StatementLineItem, ...]

    @property
    def total_income(self) -> int:
        return sum(i.amount for i in self.income)

    @property
    def total_expenses(self) -> int:
        return sum(i.amount for i in self.expenses)

    @property
    def net_income(self) -> int:
        return self.total_income - self.total_expenses


@dataclass(frozen=True)
class PartnerStatement:
    """What the ledger owes a partner and what has been settled."""

    partner_type: PartnerType
    period_start: date
    period_end: date
    payables: dict[str, int]
    settled_amount: int
    pending_amount: int
    settlement_count: int

    @property
    def total_payable(self) -> int:
        return sum(self.payables.values())


@dataclass(frozen=True)
class ActivityLine:
    entry_id: UUID
    entry_number: str
    entry_type: str
    transaction_ref: str
    effective_date: date
    side: LineSide
    amount: int
    running_balance: int
    description: str | None = None


@dataclass(frozen=True)
class AccountActivity:
    account_code: str
    period_start: date
    period_end: date
    opening_balance: int
    closing_balance: int
    lines: tuple[ActivityLine, ...]


class ReportingService:
    def __init__(self, session: Session, rate_table: RateTable):
        self._session = session
        self._rate_table = rate_table

    def trial_balance(self, as_of: date | None = None) -> TrialBalance:
        """Debit and credit totals per account, lines up to ``as_of``."""
        totals = self._totals(end=as_of)
        rows = tuple(
            TrialBalanceRow(
                account_code=account.code,
                account_name=account.name,
                account_type=account.account_type,
                debit_total=totals.get(account.id, (0, 0))[0],
                credit_total=totals.get(account.id, (0, 0))[1],
            )
            for account in self._accounts()
        )
        report = TrialBalance(as_of=as_of, rows=rows)
        if not report.is_balanced:
            logger.error(
                "trial_balance_out_of_balance",
                extra={"total_debits": report.total_debits, "total_credits": report.total_credits},
            )
        return report

    def balance_sheet(self, as_of: date | None = None) -> BalanceSheet:
        totals = self._totals(end=as_of)
        sections: dict[str, list[StatementLineItem]] = defaultdict(list)
        net_income = 0
        for account in self._accounts():
            amount = _natural_balance(account, totals.get(account.id, (0, 0)))
            if account.account_type == AccountType.INCOME:
                net_income += amount
            elif account.account_type == AccountType.EXPENSE:
                net_income -= amount
            else:
                sections[account.account_type].append(
                    StatementLineItem(account.code, account.name, amount)
                )
        return BalanceSheet(
            as_of=as_of,
            assets=tuple(sections[AccountType.ASSET.value]),
            liabilities=tuple(sections[AccountType.LIABILITY.value]),
            equity=tuple(sections[AccountType.EQUITY.value]),
            net_income=net_income,
        )

    def income_statement(self, period_start: date, period_end: date) -> IncomeStatement:
        _check_period(period_start, period_end)
        totals = self._totals(start=period_start, end=period_end)
        income: list[StatementLineItem] = []
        expenses: list[StatementLineItem] = []
        for account in self._accounts():
            if account.account_type not in (AccountType.INCOME, AccountType.EXPENSE):
                continue
            item = StatementLineItem(
                account.code, account.name, _natural_balance(account, totals.get(account.id, (0, 0)))
            )
            (income if account.account_type == AccountType.INCOME else expenses).append(item)
        return IncomeStatement(
            period_start=period_start,
            period_end=period_end,
            income=tuple(income),
            expenses=tuple(expenses),
        )

    def partner_statement(
        self, partner_type: PartnerType, period_start: date, period_end: date
    ) -> PartnerStatement:
        """
        Payable balances for a partner as of ``period_end`` and the
        settlements raised for it within the period.
        """
        _check_period(period_start, period_end)
        partner = PartnerType(partner_type)
        accounts = self._rate_table.accounts
        if partner in (PartnerType.MOBILIZATION_A, PartnerType.MOBILIZATION_B):
            payable_codes = {
                "service_fee": accounts.service_fee_payable(partner.value),
                "commission": accounts.commission_payable(partner.value),
            }
        elif partner == PartnerType.UNDERWRITER:
            payable_codes = {"premium": accounts.premium_payable}
        else:
            payable_codes = {"commission_receivable": accounts.commission_receivable}

        totals = self._totals(end=period_end)
        payables: dict[str, int] = {}
        for role, code in payable_codes.items():
            account = self._account(code)
            payables[role] = _natural_balance(account, totals.get(account.id, (0, 0)))

        settlements = self._session.execute(
            select(PartnerSettlement).where(
                PartnerSettlement.partner_type == partner.value,
                PartnerSettlement.period_start >= period_start,
                PartnerSettlement.period_end <= period_end,
            )
        ).scalars().all()
        settled = sum(
            s.total_amount for s in settlements if s.status == SettlementStatus.COMPLETED
        )
        pending = sum(
            s.total_amount
            for s in settlements
            if s.status not in (SettlementStatus.COMPLETED, SettlementStatus.CANCELLED)
        )
        return PartnerStatement(
            partner_type=partner,
            period_start=period_start,
            period_end=period_end,
            payables=payables,
            settled_amount=settled,
            pending_amount=pending,
            settlement_count=len(settlements),
        )

    def account_activity(self, code: str, period_start: date, period_end: date) -> AccountActivity:
        """Lines on one account in the period, with a running balance."""
        _check_period(period_start, period_end)
        account = self._account(code)

        opening = 0
        if (before := self._totals(end=period_start, exclusive_end=True).get(account.id)) is not None:
            opening = _natural_balance(account, before)

        rows = self._session.execute(
            select(JournalLine, JournalEntry)
            .join(JournalEntry, JournalLine.journal_entry_id == JournalEntry.id)
            .where(
                JournalLine.account_id == account.id,
                JournalEntry.effective_date >= period_start,
                JournalEntry.effective_date <= period_end,
            )
            .order_by(JournalEntry.effective_date, JournalEntry.entry_number, JournalLine.line_seq)
        ).all()

        balance = opening
        lines: list[ActivityLine] = []
        for line, entry in rows:
            side = LineSide(line.side)
            balance += account.signed_delta(side, line.amount)
            lines.append(
                ActivityLine(
                    entry_id=entry.id,
                    entry_number=entry.entry_number,
                    entry_type=entry.entry_type,
                    transaction_ref=entry.transaction_ref,
                    effective_date=entry.effective_date,
                    side=side,
                    amount=line.amount,
                    running_balance=balance,
                    description=line.description,
                )
            )
        return AccountActivity(
            account_code=code,
            period_start=period_start,
            period_end=period_end,
            opening_balance=opening,
            closing_balance=balance,
            lines=tuple(lines),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _accounts(self) -> list[Account]:
        return list(self._session.execute(select(Account).order_by(Account.code)).scalars())

    def _account(self, code: str) -> Account:
        account = self._session.execute(
            select(Account).where(Account.code == code)
        ).scalar_one_or_none()
        if account is None:
            raise AccountNotFoundError(code)
        return account

    def _totals(
        self,
        start: date | None = None,
        end: date | None = None,
        exclusive_end: bool = False,
    ) -> dict[UUID, tuple[int, int]]:
        """(debits, credits) per account id over lines in the date range."""
        debit_sum = func.sum(
            case((JournalLine.side == LineSide.DEBIT.value, JournalLine.amount), else_=0)
        )
        credit_sum = func.sum(
            case((JournalLine.side == LineSide.CREDIT.value, JournalLine.amount), else_=0)
        )
        query = (
            select(JournalLine.account_id, debit_sum, credit_sum)
            .join(JournalEntry, JournalLine.journal_entry_id == JournalEntry.id)
            .group_by(JournalLine.account_id)
        )
        if start is not None:
            query = query.where(JournalEntry.effective_date >= start)
        if end is not None:
            query = query.where(
                JournalEntry.effective_date < end if exclusive_end else JournalEntry.effective_date <= end
            )
        return {
            account_id: (int(debits or 0), int(credits or 0))
            for account_id, debits, credits in self._session.execute(query).all()
        }


def _natural_balance(account: Account, totals: tuple[int, int]) -> int:
    debits, credits = totals
    return debits - credits if account.is_debit_normal else credits - debits


def _check_period(period_start: date, period_end: date) -> None:
    if period_end < period_start:
        raise ValidationError(
            f"period_end {period_end} is before period_start {period_start}",
            field="period_end",
        )
