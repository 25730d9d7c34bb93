"""
Ledger service - persistence layer for journal entries and balances.

The Ledger is responsible for:
- Validating proposed lines (positive amounts, debits == credits, known
  and active accounts) before anything is written
- Enforcing at-most-once posting per transaction reference
- Assigning entry numbers transactionally
- Updating account running balances under row locks
- Reversing entries

The Ledger does NOT:
- Decide which lines an event produces (that's the PostingEngine)
- Commit; all work happens inside the caller's transaction
"""

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.dtos import AccountInfo, JournalEntryRecord, LineSide, LineSpec
from ledger_kernel.exceptions import (
    AccountInactiveError,
    AccountNotFoundError,
    DuplicatePostingError,
    EntryNotFoundError,
    EntryNotReversibleError,
    InvalidLineError,
    LedgerImbalanceError,
    LedgerKernelError,
    UnbalancedEntryError,
)
from ledger_kernel.logging_config import LogContext, get_logger
from ledger_kernel.models.account import Account
from ledger_kernel.models.journal import JournalEntry, JournalEntryStatus, JournalLine
from ledger_kernel.services.sequence_service import SequenceService

logger = get_logger("services.ledger")

REVERSAL_ENTRY_TYPE = "REVERSAL"


class PostStatus(str, Enum):
    """Result status of a posting."""

    POSTED = "posted"
    ALREADY_POSTED = "already_posted"
    REJECTED = "rejected"


@dataclass(frozen=True)
class LedgerResult:
    """
    Result of a LedgerService posting.

    Contains the status and either the entry or the typed error.
    """

    status: PostStatus
    entry: JournalEntryRecord | None = None
    error: LedgerKernelError | None = None
    message: str | None = None

    @classmethod
    def posted(cls, entry: JournalEntryRecord) -> "LedgerResult":
        return cls(status=PostStatus.POSTED, entry=entry)

    @classmethod
    def already_posted(cls, entry: JournalEntryRecord) -> "LedgerResult":
        """Idempotent success carrying the original entry."""
        return cls(
            status=PostStatus.ALREADY_POSTED,
            entry=entry,
            message=f"Transaction {entry.transaction_ref} already posted as {entry.entry_number}",
        )

    @classmethod
    def rejected(cls, error: LedgerKernelError) -> "LedgerResult":
        return cls(status=PostStatus.REJECTED, error=error, message=str(error))

    @property
    def is_success(self) -> bool:
        """Check if operation was successful (including idempotent success)."""
        return self.status in (PostStatus.POSTED, PostStatus.ALREADY_POSTED)

    @property
    def entry_id(self) -> UUID | None:
        return self.entry.id if self.entry is not None else None

    def unwrap(self) -> JournalEntryRecord:
        if self.error is not None:
            raise self.error
        assert self.entry is not None
        return self.entry


def validate_lines(lines: Sequence[LineSpec]) -> None:
    """
    Structural checks on proposed lines.

    Raises:
        InvalidLineError: No lines, or an amount that is not a positive integer.
        UnbalancedEntryError: Debits and credits differ.
    """
    if not lines:
        raise InvalidLineError("Journal entry requires at least one line")
    for line in lines:
        if isinstance(line.amount, bool) or not isinstance(line.amount, int):
            raise InvalidLineError(
                f"Line amount must be an integer, got {line.amount!r}",
                account_code=line.account_code,
            )
        if line.amount <= 0:
            raise InvalidLineError(
                f"Line amount must be positive, got {line.amount}",
                account_code=line.account_code,
            )
    debits = sum(line.debit_amount for line in lines)
    credits = sum(line.credit_amount for line in lines)
    if debits != credits:
        raise UnbalancedEntryError(debits, credits)


class LedgerService:
    """
    Persistence layer for journal entries.

    ``post_lines``:
    1. Validates the lines (no write on failure)
    2. Returns the existing entry if the transaction reference was posted
    3. Inside one savepoint: allocates the entry number, inserts the entry
       and its lines, locks the affected accounts in code order and applies
       the balance deltas
    4. Falls back to the existing entry if a concurrent insert wins the
       unique constraint race

    Business rejections come back as REJECTED results; database errors
    propagate.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()
        self._sequence_service = SequenceService(session)

    # ------------------------------------------------------------------
    # Posting
    # ------------------------------------------------------------------

    def post_lines(
        self,
        lines: Sequence[LineSpec],
        *,
        entry_type: str,
        transaction_ref: str,
        actor_id: str,
        description: str | None = None,
        effective_date: date | None = None,
        reverses_entry_id: UUID | None = None,
        rate_table_version: str | None = None,
        metadata: dict[str, Any] | None = None,
        allow_inactive: bool = False,
    ) -> LedgerResult:
        """
        Post a balanced set of lines as one journal entry.

        Args:
            lines: Proposed lines; amounts are positive minor units.
            entry_type: Originating event tag.
            transaction_ref: Unique key of the originating transaction.
            actor_id: Who is posting ("system" for automated work).
            allow_inactive: Reversals may post to deactivated accounts.

        Returns:
            LedgerResult with POSTED, ALREADY_POSTED or REJECTED status.
        """
        with LogContext.bind(transaction_ref=transaction_ref, actor_id=actor_id):
            try:
                validate_lines(lines)
            except LedgerKernelError as exc:
                return self._reject(exc, entry_type, transaction_ref)

            existing = self._get_existing_entry(transaction_ref)
            if existing is not None:
                return self._already_posted(existing)

            try:
                accounts = self._resolve_accounts(lines, allow_inactive=allow_inactive)
            except LedgerKernelError as exc:
                return self._reject(exc, entry_type, transaction_ref)

            try:
                with self._session.begin_nested():
                    entry = self._insert_entry(
                        lines,
                        accounts,
                        entry_type=entry_type,
                        transaction_ref=transaction_ref,
                        actor_id=actor_id,
                        description=description,
                        effective_date=effective_date or self._clock.today(),
                        reverses_entry_id=reverses_entry_id,
                        rate_table_version=rate_table_version,
                        metadata=metadata,
                    )
                    self._apply_balances(lines)
            except DuplicatePostingError as exc:
                existing = self._get_existing_entry(transaction_ref)
                if existing is None:
                    raise exc.__cause__ or exc
                return self._already_posted(existing)

            record = entry.to_dto()
            logger.info(
                "journal_entry_posted",
                extra={
                    "entry_id": str(record.id),
                    "entry_number": record.entry_number,
                    "entry_type": entry_type,
                    "line_count": len(record.lines),
                    "total_amount": record.total_debits,
                    "rate_table_version": rate_table_version,
                },
            )
            return LedgerResult.posted(record)

    def reverse(
        self,
        entry_id: UUID,
        *,
        actor_id: str,
        reason: str,
        effective_date: date | None = None,
    ) -> LedgerResult:
        """
        Post the mirror image of an entry.

        The reversal is keyed ``reversal:<entry_id>``, so reversing twice
        returns the first reversal.  Reversal entries cannot be reversed.
        """
        original = self._session.get(JournalEntry, entry_id)
        if original is None:
            return self._reject(
                EntryNotFoundError(str(entry_id)), REVERSAL_ENTRY_TYPE, f"reversal:{entry_id}"
            )
        if original.is_reversal:
            return self._reject(
                EntryNotReversibleError(str(entry_id)),
                REVERSAL_ENTRY_TYPE,
                f"reversal:{entry_id}",
            )

        lines = [
            LineSpec(
                account_code=line.account.code,
                side=LineSide(line.side).opposite,
                amount=line.amount,
                description=line.description,
            )
            for line in original.lines
        ]
        return self.post_lines(
            lines,
            entry_type=REVERSAL_ENTRY_TYPE,
            transaction_ref=f"reversal:{entry_id}",
            actor_id=actor_id,
            description=reason,
            effective_date=effective_date,
            reverses_entry_id=original.id,
            rate_table_version=original.rate_table_version,
            metadata={
                "reason": reason,
                "original_entry_type": original.entry_type,
                "original_entry_number": original.entry_number,
            },
            allow_inactive=True,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_entry(self, entry_id: UUID) -> JournalEntryRecord | None:
        entry = self._session.get(JournalEntry, entry_id)
        return entry.to_dto() if entry is not None else None

    def get_entry_by_transaction_ref(self, transaction_ref: str) -> JournalEntryRecord | None:
        entry = self._get_existing_entry(transaction_ref)
        return entry.to_dto() if entry is not None else None

    def get_account(self, code: str) -> AccountInfo:
        account = self._account_by_code(code)
        if account is None:
            raise AccountNotFoundError(code)
        return account.to_dto()

    def list_accounts(self) -> list[AccountInfo]:
        accounts = self._session.execute(select(Account).order_by(Account.code)).scalars()
        return [a.to_dto() for a in accounts]

    def recompute_balance(self, code: str) -> int:
        """Balance of an account rebuilt from its full line history."""
        account = self._account_by_code(code)
        if account is None:
            raise AccountNotFoundError(code)
        debits, credits = self._line_totals(account.id)
        return debits - credits if account.is_debit_normal else credits - debits

    def verify_balances(self) -> dict[str, tuple[int, int]]:
        """
        Compare stored and recomputed balances for every account.

        Returns:
            ``{code: (stored, recomputed)}`` for each account that drifted.
            Empty when the ledger is consistent.

        Raises:
            LedgerImbalanceError: If any stored entry is unbalanced.
        """
        self._verify_entries_balanced()
        drift: dict[str, tuple[int, int]] = {}
        for account in self._session.execute(select(Account).order_by(Account.code)).scalars():
            debits, credits = self._line_totals(account.id)
            recomputed = debits - credits if account.is_debit_normal else credits - debits
            if recomputed != account.balance:
                drift[account.code] = (account.balance, recomputed)
        if drift:
            logger.error("balance_drift_detected", extra={"accounts": sorted(drift)})
        return drift

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _get_existing_entry(self, transaction_ref: str) -> JournalEntry | None:
        return self._session.execute(
            select(JournalEntry).where(JournalEntry.transaction_ref == transaction_ref)
        ).scalar_one_or_none()

    def _account_by_code(self, code: str) -> Account | None:
        return self._session.execute(
            select(Account).where(Account.code == code)
        ).scalar_one_or_none()

    def _resolve_accounts(
        self, lines: Sequence[LineSpec], *, allow_inactive: bool
    ) -> dict[str, Account]:
        codes = sorted({line.account_code for line in lines})
        found = {
            a.code: a
            for a in self._session.execute(
                select(Account).where(Account.code.in_(codes))
            ).scalars()
        }
        for code in codes:
            account = found.get(code)
            if account is None:
                raise AccountNotFoundError(code)
            if not allow_inactive and not account.is_active:
                raise AccountInactiveError(code)
        return found

    def _insert_entry(
        self,
        lines: Sequence[LineSpec],
        accounts: dict[str, Account],
        *,
        entry_type: str,
        transaction_ref: str,
        actor_id: str,
        description: str | None,
        effective_date: date,
        reverses_entry_id: UUID | None,
        rate_table_version: str | None,
        metadata: dict[str, Any] | None,
    ) -> JournalEntry:
        number = self._sequence_service.next_value(SequenceService.JOURNAL_ENTRY)
        entry = JournalEntry(
            entry_number=f"JE-{number:08d}",
            entry_type=entry_type,
            status=JournalEntryStatus.POSTED.value,
            transaction_ref=transaction_ref,
            reverses_entry_id=reverses_entry_id,
            posted_at=self._clock.now(),
            effective_date=effective_date,
            description=description,
            rate_table_version=rate_table_version,
            entry_metadata=metadata or {},
            created_by_id=actor_id,
            lines=[
                JournalLine(
                    account=accounts[spec.account_code],
                    side=spec.side.value,
                    amount=spec.amount,
                    description=spec.description,
                    line_seq=seq,
                    created_by_id=actor_id,
                )
                for seq, spec in enumerate(lines)
            ],
        )
        self._session.add(entry)
        try:
            self._session.flush()
        except IntegrityError as exc:
            raise DuplicatePostingError(transaction_ref) from exc
        return entry

    def _apply_balances(self, lines: Sequence[LineSpec]) -> None:
        """Lock the affected accounts in code order and apply line deltas."""
        codes = sorted({line.account_code for line in lines})
        locked = {
            a.code: a
            for a in self._session.execute(
                select(Account)
                .where(Account.code.in_(codes))
                .order_by(Account.code)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalars()
        }
        for line in lines:
            account = locked[line.account_code]
            account.balance += account.signed_delta(line.side, line.amount)
        self._session.flush()

    def _line_totals(self, account_id: UUID) -> tuple[int, int]:
        row = self._session.execute(
            select(
                func.coalesce(
                    func.sum(case((JournalLine.side == LineSide.DEBIT.value, JournalLine.amount), else_=0)),
                    0,
                ),
                func.coalesce(
                    func.sum(case((JournalLine.side == LineSide.CREDIT.value, JournalLine.amount), else_=0)),
                    0,
                ),
            ).where(JournalLine.account_id == account_id)
        ).one()
        return int(row[0]), int(row[1])

    def _verify_entries_balanced(self) -> None:
        signed = case(
            (JournalLine.side == LineSide.DEBIT.value, JournalLine.amount),
            else_=-JournalLine.amount,
        )
        rows = self._session.execute(
            select(JournalLine.journal_entry_id, func.sum(signed))
            .group_by(JournalLine.journal_entry_id)
            .having(func.sum(signed) != 0)
        ).all()
        if rows:
            entry_id = rows[0][0]
            entry = self._session.get(JournalEntry, entry_id)
            error = LedgerImbalanceError(
                str(entry_id), entry.total_debits, entry.total_credits
            )
            logger.error("ledger_imbalance_detected", exc_info=error)
            raise error

    def _already_posted(self, existing: JournalEntry) -> LedgerResult:
        logger.info(
            "posting_already_exists",
            extra={
                "entry_id": str(existing.id),
                "entry_number": existing.entry_number,
            },
        )
        return LedgerResult.already_posted(existing.to_dto())

    def _reject(
        self, error: LedgerKernelError, entry_type: str, transaction_ref: str
    ) -> LedgerResult:
        logger.warning(
            "posting_rejected",
            extra={
                "entry_type": entry_type,
                "error_code": error.code,
                "reason": str(error),
            },
        )
        return LedgerResult.rejected(error)
