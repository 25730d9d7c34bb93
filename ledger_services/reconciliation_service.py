"""
ledger_services.reconciliation_service -- statement vs ledger reconciliation.

Responsibility:
    Loads the receipts the ledger recorded for a period, matches them
    against an external statement with StatementMatcher, and persists the
    run as a ReconciliationRecord with one item per statement line and one
    per ledger transaction nobody claimed.  Unmatched items are then worked
    off by manual matching or resolution until the run closes.

Architecture position:
    Services -- composes the StatementMatcher engine with the
    reconciliation models and the journal.

Invariants enforced:
    - Each ledger transaction is matched at most once per run.
    - A run is CLOSED exactly when every item is MATCHED or RESOLVED; a
      closed run rejects further changes (ReconciliationClosedError).
    - Only UNMATCHED items can be resolved or manually matched
      (ReconciliationItemStateError), and resolution needs a reason.

Failure modes:
    - ReconciliationNotFoundError / ReconciliationItemNotFoundError for
      unknown ids.
    - LedgerTransactionNotFoundError when a manual match names a
      transaction that is not a posted receipt.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, datetime
from uuid import UUID

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session, aliased

from ledger_config.schema import RateTable
from ledger_engines.matching import (
    LedgerTransaction,
    MatchTolerance,
    StatementLine,
    StatementMatcher,
)
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.dtos import LineSide
from ledger_kernel.exceptions import (
    LedgerTransactionNotFoundError,
    ReconciliationClosedError,
    ReconciliationItemNotFoundError,
    ReconciliationItemStateError,
    ReconciliationNotFoundError,
    ValidationError,
)
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.journal import JournalEntry
from ledger_kernel.models.reconciliation import (
    ItemStatus,
    MatchType,
    ReconciliationItem,
    ReconciliationRecord,
    ReconciliationStatus,
)
from ledger_kernel.services.posting_engine import PostingEventType

logger = get_logger("services.reconciliation")

RECEIPT_EVENT_TYPES = (
    PostingEventType.INITIAL_DEPOSIT.value,
    PostingEventType.DAILY_PAYMENT.value,
)


@dataclass(frozen=True)
class ReconciliationItemRecord:
    id: UUID
    item_seq: int
    status: ItemStatus
    variance: int
    source_reference: str | None = None
    source_amount: int | None = None
    source_date: date | None = None
    ledger_transaction_ref: str | None = None
    ledger_entry_id: UUID | None = None
    ledger_amount: int | None = None
    ledger_date: date | None = None
    match_type: MatchType | None = None
    match_score: int | None = None
    matched_by: str | None = None
    notes: str | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    resolution_reason: str | None = None

    @property
    def is_ledger_only(self) -> bool:
        return self.source_reference is None and self.source_amount is None


@dataclass(frozen=True)
class ReconciliationReport:
    """Snapshot of one reconciliation run."""

    id: UUID
    source_name: str
    period_start: date
    period_end: date
    status: ReconciliationStatus
    source_total: int
    ledger_total: int
    variance: int
    matched_count: int
    unmatched_count: int
    auto_matched_count: int
    manual_matched_count: int
    created_by: str
    items: tuple[ReconciliationItemRecord, ...] = ()
    closed_at: datetime | None = None

    @property
    def is_closed(self) -> bool:
        return self.status == ReconciliationStatus.CLOSED

    @property
    def unmatched_items(self) -> tuple[ReconciliationItemRecord, ...]:
        return tuple(i for i in self.items if i.status == ItemStatus.UNMATCHED)


@dataclass(frozen=True)
class ReconciliationStats:
    """
    Summary of the runs whose period ends in a date range.

    ``average_match_rate`` is the mean of each run's matched-item
    percentage, both rounded half up to whole percent.
    """

    period_start: date
    period_end: date
    total_reconciliations: int
    fully_matched: int
    with_unmatched: int
    total_variance: int
    average_match_rate: int


class ReconciliationService:
    """
    Reconciles external statements against posted receipts.

    Contract:
        Never commits.  Each operation runs in a savepoint.
    """

    def __init__(
        self,
        session: Session,
        rate_table: RateTable,
        clock: Clock | None = None,
        matcher: StatementMatcher | None = None,
    ):
        self._session = session
        self._rate_table = rate_table
        self._clock = clock or SystemClock()
        self._matcher = matcher or StatementMatcher()
        policy = rate_table.reconciliation
        self._tolerance = MatchTolerance(
            date_tolerance_days=policy.date_tolerance_days,
            exact_score=policy.exact_score,
            fuzzy_score=policy.fuzzy_score,
        )

    def reconcile(
        self,
        statement_lines: Sequence[StatementLine],
        period_start: date,
        period_end: date,
        *,
        source_name: str = "statement",
        actor_id: str = "system",
    ) -> ReconciliationReport:
        """
        Match a statement against the period's receipts and record the run.

        Statement lines keep their order as items; ledger transactions left
        over follow as ledger-only items.
        """
        if period_end < period_start:
            raise ValidationError(
                f"period_end {period_end} is before period_start {period_start}",
                field="period_end",
            )

        transactions = self.ledger_transactions(period_start, period_end)
        outcome = self._matcher.match(list(statement_lines), transactions, self._tolerance)
        now = self._clock.now()

        source_total = sum(line.amount for line in statement_lines)
        ledger_total = sum(t.amount for t in transactions)
        record = ReconciliationRecord(
            source_name=source_name,
            period_start=period_start,
            period_end=period_end,
            status=ReconciliationStatus.OPEN.value,
            source_total=source_total,
            ledger_total=ledger_total,
            variance=source_total - ledger_total,
            created_at=now,
            created_by_id=actor_id,
        )

        matched = {m.line_index: m for m in outcome.matches}
        items: list[ReconciliationItem] = []
        for index, line in enumerate(statement_lines):
            item = ReconciliationItem(
                item_seq=len(items) + 1,
                source_reference=line.reference,
                source_amount=line.amount,
                source_date=line.value_date,
                source_description=line.description,
                created_at=now,
                created_by_id=actor_id,
            )
            match = matched.get(index)
            if match is None:
                item.status = ItemStatus.UNMATCHED.value
                item.variance = line.amount
            else:
                self._attach_ledger_side(item, match.transaction)
                item.status = ItemStatus.MATCHED.value
                item.match_type = MatchType(match.kind.value).value
                item.match_score = match.score
                item.matched_by = actor_id
            items.append(item)

        for txn in outcome.unmatched_transactions:
            item = ReconciliationItem(
                item_seq=len(items) + 1,
                status=ItemStatus.UNMATCHED.value,
                created_at=now,
                created_by_id=actor_id,
            )
            self._attach_ledger_side(item, txn)
            item.variance = -txn.amount
            items.append(item)

        record.items = items
        with self._session.begin_nested():
            self._session.add(record)
            self._session.flush()
            self._refresh(record, now)
            self._session.flush()

        logger.info(
            "reconciliation_created",
            extra={
                "reconciliation_id": str(record.id),
                "source_name": source_name,
                "period_start": period_start,
                "period_end": period_end,
                "matched_count": record.matched_count,
                "unmatched_count": record.unmatched_count,
                "variance": record.variance,
            },
        )
        return _to_report(record)

    def ledger_transactions(self, period_start: date, period_end: date) -> list[LedgerTransaction]:
        """Posted receipts in the period that have not been reversed."""
        reversal = aliased(JournalEntry)
        entries = self._session.execute(
            select(JournalEntry)
            .where(
                JournalEntry.entry_type.in_(RECEIPT_EVENT_TYPES),
                JournalEntry.effective_date >= period_start,
                JournalEntry.effective_date <= period_end,
                ~select(reversal.id).where(reversal.reverses_entry_id == JournalEntry.id).exists(),
            )
            .order_by(JournalEntry.effective_date, JournalEntry.entry_number)
        ).scalars()
        return [self._to_transaction(entry) for entry in entries]

    def resolve_item(self, item_id: UUID, actor_id: str, reason: str) -> ReconciliationItemRecord:
        """Accept an unmatched item with an explanation."""
        if not reason or not reason.strip():
            raise ValidationError("A resolution reason is required", field="reason")

        with self._session.begin_nested():
            item, record = self._open_item(item_id)
            now = self._clock.now()
            item.status = ItemStatus.RESOLVED.value
            item.resolved_by = actor_id
            item.resolved_at = now
            item.resolution_reason = reason.strip()
            item.updated_by_id = actor_id
            self._refresh(record, now)
            self._session.flush()

        logger.info(
            "reconciliation_item_resolved",
            extra={
                "reconciliation_id": str(record.id),
                "item_id": str(item.id),
                "record_status": record.status,
            },
        )
        return _to_item(item)

    def manual_match(
        self,
        item_id: UUID,
        transaction_ref: str,
        actor_id: str,
        notes: str | None = None,
    ) -> ReconciliationItemRecord:
        """
        Pair an unmatched statement item with a receipt by hand.

        A ledger-only item of the same run for that transaction is folded
        into the match.
        """
        with self._session.begin_nested():
            item, record = self._open_item(item_id)
            if item.is_ledger_only:
                raise ReconciliationItemStateError(str(item_id), "statement item", "ledger_only")

            entry = self._session.execute(
                select(JournalEntry).where(
                    JournalEntry.transaction_ref == transaction_ref,
                    JournalEntry.entry_type.in_(RECEIPT_EVENT_TYPES),
                )
            ).scalar_one_or_none()
            if entry is None:
                raise LedgerTransactionNotFoundError(transaction_ref)

            for other in list(record.items):
                if other.id == item.id or other.ledger_transaction_ref != transaction_ref:
                    continue
                if not other.is_ledger_only or other.status != ItemStatus.UNMATCHED:
                    raise ReconciliationItemStateError(
                        str(other.id), ItemStatus.UNMATCHED.value, other.status
                    )
                record.items.remove(other)

            self._attach_ledger_side(item, self._to_transaction(entry))
            item.status = ItemStatus.MATCHED.value
            item.match_type = MatchType.MANUAL.value
            item.match_score = None
            item.matched_by = actor_id
            item.notes = notes
            item.updated_by_id = actor_id
            self._refresh(record, self._clock.now())
            self._session.flush()

        logger.info(
            "reconciliation_item_matched",
            extra={
                "reconciliation_id": str(record.id),
                "item_id": str(item.id),
                "transaction_ref": transaction_ref,
                "variance": item.variance,
            },
        )
        return _to_item(item)

    def get_report(self, reconciliation_id: UUID) -> ReconciliationReport:
        record = self._session.get(ReconciliationRecord, reconciliation_id)
        if record is None:
            raise ReconciliationNotFoundError(str(reconciliation_id))
        return _to_report(record)

    def list_open(self) -> list[ReconciliationReport]:
        records = self._session.execute(
            select(ReconciliationRecord)
            .where(ReconciliationRecord.status == ReconciliationStatus.OPEN.value)
            .order_by(ReconciliationRecord.created_at)
        ).scalars()
        return [_to_report(r) for r in records]

    def list_by_date_range(
        self,
        period_start: date,
        period_end: date,
        source_name: str | None = None,
    ) -> list[ReconciliationReport]:
        """Runs whose period ends within the range, newest first."""
        records = self._session.execute(
            select(ReconciliationRecord)
            .where(*self._history_filter(period_start, period_end, source_name))
            .order_by(
                ReconciliationRecord.period_end.desc(),
                ReconciliationRecord.created_at.desc(),
            )
        ).scalars()
        return [_to_report(r) for r in records]

    def summary_stats(
        self,
        period_start: date,
        period_end: date,
        source_name: str | None = None,
    ) -> ReconciliationStats:
        """
        Counts, absolute variance and match rate over a range of runs.

        A CLOSED run counts as fully matched, an OPEN one as having
        unmatched items.
        """
        conditions = self._history_filter(period_start, period_end, source_name)
        total, closed, total_variance = self._session.execute(
            select(
                func.count(ReconciliationRecord.id),
                func.coalesce(
                    func.sum(
                        case(
                            (ReconciliationRecord.status == ReconciliationStatus.CLOSED.value, 1),
                            else_=0,
                        )
                    ),
                    0,
                ),
                func.coalesce(func.sum(func.abs(ReconciliationRecord.variance)), 0),
            ).where(*conditions)
        ).one()

        item_counts = self._session.execute(
            select(
                ReconciliationItem.reconciliation_id,
                func.count(ReconciliationItem.id),
                func.sum(
                    case((ReconciliationItem.status == ItemStatus.MATCHED.value, 1), else_=0)
                ),
            )
            .join(ReconciliationRecord, ReconciliationItem.reconciliation_id == ReconciliationRecord.id)
            .where(*conditions)
            .group_by(ReconciliationItem.reconciliation_id)
        ).all()

        # Runs without items contribute a 0% rate.
        rates = [_half_up_percent(int(matched or 0), int(items)) for _, items, matched in item_counts]
        total = int(total)
        average = (2 * sum(rates) + total) // (2 * total) if total else 0

        return ReconciliationStats(
            period_start=period_start,
            period_end=period_end,
            total_reconciliations=total,
            fully_matched=int(closed),
            with_unmatched=total - int(closed),
            total_variance=int(total_variance),
            average_match_rate=average,
        )

    # ------------------------------------------------------------------
    # Internals

    @staticmethod
    def _history_filter(period_start: date, period_end: date, source_name: str | None) -> list:
        if period_end < period_start:
            raise ValidationError(
                f"period_end {period_end} is before period_start {period_start}",
                field="period_end",
            )
        conditions = [
            ReconciliationRecord.period_end >= period_start,
            ReconciliationRecord.period_end <= period_end,
        ]
        if source_name is not None:
            conditions.append(ReconciliationRecord.source_name == source_name)
        return conditions

    def _open_item(self, item_id: UUID) -> tuple[ReconciliationItem, ReconciliationRecord]:
        item = self._session.get(ReconciliationItem, item_id)
        if item is None:
            raise ReconciliationItemNotFoundError(str(item_id))
        record = self._session.execute(
            select(ReconciliationRecord)
            .where(ReconciliationRecord.id == item.reconciliation_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one()
        if record.is_closed:
            raise ReconciliationClosedError(str(record.id))
        if item.status != ItemStatus.UNMATCHED:
            raise ReconciliationItemStateError(
                str(item_id), ItemStatus.UNMATCHED.value, item.status
            )
        return item, record

    def _to_transaction(self, entry: JournalEntry) -> LedgerTransaction:
        escrow_cash = self._rate_table.accounts.escrow_cash
        amount = entry.to_dto().amount_for(escrow_cash, LineSide.DEBIT) or entry.total_debits
        return LedgerTransaction(
            transaction_ref=entry.transaction_ref,
            amount=amount,
            transaction_date=entry.effective_date,
            entry_id=entry.id,
        )

    @staticmethod
    def _attach_ledger_side(item: ReconciliationItem, txn: LedgerTransaction) -> None:
        item.ledger_transaction_ref = txn.transaction_ref
        item.ledger_entry_id = txn.entry_id
        item.ledger_amount = txn.amount
        item.ledger_date = txn.transaction_date
        item.variance = (item.source_amount or 0) - txn.amount

    @staticmethod
    def _refresh(record: ReconciliationRecord, now: datetime) -> None:
        record.refresh_counts()
        if record.unmatched_count == 0 and not record.is_closed:
            record.status = ReconciliationStatus.CLOSED.value
            record.closed_at = now
            logger.info("reconciliation_closed", extra={"reconciliation_id": str(record.id)})


def _half_up_percent(part: int, whole: int) -> int:
    if whole == 0:
        return 0
    return (200 * part + whole) // (2 * whole)


def _to_item(item: ReconciliationItem) -> ReconciliationItemRecord:
    return ReconciliationItemRecord(
        id=item.id,
        item_seq=item.item_seq,
        status=ItemStatus(item.status),
        variance=item.variance,
        source_reference=item.source_reference,
        source_amount=item.source_amount,
        source_date=item.source_date,
        ledger_transaction_ref=item.ledger_transaction_ref,
        ledger_entry_id=item.ledger_entry_id,
        ledger_amount=item.ledger_amount,
        ledger_date=item.ledger_date,
        match_type=MatchType(item.match_type) if item.match_type else None,
        match_score=item.match_score,
        matched_by=item.matched_by,
        notes=item.notes,
        resolved_by=item.resolved_by,
        resolved_at=item.resolved_at,
        resolution_reason=item.resolution_reason,
    )


def _to_report(record: ReconciliationRecord) -> ReconciliationReport:
    return ReconciliationReport(
        id=record.id,
        source_name=record.source_name,
        period_start=record.period_start,
        period_end=record.period_end,
        status=ReconciliationStatus(record.status),
        source_total=record.source_total,
        ledger_total=record.ledger_total,
        variance=record.variance,
        matched_count=record.matched_count,
        unmatched_count=record.unmatched_count,
        auto_matched_count=record.auto_matched_count,
        manual_matched_count=record.manual_matched_count,
        created_by=record.created_by_id,
        items=tuple(_to_item(i) for i in record.items),
        closed_at=record.closed_at,
    )
