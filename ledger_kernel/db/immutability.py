"""
ORM-Level Immutability Enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

The ledger is append-only. A posted journal entry is corrected by posting a
reversing entry, never by editing or deleting rows. These listeners catch
modifications made through SQLAlchemy before the SQL reaches the database:

    session.flush()
         |
         v
    [before_update event] --> _check_*_immutability() --> ImmutabilityViolationError
         |                                                        ^
         v                                                        |
    [before_delete event] --> _check_*_delete() -----------------+
         |
         v
    SQL sent to database (only if checks pass)

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity        | When Immutable                    | Why
--------------|-----------------------------------|----------------------------------
JournalEntry  | Always (entries are born POSTED)  | Posted = finalized, auditable
JournalLine   | Always (parent is POSTED)         | Lines are part of the entry
Account       | Structural fields when referenced | Changing type would corrupt reports
Account       | Deletion when referenced          | Lines would lose their account

Audit columns (updated_at, updated_by_id) may change on any row.

===============================================================================
USAGE
===============================================================================

    from ledger_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # once at startup

TESTS ONLY:

    unregister_immutability_listeners()
"""

from sqlalchemy import event, inspect, text
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import get_history

from ledger_kernel.exceptions import ImmutabilityViolationError
from ledger_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_AUDIT_FIELDS = frozenset({"updated_at", "updated_by_id"})

# Structural fields that become immutable once the account carries posted lines
ACCOUNT_STRUCTURAL_FIELDS = frozenset({"account_type", "normal_balance", "code"})


def _blocked(entity_type: str, entity_id: str, operation: str, reason: str, **fields):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": entity_id,
            "operation": operation,
            **fields,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
    )


def _account_has_posted_lines(connection, account_id: str) -> bool:
    result = connection.execute(
        text(
            "SELECT EXISTS (SELECT 1 FROM journal_lines WHERE account_id = :account_id)"
        ),
        {"account_id": account_id},
    )
    return bool(result.scalar())


def _check_journal_entry_immutability(mapper, connection, target):
    """
    Block any column change on a posted JournalEntry.

    before_update also fires for rows that are merely marked dirty (for
    example through a relationship collection), so only column attributes
    with real history count as modifications.
    """
    from ledger_kernel.models.journal import JournalEntry

    if not isinstance(target, JournalEntry):
        return

    insp = inspect(target)
    for attr in insp.mapper.column_attrs:
        if attr.key in _AUDIT_FIELDS:
            continue
        if get_history(target, attr.key).has_changes():
            _blocked(
                "JournalEntry",
                str(target.id),
                "UPDATE",
                f"Cannot modify field '{attr.key}' on posted journal entry",
                field=attr.key,
            )


def _check_journal_entry_delete(mapper, connection, target):
    from ledger_kernel.models.journal import JournalEntry

    if not isinstance(target, JournalEntry):
        return

    _blocked(
        "JournalEntry",
        str(target.id),
        "DELETE",
        "Posted journal entries cannot be deleted",
    )


def _check_journal_line_immutability(mapper, connection, target):
    from ledger_kernel.models.journal import JournalLine

    if not isinstance(target, JournalLine):
        return

    insp = inspect(target)
    changed = [
        attr.key
        for attr in insp.mapper.column_attrs
        if attr.key not in _AUDIT_FIELDS and get_history(target, attr.key).has_changes()
    ]
    if changed:
        _blocked(
            "JournalLine",
            str(target.id),
            "UPDATE",
            "Journal lines cannot be modified after posting",
            fields=changed,
        )


def _check_journal_line_delete(mapper, connection, target):
    from ledger_kernel.models.journal import JournalLine

    if not isinstance(target, JournalLine):
        return

    _blocked(
        "JournalLine",
        str(target.id),
        "DELETE",
        "Journal lines cannot be deleted after posting",
    )


def _check_account_structural_immutability(mapper, connection, target):
    """
    Prevent changes to type, normal balance or code on referenced accounts.

    Balance, name, description and status stay mutable.
    """
    from ledger_kernel.models.account import Account

    if not isinstance(target, Account):
        return

    changed = sorted(
        field
        for field in ACCOUNT_STRUCTURAL_FIELDS
        if get_history(target, field).has_changes()
    )
    if not changed:
        return

    if _account_has_posted_lines(connection, str(target.id)):
        _blocked(
            "Account",
            str(target.id),
            "UPDATE",
            f"Cannot modify structural field(s) {changed} on account referenced "
            "by posted journal entries",
            fields=changed,
        )


def _check_account_deletion_before_flush(session, flush_context, instances):
    """
    Refuse to delete accounts that carry posted lines.

    Runs in before_flush because mapper-level delete events fire after the
    flush plan is already fixed.
    """
    from ledger_kernel.models.account import Account

    for obj in list(session.deleted):
        if not isinstance(obj, Account):
            continue
        with session.no_autoflush:
            referenced = _account_has_posted_lines(session.connection(), str(obj.id))
        if referenced:
            _blocked(
                "Account",
                str(obj.id),
                "DELETE",
                "Accounts referenced by posted journal lines cannot be deleted",
            )


def register_immutability_listeners():
    """Register all immutability enforcement event listeners (idempotent)."""
    from ledger_kernel.models.account import Account
    from ledger_kernel.models.journal import JournalEntry, JournalLine

    listeners = (
        (Session, "before_flush", _check_account_deletion_before_flush),
        (JournalEntry, "before_update", _check_journal_entry_immutability),
        (JournalEntry, "before_delete", _check_journal_entry_delete),
        (JournalLine, "before_update", _check_journal_line_immutability),
        (JournalLine, "before_delete", _check_journal_line_delete),
        (Account, "before_update", _check_account_structural_immutability),
    )
    for target, event_name, listener_fn in listeners:
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def _safe_remove_listener(target, event_name, listener_fn):
    """Remove an event listener, ignoring it if not registered."""
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """Remove immutability enforcement event listeners. TESTS ONLY."""
    from ledger_kernel.models.account import Account
    from ledger_kernel.models.journal import JournalEntry, JournalLine

    _safe_remove_listener(Session, "before_flush", _check_account_deletion_before_flush)
    _safe_remove_listener(JournalEntry, "before_update", _check_journal_entry_immutability)
    _safe_remove_listener(JournalEntry, "before_delete", _check_journal_entry_delete)
    _safe_remove_listener(JournalLine, "before_update", _check_journal_line_immutability)
    _safe_remove_listener(JournalLine, "before_delete", _check_journal_line_delete)
    _safe_remove_listener(Account, "before_update", _check_account_structural_immutability)
