"""
Typed Exception Hierarchy for the Ledger Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the accounting core (payment handlers, admin actions, scheduled
jobs) must react to failures precisely. Each failure therefore has:

  1. A TYPED exception class (catch by type, not by message)
  2. A CODE attribute (machine-readable, API-safe)
  3. Structured DATA attributes (not just a message string)

Example:
    try:
        settlements.approve_settlement(settlement_id, actor_id)
    except SettlementStateConflictError as e:
        respond(409, code=e.code, expected=e.expected, actual=e.actual)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    LedgerKernelError (base)
    |
    +-- ValidationError                    rejected before any write
    |   +-- UnbalancedEntryError
    |   +-- InvalidLineError
    |   +-- AmountMismatchError
    |   +-- InvalidEscrowError
    |   +-- MissingPayoutReferenceError
    |   +-- UnsupportedPartnerError
    |   +-- AccountInactiveError
    |
    +-- StateConflictError                 entity is in the wrong lifecycle state
    |   +-- SettlementStateConflictError
    |   +-- EscrowAlreadyClaimedError
    |   +-- EntryNotReversibleError
    |   +-- ReconciliationItemStateError
    |   +-- ReconciliationClosedError
    |
    +-- NotFoundError
    |   +-- AccountNotFoundError
    |   +-- EntryNotFoundError
    |   +-- SettlementNotFoundError
    |   +-- ReconciliationNotFoundError
    |   +-- ReconciliationItemNotFoundError
    |   +-- LedgerTransactionNotFoundError
    |
    +-- InvariantViolation                 fatal for the operation, never corrected
    |   +-- CommissionInvariantViolation
    |   +-- LedgerImbalanceError
    |
    +-- DuplicatePostingError              same transaction posted twice (retry)
    |
    +-- ImmutabilityViolationError         posted records modified through the ORM

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category      | Code                       | When Raised
--------------|----------------------------|------------------------------------------
Validation    | VALIDATION_ERROR           | Generic input rejection
              | UNBALANCED_ENTRY           | Debits != Credits
              | INVALID_LINE               | Zero/negative amount, empty line set
              | AMOUNT_MISMATCH            | Amount != count x unit price
              | INVALID_ESCROW             | Bad premium amount or payment day
              | MISSING_PAYOUT_REFERENCE   | process without a bank reference
              | UNSUPPORTED_PARTNER        | Partner not valid for the settlement type
              | ACCOUNT_INACTIVE           | Posting to an INACTIVE account
--------------|----------------------------|------------------------------------------
State         | STATE_CONFLICT             | Generic lifecycle conflict
              | SETTLEMENT_STATE_CONFLICT  | Transition guard failed
              | ESCROW_ALREADY_CLAIMED     | Concurrent claim on the same escrow row
              | ENTRY_NOT_REVERSIBLE       | Reversing a reversal
              | RECONCILIATION_ITEM_STATE  | Item not UNMATCHED
              | RECONCILIATION_CLOSED      | Run already closed
--------------|----------------------------|------------------------------------------
Not found     | NOT_FOUND                  | Generic
              | ACCOUNT_NOT_FOUND          | Unknown account code
              | ENTRY_NOT_FOUND            | Unknown journal entry id
              | SETTLEMENT_NOT_FOUND       | Unknown settlement id
              | RECONCILIATION_NOT_FOUND   | Unknown reconciliation id
              | RECONCILIATION_ITEM_NOT_FOUND | Unknown reconciliation item id
              | LEDGER_TRANSACTION_NOT_FOUND  | Unknown transaction reference
--------------|----------------------------|------------------------------------------
Invariant     | INVARIANT_VIOLATION        | Generic
              | COMMISSION_INVARIANT       | Distribution does not reconcile
              | LEDGER_IMBALANCE           | Stored entry found unbalanced
--------------|----------------------------|------------------------------------------
Posting       | DUPLICATE_POSTING          | Transaction ref already posted (OK)
Immutability  | IMMUTABILITY_VIOLATION     | Update/delete of a posted record

===============================================================================
HANDLING PATTERNS
===============================================================================

1. DUPLICATES ARE SUCCESS. The ledger turns DuplicatePostingError into an
   ALREADY_POSTED result carrying the original entry; retries are expected.

2. INVARIANT VIOLATIONS HALT. Never catch InvariantViolation to continue a
   settlement run; log it and stop.

3. RESULTS VS EXCEPTIONS. Posting and settlement creation return result
   objects whose ``error`` is one of these exceptions. Infrastructure
   failures (SQLAlchemy errors) propagate as exceptions and abort the
   enclosing transaction.
"""


class LedgerKernelError(Exception):
    """Base exception for all ledger kernel errors."""

    code: str = "LEDGER_KERNEL_ERROR"


# =============================================================================
# Validation
# =============================================================================


class ValidationError(LedgerKernelError):
    """Input rejected before any write."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class UnbalancedEntryError(ValidationError):
    """Journal lines do not balance."""

    code: str = "UNBALANCED_ENTRY"

    def __init__(self, debits: int, credits: int):
        self.debits = debits
        self.credits = credits
        super().__init__(f"Entry is unbalanced: debits={debits}, credits={credits}")


class InvalidLineError(ValidationError):
    """A journal line is malformed."""

    code: str = "INVALID_LINE"

    def __init__(self, reason: str, account_code: str | None = None):
        self.reason = reason
        self.account_code = account_code
        super().__init__(reason, field="lines")


class AmountMismatchError(ValidationError):
    """Amount does not equal count x fixed unit price."""

    code: str = "AMOUNT_MISMATCH"

    def __init__(self, event_type: str, expected: int, actual: int):
        self.event_type = event_type
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Invalid {event_type} amount: expected {expected}, got {actual}",
            field="amount",
        )


class InvalidEscrowError(ValidationError):
    """Escrow record input is out of range."""

    code: str = "INVALID_ESCROW"


class MissingPayoutReferenceError(ValidationError):
    """A settlement cannot be processed without a payout reference."""

    code: str = "MISSING_PAYOUT_REFERENCE"

    def __init__(self, settlement_id: str):
        self.settlement_id = settlement_id
        super().__init__(
            f"Settlement {settlement_id} requires a bank reference to be processed",
            field="bank_reference",
        )


class UnsupportedPartnerError(ValidationError):
    """Partner type is not valid for the requested settlement type."""

    code: str = "UNSUPPORTED_PARTNER"

    def __init__(self, partner_type: str, settlement_type: str):
        self.partner_type = partner_type
        self.settlement_type = settlement_type
        super().__init__(
            f"{settlement_type} settlements are not supported for partner {partner_type}",
            field="partner_type",
        )


class AccountInactiveError(ValidationError):
    """Posting targets an INACTIVE account."""

    code: str = "ACCOUNT_INACTIVE"

    def __init__(self, account_code: str):
        self.account_code = account_code
        super().__init__(f"Account {account_code} is inactive", field="account_code")


# =============================================================================
# State conflicts
# =============================================================================


class StateConflictError(LedgerKernelError):
    """Operation attempted on an entity in the wrong lifecycle state."""

    code: str = "STATE_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str, expected: str, actual: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{entity_type} {entity_id} is {actual}; expected {expected}"
        )


class SettlementStateConflictError(StateConflictError):
    """Settlement transition guard failed."""

    code: str = "SETTLEMENT_STATE_CONFLICT"

    def __init__(self, settlement_id: str, expected: str, actual: str):
        super().__init__("Settlement", settlement_id, expected, actual)


class EscrowAlreadyClaimedError(StateConflictError):
    """Escrow rows were claimed by another settlement first."""

    code: str = "ESCROW_ALREADY_CLAIMED"

    def __init__(self, claim_key: str, requested: int, claimed: int):
        self.claim_key = claim_key
        self.requested = requested
        self.claimed = claimed
        super().__init__(
            "EscrowClaim",
            claim_key,
            f"{requested} unclaimed rows",
            f"{claimed} claimable",
        )


class EntryNotReversibleError(StateConflictError):
    """Reversal entries cannot themselves be reversed."""

    code: str = "ENTRY_NOT_REVERSIBLE"

    def __init__(self, entry_id: str):
        super().__init__("JournalEntry", entry_id, "original entry", "reversal entry")


class ReconciliationItemStateError(StateConflictError):
    """Reconciliation item is not in the state the operation needs."""

    code: str = "RECONCILIATION_ITEM_STATE"

    def __init__(self, item_id: str, expected: str, actual: str):
        super().__init__("ReconciliationItem", item_id, expected, actual)


class ReconciliationClosedError(StateConflictError):
    """Closed reconciliation runs are immutable."""

    code: str = "RECONCILIATION_CLOSED"

    def __init__(self, reconciliation_id: str):
        super().__init__("Reconciliation", reconciliation_id, "open", "closed")


# =============================================================================
# Not found
# =============================================================================


class NotFoundError(LedgerKernelError):
    """Referenced entity does not exist."""

    code: str = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found: {entity_id}")


class AccountNotFoundError(NotFoundError):
    code: str = "ACCOUNT_NOT_FOUND"

    def __init__(self, account_code: str):
        self.account_code = account_code
        super().__init__("Account", account_code)


class EntryNotFoundError(NotFoundError):
    code: str = "ENTRY_NOT_FOUND"

    def __init__(self, entry_id: str):
        super().__init__("JournalEntry", entry_id)


class SettlementNotFoundError(NotFoundError):
    code: str = "SETTLEMENT_NOT_FOUND"

    def __init__(self, settlement_id: str):
        super().__init__("Settlement", settlement_id)


class ReconciliationNotFoundError(NotFoundError):
    code: str = "RECONCILIATION_NOT_FOUND"

    def __init__(self, reconciliation_id: str):
        super().__init__("Reconciliation", reconciliation_id)


class ReconciliationItemNotFoundError(NotFoundError):
    code: str = "RECONCILIATION_ITEM_NOT_FOUND"

    def __init__(self, item_id: str):
        super().__init__("ReconciliationItem", item_id)


class LedgerTransactionNotFoundError(NotFoundError):
    code: str = "LEDGER_TRANSACTION_NOT_FOUND"

    def __init__(self, transaction_ref: str):
        super().__init__("LedgerTransaction", transaction_ref)


# =============================================================================
# Invariant violations
# =============================================================================


class InvariantViolation(LedgerKernelError):
    """A computed or stored result breaks an accounting invariant."""

    code: str = "INVARIANT_VIOLATION"

    def __init__(self, message: str, errors: tuple[str, ...] = ()):
        self.errors = errors
        super().__init__(message)


class CommissionInvariantViolation(InvariantViolation):
    """Commission distribution does not reconcile."""

    code: str = "COMMISSION_INVARIANT"

    def __init__(self, errors: tuple[str, ...]):
        super().__init__(
            "Commission calculation failed validation: " + "; ".join(errors),
            errors=errors,
        )


class LedgerImbalanceError(InvariantViolation):
    """A stored journal entry does not balance."""

    code: str = "LEDGER_IMBALANCE"

    def __init__(self, entry_id: str, debits: int, credits: int):
        self.entry_id = entry_id
        self.debits = debits
        self.credits = credits
        super().__init__(
            f"Journal entry {entry_id} is unbalanced: debits={debits}, credits={credits}"
        )


# =============================================================================
# Posting / immutability
# =============================================================================


class DuplicatePostingError(LedgerKernelError):
    """Transaction reference already posted; resolved as idempotent success."""

    code: str = "DUPLICATE_POSTING"

    def __init__(self, transaction_ref: str):
        self.transaction_ref = transaction_ref
        super().__init__(f"Transaction {transaction_ref} already posted")


class ImmutabilityViolationError(LedgerKernelError):
    """Attempt to modify or delete a record that is append-only."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"Cannot modify {entity_type} {entity_id}: {reason}")
