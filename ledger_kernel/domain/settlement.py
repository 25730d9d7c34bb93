"""
Settlement domain types (``ledger_kernel.domain.settlement``).

Responsibility
--------------
Pure value objects for partner settlements: partner and settlement
enumerations, the lifecycle state machine, the typed metadata union, and
the result type returned by settlement creation.

Architecture position
---------------------
**Kernel domain layer** -- ZERO I/O.  No imports from ``db/``,
``models/`` or ``services/``.

Invariants enforced
-------------------
* ``SETTLEMENT_TRANSITIONS`` defines the only valid status transitions.
  Terminal states have no outgoing edges.
* ``SETTLEMENT_PARTNERS`` restricts each settlement type to the partners
  it can be raised for.
* Metadata round-trips through ``metadata_to_dict`` /
  ``metadata_from_dict`` with a ``kind`` discriminator; unknown kinds are
  kept verbatim in ``UnrecognizedMetadata``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Union
from uuid import UUID

from ledger_kernel.exceptions import LedgerKernelError


# =========================================================================
# Enumerations
# =========================================================================


class PartnerType(str, Enum):
    """Parties a settlement can be raised for."""

    MOBILIZATION_A = "mobilization_a"
    MOBILIZATION_B = "mobilization_b"
    UNDERWRITER = "underwriter"
    PLATFORM = "platform"


class SettlementType(str, Enum):
    SERVICE_FEE = "service_fee"
    COMMISSION = "commission"
    REMITTANCE = "remittance"


class SettlementStatus(str, Enum):
    """Settlement lifecycle states."""

    PENDING = "pending"
    APPROVED = "approved"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RemittanceKind(str, Enum):
    """Which escrow rows an underwriter remittance sweeps."""

    DAY1 = "day1"
    BULK = "bulk"


PARTNER_CODES: dict[PartnerType, str] = {
    PartnerType.MOBILIZATION_A: "MBA",
    PartnerType.MOBILIZATION_B: "MBB",
    PartnerType.UNDERWRITER: "UWR",
    PartnerType.PLATFORM: "PLT",
}

SETTLEMENT_TYPE_CODES: dict[SettlementType, str] = {
    SettlementType.SERVICE_FEE: "SF",
    SettlementType.COMMISSION: "CM",
    SettlementType.REMITTANCE: "RM",
}

SETTLEMENT_PARTNERS: dict[SettlementType, frozenset[PartnerType]] = {
    SettlementType.SERVICE_FEE: frozenset({
        PartnerType.MOBILIZATION_A,
        PartnerType.MOBILIZATION_B,
    }),
    SettlementType.COMMISSION: frozenset({
        PartnerType.MOBILIZATION_A,
        PartnerType.MOBILIZATION_B,
        PartnerType.PLATFORM,
    }),
    SettlementType.REMITTANCE: frozenset({PartnerType.UNDERWRITER}),
}


# =========================================================================
# Lifecycle
# =========================================================================


SETTLEMENT_TRANSITIONS: dict[SettlementStatus, frozenset[SettlementStatus]] = {
    SettlementStatus.PENDING: frozenset({
        SettlementStatus.APPROVED,
        SettlementStatus.CANCELLED,
    }),
    SettlementStatus.APPROVED: frozenset({
        SettlementStatus.PROCESSING,
        SettlementStatus.CANCELLED,
    }),
    SettlementStatus.PROCESSING: frozenset({SettlementStatus.COMPLETED}),
    SettlementStatus.COMPLETED: frozenset(),
    SettlementStatus.CANCELLED: frozenset(),
}

TERMINAL_SETTLEMENT_STATUSES: frozenset[SettlementStatus] = frozenset({
    SettlementStatus.COMPLETED,
    SettlementStatus.CANCELLED,
})


def allowed_sources(target: SettlementStatus) -> frozenset[SettlementStatus]:
    """Statuses from which ``target`` can be reached."""
    return frozenset(
        source for source, targets in SETTLEMENT_TRANSITIONS.items() if target in targets
    )


def settlement_number(
    partner_type: PartnerType,
    settlement_type: SettlementType,
    on: date,
    sequence: int,
) -> str:
    """``<PARTNER>-<TYPE>-<YYYYMMDD>-<NNN>``, e.g. ``MBA-SF-20240131-001``."""
    return (
        f"{PARTNER_CODES[partner_type]}-{SETTLEMENT_TYPE_CODES[settlement_type]}-"
        f"{on:%Y%m%d}-{sequence:03d}"
    )


# =========================================================================
# Metadata union
# =========================================================================


@dataclass(frozen=True)
class DailyCount:
    reference_date: date
    count: int
    amount: int


@dataclass(frozen=True)
class ServiceFeeMetadata:
    fee_per_transaction: int
    escrow_count: int
    daily_breakdown: tuple[DailyCount, ...] = ()

    kind = "service_fee"


@dataclass(frozen=True)
class CommissionMetadata:
    """
    Commission components for one party.

    For the platform ``om_amount`` and ``profit_amount`` drive the split
    between the O&M and profit-share income accounts.
    """

    total_premium: int = 0
    pure_premium: int = 0
    total_commission: int = 0
    total_riders: int = 0
    full_term_riders: int = 0
    om_amount: int = 0
    profit_amount: int = 0
    mobilization_amount: int = 0
    joint_portion_amount: int = 0
    profit_share_amount: int = 0

    kind = "commission"


@dataclass(frozen=True)
class RemittanceMetadata:
    remittance_kind: RemittanceKind
    escrow_count: int

    kind = "remittance"


@dataclass(frozen=True)
class UnrecognizedMetadata:
    """Metadata of a kind this version does not know; kept verbatim."""

    kind: str
    raw: dict[str, Any] = field(default_factory=dict)


SettlementMetadata = Union[
    ServiceFeeMetadata, CommissionMetadata, RemittanceMetadata, UnrecognizedMetadata
]


def metadata_to_dict(metadata: SettlementMetadata | None) -> dict[str, Any]:
    """Serialize metadata to a JSON-safe dict carrying its ``kind``."""
    if metadata is None:
        return {}
    if isinstance(metadata, UnrecognizedMetadata):
        return {**metadata.raw, "kind": metadata.kind}
    if isinstance(metadata, ServiceFeeMetadata):
        return {
            "kind": metadata.kind,
            "fee_per_transaction": metadata.fee_per_transaction,
            "escrow_count": metadata.escrow_count,
            "daily_breakdown": [
                {
                    "reference_date": d.reference_date.isoformat(),
                    "count": d.count,
                    "amount": d.amount,
                }
                for d in metadata.daily_breakdown
            ],
        }
    if isinstance(metadata, RemittanceMetadata):
        return {
            "kind": metadata.kind,
            "remittance_kind": metadata.remittance_kind.value,
            "escrow_count": metadata.escrow_count,
        }
    return {
        "kind": metadata.kind,
        "total_premium": metadata.total_premium,
        "pure_premium": metadata.pure_premium,
        "total_commission": metadata.total_commission,
        "total_riders": metadata.total_riders,
        "full_term_riders": metadata.full_term_riders,
        "om_amount": metadata.om_amount,
        "profit_amount": metadata.profit_amount,
        "mobilization_amount": metadata.mobilization_amount,
        "joint_portion_amount": metadata.joint_portion_amount,
        "profit_share_amount": metadata.profit_share_amount,
    }


def metadata_from_dict(data: dict[str, Any] | None) -> SettlementMetadata | None:
    """Rebuild typed metadata from its stored dict."""
    if not data:
        return None
    kind = data.get("kind", "")
    if kind == ServiceFeeMetadata.kind:
        return ServiceFeeMetadata(
            fee_per_transaction=int(data["fee_per_transaction"]),
            escrow_count=int(data["escrow_count"]),
            daily_breakdown=tuple(
                DailyCount(
                    reference_date=date.fromisoformat(d["reference_date"]),
                    count=int(d["count"]),
                    amount=int(d["amount"]),
                )
                for d in data.get("daily_breakdown", ())
            ),
        )
    if kind == CommissionMetadata.kind:
        known = {
            k: int(v)
            for k, v in data.items()
            if k != "kind" and k in CommissionMetadata.__dataclass_fields__
        }
        return CommissionMetadata(**known)
    if kind == RemittanceMetadata.kind:
        return RemittanceMetadata(
            remittance_kind=RemittanceKind(data["remittance_kind"]),
            escrow_count=int(data["escrow_count"]),
        )
    return UnrecognizedMetadata(
        kind=kind,
        raw={k: v for k, v in data.items() if k != "kind"},
    )


# =========================================================================
# Records and results
# =========================================================================


@dataclass(frozen=True)
class SettlementLineItemRecord:
    line_number: int
    amount: int
    count: int
    reference_date: date | None = None
    description: str | None = None


@dataclass(frozen=True)
class SettlementRecord:
    """Immutable snapshot of a partner settlement."""

    id: UUID
    settlement_number: str
    partner_type: PartnerType
    settlement_type: SettlementType
    period_start: date
    period_end: date
    total_amount: int
    transaction_count: int
    status: SettlementStatus
    created_by: str
    created_at: datetime
    line_items: tuple[SettlementLineItemRecord, ...] = ()
    metadata: SettlementMetadata | None = None
    approved_by: str | None = None
    approved_at: datetime | None = None
    processed_by: str | None = None
    processed_at: datetime | None = None
    completed_by: str | None = None
    completed_at: datetime | None = None
    cancelled_by: str | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    bank_reference: str | None = None
    bank_account: str | None = None
    confirmation_reference: str | None = None
    journal_entry_id: UUID | None = None
    payout_entry_id: UUID | None = None


@dataclass(frozen=True)
class SettlementResult:
    """
    Outcome of settlement creation.

    A zero-activity period is a success with zero totals and no
    settlement; business rejections carry the typed ``error``.
    """

    success: bool
    total_amount: int = 0
    transaction_count: int = 0
    message: str | None = None
    settlement: SettlementRecord | None = None
    error: LedgerKernelError | None = None

    @classmethod
    def created(cls, settlement: SettlementRecord, message: str | None = None) -> SettlementResult:
        return cls(
            success=True,
            total_amount=settlement.total_amount,
            transaction_count=settlement.transaction_count,
            message=message or f"Settlement {settlement.settlement_number} created",
            settlement=settlement,
        )

    @classmethod
    def empty(cls, message: str) -> SettlementResult:
        return cls(success=True, message=message)

    @classmethod
    def failure(cls, error: LedgerKernelError) -> SettlementResult:
        return cls(success=False, message=str(error), error=error)

    @property
    def is_success(self) -> bool:
        return self.success

    @property
    def settlement_id(self) -> UUID | None:
        return self.settlement.id if self.settlement is not None else None

    @property
    def settlement_number(self) -> str | None:
        return self.settlement.settlement_number if self.settlement is not None else None

    def unwrap(self) -> SettlementRecord | None:
        """Return the settlement (None for an empty period) or raise the error."""
        if self.error is not None:
            raise self.error
        return self.settlement
