"""
Rate table schema.

The human-authored, versioned source of every allocation constant the
ledger uses: receipt splits, the refund fee split, commission rates, the
chart of accounts and the account roles postings resolve to.  YAML files
in ``ledger_config/sets/`` are parsed into these frozen types by the
loader and handed to the posting and commission components.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

# ---------------------------------------------------------------------------
# Allocation rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReceiptRates:
    """Split of one premium receipt, in minor units."""

    day1_premium: int
    daily_premium: int
    service_fee_a: int
    service_fee_b: int
    platform_fee: int
    # Totals as published to riders; checked against the split
    declared_day1_total: int | None = None
    declared_daily_total: int | None = None

    @property
    def fee_total(self) -> int:
        return self.service_fee_a + self.service_fee_b + self.platform_fee

    @property
    def day1_total(self) -> int:
        return self.day1_premium + self.fee_total

    @property
    def daily_total(self) -> int:
        return self.daily_premium + self.fee_total


@dataclass(frozen=True)
class RefundRates:
    """
    Refund split.  The rider gets ``rider_percent`` of the refundable
    amount; the rest is the reversal fee, split by the fee percentages with
    ``remainder_party`` absorbing the rounding difference.
    """

    rider_percent: int
    platform_percent: int
    mobilization_a_percent: int
    mobilization_b_percent: int
    remainder_party: str = "mobilization_b"


@dataclass(frozen=True)
class CommissionRates:
    pure_premium_numerator: int
    pure_premium_denominator: int
    commission_rate: Decimal
    platform_om_per_rider: int
    joint_mobilization_per_rider: int
    joint_portion_per_rider: int
    full_term_days: int = 31


@dataclass(frozen=True)
class ReconciliationPolicy:
    date_tolerance_days: int = 1
    exact_score: int = 100
    fuzzy_score: int = 80


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AccountDefinition:
    code: str
    name: str
    account_type: str  # asset, liability, equity, income, expense
    description: str | None = None


@dataclass(frozen=True)
class AccountMap:
    """Account roles used by postings, resolved to chart codes."""

    escrow_cash: str
    operating_cash: str
    commission_receivable: str
    premium_payable: str
    service_fee_payable_a: str
    service_fee_payable_b: str
    commission_payable_a: str
    commission_payable_b: str
    refund_payable: str
    service_fee_income: str
    commission_income_om: str
    commission_income_profit: str
    reversal_fee_income: str

    def codes(self) -> dict[str, str]:
        return {name: getattr(self, name) for name in self.__dataclass_fields__}

    def service_fee_payable(self, partner: str) -> str:
        if partner == "mobilization_a":
            return self.service_fee_payable_a
        if partner == "mobilization_b":
            return self.service_fee_payable_b
        raise ValueError(f"No service fee payable account for {partner!r}")

    def commission_payable(self, partner: str) -> str:
        if partner == "mobilization_a":
            return self.commission_payable_a
        if partner == "mobilization_b":
            return self.commission_payable_b
        raise ValueError(f"No commission payable account for {partner!r}")


# ---------------------------------------------------------------------------
# Rate table
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RateTable:
    """One effective-dated version of the allocation rules."""

    version: str
    effective_from: date
    currency: str
    receipt: ReceiptRates
    refund: RefundRates
    commission: CommissionRates
    accounts: AccountMap
    chart: tuple[AccountDefinition, ...]
    reconciliation: ReconciliationPolicy = field(default_factory=ReconciliationPolicy)
    effective_to: date | None = None
    checksum: str = ""

    def covers(self, as_of_date: date) -> bool:
        return self.effective_from <= as_of_date and (
            self.effective_to is None or as_of_date <= self.effective_to
        )

    def service_fee_for(self, partner: str) -> int:
        if partner == "mobilization_a":
            return self.receipt.service_fee_a
        if partner == "mobilization_b":
            return self.receipt.service_fee_b
        raise ValueError(f"No service fee defined for {partner!r}")
