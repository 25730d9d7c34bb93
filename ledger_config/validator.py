"""
Rate table validation.

Collects every problem instead of stopping at the first one so that a
reviewer sees the whole list.  Nothing is corrected.
"""

from __future__ import annotations

from dataclasses import dataclass

from ledger_config.schema import RateTable

_ACCOUNT_TYPES = frozenset({"asset", "liability", "equity", "income", "expense"})
_REMAINDER_PARTIES = frozenset({"platform", "mobilization_a", "mobilization_b"})


@dataclass(frozen=True)
class ValidationResult:
    errors: tuple[str, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.errors


def validate_rate_table(table: RateTable) -> ValidationResult:
    errors: list[str] = []

    receipt = table.receipt
    for name in ("day1_premium", "daily_premium", "service_fee_a", "service_fee_b", "platform_fee"):
        if getattr(receipt, name) <= 0:
            errors.append(f"receipt.{name} must be positive")
    if receipt.declared_day1_total is not None and receipt.declared_day1_total != receipt.day1_total:
        errors.append(
            f"receipt.day1_total {receipt.declared_day1_total} != split sum {receipt.day1_total}"
        )
    if receipt.declared_daily_total is not None and receipt.declared_daily_total != receipt.daily_total:
        errors.append(
            f"receipt.daily_total {receipt.declared_daily_total} != split sum {receipt.daily_total}"
        )

    refund = table.refund
    if not 0 < refund.rider_percent < 100:
        errors.append("refund.rider_percent must be between 0 and 100")
    split_total = (
        refund.platform_percent + refund.mobilization_a_percent + refund.mobilization_b_percent
    )
    if split_total != 100:
        errors.append(f"refund.fee_split must sum to 100, got {split_total}")
    if refund.remainder_party not in _REMAINDER_PARTIES:
        errors.append(f"refund.remainder_party {refund.remainder_party!r} is not a fee party")

    commission = table.commission
    if commission.pure_premium_denominator <= 0:
        errors.append("commission.pure_premium_ratio.denominator must be positive")
    if not 0 < commission.pure_premium_numerator <= commission.pure_premium_denominator:
        errors.append("commission.pure_premium_ratio must be in (0, 1]")
    if not 0 < commission.commission_rate < 1:
        errors.append("commission.commission_rate must be in (0, 1)")
    if commission.full_term_days < 1:
        errors.append("commission.full_term_days must be positive")

    codes: set[str] = set()
    for account in table.chart:
        if account.code in codes:
            errors.append(f"chart has duplicate account code {account.code}")
        codes.add(account.code)
        if account.account_type not in _ACCOUNT_TYPES:
            errors.append(f"chart account {account.code} has unknown type {account.account_type!r}")

    for role, code in table.accounts.codes().items():
        if code not in codes:
            errors.append(f"accounts.{role} -> {code} is not in the chart")

    if table.reconciliation.date_tolerance_days < 0:
        errors.append("reconciliation.date_tolerance_days must not be negative")

    if table.effective_to is not None and table.effective_to < table.effective_from:
        errors.append("effective_to is before effective_from")

    return ValidationResult(errors=tuple(errors))
