"""
ledger_engines.commission -- monthly commission distribution.

Responsibility:
    Turns the premiums collected from riders over a period into the
    underwriter's commission and splits it between the platform (O&M and
    profit share) and the two mobilization partners.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Rates come from the rate
    table; rider premiums and the period are passed in.

Invariants enforced:
    - One rounding step per aggregate: pure premium and commission are each
      rounded half-up once, on the period totals.
    - platform_om + platform_profit + partner_a + partner_b == total_commission.
    - A rider is full-term only when days_completed >= full_term_days.
    - Joint amounts split 50/50 with the odd cent to partner A; the profit
      share is floored per partner and the platform profit takes the rest.

Failure modes:
    - ``validate`` reports broken invariants without correcting anything;
      ``ensure_valid`` raises CommissionInvariantViolation.

Worked example (one full-term rider, 356500 collected):
    pure 350000, commission 31500, platform O&M 10000, platform profit 3700,
    partner A 8900, partner B 8900.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal

from ledger_config.schema import CommissionRates
from ledger_engines.tracer import traced_engine
from ledger_kernel.exceptions import CommissionInvariantViolation
from ledger_kernel.logging_config import get_logger

logger = get_logger("engines.commission")


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class RiderPremium:
    """Premium a rider paid during the period."""

    rider_id: str
    total_premium: int
    days_completed: int
    is_full_term: bool = False  # informational; days_completed decides


@dataclass(frozen=True)
class CommissionResult:
    period_start: date
    period_end: date
    total_premium: int
    pure_premium: int
    total_commission: int
    total_riders: int
    full_term_riders: int
    partial_riders: int
    platform_om: int
    joint_mobilization: int
    joint_portion: int
    mobilization_a: int
    mobilization_b: int
    joint_portion_a: int
    joint_portion_b: int
    remaining_commission: int
    profit_share: int
    platform_profit: int

    @property
    def partner_a_total(self) -> int:
        return self.mobilization_a + self.joint_portion_a + self.profit_share

    @property
    def partner_b_total(self) -> int:
        return self.mobilization_b + self.joint_portion_b + self.profit_share

    @property
    def platform_total(self) -> int:
        return self.platform_om + self.platform_profit

    @property
    def distribution(self) -> dict[str, int]:
        return {
            "platform_om": self.platform_om,
            "platform_profit": self.platform_profit,
            "mobilization_a": self.partner_a_total,
            "mobilization_b": self.partner_b_total,
        }

    @property
    def distributed_total(self) -> int:
        return sum(self.distribution.values())


@dataclass(frozen=True)
class CommissionValidation:
    errors: tuple[str, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class PartnerCommissionSummary:
    party: str
    amount: int
    components: dict[str, int] = field(default_factory=dict)


def _split_even(amount: int) -> tuple[int, int]:
    """Halve an amount; partner A takes the odd cent."""
    b = amount // 2
    return amount - b, b


class CommissionCalculator:
    """
    Pure commission engine.

    Contract:
        No I/O, no clock access.  Identical inputs give identical results.
    """

    def __init__(self, rates: CommissionRates):
        self._rates = rates

    @property
    def rates(self) -> CommissionRates:
        return self._rates

    @traced_engine(
        "commission", "1.0", fingerprint_fields=("rider_premiums", "period_start", "period_end")
    )
    def calculate_monthly_commission(
        self,
        rider_premiums: Sequence[RiderPremium],
        period_start: date,
        period_end: date,
    ) -> CommissionResult:
        """
        Commission for one period.

        Empty input yields an all-zero result.
        """
        rates = self._rates
        total_premium = sum(r.total_premium for r in rider_premiums)
        pure_premium = self._pure_premium(total_premium)
        total_commission = self._commission(pure_premium)

        total_riders = len(rider_premiums)
        full_term = sum(1 for r in rider_premiums if r.days_completed >= rates.full_term_days)
        partial = total_riders - full_term

        platform_om = rates.platform_om_per_rider * full_term
        joint_mobilization = rates.joint_mobilization_per_rider * full_term
        joint_portion = rates.joint_portion_per_rider * full_term
        mobilization_a, mobilization_b = _split_even(joint_mobilization)
        joint_portion_a, joint_portion_b = _split_even(joint_portion)

        remaining = total_commission - platform_om - joint_mobilization - joint_portion
        profit_share = remaining // 3
        platform_profit = remaining - 2 * profit_share

        result = CommissionResult(
            period_start=period_start,
            period_end=period_end,
            total_premium=total_premium,
            pure_premium=pure_premium,
            total_commission=total_commission,
            total_riders=total_riders,
            full_term_riders=full_term,
            partial_riders=partial,
            platform_om=platform_om,
            joint_mobilization=joint_mobilization,
            joint_portion=joint_portion,
            mobilization_a=mobilization_a,
            mobilization_b=mobilization_b,
            joint_portion_a=joint_portion_a,
            joint_portion_b=joint_portion_b,
            remaining_commission=remaining,
            profit_share=profit_share,
            platform_profit=platform_profit,
        )

        logger.info(
            "commission_calculated",
            extra={
                "period_start": period_start,
                "period_end": period_end,
                "total_riders": total_riders,
                "full_term_riders": full_term,
                "total_premium": total_premium,
                "total_commission": total_commission,
            },
        )
        return result

    def validate(self, result: CommissionResult) -> CommissionValidation:
        """Report every broken invariant.  Nothing is corrected."""
        errors: list[str] = []

        if result.distributed_total != result.total_commission:
            errors.append(
                f"distribution {result.distributed_total} != commission {result.total_commission}"
            )
        if result.full_term_riders + result.partial_riders != result.total_riders:
            errors.append(
                f"full-term {result.full_term_riders} + partial {result.partial_riders} "
                f"!= riders {result.total_riders}"
            )
        for name, amount in (
            ("platform_om", result.platform_om),
            ("platform_profit", result.platform_profit),
            ("mobilization_a", result.partner_a_total),
            ("mobilization_b", result.partner_b_total),
            ("profit_share", result.profit_share),
            ("remaining_commission", result.remaining_commission),
        ):
            if amount < 0:
                errors.append(f"{name} is negative ({amount})")

        expected_pure = self._pure_premium(result.total_premium)
        if result.pure_premium != expected_pure:
            errors.append(f"pure premium {result.pure_premium} != expected {expected_pure}")
        expected_commission = self._commission(result.pure_premium)
        if result.total_commission != expected_commission:
            errors.append(
                f"commission {result.total_commission} != expected {expected_commission}"
            )

        return CommissionValidation(errors=tuple(errors))

    def ensure_valid(self, result: CommissionResult) -> CommissionResult:
        validation = self.validate(result)
        if not validation.is_valid:
            error = CommissionInvariantViolation(validation.errors)
            logger.error(
                "commission_invariant_violated",
                extra={"period_start": result.period_start, "errors": list(validation.errors)},
            )
            raise error
        return result

    def partner_summaries(self, result: CommissionResult) -> tuple[PartnerCommissionSummary, ...]:
        return (
            PartnerCommissionSummary(
                party="platform",
                amount=result.platform_total,
                components={"om": result.platform_om, "profit": result.platform_profit},
            ),
            PartnerCommissionSummary(
                party="mobilization_a",
                amount=result.partner_a_total,
                components={
                    "mobilization": result.mobilization_a,
                    "joint_portion": result.joint_portion_a,
                    "profit_share": result.profit_share,
                },
            ),
            PartnerCommissionSummary(
                party="mobilization_b",
                amount=result.partner_b_total,
                components={
                    "mobilization": result.mobilization_b,
                    "joint_portion": result.joint_portion_b,
                    "profit_share": result.profit_share,
                },
            ),
        )

    def _pure_premium(self, total_premium: int) -> int:
        rates = self._rates
        return round_half_up(
            Decimal(total_premium)
            * Decimal(rates.pure_premium_numerator)
            / Decimal(rates.pure_premium_denominator)
        )

    def _commission(self, pure_premium: int) -> int:
        return round_half_up(Decimal(pure_premium) * self._rates.commission_rate)
