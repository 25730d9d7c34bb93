"""
ledger_services.commission_service -- monthly commission settlement run.

Responsibility:
    Aggregates the premium whose underwriter remittance was paid during a
    period per rider, runs the pure CommissionCalculator over it and raises the
    commission settlements for partner A, partner B and the platform.

Architecture position:
    Services -- composes the CommissionCalculator engine with
    SettlementService.

Invariants enforced:
    - An invalid calculation halts the run before anything is written.
    - The three settlements are created in one savepoint: all or none.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import Session

from ledger_config.schema import RateTable
from ledger_engines.commission import (
    CommissionCalculator,
    CommissionResult,
    PartnerCommissionSummary,
    RiderPremium,
)
from ledger_kernel.domain.clock import Clock, SystemClock, period_bounds
from ledger_kernel.domain.settlement import CommissionMetadata, PartnerType, SettlementResult
from ledger_kernel.exceptions import CommissionInvariantViolation, LedgerKernelError
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.escrow import EscrowTracking, RemittanceStatus
from ledger_services.settlement_service import SettlementService

logger = get_logger("services.commission")


@dataclass(frozen=True)
class CommissionRun:
    """Outcome of ``CommissionService.settle_period``."""

    success: bool
    period_start: date
    period_end: date
    result: CommissionResult | None = None
    settlements: tuple[SettlementResult, ...] = ()
    error: LedgerKernelError | None = None

    @property
    def is_success(self) -> bool:
        return self.success

    @property
    def total_settled(self) -> int:
        return sum(s.total_amount for s in self.settlements)

    def unwrap(self) -> CommissionResult:
        if self.error is not None:
            raise self.error
        assert self.result is not None
        return self.result


class CommissionService:
    def __init__(
        self,
        session: Session,
        rate_table: RateTable,
        clock: Clock | None = None,
        settlement_service: SettlementService | None = None,
    ):
        self._session = session
        self._rate_table = rate_table
        self._clock = clock or SystemClock()
        self._calculator = CommissionCalculator(rate_table.commission)
        self._settlements = settlement_service or SettlementService(
            session, rate_table, self._clock
        )

    @property
    def calculator(self) -> CommissionCalculator:
        return self._calculator

    def rider_premiums_for_period(self, period_start: date, period_end: date) -> list[RiderPremium]:
        """
        Premium whose remittance was paid during the period, per rider.

        Rows claimed by a remittance that has not completed carry no
        ``remitted_at`` and do not count.  Days completed is the number of
        distinct payment days remitted.
        """
        start, end = period_bounds(period_start, period_end)
        rows = self._session.execute(
            select(
                EscrowTracking.rider_id,
                EscrowTracking.premium_amount,
                EscrowTracking.payment_day,
            ).where(
                EscrowTracking.remittance_status == RemittanceStatus.REMITTED.value,
                EscrowTracking.remitted_at >= start,
                EscrowTracking.remitted_at < end,
            )
        ).all()

        totals: dict[str, int] = defaultdict(int)
        days: dict[str, set[int]] = defaultdict(set)
        for rider_id, premium_amount, payment_day in rows:
            totals[rider_id] += premium_amount
            days[rider_id].add(payment_day)

        full_term_days = self._rate_table.commission.full_term_days
        return [
            RiderPremium(
                rider_id=rider_id,
                total_premium=totals[rider_id],
                days_completed=len(days[rider_id]),
                is_full_term=len(days[rider_id]) >= full_term_days,
            )
            for rider_id in sorted(totals)
        ]

    def calculate_period(self, period_start: date, period_end: date) -> CommissionResult:
        premiums = self.rider_premiums_for_period(period_start, period_end)
        return self._calculator.calculate_monthly_commission(premiums, period_start, period_end)

    def partner_summaries(self, period_start: date, period_end: date) -> tuple[PartnerCommissionSummary, ...]:
        return self._calculator.partner_summaries(self.calculate_period(period_start, period_end))

    def settle_period(
        self, period_start: date, period_end: date, actor_id: str = "system"
    ) -> CommissionRun:
        """
        Calculate the period's commission and raise its three settlements.

        A zero-commission period succeeds with empty settlement results.
        """
        result = self.calculate_period(period_start, period_end)
        try:
            self._calculator.ensure_valid(result)
        except CommissionInvariantViolation as exc:
            return CommissionRun(
                success=False,
                period_start=period_start,
                period_end=period_end,
                result=result,
                error=exc,
            )

        shared = dict(
            total_premium=result.total_premium,
            pure_premium=result.pure_premium,
            total_commission=result.total_commission,
            total_riders=result.total_riders,
            full_term_riders=result.full_term_riders,
        )
        plan = (
            (
                PartnerType.MOBILIZATION_A,
                result.partner_a_total,
                CommissionMetadata(
                    **shared,
                    mobilization_amount=result.mobilization_a,
                    joint_portion_amount=result.joint_portion_a,
                    profit_share_amount=result.profit_share,
                ),
            ),
            (
                PartnerType.MOBILIZATION_B,
                result.partner_b_total,
                CommissionMetadata(
                    **shared,
                    mobilization_amount=result.mobilization_b,
                    joint_portion_amount=result.joint_portion_b,
                    profit_share_amount=result.profit_share,
                ),
            ),
            (
                PartnerType.PLATFORM,
                result.platform_total,
                CommissionMetadata(
                    **shared,
                    om_amount=result.platform_om,
                    profit_amount=result.platform_profit,
                ),
            ),
        )

        settlements: list[SettlementResult] = []
        try:
            with self._session.begin_nested():
                for partner, amount, metadata in plan:
                    settled = self._settlements.create_commission_settlement(
                        partner,
                        period_start,
                        period_end,
                        amount,
                        metadata=metadata,
                        actor_id=actor_id,
                    )
                    if not settled.is_success:
                        raise settled.error
                    settlements.append(settled)
        except LedgerKernelError as exc:
            logger.warning(
                "commission_settlement_failed",
                extra={"period_start": period_start, "error_code": exc.code, "reason": str(exc)},
            )
            return CommissionRun(
                success=False,
                period_start=period_start,
                period_end=period_end,
                result=result,
                error=exc,
            )

        logger.info(
            "commission_period_settled",
            extra={
                "period_start": period_start,
                "period_end": period_end,
                "total_commission": result.total_commission,
                "settlement_count": sum(1 for s in settlements if s.settlement is not None),
            },
        )
        return CommissionRun(
            success=True,
            period_start=period_start,
            period_end=period_end,
            result=result,
            settlements=tuple(settlements),
        )
