"""
Commission settlement run tests.

Verifies:
- Premium is aggregated per rider over the window in which its remittance was paid
- Remittances that are raised but not completed earn no commission
- settle_period raises the three commission settlements and accruals
- A period without remitted premium settles nothing
"""

from datetime import date, datetime, timezone

import pytest

from ledger_kernel.domain.settlement import PartnerType, RemittanceKind, SettlementType
from ledger_kernel.exceptions import CommissionInvariantViolation

JAN_1 = date(2024, 1, 1)
JAN_31 = date(2024, 1, 31)
FEB_1 = date(2024, 2, 1)
FEB_29 = date(2024, 2, 29)


def _pay_out(settlement_service, settlement_id, actor="finance"):
    settlement_service.approve_settlement(settlement_id, actor)
    settlement_service.process_settlement(settlement_id, actor, bank_reference="UWR-TRX-001")
    return settlement_service.complete_settlement(settlement_id, actor)


@pytest.fixture
def escrowed_rider(escrow_service):
    """Escrow rows for ``days`` paid days of one rider."""

    def _record(rider_id: str = "rider-1", days: int = 31):
        rows = [escrow_service.record_escrow(rider_id, 104500, 1)]
        rows += [escrow_service.record_escrow(rider_id, 8400, day) for day in range(2, days + 1)]
        return rows

    return _record


@pytest.fixture
def raise_remittances(settlement_service):
    """Raise the Day-1 and bulk remittances; returns their settlement ids."""

    def _raise():
        return [
            settlement_service.create_remittance_settlement(
                JAN_1, FEB_29, "ops", remittance_kind=kind
            ).unwrap().id
            for kind in RemittanceKind
        ]

    return _raise


@pytest.fixture
def remitted_rider(escrowed_rider, raise_remittances, settlement_service):
    """A rider's escrow rows, remitted to the underwriter and paid."""

    def _remit(rider_id: str = "rider-1", days: int = 31):
        rows = escrowed_rider(rider_id, days)
        for settlement_id in raise_remittances():
            _pay_out(settlement_service, settlement_id)
        return rows

    return _remit


class TestRiderPremiums:
    def test_full_term_rider(self, commission_service, remitted_rider):
        remitted_rider(days=31)

        premiums = commission_service.rider_premiums_for_period(JAN_1, JAN_31)

        assert len(premiums) == 1
        assert premiums[0].total_premium == 356500
        assert premiums[0].days_completed == 31
        assert premiums[0].is_full_term

    def test_pending_rows_ignored(self, commission_service, remitted_rider, escrow_service):
        remitted_rider("rider-1", days=5)
        escrow_service.record_escrow("rider-2", 104500, 1)

        premiums = commission_service.rider_premiums_for_period(JAN_1, JAN_31)

        assert [p.rider_id for p in premiums] == ["rider-1"]
        assert not premiums[0].is_full_term

    def test_remittance_outside_window_ignored(
        self, commission_service, remitted_rider, deterministic_clock
    ):
        deterministic_clock.set_time(datetime(2024, 2, 2, 9, 0, tzinfo=timezone.utc))
        remitted_rider(days=3)

        assert commission_service.rider_premiums_for_period(JAN_1, JAN_31) == []


class TestUnpaidRemittances:
    """Covers: only completed remittances count, and only once."""

    def test_raised_remittance_earns_nothing(
        self, commission_service, escrowed_rider, raise_remittances
    ):
        escrowed_rider(days=31)
        raise_remittances()

        result = commission_service.calculate_period(JAN_1, JAN_31)

        assert result.total_premium == 0
        assert result.total_commission == 0

    def test_cancelled_and_reraised_premium_counts_once(
        self,
        commission_service,
        settlement_service,
        escrowed_rider,
        raise_remittances,
        deterministic_clock,
    ):
        escrowed_rider(days=31)
        for settlement_id in raise_remittances():
            settlement_service.cancel_settlement(settlement_id, "ops", "wrong bank account")

        deterministic_clock.set_time(datetime(2024, 2, 10, 9, 0, tzinfo=timezone.utc))
        for settlement_id in raise_remittances():
            _pay_out(settlement_service, settlement_id)

        jan = commission_service.calculate_period(JAN_1, JAN_31)
        feb = commission_service.calculate_period(FEB_1, FEB_29)

        assert jan.total_premium == 0
        assert feb.total_premium == 356500
        assert feb.total_commission == 31500


class TestSettlePeriod:
    """Covers: settlements and accruals from one calculation."""

    def test_worked_example_settles(self, commission_service, settlement_service, remitted_rider, balance_of):
        remitted_rider(days=31)

        run = commission_service.settle_period(JAN_1, JAN_31, actor_id="finance")

        assert run.is_success
        assert run.unwrap().total_commission == 31500
        assert run.total_settled == 31500
        amounts = {
            s.settlement.partner_type: s.total_amount for s in run.settlements
        }
        assert amounts == {
            PartnerType.MOBILIZATION_A: 8900,
            PartnerType.MOBILIZATION_B: 8900,
            PartnerType.PLATFORM: 13700,
        }
        assert balance_of("1101") == 31500
        assert balance_of("2004") == 8900
        assert balance_of("2005") == 8900
        assert balance_of("4002") == 10000
        assert balance_of("4003") == 3700
        assert len(settlement_service.list_settlements(settlement_type=SettlementType.COMMISSION)) == 3

    def test_platform_metadata_carries_split(self, commission_service, remitted_rider):
        remitted_rider(days=31)

        run = commission_service.settle_period(JAN_1, JAN_31)

        platform = next(
            s.settlement for s in run.settlements if s.settlement.partner_type == PartnerType.PLATFORM
        )
        assert platform.metadata.om_amount == 10000
        assert platform.metadata.profit_amount == 3700
        assert platform.metadata.full_term_riders == 1

    def test_empty_period(self, commission_service, captured_logs):
        run = commission_service.settle_period(JAN_1, JAN_31)

        assert run.is_success
        assert run.total_settled == 0
        assert all(s.settlement is None for s in run.settlements)
        assert any(r["message"] == "commission_period_settled" for r in captured_logs())

    def test_invalid_calculation_halts(self, commission_service, remitted_rider, settlement_service, monkeypatch):
        remitted_rider(days=31)

        def _reject(result):
            raise CommissionInvariantViolation(("forced",))

        monkeypatch.setattr(commission_service.calculator, "ensure_valid", _reject)

        run = commission_service.settle_period(JAN_1, JAN_31)

        assert not run.is_success
        assert isinstance(run.error, CommissionInvariantViolation)
        assert settlement_service.list_settlements(settlement_type=SettlementType.COMMISSION) == []
        with pytest.raises(CommissionInvariantViolation):
            run.unwrap()
