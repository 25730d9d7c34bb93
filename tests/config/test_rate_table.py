"""
Rate table loading and validation tests.

Verifies:
- The shipped table loads with the published receipt and refund rules
- Checksums are deterministic and change with content
- Validation collects every problem
- Effective-date selection across several tables
"""

from dataclasses import replace
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest
import yaml

from ledger_config import get_active_rate_table, load_rate_table, validate_rate_table
from ledger_config.loader import compute_checksum

SETS_DIR = Path(__file__).resolve().parents[2] / "ledger_config" / "sets"


@pytest.fixture
def raw_document() -> dict:
    with open(SETS_DIR / "premium_v1.yaml") as f:
        return yaml.safe_load(f)


def _write(directory: Path, name: str, document: dict) -> Path:
    path = directory / name
    path.write_text(yaml.safe_dump(document))
    return path


class TestShippedTable:
    """Covers: the premium_v1 rate table."""

    def test_receipt_rules(self, rate_table):
        assert rate_table.receipt.day1_total == 104800
        assert rate_table.receipt.daily_total == 8700
        assert rate_table.receipt.fee_total == 300

    def test_commission_rate_is_exact_decimal(self, rate_table):
        assert rate_table.commission.commission_rate == Decimal("0.09")
        assert rate_table.commission.full_term_days == 31

    def test_chart_covers_account_roles(self, rate_table):
        codes = {a.code for a in rate_table.chart}

        assert set(rate_table.accounts.codes().values()) <= codes
        assert len(rate_table.chart) == 15

    def test_shipped_table_is_valid(self, rate_table):
        assert validate_rate_table(rate_table).is_valid

    def test_partner_lookups(self, rate_table):
        assert rate_table.service_fee_for("mobilization_b") == 100
        assert rate_table.accounts.commission_payable("mobilization_a") == "2004"
        with pytest.raises(ValueError):
            rate_table.service_fee_for("platform")


class TestChecksum:
    def test_deterministic(self, raw_document):
        assert compute_checksum(raw_document) == compute_checksum(dict(reversed(raw_document.items())))

    def test_changes_with_content(self, raw_document):
        changed = dict(raw_document, currency="UGX")

        assert compute_checksum(changed) != compute_checksum(raw_document)

    def test_loaded_table_carries_checksum(self, rate_table, raw_document):
        assert rate_table.checksum == compute_checksum(raw_document)


class TestValidation:
    def test_collects_every_error(self, rate_table):
        broken = replace(
            rate_table,
            receipt=replace(rate_table.receipt, declared_daily_total=9000),
            refund=replace(rate_table.refund, platform_percent=60, remainder_party="rider"),
        )

        result = validate_rate_table(broken)

        assert not result.is_valid
        assert len(result.errors) == 3

    def test_unknown_account_role(self, rate_table):
        broken = replace(rate_table, accounts=replace(rate_table.accounts, escrow_cash="1999"))

        result = validate_rate_table(broken)

        assert result.errors == ("accounts.escrow_cash -> 1999 is not in the chart",)

    def test_duplicate_chart_code(self, rate_table):
        broken = replace(rate_table, chart=rate_table.chart + (rate_table.chart[0],))

        assert any("duplicate" in e for e in validate_rate_table(broken).errors)


class TestActiveTable:
    """Covers: effective-date selection."""

    def test_no_table_before_effective_date(self):
        with pytest.raises(FileNotFoundError):
            get_active_rate_table(date(2023, 12, 31))

    def test_missing_directory(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_rate_table(date(2024, 1, 15), config_dir=tmp_path / "missing")

    def test_latest_effective_table_wins(self, tmp_path, raw_document):
        _write(tmp_path, "v1.yaml", raw_document)
        v2 = dict(raw_document, version="2.0.0", effective_from=date(2024, 6, 1))
        _write(tmp_path, "v2.yaml", v2)

        assert get_active_rate_table(date(2024, 5, 31), config_dir=tmp_path).version == "1.0.0"
        assert get_active_rate_table(date(2024, 6, 1), config_dir=tmp_path).version == "2.0.0"

    def test_invalid_table_rejected(self, tmp_path, raw_document):
        broken = dict(raw_document, receipt=dict(raw_document["receipt"], daily_total=9000))
        _write(tmp_path, "broken.yaml", broken)

        with pytest.raises(ValueError, match="daily_total"):
            get_active_rate_table(date(2024, 1, 15), config_dir=tmp_path)

    def test_config_trace_logged(self, captured_logs):
        table = get_active_rate_table(date(2024, 1, 15))

        trace = next(r for r in captured_logs() if r["message"] == "LEDGER_CONFIG_TRACE")
        assert trace["rate_table_version"] == table.version
        assert trace["checksum"] == table.checksum

    def test_load_file_directly(self):
        table = load_rate_table(SETS_DIR / "premium_v1.yaml")

        assert table.version == "1.0.0"
        assert table.effective_from == date(2024, 1, 1)
