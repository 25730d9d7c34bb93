"""
Rate Table Loader (``ledger_config.loader``).

Responsibility
--------------
Loads a rate table YAML file and parses it into the frozen dataclasses of
``ledger_config.schema``.  Callers obtain tables through
``ledger_config.get_active_rate_table()``; tests may load a file directly.

Invariants enforced
-------------------
* Required keys are never defaulted: a missing key raises ``KeyError``.
* Rates are parsed with ``Decimal(str(value))`` so a YAML float never
  leaks binary rounding into money.
* ``compute_checksum`` produces a deterministic SHA-256 over the canonical
  JSON of the raw document.

Failure modes
-------------
* Missing file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing keys  -> ``KeyError``; bad dates -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml

from ledger_config.schema import (
    AccountDefinition,
    AccountMap,
    CommissionRates,
    RateTable,
    ReceiptRates,
    ReconciliationPolicy,
    RefundRates,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a single YAML file and return its contents as a dict."""
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_date(value: Any) -> date:
    """Parse a date from YAML (string or date object)."""
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value)
    raise ValueError(f"Cannot parse date from {value!r}")


def parse_receipt(data: dict[str, Any]) -> ReceiptRates:
    return ReceiptRates(
        day1_premium=int(data["day1_premium"]),
        daily_premium=int(data["daily_premium"]),
        service_fee_a=int(data["service_fee_a"]),
        service_fee_b=int(data["service_fee_b"]),
        platform_fee=int(data["platform_fee"]),
        declared_day1_total=int(data["day1_total"]) if "day1_total" in data else None,
        declared_daily_total=int(data["daily_total"]) if "daily_total" in data else None,
    )


def parse_refund(data: dict[str, Any]) -> RefundRates:
    split = data["fee_split"]
    return RefundRates(
        rider_percent=int(data["rider_percent"]),
        platform_percent=int(split["platform"]),
        mobilization_a_percent=int(split["mobilization_a"]),
        mobilization_b_percent=int(split["mobilization_b"]),
        remainder_party=data.get("remainder_party", "mobilization_b"),
    )


def parse_commission(data: dict[str, Any]) -> CommissionRates:
    return CommissionRates(
        pure_premium_numerator=int(data["pure_premium_ratio"]["numerator"]),
        pure_premium_denominator=int(data["pure_premium_ratio"]["denominator"]),
        commission_rate=Decimal(str(data["commission_rate"])),
        platform_om_per_rider=int(data["platform_om_per_rider"]),
        joint_mobilization_per_rider=int(data["joint_mobilization_per_rider"]),
        joint_portion_per_rider=int(data["joint_portion_per_rider"]),
        full_term_days=int(data.get("full_term_days", 31)),
    )


def parse_accounts(data: dict[str, Any]) -> AccountMap:
    return AccountMap(**{name: str(data[name]) for name in AccountMap.__dataclass_fields__})


def parse_chart(items: list[dict[str, Any]]) -> tuple[AccountDefinition, ...]:
    return tuple(
        AccountDefinition(
            code=str(item["code"]),
            name=item["name"],
            account_type=item["type"],
            description=item.get("description"),
        )
        for item in items
    )


def parse_reconciliation(data: dict[str, Any] | None) -> ReconciliationPolicy:
    if not data:
        return ReconciliationPolicy()
    return ReconciliationPolicy(
        date_tolerance_days=int(data.get("date_tolerance_days", 1)),
        exact_score=int(data.get("exact_score", 100)),
        fuzzy_score=int(data.get("fuzzy_score", 80)),
    )


def parse_rate_table(data: dict[str, Any]) -> RateTable:
    """Parse a full rate table document."""
    return RateTable(
        version=str(data["version"]),
        effective_from=parse_date(data["effective_from"]),
        effective_to=parse_date(data["effective_to"]) if data.get("effective_to") else None,
        currency=data["currency"],
        receipt=parse_receipt(data["receipt"]),
        refund=parse_refund(data["refund"]),
        commission=parse_commission(data["commission"]),
        accounts=parse_accounts(data["accounts"]),
        chart=parse_chart(data["chart"]),
        reconciliation=parse_reconciliation(data.get("reconciliation")),
        checksum=compute_checksum(data),
    )


def load_rate_table(path: Path) -> RateTable:
    """Load and parse one rate table file (no validation)."""
    return parse_rate_table(load_yaml_file(path))


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 checksum of the canonical JSON serialization."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
