"""
ledger_config -- single public entrypoint for rate tables.

Responsibility:
    Provides the way to obtain allocation rules at runtime through
    ``get_active_rate_table()``.  The returned ``RateTable`` is passed to
    ``PostingEngine``, ``CommissionCalculator`` and ``SettlementService``
    so that every journal entry records the version that produced it.

Invariants enforced:
    - The returned table has passed ``validate_rate_table``.
    - Exactly one table covers a given date; overlapping tables resolve to
      the latest ``effective_from``.

Failure modes:
    - ``FileNotFoundError`` -- no rate table covers the requested date.
    - ``ValueError`` -- validation failures.

Audit relevance:
    Every successful call emits a ``LEDGER_CONFIG_TRACE`` log entry with the
    version, checksum and effective date of the table handed out.
"""

from __future__ import annotations

import logging
from datetime import date
from pathlib import Path

from ledger_config.loader import load_rate_table
from ledger_config.schema import (
    AccountDefinition,
    AccountMap,
    CommissionRates,
    RateTable,
    ReceiptRates,
    ReconciliationPolicy,
    RefundRates,
)
from ledger_config.validator import validate_rate_table

_logger = logging.getLogger("ledger_kernel.config")

_DEFAULT_CONFIG_DIR = Path(__file__).parent / "sets"

__all__ = [
    "AccountDefinition",
    "AccountMap",
    "CommissionRates",
    "RateTable",
    "ReceiptRates",
    "ReconciliationPolicy",
    "RefundRates",
    "get_active_rate_table",
    "load_rate_table",
    "validate_rate_table",
]


def get_active_rate_table(
    as_of_date: date,
    config_dir: Path | None = None,
) -> RateTable:
    """Return the validated rate table in effect on ``as_of_date``.

    Args:
        as_of_date: Date for effective date filtering.
        config_dir: Override path to the rate table directory.
            Defaults to ledger_config/sets/.

    Raises:
        FileNotFoundError: If no rate table covers the date.
        ValueError: If the table fails validation.
    """
    sets_dir = config_dir or _DEFAULT_CONFIG_DIR

    table = _find_matching_table(sets_dir, as_of_date)

    validation = validate_rate_table(table)
    if not validation.is_valid:
        raise ValueError(
            "Rate table validation failed:\n"
            + "\n".join(f"  - {e}" for e in validation.errors)
        )

    _logger.info(
        "LEDGER_CONFIG_TRACE",
        extra={
            "trace_type": "LEDGER_CONFIG_TRACE",
            "rate_table_version": table.version,
            "checksum": table.checksum,
            "effective_from": table.effective_from,
            "as_of_date": as_of_date,
            "currency": table.currency,
            "chart_size": len(table.chart),
        },
    )

    return table


def _find_matching_table(sets_dir: Path, as_of_date: date) -> RateTable:
    """Load every ``*.yaml`` in *sets_dir* and pick the one covering the date."""
    if not sets_dir.is_dir():
        raise FileNotFoundError(f"Rate table directory not found: {sets_dir}")

    candidates = [
        table
        for table in (load_rate_table(path) for path in sorted(sets_dir.glob("*.yaml")))
        if table.covers(as_of_date)
    ]

    if not candidates:
        raise FileNotFoundError(
            f"No rate table found for as_of_date={as_of_date} in {sets_dir}"
        )

    return max(candidates, key=lambda t: t.effective_from)
