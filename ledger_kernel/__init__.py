"""
Ledger Kernel - premium accounting core

A double-entry general ledger for insurance premium collection with:
- Idempotent posting keyed by the originating transaction
- Atomic balance updates
- Escrow tracking for premium awaiting remittance
- Append-only journal (corrections by reversal)
"""

__version__ = "0.1.0"
