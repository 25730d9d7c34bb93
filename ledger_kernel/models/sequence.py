"""
Module: ledger_kernel.models.sequence
Responsibility: Named counter rows behind SequenceService.  Each row is
    locked with SELECT ... FOR UPDATE while it is incremented.
"""

from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import Base


class SequenceCounter(Base):
    """Each row is a named sequence with its current value."""

    __tablename__ = "sequence_counters"

    # e.g. "journal_entry", "settlement:MBA-SF-20240131"
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)

    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
