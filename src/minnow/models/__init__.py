"""Core data models for Minnow."""

from minnow.models.period import Deposit, Period, PeriodStatus
from minnow.models.commitment import ClaimLeaf, ClaimRecord, Commitment

__all__ = [
    "Deposit",
    "Period",
    "PeriodStatus",
    "ClaimLeaf",
    "ClaimRecord",
    "Commitment",
]
