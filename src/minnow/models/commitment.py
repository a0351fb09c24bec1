"""Commitment and claim models.

A closed period produces at most one Commitment: a Merkle root over
one ClaimLeaf per depositor. Claims against that root are tracked as
ClaimRecords, set once per (period, depositor).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class ClaimLeaf:
    """What a depositor may claim from a committed period.

    entitlement is the value hashed into the leaf. By default it is the
    deposited amount; a distribution may substitute a derived share.
    """
    period_index: int
    depositor: str
    entitlement: int


@dataclass(frozen=True)
class Commitment:
    """A registered Merkle root for one closed period.

    payout_pool and total_entitled are set together when the period was
    funded with a token pool; claims then pay a pro-rata share of the
    pool instead of the raw entitlement.
    """
    period_index: int
    root: bytes
    leaf_count: int
    registered_at: datetime
    payout_pool: Optional[int] = None
    total_entitled: Optional[int] = None

    @property
    def hex_root(self) -> str:
        return "0x" + self.root.hex()

    def payout_for(self, entitlement: int) -> int:
        """Amount transferred for a verified entitlement."""
        if self.payout_pool is None or not self.total_entitled:
            return entitlement
        return entitlement * self.payout_pool // self.total_entitled


@dataclass(frozen=True)
class ClaimRecord:
    """Outcome of a successful claim. Absence means unclaimed."""
    period_index: int
    depositor: str
    claimed: bool
    amount_paid: int
    claimed_at: datetime
