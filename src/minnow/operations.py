"""Typed request surface for MinnowService.handle().

One frozen dataclass per operation. Callers build the request object
for the operation they want; there is no string selector and no
untyped payload.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence, Union


@dataclass(frozen=True)
class DepositRequest:
    depositor: str
    amount: int


@dataclass(frozen=True)
class GetPeriodRequest:
    index: int


@dataclass(frozen=True)
class GetDepositorsRequest:
    index: int


@dataclass(frozen=True)
class TotalPeriodsRequest:
    pass


@dataclass(frozen=True)
class BuildCommitmentRequest:
    """Build (and cache) the commitment tree for a closed period.

    Provide at most one of entitlements (opaque per-depositor values)
    or payout_pool (split pro rata over deposits).
    """
    period_index: int
    entitlements: Optional[Mapping[str, int]] = None
    payout_pool: Optional[int] = None


@dataclass(frozen=True)
class RegisterCommitmentRequest:
    """Register a root. With root omitted, the built tree's root is used."""
    period_index: int
    caller: Optional[str] = None
    root: Optional[str] = None
    payout_pool: Optional[int] = None
    total_entitled: Optional[int] = None


@dataclass(frozen=True)
class ClaimRequest:
    period_index: int
    depositor: str
    entitlement: int
    proof: Sequence[str] = field(default_factory=tuple)


Request = Union[
    DepositRequest,
    GetPeriodRequest,
    GetDepositorsRequest,
    TotalPeriodsRequest,
    BuildCommitmentRequest,
    RegisterCommitmentRequest,
    ClaimRequest,
]
