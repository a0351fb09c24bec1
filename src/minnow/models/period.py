"""Pond models — deposits and the periods they accumulate into.

All amounts are integers in base units (wei). No floats in finance.

Invariants enforced by these models:
- A period moves OPEN → CLOSED exactly once, never back.
- A depositor appears at most once per period; re-deposits accumulate.
- Deposits are immutable once recorded.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, List, Optional


class PeriodStatus(str, enum.Enum):
    """Lifecycle state of a deposit period."""
    OPEN = "open"
    CLOSED = "closed"


# Valid period state transitions
PERIOD_TRANSITIONS: Dict[PeriodStatus, frozenset] = {
    PeriodStatus.OPEN: frozenset({PeriodStatus.CLOSED}),
    PeriodStatus.CLOSED: frozenset(),
}


@dataclass(frozen=True)
class Deposit:
    """A single depositor's position in a period.

    When returned from a deposit call it describes that call alone.
    When listed from a period it is the depositor's running total.
    """
    depositor: str
    amount: int
    period: int


@dataclass
class Period:
    """A time-bounded deposit window.

    The ledger owns the live instance; everything it hands out is a
    snapshot taken with ``snapshot()``.
    """
    index: int
    opened_at: datetime
    status: PeriodStatus = PeriodStatus.OPEN
    total_deposited: int = 0
    closed_at: Optional[datetime] = None
    _positions: Dict[str, int] = field(default_factory=dict, repr=False)

    @property
    def depositors(self) -> List[Deposit]:
        """Deposits in first-deposit order, one per depositor."""
        return [
            Deposit(depositor=addr, amount=amount, period=self.index)
            for addr, amount in self._positions.items()
        ]

    @property
    def depositor_count(self) -> int:
        return len(self._positions)

    @property
    def is_open(self) -> bool:
        return self.status == PeriodStatus.OPEN

    def add(self, depositor: str, amount: int) -> None:
        """Merge a deposit into this period. Only valid while OPEN."""
        if not self.is_open:
            raise RuntimeError(f"Period {self.index} is closed")
        self._positions[depositor] = self._positions.get(depositor, 0) + amount
        self.total_deposited += amount

    def transition_to(self, new_status: PeriodStatus) -> None:
        """Move to new_status, enforcing the transition table."""
        allowed = PERIOD_TRANSITIONS[self.status]
        if new_status not in allowed:
            raise RuntimeError(
                f"Invalid period transition: {self.status.value} → {new_status.value}"
            )
        self.status = new_status

    def snapshot(self) -> Period:
        """Detached copy that later deposits cannot mutate."""
        return replace(self, _positions=dict(self._positions))
