"""Deposit ledger — accumulates deposits into sequential periods.

Exactly one period is OPEN at any time. Each deposit is merged into it;
once the period's cumulative deposits reach the close threshold, the
period is CLOSED and the next one opens in the same critical section.
No deposit can land between the close and the open, and two deposits
cannot both close the same period.

The ledger is the exclusive owner of Period state. Readers receive
snapshots, never the live records.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import List, Optional

from minnow.crypto.encoding import check_uint256, normalize_address
from minnow.errors import NotFound
from minnow.models.period import Deposit, Period, PeriodStatus

ONE_ETHER = 10**18
DEFAULT_CLOSE_THRESHOLD = ONE_ETHER


class DepositLedger:
    """Period-based deposit ledger.

    Usage:
        ledger = DepositLedger(close_threshold=10**18)
        ledger.deposit("0xAbc...", 4 * 10**17)
        period = ledger.get_period(0)
        depositors = ledger.get_depositors(0)
    """

    def __init__(
        self,
        close_threshold: int = DEFAULT_CLOSE_THRESHOLD,
        now: Optional[datetime] = None,
    ) -> None:
        if isinstance(close_threshold, bool) or not isinstance(close_threshold, int):
            raise ValueError("Close threshold must be an integer")
        if close_threshold <= 0:
            raise ValueError("Close threshold must be positive")
        self._threshold = close_threshold
        self._lock = threading.RLock()
        self._periods: List[Period] = [
            Period(index=0, opened_at=now or datetime.now(timezone.utc))
        ]

    @property
    def close_threshold(self) -> int:
        return self._threshold

    def deposit(
        self,
        depositor: str,
        amount: int,
        now: Optional[datetime] = None,
    ) -> Deposit:
        """Record a deposit in the open period.

        Returns the Deposit as recorded, tagged with the period it
        landed in. If it pushes the period to the threshold, that
        period is closed and a fresh one opened before returning.
        """
        check_uint256(amount, allow_zero=False)
        depositor = normalize_address(depositor)
        if now is None:
            now = datetime.now(timezone.utc)

        with self._lock:
            period = self._periods[-1]
            period.add(depositor, amount)
            recorded = Deposit(depositor=depositor, amount=amount, period=period.index)
            if period.total_deposited >= self._threshold:
                self._roll_over(period, now)
            return recorded

    def get_period(self, index: int) -> Period:
        """Snapshot of period ``index`` (open or closed)."""
        with self._lock:
            return self._get(index).snapshot()

    def get_depositors(self, index: int) -> List[Deposit]:
        """Depositors of period ``index`` in first-deposit order.

        For the open period the list may still grow.
        """
        with self._lock:
            return self._get(index).depositors

    def get_total_periods(self) -> int:
        """Number of periods ever created (always at least 1)."""
        with self._lock:
            return len(self._periods)

    def current_period(self) -> Period:
        """Snapshot of the open period."""
        with self._lock:
            return self._periods[-1].snapshot()

    def closed_periods(self) -> List[Period]:
        with self._lock:
            return [p.snapshot() for p in self._periods if p.status == PeriodStatus.CLOSED]

    def _roll_over(self, period: Period, now: datetime) -> None:
        """Close ``period`` and open its successor. Caller holds the lock."""
        period.transition_to(PeriodStatus.CLOSED)
        period.closed_at = now
        self._periods.append(Period(index=period.index + 1, opened_at=now))

    def _get(self, index: int) -> Period:
        """Internal lookup with clear error on unknown index."""
        if isinstance(index, bool) or not isinstance(index, int):
            raise NotFound(f"Period index must be an integer: {index!r}")
        if index < 0 or index >= len(self._periods):
            raise NotFound(f"Unknown period index: {index}")
        return self._periods[index]
