"""Token vault abstraction — where claimed tokens are paid from.

The claim verifier never moves funds itself. It calls a TokenVault,
which must either apply the whole transfer or raise TransferFailed and
apply nothing. Transfers are local and bounded; a vault backed by an
external settlement service must reconcile through its own idempotent
retry path instead of blocking inside a claim.
"""

from __future__ import annotations

import threading
from typing import Dict, Protocol, runtime_checkable

from minnow.crypto.encoding import normalize_address
from minnow.errors import InvalidAmount, TransferFailed


@runtime_checkable
class TokenVault(Protocol):
    """Contract for anything that can pay out a claim."""

    @property
    def token_address(self) -> str:
        """Address of the token being distributed."""
        ...

    def transfer(self, recipient: str, amount: int) -> None:
        """Pay ``amount`` to ``recipient`` or raise TransferFailed."""
        ...


class InMemoryTokenVault:
    """Balance-tracking vault for a single token.

    Usage:
        vault = InMemoryTokenVault(token_address)
        vault.fund(5 * 10**18)
        vault.transfer("0xAbc...", 10**18)
        vault.balance_of("0xAbc...")
    """

    def __init__(self, token_address: str, reserve: int = 0) -> None:
        self._token = normalize_address(token_address)
        self._lock = threading.Lock()
        self._reserve = 0
        self._balances: Dict[str, int] = {}
        if reserve:
            self.fund(reserve)

    @property
    def token_address(self) -> str:
        return self._token

    @property
    def reserve(self) -> int:
        """Undistributed tokens held by the vault."""
        with self._lock:
            return self._reserve

    def fund(self, amount: int) -> None:
        """Add tokens to the distributable reserve."""
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmount("Funding amount must be a positive integer")
        with self._lock:
            self._reserve += amount

    def balance_of(self, holder: str) -> int:
        with self._lock:
            return self._balances.get(normalize_address(holder), 0)

    def transfer(self, recipient: str, amount: int) -> None:
        recipient = normalize_address(recipient)
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise TransferFailed(f"Cannot transfer non-positive amount: {amount!r}")
        with self._lock:
            if amount > self._reserve:
                raise TransferFailed(
                    f"Insufficient vault reserve: {self._reserve} < {amount}"
                )
            self._reserve -= amount
            self._balances[recipient] = self._balances.get(recipient, 0) + amount
