"""Deposit pond — period accounting for incoming deposits."""

from minnow.pond.ledger import DepositLedger

__all__ = ["DepositLedger"]
