"""Claim subsystem — root registration, proof-gated payouts, token vaults."""

from minnow.claims.vault import InMemoryTokenVault, TokenVault
from minnow.claims.verifier import ClaimVerifier

__all__ = ["ClaimVerifier", "InMemoryTokenVault", "TokenVault"]
