"""Claim verifier — gates token payouts on Merkle inclusion proofs.

Flow per period:
    register_commitment  (once, privileged)   → root stored, immutable
    claim                (once per depositor) → proof replayed, tokens paid

A claim is marked before the transfer is dispatched and unmarked if the
transfer fails, all inside the (period, depositor) critical section. A
re-entrant claim from inside the transfer therefore sees the pair as
claimed, and no other thread can observe the intermediate state.

Both operations accept a hook that runs after the checks pass and before
the change is kept (``on_register`` / ``on_settle``). If the hook raises,
the change is discarded. Callers use it to write the durable record first.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Sequence, Tuple, Union

from minnow.claims.vault import TokenVault
from minnow.crypto.encoding import check_uint256, leaf_hash, normalize_address, to_hash_bytes
from minnow.crypto.merkle import verify_proof
from minnow.errors import (
    AlreadyClaimed,
    AlreadyCommitted,
    InvalidProof,
    NoCommitment,
    NotAuthorized,
    NotFound,
    TransferFailed,
)
from minnow.models.commitment import ClaimRecord, Commitment

HashLike = Union[bytes, str]
ClaimKey = Tuple[int, str]


class ClaimVerifier:
    """Registers period roots and settles claims against them.

    Usage:
        verifier = ClaimVerifier(vault, operator="0xOp...")
        verifier.register_commitment(0, tree.root, caller="0xOp...")
        record = verifier.claim(0, depositor, tree.proof_for(depositor), amount)
    """

    def __init__(self, vault: TokenVault, operator: Optional[str] = None) -> None:
        self._vault = vault
        self._operator = normalize_address(operator) if operator else None
        self._commitments: Dict[int, Commitment] = {}
        self._claims: Dict[ClaimKey, ClaimRecord] = {}
        self._commit_lock = threading.Lock()
        self._table_lock = threading.Lock()
        self._key_locks: Dict[ClaimKey, threading.RLock] = {}

    @property
    def operator(self) -> Optional[str]:
        return self._operator

    # ------------------------------------------------------------------
    # Commitments
    # ------------------------------------------------------------------

    def register_commitment(
        self,
        period_index: int,
        root: HashLike,
        *,
        leaf_count: int = 0,
        payout_pool: Optional[int] = None,
        total_entitled: Optional[int] = None,
        caller: Optional[str] = None,
        now: Optional[datetime] = None,
        on_register: Optional[Callable[[Commitment], None]] = None,
    ) -> Commitment:
        """Store the root for a period. One-shot and immutable.

        When payout_pool is given, total_entitled must be too: claims
        then pay ``entitlement * payout_pool // total_entitled``.
        """
        if self._operator is not None:
            if caller is None or normalize_address(caller) != self._operator:
                raise NotAuthorized("Only the operator may register commitments")
        if isinstance(period_index, bool) or not isinstance(period_index, int) or period_index < 0:
            raise ValueError(f"Invalid period index: {period_index!r}")
        root_bytes = to_hash_bytes(root)
        if (payout_pool is None) != (total_entitled is None):
            raise ValueError("payout_pool and total_entitled must be given together")
        if payout_pool is not None:
            check_uint256(payout_pool)
            check_uint256(total_entitled, allow_zero=False)
        if now is None:
            now = datetime.now(timezone.utc)

        commitment = Commitment(
            period_index=period_index,
            root=root_bytes,
            leaf_count=leaf_count,
            registered_at=now,
            payout_pool=payout_pool,
            total_entitled=total_entitled,
        )
        with self._commit_lock:
            if period_index in self._commitments:
                raise AlreadyCommitted(f"Period {period_index} already has a commitment")
            if on_register is not None:
                on_register(commitment)
            self._commitments[period_index] = commitment
        return commitment

    def get_commitment(self, period_index: int) -> Commitment:
        commitment = None
        if _is_period_index(period_index):
            with self._commit_lock:
                commitment = self._commitments.get(period_index)
        if commitment is None:
            raise NoCommitment(f"No commitment registered for period {period_index!r}")
        return commitment

    def has_commitment(self, period_index: int) -> bool:
        if not _is_period_index(period_index):
            return False
        with self._commit_lock:
            return period_index in self._commitments

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    def claim(
        self,
        period_index: int,
        depositor: str,
        proof: Sequence[HashLike],
        entitlement: int,
        now: Optional[datetime] = None,
        on_settle: Optional[Callable[[ClaimRecord], None]] = None,
        on_revert: Optional[Callable[[ClaimRecord, TransferFailed], None]] = None,
    ) -> ClaimRecord:
        """Verify and settle one claim.

        Raises NoCommitment, InvalidProof, AlreadyClaimed or
        TransferFailed, or whatever ``on_settle`` raises. On any failure
        the pair stays unclaimed. ``on_settle`` runs after the pair is
        marked and before the transfer; ``on_revert`` runs after a failed
        transfer has been unmarked. Both run inside the pair's lock.
        """
        depositor = normalize_address(depositor)
        check_uint256(entitlement)
        commitment = self.get_commitment(period_index)
        if now is None:
            now = datetime.now(timezone.utc)

        if proof is None or isinstance(proof, (str, bytes)):
            raise InvalidProof("Proof must be a sequence of sibling hashes")
        try:
            siblings = [to_hash_bytes(p) for p in proof]
        except (TypeError, ValueError) as e:
            raise InvalidProof(f"Malformed proof: {e}") from e
        if not verify_proof(leaf_hash(entitlement, depositor), siblings, commitment.root):
            raise InvalidProof(
                f"Proof for {depositor} does not match period {period_index} root"
            )

        key = (period_index, depositor)
        with self._key_lock(key):
            if self._lookup(key) is not None:
                raise AlreadyClaimed(
                    f"{depositor} already claimed from period {period_index}"
                )
            payout = commitment.payout_for(entitlement)
            record = ClaimRecord(
                period_index=period_index,
                depositor=depositor,
                claimed=True,
                amount_paid=payout,
                claimed_at=now,
            )
            # Effects before interaction: mark, record, then pay
            self._set(key, record)
            try:
                if on_settle is not None:
                    on_settle(record)
            except Exception:
                self._set(key, None)
                raise
            try:
                if payout > 0:
                    self._vault.transfer(depositor, payout)
            except Exception as e:
                self._set(key, None)
                failure = e if isinstance(e, TransferFailed) else TransferFailed(
                    f"Transfer to {depositor} failed: {e}"
                )
                if on_revert is not None:
                    on_revert(record, failure)
                if failure is e:
                    raise
                raise failure from e
            return record

    def is_claimed(self, period_index: int, depositor: str) -> bool:
        return self.get_claim(period_index, depositor) is not None

    def get_claim(self, period_index: int, depositor: str) -> Optional[ClaimRecord]:
        return self._lookup((period_index, normalize_address(depositor)))

    def restore_claim(self, record: ClaimRecord) -> None:
        """Re-mark a settled claim without paying (audit replay only)."""
        key = (record.period_index, normalize_address(record.depositor))
        with self._key_lock(key):
            if self._lookup(key) is not None:
                raise AlreadyClaimed(
                    f"{record.depositor} already claimed from period {record.period_index}"
                )
            self._set(key, record)

    def revoke_claim(self, period_index: int, depositor: str) -> None:
        """Drop a claim mark whose transfer never happened (audit replay only)."""
        key = (period_index, normalize_address(depositor))
        with self._key_lock(key):
            if self._lookup(key) is None:
                raise NotFound(f"{depositor} has no claim in period {period_index}")
            self._set(key, None)

    def _lookup(self, key: ClaimKey) -> Optional[ClaimRecord]:
        if not _is_period_index(key[0]):
            return None
        with self._table_lock:
            return self._claims.get(key)

    def _set(self, key: ClaimKey, record: Optional[ClaimRecord]) -> None:
        with self._table_lock:
            if record is None:
                self._claims.pop(key, None)
            else:
                self._claims[key] = record

    def _key_lock(self, key: ClaimKey) -> threading.RLock:
        with self._table_lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._key_locks[key] = lock
            return lock


def _is_period_index(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0
