"""Commitment builder — turns a closed period into a Merkle commitment.

Each depositor of the period becomes one ClaimLeaf, hashed with the
shared leaf encoding, in ledger order. The resulting tree root is what
gets registered with the claim verifier; each depositor receives the
proof for their own leaf.

The builder is deterministic: given the same depositor list and
entitlements, it produces the same root.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Sequence

from minnow.crypto.encoding import check_uint256, leaf_hash, normalize_address
from minnow.crypto.merkle import MerkleTree
from minnow.errors import InvalidAmount, PeriodNotClosed
from minnow.models.commitment import ClaimLeaf
from minnow.models.period import Period, PeriodStatus


class CommitmentTree:
    """Root and per-leaf proofs for one period."""

    def __init__(self, period_index: int, leaves: Sequence[ClaimLeaf]) -> None:
        self.period_index = period_index
        self.leaves: tuple[ClaimLeaf, ...] = tuple(leaves)
        self._tree = MerkleTree([leaf_hash(c.entitlement, c.depositor) for c in self.leaves])
        self._index = {c.depositor: i for i, c in enumerate(self.leaves)}

    @property
    def root(self) -> bytes:
        return self._tree.root

    @property
    def hex_root(self) -> str:
        return self._tree.hex_root

    @property
    def leaf_count(self) -> int:
        return self._tree.leaf_count

    @property
    def total_entitled(self) -> int:
        return sum(c.entitlement for c in self.leaves)

    def leaf_hash(self, leaf_index: int) -> bytes:
        return self._tree.leaves[leaf_index]

    def proof(self, leaf_index: int) -> list[bytes]:
        """Sibling hashes that recompute the root from leaf_index."""
        return self._tree.proof(leaf_index)

    def proof_for(self, depositor: str) -> list[bytes]:
        """Proof for a depositor's leaf. KeyError if not in this period."""
        return self.proof(self._index[normalize_address(depositor)])

    def leaf_for(self, depositor: str) -> ClaimLeaf:
        return self.leaves[self._index[normalize_address(depositor)]]

    def to_distribution(self) -> dict[str, Any]:
        """JSON-serialisable claims document handed to claimants."""
        return {
            "merkleRoot": self.hex_root,
            "periodIndex": self.period_index,
            "leafCount": self.leaf_count,
            "totalEntitled": str(self.total_entitled),
            "claims": {
                c.depositor: {
                    "index": i,
                    "entitlement": str(c.entitlement),
                    "proof": self._tree.hex_proof(i),
                }
                for i, c in enumerate(self.leaves)
            },
        }


class CommitmentBuilder:
    """Builds commitment trees from closed periods.

    Usage:
        builder = CommitmentBuilder()
        tree = builder.build(ledger.get_period(0))
        verifier.register_commitment(0, tree.root, leaf_count=tree.leaf_count)
        proof = tree.proof_for(depositor)
    """

    def build(
        self,
        period: Period,
        entitlements: Optional[Mapping[str, int]] = None,
    ) -> CommitmentTree:
        """Build the tree for a CLOSED period.

        entitlements optionally overrides the deposited amount per
        depositor with an externally computed value. Depositors missing
        from the mapping keep their deposited amount.
        """
        if period.status != PeriodStatus.CLOSED:
            raise PeriodNotClosed(f"Period {period.index} is still open")

        overrides: dict[str, int] = {}
        if entitlements:
            overrides = {normalize_address(a): v for a, v in entitlements.items()}

        leaves = [
            ClaimLeaf(
                period_index=period.index,
                depositor=d.depositor,
                entitlement=overrides.get(d.depositor, d.amount),
            )
            for d in period.depositors
        ]
        return self.build_from_leaves(period.index, leaves)

    def build_from_leaves(
        self,
        period_index: int,
        leaves: Sequence[ClaimLeaf],
    ) -> CommitmentTree:
        """Build from an explicit (entitlement, depositor) list."""
        if not leaves:
            raise ValueError(f"Period {period_index} has no depositors to commit")
        for leaf in leaves:
            check_uint256(leaf.entitlement)
        return CommitmentTree(period_index, leaves)


def pro_rata_entitlements(period: Period, pool: int) -> dict[str, int]:
    """Split a funded token pool across depositors by deposit share.

    Integer floor division: the remainder (at most one unit per
    depositor) stays in the pool.
    """
    check_uint256(pool)
    if period.total_deposited <= 0:
        raise InvalidAmount(f"Period {period.index} has no deposits to share against")
    return {
        d.depositor: d.amount * pool // period.total_deposited
        for d in period.depositors
    }
