"""Sorted-pair Merkle tree over keccak-256 leaves.

Leaves are used exactly as given (they are already hashes) and keep
their insertion order. At every level neighbouring nodes are paired and
each pair is sorted by raw bytes before hashing, so a proof is just a
list of sibling hashes with no left/right markers. A trailing odd node
is carried up to the next level unchanged.

This matches merkletreejs with ``sortPairs: true`` and the
OpenZeppelin ``MerkleProof.verify`` routine used by on-chain claimers.
"""

from __future__ import annotations

from typing import Sequence

from eth_utils import keccak

from minnow.crypto.encoding import to_hash_bytes


class MerkleTree:
    """A deterministic sorted-pair Merkle tree.

    Usage:
        tree = MerkleTree([leaf_a, leaf_b, leaf_c])
        root = tree.root
        proof = tree.proof(1)
        assert verify_proof(leaf_b, proof, root)
    """

    def __init__(self, leaves: Sequence[bytes]) -> None:
        if not leaves:
            raise ValueError("Cannot build a Merkle tree with no leaves")
        self._layers: list[list[bytes]] = [[to_hash_bytes(leaf) for leaf in leaves]]
        while len(self._layers[-1]) > 1:
            self._layers.append(_next_layer(self._layers[-1]))

    @property
    def leaves(self) -> list[bytes]:
        return list(self._layers[0])

    @property
    def leaf_count(self) -> int:
        return len(self._layers[0])

    @property
    def root(self) -> bytes:
        return self._layers[-1][0]

    @property
    def hex_root(self) -> str:
        return "0x" + self.root.hex()

    def proof(self, index: int) -> list[bytes]:
        """Sibling hashes from leaf ``index`` up to (excluding) the root.

        Levels where the node was promoted without a sibling contribute
        nothing, so a single-leaf tree has an empty proof.
        """
        if not 0 <= index < self.leaf_count:
            raise IndexError(f"Leaf index out of range: {index}")
        siblings: list[bytes] = []
        idx = index
        for layer in self._layers[:-1]:
            pair_idx = idx + 1 if idx % 2 == 0 else idx - 1
            if pair_idx < len(layer):
                siblings.append(layer[pair_idx])
            idx //= 2
        return siblings

    def hex_proof(self, index: int) -> list[str]:
        return ["0x" + s.hex() for s in self.proof(index)]


def verify_proof(leaf: bytes, proof: Sequence[bytes], root: bytes) -> bool:
    """Replay a sorted-pair proof and compare with ``root``."""
    computed = to_hash_bytes(leaf)
    for sibling in proof:
        computed = hash_pair(computed, to_hash_bytes(sibling))
    return computed == to_hash_bytes(root)


def hash_pair(a: bytes, b: bytes) -> bytes:
    """Hash two nodes in canonical (byte-sorted) order."""
    if b < a:
        a, b = b, a
    return keccak(a + b)


def _next_layer(layer: list[bytes]) -> list[bytes]:
    nxt: list[bytes] = []
    for i in range(0, len(layer), 2):
        if i + 1 < len(layer):
            nxt.append(hash_pair(layer[i], layer[i + 1]))
        else:
            nxt.append(layer[i])  # Promote
    return nxt
