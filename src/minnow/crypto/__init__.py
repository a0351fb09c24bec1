"""Cryptographic primitives — leaf encoding, sorted-pair Merkle trees, commitment building."""

from minnow.crypto.merkle import MerkleTree, verify_proof
from minnow.crypto.commitment_builder import CommitmentBuilder, CommitmentTree

__all__ = ["MerkleTree", "verify_proof", "CommitmentBuilder", "CommitmentTree"]
