"""Leaf encoding shared by the commitment builder and the claim verifier.

A leaf is keccak256(abi.encodePacked(uint256 entitlement, address depositor)):
32 bytes of big-endian unsigned integer followed by the 20 raw address
bytes, 52 bytes in total. Roots and proofs are only portable between
builders and verifiers that agree on this exact layout.
"""

from __future__ import annotations

from typing import Union

from eth_utils import is_address, to_checksum_address
from web3 import Web3

from minnow.errors import InvalidAddress, InvalidAmount

UINT256_MAX = 2**256 - 1
HASH_SIZE = 32

LEAF_TYPES = ["uint256", "address"]


def normalize_address(address: str) -> str:
    """Return the EIP-55 checksum form of a 20-byte hex address."""
    if not isinstance(address, str) or not is_address(address):
        raise InvalidAddress(f"Not a 20-byte address: {address!r}")
    return to_checksum_address(address)


def check_uint256(value: int, *, allow_zero: bool = True) -> int:
    """Validate an integer that must fit the uint256 leaf slot."""
    # bool is an int subclass; True is not an amount
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidAmount(f"Amount must be an integer, got {type(value).__name__}")
    if value < 0 or value > UINT256_MAX or (value == 0 and not allow_zero):
        raise InvalidAmount(f"Amount out of range: {value}")
    return value


def leaf_hash(entitlement: int, depositor: str) -> bytes:
    """Compute the Merkle leaf for (entitlement, depositor)."""
    check_uint256(entitlement)
    digest = Web3.solidity_keccak(LEAF_TYPES, [entitlement, normalize_address(depositor)])
    return bytes(digest)


def to_hash_bytes(value: Union[bytes, str]) -> bytes:
    """Coerce a 32-byte hash given as bytes or 0x-hex into bytes.

    Raises ValueError for anything that is not exactly 32 bytes.
    """
    if isinstance(value, str):
        text = value[2:] if value.startswith(("0x", "0X")) else value
        try:
            value = bytes.fromhex(text)
        except ValueError as e:
            raise ValueError(f"Malformed hex hash: {e}") from e
    if not isinstance(value, (bytes, bytearray)) or len(value) != HASH_SIZE:
        raise ValueError(f"Hash must be {HASH_SIZE} bytes")
    return bytes(value)
