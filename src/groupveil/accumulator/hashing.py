"""Pluggable hash functions for the membership accumulator.

The default is a SHA-256 placeholder for the chain's native hash. Any object
with ``hash_leaf`` and ``hash_pair`` can replace it, as long as the external
verifier runs the same functions.
"""
from __future__ import annotations

from hashlib import sha256
from typing import Protocol

Hash = str

# Appended to an identifier before leaf hashing, mirroring commit_to_field(x, 0).
LEAF_COMMIT_SUFFIX = "_commit_0"
ZERO_HASH: Hash = "0" * 64


class MerkleHasher(Protocol):
    def hash_leaf(self, identifier: str) -> Hash: ...
    def hash_pair(self, left: Hash, right: Hash) -> Hash: ...


class Sha256Hasher:
    """SHA-256 over UTF-8 text, hex encoded."""

    def hash_leaf(self, identifier: str) -> Hash:
        return sha256((identifier + LEAF_COMMIT_SUFFIX).encode("utf-8")).hexdigest()

    def hash_pair(self, left: Hash, right: Hash) -> Hash:
        return sha256((left + right).encode("utf-8")).hexdigest()


DEFAULT_HASHER: MerkleHasher = Sha256Hasher()
