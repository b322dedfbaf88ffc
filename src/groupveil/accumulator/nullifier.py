"""Per-action nullifiers.

A nullifier is ``H(H(seed, group_id), action_id)``. It depends only on the
member's secret seed and the action context, never on the member's position
in the tree, so two submissions for the same action by the same member
collide while revealing nothing about which member submitted.
"""
from __future__ import annotations

import re
import secrets

from .hashing import DEFAULT_HASHER, Hash, MerkleHasher
from ..exceptions import InvalidIdentifierError

Seed = str

SEED_BYTES = 32
_SEED_RE = re.compile(r"[0-9a-f]{64}")


def generate_seed() -> Seed:
    """Fresh 256-bit seed from the OS CSPRNG, hex encoded."""
    return secrets.token_hex(SEED_BYTES)


def derive_nullifier(seed: Seed, group_id: str, action_id: str, hasher: MerkleHasher | None = None) -> Hash:
    for name, value in (("seed", seed), ("group_id", group_id), ("action_id", action_id)):
        if not isinstance(value, str) or not value:
            raise InvalidIdentifierError(f"{name} must be a non-empty string")
    if not _SEED_RE.fullmatch(seed):
        raise InvalidIdentifierError("seed must be 64 lowercase hex characters")
    hasher = hasher or DEFAULT_HASHER
    return hasher.hash_pair(hasher.hash_pair(seed, group_id), action_id)
