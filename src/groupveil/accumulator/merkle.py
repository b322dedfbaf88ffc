"""Fixed-depth binary Merkle accumulator for anonymous group membership.

A tree is built from an ordered member set, padded to MAX_MEMBERS leaves and
folded bottom-up with the pair hash. A member proves inclusion with its leaf,
its index and the TREE_DEPTH sibling hashes on the way to the root; the
verifier recomputes the root from those values alone.

Trees are immutable values. Nothing here holds state between calls.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Sequence

from .hashing import DEFAULT_HASHER, ZERO_HASH, Hash, MerkleHasher
from ..exceptions import (
    DuplicateMemberError,
    EmptyGroupError,
    GroupTooLargeError,
    InvalidIdentifierError,
)

logger = logging.getLogger(__name__)

TREE_DEPTH = 8
MAX_MEMBERS = 2**TREE_DEPTH


class PaddingMode(str, Enum):
    """How leaves beyond the real members are filled."""

    REPEAT_LAST = "repeat_last"  # copy of the last real leaf
    ZERO = "zero"                # fixed all-zero leaf


@dataclass(frozen=True)
class MembershipProof:
    leaf: Hash
    path: tuple[Hash, ...]
    index: int
    root: Hash


@dataclass(frozen=True)
class NotAMember:
    """Outcome of proving membership for an identifier outside the tree."""

    identifier: str

    def __bool__(self) -> bool:
        return False


@dataclass(frozen=True)
class MerkleTree:
    """
    Merkle tree over a member set.

    ``levels[0]`` holds MAX_MEMBERS leaves (real leaves followed by padding),
    ``levels[TREE_DEPTH]`` holds only the root. ``leaves`` are the real leaves
    in input order.
    """

    members: tuple[str, ...]
    leaves: tuple[Hash, ...]
    levels: tuple[tuple[Hash, ...], ...]
    root: Hash
    padding: PaddingMode = PaddingMode.REPEAT_LAST
    hasher: MerkleHasher = field(default=DEFAULT_HASHER, compare=False, repr=False)

    @property
    def member_count(self) -> int:
        """Number of real members, padding excluded."""
        return len(self.leaves)


def _validate_members(members: Sequence[str]) -> tuple[str, ...]:
    items = tuple(members)
    if not items:
        raise EmptyGroupError("cannot build a tree with zero members")
    if len(items) > MAX_MEMBERS:
        raise GroupTooLargeError(f"cannot build a tree with more than {MAX_MEMBERS} members (got {len(items)})")
    seen: set[str] = set()
    for i, identifier in enumerate(items):
        if not isinstance(identifier, str) or not identifier:
            raise InvalidIdentifierError(f"member at position {i} is not a non-empty string")
        if identifier in seen:
            raise DuplicateMemberError(f"member at position {i} appears more than once")
        seen.add(identifier)
    return items


def _pad(leaves: list[Hash], padding: PaddingMode) -> list[Hash]:
    filler = leaves[-1] if padding == PaddingMode.REPEAT_LAST else ZERO_HASH
    return leaves + [filler] * (MAX_MEMBERS - len(leaves))


def build(
    members: Sequence[str],
    hasher: MerkleHasher | None = None,
    padding: PaddingMode = PaddingMode.REPEAT_LAST,
) -> MerkleTree:
    """Build the Merkle tree for an ordered member set.

    Args:
        members: Unique, non-empty identifiers; 1 to MAX_MEMBERS of them.
        hasher: Leaf and pair hash functions (default: SHA-256 placeholder).
        padding: Leaf used to fill the tree up to MAX_MEMBERS.

    Returns:
        The tree. Identical ordered input always yields an identical root.

    Raises:
        EmptyGroupError: If ``members`` is empty.
        GroupTooLargeError: If ``members`` has more than MAX_MEMBERS entries.
        InvalidIdentifierError: If an identifier is not a non-empty string.
        DuplicateMemberError: If an identifier is repeated.
    """
    hasher = hasher or DEFAULT_HASHER
    padding = PaddingMode(padding)
    items = _validate_members(members)

    leaves = [hasher.hash_leaf(identifier) for identifier in items]
    levels: list[tuple[Hash, ...]] = [tuple(_pad(leaves, padding))]
    for _ in range(TREE_DEPTH):
        prev = levels[-1]
        levels.append(tuple(hasher.hash_pair(prev[i], prev[i + 1]) for i in range(0, len(prev), 2)))

    logger.debug("built membership tree: members=%d padding=%s", len(items), padding.value)
    return MerkleTree(
        members=items,
        leaves=tuple(leaves),
        levels=tuple(levels),
        root=levels[TREE_DEPTH][0],
        padding=padding,
        hasher=hasher,
    )


def root(tree: MerkleTree) -> Hash:
    return tree.root


def prove_membership(tree: MerkleTree, identifier: str) -> MembershipProof | NotAMember:
    """Produce the inclusion proof for ``identifier``.

    Returns ``NotAMember`` when the identifier is not one of the tree's real
    members; that is an expected outcome, not an error.
    """
    if not isinstance(identifier, str):
        raise InvalidIdentifierError("identifier must be a string")
    leaf = tree.hasher.hash_leaf(identifier)
    try:
        index = tree.leaves.index(leaf)
    except ValueError:
        logger.debug("membership proof requested for a non-member")
        return NotAMember(identifier)

    path: list[Hash] = []
    current = index
    for lvl in range(TREE_DEPTH):
        sibling = current - 1 if current % 2 == 1 else current + 1
        path.append(tree.levels[lvl][sibling])
        current //= 2

    return MembershipProof(leaf=leaf, path=tuple(path), index=index, root=tree.root)


def verify_membership(proof: MembershipProof, hasher: MerkleHasher | None = None) -> bool:
    """Recompute the root from a proof and compare it to ``proof.root``.

    Needs no tree. A structurally invalid proof (wrong path length, index out
    of range) verifies as False.
    """
    hasher = hasher or DEFAULT_HASHER
    if len(proof.path) != TREE_DEPTH:
        return False
    if not isinstance(proof.index, int) or not 0 <= proof.index < MAX_MEMBERS:
        return False

    current = proof.leaf
    index = proof.index
    for sibling in proof.path:
        if index % 2 == 1:
            current = hasher.hash_pair(sibling, current)
        else:
            current = hasher.hash_pair(current, sibling)
        index //= 2
    return current == proof.root


def is_member(
    identifier: str,
    expected_root: Hash,
    members: Sequence[str],
    hasher: MerkleHasher | None = None,
) -> bool:
    """True when ``members`` hashes to ``expected_root`` and contains ``identifier``."""
    tree = build(members, hasher=hasher)
    if tree.root != expected_root:
        return False
    return tree.hasher.hash_leaf(identifier) in tree.leaves


def root_with_new_member(members: Sequence[str], new_member: str, hasher: MerkleHasher | None = None) -> Hash:
    """Root of the tree after appending ``new_member`` to ``members``."""
    return build([*members, new_member], hasher=hasher).root


def path_indices(index: int) -> list[bool]:
    """Per-level position flags for a leaf index; True when the node is a right child."""
    flags = []
    for _ in range(TREE_DEPTH):
        flags.append(index % 2 == 1)
        index //= 2
    return flags


def to_verifier_inputs(proof: MembershipProof) -> dict:
    """Flatten a proof into the field names the external verifier takes."""
    return {
        "member_index": proof.index,
        "merkle_path": list(proof.path),
        "merkle_root": proof.root,
        "path_indices": path_indices(proof.index),
    }
