from .hashing import DEFAULT_HASHER, Hash, MerkleHasher, Sha256Hasher
from .merkle import (
    MAX_MEMBERS,
    TREE_DEPTH,
    MembershipProof,
    MerkleTree,
    NotAMember,
    PaddingMode,
    build,
    is_member,
    path_indices,
    prove_membership,
    root,
    root_with_new_member,
    to_verifier_inputs,
    verify_membership,
)
from .nullifier import Seed, derive_nullifier, generate_seed

__all__ = [
    "DEFAULT_HASHER",
    "Hash",
    "MerkleHasher",
    "Sha256Hasher",
    "MAX_MEMBERS",
    "TREE_DEPTH",
    "MembershipProof",
    "MerkleTree",
    "NotAMember",
    "PaddingMode",
    "build",
    "is_member",
    "path_indices",
    "prove_membership",
    "root",
    "root_with_new_member",
    "to_verifier_inputs",
    "verify_membership",
    "Seed",
    "derive_nullifier",
    "generate_seed",
]
