"""groupveil: anonymous group membership proofs and rotating session keys."""
from .accumulator import (
    MAX_MEMBERS,
    TREE_DEPTH,
    MembershipProof,
    MerkleTree,
    NotAMember,
    build,
    derive_nullifier,
    generate_seed,
    prove_membership,
    verify_membership,
)
from .crypto import CryptoProvider, DefaultCryptoProvider
from .session import (
    EncryptedMessage,
    KeyNotFound,
    RotationEvent,
    RotationPolicy,
    RotationReason,
    SessionKeyManager,
)

__version__ = "0.1.0"

__all__ = [
    "MAX_MEMBERS",
    "TREE_DEPTH",
    "MembershipProof",
    "MerkleTree",
    "NotAMember",
    "build",
    "derive_nullifier",
    "generate_seed",
    "prove_membership",
    "verify_membership",
    "CryptoProvider",
    "DefaultCryptoProvider",
    "EncryptedMessage",
    "KeyNotFound",
    "RotationEvent",
    "RotationPolicy",
    "RotationReason",
    "SessionKeyManager",
]
