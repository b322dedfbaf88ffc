"""Exception hierarchy for groupveil.

Lookup misses (an identifier outside the tree, a key id that is no longer
retained) are not exceptions; see ``NotAMember`` and ``KeyNotFound``.
"""
from __future__ import annotations


class GroupVeilError(Exception):
    """Base exception for all groupveil errors."""


# --- Input validity ---
class InvalidMemberSetError(GroupVeilError, ValueError):
    """The member set cannot be turned into a tree."""


class EmptyGroupError(InvalidMemberSetError):
    """Member set has no identifiers."""


class GroupTooLargeError(InvalidMemberSetError):
    """Member set exceeds MAX_MEMBERS."""


class DuplicateMemberError(InvalidMemberSetError):
    """The same identifier appears more than once in a member set."""


class InvalidIdentifierError(GroupVeilError, ValueError):
    """Identifier or proof field is malformed."""


class ConfigurationError(GroupVeilError, ValueError):
    """Invalid policy or provider configuration."""


# --- Policy state ---
class GroupStateError(GroupVeilError):
    """Operation does not match the group's lifecycle state."""


class GroupNotInitializedError(GroupStateError):
    """No session key exists for the group."""


class AlreadyInitializedError(GroupStateError):
    """initialize_group was called twice without a teardown."""


class InvalidRotationReasonError(GroupVeilError, ValueError):
    """Rotation reason is not one of the known values."""


# --- Primitive failures ---
class CryptoProviderError(GroupVeilError):
    """The hash, cipher or randomness provider failed."""


class DecryptionError(CryptoProviderError):
    """Ciphertext failed authentication under the selected key."""
