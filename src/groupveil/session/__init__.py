from .keys import EncryptedMessage, KeyNotFound, RotationEvent, SessionKey
from .manager import SessionKeyManager
from .policy import RotationPolicy, RotationReason
from .ratchet import RatchetState

__all__ = [
    "EncryptedMessage",
    "KeyNotFound",
    "RotationEvent",
    "SessionKey",
    "SessionKeyManager",
    "RotationPolicy",
    "RotationReason",
    "RatchetState",
]
