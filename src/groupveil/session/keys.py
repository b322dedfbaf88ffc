"""Records exchanged with the transport and audit layers."""
from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from .policy import RotationReason
from ..exceptions import InvalidIdentifierError


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(text: str, name: str) -> bytes:
    try:
        return base64.b64decode(text, validate=True)
    except (ValueError, TypeError) as e:
        raise InvalidIdentifierError(f"{name} is not valid base64") from e


@dataclass
class SessionKey:
    """Symmetric key for one generation of a group's traffic.

    Only the manager mutates ``message_count``. ``key_material`` never leaves
    the manager except inside an encrypted backup.
    """

    group_id: str
    key_id: str
    key_material: bytes
    generation: int
    created_at: datetime
    expires_at: datetime
    max_messages: int
    message_count: int = 0

    def is_exhausted(self) -> bool:
        return self.message_count >= self.max_messages

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def metadata(self) -> dict[str, Any]:
        return {
            "group_id": self.group_id,
            "key_id": self.key_id,
            "generation": self.generation,
            "message_count": self.message_count,
            "max_messages": self.max_messages,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    def to_backup_dict(self) -> dict[str, Any]:
        data = self.metadata()
        data["key_material"] = _b64(self.key_material)
        return data

    @classmethod
    def from_backup_dict(cls, data: dict[str, Any]) -> "SessionKey":
        return cls(
            group_id=data["group_id"],
            key_id=data["key_id"],
            key_material=_unb64(data["key_material"], "key_material"),
            generation=int(data["generation"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            max_messages=int(data["max_messages"]),
            message_count=int(data["message_count"]),
        )


@dataclass(frozen=True)
class RotationEvent:
    group_id: str
    old_key_id: str
    new_key_id: str
    reason: RotationReason
    generation: int
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "group_id": self.group_id,
            "old_key_id": self.old_key_id,
            "new_key_id": self.new_key_id,
            "reason": self.reason.value,
            "generation": self.generation,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RotationEvent":
        return cls(
            group_id=data["group_id"],
            old_key_id=data["old_key_id"],
            new_key_id=data["new_key_id"],
            reason=RotationReason.parse(data["reason"]),
            generation=int(data["generation"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


@dataclass(frozen=True)
class EncryptedMessage:
    """Ciphertext plus the metadata a receiver needs to pick the key."""

    content: bytes
    key_id: str
    nonce: bytes
    generation: int
    sender_commitment: str
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": _b64(self.content),
            "key_id": self.key_id,
            "nonce": _b64(self.nonce),
            "generation": self.generation,
            "sender_commitment": self.sender_commitment,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EncryptedMessage":
        try:
            return cls(
                content=_unb64(data["content"], "content"),
                key_id=str(data["key_id"]),
                nonce=_unb64(data["nonce"], "nonce"),
                generation=int(data["generation"]),
                sender_commitment=str(data["sender_commitment"]),
                timestamp=datetime.fromisoformat(data["timestamp"]),
            )
        except KeyError as e:
            raise InvalidIdentifierError(f"encrypted message is missing field {e.args[0]!r}") from e


@dataclass(frozen=True)
class KeyNotFound:
    """Outcome of decrypting a message whose key is not held for the group."""

    group_id: str
    key_id: str

    def __bool__(self) -> bool:
        return False
