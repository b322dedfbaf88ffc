from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Optional

from ..exceptions import ConfigurationError, InvalidRotationReasonError

_TRUE = frozenset({"true", "yes", "on", "1"})
_FALSE = frozenset({"false", "no", "off", "0"})


def _parse_flag(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
    raise ConfigurationError(f"{name} must be a boolean, got {value!r}")


class RotationReason(str, Enum):
    MAX_MESSAGES = "max_messages"
    MAX_DURATION = "max_duration"
    MEMBER_JOIN = "member_join"
    MEMBER_LEAVE = "member_leave"
    MANUAL = "manual"

    @classmethod
    def parse(cls, value: "RotationReason | str") -> "RotationReason":
        try:
            return cls(value)
        except ValueError as e:
            raise InvalidRotationReasonError(f"unknown rotation reason: {value!r}") from e


@dataclass(frozen=True)
class RotationPolicy:
    """Thresholds that trigger a new session key for a group.

    ``max_previous_keys`` bounds how many superseded keys stay available for
    decryption; None keeps all of them.
    """

    max_messages: int = 1000
    max_duration: timedelta = timedelta(days=7)
    rotate_on_member_join: bool = True
    rotate_on_member_leave: bool = True
    max_previous_keys: Optional[int] = None

    def __post_init__(self) -> None:
        if int(self.max_messages) < 1:
            raise ConfigurationError("max_messages must be at least 1")
        if self.max_duration <= timedelta(0):
            raise ConfigurationError("max_duration must be positive")
        if self.max_previous_keys is not None and int(self.max_previous_keys) < 0:
            raise ConfigurationError("max_previous_keys must be non-negative or None")

    @classmethod
    def recommended(cls) -> "RotationPolicy":
        """Defaults for chat groups: 1000 messages or 7 days, rotate on churn."""
        return cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RotationPolicy":
        """Build from plain config values; ``max_duration`` is in seconds."""
        kwargs: dict[str, Any] = {}
        try:
            if "max_messages" in data:
                kwargs["max_messages"] = int(data["max_messages"])
            if "max_duration" in data:
                kwargs["max_duration"] = timedelta(seconds=float(data["max_duration"]))
            if data.get("max_previous_keys") is not None:
                kwargs["max_previous_keys"] = int(data["max_previous_keys"])
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"invalid rotation policy value: {e}") from e
        for flag in ("rotate_on_member_join", "rotate_on_member_leave"):
            if flag in data:
                kwargs[flag] = _parse_flag(flag, data[flag])
        return cls(**kwargs)

    def as_runtime_dict(self) -> dict[str, Any]:
        return {
            "max_messages": int(self.max_messages),
            "max_duration": self.max_duration.total_seconds(),
            "rotate_on_member_join": self.rotate_on_member_join,
            "rotate_on_member_leave": self.rotate_on_member_leave,
            "max_previous_keys": self.max_previous_keys,
        }
