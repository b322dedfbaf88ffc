from __future__ import annotations

import inspect
from typing import Any, TypeVar

T = TypeVar("T")


async def resolve(value: "T | Any") -> T:
    """
    Await ``value`` if the provider handed back an awaitable, else return it.
    """
    if inspect.isawaitable(value):
        return await value
    return value


def u64(x: int) -> bytes:
    """Encode an integer as 8-byte big-endian."""
    return int(x).to_bytes(8, "big", signed=False)
