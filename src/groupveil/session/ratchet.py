"""Per-group symmetric ratchet behind session key rotation.

Each step mixes fresh randomness into the chain key with HKDF-Extract, then
expands the result into the next session key and the next chain key. A
leaked session key reveals neither the chain key nor other generations, and
the fresh input lets the chain recover after a chain key compromise.
"""
from __future__ import annotations

from dataclasses import dataclass

from ..crypto.constants import LABEL_RATCHET_CHAIN, LABEL_RATCHET_INIT, LABEL_SESSION_KEY
from ..crypto.crypto_provider import CryptoProvider
from ..crypto.utils import resolve, u64

CHAIN_KEY_SIZE = 32


@dataclass(frozen=True)
class RatchetState:
    group_id: str
    chain_key: bytes
    generation: int


async def _step(crypto: CryptoProvider, group_id: str, chain_key: bytes, generation: int) -> tuple[RatchetState, bytes]:
    entropy = await resolve(crypto.random_bytes(CHAIN_KEY_SIZE))
    prk = await resolve(crypto.kdf_extract(chain_key, entropy))
    context = u64(generation) + group_id.encode("utf-8")
    key_size = await resolve(crypto.aead_key_size())
    key = await resolve(crypto.kdf_expand(prk, LABEL_SESSION_KEY + context, key_size))
    next_chain = await resolve(crypto.kdf_expand(prk, LABEL_RATCHET_CHAIN + context, CHAIN_KEY_SIZE))
    return RatchetState(group_id, next_chain, generation), key


async def start(crypto: CryptoProvider, group_id: str) -> tuple[RatchetState, bytes]:
    """Create generation 0 and return (state, session key material)."""
    seed = await resolve(crypto.random_bytes(CHAIN_KEY_SIZE))
    root = await resolve(crypto.kdf_extract(LABEL_RATCHET_INIT, seed))
    return await _step(crypto, group_id, root, 0)


async def advance(crypto: CryptoProvider, state: RatchetState) -> tuple[RatchetState, bytes]:
    """Derive the next generation. ``state`` itself is left untouched."""
    return await _step(crypto, state.group_id, state.chain_key, state.generation + 1)
