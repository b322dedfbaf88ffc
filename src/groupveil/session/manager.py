"""Session key lifecycle for group messaging.

One ``SessionKeyManager`` owns every group it manages: the current key, the
retained previous keys, the ratchet state and the rotation log. Callers only
touch that state through the methods below. Rotation happens transparently
inside ``encrypt`` when the policy says so, and explicitly through ``rotate``
and the membership hooks.

Work for a single group is serialized with a per-group asyncio lock. New
state (a rotated key, an incremented counter) is committed only after every
primitive call it depends on has succeeded.
"""
from __future__ import annotations

import asyncio
import base64
import contextlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from . import ratchet
from .keys import EncryptedMessage, KeyNotFound, RotationEvent, SessionKey
from .policy import RotationPolicy, RotationReason
from .ratchet import RatchetState
from ..crypto.constants import BACKUP_SALT_SIZE, LABEL_SHARED_SECRET
from ..crypto.crypto_provider import CryptoProvider
from ..crypto.utils import resolve, u64
from ..exceptions import (
    AlreadyInitializedError,
    CryptoProviderError,
    DecryptionError,
    GroupNotInitializedError,
    GroupVeilError,
    InvalidIdentifierError,
)

logger = logging.getLogger(__name__)

BACKUP_VERSION = 1
_BACKUP_AAD = b"groupveil key backup v1"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _PendingRotation:
    key: SessionKey
    ratchet: RatchetState


class SessionKeyManager:
    """Rotating symmetric keys for a set of groups.

    Parameters:
        crypto: Primitive provider (hash, KDF, AEAD, randomness, key agreement).
        policy: Rotation thresholds; defaults to ``RotationPolicy.recommended()``.
        clock: Returns the current aware datetime; injectable for tests.
        sender_id: Optional local identity folded into sender commitments.
    """

    def __init__(
        self,
        crypto: CryptoProvider,
        policy: Optional[RotationPolicy] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sender_id: Optional[str] = None,
    ):
        self._crypto = crypto
        self._policy = policy or RotationPolicy.recommended()
        self._clock = clock or _utcnow
        self._sender_id = sender_id
        self._current: dict[str, SessionKey] = {}
        self._previous: dict[str, list[SessionKey]] = {}
        self._ratchets: dict[str, RatchetState] = {}
        self._key_pairs: dict[str, tuple[bytes, bytes]] = {}
        self._shared_secrets: dict[str, dict[bytes, bytes]] = {}
        self._history: dict[str, list[RotationEvent]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def policy(self) -> RotationPolicy:
        return self._policy

    # --- Internals ---
    def _lock(self, group_id: str) -> asyncio.Lock:
        lock = self._locks.get(group_id)
        if lock is None:
            lock = self._locks[group_id] = asyncio.Lock()
        return lock

    def _require(self, group_id: str) -> SessionKey:
        key = self._current.get(group_id)
        if key is None:
            raise GroupNotInitializedError(f"group {group_id!r} is not initialized")
        return key

    async def _primitive(self, what: str, group_id: str, value: Any) -> Any:
        """Resolve a provider result, turning provider failures into CryptoProviderError."""
        try:
            return await resolve(value)
        except GroupVeilError:
            raise
        except Exception as e:
            logger.error("%s failed for group %s: %s", what, group_id, e)
            raise CryptoProviderError(f"{what} failed for group {group_id!r}") from e

    async def _call(self, what: str, group_id: str, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            value = fn(*args)
        except GroupVeilError:
            raise
        except Exception as e:
            logger.error("%s failed for group %s: %s", what, group_id, e)
            raise CryptoProviderError(f"{what} failed for group {group_id!r}") from e
        return await self._primitive(what, group_id, value)

    async def _new_key(self, group_id: str, generation: int, material: bytes, now: datetime) -> SessionKey:
        suffix = await self._call("key id generation", group_id, self._crypto.random_bytes, 8)
        return SessionKey(
            group_id=group_id,
            key_id=f"key_{group_id}_gen{generation}_{suffix.hex()}",
            key_material=material,
            generation=generation,
            created_at=now,
            expires_at=now + self._policy.max_duration,
            max_messages=int(self._policy.max_messages),
        )

    def _rotation_due(self, key: SessionKey, now: datetime) -> Optional[RotationReason]:
        if key.is_exhausted():
            return RotationReason.MAX_MESSAGES
        if key.is_expired(now):
            return RotationReason.MAX_DURATION
        return None

    async def _prepare_rotation(self, group_id: str, now: datetime) -> _PendingRotation:
        state = self._ratchets[group_id]
        try:
            new_state, material = await ratchet.advance(self._crypto, state)
        except GroupVeilError:
            raise
        except Exception as e:
            logger.error("ratchet advance failed for group %s: %s", group_id, e)
            raise CryptoProviderError(f"key rotation failed for group {group_id!r}") from e
        key = await self._new_key(group_id, new_state.generation, material, now)
        return _PendingRotation(key=key, ratchet=new_state)

    def _commit_rotation(self, pending: _PendingRotation, reason: RotationReason, now: datetime) -> RotationEvent:
        group_id = pending.key.group_id
        old = self._require(group_id)
        previous = self._previous.setdefault(group_id, [])
        previous.append(old)
        limit = self._policy.max_previous_keys
        if limit is not None and len(previous) > limit:
            del previous[: len(previous) - limit]
        self._current[group_id] = pending.key
        self._ratchets[group_id] = pending.ratchet
        self._shared_secrets.get(group_id, {}).clear()

        event = RotationEvent(
            group_id=group_id,
            old_key_id=old.key_id,
            new_key_id=pending.key.key_id,
            reason=reason,
            generation=pending.key.generation,
            timestamp=now,
        )
        self._history.setdefault(group_id, []).append(event)
        logger.info(
            "rotated session key for group %s: generation %d -> %d (%s)",
            group_id,
            old.generation,
            pending.key.generation,
            reason.value,
        )
        return event

    def _find_key(self, group_id: str, key_id: str) -> Optional[SessionKey]:
        current = self._current.get(group_id)
        if current is not None and current.key_id == key_id:
            return current
        for key in reversed(self._previous.get(group_id, [])):
            if key.key_id == key_id:
                return key
        return None

    @staticmethod
    def _aad(group_id: str, key_id: str, generation: int) -> bytes:
        return b"|".join([group_id.encode("utf-8"), key_id.encode("utf-8"), u64(generation)])

    async def _sender_commitment(self, group_id: str, now: datetime) -> str:
        parts = [group_id, str(int(now.timestamp() * 1000))]
        if self._sender_id is not None:
            parts.insert(0, self._sender_id)
        digest = await self._call("sender commitment", group_id, self._crypto.hash, "_".join(parts).encode("utf-8"))
        return base64.b64encode(digest).decode("ascii")

    # --- Lifecycle ---
    async def initialize_group(self, group_id: str) -> None:
        """Create the generation-0 key for ``group_id``.

        Raises:
            AlreadyInitializedError: If the group already has a key.
            CryptoProviderError: If a primitive fails; nothing is stored.
        """
        if not isinstance(group_id, str) or not group_id:
            raise InvalidIdentifierError("group_id must be a non-empty string")
        async with self._lock(group_id):
            if group_id in self._current:
                raise AlreadyInitializedError(f"group {group_id!r} is already initialized")
            now = self._clock()
            try:
                state, material = await ratchet.start(self._crypto, group_id)
            except GroupVeilError:
                raise
            except Exception as e:
                logger.error("ratchet start failed for group %s: %s", group_id, e)
                raise CryptoProviderError(f"initialization failed for group {group_id!r}") from e
            key = await self._new_key(group_id, 0, material, now)
            key_pair = await self._call("key pair generation", group_id, self._crypto.generate_key_pair)

            self._current[group_id] = key
            self._previous[group_id] = []
            self._ratchets[group_id] = state
            self._key_pairs[group_id] = tuple(key_pair)  # type: ignore[assignment]
            self._shared_secrets[group_id] = {}
            self._history.setdefault(group_id, [])
            logger.info("initialized group %s with key %s", group_id, key.key_id)

    async def teardown_group(self, group_id: str) -> None:
        """Forget all keys for ``group_id``. The rotation log is kept.

        Waits for any encrypt or rotation already running for the group.
        """
        async with self._lock(group_id):
            self._require(group_id)
            for store in (self._current, self._previous, self._ratchets, self._key_pairs, self._shared_secrets):
                store.pop(group_id, None)
            logger.info("tore down group %s", group_id)

    def groups(self) -> list[str]:
        return sorted(self._current)

    # --- Messages ---
    async def encrypt(self, group_id: str, plaintext: bytes | str) -> EncryptedMessage:
        """Encrypt under the current key, rotating first if the policy is hit.

        The message counter and any triggered rotation are committed together,
        after the AEAD call succeeds.
        """
        data = plaintext.encode("utf-8") if isinstance(plaintext, str) else bytes(plaintext)
        async with self._lock(group_id):
            key = self._require(group_id)
            now = self._clock()
            pending: Optional[_PendingRotation] = None
            reason = self._rotation_due(key, now)
            if reason is not None:
                pending = await self._prepare_rotation(group_id, now)
                key = pending.key

            nonce_size = await self._call("nonce size", group_id, self._crypto.aead_nonce_size)
            nonce = await self._call("nonce generation", group_id, self._crypto.random_bytes, nonce_size)
            aad = self._aad(group_id, key.key_id, key.generation)
            ciphertext = await self._call(
                "encryption", group_id, self._crypto.aead_encrypt, key.key_material, nonce, data, aad
            )
            commitment = await self._sender_commitment(group_id, now)

            self._require(group_id)
            if pending is not None and reason is not None:
                self._commit_rotation(pending, reason, now)
            key.message_count += 1
            logger.debug(
                "encrypted message for group %s under %s (count=%d)", group_id, key.key_id, key.message_count
            )
            return EncryptedMessage(
                content=ciphertext,
                key_id=key.key_id,
                nonce=nonce,
                generation=key.generation,
                sender_commitment=commitment,
                timestamp=now,
            )

    async def decrypt(self, group_id: str, message: EncryptedMessage) -> bytes | KeyNotFound:
        """Decrypt with the current key or a retained previous key.

        Returns:
            The plaintext, or ``KeyNotFound`` when the key id is not held.

        Raises:
            GroupNotInitializedError: If the group has no keys.
            DecryptionError: If the ciphertext fails authentication.
        """
        self._require(group_id)
        key = self._find_key(group_id, message.key_id)
        if key is None:
            logger.warning("no key %s held for group %s", message.key_id, group_id)
            return KeyNotFound(group_id=group_id, key_id=message.key_id)
        aad = self._aad(group_id, key.key_id, key.generation)
        try:
            return await resolve(self._crypto.aead_decrypt(key.key_material, message.nonce, message.content, aad))
        except Exception as e:
            logger.warning("decryption failed for group %s under %s", group_id, key.key_id)
            raise DecryptionError(f"failed to decrypt message for group {group_id!r}") from e

    # --- Rotation ---
    async def rotate(self, group_id: str, reason: RotationReason | str = RotationReason.MANUAL) -> RotationEvent:
        """Replace the current key with the next generation and log the event."""
        parsed = RotationReason.parse(reason)
        async with self._lock(group_id):
            self._require(group_id)
            now = self._clock()
            pending = await self._prepare_rotation(group_id, now)
            return self._commit_rotation(pending, parsed, now)

    async def member_joined(self, group_id: str) -> Optional[RotationEvent]:
        self._require(group_id)
        if not self._policy.rotate_on_member_join:
            return None
        return await self.rotate(group_id, RotationReason.MEMBER_JOIN)

    async def member_left(self, group_id: str) -> Optional[RotationEvent]:
        self._require(group_id)
        if not self._policy.rotate_on_member_leave:
            return None
        return await self.rotate(group_id, RotationReason.MEMBER_LEAVE)

    def current_generation(self, group_id: str) -> int:
        return self._require(group_id).generation

    def history(self, group_id: str) -> list[RotationEvent]:
        if group_id not in self._history:
            raise GroupNotInitializedError(f"group {group_id!r} is not initialized")
        return list(self._history[group_id])

    def key_metadata(self, group_id: str) -> list[dict[str, Any]]:
        """Metadata for previous keys then the current key; never key material."""
        current = self._require(group_id)
        return [k.metadata() for k in self._previous.get(group_id, [])] + [current.metadata()]

    # --- Key agreement ---
    def public_key(self, group_id: str) -> bytes:
        self._require(group_id)
        return self._key_pairs[group_id][1]

    async def derive_shared_secret(self, group_id: str, peer_public_key: bytes) -> bytes:
        """Pairwise secret with a peer for this group.

        Results are cached per peer key. A rotation evicts the cache but does
        not rekey: the group's key-agreement pair is fixed for its lifetime, so
        the same peer yields the same secret again.
        """
        self._require(group_id)
        cache = self._shared_secrets.setdefault(group_id, {})
        cached = cache.get(peer_public_key)
        if cached is not None:
            return cached
        private_key = self._key_pairs[group_id][0]
        raw = await self._call("key agreement", group_id, self._crypto.key_agreement, private_key, peer_public_key)
        prk = await self._call("key agreement", group_id, self._crypto.kdf_extract, LABEL_SHARED_SECRET, raw)
        size = await self._call("key agreement", group_id, self._crypto.aead_key_size)
        secret = await self._call(
            "key agreement", group_id, self._crypto.kdf_expand, prk, group_id.encode("utf-8"), size
        )
        cache[peer_public_key] = secret
        return secret

    # --- Backup ---
    def _export_state(self) -> dict[str, Any]:
        groups: dict[str, Any] = {}
        for group_id, current in self._current.items():
            state = self._ratchets[group_id]
            sk, pk = self._key_pairs[group_id]
            groups[group_id] = {
                "current": current.to_backup_dict(),
                "previous": [k.to_backup_dict() for k in self._previous.get(group_id, [])],
                "ratchet": {
                    "chain_key": base64.b64encode(state.chain_key).decode("ascii"),
                    "generation": state.generation,
                },
                "key_pair": [base64.b64encode(sk).decode("ascii"), base64.b64encode(pk).decode("ascii")],
            }
        return {
            "groups": groups,
            "history": {gid: [e.to_dict() for e in events] for gid, events in self._history.items()},
        }

    async def backup_keys(self, master_secret: bytes | str) -> str:
        """Serialize every group's keys, encrypted under ``master_secret``."""
        secret = master_secret.encode("utf-8") if isinstance(master_secret, str) else bytes(master_secret)
        payload = json.dumps(self._export_state(), sort_keys=True).encode("utf-8")
        salt = await self._call("backup", "*", self._crypto.random_bytes, BACKUP_SALT_SIZE)
        backup_key = await self._call("backup", "*", self._crypto.derive_master_key, secret, salt)
        nonce_size = await self._call("backup", "*", self._crypto.aead_nonce_size)
        nonce = await self._call("backup", "*", self._crypto.random_bytes, nonce_size)
        data = await self._call("backup", "*", self._crypto.aead_encrypt, backup_key, nonce, payload, _BACKUP_AAD)
        logger.info("exported key backup for %d group(s)", len(self._current))
        return json.dumps(
            {
                "version": BACKUP_VERSION,
                "salt": base64.b64encode(salt).decode("ascii"),
                "nonce": base64.b64encode(nonce).decode("ascii"),
                "data": base64.b64encode(data).decode("ascii"),
                "timestamp": self._clock().isoformat(),
            }
        )

    async def restore_keys(self, backup: str, master_secret: bytes | str) -> list[str]:
        """Load groups from a backup produced by ``backup_keys``.

        Returns:
            The restored group ids.

        Raises:
            InvalidIdentifierError: If the bundle is malformed.
            DecryptionError: If ``master_secret`` does not open the bundle.
            AlreadyInitializedError: If a group in the bundle is already held.
        """
        secret = master_secret.encode("utf-8") if isinstance(master_secret, str) else bytes(master_secret)
        try:
            envelope = json.loads(backup)
            version = envelope.get("version")
            salt = base64.b64decode(envelope["salt"], validate=True)
            nonce = base64.b64decode(envelope["nonce"], validate=True)
            data = base64.b64decode(envelope["data"], validate=True)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise InvalidIdentifierError("malformed key backup") from e
        if version != BACKUP_VERSION:
            raise InvalidIdentifierError(f"unsupported backup version: {version!r}")

        backup_key = await self._call("restore", "*", self._crypto.derive_master_key, secret, salt)
        try:
            payload = await resolve(self._crypto.aead_decrypt(backup_key, nonce, data, _BACKUP_AAD))
        except Exception as e:
            raise DecryptionError("key backup could not be decrypted") from e
        try:
            state = json.loads(payload)
            restored: dict[str, tuple[SessionKey, list[SessionKey], RatchetState, tuple[bytes, bytes]]] = {}
            for group_id, entry in state["groups"].items():
                sk_b64, pk_b64 = entry["key_pair"]
                restored[group_id] = (
                    SessionKey.from_backup_dict(entry["current"]),
                    [SessionKey.from_backup_dict(k) for k in entry["previous"]],
                    RatchetState(
                        group_id=group_id,
                        chain_key=base64.b64decode(entry["ratchet"]["chain_key"]),
                        generation=int(entry["ratchet"]["generation"]),
                    ),
                    (base64.b64decode(sk_b64), base64.b64decode(pk_b64)),
                )
            events = {
                gid: [RotationEvent.from_dict(e) for e in items] for gid, items in state.get("history", {}).items()
            }
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise InvalidIdentifierError("malformed key backup contents") from e
        async with contextlib.AsyncExitStack() as stack:
            # sorted so concurrent restores acquire group locks in the same order
            for group_id in sorted(restored):
                await stack.enter_async_context(self._lock(group_id))
            held = sorted(set(restored) & set(self._current))
            if held:
                raise AlreadyInitializedError(f"group(s) already initialized: {', '.join(held)}")

            for group_id, (current, previous, ratchet_state, key_pair) in restored.items():
                self._current[group_id] = current
                self._previous[group_id] = previous
                self._ratchets[group_id] = ratchet_state
                self._key_pairs[group_id] = key_pair
                self._shared_secrets[group_id] = {}
        for group_id, items in events.items():
            log = self._history.setdefault(group_id, [])
            known = {e.new_key_id for e in log}
            log.extend(e for e in items if e.new_key_id not in known)
        logger.info("restored key backup for %d group(s)", len(restored))
        return sorted(restored)
