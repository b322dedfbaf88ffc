from __future__ import annotations

import asyncio
import hashlib
import hmac
from datetime import datetime, timedelta, timezone

from groupveil.crypto import CryptoProvider


class StubCryptoProvider(CryptoProvider):
    """Deterministic provider: counter-based randomness and a hash-based AEAD."""

    def __init__(self) -> None:
        self._counter = 0
        self.calls: list[str] = []

    @property
    def aead_name(self) -> str:
        return "STUB-AEAD"

    def hash(self, data: bytes) -> bytes:
        self.calls.append("hash")
        return hashlib.sha256(data).digest()

    def kdf_extract(self, salt: bytes, ikm: bytes) -> bytes:
        self.calls.append("kdf_extract")
        return hmac.new(salt or b"\x00" * 32, ikm, hashlib.sha256).digest()

    def kdf_expand(self, prk: bytes, info: bytes, length: int) -> bytes:
        self.calls.append("kdf_expand")
        out = b""
        block = b""
        i = 1
        while len(out) < length:
            block = hmac.new(prk, block + info + bytes([i]), hashlib.sha256).digest()
            out += block
            i += 1
        return out[:length]

    def _keystream(self, key: bytes, nonce: bytes, length: int) -> bytes:
        return self.kdf_expand(key, b"stream" + nonce, length) if length else b""

    def aead_encrypt(self, key: bytes, nonce: bytes, plaintext: bytes, aad: bytes) -> bytes:
        self.calls.append("aead_encrypt")
        body = bytes(a ^ b for a, b in zip(plaintext, self._keystream(key, nonce, len(plaintext))))
        tag = hmac.new(key, nonce + aad + body, hashlib.sha256).digest()[:16]
        return body + tag

    def aead_decrypt(self, key: bytes, nonce: bytes, ciphertext: bytes, aad: bytes) -> bytes:
        self.calls.append("aead_decrypt")
        body, tag = ciphertext[:-16], ciphertext[-16:]
        expected = hmac.new(key, nonce + aad + body, hashlib.sha256).digest()[:16]
        if not hmac.compare_digest(tag, expected):
            raise ValueError("stub tag mismatch")
        return bytes(a ^ b for a, b in zip(body, self._keystream(key, nonce, len(body))))

    def _draw(self, length: int) -> bytes:
        self._counter += 1
        return hashlib.sha256(b"stub-random" + self._counter.to_bytes(8, "big")).digest()[:length].ljust(length, b"\x00")

    def random_bytes(self, length: int) -> bytes:
        self.calls.append("random_bytes")
        return self._draw(length)

    def generate_key_pair(self) -> tuple[bytes, bytes]:
        sk = self._draw(32)
        return sk, hashlib.sha256(b"pub" + sk).digest()

    def key_agreement(self, private_key: bytes, peer_public_key: bytes) -> bytes:
        return hashlib.sha256(private_key + peer_public_key).digest()

    def derive_master_key(self, secret: bytes, salt: bytes) -> bytes:
        return hashlib.pbkdf2_hmac("sha256", secret, salt, 10, 32)

    def aead_key_size(self) -> int:
        return 32

    def aead_nonce_size(self) -> int:
        return 12


class FailingCryptoProvider(StubCryptoProvider):
    """Stub that raises from the named method once ``armed`` is set."""

    def __init__(self, fail_on: str) -> None:
        super().__init__()
        self.fail_on = fail_on
        self.armed = False

    def _maybe_fail(self, name: str) -> None:
        if self.armed and self.fail_on == name:
            raise RuntimeError(f"{name} unavailable")

    def aead_encrypt(self, key: bytes, nonce: bytes, plaintext: bytes, aad: bytes) -> bytes:
        self._maybe_fail("aead_encrypt")
        return super().aead_encrypt(key, nonce, plaintext, aad)

    def kdf_expand(self, prk: bytes, info: bytes, length: int) -> bytes:
        self._maybe_fail("kdf_expand")
        return super().kdf_expand(prk, info, length)

    def random_bytes(self, length: int) -> bytes:
        self._maybe_fail("random_bytes")
        return super().random_bytes(length)

    def generate_key_pair(self) -> tuple[bytes, bytes]:
        self._maybe_fail("generate_key_pair")
        return super().generate_key_pair()


class AsyncCryptoProvider(StubCryptoProvider):
    """Stub whose AEAD and randomness calls return coroutines that yield to the loop."""

    async def _later(self, value):
        await asyncio.sleep(0)
        return value

    def random_bytes(self, length: int):  # type: ignore[override]
        return self._later(super().random_bytes(length))

    def aead_encrypt(self, key, nonce, plaintext, aad):  # type: ignore[override]
        return self._later(super().aead_encrypt(key, nonce, plaintext, aad))

    def aead_decrypt(self, key, nonce, ciphertext, aad):  # type: ignore[override]
        return self._later(super().aead_decrypt(key, nonce, ciphertext, aad))


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)
