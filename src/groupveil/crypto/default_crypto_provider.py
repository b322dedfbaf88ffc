"""Concrete CryptoProvider using the 'cryptography' package.

This module provides DefaultCryptoProvider, a concrete implementation of
CryptoProvider backed by the cryptography library: SHA-256 hashing,
HKDF-SHA256, AES-256-GCM or ChaCha20-Poly1305 for session traffic, X25519
for key agreement and PBKDF2-HMAC-SHA256 for stretching backup secrets.
"""
import secrets

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import x25519
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .constants import BACKUP_KDF_ITERATIONS, DEFAULT_AEAD, SUPPORTED_AEADS
from .crypto_provider import CryptoProvider
from ..exceptions import ConfigurationError, CryptoProviderError


class DefaultCryptoProvider(CryptoProvider):
    """Concrete CryptoProvider implementation using the cryptography library.

    Args:
        aead: AEAD name, one of SUPPORTED_AEADS (default: AES-256-GCM).
        backup_iterations: PBKDF2 iteration count for derive_master_key.

    Raises:
        ConfigurationError: If the AEAD name is not supported.

    Example:
        >>> crypto = DefaultCryptoProvider()
        >>> key = crypto.random_bytes(crypto.aead_key_size())
    """
    def __init__(self, aead: str = DEFAULT_AEAD, backup_iterations: int = BACKUP_KDF_ITERATIONS):
        name = (aead or "").strip().upper()
        if name not in SUPPORTED_AEADS:
            raise ConfigurationError(f"Unsupported AEAD: {aead!r}")
        if backup_iterations < 1:
            raise ConfigurationError("backup_iterations must be positive")
        self._aead_name = name
        self._backup_iterations = int(backup_iterations)

    @property
    def aead_name(self) -> str:
        """Name of the active AEAD."""
        return self._aead_name

    # --- Internals for algorithm selection ---
    def _aead_impl(self):
        """Return the AEAD class for the active name."""
        if self._aead_name == "AES-256-GCM":
            return AESGCM
        return ChaCha20Poly1305

    def hash(self, data: bytes) -> bytes:
        """Compute SHA-256(data).

        Args:
            data: Input data to hash.

        Returns:
            32-byte digest.
        """
        h = hashes.Hash(hashes.SHA256())
        h.update(data)
        return h.finalize()

    def kdf_extract(self, salt: bytes, ikm: bytes) -> bytes:
        """HKDF-Extract with SHA-256.

        Args:
            salt: Salt value for extraction.
            ikm: Input keying material.

        Returns:
            Pseudorandom key (PRK) of length 32 bytes.
        """
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            info=None,
        )
        return hkdf.derive(ikm)

    def kdf_expand(self, prk: bytes, info: bytes, length: int) -> bytes:
        """HKDF-Expand with SHA-256.

        Args:
            prk: Pseudorandom key from HKDF-Extract.
            info: Context and application specific information.
            length: Desired output length in bytes.

        Returns:
            Expanded key material of the requested length.
        """
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=length,
            salt=None,
            info=info,
        )
        return hkdf.derive(prk)

    def aead_encrypt(self, key: bytes, nonce: bytes, plaintext: bytes, aad: bytes) -> bytes:
        """Encrypt using the active AEAD implementation.

        Args:
            key: AEAD encryption key.
            nonce: Nonce for encryption.
            plaintext: Plaintext to encrypt.
            aad: Additional authenticated data.

        Returns:
            Ciphertext (includes authentication tag).
        """
        aead = self._aead_impl()
        return aead(key).encrypt(nonce, plaintext, aad)

    def aead_decrypt(self, key: bytes, nonce: bytes, ciphertext: bytes, aad: bytes) -> bytes:
        """Decrypt using the active AEAD implementation.

        Args:
            key: AEAD decryption key.
            nonce: Nonce used for encryption.
            ciphertext: Ciphertext to decrypt (includes authentication tag).
            aad: Additional authenticated data.

        Returns:
            Decrypted plaintext.

        Raises:
            InvalidTag: If authentication fails.
        """
        aead = self._aead_impl()
        return aead(key).decrypt(nonce, ciphertext, aad)

    def random_bytes(self, length: int) -> bytes:
        """Return `length` bytes from the OS CSPRNG."""
        return secrets.token_bytes(length)

    def generate_key_pair(self) -> tuple[bytes, bytes]:
        """Generate an X25519 key pair.

        Returns:
            Tuple of (private_key_bytes, public_key_bytes).
        """
        sk = x25519.X25519PrivateKey.generate()
        pk = sk.public_key()
        return sk.private_bytes_raw(), pk.public_bytes_raw()

    def key_agreement(self, private_key: bytes, peer_public_key: bytes) -> bytes:
        """X25519 shared secret between our private key and a peer public key.

        Raises:
            CryptoProviderError: If either key is not a valid X25519 key.
        """
        try:
            sk = x25519.X25519PrivateKey.from_private_bytes(private_key)
            pk = x25519.X25519PublicKey.from_public_bytes(peer_public_key)
            return sk.exchange(pk)
        except (ValueError, InvalidKey) as e:
            raise CryptoProviderError("invalid X25519 key material") from e

    def derive_master_key(self, secret: bytes, salt: bytes) -> bytes:
        """PBKDF2-HMAC-SHA256 stretch of a master secret to an AEAD key."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=self.aead_key_size(),
            salt=salt,
            iterations=self._backup_iterations,
        )
        return kdf.derive(secret)

    def aead_key_size(self) -> int:
        """Return the key size in bytes for the active AEAD (32 for both)."""
        return 32

    def aead_nonce_size(self) -> int:
        """Return the nonce size in bytes for the active AEAD.

        Returns:
            12 (both supported AEADs use 96-bit nonces).
        """
        return 12
