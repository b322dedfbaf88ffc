from abc import ABC, abstractmethod


class CryptoProvider(ABC):
    """Capability interface for the primitives the session core consumes.

    Implementations may return plain values or awaitables from any method;
    the session manager awaits whatever it gets back.
    """

    @property
    @abstractmethod
    def aead_name(self) -> str:
        pass

    @abstractmethod
    def hash(self, data: bytes) -> bytes:
        pass

    @abstractmethod
    def kdf_extract(self, salt: bytes, ikm: bytes) -> bytes:
        pass

    @abstractmethod
    def kdf_expand(self, prk: bytes, info: bytes, length: int) -> bytes:
        pass

    @abstractmethod
    def aead_encrypt(self, key: bytes, nonce: bytes, plaintext: bytes, aad: bytes) -> bytes:
        pass

    @abstractmethod
    def aead_decrypt(self, key: bytes, nonce: bytes, ciphertext: bytes, aad: bytes) -> bytes:
        pass

    @abstractmethod
    def random_bytes(self, length: int) -> bytes:
        pass

    @abstractmethod
    def generate_key_pair(self) -> tuple[bytes, bytes]:
        """
        Return (private_key, public_key) for key agreement.
        """
        pass

    @abstractmethod
    def key_agreement(self, private_key: bytes, peer_public_key: bytes) -> bytes:
        pass

    @abstractmethod
    def derive_master_key(self, secret: bytes, salt: bytes) -> bytes:
        """
        Stretch a host-managed master secret into an AEAD key.
        """
        pass

    @abstractmethod
    def aead_key_size(self) -> int:
        """
        Return the key size in bytes for the active AEAD.
        """
        pass

    @abstractmethod
    def aead_nonce_size(self) -> int:
        """
        Return the nonce size in bytes for the active AEAD.
        """
        pass
