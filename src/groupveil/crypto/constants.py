# Default AEAD for session keys.
DEFAULT_AEAD = "AES-256-GCM"
SUPPORTED_AEADS = ("AES-256-GCM", "CHACHA20-POLY1305")

# KDF labels. Changing any of these changes every derived key.
LABEL_RATCHET_INIT = b"groupveil ratchet init"
LABEL_RATCHET_CHAIN = b"groupveil ratchet chain"
LABEL_SESSION_KEY = b"groupveil session key"
LABEL_SHARED_SECRET = b"groupveil shared secret"

# PBKDF2 work factor for key backups.
BACKUP_KDF_ITERATIONS = 600_000
BACKUP_SALT_SIZE = 16
