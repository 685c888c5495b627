"""Cryptographic utilities for deposit address secret storage.

Uses Fernet (AES-128-CBC with HMAC) for symmetric encryption. Secret material
(private keys) is only ever persisted encrypted and only decrypted when a send
needs it.
"""

import logging
from typing import Optional

from cryptography.fernet import Fernet

logger = logging.getLogger(__name__)

_ephemeral_key: Optional[str] = None


def generate_master_key() -> str:
    """Generate a new master encryption key.

    Returns:
        Base64-encoded 32-byte key suitable for Fernet
    """
    return Fernet.generate_key().decode()


class SecretEncryptor:
    """Encrypts and decrypts per-address secret material using Fernet.

    Usage:
        encryptor = SecretEncryptor(master_key)
        encrypted = encryptor.encrypt("0xabc...")
        decrypted = encryptor.decrypt(encrypted)
    """

    def __init__(self, master_key: str):
        """Initialize with master encryption key.

        Args:
            master_key: Base64-encoded Fernet key (32 bytes)
        """
        self._fernet = Fernet(master_key.encode())

    def encrypt(self, secret: str) -> str:
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, encrypted: str) -> str:
        """Decrypt a stored secret.

        Raises:
            InvalidToken: If decryption fails (wrong key or corrupted data)
        """
        return self._fernet.decrypt(encrypted.encode()).decode()


def get_encryptor() -> SecretEncryptor:
    """Get encryptor instance using MASTER_KEY from settings.

    Outside production a missing key is replaced by an ephemeral one so that
    development setups work; secrets encrypted with it do not survive a restart.

    Raises:
        RuntimeError: If MASTER_KEY is not set in production
    """
    global _ephemeral_key
    from rbridge.config import get_settings

    settings = get_settings()
    if settings.master_key:
        return SecretEncryptor(settings.master_key)

    if settings.is_production:
        raise RuntimeError("MASTER_KEY must be set in production")

    if _ephemeral_key is None:
        logger.warning("MASTER_KEY not set - using an ephemeral key for address secrets")
        _ephemeral_key = generate_master_key()
    return SecretEncryptor(_ephemeral_key)

