"""
Secret resolver for credentials stored in the catalog (database passwords,
remote store access keys).

Uses Fernet symmetric encryption with a key derived from the ENCRYPTION_KEY
setting. Plaintext is only produced right before a credential is used.
"""

import base64
import hashlib
from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


MIN_KEY_LENGTH = 32

# Fixed salt: the derived key must be reproducible from ENCRYPTION_KEY alone
_KEY_SALT = b'dumpvault_secret_resolver_salt_v1'


class SecretResolver:
    """Encrypts and decrypts credential blobs."""

    def __init__(self):
        self._fernet = None
        self._key_fingerprint = None

    def initialize(self, master_key: str):
        """
        Derive the Fernet key from the master key.

        Args:
            master_key: ENCRYPTION_KEY value, at least 32 characters

        Raises:
            ValueError: If the master key is missing or too short
        """
        if not master_key or len(master_key) < MIN_KEY_LENGTH:
            raise ValueError(f"Encryption key must be at least {MIN_KEY_LENGTH} characters long")

        fingerprint = hashlib.sha256(master_key.encode()).hexdigest()
        if fingerprint == self._key_fingerprint:
            return

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=_KEY_SALT,
            iterations=480000,
        )
        key = base64.urlsafe_b64encode(kdf.derive(master_key.encode()))

        self._fernet = Fernet(key)
        self._key_fingerprint = fingerprint

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a string.

        Returns:
            Base64-encoded encrypted string

        Raises:
            RuntimeError: If the resolver is not initialized
        """
        if not self._fernet:
            raise RuntimeError("SecretResolver not initialized. Call initialize() first.")

        encrypted_bytes = self._fernet.encrypt(plaintext.encode())
        return base64.urlsafe_b64encode(encrypted_bytes).decode()

    def decrypt(self, encrypted: str) -> str:
        """
        Decrypt a string produced by encrypt().

        Raises:
            RuntimeError: If the resolver is not initialized
            cryptography.fernet.InvalidToken: If decryption fails
        """
        if not self._fernet:
            raise RuntimeError("SecretResolver not initialized. Call initialize() first.")

        encrypted_bytes = base64.urlsafe_b64decode(encrypted.encode())
        return self._fernet.decrypt(encrypted_bytes).decode()

    @property
    def is_initialized(self) -> bool:
        return self._fernet is not None


# Global instance, initialized by create_app()
secret_resolver = SecretResolver()
