# services/encryption.py
"""
Encryption service for RCON passwords stored in the servers file.

Uses Fernet symmetric encryption. The master key comes from
ENCRYPTION_MASTER_KEY; a value that is not a Fernet key is treated as a
passphrase and stretched with PBKDF2.
"""

import base64
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

PASSPHRASE_SALT = b'rcon_admin_master_salt'
PASSPHRASE_ITERATIONS = 480000


class EncryptionError(Exception):
    """Base exception for encryption errors."""
    pass


class EncryptionKeyError(EncryptionError):
    """Encryption key not configured or invalid."""
    pass


class DecryptionError(EncryptionError):
    """Failed to decrypt data."""
    pass


class EncryptionService:
    """Encrypts and decrypts credentials with the configured master key."""

    def __init__(self, master_key: Optional[str] = None):
        """
        Initialize encryption service.

        Args:
            master_key: Fernet key or passphrase. If not provided, reads
                       ENCRYPTION_MASTER_KEY from settings.
        """
        if not master_key:
            from config.settings import ENCRYPTION_MASTER_KEY
            master_key = ENCRYPTION_MASTER_KEY

        if not master_key:
            raise EncryptionKeyError("ENCRYPTION_MASTER_KEY is not set")

        try:
            self._fernet = Fernet(master_key.encode())
        except (ValueError, TypeError):
            logger.debug("Master key is not a Fernet key, deriving one from it")
            self._fernet = Fernet(self._derive_key_from_password(master_key, PASSPHRASE_SALT))

    @staticmethod
    def generate_key() -> str:
        """Generate a new random Fernet master key."""
        return Fernet.generate_key().decode()

    @staticmethod
    def _derive_key_from_password(password: str, salt: bytes) -> bytes:
        """Derive a Fernet-compatible key from a password and salt."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=PASSPHRASE_ITERATIONS,
        )
        return base64.urlsafe_b64encode(kdf.derive(password.encode()))

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a plaintext string.

        Returns:
            Fernet token as text, suitable for the servers file
        """
        try:
            return self._fernet.encrypt(plaintext.encode()).decode()
        except Exception as e:
            logger.error(f"Encryption failed: {e}")
            raise EncryptionError(f"Failed to encrypt data: {e}")

    def decrypt(self, token: str) -> str:
        """Decrypt a Fernet token back to plaintext."""
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken:
            logger.error("Decryption failed: Invalid token (wrong key or corrupted data)")
            raise DecryptionError("Failed to decrypt: Invalid token")
        except Exception as e:
            logger.error(f"Decryption failed: {e}")
            raise DecryptionError(f"Failed to decrypt data: {e}")
