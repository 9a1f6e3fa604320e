"""
Secrets at rest for the settings file.

The AWS secret key may be kept in backup.yml as a Fernet token. The Fernet key
is derived (PBKDF2-HMAC-SHA256) from the passphrase in the backup encryption
key file and a salt stored next to the token as base64 text.
"""

import os
import base64
from typing import Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


SALT_SIZE = 16
KDF_ITERATIONS = 480000


def derive_key(passphrase: str, salt: bytes) -> bytes:
    """Derive a Fernet key from a passphrase and salt."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=KDF_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(passphrase.encode()))


class SecretCipher:
    """
    Encrypts and decrypts settings secrets for one passphrase and salt.

    Args:
        passphrase: Passphrase read from the encryption key file
        salt: KDF salt (default: a fresh random salt)
    """

    def __init__(self, passphrase: str, salt: Optional[bytes] = None):
        if not passphrase:
            raise ValueError("A passphrase is required")

        self.salt = salt if salt is not None else os.urandom(SALT_SIZE)
        self._fernet = Fernet(derive_key(passphrase, self.salt))

    @classmethod
    def from_encoded_salt(cls, passphrase: str, encoded_salt: str) -> 'SecretCipher':
        """
        Build a cipher from the base64 salt stored in the settings file.

        Raises:
            ValueError: If the salt is not valid base64
        """
        return cls(passphrase, base64.b64decode(encoded_salt, validate=True))

    @property
    def encoded_salt(self) -> str:
        return base64.b64encode(self.salt).decode()

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a secret into a Fernet token (URL-safe base64 text)."""
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, token: str) -> str:
        """
        Decrypt a Fernet token.

        Raises:
            cryptography.fernet.InvalidToken: If the passphrase or salt is
                wrong, or the token is corrupt
        """
        return self._fernet.decrypt(token.encode()).decode()


def encrypt_secret(passphrase: str, plaintext: str) -> Tuple[str, str]:
    """
    Encrypt a secret under a fresh salt.

    Returns:
        Tuple of (token, base64 salt), both ready to paste into backup.yml
    """
    cipher = SecretCipher(passphrase)
    return cipher.encrypt(plaintext), cipher.encoded_salt


__all__ = ['SecretCipher', 'InvalidToken', 'derive_key', 'encrypt_secret']
