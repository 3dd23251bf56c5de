"""
Encrypted database passwords for the targets file.

A target may carry ``password_encrypted`` instead of ``password``: a Fernet
token under a key derived from the operator passphrase (DBKEEPER_PASSPHRASE)
and a salt (DBKEEPER_SALT, hex). ``dbkeeper encrypt-password`` produces both.
"""

import os
import base64
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from dbkeeper.config import ConfigurationError

SALT_LENGTH = 16
KDF_ITERATIONS = 480000  # OWASP recommendation for PBKDF2-SHA256


def derive_key(passphrase: str, salt: bytes) -> bytes:
    """Derive a Fernet key from the passphrase."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=KDF_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(passphrase.encode()))


class PasswordCipher:
    """Encrypts and decrypts target passwords with one passphrase and salt."""

    def __init__(self, passphrase: str, salt: bytes):
        self.salt = salt
        self._fernet = Fernet(derive_key(passphrase, salt))

    @classmethod
    def generate(cls, passphrase: str) -> 'PasswordCipher':
        """New cipher with a random salt, for first-time setup."""
        return cls(passphrase, os.urandom(SALT_LENGTH))

    @classmethod
    def from_settings(cls, settings: dict) -> Optional['PasswordCipher']:
        """
        Build the cipher from SECRET_PASSPHRASE and SECRET_SALT.

        Returns:
            None when no passphrase is configured

        Raises:
            ConfigurationError: If the salt is missing or not hex
        """
        passphrase = settings.get('SECRET_PASSPHRASE')
        if not passphrase:
            return None

        salt_hex = settings.get('SECRET_SALT')
        if not salt_hex:
            raise ConfigurationError("DBKEEPER_PASSPHRASE is set but DBKEEPER_SALT is not")

        try:
            salt = bytes.fromhex(salt_hex)
        except ValueError:
            raise ConfigurationError("DBKEEPER_SALT must be a hex string")

        return cls(passphrase, salt)

    @property
    def salt_hex(self) -> str:
        return self.salt.hex()

    def encrypt(self, password: str) -> str:
        return self._fernet.encrypt(password.encode()).decode()

    def decrypt(self, token: str) -> str:
        """
        Recover a password from its token.

        Raises:
            ValueError: If the token was not made with this passphrase and salt
        """
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken:
            raise ValueError("token does not match the configured passphrase and salt")
