"""
Encryption utilities for archive passwords kept at rest.
Uses Fernet symmetric encryption with a key derived from a passphrase.
"""

import os
import json
import base64
from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


class CryptoManager:
    """Handles encryption and decryption of sensitive data."""

    def __init__(self):
        self._fernet = None
        self._salt = None

    def initialize(self, passphrase: str, salt: bytes = None) -> bytes:
        """
        Initialize the encryption manager with a passphrase.

        Args:
            passphrase: Passphrase to derive encryption key from
            salt: Optional salt (if None, generates new one)

        Returns:
            The salt used (store it next to the encrypted data)
        """
        if salt is None:
            salt = os.urandom(16)

        self._salt = salt

        # Derive a 32-byte key from passphrase using PBKDF2
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=480000,  # OWASP recommended iterations for 2023+
        )
        key = base64.urlsafe_b64encode(kdf.derive(passphrase.encode()))

        self._fernet = Fernet(key)
        return salt

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a string.

        Raises:
            RuntimeError: If crypto manager not initialized
        """
        if not self._fernet:
            raise RuntimeError("CryptoManager not initialized. Call initialize() first.")

        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, token: str) -> str:
        """
        Decrypt a Fernet token.

        Raises:
            RuntimeError: If crypto manager not initialized
            cryptography.fernet.InvalidToken: If decryption fails
        """
        if not self._fernet:
            raise RuntimeError("CryptoManager not initialized. Call initialize() first.")

        return self._fernet.decrypt(token.encode()).decode()

    @property
    def is_initialized(self) -> bool:
        """Check if the crypto manager has been initialized."""
        return self._fernet is not None


def seal_secret(passphrase: str, secret: str) -> str:
    """
    Encrypt a secret into a self-contained JSON document.

    Returns:
        JSON string with base64 `salt` and Fernet `token`
    """
    cm = CryptoManager()
    salt = cm.initialize(passphrase)
    return json.dumps({
        'salt': base64.b64encode(salt).decode(),
        'token': cm.encrypt(secret)
    })


def open_secret(passphrase: str, sealed: str) -> str:
    """
    Decrypt a document produced by seal_secret().

    Raises:
        ValueError: If the document is malformed
        cryptography.fernet.InvalidToken: If the passphrase is wrong
    """
    try:
        data = json.loads(sealed)
        salt = base64.b64decode(data['salt'])
        token = data['token']
    except (ValueError, KeyError, TypeError) as e:
        raise ValueError(f"Malformed sealed secret: {e}")

    cm = CryptoManager()
    cm.initialize(passphrase, salt)
    return cm.decrypt(token)
