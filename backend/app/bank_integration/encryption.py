"""
Credential Encryption Module

Provides encryption and decryption for aggregator access credentials using
Fernet symmetric encryption. The key is derived from Settings.secret_key.
"""

import base64
from typing import Optional

from cryptography.fernet import Fernet

from backend.config import get_settings


class TokenEncryption:
    """
    Encrypt and decrypt access credentials for storage in the database.

    GoCardless requisition ids and Plaid access tokens are encrypted before
    they are written to BankConnection.access_token.
    """

    def __init__(self, secret_key: Optional[str] = None):
        """
        Initialize encryption cipher.

        The secret key is padded/truncated to 32 bytes and base64-encoded
        to create a valid Fernet key.

        Args:
            secret_key: Key material (defaults to Settings.secret_key)
        """
        secret_key = secret_key or get_settings().secret_key

        key_bytes = secret_key.encode()[:32].ljust(32, b'0')
        self.cipher = Fernet(base64.urlsafe_b64encode(key_bytes))

    def encrypt(self, token: str) -> str:
        """
        Encrypt a credential for database storage.

        Example:
            >>> enc = TokenEncryption("test-secret")
            >>> encrypted = enc.encrypt("access-sandbox-123")
        """
        if not token:
            return ""
        return self.cipher.encrypt(token.encode()).decode()

    def decrypt(self, encrypted_token: str) -> str:
        if not encrypted_token:
            return ""
        return self.cipher.decrypt(encrypted_token.encode()).decode()
