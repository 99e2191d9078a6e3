"""
AES-GCM encryption for bank connection secrets

Provides encryption/decryption of aggregator access tokens using AES-256-GCM.
Each ciphertext includes a random IV and authentication tag for integrity.
Used to neutralize a disconnected connection's secret in place.
"""

import os
import base64
import logging
from typing import Optional

from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.exceptions import InvalidTag


logger = logging.getLogger(__name__)

IV_LENGTH = 12

# Plaintext written over a connection secret when the connection is dropped
INVALIDATED_MARKER = "INVALIDATED"


class EncryptionError(Exception):
    """Raised when encryption or decryption fails."""
    pass


class CredentialVault:
    """
    Encrypts and decrypts connection secrets.

    Uses AES-256-GCM with:
    - 256-bit key (64 hex chars) passed in or read from ENCRYPTION_MASTER_KEY
    - Random 96-bit IV per encryption operation
    - Authentication tag for integrity verification

    Storage format: base64(IV (12 bytes) + ciphertext + auth tag (16 bytes))
    """

    def __init__(self, master_key_hex: Optional[str] = None):
        """
        Args:
            master_key_hex: 64-character hex string (32 bytes). If None, reads
                from the ENCRYPTION_MASTER_KEY environment variable.

        Raises:
            EncryptionError: If key is missing or invalid
        """
        if master_key_hex is None:
            master_key_hex = os.environ.get("ENCRYPTION_MASTER_KEY")

        if not master_key_hex:
            raise EncryptionError(
                "ENCRYPTION_MASTER_KEY is not set. "
                "Generate one with: python -c 'import os; print(os.urandom(32).hex())'"
            )

        try:
            key = bytes.fromhex(master_key_hex)
        except ValueError as e:
            raise EncryptionError(
                f"ENCRYPTION_MASTER_KEY must be a valid hex string: {e}"
            )

        if len(key) != 32:
            raise EncryptionError(
                f"ENCRYPTION_MASTER_KEY must be 32 bytes (64 hex chars), "
                f"got {len(key)} bytes"
            )

        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a secret.

        Args:
            plaintext: Secret to encrypt

        Returns:
            Base64 text safe to store in a Text column

        Raises:
            EncryptionError: If encryption fails
        """
        try:
            iv = os.urandom(IV_LENGTH)
            ciphertext = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
            return base64.b64encode(iv + ciphertext).decode("ascii")
        except Exception as e:
            logger.error(f"Encryption failed: {e}")
            raise EncryptionError(f"Failed to encrypt secret: {e}") from e

    def decrypt(self, token: str) -> str:
        """
        Decrypt a secret produced by encrypt().

        Raises:
            EncryptionError: If decryption fails or authentication tag is invalid
        """
        try:
            raw = base64.b64decode(token.encode("ascii"), validate=True)
        except (ValueError, UnicodeEncodeError) as e:
            raise EncryptionError(f"Encrypted secret is not valid base64: {e}") from e

        if len(raw) < IV_LENGTH:
            raise EncryptionError("Encrypted data is too short (missing IV)")

        try:
            plaintext = self._aesgcm.decrypt(raw[:IV_LENGTH], raw[IV_LENGTH:], None)
        except InvalidTag:
            logger.error("Decryption failed: authentication tag verification failed")
            raise EncryptionError(
                "Decryption failed: data has been tampered with or wrong encryption key"
            )
        return plaintext.decode("utf-8")

    def invalidation_marker(self) -> str:
        """Encrypted marker written over a disconnected connection's secret."""
        return self.encrypt(INVALIDATED_MARKER)
