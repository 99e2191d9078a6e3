"""Secret handling for bank connection credentials."""

from .encryption import CredentialVault, EncryptionError, INVALIDATED_MARKER

__all__ = [
    "CredentialVault",
    "EncryptionError",
    "INVALIDATED_MARKER",
]
