"""Symmetric encryption for credentials at rest.

Uses Fernet so stored access and refresh secrets are never persisted in
plaintext. The key comes from CREDENTIAL_ENCRYPTION_KEY.
"""

from cryptography.fernet import Fernet, InvalidToken

from creditgate.exceptions import DecryptionError


class CredentialCipher:
    """Encrypt/decrypt credential secrets with a single Fernet key."""

    def __init__(self, key: str) -> None:
        try:
            self._fernet = Fernet(key.encode("utf-8"))
        except (ValueError, TypeError) as e:
            raise DecryptionError("CREDENTIAL_ENCRYPTION_KEY is not a valid Fernet key") from e

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a secret. Returns urlsafe base64 text."""
        if not plaintext:
            raise ValueError("Refusing to encrypt an empty secret")
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a stored secret.

        Raises:
            DecryptionError: wrong key or corrupted data.
        """
        try:
            return self._fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken as e:
            raise DecryptionError("invalid key or corrupted data") from e

    @staticmethod
    def generate_key() -> str:
        """Generate a fresh key (for provisioning and tests)."""
        return Fernet.generate_key().decode("utf-8")
