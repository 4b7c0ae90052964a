"""
Cryptographic utilities for OAuth token storage.

Tokens are encrypted at rest with Fernet (AES 128 in CBC mode with
HMAC-SHA256 authentication). MultiFernet provides key rotation: the primary
key encrypts, every configured key is tried for decryption.
"""

from typing import Iterable, List, Optional

from cryptography.fernet import Fernet, InvalidToken, MultiFernet


class CryptoServiceError(Exception):
    """Base exception for CryptoService operations."""

    pass


class DecryptionError(CryptoServiceError):
    """Raised when decryption fails (invalid ciphertext, wrong key, etc.)."""

    pass


class CryptoService:
    """
    Encrypts and decrypts tokens with automatic key rotation support.

    Usage:
        crypto = CryptoService(settings.fernet_key, settings.fernet_previous_keys)
        ciphertext = crypto.encrypt_token("sensitive-token")
        plaintext = crypto.decrypt_token(ciphertext)
    """

    def __init__(self, primary_key_b64: str, previous_keys_b64: Iterable[str] = ()):
        """
        Args:
            primary_key_b64: Base64-encoded Fernet key used for encryption
            previous_keys_b64: Older keys still accepted for decryption
        """
        if not primary_key_b64:
            raise CryptoServiceError("A Fernet key is required for token encryption")

        keys: List[Fernet] = []
        try:
            keys.append(Fernet(primary_key_b64.encode()))
        except Exception as e:
            raise CryptoServiceError(f"Invalid FERNET_KEY: {e}") from e

        for key_b64 in previous_keys_b64:
            key_b64 = key_b64.strip()
            if not key_b64:
                continue
            try:
                keys.append(Fernet(key_b64.encode()))
            except Exception as e:
                raise CryptoServiceError(f"Invalid key in FERNET_PREVIOUS_KEYS: {e}") from e

        self._multi_fernet = MultiFernet(keys)
        self._key_count = len(keys)

    def encrypt_token(self, plaintext_token: str) -> bytes:
        """
        Encrypt a token with the primary key.

        Raises:
            CryptoServiceError: If the token is empty or encryption fails
        """
        if not plaintext_token:
            raise CryptoServiceError("Cannot encrypt empty token")

        try:
            return self._multi_fernet.encrypt(plaintext_token.encode("utf-8"))
        except Exception as e:
            raise CryptoServiceError(f"Encryption failed: {e}") from e

    def encrypt_optional(self, plaintext_token: Optional[str]) -> Optional[bytes]:
        return self.encrypt_token(plaintext_token) if plaintext_token else None

    def decrypt_token(self, ciphertext: bytes) -> str:
        """
        Decrypt a token, trying every configured key.

        Raises:
            DecryptionError: If decryption fails with all available keys
        """
        if not ciphertext:
            raise DecryptionError("Cannot decrypt empty ciphertext")

        try:
            return self._multi_fernet.decrypt(ciphertext).decode("utf-8")
        except InvalidToken as e:
            raise DecryptionError(
                f"Failed to decrypt token with any of the {self._key_count} available keys. "
                "Token may be corrupted or encrypted with a key not in the current key set."
            ) from e

    def decrypt_optional(self, ciphertext: Optional[bytes]) -> Optional[str]:
        return self.decrypt_token(ciphertext) if ciphertext else None


def generate_fernet_key() -> str:
    """Generate a new base64-encoded Fernet key suitable for FERNET_KEY."""
    return Fernet.generate_key().decode()
