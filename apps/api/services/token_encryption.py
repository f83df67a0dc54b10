"""
Token Encryption Service

Encrypts and decrypts provider OAuth tokens using Fernet symmetric encryption.
Access and refresh tokens are encrypted at rest in provider_token.

ARCHITECTURE:
- Uses cryptography library (Fernet)
- Encryption key from settings (TOKEN_ENCRYPTION_KEY)
- Never stores plain credentials
"""

from cryptography.fernet import Fernet, InvalidToken
from typing import Optional
import logging
from core.config import settings

logger = logging.getLogger(__name__)


class TokenCipher:
    """Handles encryption/decryption of OAuth tokens."""

    def __init__(self, key: Optional[str] = None):
        encryption_key = key or settings.TOKEN_ENCRYPTION_KEY

        if not encryption_key:
            # SECURITY: Fail hard in production - no auto-generated keys
            if settings.ENVIRONMENT == "production":
                raise RuntimeError(
                    "TOKEN_ENCRYPTION_KEY must be set in production. "
                    "Generate with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
                )
            logger.warning("TOKEN_ENCRYPTION_KEY not set. Generating temporary key (NOT FOR PRODUCTION)")
            encryption_key = Fernet.generate_key().decode()

        if isinstance(encryption_key, str):
            encryption_key = encryption_key.encode()

        try:
            self._fernet = Fernet(encryption_key)
        except ValueError as e:
            raise ValueError(f"Invalid encryption key format: {e}")

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> Optional[str]:
        """
        Decrypt a stored token.

        Returns None when the ciphertext was produced with another key or is
        corrupt; callers treat that as "no usable token".
        """
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            logger.error("Token decryption failed (wrong key or corrupt value)")
            return None


_cipher: Optional[TokenCipher] = None


def get_token_cipher() -> TokenCipher:
    """Get or create the process-wide cipher."""
    global _cipher
    if _cipher is None:
        _cipher = TokenCipher()
    return _cipher


def encrypt_token(token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    return get_token_cipher().encrypt(token)


def decrypt_token(token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    return get_token_cipher().decrypt(token)
