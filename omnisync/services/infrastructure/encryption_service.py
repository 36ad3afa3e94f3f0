"""
Encryption service for integration credentials.
Uses Fernet symmetric encryption so OAuth tokens never sit in user_integrations as plain text.
"""

from cryptography.fernet import Fernet, InvalidToken

from omnisync.config import settings
from omnisync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class EncryptionError(Exception):
    """Custom exception for encryption/decryption errors."""

    pass


def _get_fernet() -> Fernet:
    """
    Get Fernet instance with encryption key from environment.

    Raises:
        EncryptionError: If encryption key is not configured or malformed
    """
    if not settings.ENCRYPTION_KEY:
        raise EncryptionError("ENCRYPTION_KEY not configured in environment")

    try:
        return Fernet(settings.ENCRYPTION_KEY.encode("utf-8"))
    except Exception as e:
        logger.error("Failed to initialize Fernet cipher", error=str(e))
        raise EncryptionError(f"Invalid encryption key: {e}") from e


def encrypt_token(token: str) -> bytes:
    """
    Encrypt a token string for database storage.

    Args:
        token: Plain text token to encrypt

    Returns:
        bytes: Encrypted token (ready for BYTEA storage)

    Raises:
        EncryptionError: If encryption fails
    """
    if not token or not isinstance(token, str):
        raise EncryptionError("Token must be a non-empty string")

    fernet = _get_fernet()
    try:
        return fernet.encrypt(token.encode("utf-8"))
    except Exception as e:
        logger.error("Failed to encrypt token", error=str(e))
        raise EncryptionError(f"Encryption failed: {e}") from e


def decrypt_token(encrypted_token: bytes) -> str:
    """
    Decrypt a token from database storage.

    Args:
        encrypted_token: Encrypted token bytes from database

    Returns:
        str: Decrypted plain text token

    Raises:
        EncryptionError: If decryption fails or token is invalid
    """
    if isinstance(encrypted_token, memoryview):
        encrypted_token = encrypted_token.tobytes()

    if not encrypted_token or not isinstance(encrypted_token, bytes):
        raise EncryptionError("Encrypted token must be non-empty bytes")

    fernet = _get_fernet()
    try:
        return fernet.decrypt(encrypted_token).decode("utf-8")
    except InvalidToken as e:
        logger.error("Token decryption failed - invalid token")
        raise EncryptionError("Invalid or corrupted token") from e


def encrypt_credential_tokens(
    access_token: str, refresh_token: str | None = None
) -> tuple[bytes, bytes | None]:
    """Encrypt an access/refresh token pair. A missing refresh token stays None."""
    encrypted_access = encrypt_token(access_token)
    encrypted_refresh = encrypt_token(refresh_token) if refresh_token else None
    return encrypted_access, encrypted_refresh


def decrypt_credential_tokens(
    encrypted_access: bytes, encrypted_refresh: bytes | None = None
) -> tuple[str, str | None]:
    """Decrypt an access/refresh token pair read from user_integrations."""
    access_token = decrypt_token(encrypted_access)
    refresh_token = decrypt_token(encrypted_refresh) if encrypted_refresh else None
    return access_token, refresh_token
