"""
Encryption service for OAuth tokens.
Uses Fernet symmetric encryption for tokens kept in the key-value store.
"""

from cryptography.fernet import Fernet, InvalidToken

from calsync.config import settings
from calsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class EncryptionError(Exception):
    """Custom exception for encryption/decryption errors."""

    pass


def _get_fernet(key: str | None = None) -> Fernet:
    """
    Get Fernet instance with encryption key from environment.

    Raises:
        EncryptionError: If encryption key is not configured
    """
    key = key or settings.ENCRYPTION_KEY
    if not key:
        raise EncryptionError("ENCRYPTION_KEY not configured in environment")

    try:
        return Fernet(key.encode("utf-8"))
    except Exception as e:
        logger.error("Failed to initialize Fernet cipher", error=str(e))
        raise EncryptionError(f"Invalid encryption key: {e}") from e


def encrypt_token(token: str, key: str | None = None) -> str:
    """
    Encrypt a serialized token for storage.

    Args:
        token: Plain text token (usually a JSON document)
        key: Optional key override, defaults to settings.ENCRYPTION_KEY

    Returns:
        str: URL-safe encrypted token

    Raises:
        EncryptionError: If encryption fails
    """
    if not token or not isinstance(token, str):
        raise EncryptionError("Token must be a non-empty string")

    try:
        fernet = _get_fernet(key)
        return fernet.encrypt(token.encode("utf-8")).decode("ascii")
    except EncryptionError:
        raise
    except Exception as e:
        logger.error("Failed to encrypt token", error=str(e))
        raise EncryptionError(f"Encryption failed: {e}") from e


def decrypt_token(encrypted_token: str, key: str | None = None) -> str:
    """
    Decrypt a token read from storage.

    Raises:
        EncryptionError: If decryption fails or token is invalid
    """
    if not encrypted_token or not isinstance(encrypted_token, str):
        raise EncryptionError("Encrypted token must be a non-empty string")

    try:
        fernet = _get_fernet(key)
        return fernet.decrypt(encrypted_token.encode("ascii")).decode("utf-8")
    except InvalidToken as e:
        logger.error("Token decryption failed - invalid token", error=str(e))
        raise EncryptionError("Invalid or corrupted token") from e
    except EncryptionError:
        raise
    except Exception as e:
        logger.error("Failed to decrypt token", error=str(e))
        raise EncryptionError(f"Decryption failed: {e}") from e


def generate_new_key() -> str:
    """
    Generate a new Fernet encryption key.

    Note:
        Use this for initial setup or key rotation.
        Store the result in your environment variables.
    """
    return Fernet.generate_key().decode("utf-8")
