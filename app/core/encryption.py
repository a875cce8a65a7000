from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from app.core.config import settings
import logging

logger = logging.getLogger(__name__)

_fernet: Optional[Fernet] = None


def get_fernet() -> Fernet:
    """Get the Fernet instance used for OAuth tokens at rest."""
    global _fernet
    if _fernet is None:
        key = settings.ENCRYPTION_KEY
        if not key:
            raise ValueError(
                "ENCRYPTION_KEY is not set. Generate one with: "
                "python -c 'from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())'"
            )
        _fernet = Fernet(key.encode())
    return _fernet


def encrypt_value(plain_text: Optional[str]) -> Optional[str]:
    """Encrypt a token. Empty values are stored as NULL."""
    if not plain_text:
        return None
    return get_fernet().encrypt(plain_text.encode()).decode()


def decrypt_value(cipher_text: Optional[str]) -> Optional[str]:
    """Decrypt a stored token. Returns None when nothing is stored."""
    if not cipher_text:
        return None
    try:
        return get_fernet().decrypt(cipher_text.encode()).decode()
    except InvalidToken:
        logger.error("Failed to decrypt stored token (key mismatch or corrupted value)")
        raise ValueError("Failed to decrypt token. The encryption key may have changed.")
