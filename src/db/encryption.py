"""Encryption for credential secrets stored in the database.

Secrets are encrypted with Fernet before they are written and decrypted when
rows are loaded. A row whose secret cannot be decrypted (wrong key, corrupted
data) comes back with ``None`` and is skipped by the credential loader.
"""

import base64
import logging
from typing import Any

from cryptography.fernet import Fernet
from sqlalchemy import String, TypeDecorator

from src import metrics
from src.config import settings

logger = logging.getLogger(__name__)

_generated_key: bytes | None = None


def get_encryption_key() -> bytes:
    """
    Get the Fernet key from settings.

    Returns:
        Encryption key as bytes

    A missing key produces a process-local temporary key, so stored secrets
    survive only as long as the process.
    """
    global _generated_key

    key_str = settings.encryption_key
    if not key_str:
        if _generated_key is None:
            logger.warning("ENCRYPTION_KEY not set, generating temporary key (not secure for production)")
            _generated_key = Fernet.generate_key()
        return _generated_key

    # Key should be a base64-encoded Fernet key (32 bytes, 44 chars encoded)
    try:
        key_bytes = base64.urlsafe_b64decode(key_str)
        if len(key_bytes) == 32:
            return base64.urlsafe_b64encode(key_bytes)
    except ValueError:
        pass
    return base64.urlsafe_b64encode(key_str.encode().ljust(32)[:32])


class EncryptedString(TypeDecorator):
    """
    SQLAlchemy TypeDecorator for transparently encrypting/decrypting string columns.

    Usage:
        secret: Mapped[Optional[str]] = mapped_column(EncryptedString(512), nullable=True)
    """

    impl = String
    cache_ok = True

    def __init__(self, length: int = 256, *args: Any, **kwargs: Any):
        super().__init__(length, *args, **kwargs)
        self._fernet: Fernet | None = None

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(get_encryption_key())
        return self._fernet

    def process_bind_param(self, value: str | None, dialect: Any) -> str | None:
        """Encrypt value before storing in database."""
        if value is None:
            return None
        encrypted = self._get_fernet().encrypt(value.encode())
        return base64.urlsafe_b64encode(encrypted).decode()

    def process_result_value(self, value: str | None, dialect: Any) -> str | None:
        """Decrypt value after reading from database."""
        if value is None:
            return None

        try:
            encrypted = base64.urlsafe_b64decode(value.encode())
            return self._get_fernet().decrypt(encrypted).decode()
        except Exception as e:
            exception_type = type(e).__name__
            metrics.record_decryption_failure(exception_type)
            logger.error(
                f"Decryption failed: {exception_type} (value_length={len(value)}). "
                f"The encryption key may have changed."
            )
            return None
