"""SQLAlchemy TypeDecorator for transparent Fernet encryption of OAuth token columns."""

import base64

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from loguru import logger
from sqlalchemy import Text, TypeDecorator

_fernet_cache: dict[str, Fernet] = {}


def _get_fernet() -> Fernet:
    """Derive a Fernet key from the app secret key (cached per secret)."""
    from ..config import settings

    secret = settings.secret_key
    if secret not in _fernet_cache:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=b"fieldsync-token-encryption-v1",
            iterations=100_000,
        )
        key = base64.urlsafe_b64encode(kdf.derive(secret.encode()))
        _fernet_cache[secret] = Fernet(key)
    return _fernet_cache[secret]


class EncryptedText(TypeDecorator):
    """Transparently encrypts/decrypts text values stored in the database."""
    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return _get_fernet().encrypt(value.encode()).decode()

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        try:
            return _get_fernet().decrypt(value.encode()).decode()
        except InvalidToken:
            # Rows written before encryption was enabled
            logger.warning("Token column not decryptable, returning stored value")
            return value
