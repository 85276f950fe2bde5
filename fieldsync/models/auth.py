"""OAuth credentials for the remote Jobber account."""

from datetime import datetime, timezone

from sqlalchemy import Column, String

from ..database import UTCDateTime
from ..utils.encrypted_type import EncryptedText
from .base import Base


class OAuthToken(Base):
    """One row per remote account, refreshed in place.

    Created by the OAuth handshake (or `fieldsync-sync seed-token`), then
    only ever updated by TokenManager.
    """

    __tablename__ = "oauth_tokens"
    account = Column(String(50), primary_key=True)
    access_token = Column(EncryptedText, nullable=False)
    refresh_token = Column(EncryptedText, nullable=False)
    access_token_expires_at = Column(UTCDateTime, nullable=False)
    refresh_token_expires_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        UTCDateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
