"""
Account model
"""
from datetime import datetime
from enum import Enum

from sqlalchemy import Column, DateTime, Integer, String, Text

from ..extensions import Base


class ConnectionStatus(str, Enum):
    CONNECTING = 'connecting'
    SYNCED = 'synced'
    DEGRADED = 'degraded'
    LOGGED_OUT = 'logged_out'


class SavedAccount(Base):
    """Persisted session of one account.

    The access token is only stored Fernet-encrypted; use
    ``get_access_token`` / ``set_access_token`` with a TokenCrypto.
    """
    __tablename__ = 'saved_accounts'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), unique=True, nullable=False, index=True)
    homeserver = Column(String(512), nullable=False)
    device_id = Column(String(128), nullable=False)
    encrypted_token = Column(Text, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def get_access_token(self, crypto):
        return crypto.decrypt(self.encrypted_token)

    def set_access_token(self, crypto, token: str) -> None:
        self.encrypted_token = crypto.encrypt(token)

    def to_dict(self):
        """Serialize without the token"""
        return {
            'user_id': self.user_id,
            'homeserver': self.homeserver,
            'device_id': self.device_id,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f'<SavedAccount {self.user_id}>'
