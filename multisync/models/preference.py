"""
Preference and sync cursor models
"""
import json
from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String, Text

from ..extensions import Base


class Preference(Base):
    """A JSON-encoded user preference (favorites order, room sort mode)."""
    __tablename__ = 'preferences'

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(64), unique=True, nullable=False, index=True)
    value = Column(Text)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def get_value(self, default=None):
        if self.value is None:
            return default
        try:
            return json.loads(self.value)
        except (json.JSONDecodeError, TypeError):
            return default

    def set_value(self, value) -> None:
        self.value = json.dumps(value, ensure_ascii=False)


class SyncCursor(Base):
    """Last applied sync batch token of an account."""
    __tablename__ = 'sync_cursors'

    user_id = Column(String(255), primary_key=True)
    cursor = Column(Text)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
