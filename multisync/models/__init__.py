"""
Data models: persisted tables and in-memory domain records
"""
from .account import SavedAccount, ConnectionStatus
from .preference import Preference, SyncCursor
from .room import (
    EventKind,
    MediaKind,
    MediaRef,
    Room,
    RoomRef,
    TimelineEvent,
    UnifiedRoomEntry,
)

__all__ = [
    'SavedAccount',
    'ConnectionStatus',
    'Preference',
    'SyncCursor',
    'EventKind',
    'MediaKind',
    'MediaRef',
    'Room',
    'RoomRef',
    'TimelineEvent',
    'UnifiedRoomEntry',
]
