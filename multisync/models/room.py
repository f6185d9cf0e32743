"""
Room and timeline records

Rooms and their timelines are owned by one account session. Everything
handed to other components is a copy.
"""
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Optional

ENCRYPTED_PLACEHOLDER = '[encrypted message — unable to decrypt]'
REDACTED_PLACEHOLDER = '[message deleted]'


class EventKind(str, Enum):
    MESSAGE = 'message'
    EDIT = 'edit'
    REDACTION = 'redaction'
    REACTION = 'reaction'
    MEMBERSHIP = 'membership'
    TYPING = 'typing'


class MediaKind(str, Enum):
    IMAGE = 'image'
    FILE = 'file'
    VIDEO = 'video'
    AUDIO = 'audio'


@dataclass(frozen=True, order=True)
class RoomRef:
    """(account id, room id) pair; the only way rooms are referenced across accounts."""
    account_id: str
    room_id: str

    def __str__(self):
        return f'{self.account_id}|{self.room_id}'

    @classmethod
    def parse(cls, value: str) -> 'RoomRef':
        account_id, sep, room_id = value.partition('|')
        if not sep or not account_id or not room_id:
            raise ValueError(f'Invalid room reference: {value!r}')
        return cls(account_id, room_id)


@dataclass(frozen=True)
class MediaRef:
    content_uri: str
    kind: MediaKind
    filename: str = ''
    mimetype: Optional[str] = None
    size: Optional[int] = None


@dataclass
class TimelineEvent:
    event_id: str
    sender: str
    kind: EventKind
    body: Optional[str] = None
    timestamp: int = 0
    reply_to: Optional[str] = None
    media: Optional[MediaRef] = None
    membership: Optional[str] = None
    decryption_pending: bool = False
    edited: bool = False
    redacted: bool = False
    reactions: Dict[str, int] = field(default_factory=dict)
    # Ciphertext kept only while decryption is pending
    encrypted_payload: Optional[dict] = field(default=None, repr=False)

    @property
    def display_body(self) -> str:
        if self.redacted:
            return REDACTED_PLACEHOLDER
        if self.decryption_pending:
            return ENCRYPTED_PLACEHOLDER
        return self.body or ''

    def copy(self) -> 'TimelineEvent':
        return replace(self, reactions=dict(self.reactions))


@dataclass
class Room:
    room_id: str
    account_id: str
    name: str = ''
    topic: Optional[str] = None
    members: List[str] = field(default_factory=list)
    encrypted: bool = False
    is_direct: bool = False
    unread: int = 0
    last_activity: int = 0

    @property
    def display_name(self) -> str:
        return self.name or self.room_id

    @property
    def ref(self) -> RoomRef:
        return RoomRef(self.account_id, self.room_id)

    def copy(self) -> 'Room':
        return replace(self, members=list(self.members))


@dataclass(frozen=True)
class UnifiedRoomEntry:
    """Display projection of a Room; rebuilt from the source room, never mutated."""
    account_id: str
    room_id: str
    name: str
    account_label: str
    topic: Optional[str]
    unread: int
    last_activity: int
    encrypted: bool
    is_direct: bool
    favorite: bool

    @property
    def ref(self) -> RoomRef:
        return RoomRef(self.account_id, self.room_id)

    @classmethod
    def from_room(cls, room: Room, account_label: str, favorite: bool) -> 'UnifiedRoomEntry':
        return cls(
            account_id=room.account_id,
            room_id=room.room_id,
            name=room.display_name,
            account_label=account_label,
            topic=room.topic,
            unread=room.unread,
            last_activity=room.last_activity,
            encrypted=room.encrypted,
            is_direct=room.is_direct,
            favorite=favorite,
        )
