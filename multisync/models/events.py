"""
Domain events

Normalized, account-tagged notifications of state changes, independent of
any server wire format. Events marked non-critical may be dropped by the
dispatcher under backpressure.
"""
from dataclasses import dataclass
from typing import ClassVar, Optional, Tuple

from .room import TimelineEvent


@dataclass(frozen=True)
class DomainEvent:
    account_id: str

    critical: ClassVar[bool] = True

    @property
    def event_type(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class AccountStatusChanged(DomainEvent):
    status: str
    previous: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class AccountRemoved(DomainEvent):
    pass


@dataclass(frozen=True)
class RoomUpdated(DomainEvent):
    room_id: str
    fields: Tuple[str, ...] = ()


@dataclass(frozen=True)
class RoomLeft(DomainEvent):
    room_id: str


@dataclass(frozen=True)
class MessageReceived(DomainEvent):
    room_id: str
    event: TimelineEvent


@dataclass(frozen=True)
class MessageEdited(DomainEvent):
    room_id: str
    event_id: str
    body: str


@dataclass(frozen=True)
class MessageRedacted(DomainEvent):
    room_id: str
    event_id: str


@dataclass(frozen=True)
class ReactionAdded(DomainEvent):
    room_id: str
    event_id: str
    key: str
    count: int


@dataclass(frozen=True)
class MembershipChanged(DomainEvent):
    room_id: str
    user_id: str
    membership: str


@dataclass(frozen=True)
class TypingChanged(DomainEvent):
    room_id: str
    user_ids: Tuple[str, ...]

    critical: ClassVar[bool] = False


@dataclass(frozen=True)
class ReadReceiptUpdated(DomainEvent):
    room_id: str
    user_id: str
    event_id: str


@dataclass(frozen=True)
class MessageDecrypted(DomainEvent):
    room_id: str
    event_id: str


@dataclass(frozen=True)
class BackfillLoaded(DomainEvent):
    room_id: str
    count: int
    has_more: bool


@dataclass(frozen=True)
class VerificationIncoming(DomainEvent):
    user_id: str
    flow_id: str


@dataclass(frozen=True)
class VerificationStateChanged(DomainEvent):
    verification_id: str
    kind: str
    state: str
    error: Optional[str] = None


@dataclass(frozen=True)
class VerificationEmojis(DomainEvent):
    verification_id: str
    emojis: Tuple[Tuple[str, str], ...]


@dataclass(frozen=True)
class MediaReady(DomainEvent):
    room_id: str
    event_id: str
    content_uri: str
    mimetype: str
    size: int


@dataclass(frozen=True)
class MediaFailed(DomainEvent):
    room_id: str
    event_id: str
    content_uri: str
    error: str
