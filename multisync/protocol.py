"""
Protocol Client Adapter interface

One adapter instance exists per account. Implementations wrap a real
messaging SDK; this package only orchestrates them. Every method here may
block on the network and is only called from sync tasks or worker threads,
never from the presentation thread.

Adapters report failures with the exceptions in ``multisync.errors``:
AuthError for rejected credentials, NetworkError for transient transport
failures, DecryptionError, MediaError, SendError and VerificationError.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

# Raw event kinds as delivered by adapters
RAW_MESSAGE = 'message'
RAW_EDIT = 'edit'
RAW_REDACTION = 'redaction'
RAW_REACTION = 'reaction'
RAW_MEMBERSHIP = 'membership'


@dataclass
class SessionHandle:
    """Credentials of an authenticated device. The token is never printed."""
    homeserver: str
    user_id: str
    device_id: str
    access_token: str = field(repr=False)


@dataclass
class RawEvent:
    """A timeline event in wire-neutral form.

    ``content`` keys by kind:
      message: ``body``, optional ``msgtype`` (text/notice/emote/image/file/video/audio),
               ``url``, ``filename``, ``mimetype``, ``size``
      edit: ``body`` (new body); ``relates_to`` is the edited event
      redaction: ``relates_to`` is the redacted event
      reaction: ``key``; ``relates_to`` is the annotated event
      membership: ``membership`` (join/leave/invite/ban), ``state_key`` (affected user)

    When ``encrypted`` is set, ``content`` is an opaque ciphertext payload
    that only the adapter can turn back into a plaintext RawEvent.
    """
    event_id: str
    sender: str
    kind: str = RAW_MESSAGE
    content: Dict[str, Any] = field(default_factory=dict)
    timestamp: int = 0
    relates_to: Optional[str] = None
    reply_to: Optional[str] = None
    encrypted: bool = False


@dataclass
class RoomDelta:
    """Changes to one room in one sync batch. ``None`` means "unchanged"."""
    room_id: str
    timeline: List[RawEvent] = field(default_factory=list)
    name: Optional[str] = None
    topic: Optional[str] = None
    encrypted: Optional[bool] = None
    is_direct: Optional[bool] = None
    members: Optional[List[str]] = None
    unread_count: Optional[int] = None
    typing: Optional[List[str]] = None
    # user id -> event id of that user's latest read receipt
    receipts: Dict[str, str] = field(default_factory=dict)
    # Token to paginate backwards from the earliest event of this batch
    prev_batch: Optional[str] = None
    # Room keys arrived; pending undecryptable events may now decrypt
    keys_updated: bool = False


@dataclass
class IncomingVerification:
    user_id: str
    flow_id: str


@dataclass
class SyncResponse:
    next_batch: str
    rooms: List[RoomDelta] = field(default_factory=list)
    left_rooms: List[str] = field(default_factory=list)
    verification_requests: List[IncomingVerification] = field(default_factory=list)


@dataclass
class HistoryPage:
    """One page of backward pagination, newest event first."""
    events: List[RawEvent]
    end: Optional[str] = None


class SasSession(ABC):
    """An interactive emoji verification in progress."""

    flow_id: str = ''

    @abstractmethod
    def emojis(self) -> List[Tuple[str, str]]:
        """Block until keys are exchanged and return (symbol, description) pairs."""

    @abstractmethod
    def confirm(self) -> bool:
        """Confirm the emojis match; return True once the other side is done too."""

    @abstractmethod
    def cancel(self) -> None:
        """Cancel the flow on both sides."""


class ProtocolAdapter(ABC):
    """Per-account protocol client capability."""

    @abstractmethod
    def login(self, homeserver: str, username: str, password: str) -> SessionHandle:
        """Authenticate with a password. Raises AuthError."""

    @abstractmethod
    def restore_session(self, handle: SessionHandle) -> None:
        """Resume a persisted session. Raises AuthError if the token is rejected."""

    @abstractmethod
    def sync(self, cursor: Optional[str], timeout_ms: int) -> SyncResponse:
        """Long-poll for the next batch after ``cursor`` (None = initial sync)."""

    @abstractmethod
    def fetch_history(self, room_id: str, from_token: Optional[str], limit: int) -> HistoryPage:
        """Paginate backwards from ``from_token`` (None = the room's latest known gap)."""

    @abstractmethod
    def decrypt_event(self, room_id: str, event: RawEvent) -> RawEvent:
        """Return the plaintext event. Raises DecryptionError."""

    @abstractmethod
    def fetch_room_keys(self, room_id: str) -> bool:
        """Best-effort key backup download for a room. True if new keys arrived."""

    @abstractmethod
    def send_message(self, room_id: str, content: Dict[str, Any]) -> str:
        """Send an event; ``content['kind']`` selects message/edit/redaction/reaction. Returns the event id."""

    @abstractmethod
    def send_read_receipt(self, room_id: str, event_id: str) -> None:
        pass

    @abstractmethod
    def set_room_state(self, room_id: str, name: Optional[str] = None, topic: Optional[str] = None) -> None:
        pass

    @abstractmethod
    def create_room(self, name: Optional[str], topic: Optional[str], is_public: bool,
                    encrypted: bool, invite: List[str]) -> str:
        """Create a room and return its id. It reaches local state through sync."""

    @abstractmethod
    def invite_user(self, room_id: str, user_id: str) -> None:
        pass

    @abstractmethod
    def leave_room(self, room_id: str) -> None:
        pass

    @abstractmethod
    def forget_room(self, room_id: str) -> None:
        """Forget an already left room so it no longer appears in sync."""

    @abstractmethod
    def upload_media(self, data: bytes, mimetype: str, filename: str) -> str:
        """Upload bytes to the media repository and return the content uri."""

    @abstractmethod
    def get_display_name(self) -> Optional[str]:
        pass

    @abstractmethod
    def set_display_name(self, name: str) -> None:
        pass

    @abstractmethod
    def get_avatar_url(self) -> Optional[str]:
        pass

    @abstractmethod
    def set_avatar_url(self, content_uri: str) -> None:
        pass

    @abstractmethod
    def fetch_recovery_backup(self, secret: bytearray) -> bool:
        """Recover secrets with a recovery key. Must not keep a reference to ``secret``."""

    @abstractmethod
    def start_sas_verification(self, device_id: Optional[str]) -> SasSession:
        """Request interactive verification with ``device_id`` (None = all own devices)."""

    @abstractmethod
    def accept_verification(self, user_id: str, flow_id: str) -> SasSession:
        """Accept an incoming verification request."""

    @abstractmethod
    def download_media(self, content_uri: str) -> Tuple[bytes, str]:
        """Download media bytes and their mime type. Raises MediaError."""

    @abstractmethod
    def logout(self) -> None:
        """Revoke the access token on the server."""

    def close(self) -> None:
        """Release connection resources. Called whenever the sync loop ends.

        The adapter stays usable afterwards: a reconnect starts a new sync loop
        on the same instance, so implementations reopen connections lazily.
        """
