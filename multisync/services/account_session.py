"""
Account Session - one authenticated connection lifecycle

Owns the account's adapter, connection status, retry policy and the
rooms and timelines observed by that account. Only the account's own sync
task (and its history/command workers, under ``write_lock``) mutate them;
everything handed out is a copy.
"""
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ..errors import (
    AuthError,
    InvalidSession,
    MultiSyncError,
    NetworkError,
    ResourceExhausted,
    SendError,
    UnknownRoom,
)
from ..models.account import ConnectionStatus
from ..models.events import AccountStatusChanged, DomainEvent, RoomLeft, RoomUpdated
from ..models.room import Room, TimelineEvent
from ..protocol import (
    RAW_EDIT,
    RAW_MESSAGE,
    RAW_REACTION,
    RAW_REDACTION,
    ProtocolAdapter,
    SessionHandle,
)
from ..utils.logger import get_logger, redact_token
from ..utils.text import mime_from_extension
from ..utils.validators import validate_user_id
from .sync.delay_manager import BackoffManager
from .sync.engine import SyncEngine
from .sync.timeline import RoomTimelineStore

logger = get_logger('account_session')


class AccountSession:
    """Connection lifecycle and local state of one account.

    Example:
        >>> session = AccountSession(handle, adapter, config, dispatcher.publish, store=store)
        >>> session.restore_from_persisted_token()
        >>> session.start()        # Connecting -> Synced on the first batch
        >>> session.get_timeline('!room:example.org', limit=50)
        >>> session.stop()
    """

    def __init__(
        self,
        handle: SessionHandle,
        adapter: ProtocolAdapter,
        config,
        publish: Callable[[DomainEvent], None],
        store=None,
        own_user_ids: Optional[Callable[[], Iterable[str]]] = None
    ):
        self.handle = handle
        self.account_id = handle.user_id
        self.adapter = adapter
        self.config = config
        self.publish = publish
        self.rooms: Dict[str, Room] = {}
        self.timelines: Dict[str, RoomTimelineStore] = {}
        self.write_lock = threading.RLock()
        self.backoff = BackoffManager.from_config(config, name=self.account_id)
        self.fatal_error: Optional[ResourceExhausted] = None

        self._own_user_ids = own_user_ids
        self._status = ConnectionStatus.CONNECTING
        self._status_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self.engine = SyncEngine(self, config, store=store)

    def __repr__(self):
        return f'<AccountSession {self.account_id} {self._status.value}>'

    @property
    def label(self) -> str:
        return self.account_id

    def own_user_ids(self) -> Iterable[str]:
        """User ids of every local account (typing and unread exclude them)."""
        if self._own_user_ids is None:
            return (self.account_id,)
        return self._own_user_ids()

    # ==================== Status ====================

    @property
    def status(self) -> ConnectionStatus:
        with self._status_lock:
            return self._status

    def set_status(self, status: ConnectionStatus, error: Optional[str] = None) -> None:
        """Change status and publish AccountStatusChanged."""
        with self._status_lock:
            previous = self._status
            if previous == status:
                return
            self._status = status
        logger.info(f"[Account] {self.account_id}: {previous.value} -> {status.value}")
        self.publish(AccountStatusChanged(
            account_id=self.account_id,
            status=status.value,
            previous=previous.value,
            error=error,
        ))

    # ==================== Lifecycle ====================

    def restore_from_persisted_token(self, access_token: Optional[str] = None) -> None:
        """Resume the session without asking for credentials.

        Raises:
            InvalidSession: the server rejected the token; status is LoggedOut
        """
        if access_token is not None:
            self.handle.access_token = access_token
        logger.info(
            f"[Account] Restoring {self.account_id} on {self.handle.homeserver} "
            f"(token {redact_token(self.handle.access_token)})"
        )
        try:
            self.adapter.restore_session(self.handle)
        except AuthError as e:
            self.set_status(ConnectionStatus.LOGGED_OUT, error=str(e))
            raise InvalidSession(str(e) or 'Token rejected', account_id=self.account_id) from e
        except NetworkError as e:
            # The sync loop retries; a token check is not worth failing the restore for
            logger.warning(f"[Account] Could not reach server while restoring {self.account_id}: {e}")

    def start(self) -> None:
        """Start the sync loop on its own thread."""
        if self.is_running:
            return
        if self.status == ConnectionStatus.LOGGED_OUT:
            raise InvalidSession('Account is logged out; log in again', account_id=self.account_id)
        self.set_status(ConnectionStatus.CONNECTING)
        self.backoff.reset()
        self._stop_event = threading.Event()
        thread = threading.Thread(
            target=self._run,
            args=(self._stop_event,),
            name=f'sync-{self.account_id}',
        )
        thread.daemon = True
        try:
            thread.start()
        except RuntimeError as e:
            raise ResourceExhausted(f'Cannot start sync task: {e}', account_id=self.account_id) from e
        self._thread = thread
        logger.info(f"[Account] Sync task started for {self.account_id}")

    def _run(self, stop_event: threading.Event) -> None:
        try:
            self.engine.run(stop_event)
        except ResourceExhausted as e:
            logger.critical(f"[Account] {self.account_id} ran out of resources: {e}")
            self.fatal_error = e

    def stop(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        """Ask the sync loop to stop before its next network round trip."""
        self._stop_event.set()
        thread = self._thread
        if wait and thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        logger.info(f"[Account] Sync task stop requested for {self.account_id}")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def logout(self) -> None:
        """Revoke the token on the server."""
        self.adapter.logout()
        self.set_status(ConnectionStatus.LOGGED_OUT)

    # ==================== Snapshots ====================

    def room_snapshot(self, room_id: str) -> Optional[Room]:
        with self.write_lock:
            room = self.rooms.get(room_id)
            return room.copy() if room else None

    def rooms_snapshot(self) -> List[Room]:
        with self.write_lock:
            return [room.copy() for room in self.rooms.values()]

    def timeline(self, room_id: str) -> RoomTimelineStore:
        with self.write_lock:
            timeline = self.timelines.get(room_id)
        if timeline is None:
            raise UnknownRoom(f'Unknown room {room_id}', account_id=self.account_id)
        return timeline

    def get_timeline(self, room_id: str, limit: Optional[int] = None, before: Optional[str] = None) -> List[TimelineEvent]:
        return self.timeline(room_id).window(limit=limit, before=before)

    # ==================== Commands ====================
    # Blocking; called from worker threads, never from the presentation thread.

    def _call(self, fn: Callable, *args):
        """Run an adapter command; unclassified failures become SendError."""
        try:
            return fn(*args)
        except MultiSyncError:
            raise
        except Exception as e:
            raise SendError(str(e), account_id=self.account_id) from e

    def _send(self, room_id: str, content: Dict[str, Any]) -> str:
        self.timeline(room_id)
        return self._call(self.adapter.send_message, room_id, content)

    def _check_user_id(self, user_id: str) -> str:
        user_id = user_id.strip()
        ok, message = validate_user_id(user_id)
        if not ok:
            raise SendError(f'{user_id!r}: {message}', account_id=self.account_id)
        return user_id

    def _read_upload(self, path) -> Tuple[bytes, str, str]:
        """(bytes, mime type, file name) of a local file to upload."""
        path = Path(path)
        try:
            data = path.read_bytes()
        except OSError as e:
            raise SendError(f'Cannot read {path}: {e}', account_id=self.account_id) from e
        return data, mime_from_extension(path.suffix), path.name

    def send_message(self, room_id: str, body: str, msgtype: str = 'text') -> str:
        return self._send(room_id, {'kind': RAW_MESSAGE, 'msgtype': msgtype, 'body': body})

    def send_reply(self, room_id: str, reply_to: str, body: str) -> str:
        return self._send(room_id, {'kind': RAW_MESSAGE, 'msgtype': 'text', 'body': body, 'reply_to': reply_to})

    def edit_message(self, room_id: str, event_id: str, body: str) -> str:
        return self._send(room_id, {'kind': RAW_EDIT, 'relates_to': event_id, 'body': body})

    def redact(self, room_id: str, event_id: str, reason: Optional[str] = None) -> str:
        content = {'kind': RAW_REDACTION, 'relates_to': event_id}
        if reason:
            content['reason'] = reason
        return self._send(room_id, content)

    def react(self, room_id: str, event_id: str, key: str) -> str:
        return self._send(room_id, {'kind': RAW_REACTION, 'relates_to': event_id, 'key': key})

    def send_attachment(self, room_id: str, path) -> str:
        """Upload a local file and post it to the room."""
        self.timeline(room_id)
        data, mimetype, filename = self._read_upload(path)
        content_uri = self._call(self.adapter.upload_media, data, mimetype, filename)
        major = mimetype.split('/')[0]
        return self._send(room_id, {
            'kind': RAW_MESSAGE,
            'msgtype': major if major in ('image', 'video', 'audio') else 'file',
            'body': filename,
            'filename': filename,
            'url': content_uri,
            'mimetype': mimetype,
            'size': len(data),
        })

    def send_read_receipt(self, room_id: str, event_id: str) -> bool:
        """Send a read receipt and advance the local read marker.

        Returns:
            True if the local marker moved
        """
        timeline = self.timeline(room_id)
        self.adapter.send_read_receipt(room_id, event_id)
        with self.write_lock:
            if not timeline.mark_read(event_id):
                return False
            room = self.rooms.get(room_id)
            if room is None:
                return False
            unread = timeline.count_unread(self.own_user_ids())
            changed = unread != room.unread
            room.unread = unread
        if changed:
            self.publish(RoomUpdated(self.account_id, room_id, ('unread',)))
        return True

    def set_room_name(self, room_id: str, name: str) -> None:
        self.timeline(room_id)
        self.adapter.set_room_state(room_id, name=name)

    def set_room_topic(self, room_id: str, topic: str) -> None:
        self.timeline(room_id)
        self.adapter.set_room_state(room_id, topic=topic)

    def create_room(
        self,
        name: Optional[str] = None,
        topic: Optional[str] = None,
        is_public: bool = False,
        encrypted: bool = True,
        invite: Iterable[str] = ()
    ) -> str:
        """Create a room. Public rooms are never encrypted.

        Returns:
            The new room id; the room itself arrives with the next sync batch
        """
        invites = [self._check_user_id(u) for u in invite if u and u.strip()]
        room_id = self._call(self.adapter.create_room, name, topic, is_public, encrypted and not is_public, invites)
        logger.info(f"[Account] {self.account_id} created room {room_id}")
        return room_id

    def invite_user(self, room_id: str, user_id: str) -> None:
        self.timeline(room_id)
        self._call(self.adapter.invite_user, room_id, self._check_user_id(user_id))

    def leave_room(self, room_id: str, forget: bool = False) -> None:
        """Leave (and optionally forget) a room, then drop it locally."""
        self.timeline(room_id)
        self._call(self.adapter.leave_room, room_id)
        if forget:
            self._call(self.adapter.forget_room, room_id)
        with self.write_lock:
            removed = self.rooms.pop(room_id, None) is not None
            self.timelines.pop(room_id, None)
        if removed:
            self.publish(RoomLeft(self.account_id, room_id))
        logger.info(f"[Account] {self.account_id} left {room_id}{' and forgot it' if forget else ''}")

    def forget_room(self, room_id: str) -> None:
        self.leave_room(room_id, forget=True)

    def load_history(self, room_id: str, limit: Optional[int] = None) -> int:
        return self.engine.load_history(room_id, limit)

    # ==================== Profile ====================

    def get_display_name(self) -> Optional[str]:
        return self._call(self.adapter.get_display_name)

    def set_display_name(self, name: str) -> None:
        self._call(self.adapter.set_display_name, name)

    def get_avatar_url(self) -> Optional[str]:
        return self._call(self.adapter.get_avatar_url)

    def set_avatar_url(self, content_uri: str) -> None:
        self._call(self.adapter.set_avatar_url, content_uri)

    def upload_avatar(self, path) -> str:
        """Upload a local image and make it the avatar. Returns its content uri."""
        data, mimetype, filename = self._read_upload(path)
        content_uri = self._call(self.adapter.upload_media, data, mimetype, filename)
        self.set_avatar_url(content_uri)
        return content_uri

    # ==================== Diagnostics ====================

    def diagnostics(self) -> Dict:
        with self.write_lock:
            room_count = len(self.rooms)
        return {
            'account_id': self.account_id,
            'homeserver': self.handle.homeserver,
            'status': self.status.value,
            'running': self.is_running,
            'rooms': room_count,
            'consecutive_failures': self.backoff.consecutive_failures,
            'backoff': self.backoff.get_stats(),
            'sync': self.engine.get_stats(),
            'issues': self.engine.collector.get_issues(limit=20),
        }
