"""
Multi-account client facade

The only surface the presentation layer talks to. Reads (events, room
list, search, timelines) are synchronous and never touch the network;
every command that needs the network runs on a worker thread and returns
a Future.
"""
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from sqlalchemy.exc import SQLAlchemyError

from ..errors import AuthError, InvalidSession, MediaError, MultiSyncError, UnknownAccount
from ..models.account import ConnectionStatus
from ..models.events import AccountRemoved, DomainEvent, MediaFailed
from ..models.room import Room, RoomRef, TimelineEvent, UnifiedRoomEntry
from ..protocol import ProtocolAdapter, SessionHandle
from ..utils.logger import get_logger, log_error
from ..utils.text import snippet
from ..utils.validators import normalize_homeserver, normalize_user_id, validate_credentials
from .account_session import AccountSession
from .store import SessionStore
from .sync.dispatcher import EventDispatcher
from .sync.log_collector import SyncLogCollector
from .sync.media_queue import MediaPipeline
from .sync.room_index import SearchResults, UnifiedRoomIndex
from .sync.verification import VerificationManager

logger = get_logger('client')

# (homeserver, per-account key store directory) -> adapter
AdapterFactory = Callable[[str, str], ProtocolAdapter]
RoomLike = Union[RoomRef, str]


def _ref(room: RoomLike) -> RoomRef:
    return room if isinstance(room, RoomRef) else RoomRef.parse(room)


class MultiAccountClient:
    """N account sessions merged into one event feed and one room list.

    Example:
        >>> client = MultiAccountClient(Config, adapter_factory, store)
        >>> client.restore_sessions()
        >>> client.login('example.org', 'alice', 'secret').result()
        '@alice:example.org'
        >>> for event in client.poll_events():
        ...     render(event)
        >>> client.get_unified_rooms()
    """

    def __init__(self, config, adapter_factory: AdapterFactory, store: Optional[SessionStore] = None):
        self.config = config
        self.adapter_factory = adapter_factory
        self.store = store
        self._sessions: Dict[str, AccountSession] = {}
        self._lock = threading.RLock()

        favorites, sort_mode = store.load_preferences() if store is not None else ([], None)
        self.dispatcher = EventDispatcher(config.DISPATCHER_BUFFER_PER_ACCOUNT)
        self.index = UnifiedRoomIndex(
            self._resolve_room,
            self._resolve_label,
            sort_mode=sort_mode or config.DEFAULT_ROOM_SORT,
            favorites=favorites,
        )
        self.dispatcher.subscribe(self.index.on_event)
        self.dispatcher.subscribe(self._record_media_failure)
        self.verifications = VerificationManager(
            self.dispatcher.publish,
            timeout=config.VERIFICATION_TIMEOUT,
            retention=config.VERIFICATION_RETENTION,
        )
        self.media = MediaPipeline(
            max_concurrent=config.MEDIA_MAX_CONCURRENT,
            byte_budget=config.MEDIA_BYTE_BUDGET,
            publish=self.dispatcher.publish,
        )
        self._workers = ThreadPoolExecutor(max_workers=config.COMMAND_WORKERS, thread_name_prefix='command')

    # ==================== Session registry ====================

    def _resolve_room(self, ref: RoomRef) -> Optional[Room]:
        with self._lock:
            session = self._sessions.get(ref.account_id)
        return session.room_snapshot(ref.room_id) if session is not None else None

    def _resolve_label(self, account_id: str) -> str:
        with self._lock:
            session = self._sessions.get(account_id)
        return session.label if session is not None else account_id

    def own_user_ids(self) -> Tuple[str, ...]:
        with self._lock:
            return tuple(self._sessions)

    @property
    def accounts(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def session(self, account_id: str) -> AccountSession:
        with self._lock:
            session = self._sessions.get(account_id)
        if session is None:
            raise UnknownAccount(f'Unknown account {account_id}', account_id=account_id)
        return session

    def _new_session(self, handle: SessionHandle, adapter: ProtocolAdapter) -> AccountSession:
        session = AccountSession(
            handle,
            adapter,
            self.config,
            self._publish_from_session,
            store=self.store,
            own_user_ids=self.own_user_ids,
        )
        with self._lock:
            self._sessions[handle.user_id] = session
        return session

    def _publish_from_session(self, event: DomainEvent) -> None:
        # A stopping sync task of a removed account may still produce a batch
        with self._lock:
            known = event.account_id in self._sessions
        if known:
            self.dispatcher.publish(event)

    def _record_media_failure(self, event: DomainEvent) -> None:
        if not isinstance(event, MediaFailed):
            return
        with self._lock:
            session = self._sessions.get(event.account_id)
        if session is not None:
            session.engine.collector.add_issue(
                SyncLogCollector.TYPE_MEDIA_FAILED,
                room_id=event.room_id,
                event_id=event.event_id,
                message=event.error,
                extra={'content_uri': event.content_uri},
            )

    def _submit(self, fn, *args) -> Future:
        future = self._workers.submit(fn, *args)
        future.add_done_callback(self._report_failure)
        return future

    @staticmethod
    def _report_failure(future: Future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is None:
            return
        if isinstance(error, MultiSyncError):
            logger.warning(f"[Client] Command failed: {error.code} {error}")
        else:
            log_error(error, 'client command')

    # ==================== Accounts ====================

    def restore_sessions(self) -> Dict[str, str]:
        """Restore and start every persisted session.

        Call once at startup, before the presentation loop runs. A rejected
        token marks only that account LoggedOut.

        Returns:
            user id -> resulting status
        """
        if self.store is None:
            return {}
        results = {}
        for handle in self.store.load_accounts():
            if handle.user_id in self.own_user_ids():
                continue
            adapter = self.adapter_factory(handle.homeserver, self.config.session_dir(handle.user_id))
            session = self._new_session(handle, adapter)
            try:
                session.restore_from_persisted_token()
            except InvalidSession as e:
                logger.warning(f"[Client] Session of {handle.user_id} is no longer valid: {e}")
                results[handle.user_id] = session.status.value
                continue
            session.start()
            results[handle.user_id] = session.status.value
        logger.info(f"[Client] Restored {len(results)} sessions")
        return results

    def login(self, homeserver: str, username: str, password: str) -> Future:
        """Log in with a password. The Future resolves to the new account id.

        Raises:
            AuthError: the credentials are malformed (checked before any request)
        """
        ok, message = validate_credentials(homeserver, username, password)
        if not ok:
            raise AuthError(message)
        return self._submit(self._login, homeserver, username, password)

    def _login(self, homeserver: str, username: str, password: str) -> str:
        homeserver = normalize_homeserver(homeserver)
        user_id = normalize_user_id(username, homeserver)
        with self._lock:
            existing = self._sessions.get(user_id)
        if existing is not None and existing.status != ConnectionStatus.LOGGED_OUT:
            raise AuthError(f'{user_id} is already logged in', account_id=user_id)

        adapter = self.adapter_factory(homeserver, self.config.session_dir(user_id))
        handle = adapter.login(homeserver, username, password)
        if existing is not None:
            existing.stop()
        if self.store is not None:
            self.store.save_account(handle)
        session = self._new_session(handle, adapter)
        session.start()
        logger.info(f"[Client] Logged in {handle.user_id} on {homeserver}")
        return handle.user_id

    def reconnect_account(self, account_id: str) -> Future:
        """Stop and restart an account's sync loop."""
        session = self.session(account_id)

        def reconnect():
            session.stop()
            self.media.cancel_account(account_id, release_ready=False)
            session.start()
            return session.status.value

        return self._submit(reconnect)

    def remove_account(self, account_id: str) -> Future:
        """Forget an account: its rooms, verifications and media go away at once;
        the token is revoked and erased on a worker thread.
        """
        with self._lock:
            session = self._sessions.pop(account_id, None)
        if session is None:
            raise UnknownAccount(f'Unknown account {account_id}', account_id=account_id)

        session.stop(wait=False)
        self.verifications.abandon_account(account_id)
        self.media.cancel_account(account_id)
        self.dispatcher.discard_account(account_id)
        self.dispatcher.publish(AccountRemoved(account_id))
        self._save_preferences()

        def revoke():
            session.stop()
            # close() left the adapter usable for the revoke
            try:
                session.logout()
            except MultiSyncError as e:
                logger.warning(f"[Client] Could not revoke token of {account_id}: {e}")
            if self.store is not None:
                self.store.remove_account(account_id)
            logger.info(f"[Client] Removed account {account_id}")
            return True

        return self._submit(revoke)

    def account_statuses(self) -> Dict[str, str]:
        with self._lock:
            sessions = list(self._sessions.values())
        return {s.account_id: s.status.value for s in sessions}

    # ==================== Reads ====================

    def poll_events(self, max_events: Optional[int] = None) -> List[DomainEvent]:
        """Pending domain events across all accounts; never blocks.

        Raises:
            ResourceExhausted: an account could not allocate what it needed
        """
        with self._lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            if session.fatal_error is not None:
                raise session.fatal_error
        self.verifications.housekeeping()
        return self.dispatcher.poll(max_events)

    def get_unified_rooms(self, sort_mode: Optional[str] = None) -> List[UnifiedRoomEntry]:
        return self.index.get_unified_rooms(sort_mode)

    def search(self, query: str) -> SearchResults:
        return self.index.search(query)

    def get_timeline(self, room: RoomLike, limit: Optional[int] = None, before: Optional[str] = None) -> List[TimelineEvent]:
        ref = _ref(room)
        return self.session(ref.account_id).get_timeline(ref.room_id, limit=limit, before=before)

    def resolve_reply_context(self, room: RoomLike, event_id: str) -> Optional[Tuple[str, str]]:
        """(sender, short snippet) of a reply target in the loaded window."""
        ref = _ref(room)
        event = self.session(ref.account_id).timeline(ref.room_id).get(event_id)
        if event is None:
            return None
        return event.sender, snippet(event.display_body)

    # ==================== Room list preferences ====================

    def toggle_favorite(self, room: RoomLike) -> bool:
        now_favorite = self.index.toggle_favorite(_ref(room))
        self._save_preferences()
        return now_favorite

    def reorder_favorite(self, room: RoomLike, direction) -> bool:
        moved = self.index.reorder_favorite(_ref(room), direction)
        if moved:
            self._save_preferences()
        return moved

    def set_sort_mode(self, mode: str) -> None:
        self.index.set_sort_mode(mode)
        self._save_preferences()

    def _save_preferences(self) -> None:
        if self.store is None:
            return
        try:
            self.store.save_preferences(self.index.favorites, self.index.sort_mode)
        except SQLAlchemyError as e:
            logger.error(f"[Client] Saving preferences failed: {e}")

    # ==================== Room commands ====================

    def _room_command(self, room: RoomLike, method: str, *args) -> Future:
        ref = _ref(room)
        session = self.session(ref.account_id)
        return self._submit(getattr(session, method), ref.room_id, *args)

    def send_message(self, room: RoomLike, body: str, msgtype: str = 'text') -> Future:
        return self._room_command(room, 'send_message', body, msgtype)

    def send_reply(self, room: RoomLike, reply_to: str, body: str) -> Future:
        return self._room_command(room, 'send_reply', reply_to, body)

    def edit_message(self, room: RoomLike, event_id: str, body: str) -> Future:
        return self._room_command(room, 'edit_message', event_id, body)

    def redact(self, room: RoomLike, event_id: str, reason: Optional[str] = None) -> Future:
        return self._room_command(room, 'redact', event_id, reason)

    def react(self, room: RoomLike, event_id: str, key: str) -> Future:
        return self._room_command(room, 'react', event_id, key)

    def mark_read(self, room: RoomLike, event_id: str) -> Future:
        return self._room_command(room, 'send_read_receipt', event_id)

    def load_more(self, room: RoomLike, limit: Optional[int] = None) -> Future:
        """Backfill one older page; completion is also announced by BackfillLoaded."""
        return self._room_command(room, 'load_history', limit)

    def set_room_name(self, room: RoomLike, name: str) -> Future:
        return self._room_command(room, 'set_room_name', name)

    def set_room_topic(self, room: RoomLike, topic: str) -> Future:
        return self._room_command(room, 'set_room_topic', topic)

    def send_attachment(self, room: RoomLike, path) -> Future:
        """Upload a local file and post it; resolves to the event id."""
        return self._room_command(room, 'send_attachment', path)

    def invite_user(self, room: RoomLike, user_id: str) -> Future:
        return self._room_command(room, 'invite_user', user_id)

    def leave_room(self, room: RoomLike) -> Future:
        return self._leave(room, forget=False)

    def forget_room(self, room: RoomLike) -> Future:
        """Leave a room and remove it from the server-side room list for good."""
        return self._leave(room, forget=True)

    def _leave(self, room: RoomLike, forget: bool) -> Future:
        ref = _ref(room)
        session = self.session(ref.account_id)

        def leave():
            session.leave_room(ref.room_id, forget=forget)
            # RoomLeft has already dropped the room's favorite from the index
            self._save_preferences()
            return True

        return self._submit(leave)

    def create_room(
        self,
        account_id: str,
        name: Optional[str] = None,
        topic: Optional[str] = None,
        is_public: bool = False,
        encrypted: bool = True,
        invite: Iterable[str] = ()
    ) -> Future:
        """Create a room on one account; resolves to the new room id."""
        session = self.session(account_id)
        return self._submit(session.create_room, name, topic, is_public, encrypted, tuple(invite))

    # ==================== Profile ====================

    def _account_command(self, account_id: str, method: str, *args) -> Future:
        session = self.session(account_id)
        return self._submit(getattr(session, method), *args)

    def get_display_name(self, account_id: str) -> Future:
        return self._account_command(account_id, 'get_display_name')

    def set_display_name(self, account_id: str, name: str) -> Future:
        return self._account_command(account_id, 'set_display_name', name)

    def get_avatar_url(self, account_id: str) -> Future:
        return self._account_command(account_id, 'get_avatar_url')

    def set_avatar_url(self, account_id: str, content_uri: str) -> Future:
        return self._account_command(account_id, 'set_avatar_url', content_uri)

    def upload_avatar(self, account_id: str, path) -> Future:
        """Upload a local image as the avatar; resolves to its content uri."""
        return self._account_command(account_id, 'upload_avatar', path)

    # ==================== Verification ====================

    def start_recovery(self, account_id: str) -> str:
        """Open a recovery-key verification. Returns its id; it awaits the secret."""
        session = self.session(account_id)
        return self.verifications.start_recovery(account_id, session.adapter).verification_id

    def submit_recovery_secret(self, verification_id: str, secret: Union[str, bytes, bytearray]) -> Future:
        verification = self.verifications.get(verification_id)
        return self._submit(verification.submit_secret, secret)

    def start_sas(self, account_id: str, device_id: Optional[str] = None) -> str:
        """Request emoji verification with another device. Returns its id."""
        session = self.session(account_id)
        verification = self.verifications.create_sas(account_id, session.adapter, device_id=device_id)
        self._submit(verification.begin)
        return verification.verification_id

    def accept_incoming_verification(self, account_id: str, user_id: str, flow_id: str) -> str:
        session = self.session(account_id)
        verification = self.verifications.create_sas(account_id, session.adapter, incoming=(user_id, flow_id))
        self._submit(verification.begin)
        return verification.verification_id

    def confirm_sas(self, verification_id: str, matches: bool = True) -> Future:
        verification = self.verifications.get(verification_id)
        return self._submit(verification.confirm, matches)

    def cancel_verification(self, verification_id: str) -> Future:
        verification = self.verifications.get(verification_id)
        return self._submit(verification.cancel, 'Cancelled by user')

    def get_verification(self, verification_id: str) -> Dict:
        return self.verifications.get(verification_id).to_dict()

    def acknowledge_verification(self, verification_id: str) -> None:
        self.verifications.acknowledge(verification_id)

    # ==================== Media ====================

    def request_media(self, room: RoomLike, event_id: str) -> Future:
        """Download the media attached to an event (deduplicated)."""
        ref = _ref(room)
        session = self.session(ref.account_id)
        event = session.timeline(ref.room_id).get(event_id)
        if event is None or event.media is None:
            raise MediaError(f'Event {event_id} has no media', account_id=ref.account_id)
        return self.media.request(
            event.media.content_uri,
            session.adapter.download_media,
            ref.account_id,
            ref.room_id,
            event_id,
        )

    def cancel_media(self, content_uri: str) -> bool:
        return self.media.cancel(content_uri)

    def release_media(self, content_uri: str) -> bool:
        return self.media.release(content_uri)

    # ==================== Diagnostics / shutdown ====================

    def get_diagnostics(self) -> Dict:
        with self._lock:
            sessions = list(self._sessions.values())
        return {
            'accounts': {s.account_id: s.diagnostics() for s in sessions},
            'dispatcher': {
                'pending': self.dispatcher.pending(),
                'dropped': self.dispatcher.dropped_count,
                'dropped_by_account': self.dispatcher.dropped_by_account(),
            },
            'media': self.media.get_stats(),
            'verifications': [v.to_dict() for v in self.verifications.sessions()],
        }

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop every sync loop and worker pool."""
        with self._lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            session.stop(wait=False)
        for session in sessions:
            session.stop(timeout=timeout)
        self.media.shutdown(wait=False)
        self._workers.shutdown(wait=False)
        logger.info("[Client] Shut down")
