"""
Sync Engine - per-account poll-and-merge loop

Requests the next batch of server deltas, applies them to the account's
room timelines, persists the cursor and publishes one domain event per
logically distinct change. Network calls (sync, decrypt, key fetch,
history) are made without holding the account's write lock.
"""
import os
import threading
import time
from typing import Dict, List, Optional, Set

from ...errors import AuthError, DecryptionError, NetworkError, ResourceExhausted, UnknownRoom
from ...models.account import ConnectionStatus
from ...models.events import (
    BackfillLoaded,
    DomainEvent,
    MembershipChanged,
    MessageDecrypted,
    MessageEdited,
    MessageReceived,
    MessageRedacted,
    ReactionAdded,
    ReadReceiptUpdated,
    RoomLeft,
    RoomUpdated,
    TypingChanged,
    VerificationIncoming,
)
from ...models.room import EventKind, MediaKind, MediaRef, Room, TimelineEvent
from ...protocol import (
    RAW_EDIT,
    RAW_MEMBERSHIP,
    RAW_MESSAGE,
    RAW_REACTION,
    RAW_REDACTION,
    HistoryPage,
    RawEvent,
    RoomDelta,
    SyncResponse,
)
from ...utils.logger import get_logger, log_sync_event
from ...utils.text import mime_from_extension, strip_reply_fallback
from .log_collector import SyncLogCollector
from .timeline import RoomTimelineStore

logger = get_logger('sync_engine')

_RELATION_KINDS = (RAW_EDIT, RAW_REDACTION, RAW_REACTION)
_MEDIA_KINDS = {kind.value: kind for kind in MediaKind}
_ROOM_STATE_FIELDS = ('name', 'topic', 'encrypted', 'is_direct')


def to_timeline_event(raw: RawEvent) -> TimelineEvent:
    """Build the stored form of a plaintext message or membership event."""
    content = raw.content or {}
    if raw.kind == RAW_MEMBERSHIP:
        return TimelineEvent(
            event_id=raw.event_id,
            sender=raw.sender,
            kind=EventKind.MEMBERSHIP,
            body=content.get('state_key') or raw.sender,
            timestamp=raw.timestamp,
            membership=content.get('membership'),
        )

    body = content.get('body') or ''
    if raw.reply_to:
        body = strip_reply_fallback(body)

    media = None
    kind = _MEDIA_KINDS.get(content.get('msgtype'))
    if kind is not None and content.get('url'):
        filename = content.get('filename') or body
        media = MediaRef(
            content_uri=content['url'],
            kind=kind,
            filename=filename,
            mimetype=content.get('mimetype') or mime_from_extension(os.path.splitext(filename)[1]),
            size=content.get('size'),
        )

    return TimelineEvent(
        event_id=raw.event_id,
        sender=raw.sender,
        kind=EventKind.MESSAGE,
        body=body,
        timestamp=raw.timestamp,
        reply_to=raw.reply_to,
        media=media,
    )


def pending_placeholder(raw: RawEvent) -> TimelineEvent:
    """Stored form of an event that could not be decrypted yet."""
    return TimelineEvent(
        event_id=raw.event_id,
        sender=raw.sender,
        kind=EventKind.MESSAGE,
        timestamp=raw.timestamp,
        decryption_pending=True,
        encrypted_payload=dict(raw.content or {}),
    )


class SyncEngine:
    """Sync loop of one account session.

    The session provides the adapter, the rooms and timelines it owns, the
    write lock guarding them and a ``publish`` callable.

    Example:
        >>> engine = SyncEngine(session, config, store=store)
        >>> stop = threading.Event()
        >>> engine.run(stop)  # blocks until stop is set or the token is rejected
    """

    def __init__(self, session, config, store=None):
        self.session = session
        self.config = config
        self.store = store
        self.account_id = session.account_id
        self.timeout_ms = config.SYNC_TIMEOUT_MS
        self.degraded_threshold = config.SYNC_DEGRADED_THRESHOLD
        self.collector = SyncLogCollector(self.account_id)
        self.cursor: Optional[str] = None
        self.batches = 0
        self.last_sync_at: Optional[float] = None
        self._cursor_loaded = False

    # ==================== Loop ====================

    def run(self, stop_event: threading.Event) -> None:
        """Loop until ``stop_event`` is set or the server rejects the token.

        The stop flag is checked before every network round trip. The
        adapter's connection resources are released when the loop ends.
        """
        log_sync_event(self.account_id, 'loop_started')
        try:
            while not stop_event.is_set():
                try:
                    self.sync_once()
                except AuthError as e:
                    self._on_auth_error(e)
                    break
                except ResourceExhausted:
                    raise
                except NetworkError as e:
                    self._on_failure(e)
                except Exception as e:
                    logger.exception(f"[Sync] Unexpected error for {self.account_id}: {e}")
                    self.collector.add_issue(SyncLogCollector.TYPE_UNEXPECTED, message=str(e))
                    self._on_failure(e)
                else:
                    continue

                delay = self.session.backoff.get_delay()
                if delay > 0:
                    stop_event.wait(delay)
        finally:
            try:
                self.session.adapter.close()
            except Exception as e:
                logger.warning(f"[Sync] Closing adapter for {self.account_id} failed: {e}")
            log_sync_event(self.account_id, 'loop_stopped', self.collector.get_summary())

    def sync_once(self) -> SyncResponse:
        """One request/apply cycle. Exceptions from the adapter propagate."""
        if not self._cursor_loaded:
            self.cursor = self._load_cursor()
            self._cursor_loaded = True

        response = self.session.adapter.sync(self.cursor, self.timeout_ms)
        self.apply_response(response)
        self.cursor = response.next_batch
        self._save_cursor(response.next_batch)
        self.batches += 1
        self.last_sync_at = time.time()

        self.session.backoff.record_success()
        if self.session.status != ConnectionStatus.SYNCED:
            self.session.set_status(ConnectionStatus.SYNCED)
        return response

    def _on_failure(self, error: Exception) -> None:
        failures = self.session.backoff.record_failure()
        if isinstance(error, NetworkError):
            self.collector.add_issue(SyncLogCollector.TYPE_NETWORK_ERROR, message=str(error))
        logger.warning(f"[Sync] {self.account_id} sync failed ({failures} in a row): {error}")

        status = self.session.status
        if status == ConnectionStatus.CONNECTING or (
            status == ConnectionStatus.SYNCED and failures >= self.degraded_threshold
        ):
            self.session.set_status(ConnectionStatus.DEGRADED, error=str(error))

    def _on_auth_error(self, error: AuthError) -> None:
        logger.error(f"[Sync] {self.account_id} token rejected: {error}")
        self.collector.add_issue(SyncLogCollector.TYPE_AUTH_ERROR, message=str(error))
        self.session.set_status(ConnectionStatus.LOGGED_OUT, error=str(error))

    # ==================== Cursor persistence ====================

    def _load_cursor(self) -> Optional[str]:
        if self.store is None:
            return None
        try:
            return self.store.load_cursor(self.account_id)
        except Exception as e:
            logger.error(f"[Sync] Loading cursor for {self.account_id} failed: {e}")
            return None

    def _save_cursor(self, cursor: str) -> None:
        if self.store is None:
            return
        try:
            self.store.save_cursor(self.account_id, cursor)
        except Exception as e:
            logger.error(f"[Sync] Saving cursor for {self.account_id} failed: {e}")

    # ==================== Applying batches ====================

    def apply_response(self, response: SyncResponse) -> List[DomainEvent]:
        """Apply one batch and publish its domain events in order."""
        decrypted = {}
        for delta in response.rooms:
            decrypted.update(self._decrypt_all(delta.room_id, delta.timeline))

        events: List[DomainEvent] = []
        needs_keys: Set[str] = set()
        with self.session.write_lock:
            for delta in response.rooms:
                self._apply_room_delta(delta, decrypted, events, needs_keys)
            for room_id in response.left_rooms:
                if self.session.rooms.pop(room_id, None) is not None:
                    self.session.timelines.pop(room_id, None)
                    events.append(RoomLeft(self.account_id, room_id))

        for request in response.verification_requests:
            events.append(VerificationIncoming(self.account_id, request.user_id, request.flow_id))

        self.collector.record_batch(len(events))
        self._publish(events)

        retry_rooms = {d.room_id for d in response.rooms if d.keys_updated}
        for room_id in needs_keys:
            if self._fetch_keys(room_id):
                retry_rooms.add(room_id)
        for room_id in retry_rooms:
            self.retry_pending(room_id)
        return events

    def _decrypt_all(self, room_id: str, raw_events: List[RawEvent]) -> Dict[str, Optional[RawEvent]]:
        """Decrypt encrypted events; failures map to None."""
        result = {}
        for raw in raw_events:
            if not raw.encrypted:
                continue
            try:
                result[raw.event_id] = self.session.adapter.decrypt_event(room_id, raw)
            except DecryptionError as e:
                logger.debug(f"[Sync] Could not decrypt {raw.event_id} in {room_id}: {e}")
                result[raw.event_id] = None
        return result

    def _ensure_room(self, room_id: str) -> bool:
        """Create a room record with defaults. Returns True if it was new."""
        if room_id in self.session.rooms:
            return False
        self.session.rooms[room_id] = Room(room_id=room_id, account_id=self.account_id)
        self.session.timelines[room_id] = RoomTimelineStore(room_id)
        return True

    def _apply_room_delta(
        self,
        delta: RoomDelta,
        decrypted: Dict[str, Optional[RawEvent]],
        events: List[DomainEvent],
        needs_keys: Set[str]
    ) -> None:
        room_id = delta.room_id
        created = self._ensure_room(room_id)
        room = self.session.rooms[room_id]
        timeline = self.session.timelines[room_id]
        own = set(self.session.own_user_ids())

        changed = ['created'] if created else []
        for name in _ROOM_STATE_FIELDS:
            value = getattr(delta, name)
            if value is not None and getattr(room, name) != value:
                setattr(room, name, value)
                changed.append(name)
        if delta.members is not None and list(delta.members) != room.members:
            room.members = list(delta.members)
            changed.append('members')
        if delta.unread_count is not None and delta.unread_count != room.unread:
            room.unread = delta.unread_count
            changed.append('unread')
        if changed:
            events.append(RoomUpdated(self.account_id, room_id, tuple(changed)))

        if delta.prev_batch and timeline.backfill_token is None and not timeline.backfill_exhausted:
            timeline.backfill_token = delta.prev_batch

        new_from_others = 0
        for raw in delta.timeline:
            if timeline.has_seen(raw.event_id):
                continue
            plain = raw
            if raw.encrypted:
                plain = decrypted.get(raw.event_id)
                if plain is None:
                    placeholder = pending_placeholder(raw)
                    timeline.append(placeholder)
                    events.append(MessageReceived(self.account_id, room_id, placeholder.copy()))
                    self.collector.add_issue(
                        SyncLogCollector.TYPE_DECRYPTION_PENDING, room_id=room_id, event_id=raw.event_id
                    )
                    needs_keys.add(room_id)
                    continue
            if self._apply_plain(room, timeline, plain, events) and plain.kind == RAW_MESSAGE \
                    and plain.sender not in own:
                new_from_others += 1

        if delta.unread_count is None and new_from_others:
            room.unread += new_from_others
        room.last_activity = max(room.last_activity, timeline.last_activity)

        for user_id, event_id in delta.receipts.items():
            if timeline.set_receipt(user_id, event_id):
                events.append(ReadReceiptUpdated(self.account_id, room_id, user_id, event_id))
                if user_id == self.account_id and timeline.mark_read(event_id) and delta.unread_count is None:
                    room.unread = timeline.count_unread(own)

        if delta.typing is not None:
            if timeline.set_typing(u for u in delta.typing if u not in own):
                events.append(TypingChanged(self.account_id, room_id, timeline.typing))

    def _apply_plain(self, room: Room, timeline: RoomTimelineStore, raw: RawEvent,
                     events: List[DomainEvent], relation_id: Optional[str] = None) -> bool:
        """Apply one plaintext event. Returns True if the timeline changed."""
        if raw.kind in _RELATION_KINDS:
            return self._apply_relation(room.room_id, timeline, raw, events,
                                        raw.event_id if relation_id is None else relation_id)

        entry = to_timeline_event(raw)
        if not timeline.append(entry):
            return False

        if entry.kind != EventKind.MEMBERSHIP:
            events.append(MessageReceived(self.account_id, room.room_id, entry.copy()))
            return True

        # Membership entries stay in the timeline but surface only as MembershipChanged
        if entry.membership:
            user_id = entry.body
            if entry.membership == 'join' and user_id not in room.members:
                room.members.append(user_id)
            elif entry.membership in ('leave', 'ban') and user_id in room.members:
                room.members.remove(user_id)
            events.append(MembershipChanged(self.account_id, room.room_id, user_id, entry.membership))
        return True

    def _apply_relation(self, room_id: str, timeline: RoomTimelineStore, raw: RawEvent,
                        events: List[DomainEvent], relation_id: Optional[str]) -> bool:
        target = raw.relates_to
        content = raw.content or {}
        if raw.kind == RAW_EDIT:
            updated = timeline.apply_edit(target, content.get('body') or '', relation_id)
            if updated is not None:
                events.append(MessageEdited(self.account_id, room_id, target, updated.body))
                return True
        elif raw.kind == RAW_REDACTION:
            if timeline.apply_redaction(target, relation_id) is not None:
                events.append(MessageRedacted(self.account_id, room_id, target))
                return True
        else:
            key = content.get('key') or ''
            count = timeline.apply_reaction(target, key, relation_id)
            if count is not None:
                events.append(ReactionAdded(self.account_id, room_id, target, key, count))
                return True

        self.collector.add_issue(
            SyncLogCollector.TYPE_STATE_INVARIANT,
            room_id=room_id,
            event_id=raw.event_id,
            message=f'{raw.kind} for unknown event {target}',
        )
        return False

    # ==================== Decryption retries ====================

    def _fetch_keys(self, room_id: str) -> bool:
        """Single best-effort key backup download for a room."""
        try:
            fetched = self.session.adapter.fetch_room_keys(room_id)
        except Exception as e:
            logger.warning(f"[Sync] Key fetch for {room_id} failed: {e}")
            self.collector.add_issue(SyncLogCollector.TYPE_KEY_FETCH_FAILED, room_id=room_id, message=str(e))
            return False
        return bool(fetched)

    def retry_pending(self, room_id: str) -> int:
        """Try again to decrypt the room's pending events.

        Returns:
            Number of events that decrypted
        """
        timeline = self.session.timelines.get(room_id)
        if timeline is None:
            return 0
        decrypted = []
        for pending in timeline.pending_decryption():
            raw = RawEvent(
                event_id=pending.event_id,
                sender=pending.sender,
                content=pending.encrypted_payload or {},
                timestamp=pending.timestamp,
                encrypted=True,
            )
            try:
                decrypted.append(self.session.adapter.decrypt_event(room_id, raw))
            except DecryptionError:
                continue
        if not decrypted:
            return 0

        events: List[DomainEvent] = []
        with self.session.write_lock:
            room = self.session.rooms.get(room_id)
            if room is None:
                return 0
            for plain in decrypted:
                if plain.kind in _RELATION_KINDS:
                    # The placeholder was really a relation: drop it and apply the relation
                    timeline.discard(plain.event_id)
                    events.append(MessageDecrypted(self.account_id, room_id, plain.event_id))
                    self._apply_relation(room_id, timeline, plain, events, None)
                    continue
                entry = to_timeline_event(plain)
                updated = timeline.replace_decrypted(
                    plain.event_id, entry.body, kind=entry.kind, reply_to=entry.reply_to,
                    media=entry.media, membership=entry.membership,
                )
                if updated is not None:
                    events.append(MessageDecrypted(self.account_id, room_id, plain.event_id))
        self._publish(events)
        logger.info(f"[Sync] Decrypted {len(decrypted)} pending events in {room_id}")
        return len(decrypted)

    # ==================== History backfill ====================

    def load_history(self, room_id: str, limit: Optional[int] = None) -> int:
        """Fetch one older page for a room and prepend it.

        Runs on a worker thread; the page is applied under the account's
        write lock after the network call returns.

        Returns:
            Number of events added

        Raises:
            UnknownRoom: the account does not know the room
            NetworkError, AuthError: from the adapter
        """
        timeline = self.session.timelines.get(room_id)
        if timeline is None:
            raise UnknownRoom(f'Unknown room {room_id}', account_id=self.account_id)
        if timeline.backfill_exhausted:
            self._publish([BackfillLoaded(self.account_id, room_id, 0, False)])
            return 0

        limit = limit or self.config.HISTORY_PAGE_SIZE
        page: HistoryPage = self.session.adapter.fetch_history(room_id, timeline.backfill_token, limit)
        oldest_first = list(reversed(page.events))
        decrypted = self._decrypt_all(room_id, oldest_first)

        events: List[DomainEvent] = []
        needs_keys = False
        with self.session.write_lock:
            room = self.session.rooms.get(room_id)
            if room is None or self.session.timelines.get(room_id) is not timeline:
                raise UnknownRoom(f'Room {room_id} was left during backfill', account_id=self.account_id)
            entries = []
            relations = []
            for raw in oldest_first:
                plain = raw
                if raw.encrypted:
                    plain = decrypted.get(raw.event_id)
                    if plain is None:
                        entries.append(pending_placeholder(raw))
                        needs_keys = True
                        continue
                if plain.kind in _RELATION_KINDS:
                    relations.append(plain)
                else:
                    entries.append(to_timeline_event(plain))
            added = timeline.prepend_page(entries)
            for plain in relations:
                if not timeline.has_seen(plain.event_id):
                    self._apply_relation(room_id, timeline, plain, [], plain.event_id)

            timeline.backfill_token = page.end
            if page.end is None:
                timeline.backfill_exhausted = True
            room.last_activity = max(room.last_activity, timeline.last_activity)
            events.append(BackfillLoaded(self.account_id, room_id, added, not timeline.backfill_exhausted))

        self.collector.record_backfill()
        self._publish(events)
        if needs_keys and self._fetch_keys(room_id):
            self.retry_pending(room_id)
        logger.debug(f"[Sync] Backfilled {added} events in {room_id}")
        return added

    def _publish(self, events: List[DomainEvent]) -> None:
        for event in events:
            self.session.publish(event)

    def get_stats(self) -> Dict:
        return {
            'batches': self.batches,
            'last_sync_at': self.last_sync_at,
            'cursor': self.cursor,
            'log': self.collector.get_summary(),
        }
