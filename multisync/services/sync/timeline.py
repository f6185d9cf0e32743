"""
Room Timeline Store - ordered, paginated event log for one room

Live events are appended at the end, backfilled pages are prepended at the
front; the two never interleave. Event timestamps are never used for
ordering since server clocks are not trusted.
"""
import threading
from typing import Dict, Iterable, List, Optional, Set, Tuple

from ...errors import StateInvariantViolation
from ...models.room import EventKind, TimelineEvent
from ...utils.logger import get_logger

logger = get_logger('timeline')


class RoomTimelineStore:
    """Per-room event log with read marker, receipts and typing state.

    Every applied event id (including edits, redactions and reactions) is
    remembered so redelivery after a reconnect is a no-op.

    Example:
        >>> store = RoomTimelineStore('!room:example.org')
        >>> store.append(event)
        True
        >>> store.append(event)  # redelivered
        False
        >>> store.mark_read(event.event_id)
        True
    """

    def __init__(self, room_id: str):
        self.room_id = room_id
        self._events: List[TimelineEvent] = []
        self._by_id: Dict[str, TimelineEvent] = {}
        self._seen: Set[str] = set()
        self._read_marker: Optional[str] = None
        self._receipts: Dict[str, str] = {}
        self._typing: Tuple[str, ...] = ()
        # Backward pagination cursor; None until the server hands us one
        self.backfill_token: Optional[str] = None
        self.backfill_exhausted = False
        self._lock = threading.RLock()

    # ==================== Ordering ====================

    def append(self, event: TimelineEvent) -> bool:
        """Append a live event. Returns False if the id was already applied."""
        with self._lock:
            if event.event_id in self._seen:
                return False
            self._seen.add(event.event_id)
            self._events.append(event)
            self._by_id[event.event_id] = event
            return True

    def prepend_page(self, events: Iterable[TimelineEvent]) -> int:
        """Prepend one backfilled page given oldest-first.

        The page lands before the earliest known event; ids already present
        are skipped.

        Returns:
            Number of events added
        """
        with self._lock:
            fresh = []
            for event in events:
                if event.event_id in self._seen:
                    continue
                self._seen.add(event.event_id)
                self._by_id[event.event_id] = event
                fresh.append(event)
            self._events[0:0] = fresh
            return len(fresh)

    def discard(self, event_id: str) -> bool:
        """Remove an entry from the visible log while keeping its id as seen."""
        with self._lock:
            event = self._by_id.pop(event_id, None)
            if event is None:
                return False
            self._events = [e for e in self._events if e is not event]
            return True

    # ==================== In-place mutations ====================

    def _require(self, target_id: str) -> TimelineEvent:
        event = self._by_id.get(target_id)
        if event is None:
            raise StateInvariantViolation(f'event {target_id} is not in the loaded window of {self.room_id}')
        return event

    def has_seen(self, event_id: str) -> bool:
        with self._lock:
            return event_id in self._seen

    def apply_edit(self, target_id: str, new_body: str, relation_id: Optional[str] = None) -> Optional[TimelineEvent]:
        """Replace the body of ``target_id``. Unknown targets are logged and ignored."""
        with self._lock:
            if relation_id and relation_id in self._seen:
                return None
            try:
                target = self._require(target_id)
            except StateInvariantViolation as e:
                logger.warning(f"[Timeline] Edit ignored: {e}")
                return None
            if relation_id:
                self._seen.add(relation_id)
            target.body = new_body
            target.edited = True
            return target.copy()

    def apply_redaction(self, target_id: str, relation_id: Optional[str] = None) -> Optional[TimelineEvent]:
        """Blank out ``target_id``. Unknown targets are logged and ignored."""
        with self._lock:
            if relation_id and relation_id in self._seen:
                return None
            try:
                target = self._require(target_id)
            except StateInvariantViolation as e:
                logger.warning(f"[Timeline] Redaction ignored: {e}")
                return None
            if relation_id:
                self._seen.add(relation_id)
            target.redacted = True
            target.body = None
            target.media = None
            target.reactions.clear()
            target.encrypted_payload = None
            return target.copy()

    def apply_reaction(self, target_id: str, key: str, relation_id: Optional[str] = None) -> Optional[int]:
        """Count a reaction on ``target_id``.

        Returns:
            The new count for ``key``, or None if ignored
        """
        with self._lock:
            if relation_id and relation_id in self._seen:
                return None
            try:
                target = self._require(target_id)
            except StateInvariantViolation as e:
                logger.warning(f"[Timeline] Reaction ignored: {e}")
                return None
            if relation_id:
                self._seen.add(relation_id)
            target.reactions[key] = target.reactions.get(key, 0) + 1
            return target.reactions[key]

    def replace_decrypted(self, event_id: str, body: Optional[str], **fields) -> Optional[TimelineEvent]:
        """Fill in a formerly undecryptable event in place."""
        with self._lock:
            event = self._by_id.get(event_id)
            if event is None or not event.decryption_pending:
                return None
            event.body = body
            event.decryption_pending = False
            event.encrypted_payload = None
            for name, value in fields.items():
                setattr(event, name, value)
            return event.copy()

    def pending_decryption(self) -> List[TimelineEvent]:
        with self._lock:
            return [e.copy() for e in self._events if e.decryption_pending]

    # ==================== Read state ====================

    def position(self, event_id: str) -> int:
        """Index of ``event_id`` in the log, -1 if not loaded."""
        with self._lock:
            event = self._by_id.get(event_id)
            if event is None:
                return -1
            for idx, candidate in enumerate(self._events):
                if candidate is event:
                    return idx
            return -1

    def mark_read(self, up_to_event_id: str) -> bool:
        """Move the read marker forward to ``up_to_event_id``.

        Moving backwards, or to an event outside the loaded window, is
        rejected and leaves the marker unchanged.
        """
        with self._lock:
            new_pos = self.position(up_to_event_id)
            if new_pos < 0:
                logger.debug(f"[Timeline] Read marker target {up_to_event_id} not loaded in {self.room_id}")
                return False
            if self._read_marker is not None and new_pos <= self.position(self._read_marker):
                return False
            self._read_marker = up_to_event_id
            return True

    @property
    def read_marker(self) -> Optional[str]:
        with self._lock:
            return self._read_marker

    def count_unread(self, own_user_ids: Iterable[str] = ()) -> int:
        """Messages from others after the read marker."""
        own = set(own_user_ids)
        with self._lock:
            start = 0
            if self._read_marker is not None:
                start = self.position(self._read_marker) + 1
            return sum(
                1 for e in self._events[start:]
                if e.kind == EventKind.MESSAGE and e.sender not in own and not e.redacted
            )

    def set_receipt(self, user_id: str, event_id: str) -> bool:
        with self._lock:
            if self._receipts.get(user_id) == event_id:
                return False
            self._receipts[user_id] = event_id
            return True

    def receipts(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._receipts)

    # ==================== Typing ====================

    def set_typing(self, user_ids: Iterable[str]) -> bool:
        new = tuple(sorted(user_ids))
        with self._lock:
            if new == self._typing:
                return False
            self._typing = new
            return True

    @property
    def typing(self) -> Tuple[str, ...]:
        with self._lock:
            return self._typing

    # ==================== Reads ====================

    def get(self, event_id: str) -> Optional[TimelineEvent]:
        with self._lock:
            event = self._by_id.get(event_id)
            return event.copy() if event else None

    def window(self, limit: Optional[int] = None, before: Optional[str] = None) -> List[TimelineEvent]:
        """Copies of the newest ``limit`` events, optionally ending before ``before``."""
        with self._lock:
            end = len(self._events)
            if before is not None:
                pos = self.position(before)
                if pos >= 0:
                    end = pos
            start = 0 if limit is None else max(0, end - limit)
            return [e.copy() for e in self._events[start:end]]

    @property
    def last_activity(self) -> int:
        with self._lock:
            for event in reversed(self._events):
                if event.kind == EventKind.MESSAGE:
                    return event.timestamp
            return 0

    def __len__(self):
        with self._lock:
            return len(self._events)

    def __contains__(self, event_id):
        with self._lock:
            return event_id in self._by_id
