"""
Unified Room Index - cross-account, display-ready room ordering and search

The index never owns rooms. It keeps (account id, room id) references and
resolves them through the owning account session whenever it needs data,
so a removed account simply stops resolving.
"""
import bisect
import threading
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from ...errors import NotFavorite, UnknownRoom
from ...models.events import AccountRemoved, DomainEvent, RoomLeft
from ...models.room import Room, RoomRef, UnifiedRoomEntry
from ...utils.logger import get_logger
from ...utils.text import fuzzy_score

logger = get_logger('room_index')

SORT_UNREAD = 'unread'
SORT_RECENT = 'recent'
SORT_ALPHA = 'alpha'

SORT_MODES = {
    SORT_UNREAD: 'Unread First',
    SORT_RECENT: 'Recent Activity',
    SORT_ALPHA: 'Alphabetical',
}

RoomResolver = Callable[[RoomRef], Optional[Room]]
LabelResolver = Callable[[str], str]


def sort_key(entry: UnifiedRoomEntry, mode: str) -> Tuple:
    """Ordering key of a non-favorite room under ``mode``."""
    name = entry.name.lower()
    tail = (entry.account_id, entry.room_id)
    if mode == SORT_UNREAD:
        return (-entry.unread, name) + tail
    if mode == SORT_RECENT:
        return (-entry.last_activity, name) + tail
    return (name,) + tail


class SearchResults:
    """Lazy, finite, restartable ranked search over an index snapshot.

    Nothing is scored until iteration starts; every ``iter()`` starts over.
    """

    def __init__(self, index: 'UnifiedRoomIndex', query: str):
        self._index = index
        self.query = query

    def __iter__(self) -> Iterator[UnifiedRoomEntry]:
        ordered = self._index.get_unified_rooms()
        scored = []
        for position, entry in enumerate(ordered):
            score = _best_score(self.query, entry)
            if score is not None:
                scored.append((-score, position, entry))
        scored.sort(key=lambda item: (item[0], item[1]))
        for _, _, entry in scored:
            yield entry

    def first(self) -> Optional[UnifiedRoomEntry]:
        return next(iter(self), None)


def _best_score(query: str, entry: UnifiedRoomEntry) -> Optional[float]:
    scores = [s for s in (fuzzy_score(query, entry.name), fuzzy_score(query, entry.account_label)) if s is not None]
    return max(scores) if scores else None


class UnifiedRoomIndex:
    """Favorites first in manual order, then the rest in the configured sort mode.

    Relevant domain events update only the affected room's position, using
    an immutable entry snapshot built from the owning session. Changing the
    sort mode is the only operation that reorders everything.

    Example:
        >>> index = UnifiedRoomIndex(resolve_room, resolve_label, sort_mode='recent')
        >>> dispatcher.subscribe(index.on_event)
        >>> index.toggle_favorite(RoomRef('@a:x.org', '!r:x.org'))
        True
        >>> [e.name for e in index.search('gen')]
        ['General']
    """

    def __init__(
        self,
        resolve_room: RoomResolver,
        resolve_label: LabelResolver,
        sort_mode: str = SORT_UNREAD,
        favorites: Optional[List[RoomRef]] = None
    ):
        if sort_mode not in SORT_MODES:
            sort_mode = SORT_UNREAD
        self._resolve_room = resolve_room
        self._resolve_label = resolve_label
        self._sort_mode = sort_mode
        self._favorites: List[RoomRef] = list(dict.fromkeys(favorites or []))
        self._entries: Dict[RoomRef, UnifiedRoomEntry] = {}
        # Non-favorite rooms as (sort key, ref), kept sorted
        self._ordered: List[Tuple[Tuple, RoomRef]] = []
        self._keys: Dict[RoomRef, Tuple] = {}
        self._lock = threading.RLock()

    # ==================== Incremental maintenance ====================

    def on_event(self, event: DomainEvent) -> None:
        """Dispatcher subscriber: refresh the room an event touched."""
        if isinstance(event, AccountRemoved):
            self.remove_account(event.account_id)
            return
        room_id = getattr(event, 'room_id', None)
        if room_id is None:
            return
        ref = RoomRef(event.account_id, room_id)
        if isinstance(event, RoomLeft):
            self.discard(ref)
            with self._lock:
                if ref in self._favorites:
                    self._favorites.remove(ref)
        else:
            self.refresh(ref)

    def refresh(self, ref: RoomRef) -> Optional[UnifiedRoomEntry]:
        """Rebuild one room's entry from its owning session and reposition it.

        The snapshot is taken under the index lock so that concurrent
        refreshes of one room are placed in the order they were resolved.
        """
        with self._lock:
            room = self._resolve_room(ref)
            if room is None:
                self.discard(ref)
                return None
            entry = UnifiedRoomEntry.from_room(room, self._resolve_label(ref.account_id), ref in self._favorites)
            self._entries[ref] = entry
            self._unplace(ref)
            if ref not in self._favorites:
                self._place(ref, entry)
            return entry

    def discard(self, ref: RoomRef) -> None:
        with self._lock:
            self._entries.pop(ref, None)
            self._unplace(ref)

    def remove_account(self, account_id: str) -> None:
        """Drop every room and favorite of a removed account."""
        with self._lock:
            for ref in [r for r in self._entries if r.account_id == account_id]:
                self.discard(ref)
            self._favorites = [r for r in self._favorites if r.account_id != account_id]

    def _place(self, ref: RoomRef, entry: UnifiedRoomEntry) -> None:
        key = sort_key(entry, self._sort_mode)
        bisect.insort(self._ordered, (key, ref))
        self._keys[ref] = key

    def _unplace(self, ref: RoomRef) -> None:
        key = self._keys.pop(ref, None)
        if key is None:
            return
        idx = bisect.bisect_left(self._ordered, (key, ref))
        if idx < len(self._ordered) and self._ordered[idx][1] == ref:
            del self._ordered[idx]

    # ==================== Reads ====================

    def get_unified_rooms(self, sort_mode: Optional[str] = None) -> List[UnifiedRoomEntry]:
        """Display order: favorites (manual order) then the rest.

        Each entry is re-resolved against its owning session; rooms whose
        account or room no longer exists are left out.
        """
        with self._lock:
            favorites = [ref for ref in self._favorites if ref in self._entries]
            if sort_mode is None or sort_mode == self._sort_mode:
                others = [ref for _, ref in self._ordered]
            else:
                if sort_mode not in SORT_MODES:
                    raise ValueError(f'Unknown sort mode: {sort_mode}')
                rest = [e for ref, e in self._entries.items() if ref not in self._favorites]
                others = [e.ref for e in sorted(rest, key=lambda e: sort_key(e, sort_mode))]

        result = []
        for ref in favorites + others:
            room = self._resolve_room(ref)
            if room is None:
                continue
            result.append(UnifiedRoomEntry.from_room(room, self._resolve_label(ref.account_id), ref in favorites))
        return result

    def search(self, query: str) -> SearchResults:
        """Fuzzy match over room names and account labels, best match first."""
        return SearchResults(self, query)

    def __len__(self):
        with self._lock:
            return len(self._entries)

    # ==================== Sort mode and favorites ====================

    @property
    def sort_mode(self) -> str:
        return self._sort_mode

    def set_sort_mode(self, mode: str) -> None:
        if mode not in SORT_MODES:
            raise ValueError(f'Unknown sort mode: {mode}')
        with self._lock:
            if mode == self._sort_mode:
                return
            self._sort_mode = mode
            self._ordered = []
            self._keys = {}
            for ref, entry in self._entries.items():
                if ref not in self._favorites:
                    self._place(ref, entry)
        logger.info(f"[RoomIndex] Sort mode set to {mode}")

    @property
    def favorites(self) -> List[RoomRef]:
        with self._lock:
            return list(self._favorites)

    def is_favorite(self, ref: RoomRef) -> bool:
        with self._lock:
            return ref in self._favorites

    def toggle_favorite(self, ref: RoomRef) -> bool:
        """Add ``ref`` at the end of the manual order, or remove it.

        Returns:
            True if the room is now a favorite

        Raises:
            UnknownRoom: ``ref`` is not a favorite and resolves to no room
        """
        with self._lock:
            if ref in self._favorites:
                self._favorites.remove(ref)
                now_favorite = False
            else:
                if self._resolve_room(ref) is None:
                    raise UnknownRoom(f'Unknown room {ref}', account_id=ref.account_id)
                self._favorites.append(ref)
                now_favorite = True
            self.refresh(ref)
        return now_favorite

    def reorder_favorite(self, ref: RoomRef, direction) -> bool:
        """Move a favorite one step up or down the manual order.

        Favorites whose room is not loaded (yet) are stepped over.

        Args:
            ref: Favorite to move
            direction: 'up'/'down' or -1/+1

        Returns:
            False if the favorite is already at that edge

        Raises:
            NotFavorite: ``ref`` is not a favorite
        """
        step = {'up': -1, 'down': 1}.get(direction, direction)
        if step not in (-1, 1):
            raise ValueError(f'Invalid direction: {direction!r}')
        with self._lock:
            if ref not in self._favorites:
                raise NotFavorite(f'{ref} is not a favorite', account_id=ref.account_id)
            idx = self._favorites.index(ref)
            target = idx + step
            while 0 <= target < len(self._favorites) and self._favorites[target] not in self._entries:
                target += step
            if target < 0 or target >= len(self._favorites):
                return False
            self._favorites[idx], self._favorites[target] = self._favorites[target], self._favorites[idx]
            return True
