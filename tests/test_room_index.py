"""
Unified Room Index Tests
"""
import threading
import time

import pytest

from multisync.errors import NotFavorite, UnknownRoom
from multisync.models.events import AccountRemoved, MessageReceived, RoomLeft, RoomUpdated
from multisync.models.room import EventKind, Room, RoomRef, TimelineEvent
from multisync.services.sync.room_index import SORT_ALPHA, SORT_RECENT, SORT_UNREAD, UnifiedRoomIndex

A = '@alice:example.org'
B = '@bob:other.org'


class Rooms:
    """Stand-in for the account sessions the index resolves against."""

    def __init__(self):
        self.rooms = {}

    def add(self, account, room_id, name, unread=0, last_activity=0):
        room = Room(room_id=room_id, account_id=account, name=name, unread=unread, last_activity=last_activity)
        self.rooms[room.ref] = room
        return room.ref

    def resolve(self, ref):
        room = self.rooms.get(ref)
        return room.copy() if room else None


@pytest.fixture
def rooms():
    return Rooms()


@pytest.fixture
def index(rooms):
    return UnifiedRoomIndex(rooms.resolve, lambda account: account, sort_mode=SORT_UNREAD)


def names(entries):
    return [e.name for e in entries]


def announce(index, ref):
    index.on_event(RoomUpdated(ref.account_id, ref.room_id, ('created',)))


class TestOrdering:
    """Tests for sort modes and incremental updates."""

    def test_sort_modes(self, rooms, index):
        for ref in (
            rooms.add(A, '!1:x', 'Beta', unread=0, last_activity=300),
            rooms.add(B, '!2:y', 'alpha', unread=5, last_activity=100),
            rooms.add(A, '!3:x', 'Gamma', unread=2, last_activity=200),
        ):
            announce(index, ref)

        assert names(index.get_unified_rooms()) == ['alpha', 'Gamma', 'Beta']
        assert names(index.get_unified_rooms(SORT_RECENT)) == ['Beta', 'Gamma', 'alpha']
        assert names(index.get_unified_rooms(SORT_ALPHA)) == ['alpha', 'Beta', 'Gamma']

    def test_event_repositions_only_that_room(self, rooms, index):
        first = rooms.add(A, '!1:x', 'One', unread=1)
        second = rooms.add(A, '!2:x', 'Two', unread=3)
        announce(index, first)
        announce(index, second)

        rooms.rooms[first].unread = 9
        index.on_event(MessageReceived(A, '!1:x', TimelineEvent('$e', B, EventKind.MESSAGE, body='hi')))

        assert names(index.get_unified_rooms()) == ['One', 'Two']

    def test_concurrent_refreshes_keep_latest_order(self, rooms, index):
        stale = rooms.add(A, '!r:x', 'R', unread=5)
        other = rooms.add(A, '!o:x', 'O', unread=1)
        announce(index, other)

        # The sync thread resolves unread=5 and stalls before placing it
        resolved = threading.Event()
        gate = threading.Event()
        resolve = rooms.resolve

        def slow_resolve(ref):
            room = resolve(ref)
            if ref == stale and not gate.is_set():
                resolved.set()
                gate.wait(5)
            return room

        index._resolve_room = slow_resolve
        sync_thread = threading.Thread(target=index.refresh, args=(stale,))
        sync_thread.start()
        assert resolved.wait(5)

        # Meanwhile a read receipt clears the unread count and refreshes too
        rooms.rooms[stale].unread = 0
        receipt_thread = threading.Thread(target=index.refresh, args=(stale,))
        receipt_thread.start()
        time.sleep(0.05)
        gate.set()
        sync_thread.join(5)
        receipt_thread.join(5)

        entries = index.get_unified_rooms()
        assert names(entries) == ['O', 'R']
        assert [e.unread for e in entries] == [1, 0]

    def test_same_room_two_accounts_are_separate_entries(self, rooms, index):
        announce(index, rooms.add(A, '!shared:x', 'Shared'))
        announce(index, rooms.add(B, '!shared:x', 'Shared'))

        entries = index.get_unified_rooms()
        assert [e.account_id for e in entries] == sorted([A, B])
        assert len(index) == 2

    def test_entries_re_resolve_on_access(self, rooms, index):
        ref = rooms.add(A, '!1:x', 'Old name')
        announce(index, ref)
        rooms.rooms[ref].name = 'New name'

        assert names(index.get_unified_rooms()) == ['New name']

        del rooms.rooms[ref]
        assert index.get_unified_rooms() == []

    def test_room_left_and_account_removed(self, rooms, index):
        a1 = rooms.add(A, '!1:x', 'One')
        a2 = rooms.add(A, '!2:x', 'Two')
        b1 = rooms.add(B, '!3:y', 'Three')
        for ref in (a1, a2, b1):
            announce(index, ref)
        index.toggle_favorite(a2)

        index.on_event(RoomLeft(A, '!1:x'))
        assert names(index.get_unified_rooms()) == ['Two', 'Three']

        index.on_event(AccountRemoved(A))
        assert names(index.get_unified_rooms()) == ['Three']
        assert index.favorites == []

    def test_unknown_sort_mode(self, index):
        with pytest.raises(ValueError):
            index.set_sort_mode('random')

    def test_set_sort_mode(self, rooms, index):
        announce(index, rooms.add(A, '!1:x', 'b', unread=9))
        announce(index, rooms.add(A, '!2:x', 'a', unread=0))

        index.set_sort_mode(SORT_ALPHA)

        assert index.sort_mode == SORT_ALPHA
        assert names(index.get_unified_rooms()) == ['a', 'b']


class TestFavorites:
    """Tests for favorites and their manual order."""

    def test_favorites_first_in_manual_order(self, rooms, index):
        refs = [rooms.add(A, f'!{n}:x', name, unread=n) for n, name in enumerate(['w', 'x', 'y', 'z'])]
        for ref in refs:
            announce(index, ref)

        assert index.toggle_favorite(refs[0]) is True
        assert index.toggle_favorite(refs[2]) is True

        entries = index.get_unified_rooms()
        assert names(entries) == ['w', 'y', 'z', 'x']
        assert [e.favorite for e in entries] == [True, True, False, False]

    def test_toggle_appends_without_reordering(self, rooms, index):
        refs = [rooms.add(A, f'!{n}:x', name) for n, name in enumerate(['a', 'b', 'c'])]
        for ref in refs:
            announce(index, ref)
        index.toggle_favorite(refs[2])
        index.toggle_favorite(refs[0])

        index.toggle_favorite(refs[1])

        assert index.favorites == [refs[2], refs[0], refs[1]]

    def test_untoggle_returns_room_to_sorted_part(self, rooms, index):
        ref = rooms.add(A, '!1:x', 'a')
        announce(index, ref)
        index.toggle_favorite(ref)

        assert index.toggle_favorite(ref) is False
        assert index.is_favorite(ref) is False
        assert names(index.get_unified_rooms()) == ['a']

    def test_reorder(self, rooms, index):
        refs = [rooms.add(A, f'!{n}:x', name) for n, name in enumerate(['a', 'b', 'c'])]
        for ref in refs:
            announce(index, ref)
            index.toggle_favorite(ref)

        assert index.reorder_favorite(refs[2], 'up') is True
        assert index.favorites == [refs[0], refs[2], refs[1]]
        assert index.reorder_favorite(refs[0], -1) is False
        assert index.reorder_favorite(refs[1], 'down') is False

    def test_favorite_requires_a_known_room(self, rooms, index):
        with pytest.raises(UnknownRoom):
            index.toggle_favorite(RoomRef(A, '!missing:x'))
        assert index.favorites == []

    def test_reorder_steps_over_unloaded_favorites(self, rooms):
        hidden = RoomRef(A, '!hidden:x')
        first = rooms.add(A, '!1:x', 'a')
        second = rooms.add(A, '!2:x', 'b')
        index = UnifiedRoomIndex(rooms.resolve, lambda a: a, favorites=[first, hidden, second])
        announce(index, first)
        announce(index, second)

        assert index.reorder_favorite(second, 'up') is True
        assert index.favorites == [second, hidden, first]
        assert names(index.get_unified_rooms()) == ['b', 'a']
        assert index.reorder_favorite(first, 'down') is False

    def test_leaving_a_room_drops_its_favorite(self, rooms, index):
        ref = rooms.add(A, '!1:x', 'a')
        announce(index, ref)
        index.toggle_favorite(ref)

        index.on_event(RoomLeft(A, '!1:x'))

        assert index.favorites == []

    def test_reorder_non_favorite(self, rooms, index):
        ref = rooms.add(A, '!1:x', 'a')
        announce(index, ref)
        with pytest.raises(NotFavorite):
            index.reorder_favorite(ref, 'up')

    def test_persisted_favorites_apply_once_rooms_appear(self, rooms):
        ref = RoomRef(A, '!1:x')
        index = UnifiedRoomIndex(rooms.resolve, lambda a: a, favorites=[ref])
        assert index.get_unified_rooms() == []

        rooms.add(A, '!1:x', 'later')
        announce(index, ref)

        assert index.get_unified_rooms()[0].favorite is True


class TestSearch:
    """Tests for fuzzy search."""

    def test_ranked_by_score_then_base_order(self, rooms, index):
        announce(index, rooms.add(A, '!1:x', 'General', unread=1))
        announce(index, rooms.add(A, '!2:x', 'Gaming news', unread=5))
        announce(index, rooms.add(A, '!3:x', 'Random'))

        results = names(index.search('gen'))

        assert results[0] == 'General'
        assert 'Random' not in results

    def test_matches_account_label(self, rooms, index):
        announce(index, rooms.add(B, '!1:y', 'Lobby'))
        announce(index, rooms.add(A, '!2:x', 'Lounge'))

        assert names(index.search('bob')) == ['Lobby']

    def test_results_are_lazy_and_restartable(self, rooms, index):
        search = index.search('room')
        announce(index, rooms.add(A, '!1:x', 'Room one'))

        assert names(search) == ['Room one']
        assert names(search) == ['Room one']
        assert search.first().name == 'Room one'

    def test_typo_tolerance(self, rooms, index):
        announce(index, rooms.add(A, '!1:x', 'general'))
        assert index.search('genreal').first().name == 'general'

    def test_empty_query_returns_everything_in_base_order(self, rooms, index):
        announce(index, rooms.add(A, '!1:x', 'b', unread=1))
        announce(index, rooms.add(A, '!2:x', 'a', unread=0))
        assert names(index.search('')) == ['b', 'a']
