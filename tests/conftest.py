"""
Pytest Configuration and Fixtures

This module provides shared fixtures for all tests: a scriptable protocol
adapter, an in-memory store and sample delta batches.
"""
import os
import sys
import threading
import time
from collections import deque

import pytest

# Add package root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from multisync.config import TestingConfig
from multisync.errors import AuthError, DecryptionError, MediaError, NetworkError
from multisync.protocol import (
    RAW_MESSAGE,
    RAW_REACTION,
    HistoryPage,
    ProtocolAdapter,
    RawEvent,
    RoomDelta,
    SasSession,
    SessionHandle,
    SyncResponse,
)
from multisync.services.account_session import AccountSession
from multisync.services.store import SessionStore
from multisync.utils.crypto import TokenCrypto
from multisync.utils.validators import normalize_user_id


class FakeSas(SasSession):
    """Emoji verification double."""

    def __init__(self, emojis=None, confirms=True, flow_id='flow1'):
        self.flow_id = flow_id
        self._emojis = emojis or [('🐶', 'Dog'), ('🔑', 'Key'), ('🎸', 'Guitar')]
        self.confirms = confirms
        self.confirmed = False
        self.cancelled = False

    def emojis(self):
        return list(self._emojis)

    def confirm(self):
        self.confirmed = True
        return self.confirms

    def cancel(self):
        self.cancelled = True


class FakeAdapter(ProtocolAdapter):
    """Scriptable protocol adapter.

    ``script`` holds SyncResponses or exceptions returned/raised by
    successive ``sync`` calls. Once it is empty, ``sync`` raises
    ``idle_error`` if set, else idles for the timeout and returns an empty
    batch. ``stop_when_exhausted`` is set as the last item is handed out.
    """

    def __init__(self, user_id='@alice:example.org', homeserver='https://example.org'):
        self.user_id = user_id
        self.homeserver = homeserver
        self.script = deque()
        self.stop_when_exhausted = None
        self.idle_error = None
        self.sync_cursors = []
        self.plaintexts = {}
        self.key_backup = {}
        self.key_fetches = []
        self.history = {}
        self.history_requests = []
        self.sent = []
        self.receipts = []
        self.room_state = []
        self.valid_secret = b'EsTc good key'
        self.seen_secrets = []
        self.recovery_error = None
        self.sas = FakeSas()
        self.sas_error = None
        self.accepted = []
        self.media = {}
        self.media_gate = None
        self.downloads = []
        self.reject_login = False
        self.reject_token = False
        self.logged_out = False
        self.closed = 0
        self.connected = True
        self.lifecycle = []
        self.created_rooms = []
        self.invites = []
        self.left = []
        self.forgotten = []
        self.uploads = []
        self.display_name = 'Alice'
        self.avatar_url = None

    def _connect(self):
        # close() drops the connection; the next call reopens it
        if not self.connected:
            self.connected = True
            self.lifecycle.append('reopen')

    def login(self, homeserver, username, password):
        if self.reject_login or password == 'wrong':
            raise AuthError('Invalid username or password')
        return SessionHandle(
            homeserver=homeserver,
            user_id=normalize_user_id(username, homeserver),
            device_id='DEVICE1',
            access_token='syt_secret_token_value',
        )

    def restore_session(self, handle):
        if self.reject_token:
            raise AuthError('M_UNKNOWN_TOKEN')

    def sync(self, cursor, timeout_ms):
        self._connect()
        self.sync_cursors.append(cursor)
        if self.script:
            item = self.script.popleft()
            if not self.script and self.stop_when_exhausted is not None:
                self.stop_when_exhausted.set()
            if isinstance(item, Exception):
                time.sleep(0.001)
                raise item
            return item
        if self.idle_error is not None:
            time.sleep(0.001)
            raise self.idle_error
        time.sleep(timeout_ms / 1000.0)
        return SyncResponse(next_batch=cursor or 'idle')

    def fetch_history(self, room_id, from_token, limit):
        self.history_requests.append((room_id, from_token, limit))
        return self.history.get((room_id, from_token), HistoryPage(events=[], end=None))

    def decrypt_event(self, room_id, event):
        if event.event_id in self.plaintexts:
            return self.plaintexts[event.event_id]
        raise DecryptionError(f'No session key for {event.event_id}')

    def fetch_room_keys(self, room_id):
        self.key_fetches.append(room_id)
        if not self.key_backup:
            return False
        self.plaintexts.update(self.key_backup)
        self.key_backup = {}
        return True

    def send_message(self, room_id, content):
        self.sent.append((room_id, dict(content)))
        return f'$sent{len(self.sent)}'

    def send_read_receipt(self, room_id, event_id):
        self.receipts.append((room_id, event_id))

    def set_room_state(self, room_id, name=None, topic=None):
        self.room_state.append((room_id, name, topic))

    def create_room(self, name, topic, is_public, encrypted, invite):
        self.created_rooms.append((name, topic, is_public, encrypted, list(invite)))
        return f'!new{len(self.created_rooms)}:example.org'

    def invite_user(self, room_id, user_id):
        self.invites.append((room_id, user_id))

    def leave_room(self, room_id):
        self.left.append(room_id)

    def forget_room(self, room_id):
        self.forgotten.append(room_id)

    def upload_media(self, data, mimetype, filename):
        self.uploads.append((bytes(data), mimetype, filename))
        return f'mxc://example.org/upload{len(self.uploads)}'

    def get_display_name(self):
        return self.display_name

    def set_display_name(self, name):
        self.display_name = name

    def get_avatar_url(self):
        return self.avatar_url

    def set_avatar_url(self, content_uri):
        self.avatar_url = content_uri

    def fetch_recovery_backup(self, secret):
        self.seen_secrets.append(bytes(secret))
        if self.recovery_error is not None:
            raise self.recovery_error
        return bytes(secret) == self.valid_secret

    def start_sas_verification(self, device_id):
        if self.sas_error is not None:
            raise self.sas_error
        return self.sas

    def accept_verification(self, user_id, flow_id):
        self.accepted.append((user_id, flow_id))
        return self.sas

    def download_media(self, content_uri):
        self.downloads.append(content_uri)
        if self.media_gate is not None:
            self.media_gate.wait(5)
        if content_uri not in self.media:
            raise MediaError(f'404 for {content_uri}')
        return self.media[content_uri]

    def logout(self):
        self._connect()
        self.logged_out = True
        self.lifecycle.append('logout')

    def close(self):
        self.closed += 1
        self.connected = False
        self.lifecycle.append('close')


# ==================== Builders ====================

def message(event_id, sender='@bob:example.org', body='hello', ts=1000, **content):
    data = {'msgtype': 'text', 'body': body}
    data.update(content)
    return RawEvent(event_id=event_id, sender=sender, kind=RAW_MESSAGE, content=data, timestamp=ts)


def reaction(event_id, target, key='👍', sender='@bob:example.org'):
    return RawEvent(event_id=event_id, sender=sender, kind=RAW_REACTION, content={'key': key}, relates_to=target)


def encrypted(event_id, sender='@bob:example.org', ts=1000):
    return RawEvent(event_id=event_id, sender=sender, content={'ciphertext': 'AwgAEp...'}, timestamp=ts, encrypted=True)


def batch(next_batch, *deltas, **kwargs):
    return SyncResponse(next_batch=next_batch, rooms=list(deltas), **kwargs)


def wait_for(predicate, timeout=5.0):
    """Poll ``predicate`` until it holds or the timeout passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


# ==================== Fixtures ====================

@pytest.fixture
def config():
    return TestingConfig


@pytest.fixture
def crypto():
    return TokenCrypto(TokenCrypto.generate_key())


@pytest.fixture
def store(crypto):
    """In-memory session store."""
    return SessionStore(TestingConfig.DATABASE_URL, crypto)


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest.fixture
def published():
    return []


@pytest.fixture
def make_session(config, published):
    """Build AccountSessions that publish into the shared ``published`` list."""
    sessions = []
    lock = threading.Lock()

    def publish(event):
        with lock:
            published.append(event)

    def factory(adapter, store=None):
        handle = SessionHandle(
            homeserver=adapter.homeserver,
            user_id=adapter.user_id,
            device_id='DEVICE1',
            access_token='syt_secret_token_value',
        )
        session = AccountSession(handle, adapter, config, publish, store=store)
        sessions.append(session)
        return session

    yield factory
    for session in sessions:
        session.stop(timeout=2)


@pytest.fixture
def session(make_session, adapter):
    return make_session(adapter)


@pytest.fixture
def sample_room_delta():
    """A room with a name, two members and one message."""
    return RoomDelta(
        room_id='!r123:example.org',
        name='General',
        members=['@alice:example.org', '@bob:example.org'],
        timeline=[message('$m1', body='first')],
        prev_batch='t_prev_1',
    )
