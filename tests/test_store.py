"""
Session Store and Model Tests

Tests for persisted accounts, preferences and sync cursors.
"""
import pytest
from sqlalchemy.exc import IntegrityError

from multisync.extensions import create_session_factory
from multisync.models import Preference, SavedAccount
from multisync.models.room import RoomRef
from multisync.protocol import SessionHandle
from multisync.utils.crypto import TokenCrypto


def handle(user_id='@alice:example.org', token='syt_secret_token_value'):
    return SessionHandle(homeserver='https://example.org', user_id=user_id, device_id='DEVICE1', access_token=token)


class TestSavedAccountModel:
    """Tests for the SavedAccount table."""

    def test_token_is_encrypted_at_rest(self, crypto):
        Session = create_session_factory('sqlite:///:memory:')
        with Session() as db:
            account = SavedAccount(user_id='@alice:example.org', homeserver='https://example.org', device_id='D')
            account.set_access_token(crypto, 'syt_secret_token_value')
            db.add(account)
            db.commit()

            assert 'syt_secret' not in account.encrypted_token
            assert account.get_access_token(crypto) == 'syt_secret_token_value'
            assert 'encrypted_token' not in account.to_dict()

    def test_unique_user_id(self, crypto):
        Session = create_session_factory('sqlite:///:memory:')
        with Session() as db:
            for _ in range(2):
                account = SavedAccount(user_id='@alice:example.org', homeserver='https://example.org', device_id='D')
                account.set_access_token(crypto, 't')
                db.add(account)
            with pytest.raises(IntegrityError):
                db.commit()
            db.rollback()

    def test_preference_json_value(self):
        pref = Preference(key='favorites')
        pref.set_value(['@a:x|!r:x'])
        assert pref.get_value() == ['@a:x|!r:x']

        pref.value = 'not json'
        assert pref.get_value(default=[]) == []


class TestSessionStore:
    """Tests for SessionStore."""

    def test_save_and_load_accounts(self, store):
        store.save_account(handle())
        store.save_account(handle('@bob:other.org', token='other'))

        loaded = store.load_accounts()

        assert [h.user_id for h in loaded] == ['@alice:example.org', '@bob:other.org']
        assert loaded[0].access_token == 'syt_secret_token_value'
        assert loaded[0].device_id == 'DEVICE1'

    def test_save_replaces_by_user_id(self, store):
        store.save_account(handle(token='old'))
        store.save_account(handle(token='new'))

        loaded = store.load_accounts()
        assert len(loaded) == 1
        assert loaded[0].access_token == 'new'

    def test_token_from_other_key_is_skipped(self, store):
        store.save_account(handle())
        store.crypto = TokenCrypto(TokenCrypto.generate_key())

        assert store.load_accounts() == []

    def test_remove_account_erases_cursor(self, store):
        store.save_account(handle())
        store.save_cursor('@alice:example.org', 's42')

        assert store.remove_account('@alice:example.org') is True

        assert store.load_accounts() == []
        assert store.load_cursor('@alice:example.org') is None
        assert store.remove_account('@alice:example.org') is False

    def test_preferences_round_trip(self, store):
        assert store.load_preferences() == ([], None)

        favorites = [RoomRef('@a:x.org', '!1:x.org'), RoomRef('@b:y.org', '!2:y.org')]
        store.save_preferences(favorites, 'recent')
        store.save_preferences(favorites[::-1], 'alpha')

        assert store.load_preferences() == (favorites[::-1], 'alpha')

    def test_cursor_update(self, store):
        assert store.load_cursor('@a:x.org') is None
        store.save_cursor('@a:x.org', 's1')
        store.save_cursor('@a:x.org', 's2')
        assert store.load_cursor('@a:x.org') == 's2'
