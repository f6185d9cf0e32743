"""
Session Store - persisted accounts, preferences and sync cursors

Backed by SQLAlchemy. Access tokens are Fernet-encrypted before they are
written and decrypted only when a session is restored. The store is the
only component that knows the on-disk layout.
"""
import threading
from typing import List, Optional, Tuple

from ..extensions import create_session_factory
from ..models.account import SavedAccount
from ..models.preference import Preference, SyncCursor
from ..models.room import RoomRef
from ..protocol import SessionHandle
from ..utils.crypto import TokenCrypto
from ..utils.logger import get_logger

logger = get_logger('store')

PREF_FAVORITES = 'favorites'
PREF_ROOM_SORT = 'room_sort'


class SessionStore:
    """Load/save capability for everything that outlives the process.

    Example:
        >>> store = SessionStore('sqlite:///:memory:', TokenCrypto(TokenCrypto.generate_key()))
        >>> store.save_account(handle)
        >>> [h.user_id for h in store.load_accounts()]
        ['@alice:example.org']
    """

    def __init__(self, database_url: str, crypto: TokenCrypto):
        self.crypto = crypto
        self._Session = create_session_factory(database_url)
        self._lock = threading.Lock()

    # ==================== Accounts ====================

    def load_accounts(self) -> List[SessionHandle]:
        """Persisted sessions whose token can still be decrypted."""
        handles = []
        with self._lock, self._Session() as db:
            for saved in db.query(SavedAccount).order_by(SavedAccount.id).all():
                token = saved.get_access_token(self.crypto)
                if token is None:
                    logger.warning(f"[Store] Token of {saved.user_id} cannot be decrypted; skipping")
                    continue
                handles.append(SessionHandle(
                    homeserver=saved.homeserver,
                    user_id=saved.user_id,
                    device_id=saved.device_id,
                    access_token=token,
                ))
        return handles

    def save_account(self, handle: SessionHandle) -> None:
        """Insert or replace the saved session of ``handle.user_id``."""
        with self._lock, self._Session() as db:
            saved = db.query(SavedAccount).filter_by(user_id=handle.user_id).first()
            if saved is None:
                saved = SavedAccount(user_id=handle.user_id)
                db.add(saved)
            saved.homeserver = handle.homeserver
            saved.device_id = handle.device_id
            saved.set_access_token(self.crypto, handle.access_token)
            db.commit()
        logger.info(f"[Store] Saved session for {handle.user_id}")

    def remove_account(self, user_id: str) -> bool:
        """Erase an account's token and sync cursor."""
        with self._lock, self._Session() as db:
            deleted = db.query(SavedAccount).filter_by(user_id=user_id).delete()
            db.query(SyncCursor).filter_by(user_id=user_id).delete()
            db.commit()
        logger.info(f"[Store] Removed session for {user_id}")
        return bool(deleted)

    # ==================== Preferences ====================

    def load_preferences(self) -> Tuple[List[RoomRef], Optional[str]]:
        """Favorites (manual order) and the room sort mode."""
        with self._lock, self._Session() as db:
            rows = {p.key: p for p in db.query(Preference).all()}
            raw_favorites = rows[PREF_FAVORITES].get_value([]) if PREF_FAVORITES in rows else []
            sort_mode = rows[PREF_ROOM_SORT].get_value() if PREF_ROOM_SORT in rows else None

        favorites = []
        for value in raw_favorites or []:
            try:
                favorites.append(RoomRef.parse(value))
            except (ValueError, AttributeError):
                logger.warning(f"[Store] Ignoring malformed favorite {value!r}")
        return favorites, sort_mode

    def save_preferences(self, favorites: List[RoomRef], sort_mode: str) -> None:
        with self._lock, self._Session() as db:
            self._set_pref(db, PREF_FAVORITES, [str(ref) for ref in favorites])
            self._set_pref(db, PREF_ROOM_SORT, sort_mode)
            db.commit()

    @staticmethod
    def _set_pref(db, key: str, value) -> None:
        pref = db.query(Preference).filter_by(key=key).first()
        if pref is None:
            pref = Preference(key=key)
            db.add(pref)
        pref.set_value(value)

    # ==================== Sync cursors ====================

    def load_cursor(self, user_id: str) -> Optional[str]:
        with self._lock, self._Session() as db:
            row = db.get(SyncCursor, user_id)
            return row.cursor if row else None

    def save_cursor(self, user_id: str, cursor: str) -> None:
        with self._lock, self._Session() as db:
            row = db.get(SyncCursor, user_id)
            if row is None:
                row = SyncCursor(user_id=user_id)
                db.add(row)
            row.cursor = cursor
            db.commit()
