"""
Sync Log Collector - Per-account record of sync issues

Tracks what went wrong while syncing one account (network blips, rejected
tokens, undecryptable events, edits for unknown events, failed media) so
the presentation layer can show diagnostics without parsing log files.
"""
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from ...utils.logger import get_logger

logger = get_logger('log_collector')


class SyncLogCollector:
    """Sync issue collector for one account.

    Example:
        >>> collector = SyncLogCollector(account_id='@alice:example.org')
        >>> collector.add_issue(SyncLogCollector.TYPE_NETWORK_ERROR, message='timed out')
        >>> collector.record_batch(events=3)
        >>> collector.get_summary()['network_error']
        1
    """

    # Issue type constants
    TYPE_NETWORK_ERROR = 'network_error'        # Sync request failed
    TYPE_AUTH_ERROR = 'auth_error'              # Token rejected
    TYPE_DECRYPTION_PENDING = 'decryption_pending'  # Event stored undecrypted
    TYPE_KEY_FETCH_FAILED = 'key_fetch_failed'  # Key backup download failed
    TYPE_STATE_INVARIANT = 'state_invariant'    # Mutation for an unknown event
    TYPE_MEDIA_FAILED = 'media_failed'          # Media download failure
    TYPE_UNEXPECTED = 'unexpected'              # Unclassified exception

    _COUNTED = (
        TYPE_NETWORK_ERROR,
        TYPE_AUTH_ERROR,
        TYPE_DECRYPTION_PENDING,
        TYPE_KEY_FETCH_FAILED,
        TYPE_STATE_INVARIANT,
        TYPE_MEDIA_FAILED,
        TYPE_UNEXPECTED,
    )

    # Maximum issues to store (prevent memory bloat)
    MAX_ISSUES = 500

    # Maximum message length
    MAX_MESSAGE_LENGTH = 500

    def __init__(self, account_id: str):
        """
        Args:
            account_id: The account this collector is tracking
        """
        self.account_id = account_id
        self.issues: List[Dict] = []
        self.summary = {name: 0 for name in self._COUNTED}
        self.summary.update({'batches': 0, 'events': 0, 'backfills': 0})
        self._lock = threading.Lock()

    def add_issue(
        self,
        issue_type: str,
        room_id: Optional[str] = None,
        event_id: Optional[str] = None,
        message: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None
    ) -> None:
        """Add an issue record.

        Args:
            issue_type: Type of issue (use TYPE_* constants)
            room_id: Related room
            event_id: Related event
            message: Error message (truncated to MAX_MESSAGE_LENGTH)
            extra: Additional context data
        """
        with self._lock:
            issue = {
                'type': issue_type,
                'time': datetime.utcnow().isoformat() + 'Z',
            }
            if room_id:
                issue['room_id'] = room_id
            if event_id:
                issue['event_id'] = event_id
            if message:
                issue['message'] = message[:self.MAX_MESSAGE_LENGTH]
            if extra:
                issue['extra'] = extra

            # Keep the newest issues once full
            if len(self.issues) >= self.MAX_ISSUES:
                self.issues.pop(0)
            self.issues.append(issue)

            if issue_type in self.summary:
                self.summary[issue_type] += 1

    def record_batch(self, events: int) -> None:
        """Record one applied sync batch."""
        with self._lock:
            self.summary['batches'] += 1
            self.summary['events'] += events

    def record_backfill(self) -> None:
        with self._lock:
            self.summary['backfills'] += 1

    def get_summary(self) -> Dict:
        with self._lock:
            return self.summary.copy()

    def get_issues(self, limit: Optional[int] = None) -> List[Dict]:
        with self._lock:
            if limit is None:
                return list(self.issues)
            return self.issues[-limit:]
