"""
Sync Module - per-account sync and cross-account aggregation

This package contains the sync components:
- engine: Per-account poll-and-merge loop
- timeline: Per-room ordered event log
- room_index: Cross-account room ordering, favorites and search
- dispatcher: Merged, non-blocking domain event feed
- verification: Recovery-key and emoji verification state machine
- media_queue: Bounded-concurrency media downloads
- delay_manager: Sync retry backoff
- log_collector: Per-account sync diagnostics
"""
from .delay_manager import BackoffManager
from .log_collector import SyncLogCollector
from .timeline import RoomTimelineStore
from .engine import SyncEngine
from .dispatcher import EventDispatcher
from .room_index import UnifiedRoomIndex, SORT_MODES
from .verification import VerificationManager, VerificationSession, VerificationState, VerificationKind
from .media_queue import MediaPipeline, MediaStatus

__all__ = [
    'BackoffManager',
    'SyncLogCollector',
    'RoomTimelineStore',
    'SyncEngine',
    'EventDispatcher',
    'UnifiedRoomIndex',
    'SORT_MODES',
    'VerificationManager',
    'VerificationSession',
    'VerificationState',
    'VerificationKind',
    'MediaPipeline',
    'MediaStatus',
]
