"""
Event Dispatcher - single non-blocking feed of domain events from all accounts

Each account gets its own bounded buffer so a chatty account cannot push
another account's events out. Within one account, events are delivered in
the order they were published; across accounts, in arrival order.
"""
import heapq
import itertools
import threading
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Tuple

from ...models.events import DomainEvent
from ...utils.logger import get_logger

logger = get_logger('dispatcher')

Subscriber = Callable[[DomainEvent], None]


class EventDispatcher:
    """Multiplexes domain events into one consumer-facing queue.

    Backpressure: when an account's buffer is full, the oldest non-critical
    event (typing notices) is dropped first; message and state events are
    only dropped when the buffer holds nothing else. Every drop is counted.

    Subscribers (the unified room index) are called synchronously on the
    publishing thread, after the event is buffered.

    Example:
        >>> dispatcher = EventDispatcher(buffer_per_account=256)
        >>> dispatcher.publish(event)
        >>> dispatcher.poll()  # never blocks
        [event]
    """

    def __init__(self, buffer_per_account: int = 256):
        if buffer_per_account < 1:
            raise ValueError('buffer_per_account must be positive')
        self.buffer_per_account = buffer_per_account
        self._buffers: Dict[str, Deque[Tuple[int, DomainEvent]]] = {}
        self._lock = threading.Lock()
        self._seq = itertools.count()
        self._dropped: Dict[str, int] = {}

        self._subscribers: Dict[str, Subscriber] = {}
        self._sub_lock = threading.Lock()
        self._subscriber_counter = 0

    # ==================== Producers ====================

    def publish(self, event: DomainEvent) -> None:
        """Buffer an event for the consumer and notify subscribers."""
        with self._lock:
            buffer = self._buffers.setdefault(event.account_id, deque())
            if len(buffer) >= self.buffer_per_account:
                if not self._make_room(event, buffer):
                    self._count_drop(event.account_id)
                    event = None
            if event is not None:
                buffer.append((next(self._seq), event))

        if event is not None:
            self._notify(event)

    def _make_room(self, incoming: DomainEvent, buffer: Deque[Tuple[int, DomainEvent]]) -> bool:
        """Drop one buffered event to fit ``incoming``; False means drop ``incoming`` instead."""
        for idx, (_, queued) in enumerate(buffer):
            if not queued.critical:
                del buffer[idx]
                self._count_drop(incoming.account_id)
                return True
        if not incoming.critical:
            return False
        buffer.popleft()
        self._count_drop(incoming.account_id)
        logger.warning(
            f"[Dispatcher] Buffer full for {incoming.account_id}, dropped oldest state event"
        )
        return True

    def _count_drop(self, account_id: str) -> None:
        self._dropped[account_id] = self._dropped.get(account_id, 0) + 1

    def _notify(self, event: DomainEvent) -> None:
        with self._sub_lock:
            subscribers = list(self._subscribers.values())
        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.exception(f"[Dispatcher] Subscriber failed on {event.event_type}: {e}")

    # ==================== Consumer ====================

    def poll(self, max_events: Optional[int] = None) -> List[DomainEvent]:
        """Return pending events without blocking; an empty list means nothing is pending."""
        with self._lock:
            merged = heapq.merge(*self._buffers.values())
            taken = list(itertools.islice(merged, max_events)) if max_events is not None else list(merged)
            if not taken:
                return []
            taken_by_account: Dict[str, int] = {}
            for _, event in taken:
                taken_by_account[event.account_id] = taken_by_account.get(event.account_id, 0) + 1
            for account_id, count in taken_by_account.items():
                buffer = self._buffers[account_id]
                for _ in range(count):
                    buffer.popleft()
            return [event for _, event in taken]

    def pending(self, account_id: Optional[str] = None) -> int:
        with self._lock:
            if account_id is not None:
                return len(self._buffers.get(account_id, ()))
            return sum(len(b) for b in self._buffers.values())

    @property
    def dropped_count(self) -> int:
        """Total events dropped under backpressure."""
        with self._lock:
            return sum(self._dropped.values())

    def dropped_by_account(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._dropped)

    def discard_account(self, account_id: str) -> None:
        """Forget an account's buffer and counters."""
        with self._lock:
            self._buffers.pop(account_id, None)
            self._dropped.pop(account_id, None)

    # ==================== Subscribers ====================

    def subscribe(self, callback: Subscriber) -> str:
        """Register a synchronous listener; returns its subscriber id."""
        with self._sub_lock:
            self._subscriber_counter += 1
            subscriber_id = f'subscriber_{self._subscriber_counter}'
            self._subscribers[subscriber_id] = callback
        return subscriber_id

    def unsubscribe(self, subscriber_id: str) -> None:
        with self._sub_lock:
            self._subscribers.pop(subscriber_id, None)

    @property
    def subscriber_count(self) -> int:
        with self._sub_lock:
            return len(self._subscribers)
