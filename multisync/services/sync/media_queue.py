"""
Media Pipeline - bounded-concurrency media downloads with dedupe and cancellation

Downloads run on a small thread pool; excess requests wait in Queued.
Bytes are kept in memory only while some view holds a reference; nothing
is cached on disk.
"""
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from ...errors import MediaError
from ...models.events import DomainEvent, MediaFailed, MediaReady
from ...utils.logger import get_logger

logger = get_logger('media_queue')

Fetcher = Callable[[str], Tuple[bytes, str]]


class MediaStatus(str, Enum):
    QUEUED = 'queued'
    DOWNLOADING = 'downloading'
    READY = 'ready'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


_ACTIVE = (MediaStatus.QUEUED, MediaStatus.DOWNLOADING)


@dataclass(frozen=True)
class MediaTarget:
    account_id: str
    room_id: str
    event_id: str


class MediaRequest:
    """Download state of one content reference, shared by all requesters."""

    def __init__(self, content_uri: str, byte_budget: int):
        self.content_uri = content_uri
        self.byte_budget = byte_budget
        self.status = MediaStatus.QUEUED
        self.future: Future = Future()
        self.targets: List[MediaTarget] = []
        self.waiters = 0
        self.data: Optional[bytes] = None
        self.mimetype: Optional[str] = None
        self.error: Optional[str] = None
        self.worker: Optional[Future] = None

    def to_dict(self) -> Dict:
        return {
            'content_uri': self.content_uri,
            'status': self.status.value,
            'waiters': self.waiters,
            'size': len(self.data) if self.data is not None else None,
            'mimetype': self.mimetype,
            'error': self.error,
        }


class MediaPipeline:
    """Media download queue shared by all accounts.

    Example:
        >>> pipeline = MediaPipeline(max_concurrent=4, publish=dispatcher.publish)
        >>> future = pipeline.request('mxc://x.org/abc', adapter.download_media, '@a:x.org', '!r:x.org', '$e')
        >>> data = future.result()
        >>> pipeline.release('mxc://x.org/abc')  # view closed, bytes dropped
    """

    MAX_WORKERS = 4
    BYTE_BUDGET = 20 * 1024 * 1024

    def __init__(
        self,
        max_concurrent: int = MAX_WORKERS,
        byte_budget: int = BYTE_BUDGET,
        publish: Optional[Callable[[DomainEvent], None]] = None
    ):
        self.max_concurrent = max_concurrent
        self.byte_budget = byte_budget
        self._publish = publish
        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrent,
            thread_name_prefix='media_dl'
        )
        self._requests: Dict[str, MediaRequest] = {}
        self._lock = threading.Lock()
        self._stats = {'submitted': 0, 'deduplicated': 0, 'completed': 0, 'failed': 0, 'cancelled': 0}
        logger.info(f"[MediaPipeline] Initialized with {max_concurrent} workers")

    def request(
        self,
        content_uri: str,
        fetch: Fetcher,
        account_id: str,
        room_id: str,
        event_id: str,
        byte_budget: Optional[int] = None
    ) -> Future:
        """Request media bytes.

        A request for a reference that is already queued, downloading or held
        attaches to that result instead of downloading again.

        Returns:
            Future resolving to the bytes, or raising MediaError
        """
        if not content_uri:
            raise MediaError('Empty content reference', account_id=account_id)
        target = MediaTarget(account_id, room_id, event_id)
        with self._lock:
            existing = self._requests.get(content_uri)
            if existing is not None and (existing.status in _ACTIVE or existing.status == MediaStatus.READY):
                existing.waiters += 1
                if target not in existing.targets:
                    existing.targets.append(target)
                self._stats['deduplicated'] += 1
                return existing.future

            req = MediaRequest(content_uri, byte_budget or self.byte_budget)
            req.waiters = 1
            req.targets.append(target)
            self._requests[content_uri] = req
            self._stats['submitted'] += 1
            req.worker = self._executor.submit(self._download, req, fetch)
            return req.future

    def _download(self, req: MediaRequest, fetch: Fetcher) -> None:
        """Worker body: fetch, enforce the byte budget, resolve the shared future."""
        with self._lock:
            if req.status != MediaStatus.QUEUED:
                return
            req.status = MediaStatus.DOWNLOADING

        data = mimetype = None
        error = None
        try:
            data, mimetype = fetch(req.content_uri)
            if data is None:
                raise MediaError('Empty media response')
            if len(data) > req.byte_budget:
                raise MediaError(f'Media exceeds byte budget ({len(data)} > {req.byte_budget})')
        except Exception as e:
            error = str(e) or type(e).__name__
            data = None

        with self._lock:
            if req.status == MediaStatus.CANCELLED:
                return
            targets = list(req.targets)
            if error is None:
                req.status = MediaStatus.READY
                req.data = data
                req.mimetype = mimetype or 'application/octet-stream'
                self._stats['completed'] += 1
            else:
                req.status = MediaStatus.FAILED
                req.error = error
                # Forget failed requests so a later request retries
                if self._requests.get(req.content_uri) is req:
                    del self._requests[req.content_uri]
                self._stats['failed'] += 1

        if error is None:
            logger.debug(f"[MediaPipeline] Downloaded {req.content_uri} ({len(data)} bytes)")
            req.future.set_result(data)
            events = [
                MediaReady(t.account_id, t.room_id, t.event_id, req.content_uri, req.mimetype, len(data))
                for t in targets
            ]
        else:
            logger.warning(f"[MediaPipeline] Download failed for {req.content_uri}: {error}")
            req.future.set_exception(MediaError(error, account_id=targets[0].account_id if targets else None))
            events = [MediaFailed(t.account_id, t.room_id, t.event_id, req.content_uri, error) for t in targets]
        if self._publish is not None:
            for event in events:
                self._publish(event)

    def cancel(self, content_uri: str) -> bool:
        """Cancel a queued or running download.

        Only takes effect when no other requester is attached; otherwise it is
        a no-op.

        Returns:
            True if the download was cancelled
        """
        with self._lock:
            req = self._requests.get(content_uri)
            if req is None or req.status not in _ACTIVE or req.waiters > 1:
                return False
            self._cancel_locked(req)
        return True

    def _cancel_locked(self, req: MediaRequest) -> None:
        req.status = MediaStatus.CANCELLED
        req.waiters = 0
        if req.worker is not None:
            req.worker.cancel()
        req.future.cancel()
        if self._requests.get(req.content_uri) is req:
            del self._requests[req.content_uri]
        self._stats['cancelled'] += 1
        logger.debug(f"[MediaPipeline] Cancelled {req.content_uri}")

    def release(self, content_uri: str) -> bool:
        """Drop one reference to downloaded bytes; the last release frees them."""
        with self._lock:
            req = self._requests.get(content_uri)
            if req is None or req.status != MediaStatus.READY:
                return False
            req.waiters -= 1
            if req.waiters <= 0:
                req.data = None
                del self._requests[content_uri]
            return True

    def cancel_account(self, account_id: str, release_ready: bool = True) -> int:
        """Cancel everything requested only on behalf of ``account_id``.

        Downloaded bytes are freed as well unless ``release_ready`` is False.
        """
        count = 0
        with self._lock:
            for req in list(self._requests.values()):
                if not req.targets or any(t.account_id != account_id for t in req.targets):
                    continue
                if req.status in _ACTIVE:
                    self._cancel_locked(req)
                    count += 1
                elif release_ready and req.status == MediaStatus.READY:
                    req.data = None
                    del self._requests[req.content_uri]
        return count

    def status(self, content_uri: str) -> Optional[MediaStatus]:
        with self._lock:
            req = self._requests.get(content_uri)
            return req.status if req else None

    def get(self, content_uri: str) -> Optional[Dict]:
        with self._lock:
            req = self._requests.get(content_uri)
            return req.to_dict() if req else None

    def held_bytes(self) -> int:
        with self._lock:
            return sum(len(r.data) for r in self._requests.values() if r.data is not None)

    def get_stats(self) -> Dict:
        """Get queue statistics including pending count."""
        with self._lock:
            stats = dict(self._stats)
            stats['pending'] = sum(1 for r in self._requests.values() if r.status in _ACTIVE)
            return stats

    def shutdown(self, wait: bool = True) -> None:
        """Cancel queued downloads and stop the pool."""
        with self._lock:
            for req in list(self._requests.values()):
                if req.status == MediaStatus.QUEUED:
                    self._cancel_locked(req)
        self._executor.shutdown(wait=wait)
        logger.info("[MediaPipeline] Thread pool shutdown")
