"""
Media Pipeline Tests
"""
import threading

import pytest

from conftest import FakeAdapter, wait_for
from multisync.errors import MediaError
from multisync.models.events import MediaFailed, MediaReady
from multisync.services.sync.media_queue import MediaPipeline, MediaStatus

URI = 'mxc://example.org/cat'
A = '@alice:example.org'
B = '@bob:other.org'


@pytest.fixture
def adapter():
    adapter = FakeAdapter()
    adapter.media[URI] = (b'\x89PNG...', 'image/png')
    return adapter


@pytest.fixture
def pipeline(published):
    pipeline = MediaPipeline(max_concurrent=2, byte_budget=1024, publish=published.append)
    yield pipeline
    pipeline.shutdown(wait=True)


class TestMediaPipeline:
    """Tests for MediaPipeline."""

    def test_download_and_ready_event(self, pipeline, adapter, published):
        future = pipeline.request(URI, adapter.download_media, A, '!r:x', '$img')

        assert future.result(timeout=5) == b'\x89PNG...'
        assert pipeline.status(URI) == MediaStatus.READY
        assert wait_for(lambda: len(published) == 1)
        ready = published[0]
        assert isinstance(ready, MediaReady)
        assert ready.mimetype == 'image/png'
        assert ready.size == len(b'\x89PNG...')

    def test_concurrent_requests_share_one_download(self, pipeline, adapter, published):
        adapter.media_gate = threading.Event()

        first = pipeline.request(URI, adapter.download_media, A, '!r:x', '$img')
        second = pipeline.request(URI, adapter.download_media, B, '!s:y', '$other')
        adapter.media_gate.set()

        assert first is second
        assert first.result(timeout=5) == b'\x89PNG...'
        assert adapter.downloads == [URI]
        assert wait_for(lambda: len(published) == 2)
        assert {(e.account_id, e.event_id) for e in published} == {(A, '$img'), (B, '$other')}
        assert pipeline.get_stats()['deduplicated'] == 1

    def test_excess_requests_wait_queued(self, published):
        adapter = FakeAdapter()
        adapter.media_gate = threading.Event()
        for n in range(3):
            adapter.media[f'mxc://x/{n}'] = (b'data', 'image/png')
        pipeline = MediaPipeline(max_concurrent=1, publish=published.append)
        try:
            futures = [pipeline.request(f'mxc://x/{n}', adapter.download_media, A, '!r:x', f'${n}') for n in range(3)]
            assert wait_for(lambda: pipeline.status('mxc://x/0') == MediaStatus.DOWNLOADING)
            assert pipeline.status('mxc://x/1') == MediaStatus.QUEUED
            assert pipeline.status('mxc://x/2') == MediaStatus.QUEUED

            adapter.media_gate.set()
            assert [f.result(timeout=5) for f in futures] == [b'data'] * 3
        finally:
            pipeline.shutdown(wait=True)

    def test_failure_is_per_item(self, pipeline, adapter, published):
        future = pipeline.request('mxc://example.org/missing', adapter.download_media, A, '!r:x', '$gone')
        ok = pipeline.request(URI, adapter.download_media, A, '!r:x', '$img')

        with pytest.raises(MediaError):
            future.result(timeout=5)
        assert ok.result(timeout=5) == b'\x89PNG...'
        assert wait_for(lambda: len(published) == 2)
        failed = [e for e in published if isinstance(e, MediaFailed)]
        assert failed[0].event_id == '$gone'
        # A failed reference can be requested again
        assert pipeline.status('mxc://example.org/missing') is None

    def test_byte_budget(self, pipeline, adapter):
        adapter.media['mxc://x/big'] = (b'x' * 2048, 'video/mp4')
        future = pipeline.request('mxc://x/big', adapter.download_media, A, '!r:x', '$big')
        with pytest.raises(MediaError):
            future.result(timeout=5)

    def test_cancel_without_other_waiters(self, published):
        adapter = FakeAdapter()
        adapter.media_gate = threading.Event()
        adapter.media['mxc://x/0'] = (b'a', 'image/png')
        adapter.media['mxc://x/1'] = (b'b', 'image/png')
        pipeline = MediaPipeline(max_concurrent=1, publish=published.append)
        try:
            blocker = pipeline.request('mxc://x/0', adapter.download_media, A, '!r:x', '$0')
            queued = pipeline.request('mxc://x/1', adapter.download_media, A, '!r:x', '$1')

            assert pipeline.cancel('mxc://x/1') is True
            assert queued.cancelled()
            adapter.media_gate.set()
            assert blocker.result(timeout=5) == b'a'
            assert adapter.downloads == ['mxc://x/0']
        finally:
            pipeline.shutdown(wait=True)

    def test_cancel_with_other_waiter_is_noop(self, pipeline, adapter):
        adapter.media_gate = threading.Event()
        future = pipeline.request(URI, adapter.download_media, A, '!r:x', '$img')
        pipeline.request(URI, adapter.download_media, B, '!s:y', '$other')

        assert pipeline.cancel(URI) is False
        adapter.media_gate.set()
        assert future.result(timeout=5) == b'\x89PNG...'

    def test_release_drops_bytes_when_unreferenced(self, pipeline, adapter):
        pipeline.request(URI, adapter.download_media, A, '!r:x', '$img').result(timeout=5)
        pipeline.request(URI, adapter.download_media, A, '!r:x', '$img2').result(timeout=5)
        assert adapter.downloads == [URI]
        assert pipeline.held_bytes() == len(b'\x89PNG...')

        assert pipeline.release(URI) is True
        assert pipeline.held_bytes() == len(b'\x89PNG...')
        assert pipeline.release(URI) is True
        assert pipeline.held_bytes() == 0
        assert pipeline.status(URI) is None

    def test_cancel_account(self, published):
        adapter = FakeAdapter()
        adapter.media_gate = threading.Event()
        adapter.media['mxc://x/0'] = (b'a', 'image/png')
        adapter.media['mxc://x/1'] = (b'b', 'image/png')
        pipeline = MediaPipeline(max_concurrent=1, publish=published.append)
        try:
            mine = pipeline.request('mxc://x/1', adapter.download_media, A, '!r:x', '$1')
            theirs = pipeline.request('mxc://x/0', adapter.download_media, B, '!s:y', '$0')

            assert pipeline.cancel_account(A) == 1
            adapter.media_gate.set()

            assert mine.cancelled()
            assert theirs.result(timeout=5) == b'a'
            assert wait_for(lambda: len(published) == 1)
            assert all(e.account_id == B for e in published)
        finally:
            pipeline.shutdown(wait=True)
