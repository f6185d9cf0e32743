"""
Verification State Machine Tests
"""
import pytest

from conftest import FakeAdapter, FakeSas
from multisync.errors import UnknownVerification, VerificationError
from multisync.models.events import VerificationEmojis, VerificationStateChanged
from multisync.services.sync.verification import (
    VerificationKind,
    VerificationManager,
    VerificationSession,
    VerificationState,
)

ACCOUNT = '@alice:example.org'


class Clock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def manager(published, clock):
    return VerificationManager(published.append, timeout=60.0, retention=10.0, clock=clock)


def recorder():
    """on_change callback recording (state, secret bytes) at each transition."""
    seen = []

    def on_change(session):
        buf = session.secret_buffer
        seen.append((session.state, bytes(buf) if buf is not None else None))

    return seen, on_change


class TestRecoveryKey:
    """Tests for the recovery-key flow."""

    def test_valid_secret_verifies_and_zeroes_buffer(self):
        adapter = FakeAdapter()
        seen, on_change = recorder()
        session = VerificationSession(ACCOUNT, adapter, VerificationKind.RECOVERY_KEY, on_change=on_change)

        session.begin()
        secret = bytearray(b'EsTc good key')
        state = session.submit_secret(secret)

        assert state == VerificationState.VERIFIED
        assert [s for s, _ in seen] == [
            VerificationState.AWAITING_SECRET,
            VerificationState.VERIFYING,
            VerificationState.VERIFIED,
        ]
        # The secret was present while verifying and zero right after
        assert seen[1][1] == b'EsTc good key'
        assert seen[2][1] == bytes(len(b'EsTc good key'))
        assert adapter.seen_secrets == [b'EsTc good key']
        assert not any(secret)
        assert session.to_dict()['secret_cleared'] is True

    def test_rejected_secret_fails_and_is_not_retried(self):
        adapter = FakeAdapter()
        session = VerificationSession(ACCOUNT, adapter, VerificationKind.RECOVERY_KEY)
        session.begin()

        assert session.submit_secret('wrong key') == VerificationState.FAILED
        assert not any(session.secret_buffer)
        with pytest.raises(VerificationError):
            session.submit_secret('EsTc good key')
        assert adapter.seen_secrets == [b'wrong key']

    def test_adapter_error_fails_with_message(self):
        adapter = FakeAdapter()
        adapter.recovery_error = RuntimeError('backup unavailable')
        session = VerificationSession(ACCOUNT, adapter, VerificationKind.RECOVERY_KEY)
        session.begin()

        assert session.submit_secret(b'EsTc good key') == VerificationState.FAILED
        assert session.error == 'backup unavailable'
        assert not any(session.secret_buffer)

    def test_secret_before_begin_is_rejected_and_zeroed(self):
        session = VerificationSession(ACCOUNT, FakeAdapter(), VerificationKind.RECOVERY_KEY)
        secret = bytearray(b'too early')
        with pytest.raises(VerificationError):
            session.submit_secret(secret)
        assert not any(secret)

    def test_cancel_while_awaiting_secret(self):
        session = VerificationSession(ACCOUNT, FakeAdapter(), VerificationKind.RECOVERY_KEY)
        session.begin()
        assert session.cancel() is True
        assert session.state == VerificationState.ABANDONED
        assert session.cancel() is False


class TestSas:
    """Tests for the interactive emoji flow."""

    def test_matching_emojis_verify(self):
        adapter = FakeAdapter()
        emoji_calls = []
        session = VerificationSession(ACCOUNT, adapter, VerificationKind.SAS, on_emojis=emoji_calls.append)

        assert session.begin() == VerificationState.AWAITING_CONFIRMATION
        assert emoji_calls == [session]
        assert session.emojis[0] == ('🐶', 'Dog')

        assert session.confirm(True) == VerificationState.VERIFIED
        assert adapter.sas.confirmed is True

    def test_mismatch_fails_and_cancels_remote(self):
        adapter = FakeAdapter()
        session = VerificationSession(ACCOUNT, adapter, VerificationKind.SAS)
        session.begin()

        assert session.confirm(False) == VerificationState.FAILED
        assert adapter.sas.cancelled is True

    def test_other_side_not_confirming_fails(self):
        adapter = FakeAdapter()
        adapter.sas = FakeSas(confirms=False)
        session = VerificationSession(ACCOUNT, adapter, VerificationKind.SAS)
        session.begin()

        assert session.confirm(True) == VerificationState.FAILED

    def test_start_failure(self):
        adapter = FakeAdapter()
        adapter.sas_error = RuntimeError('no other devices')
        session = VerificationSession(ACCOUNT, adapter, VerificationKind.SAS)

        assert session.begin() == VerificationState.FAILED
        assert session.error == 'no other devices'

    def test_incoming_request_is_accepted(self):
        adapter = FakeAdapter()
        session = VerificationSession(ACCOUNT, adapter, VerificationKind.SAS, incoming=(ACCOUNT, 'flow9'))

        session.begin()

        assert adapter.accepted == [(ACCOUNT, 'flow9')]
        assert session.state == VerificationState.AWAITING_CONFIRMATION

    def test_confirm_requires_awaiting_confirmation(self):
        session = VerificationSession(ACCOUNT, FakeAdapter(), VerificationKind.SAS)
        with pytest.raises(VerificationError):
            session.confirm(True)


class TestVerificationManager:
    """Tests for the registry, events, timeouts and retention."""

    def test_recovery_publishes_state_changes(self, manager, published):
        session = manager.start_recovery(ACCOUNT, FakeAdapter())
        session.submit_secret('EsTc good key')

        states = [e.state for e in published if isinstance(e, VerificationStateChanged)]
        assert states == ['awaiting_secret', 'verifying', 'verified']
        assert all(e.verification_id == session.verification_id for e in published)

    def test_sas_publishes_emojis(self, manager, published):
        session = manager.create_sas(ACCOUNT, FakeAdapter())
        session.begin()

        emojis = [e for e in published if isinstance(e, VerificationEmojis)]
        assert len(emojis) == 1
        assert emojis[0].emojis[1] == ('🔑', 'Key')

    def test_timeout_abandons(self, manager, clock):
        session = manager.start_recovery(ACCOUNT, FakeAdapter())
        clock.now += 61
        manager.housekeeping()

        assert session.state == VerificationState.ABANDONED
        assert session.error == 'Timed out'

    def test_finished_sessions_are_discarded_after_retention(self, manager, clock):
        session = manager.start_recovery(ACCOUNT, FakeAdapter())
        session.submit_secret('EsTc good key')

        manager.housekeeping()
        assert manager.get(session.verification_id) is session

        clock.now += 10
        manager.housekeeping()
        with pytest.raises(UnknownVerification):
            manager.get(session.verification_id)

    def test_acknowledge_discards_finished_only(self, manager):
        open_session = manager.start_recovery(ACCOUNT, FakeAdapter())
        manager.acknowledge(open_session.verification_id)
        assert manager.get(open_session.verification_id) is open_session

        open_session.cancel()
        manager.acknowledge(open_session.verification_id)
        assert manager.sessions() == []

    def test_abandon_account(self, manager):
        mine = manager.start_recovery(ACCOUNT, FakeAdapter())
        other = manager.start_recovery('@bob:other.org', FakeAdapter())

        assert manager.abandon_account(ACCOUNT) == 1

        assert mine.state == VerificationState.ABANDONED
        assert other.state == VerificationState.AWAITING_SECRET
