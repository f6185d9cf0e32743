"""
Verification State Machine - recovery-key and interactive (SAS) verification

States: Idle -> AwaitingSecret | AwaitingConfirmation -> Verifying ->
Verified | Failed | Abandoned. Abandoned is reachable from every
non-terminal state on cancel or timeout. A recovery secret lives in a
bytearray that is zeroed whenever the session leaves Verifying or ends.
"""
import threading
import time
import uuid
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple, Union

from ...errors import UnknownVerification, VerificationError
from ...models.events import DomainEvent, VerificationEmojis, VerificationStateChanged
from ...protocol import ProtocolAdapter, SasSession
from ...utils.crypto import is_zeroed, to_secret_buffer, zero_buffer
from ...utils.logger import get_logger

logger = get_logger('verification')


class VerificationState(str, Enum):
    IDLE = 'idle'
    AWAITING_SECRET = 'awaiting_secret'
    AWAITING_CONFIRMATION = 'awaiting_confirmation'
    VERIFYING = 'verifying'
    VERIFIED = 'verified'
    FAILED = 'failed'
    ABANDONED = 'abandoned'


class VerificationKind(str, Enum):
    RECOVERY_KEY = 'recovery_key'
    SAS = 'sas'


TERMINAL_STATES = frozenset({
    VerificationState.VERIFIED,
    VerificationState.FAILED,
    VerificationState.ABANDONED,
})

_ALLOWED = {
    VerificationState.IDLE: {
        VerificationState.AWAITING_SECRET,
        VerificationState.AWAITING_CONFIRMATION,
        VerificationState.FAILED,
        VerificationState.ABANDONED,
    },
    VerificationState.AWAITING_SECRET: {
        VerificationState.VERIFYING,
        VerificationState.ABANDONED,
    },
    VerificationState.AWAITING_CONFIRMATION: {
        VerificationState.VERIFYING,
        VerificationState.FAILED,
        VerificationState.ABANDONED,
    },
    VerificationState.VERIFYING: {
        VerificationState.VERIFIED,
        VerificationState.FAILED,
        VerificationState.ABANDONED,
    },
}


class VerificationSession:
    """One pending verification of one account.

    Network calls (recovery, SAS start and confirm) are made without holding
    the session lock; a cancel that lands meanwhile wins and the late result
    is discarded.

    Example:
        >>> session = VerificationSession('@a:x.org', adapter, VerificationKind.RECOVERY_KEY)
        >>> session.begin()                      # Idle -> AwaitingSecret
        >>> session.submit_secret(bytearray(b'EsTc ...'))  # -> Verifying -> Verified
        >>> session.secret_buffer                # all zero bytes
    """

    def __init__(
        self,
        account_id: str,
        adapter: ProtocolAdapter,
        kind: VerificationKind,
        target_device: Optional[str] = None,
        incoming: Optional[Tuple[str, str]] = None,
        timeout: float = 600.0,
        on_change: Optional[Callable[['VerificationSession'], None]] = None,
        on_emojis: Optional[Callable[['VerificationSession'], None]] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.verification_id = uuid.uuid4().hex
        self.account_id = account_id
        self.kind = VerificationKind(kind)
        self.target_device = target_device
        # (user id, flow id) of an incoming request being answered
        self.incoming = incoming
        self.error: Optional[str] = None
        self.emojis: Tuple[Tuple[str, str], ...] = ()
        self.finished_at: Optional[float] = None
        self._adapter = adapter
        self._state = VerificationState.IDLE
        self._secret: Optional[bytearray] = None
        self._sas: Optional[SasSession] = None
        self._clock = clock
        self._deadline = clock() + timeout
        self._on_change = on_change
        self._on_emojis = on_emojis
        self._lock = threading.RLock()

    # ==================== State ====================

    @property
    def state(self) -> VerificationState:
        with self._lock:
            return self._state

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def secret_buffer(self) -> Optional[bytearray]:
        """The buffer the recovery secret was held in (zeroed once used)."""
        return self._secret

    def _transition(self, new_state: VerificationState, error: Optional[str] = None) -> None:
        old_state = self._state
        if new_state not in _ALLOWED.get(old_state, ()):
            raise VerificationError(
                f'Illegal verification transition {old_state.value} -> {new_state.value}',
                account_id=self.account_id,
            )
        self._state = new_state
        if old_state == VerificationState.VERIFYING or new_state in TERMINAL_STATES:
            zero_buffer(self._secret)
        if new_state in TERMINAL_STATES:
            self.finished_at = self._clock()
            self.error = error
            self._sas = None
        logger.info(
            f"[Verification {self.verification_id[:8]}] {self.account_id} "
            f"{old_state.value} -> {new_state.value}" + (f" ({error})" if error else '')
        )
        if self._on_change is not None:
            self._on_change(self)

    # ==================== Flows ====================

    def begin(self) -> VerificationState:
        """Start the flow.

        Recovery key: moves to AwaitingSecret. SAS: requests (or accepts) the
        verification, waits for the emoji set and moves to
        AwaitingConfirmation; this blocks on the network.
        """
        with self._lock:
            if self._state != VerificationState.IDLE:
                raise VerificationError('Verification already started', account_id=self.account_id)
            if self.kind == VerificationKind.RECOVERY_KEY:
                self._transition(VerificationState.AWAITING_SECRET)
                return self._state

        try:
            if self.incoming is not None:
                sas = self._adapter.accept_verification(*self.incoming)
            else:
                sas = self._adapter.start_sas_verification(self.target_device)
            emojis = tuple((str(symbol), str(desc)) for symbol, desc in sas.emojis())
        except Exception as e:
            logger.warning(f"[Verification {self.verification_id[:8]}] SAS start failed: {e}")
            with self._lock:
                if self._state == VerificationState.IDLE:
                    self._transition(VerificationState.FAILED, str(e) or type(e).__name__)
                return self._state

        with self._lock:
            if self._state != VerificationState.IDLE:
                abandoned = True
            else:
                abandoned = False
                self._sas = sas
                self.emojis = emojis
                self._transition(VerificationState.AWAITING_CONFIRMATION)
        if abandoned:
            self._cancel_remote(sas)
        elif self._on_emojis is not None:
            self._on_emojis(self)
        return self.state

    def submit_secret(self, secret: Union[str, bytes, bytearray]) -> VerificationState:
        """Submit the recovery key; accepted exactly once.

        A bytearray argument is used in place and zeroed together with the
        internal copy. After Failed a new verification must be started.

        Raises:
            VerificationError: The session is not awaiting a secret
        """
        with self._lock:
            if self.kind != VerificationKind.RECOVERY_KEY or self._state != VerificationState.AWAITING_SECRET:
                if isinstance(secret, bytearray):
                    zero_buffer(secret)
                raise VerificationError('Verification is not awaiting a secret', account_id=self.account_id)
            self._secret = to_secret_buffer(secret)
            buf = self._secret
            self._transition(VerificationState.VERIFYING)

        ok = False
        error = None
        try:
            ok = bool(self._adapter.fetch_recovery_backup(buf))
            if not ok:
                error = 'Recovery key was rejected'
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.warning(f"[Verification {self.verification_id[:8]}] Recovery failed: {error}")
        finally:
            with self._lock:
                zero_buffer(buf)
                if self._state == VerificationState.VERIFYING:
                    if ok:
                        self._transition(VerificationState.VERIFIED)
                    else:
                        self._transition(VerificationState.FAILED, error)
        return self.state

    def confirm(self, matches: bool = True) -> VerificationState:
        """Answer the emoji comparison; a mismatch fails the verification."""
        with self._lock:
            if self._state != VerificationState.AWAITING_CONFIRMATION:
                raise VerificationError('Verification is not awaiting confirmation', account_id=self.account_id)
            sas = self._sas
            if not matches:
                self._transition(VerificationState.FAILED, 'Emojis did not match')
            else:
                self._transition(VerificationState.VERIFYING)

        if not matches:
            self._cancel_remote(sas)
            return self.state

        done = False
        error = None
        try:
            done = bool(sas.confirm())
            if not done:
                error = 'Other device did not confirm'
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.warning(f"[Verification {self.verification_id[:8]}] SAS confirm failed: {error}")
        with self._lock:
            if self._state == VerificationState.VERIFYING:
                if done:
                    self._transition(VerificationState.VERIFIED)
                else:
                    self._transition(VerificationState.FAILED, error)
        return self.state

    def cancel(self, reason: str = 'Cancelled') -> bool:
        """Abandon the verification. Returns False if it already ended."""
        with self._lock:
            if self._state in TERMINAL_STATES:
                return False
            sas = self._sas
            self._transition(VerificationState.ABANDONED, reason)
        self._cancel_remote(sas)
        return True

    def check_timeout(self, now: Optional[float] = None) -> bool:
        """Abandon the verification if its deadline has passed."""
        now = self._clock() if now is None else now
        if self.is_terminal or now < self._deadline:
            return False
        return self.cancel('Timed out')

    def _cancel_remote(self, sas: Optional[SasSession]) -> None:
        if sas is None:
            return
        try:
            sas.cancel()
        except Exception as e:
            logger.debug(f"[Verification {self.verification_id[:8]}] Remote cancel failed: {e}")

    def to_dict(self) -> Dict:
        with self._lock:
            return {
                'verification_id': self.verification_id,
                'account_id': self.account_id,
                'kind': self.kind.value,
                'state': self._state.value,
                'target_device': self.target_device,
                'emojis': list(self.emojis),
                'error': self.error,
                'secret_cleared': is_zeroed(self._secret),
            }


class VerificationManager:
    """Registry of pending verifications across all accounts.

    State changes are published as domain events. Finished verifications
    are kept for ``retention`` seconds so the UI can show the outcome, then
    discarded by ``housekeeping``.
    """

    def __init__(
        self,
        publish: Callable[[DomainEvent], None],
        timeout: float = 600.0,
        retention: float = 30.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self._publish = publish
        self.timeout = timeout
        self.retention = retention
        self._clock = clock
        self._sessions: Dict[str, VerificationSession] = {}
        self._lock = threading.Lock()

    def _register(self, session: VerificationSession) -> VerificationSession:
        with self._lock:
            self._sessions[session.verification_id] = session
        return session

    def _new_session(self, account_id: str, adapter: ProtocolAdapter, kind: VerificationKind, **kwargs) -> VerificationSession:
        return VerificationSession(
            account_id,
            adapter,
            kind,
            timeout=self.timeout,
            on_change=self._state_changed,
            on_emojis=self._emojis_ready,
            clock=self._clock,
            **kwargs
        )

    def start_recovery(self, account_id: str, adapter: ProtocolAdapter) -> VerificationSession:
        """Create a recovery-key verification already awaiting its secret."""
        session = self._register(self._new_session(account_id, adapter, VerificationKind.RECOVERY_KEY))
        session.begin()
        return session

    def create_sas(
        self,
        account_id: str,
        adapter: ProtocolAdapter,
        device_id: Optional[str] = None,
        incoming: Optional[Tuple[str, str]] = None
    ) -> VerificationSession:
        """Create an SAS verification in Idle; the caller runs ``begin()`` off the UI thread."""
        return self._register(self._new_session(
            account_id, adapter, VerificationKind.SAS, target_device=device_id, incoming=incoming
        ))

    def get(self, verification_id: str) -> VerificationSession:
        with self._lock:
            session = self._sessions.get(verification_id)
        if session is None:
            raise UnknownVerification(f'No verification {verification_id}')
        return session

    def sessions(self, account_id: Optional[str] = None) -> List[VerificationSession]:
        with self._lock:
            return [s for s in self._sessions.values() if account_id is None or s.account_id == account_id]

    def abandon_account(self, account_id: str, reason: str = 'Account removed') -> int:
        """Force every open verification of an account to Abandoned."""
        count = 0
        for session in self.sessions(account_id):
            if session.cancel(reason):
                count += 1
        return count

    def acknowledge(self, verification_id: str) -> None:
        """The UI has shown a finished verification's outcome; discard it."""
        with self._lock:
            session = self._sessions.get(verification_id)
            if session is not None and session.is_terminal:
                del self._sessions[verification_id]

    def housekeeping(self, now: Optional[float] = None) -> None:
        """Time out stale verifications and discard reported outcomes."""
        now = self._clock() if now is None else now
        for session in self.sessions():
            session.check_timeout(now)
        with self._lock:
            expired = [
                vid for vid, s in self._sessions.items()
                if s.finished_at is not None and now - s.finished_at >= self.retention
            ]
            for vid in expired:
                del self._sessions[vid]

    def _state_changed(self, session: VerificationSession) -> None:
        self._publish(VerificationStateChanged(
            account_id=session.account_id,
            verification_id=session.verification_id,
            kind=session.kind.value,
            state=session.state.value,
            error=session.error,
        ))

    def _emojis_ready(self, session: VerificationSession) -> None:
        self._publish(VerificationEmojis(
            account_id=session.account_id,
            verification_id=session.verification_id,
            emojis=session.emojis,
        ))
