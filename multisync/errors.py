"""
Error taxonomy

Failures local to one account or room are caught at that account's
boundary; only ResourceExhausted is allowed to end the process.
"""


class MultiSyncError(Exception):
    """Base class for all client errors"""

    code = 'ERROR'

    def __init__(self, message: str = '', account_id: str = None):
        super().__init__(message)
        self.message = message
        self.account_id = account_id

    def to_dict(self):
        data = {'code': self.code, 'message': self.message}
        if self.account_id:
            data['account_id'] = self.account_id
        return data


class AuthError(MultiSyncError):
    """Bad credentials or token. The account becomes LoggedOut; never retried automatically."""
    code = 'AUTH_ERROR'


class InvalidSession(AuthError):
    """A persisted token was rejected while restoring a session."""
    code = 'INVALID_SESSION'


class NetworkError(MultiSyncError):
    """Transient transport failure, retried with backoff."""
    code = 'NETWORK_ERROR'


class DecryptionError(MultiSyncError):
    """An event could not be decrypted yet."""
    code = 'DECRYPTION_ERROR'


class MediaError(MultiSyncError):
    """A media download failed; affects only that item."""
    code = 'MEDIA_ERROR'


class VerificationError(MultiSyncError):
    """Terminal failure of one verification attempt."""
    code = 'VERIFICATION_ERROR'


class SendError(MultiSyncError):
    """An outgoing event was rejected."""
    code = 'SEND_ERROR'


class StateInvariantViolation(MultiSyncError):
    """A mutation referenced state that is not loaded locally. Logged and swallowed."""
    code = 'STATE_INVARIANT'


class NotFavorite(MultiSyncError):
    """A favorites-order operation targeted a room that is not a favorite."""
    code = 'NOT_FAVORITE'


class UnknownAccount(MultiSyncError):
    code = 'UNKNOWN_ACCOUNT'


class UnknownRoom(MultiSyncError):
    code = 'UNKNOWN_ROOM'


class UnknownVerification(MultiSyncError):
    code = 'UNKNOWN_VERIFICATION'


class ResourceExhausted(MultiSyncError):
    """A new session could not be allocated. Fatal to the process."""
    code = 'RESOURCE_EXHAUSTED'
