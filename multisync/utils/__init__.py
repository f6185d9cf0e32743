"""
Utility modules
"""
from .logger import setup_logger, get_logger, redact_token
from .crypto import TokenCrypto, zero_buffer
from .validators import normalize_homeserver, normalize_user_id, validate_user_id
from .text import strip_reply_fallback, snippet, fuzzy_score

__all__ = [
    'setup_logger',
    'get_logger',
    'redact_token',
    'TokenCrypto',
    'zero_buffer',
    'normalize_homeserver',
    'normalize_user_id',
    'validate_user_id',
    'strip_reply_fallback',
    'snippet',
    'fuzzy_score',
]
