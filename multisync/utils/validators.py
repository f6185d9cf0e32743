"""
Input normalization and validation
"""
import re
from typing import Any, Optional, Tuple

USER_ID_PATTERN = re.compile(r'^@[^:\s]+:[^\s]+$')


def normalize_homeserver(homeserver: str) -> str:
    """Return the homeserver as a URL, defaulting to https."""
    homeserver = homeserver.strip()
    if homeserver.startswith('http://') or homeserver.startswith('https://'):
        return homeserver
    return f'https://{homeserver}'


def server_name(homeserver: str) -> str:
    """Strip scheme and trailing slash from a homeserver address."""
    name = homeserver.strip()
    for prefix in ('https://', 'http://'):
        if name.startswith(prefix):
            name = name[len(prefix):]
    return name.rstrip('/')


def normalize_user_id(username: str, homeserver: str) -> str:
    """Normalize a bare username to ``@user:server`` form."""
    username = username.strip()
    if username.startswith('@'):
        return username
    return f'@{username}:{server_name(homeserver)}'


def validate_user_id(user_id: Any) -> Tuple[bool, Optional[str]]:
    """
    Validate a fully qualified user id.

    Returns:
        (is_valid, error_message)
    """
    if not user_id:
        return False, 'User id must not be empty'

    if not isinstance(user_id, str):
        return False, 'User id must be a string'

    if len(user_id) > 255:
        return False, 'User id must not exceed 255 characters'

    if not USER_ID_PATTERN.match(user_id):
        return False, 'User id must look like @user:server'

    return True, None


def validate_credentials(homeserver: Any, username: Any, password: Any) -> Tuple[bool, Optional[str]]:
    """Validate login form input before contacting a server."""
    if not homeserver or not isinstance(homeserver, str) or not homeserver.strip():
        return False, 'Homeserver must not be empty'
    if not username or not isinstance(username, str) or not username.strip():
        return False, 'Username must not be empty'
    if not password or not isinstance(password, str):
        return False, 'Password must not be empty'
    return True, None


def session_dir_name(user_id: str) -> str:
    """Filesystem-safe directory name for an account's key store."""
    return re.sub(r'[@:.]', '_', user_id)
