"""
Client configuration
Values are read from environment variables (and a .env file when present)
"""
import os
from pathlib import Path

from dotenv import load_dotenv

from .utils.validators import session_dir_name

load_dotenv()


def _default_data_dir() -> str:
    base = os.environ.get('XDG_DATA_HOME') or os.path.join(str(Path.home()), '.local', 'share')
    return os.path.join(base, 'multisync')


class Config:
    """Base configuration"""

    # ==================== Paths ====================
    DATA_DIR = os.environ.get('MULTISYNC_DATA_DIR') or _default_data_dir()

    # ==================== Persisted state ====================
    DATABASE_URL = os.environ.get('DATABASE_URL') or f'sqlite:///{os.path.join(DATA_DIR, "multisync.db")}'

    # Fernet key for access tokens at rest; a key file in DATA_DIR is used when unset
    TOKEN_ENCRYPTION_KEY = os.environ.get('TOKEN_ENCRYPTION_KEY')
    TOKEN_KEY_FILE = os.path.join(DATA_DIR, 'token.key')

    # ==================== Logging ====================
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    LOG_FILE = os.environ.get('LOG_FILE') or os.path.join(DATA_DIR, 'multisync.log')
    LOG_TO_CONSOLE = os.environ.get('LOG_TO_CONSOLE', '0') == '1'

    # ==================== Sync loop ====================
    # Long-poll timeout passed to the server (milliseconds)
    SYNC_TIMEOUT_MS = int(os.environ.get('SYNC_TIMEOUT_MS', '30000'))
    # Backoff after failed sync requests (seconds)
    SYNC_BACKOFF_INITIAL = float(os.environ.get('SYNC_BACKOFF_INITIAL', '1.0'))
    SYNC_BACKOFF_MIN = float(os.environ.get('SYNC_BACKOFF_MIN', '1.0'))
    SYNC_BACKOFF_MAX = float(os.environ.get('SYNC_BACKOFF_MAX', '60.0'))
    SYNC_BACKOFF_FACTOR = float(os.environ.get('SYNC_BACKOFF_FACTOR', '2.0'))
    # Consecutive failures before a synced account is shown as Degraded
    SYNC_DEGRADED_THRESHOLD = int(os.environ.get('SYNC_DEGRADED_THRESHOLD', '5'))
    HISTORY_PAGE_SIZE = int(os.environ.get('HISTORY_PAGE_SIZE', '50'))

    # ==================== Event dispatcher ====================
    DISPATCHER_BUFFER_PER_ACCOUNT = int(os.environ.get('DISPATCHER_BUFFER_PER_ACCOUNT', '256'))

    # ==================== Media ====================
    MEDIA_MAX_CONCURRENT = int(os.environ.get('MEDIA_MAX_CONCURRENT', '4'))
    MEDIA_BYTE_BUDGET = int(os.environ.get('MEDIA_BYTE_BUDGET', str(20 * 1024 * 1024)))

    # ==================== Verification ====================
    VERIFICATION_TIMEOUT = float(os.environ.get('VERIFICATION_TIMEOUT', '600'))
    # How long a finished verification is kept around for the UI
    VERIFICATION_RETENTION = float(os.environ.get('VERIFICATION_RETENTION', '30'))

    # ==================== Commands ====================
    COMMAND_WORKERS = int(os.environ.get('COMMAND_WORKERS', '4'))

    # ==================== Room list ====================
    DEFAULT_ROOM_SORT = os.environ.get('DEFAULT_ROOM_SORT', 'unread')

    @classmethod
    def init_paths(cls):
        """Create the data directory"""
        os.makedirs(cls.DATA_DIR, exist_ok=True)
        os.makedirs(os.path.join(cls.DATA_DIR, 'sessions'), exist_ok=True)

    @classmethod
    def session_dir(cls, user_id: str) -> str:
        """Directory handed to an account's opaque key store."""
        return os.path.join(cls.DATA_DIR, 'sessions', session_dir_name(user_id))


class DevelopmentConfig(Config):
    """Development configuration"""
    LOG_LEVEL = 'DEBUG'


class ProductionConfig(Config):
    """Production configuration"""
    LOG_LEVEL = 'WARNING'

    @classmethod
    def validate(cls):
        """Return warnings about missing production settings"""
        errors = []

        if not os.environ.get('TOKEN_ENCRYPTION_KEY'):
            errors.append('TOKEN_ENCRYPTION_KEY is not set (a key file in the data directory is used)')

        return errors


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DATABASE_URL = 'sqlite:///:memory:'
    LOG_FILE = None
    LOG_TO_CONSOLE = False
    SYNC_TIMEOUT_MS = 10
    SYNC_BACKOFF_INITIAL = 0.0
    SYNC_BACKOFF_MIN = 0.0
    SYNC_BACKOFF_MAX = 0.0
    VERIFICATION_TIMEOUT = 5.0
    VERIFICATION_RETENTION = 0.0


config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': Config,
}


def get_config():
    """Select a configuration class from MULTISYNC_ENV"""
    env = os.environ.get('MULTISYNC_ENV', 'default')
    return config.get(env, config['default'])
