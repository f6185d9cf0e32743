"""
multisync - multi-account messaging sync and aggregation core

Runs one sync loop per account, merges their activity into one room list
and one non-blocking event feed for a terminal front end.
"""
from .config import Config, get_config
from .utils.crypto import TokenCrypto
from .utils.logger import get_logger, setup_logger

__version__ = '0.1.0'


def create_client(config_class=None, adapter_factory=None, store=None):
    """Create and configure the multi-account client.

    Args:
        config_class: Configuration class to use. If None, auto-detect from environment.
        adapter_factory: Callable (homeserver, key store directory) -> ProtocolAdapter
        store: SessionStore to use. If None, one is built from the configuration.

    Returns:
        Configured MultiAccountClient instance
    """
    from .services.client import MultiAccountClient
    from .services.store import SessionStore

    if config_class is None:
        config_class = get_config()
    if adapter_factory is None:
        raise ValueError('adapter_factory is required')

    if not getattr(config_class, 'TESTING', False):
        config_class.init_paths()

    setup_logger(
        log_level=config_class.LOG_LEVEL,
        log_file=config_class.LOG_FILE,
        console=config_class.LOG_TO_CONSOLE,
    )
    logger = get_logger('app')

    if hasattr(config_class, 'validate'):
        for warning in config_class.validate():
            logger.warning(f"Config: {warning}")

    if store is None:
        if config_class.TOKEN_ENCRYPTION_KEY:
            crypto = TokenCrypto(config_class.TOKEN_ENCRYPTION_KEY)
        else:
            crypto = TokenCrypto.from_key_file(config_class.TOKEN_KEY_FILE)
        store = SessionStore(config_class.DATABASE_URL, crypto)

    client = MultiAccountClient(config_class, adapter_factory, store)
    logger.info(f"Client initialized, database: {config_class.DATABASE_URL}")
    return client


__all__ = ['create_client', 'Config', 'get_config', '__version__']
