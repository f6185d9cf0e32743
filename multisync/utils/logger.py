"""
Logging setup

Uses loguru for structured logging. A terminal host should pass ``log_file``
and keep ``console`` off so log lines never land on the rendered screen.
"""
import os
import sys
from typing import Optional

from loguru import logger


def setup_logger(
    log_level: str = 'INFO',
    log_file: Optional[str] = None,
    rotation: str = '10 MB',
    retention: str = '7 days',
    console: bool = True
) -> None:
    """Configure the logging sinks.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional log file path
        rotation: Log rotation size
        retention: How long rotated files are kept
        console: Whether to log to stderr
    """
    logger.remove()

    level = os.environ.get('LOG_LEVEL', log_level).upper()

    if console:
        console_format = (
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[name]}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
            "<level>{message}</level>"
        )
        logger.add(
            sys.stderr,
            format=console_format,
            level=level,
            colorize=True,
            backtrace=True,
            diagnose=False,
        )

    if log_file:
        file_format = (
            "{time:YYYY-MM-DD HH:mm:ss} | "
            "{level: <8} | "
            "{extra[name]}:{function}:{line} | "
            "{message}"
        )
        logger.add(
            log_file,
            format=file_format,
            level=level,
            rotation=rotation,
            retention=retention,
            compression='zip',
            encoding='utf-8',
        )

    logger.configure(extra={'name': 'multisync'})
    logger.info(f"Logger initialized with level: {level}")


def get_logger(name: str = None):
    """Get a logger bound to a component name.

    Args:
        name: Component name

    Returns:
        loguru logger instance
    """
    if name:
        return logger.bind(name=name)
    return logger


def redact_token(token: Optional[str]) -> str:
    """Render a credential for log output without revealing it."""
    if not token:
        return '<none>'
    return f"{token[:4]}…({len(token)} chars)"


def log_sync_event(account_id: str, event: str, details: dict = None):
    """Log a sync lifecycle event."""
    msg = f"Sync Event: account={account_id}, event={event}"
    if details:
        msg += f", details={details}"
    logger.bind(name='sync').info(msg)


def log_error(error: Exception, context: str = None):
    """Log an error with its traceback."""
    bound = logger.bind(name='error')
    if context:
        bound.error(f"Error in {context}: {error}")
    else:
        bound.error(f"Error: {error}")
    bound.opt(exception=error).debug("Traceback")
