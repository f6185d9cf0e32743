"""
Backoff Manager - Capped exponential backoff with jitter for sync retries

One instance per account: a failing server never slows down other accounts.
"""
import random
import threading
from typing import Dict

from ...utils.logger import get_logger

logger = get_logger('delay_manager')


class BackoffManager:
    """Retry delay with capped doubling, jitter and reset on success.

    Core strategies:
    1. Exponential backoff: Multiply delay by backoff_factor on each failure (up to max_delay)
    2. Reset: The first success returns the delay to initial_delay
    3. Failure streak: Consecutive failures are counted for degraded-status decisions

    Example:
        >>> manager = BackoffManager(initial_delay=1.0, max_delay=60.0)
        >>> manager.record_failure()  # delay 1s -> 2s
        >>> delay = manager.get_delay()  # current delay with jitter
        >>> manager.record_success()  # back to 1s
    """

    def __init__(
        self,
        min_delay: float = 1.0,
        max_delay: float = 60.0,
        initial_delay: float = 1.0,
        backoff_factor: float = 2.0,
        jitter: float = 0.2,
        name: str = ''
    ):
        """Initialize the backoff manager.

        Args:
            min_delay: Minimum delay in seconds
            max_delay: Maximum delay in seconds
            initial_delay: Delay after the first failure
            backoff_factor: Multiply delay by this on each further failure
            jitter: Random spread applied to the delay (0.2 = ±20%)
            name: Label for log lines (usually the account id)
        """
        self.min_delay = min_delay
        self.max_delay = max_delay
        self.initial_delay = initial_delay
        self.backoff_factor = backoff_factor
        self.jitter = jitter
        self.name = name

        self._current_delay = initial_delay
        self._consecutive_failures = 0
        self._total_failures = 0
        self._lock = threading.Lock()

    def record_failure(self) -> int:
        """Record a failed request.

        Returns:
            The number of consecutive failures so far
        """
        with self._lock:
            self._total_failures += 1
            self._consecutive_failures += 1
            if self._consecutive_failures > 1:
                old_delay = self._current_delay
                self._current_delay = min(
                    max(self._current_delay * self.backoff_factor, self.min_delay),
                    self.max_delay
                )
                logger.debug(
                    f"[Backoff {self.name}] Failure #{self._consecutive_failures}: "
                    f"delay {old_delay:.1f}s -> {self._current_delay:.1f}s"
                )
            return self._consecutive_failures

    def record_success(self) -> None:
        """Record a successful request, resetting the failure streak."""
        with self._lock:
            if self._consecutive_failures:
                logger.info(
                    f"[Backoff {self.name}] Recovered after {self._consecutive_failures} failures"
                )
            self._consecutive_failures = 0
            self._current_delay = self.initial_delay

    def get_delay(self) -> float:
        """Get current delay with random jitter.

        Returns:
            Delay in seconds, clamped to [min_delay, max_delay]
        """
        with self._lock:
            spread = random.uniform(1.0 - self.jitter, 1.0 + self.jitter)
            return max(self.min_delay, min(self._current_delay * spread, self.max_delay))

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._consecutive_failures

    def reset(self) -> None:
        """Reset to initial state."""
        with self._lock:
            self._current_delay = self.initial_delay
            self._consecutive_failures = 0
            self._total_failures = 0

    def get_stats(self) -> Dict:
        """Get current statistics.

        Returns:
            Dictionary with current delay and failure counts
        """
        with self._lock:
            return {
                'current_delay': self._current_delay,
                'consecutive_failures': self._consecutive_failures,
                'total_failures': self._total_failures,
            }

    @classmethod
    def from_config(cls, config, name: str = '') -> 'BackoffManager':
        return cls(
            min_delay=config.SYNC_BACKOFF_MIN,
            max_delay=config.SYNC_BACKOFF_MAX,
            initial_delay=config.SYNC_BACKOFF_INITIAL,
            backoff_factor=config.SYNC_BACKOFF_FACTOR,
            name=name,
        )
