"""
Exponential backoff for agent and collaborator calls.

Authentication failures stop immediately; transient failures (rate limit,
timeout, network) are retried with a doubling delay up to a fixed attempt
ceiling; anything else propagates on the first failure.
"""

import time
from typing import Callable, Optional, TypeVar

from trustpipe.agents.errors import is_authentication_error, is_transient_error
from trustpipe.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def backoff_delays(max_attempts: int, base_delay: float) -> list:
    """Delays slept between consecutive attempts: base, 2*base, 4*base, ..."""
    return [base_delay * (2 ** i) for i in range(max(0, max_attempts - 1))]


def with_retry(
    fn: Callable[[], T],
    operation: str,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    """
    Run a callable with exponential backoff.

    Args:
        fn: Zero-argument callable to run
        operation: Human-readable operation name for logs
        max_attempts: Total attempts including the first one
        base_delay: Delay in seconds before the second attempt
        sleep: Sleep function, injectable for tests

    Returns:
        Whatever the callable returns

    Raises:
        The last error raised by the callable
    """
    sleep = sleep or time.sleep
    delays = backoff_delays(max_attempts, base_delay)
    attempt = 0

    while True:
        attempt += 1
        try:
            return fn()
        except Exception as e:
            if is_authentication_error(e):
                logger.critical(f"{operation} failed due to an authentication error, not retrying",
                                operation=operation,
                                auth_error=True,
                                error=str(e))
                raise

            if not is_transient_error(e) or attempt >= max_attempts:
                logger.error(f"{operation} failed after {attempt} attempt(s)",
                             operation=operation,
                             attempts=attempt,
                             error=str(e))
                raise

            delay = delays[attempt - 1]
            logger.warning(f"{operation} failed, retrying in {delay}s (attempt {attempt}/{max_attempts})",
                           operation=operation,
                           error=str(e))
            sleep(delay)
