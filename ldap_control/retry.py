"""
Retry helpers for transient directory failures.

Only read paths (opening pooled connections, the first page of a search,
single-entry reads) go through ``retry_call``. Writes are never retried.
"""

import time
import logging
from typing import Callable, Any, Iterator, Tuple, Type, Optional

from ldap3.core.exceptions import (
    LDAPBindError,
    LDAPCommunicationError,
    LDAPResponseTimeoutError,
    LDAPSocketOpenError,
)

logger = logging.getLogger(__name__)


class MaxRetriesExceeded(Exception):
    """Raised when every attempt allowed by ``retry_call`` has failed."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


# Server unreachable, connection dropped, or answer too late
TRANSIENT_LDAP_ERRORS = (
    LDAPSocketOpenError,
    LDAPCommunicationError,
    LDAPResponseTimeoutError,
    LDAPBindError,
    ConnectionError,
    TimeoutError,
)


def backoff_delays(delay: float, backoff: float, max_delay: Optional[float], count: int) -> Iterator[float]:
    """
    Yield ``count`` sleep intervals, growing by ``backoff`` and capped at ``max_delay``.

    Example:
        list(backoff_delays(0.5, 2.0, 3.0, 4)) == [0.5, 1.0, 2.0, 3.0]
    """
    current = delay
    for _ in range(count):
        yield current if max_delay is None else min(current, max_delay)
        current *= backoff


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: Optional[dict] = None,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 1.0,
    max_delay: Optional[float] = None,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable[[int, Exception], None]] = None,
    sleep: Optional[Callable[[float], None]] = None
) -> Any:
    """
    Call ``func`` until it succeeds or ``max_attempts`` calls have failed.

    Exceptions outside ``exceptions`` propagate immediately. ``sleep`` can be
    swapped for a wait that aborts when the caller cancels; whatever it
    raises propagates unchanged.

    Args:
        func: Function to call
        args: Positional arguments for func
        kwargs: Keyword arguments for func
        max_attempts: Total number of calls, including the first
        delay: Wait before the second attempt, in seconds
        backoff: Multiplier applied to the wait after every failure
        max_delay: Cap on any single wait
        exceptions: Exception types that trigger another attempt
        on_retry: Called with (attempt number, exception) before each wait
        sleep: Wait function, ``time.sleep`` by default

    Returns:
        Whatever func returns

    Raises:
        MaxRetriesExceeded: When the final attempt fails
    """
    kwargs = kwargs or {}
    sleep = sleep or time.sleep
    max_attempts = max(1, max_attempts)
    delays = backoff_delays(delay, backoff, max_delay, max_attempts - 1)

    for attempt in range(1, max_attempts + 1):
        try:
            result = func(*args, **kwargs)
        except exceptions as e:
            if attempt == max_attempts:
                raise MaxRetriesExceeded(attempt, e)

            wait = next(delays)
            logger.debug(f"Attempt {attempt}/{max_attempts} failed with {type(e).__name__}; "
                         f"next attempt in {wait:.1f}s")
            if on_retry:
                try:
                    on_retry(attempt, e)
                except Exception as callback_error:
                    logger.warning(f"Retry callback failed: {callback_error}")
            sleep(wait)
        else:
            if attempt > 1:
                logger.info(f"Operation succeeded on attempt {attempt}")
            return result


def create_retry_callback(operation_name: str) -> Callable[[int, Exception], None]:
    """Build an ``on_retry`` callback that logs a warning naming the operation."""
    def on_retry(attempt: int, exception: Exception):
        logger.warning(f"{operation_name} failed on attempt {attempt}, "
                       f"retrying due to {type(exception).__name__}: {exception}")

    return on_retry
