"""
Retries for transient provisioning API failures.

Only collaborators retry. The HTTP client wraps each request in retry_call;
the reconciler never retries, so an error that outlives the retries here
aborts the run.
"""

import time
import logging
from typing import Callable, Any, Optional, Tuple, Type

from scim_sync.errors import TransientIOError

logger = logging.getLogger(__name__)

# Throttling plus the gateway errors a SCIM endpoint returns while it is scaling
RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)

TRANSIENT_MESSAGES = (
    'timed out',
    'connection reset',
    'connection refused',
    'network is unreachable',
    'temporary failure',
)


class MaxRetriesExceeded(TransientIOError):
    """Raised when every attempt of a retried call failed."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        self.status_code = getattr(last_exception, 'status_code', None)
        super().__init__(f"Gave up after {attempts} attempts: {last_exception}")


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: dict = None,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 1.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    retry_if: Optional[Callable[[Exception], bool]] = None,
    on_retry: Optional[Callable[[int, Exception], None]] = None
) -> Any:
    """
    Call func, retrying failures that look transient.

    Args:
        func: Callable to invoke
        args: Positional arguments for func
        kwargs: Keyword arguments for func
        max_attempts: Total number of calls, the first one included
        delay: Seconds to wait before the first retry
        backoff: Factor applied to the wait after every retry
        exceptions: Exception types that are caught at all
        retry_if: Predicate deciding whether a caught exception is retried;
            when it returns False the exception propagates unchanged
        on_retry: Called with (attempt, exception) before each wait

    Returns:
        Whatever func returns

    Raises:
        MaxRetriesExceeded: If the last attempt failed too
    """
    kwargs = kwargs or {}
    wait = delay
    attempt = 0

    while True:
        attempt += 1
        try:
            result = func(*args, **kwargs)
        except exceptions as e:
            if retry_if is not None and not retry_if(e):
                raise
            if attempt >= max_attempts:
                raise MaxRetriesExceeded(attempt, e) from e

            logger.debug(f"Attempt {attempt} of {max_attempts} failed ({type(e).__name__}), waiting {wait:.1f}s")
            if on_retry:
                try:
                    on_retry(attempt, e)
                except Exception as callback_error:
                    logger.warning(f"Retry callback failed: {callback_error}")

            time.sleep(wait)
            wait *= backoff
            continue

        if attempt > 1:
            logger.info(f"Call succeeded after {attempt} attempts")
        return result


def is_retryable_error(exception: Exception) -> bool:
    """True for network errors, throttling and 5xx responses."""
    if isinstance(exception, (ConnectionError, TimeoutError)):
        return True

    status_code = getattr(exception, 'status_code', None)
    if status_code is not None:
        return status_code in RETRYABLE_STATUS_CODES or 500 <= status_code < 600

    message = str(exception).lower()
    return any(fragment in message for fragment in TRANSIENT_MESSAGES)


def create_retry_callback(request_name: str) -> Callable[[int, Exception], None]:
    """Build an on_retry callback that logs a warning naming the request."""
    def log_retry(attempt: int, exception: Exception):
        logger.warning(f"{request_name} failed (attempt {attempt}): {type(exception).__name__}: {exception}")

    return log_retry
