"""
Retry utilities for ID allocation conflicts.

The identity manager never retries on its own. Callers that want to re-run an
allocation that lost a race build a bounded policy here and hand it to the
manager.
"""

import time
import logging
from typing import Callable, Any, Tuple, Type, Optional

from ldap_identity.manager import AllocationConflict

logger = logging.getLogger(__name__)


class MaxRetriesExceeded(Exception):
    """Every attempt of a retried call failed."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: dict = None,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 1.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable[[int, Exception], None]] = None
) -> Any:
    """
    Call func(*args, **kwargs) until it succeeds or max_attempts is reached.

    Exceptions not listed in exceptions propagate immediately. The wait
    before attempt n+1 is delay * backoff ** (n - 1).

    Raises:
        MaxRetriesExceeded: Wrapping the exception of the final attempt
    """
    kwargs = kwargs or {}
    wait = delay

    for attempt in range(1, max_attempts + 1):
        try:
            result = func(*args, **kwargs)
        except exceptions as e:
            if attempt == max_attempts:
                raise MaxRetriesExceeded(max_attempts, e)
            logger.debug(f"Attempt {attempt} failed with {type(e).__name__}: {e}; "
                         f"waiting {wait:.1f}s before the next one")
            if on_retry:
                on_retry(attempt, e)
            time.sleep(wait)
            wait *= backoff
        else:
            if attempt > 1:
                logger.info(f"Call succeeded on attempt {attempt}")
            return result


def create_retry_callback(operation_name: str) -> Callable[[int, Exception], None]:
    """Return an on_retry callback that logs a warning naming the operation."""
    def on_retry(attempt: int, exception: Exception):
        logger.warning(f"{operation_name} failed on attempt {attempt}, "
                       f"retrying after {type(exception).__name__}: {exception}")

    return on_retry


def allocation_retry_policy(max_attempts: int = 5, delay: float = 0.2) -> Callable[..., Any]:
    """
    Build a policy that re-runs an allocation when it hits AllocationConflict.

    Only AllocationConflict is retried. When every attempt conflicts, the last
    AllocationConflict is raised so callers see the original error kind.

    Args:
        max_attempts: Total number of attempts, including the first
        delay: Seconds to wait between attempts

    Returns:
        Callable used as policy(func, *args)
    """
    callback = create_retry_callback("ID allocation")

    def policy(func: Callable, *args) -> Any:
        try:
            return retry_call(
                func, args,
                max_attempts=max_attempts,
                delay=delay,
                exceptions=(AllocationConflict,),
                on_retry=callback
            )
        except MaxRetriesExceeded as e:
            logger.error(f"ID allocation gave up after {e.attempts} conflicting attempts")
            raise e.last_exception from e

    return policy


def retry_policy_from_config(config: dict) -> Callable[..., Any]:
    """Allocation policy from the error_handling section (allocation_attempts, allocation_retry_wait_seconds)."""
    return allocation_retry_policy(
        max_attempts=config.get('allocation_attempts', 5),
        delay=config.get('allocation_retry_wait_seconds', 0.2)
    )
