"""
taloscluster/utils/async_retry.py

Retry helpers for async code:

 - `async_retry`: a decorator that retries an async function a fixed number of
   times upon any failure (used for short-lived subprocess calls).
 - `retry_until`: a bounded-duration, fixed-interval retry loop that separates
   "expected, keep retrying" conditions (raised as `ExpectedError`) from fatal
   errors, which propagate immediately. Every wait phase of the provisioner uses it.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Coroutine, Optional
from typing_extensions import ParamSpec, TypeVar

P = ParamSpec("P")
R = TypeVar("R")

logger = logging.getLogger(__name__)


class ExpectedError(Exception):
    """Signals a transient condition that `retry_until` should keep retrying."""


class RetryTimeoutError(Exception):
    """Raised when `retry_until` exceeds its deadline.

    Attributes:
        description (str): What was being waited for.
        timeout (float): The bound that was exceeded, in seconds.
        last_error (Optional[BaseException]): The last expected error observed.
    """

    def __init__(
        self,
        description: str,
        timeout: float,
        last_error: Optional[BaseException] = None,
    ) -> None:
        message = f"timed out after {timeout:g}s waiting for {description}"
        if last_error is not None:
            message += f": {last_error}"
        super().__init__(message)
        self.description = description
        self.timeout = timeout
        self.last_error = last_error


def async_retry(
    retries: int = 3,
    delay: float = 1.0,
    noisy: bool = False,
) -> Callable[
    [Callable[P, Coroutine[Any, Any, R]]], Callable[P, Coroutine[Any, Any, R]]
]:
    """Decorates an async function to retry upon failure.

    The decorated function will be attempted up to `retries` times, with a delay
    of `delay` seconds between each attempt. If `noisy` is True, logs warnings on
    each failure and an error on the final failure.

    Args:
        retries (int, optional):
            Maximum number of total attempts (not just failures). Defaults to 3.
        delay (float, optional):
            Delay in seconds between attempts. Defaults to 1.0.
        noisy (bool, optional):
            If True, logs a warning on each failure and an error if all attempts fail.
            Defaults to False.

    Returns:
        A decorator that, when applied to an async function, returns a wrapped
        version that retries on exceptions.
    """

    def decorator(
        func: Callable[P, Coroutine[Any, Any, R]]
    ) -> Callable[P, Coroutine[Any, Any, R]]:
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            async def attempt(remaining: int, attempt_number: int) -> R:
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    if noisy:
                        logger.warning(
                            "Attempt %d/%d for function %r failed. Error: %s",
                            attempt_number,
                            retries,
                            func.__qualname__,
                            exc,
                        )
                    if remaining > 1:
                        await asyncio.sleep(delay)
                        return await attempt(remaining - 1, attempt_number + 1)

                    if noisy:
                        logger.error(
                            "All %d attempts failed for function %r",
                            retries,
                            func.__qualname__,
                        )
                    raise

            return await attempt(retries, 1)

        return wrapper

    return decorator


async def retry_until(
    probe: Callable[[], Awaitable[R]],
    *,
    timeout: float,
    interval: float,
    description: str,
) -> R:
    """Call `probe` every `interval` seconds until it succeeds or `timeout` elapses.

    Args:
        probe: Async callable. Raises ExpectedError while the condition is not met yet.
        timeout: Overall bound in seconds.
        interval: Fixed delay between attempts in seconds.
        description: Human-readable name of the condition, used in the timeout error.

    Returns:
        Whatever `probe` returns on its first successful attempt.

    Raises:
        RetryTimeoutError: If the deadline passes while the probe keeps raising
            ExpectedError.
        Exception: Any non-ExpectedError raised by the probe, unchanged and without retry.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    last_error: Optional[ExpectedError] = None

    while True:
        try:
            return await probe()
        except ExpectedError as exc:
            last_error = exc
            logger.debug("Still waiting for %s: %s", description, exc)

        remaining = deadline - loop.time()
        if remaining <= 0:
            raise RetryTimeoutError(description, timeout, last_error) from last_error
        await asyncio.sleep(min(interval, remaining))
