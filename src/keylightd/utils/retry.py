import asyncio
import functools
import random
from typing import Any, Awaitable, Callable, Tuple, Type

from ..utils.logging import get_logger

logger = get_logger(__name__)


def compute_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
    jitter: bool = False
) -> float:
    """
    Delay before retry number ``attempt`` (1-based).

    attempt 1 waits ``base_delay``, every further attempt multiplies by
    ``exponential_base``, capped at ``max_delay``. With ``jitter`` the delay
    moves by up to 25% either way but never leaves [0, max_delay].
    """
    if attempt < 1:
        return 0.0
    # Cap the exponent so huge attempt counts don't overflow
    exponent = min(attempt - 1, 64)
    delay = min(base_delay * (exponential_base ** exponent), max_delay)

    if jitter:
        delay += random.uniform(-delay * 0.25, delay * 0.25)

    return max(0.0, min(delay, max_delay))


def async_retry_with_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    exceptions: Tuple[Type[BaseException], ...] = (Exception,)
) -> Callable:
    """
    Retry an async function on ``exceptions``, sleeping ``compute_backoff``
    between attempts. The last error is re-raised after ``max_retries``
    retries; anything not listed in ``exceptions`` propagates at once.
    """
    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(1, max_retries + 2):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt > max_retries:
                        logger.debug(f"Giving up on {func.__name__} after {max_retries} retries: {e}")
                        raise
                    delay = compute_backoff(attempt, base_delay, max_delay, exponential_base, jitter)
                    logger.debug(f"{func.__name__} failed ({e}), retry {attempt} in {delay:.2f}s")
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
