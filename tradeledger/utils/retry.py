import functools
import random
import time
from typing import Callable, Optional, Tuple, Type

from tradeledger.exceptions import OperationalError
from tradeledger.monitoring.logger import get_logger

logger = get_logger(__name__)


def retry_on_transient_errors(
    max_retries: int = 3,
    base_delay: float = 0.5,
    max_backoff: float = 10.0,
    transient_errors: Optional[Tuple[Type[Exception], ...]] = None,
    sleep: Callable[[float], None] = time.sleep,
):
    """
    Decorator to retry functions on transient errors.

    Implements exponential backoff with jitter.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial wait time in seconds
        max_backoff: Maximum wait time in seconds
        transient_errors: Tuple of exception types to retry on.
                          Defaults to OperationalError.
        sleep: Wait function (tests pass a no-op)
    """
    retry_on = transient_errors or (OperationalError,)

    def decorator(func: Callable):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            retry_count = 0
            backoff = base_delay

            while True:
                try:
                    return func(*args, **kwargs)
                except retry_on as e:
                    if retry_count >= max_retries:
                        logger.warning(
                            f"Max retries ({max_retries}) exhausted for {func.__name__}",
                            error=str(e),
                        )
                        raise

                    logger.warning(
                        f"Transient error in {func.__name__}, retrying ({retry_count + 1}/{max_retries})",
                        error=str(e),
                        wait=f"{backoff:.2f}s",
                    )
                    sleep(backoff)

                    retry_count += 1
                    backoff = min(backoff * 2, max_backoff)
                    backoff += random.uniform(0, 0.5)  # Jitter

        return wrapper
    return decorator
