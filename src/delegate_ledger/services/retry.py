# services/retry.py
import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from delegate_ledger.errors import (
    ConfigurationError,
    NonRetryableProviderError,
    PersistenceError,
    RetryExhaustedError,
)

T = TypeVar("T")

NON_RETRYABLE_MARKERS = ("invalid", "bad request", "unsupported")

DEFAULT_MAX_RETRIES = 5
DEFAULT_INITIAL_DELAY = 1.0
GET_LOGS_INITIAL_DELAY = 2.0
MAX_DELAY = 30.0


def is_non_retryable(exc: BaseException) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in NON_RETRYABLE_MARKERS)


def retry_with_backoff(
    fn: Callable[[], T],
    max_retries: int = DEFAULT_MAX_RETRIES,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    description: str = "rpc call",
    logger: Optional[logging.Logger] = None,
    sleep: Callable[[float], None] = time.sleep,
    jitter: float = 0.0,
) -> T:
    """
    Call ``fn`` until it succeeds, doubling the delay after each failure.

    Raises NonRetryableProviderError straight away for malformed/unsupported
    requests and RetryExhaustedError once ``max_retries`` attempts have failed.
    Configuration and persistence errors are not provider failures and
    propagate unchanged.
    """
    logger = logger or logging.getLogger(__name__)
    attempts = max(1, max_retries)
    last_exc: Optional[Exception] = None

    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except (ConfigurationError, PersistenceError, NonRetryableProviderError):
            raise
        except Exception as exc:
            if is_non_retryable(exc):
                raise NonRetryableProviderError(f"{description}: {exc}") from exc

            last_exc = exc
            if attempt == attempts:
                break

            delay = min(initial_delay * 2 ** (attempt - 1), MAX_DELAY)
            if jitter:
                delay = delay * (1 + random.uniform(-jitter, jitter))
            logger.warning(
                f"{description} failed (attempt {attempt}/{attempts}), "
                f"retrying in {delay:.1f}s: {exc}"
            )
            sleep(delay)

    raise RetryExhaustedError(
        f"{description} failed after {attempts} attempts: {last_exc}", attempts
    ) from last_exc


@dataclass
class RetryPolicy:
    """Retry settings shared by everything that talks to the log source."""

    max_retries: int = DEFAULT_MAX_RETRIES
    initial_delay: float = DEFAULT_INITIAL_DELAY
    get_logs_initial_delay: float = GET_LOGS_INITIAL_DELAY
    sleep: Callable[[float], None] = time.sleep

    def call(self, fn: Callable[[], T], description: str, logger=None) -> T:
        return retry_with_backoff(
            fn,
            max_retries=self.max_retries,
            initial_delay=self.initial_delay,
            description=description,
            logger=logger,
            sleep=self.sleep,
        )

    def call_get_logs(self, fn: Callable[[], T], description: str, logger=None) -> T:
        return retry_with_backoff(
            fn,
            max_retries=self.max_retries,
            initial_delay=self.get_logs_initial_delay,
            description=description,
            logger=logger,
            sleep=self.sleep,
        )
