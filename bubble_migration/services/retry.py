"""Retry policy shared by the legacy API pager and the destination writer."""

import logging
import time
from typing import Callable, Optional, TypeVar

from urllib3.exceptions import MaxRetryError
from urllib3.util.retry import Retry

from ..errors import TransientIOError
from ..models.migration import RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """
    Bounded retry with exponential backoff, counted by a urllib3 ``Retry``.

    Only ``TransientIOError`` is retried; every other exception propagates on
    the first attempt. When attempts run out the last ``TransientIOError`` is
    re-raised and the caller decides how fatal that is.

    Backoff follows urllib3: no wait before the first retry, then
    ``backoff_factor * 2 ** (failures - 1)`` capped at ``max_backoff``.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        backoff_factor: float = 1.0,
        max_backoff: float = 30.0,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.max_attempts = max(1, max_attempts)
        self.backoff_factor = backoff_factor
        self.max_backoff = max_backoff
        self._sleep = sleep or time.sleep

    @classmethod
    def from_config(cls, config: RetryConfig, sleep: Optional[Callable[[float], None]] = None) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            backoff_factor=config.backoff_factor,
            max_backoff=config.max_backoff,
            sleep=sleep,
        )

    def new_retry(self) -> Retry:
        """Fresh urllib3 retry state for one call."""
        return Retry(
            total=self.max_attempts - 1,
            backoff_factor=self.backoff_factor,
            backoff_max=self.max_backoff,
            raise_on_status=False,
        )

    def call(self, func: Callable[[], T], description: str = "operation") -> T:
        """
        Call ``func`` until it succeeds or attempts are exhausted.

        Args:
            func: Zero-argument callable
            description: Used in log messages

        Returns:
            Whatever ``func`` returns
        """
        retry = self.new_retry()
        while True:
            try:
                return func()
            except TransientIOError as e:
                try:
                    retry = retry.increment(error=e)
                except MaxRetryError:
                    logger.error(f"{description} failed after {self.max_attempts} attempts: {e}")
                    raise e
                attempt = len(retry.history)
                wait = retry.get_backoff_time()
                logger.warning(
                    f"{description} failed ({e}), retrying in {wait:.1f}s "
                    f"(attempt {attempt}/{self.max_attempts})"
                )
                if wait > 0:
                    self._sleep(wait)
