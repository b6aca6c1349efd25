"""Retry and backoff policy applied around each provider call."""

from __future__ import annotations

import logging
from typing import Callable, List, Optional, TypeVar

from .cancellation import CancelToken
from .errors import (
    ErrorCategory,
    ErrorRecord,
    TranslationCancelled,
    TranslationError,
    classify_error,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
RATE_LIMIT_DELAY_SECONDS = 60.0
BASE_RETRY_DELAY_SECONDS = 1.0

Sleeper = Callable[[float, Optional[CancelToken]], bool]


def _default_sleep(seconds: float, cancel_token: Optional[CancelToken]) -> bool:
    token = cancel_token or CancelToken()
    return token.wait(seconds)


class RetryPolicy:
    """Classifies failures and retries the transient ones.

    Rate limits wait a fixed, long delay; network and unknown failures back
    off exponentially from ``base_delay``. Authentication failures and
    oversized input are raised at once, and cancellation always propagates
    as :class:`TranslationCancelled`.
    """

    def __init__(
        self,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        rate_limit_delay: float = RATE_LIMIT_DELAY_SECONDS,
        base_delay: float = BASE_RETRY_DELAY_SECONDS,
        sleep: Optional[Sleeper] = None,
    ) -> None:
        self.max_attempts = max(1, max_attempts)
        self.rate_limit_delay = rate_limit_delay
        self.base_delay = base_delay
        self.sleep = sleep or _default_sleep
        self.records: List[ErrorRecord] = []

    def delay_for(self, category: ErrorCategory, attempt: int) -> float:
        """Delay before the retry that follows failed attempt ``attempt`` (0-based)."""

        if category is ErrorCategory.RATE_LIMITED:
            return self.rate_limit_delay
        return self.base_delay * (2 ** attempt)

    def run(self, op: Callable[[], T], cancel_token: Optional[CancelToken] = None) -> T:
        last_error: Optional[TranslationError] = None

        for attempt in range(self.max_attempts):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()

            try:
                return op()
            except Exception as exc:
                error = classify_error(exc)

            if isinstance(error, TranslationCancelled):
                raise error
            self.records.append(
                ErrorRecord(
                    category=error.category,
                    message=str(error),
                    attempt=attempt + 1,
                )
            )
            if not error.retryable:
                raise error

            last_error = error
            if attempt >= self.max_attempts - 1:
                break

            delay = self.delay_for(error.category, attempt)
            logger.warning(
                "Attempt %s/%s failed (%s). Retrying in %.1fs.",
                attempt + 1,
                self.max_attempts,
                error.category.value,
                delay,
            )
            if self.sleep(delay, cancel_token):
                raise TranslationCancelled()

        assert last_error is not None
        logger.error(
            "Giving up after %s attempts: %s", self.max_attempts, last_error
        )
        raise last_error
