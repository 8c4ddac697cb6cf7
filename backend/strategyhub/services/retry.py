"""Retry classification and exponential backoff for exchange calls."""

import random
import re
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .errors import ExchangeError, ExchangeErrorCode


@dataclass
class BackoffOptions:
    """Exponential backoff settings (milliseconds)."""
    base_ms: int = 1000
    max_ms: int = 30000
    jitter_ratio: float = 0.2


def compute_backoff_ms(
    attempt: int,
    options: Optional[BackoffOptions] = None,
    retry_after_ms: Optional[int] = None,
    rng: Callable[[], float] = random.random,
) -> int:
    """Delay before the given retry attempt.

    The exponential delay is capped at max_ms, jittered by +/- jitter_ratio/2,
    and never shorter than an exchange-provided retry_after_ms.

    Args:
        attempt: 1-based attempt number
        options: Backoff settings
        retry_after_ms: Minimum delay requested by the exchange
        rng: Random source returning [0, 1)

    Returns:
        Delay in milliseconds (>= 0)
    """
    options = options or BackoffOptions()
    safe_attempt = max(1, int(attempt))

    exponential = min(options.max_ms, options.base_ms * (2 ** (safe_attempt - 1)))
    jitter = exponential * options.jitter_ratio * (rng() - 0.5)
    delay = round(exponential + jitter)

    if retry_after_ms:
        delay = max(delay, int(retry_after_ms))
    return max(0, delay)


@dataclass
class RetryInfo:
    """Classification of a failed exchange call."""
    retryable: bool
    code: Optional[str] = None
    message: str = ""
    retry_after_ms: Optional[int] = None


_RATE_LIMIT_PATTERN = re.compile(r"rate\s*limit|too\s*many\s*requests|429", re.IGNORECASE)
_TIMEOUT_PATTERN = re.compile(r"timeout|timed\s*out|ETIMEDOUT", re.IGNORECASE)
_TRANSIENT_PATTERN = re.compile(
    r"unavailable|503|network|ECONNRESET|ECONNREFUSED|EAI_AGAIN|socket hang up",
    re.IGNORECASE,
)


def classify_retryable_error(error: BaseException) -> RetryInfo:
    """Decide whether a failed exchange call should be retried.

    Typed errors carry their own retryable flag; anything else is judged by
    its message.
    """
    code = None
    retry_after_ms = None
    flagged = False

    if isinstance(error, ExchangeError):
        code = error.code.value
        retry_after_ms = error.retry_after_ms
        flagged = error.retryable
        message = error.message
    else:
        message = str(error) or type(error).__name__

    is_rate_limit = code == ExchangeErrorCode.RATE_LIMIT.value or bool(_RATE_LIMIT_PATTERN.search(message))
    is_timeout = code == ExchangeErrorCode.TIMEOUT.value or bool(_TIMEOUT_PATTERN.search(message))
    is_transient = (
        code == ExchangeErrorCode.EXCHANGE_UNAVAILABLE.value
        or bool(_TRANSIENT_PATTERN.search(message))
    )

    return RetryInfo(
        retryable=flagged or is_rate_limit or is_timeout or is_transient,
        code=code,
        message=message,
        retry_after_ms=retry_after_ms,
    )


@dataclass
class RetryState:
    attempts: int = 0
    next_at_ms: int = 0


class RetryTracker:
    """In-memory attempt counters and backoff deadlines, keyed by intent or bot."""

    def __init__(self, now_ms: Callable[[], int], options: Optional[BackoffOptions] = None):
        self._now_ms = now_ms
        self.options = options or BackoffOptions()
        self._states: Dict[str, RetryState] = {}

    def attempts(self, key: str) -> int:
        state = self._states.get(key)
        return state.attempts if state else 0

    def in_backoff(self, key: str) -> bool:
        state = self._states.get(key)
        return bool(state) and self._now_ms() < state.next_at_ms

    def record_failure(self, key: str, retry_after_ms: Optional[int] = None) -> int:
        """Count a failed attempt and schedule the next one.

        Returns:
            The attempt count after this failure
        """
        state = self._states.setdefault(key, RetryState())
        state.attempts += 1
        delay = compute_backoff_ms(state.attempts, self.options, retry_after_ms)
        state.next_at_ms = self._now_ms() + delay
        return state.attempts

    def next_at_ms(self, key: str) -> Optional[int]:
        state = self._states.get(key)
        return state.next_at_ms if state else None

    def clear(self, key: str) -> None:
        self._states.pop(key, None)
