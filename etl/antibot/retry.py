"""Upstream error taxonomy, tiered retry classification and retry budgets."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

LOGGER = logging.getLogger(__name__)


class TransientUpstreamError(Exception):
    """Base class for upstream failures that are worth retrying."""


class ConnectionAbortedUpstreamError(TransientUpstreamError):
    """The remote side dropped the connection (usually an anti-bot block)."""


class UpstreamHTTPError(TransientUpstreamError):
    def __init__(self, status_code: int, message: str = "") -> None:
        super().__init__(message or f"HTTP {status_code}")
        self.status_code = status_code


class RateLimitedError(TransientUpstreamError):
    """The upstream answered with 429 or an explicit rate-limit page."""


class UpstreamNotFoundError(Exception):
    """The looked-up entity does not exist upstream. Terminal, not a failure."""


class RetryAction(str, Enum):
    RETRY = "retry"
    NOT_FOUND = "not_found"
    FAIL = "fail"


class FailureKind(str, Enum):
    CONNECTION_ABORTED = "connection_aborted"
    SERVER_ERROR = "server_error"
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"
    OTHER = "other"


@dataclass(frozen=True)
class RetryDecision:
    action: RetryAction
    delay: float = 0.0
    kind: FailureKind = FailureKind.OTHER
    reason: str = ""


@dataclass
class RetryPolicy:
    """Wait times (seconds) per failure kind and the attempt ceiling."""

    max_attempts: int = 25
    connection_abort_delay: float = 3600.0
    server_error_delay: float = 15.0
    rate_limit_delay: float = 30.0
    backoff_base: float = 5.0
    backoff_cap: float = 120.0


# Browser errors arrive as plain messages; these patterns recover the kind.
_ABORTED_PATTERN = re.compile(r"ERR_CONNECTION_ABORTED|ERR_CONNECTION_RESET")
_SERVER_ERROR_PATTERN = re.compile(
    r"(?:HTTP|status(?: code)?)\s*:?\s*5\d\d\b"
    r"|\b5\d\d (?:Internal Server Error|Bad Gateway|Service Unavailable|Gateway Timeout)",
    re.IGNORECASE,
)
_RATE_LIMIT_PATTERN = re.compile(
    r"(?:HTTP|status(?: code)?)\s*:?\s*429\b|too many requests|rate[ -]?limit",
    re.IGNORECASE,
)
_NOT_FOUND_PATTERN = re.compile(r"no property found", re.IGNORECASE)


def _message(error: BaseException) -> str:
    return str(error) or type(error).__name__


class RetryClassifier:
    """Maps a failed attempt to wait-and-retry, terminal not-found, or give up.

    The first matching rule wins:

    1. connection aborted -> ``connection_abort_delay``
    2. upstream 5xx -> ``server_error_delay``
    3. 429 / rate limit -> the rate limiter's ``retry_delay``
    4. not found -> ``NOT_FOUND`` (no retry)
    5. anything else -> ``min(attempt * backoff_base, backoff_cap)``

    Once ``attempt`` reaches ``max_attempts`` every retryable outcome becomes
    ``FAIL`` carrying the last error message.
    """

    def __init__(self, policy: Optional[RetryPolicy] = None, rate_limiter=None) -> None:
        """
        Parameters
        ----------
        policy : RetryPolicy, optional
            Delays and attempt ceiling (defaults if not provided)
        rate_limiter : LaneRateLimiter, optional
            When given, its ``retry_delay`` is used after rate-limit signals
        """
        self.policy = policy or RetryPolicy()
        self.rate_limiter = rate_limiter

    @property
    def rate_limit_delay(self) -> float:
        if self.rate_limiter is not None:
            return self.rate_limiter.retry_delay
        return self.policy.rate_limit_delay

    def kind_of(self, error: BaseException) -> FailureKind:
        message = _message(error)
        if isinstance(error, ConnectionAbortedUpstreamError) or _ABORTED_PATTERN.search(message):
            return FailureKind.CONNECTION_ABORTED
        if isinstance(error, UpstreamHTTPError):
            if error.status_code >= 500:
                return FailureKind.SERVER_ERROR
            if error.status_code == 429:
                return FailureKind.RATE_LIMITED
        if _SERVER_ERROR_PATTERN.search(message):
            return FailureKind.SERVER_ERROR
        if isinstance(error, RateLimitedError) or _RATE_LIMIT_PATTERN.search(message):
            return FailureKind.RATE_LIMITED
        if isinstance(error, UpstreamNotFoundError) or _NOT_FOUND_PATTERN.search(message):
            return FailureKind.NOT_FOUND
        return FailureKind.OTHER

    def delay_for(self, kind: FailureKind, attempt: int) -> float:
        if kind is FailureKind.CONNECTION_ABORTED:
            return self.policy.connection_abort_delay
        if kind is FailureKind.SERVER_ERROR:
            return self.policy.server_error_delay
        if kind is FailureKind.RATE_LIMITED:
            return self.rate_limit_delay
        if kind is FailureKind.NOT_FOUND:
            return 0.0
        return min(attempt * self.policy.backoff_base, self.policy.backoff_cap)

    def classify(self, error: BaseException, attempt: int) -> RetryDecision:
        """Decide what to do after `error` on the 1-based `attempt`."""
        kind = self.kind_of(error)
        message = _message(error)
        if kind is FailureKind.NOT_FOUND:
            return RetryDecision(RetryAction.NOT_FOUND, 0.0, kind, message)
        if attempt >= self.policy.max_attempts:
            return RetryDecision(
                RetryAction.FAIL,
                0.0,
                kind,
                f"Max attempts ({self.policy.max_attempts}) reached: {message}",
            )
        return RetryDecision(RetryAction.RETRY, self.delay_for(kind, attempt), kind, message)


@dataclass
class RetryBudget:
    """Attempt accounting for one unit of work."""

    max_attempts: int = 25
    attempts: int = field(default=0, init=False)

    def start_attempt(self) -> int:
        """Record a new attempt and return its 1-based number."""
        self.attempts += 1
        return self.attempts
