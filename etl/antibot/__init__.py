"""Anti-bot toolkit for the valuation scraper.

- Desktop device fingerprinting for stealth browser contexts
- Per-lane request pacing
- Upstream error taxonomy and tiered retry classification
"""

from .fingerprint import DeviceFingerprint, create_stealth_context
from .pacing import LaneRateLimiter
from .retry import (
    ConnectionAbortedUpstreamError,
    RateLimitedError,
    RetryAction,
    RetryBudget,
    RetryClassifier,
    RetryDecision,
    RetryPolicy,
    TransientUpstreamError,
    UpstreamHTTPError,
    UpstreamNotFoundError,
)

__all__ = [
    "DeviceFingerprint",
    "create_stealth_context",
    "LaneRateLimiter",
    "ConnectionAbortedUpstreamError",
    "RateLimitedError",
    "RetryAction",
    "RetryBudget",
    "RetryClassifier",
    "RetryDecision",
    "RetryPolicy",
    "TransientUpstreamError",
    "UpstreamHTTPError",
    "UpstreamNotFoundError",
]
