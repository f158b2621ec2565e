import pytest

from etl.antibot.pacing import LaneRateLimiter
from etl.antibot.retry import (
    ConnectionAbortedUpstreamError,
    FailureKind,
    RateLimitedError,
    RetryAction,
    RetryBudget,
    RetryClassifier,
    RetryPolicy,
    UpstreamHTTPError,
)
from etl.valuation_scraper.browser import PropertyNotFoundError


@pytest.fixture
def classifier():
    return RetryClassifier(RetryPolicy())


@pytest.mark.parametrize(
    "error, kind, delay",
    [
        (ConnectionAbortedUpstreamError("dropped"), FailureKind.CONNECTION_ABORTED, 3600.0),
        (Exception("net::ERR_CONNECTION_ABORTED at https://www.property.com.au"), FailureKind.CONNECTION_ABORTED, 3600.0),
        (UpstreamHTTPError(502), FailureKind.SERVER_ERROR, 15.0),
        (Exception("HTTP 500 from https://www.property.com.au"), FailureKind.SERVER_ERROR, 15.0),
        (Exception("503 Service Unavailable"), FailureKind.SERVER_ERROR, 15.0),
        (UpstreamHTTPError(429), FailureKind.RATE_LIMITED, 30.0),
        (RateLimitedError("slow down"), FailureKind.RATE_LIMITED, 30.0),
        (Exception("Rate limit exceeded"), FailureKind.RATE_LIMITED, 30.0),
    ],
)
def test_tiered_delays(classifier, error, kind, delay):
    decision = classifier.classify(error, attempt=1)
    assert decision.action is RetryAction.RETRY
    assert decision.kind is kind
    assert decision.delay == delay


def test_first_matching_rule_wins(classifier):
    decision = classifier.classify(Exception("ERR_CONNECTION_ABORTED after HTTP 500"), attempt=1)
    assert decision.kind is FailureKind.CONNECTION_ABORTED


def test_address_numbers_are_not_status_codes(classifier):
    decision = classifier.classify(Exception("Timeout waiting for 500 George St"), attempt=2)
    assert decision.kind is FailureKind.OTHER
    assert decision.delay == 10.0


@pytest.mark.parametrize("attempt, delay", [(1, 5.0), (3, 15.0), (24, 120.0)])
def test_generic_backoff_grows_and_caps(classifier, attempt, delay):
    assert classifier.classify(TimeoutError(), attempt).delay == delay


def test_not_found_is_terminal_even_on_first_attempt(classifier):
    decision = classifier.classify(PropertyNotFoundError("1 Nowhere Rd"), attempt=1)
    assert decision.action is RetryAction.NOT_FOUND
    assert decision.delay == 0.0


def test_not_found_wins_over_attempt_ceiling(classifier):
    decision = classifier.classify(PropertyNotFoundError("1 Nowhere Rd"), attempt=25)
    assert decision.action is RetryAction.NOT_FOUND


def test_attempt_ceiling_turns_retry_into_fail(classifier):
    decision = classifier.classify(UpstreamHTTPError(503, "HTTP 503 upstream"), attempt=25)
    assert decision.action is RetryAction.FAIL
    assert decision.reason == "Max attempts (25) reached: HTTP 503 upstream"


def test_rate_limit_delay_comes_from_limiter():
    limiter = LaneRateLimiter(20, retry_delay=45.0)
    classifier = RetryClassifier(RetryPolicy(), rate_limiter=limiter)
    assert classifier.classify(Exception("HTTP 429"), attempt=1).delay == 45.0


def test_custom_policy():
    policy = RetryPolicy(max_attempts=3, server_error_delay=1.0, backoff_base=2.0, backoff_cap=3.0)
    classifier = RetryClassifier(policy)
    assert classifier.classify(UpstreamHTTPError(500), 1).delay == 1.0
    assert classifier.classify(ValueError("x"), 2).delay == 3.0
    assert classifier.classify(ValueError("x"), 3).action is RetryAction.FAIL


def test_retry_budget_counts_attempts():
    budget = RetryBudget(max_attempts=2)
    assert budget.start_attempt() == 1
    assert budget.start_attempt() == 2
    assert budget.attempts == 2
    assert budget.max_attempts == 2
