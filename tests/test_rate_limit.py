from datetime import timedelta

import httpx

from appforge_engine.rate_limit import RateLimitBudget, RetryPolicy, is_rate_limited

from conftest import T0


def test_budget_reads_rate_limit_headers():
    budget = RateLimitBudget("github")
    reset_epoch = int((T0 + timedelta(seconds=120)).timestamp())
    budget.update_from_headers(httpx.Headers({"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": str(reset_epoch)}))

    assert budget.remaining == 0
    assert budget.exhausted
    assert budget.seconds_until_reset(T0) == 120


def test_budget_ignores_malformed_headers():
    budget = RateLimitBudget("github", remaining=10)
    budget.update_from_headers(httpx.Headers({"X-RateLimit-Remaining": "lots", "X-RateLimit-Reset": "soon"}))
    assert budget.remaining == 10
    assert budget.reset_at is None
    assert not budget.exhausted


def test_rate_limit_detection():
    assert is_rate_limited(httpx.Response(429))
    assert is_rate_limited(httpx.Response(403, headers={"X-RateLimit-Remaining": "0"}))
    assert is_rate_limited(httpx.Response(403, text="You have exceeded a secondary rate limit"))
    assert not is_rate_limited(httpx.Response(403, text="Bad credentials"))
    assert not is_rate_limited(httpx.Response(500))


def test_backoff_prefers_retry_after_then_reset_then_exponential():
    policy = RetryPolicy(max_retries=3, base_delay=1.0, max_delay=60.0)

    assert policy.backoff_delay(0, httpx.Response(429, headers={"Retry-After": "7"}), None, T0) == 7.0

    budget = RateLimitBudget("github", remaining=0, reset_at=T0 + timedelta(seconds=20))
    assert policy.backoff_delay(0, httpx.Response(403), budget, T0) == 21.0

    assert policy.backoff_delay(0, httpx.Response(429), None, T0) == 1.0
    assert policy.backoff_delay(2, httpx.Response(429), None, T0) == 4.0
    assert policy.backoff_delay(10, httpx.Response(429), None, T0) == 60.0
