"""Tests for RetryPolicy and with_retry."""

import pytest

from tern.errors import Authentication, NetworkTransient, RateLimited
from tern.providers.retry import RetryPolicy, with_retry


class _Recorder:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _flaky(*outcomes):
    """Return an async callable that raises/returns the outcomes in order."""
    remaining = list(outcomes)
    calls = []

    async def call():
        calls.append(1)
        outcome = remaining.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    call.calls = calls
    return call


class TestRetryPolicy:
    def test_backoff_grows_and_caps(self):
        policy = RetryPolicy(initial_delay=1.0, multiplier=2.0, max_delay=5.0, jitter=0.0)
        assert [policy.backoff(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_stays_in_band(self):
        policy = RetryPolicy(initial_delay=1.0, jitter=0.1)
        for _ in range(50):
            assert 0.9 <= policy.backoff(1) <= 1.1

    def test_retry_after_wins_but_is_capped(self):
        policy = RetryPolicy(initial_delay=0.5, max_delay=30.0, jitter=0.0)
        assert policy.delay_for(RateLimited("slow", retry_after=4.0), 1) == 4.0
        assert policy.delay_for(RateLimited("slow", retry_after=3600.0), 1) == 30.0
        assert policy.delay_for(RateLimited("slow"), 2) == 1.0

    def test_from_settings(self, settings):
        policy = RetryPolicy.from_settings(settings.model_copy(update={"retry_max_attempts": 5}))
        assert policy.max_attempts == 5
        assert policy.jitter == 0.0


class TestWithRetry:
    async def test_transient_then_success(self):
        sleep = _Recorder()
        call = _flaky(NetworkTransient("reset"), NetworkTransient("reset"), "ok")
        policy = RetryPolicy(initial_delay=0.1, jitter=0.0)

        assert await with_retry(call, policy, sleep=sleep) == "ok"
        assert len(call.calls) == 3
        assert sleep.delays == pytest.approx([0.1, 0.2])

    async def test_non_retryable_propagates_immediately(self):
        sleep = _Recorder()
        call = _flaky(Authentication("bad key", status_code=401), "never")

        with pytest.raises(Authentication):
            await with_retry(call, RetryPolicy(), sleep=sleep)
        assert len(call.calls) == 1
        assert sleep.delays == []

    async def test_exhaustion_raises_last_error(self):
        sleep = _Recorder()
        last = RateLimited("still limited", retry_after=2.0)
        call = _flaky(NetworkTransient("first"), last)

        with pytest.raises(RateLimited) as exc:
            await with_retry(call, RetryPolicy(max_attempts=2, jitter=0.0), sleep=sleep)
        assert exc.value is last
        assert len(sleep.delays) == 1
