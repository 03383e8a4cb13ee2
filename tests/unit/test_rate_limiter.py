"""
Unit Tests for Rate Limiter

Tests for the sliding-window budgets and the tenant command ceiling.
"""

import threading

import pytest

from sitevoice.core.config import PipelineConfig
from sitevoice.core.rate_limiter import (
    DAY_SECONDS,
    MINUTE_SECONDS,
    LimitScope,
    RateLimitDecision,
    RateLimiter,
    RateLimitPolicy,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


class TestRateLimitDecision:
    def test_allow(self):
        decision = RateLimitDecision.allow()

        assert decision.allowed
        assert decision.scope == LimitScope.NONE

    def test_deny_never_negative(self):
        decision = RateLimitDecision.deny(-3.0, LimitScope.PROVIDER, MINUTE_SECONDS)

        assert not decision.allowed
        assert decision.retry_after == 0.0


class TestRateLimitPolicy:
    def test_override(self):
        policy = RateLimitPolicy(overrides={("remote-asr", "transcription"): (5, 50)})

        minute, day = policy.windows_for("remote-asr", "transcription")

        assert minute.max_requests == 5
        assert day.max_requests == 50
        assert policy.windows_for("remote-nlu", "intent")[0].max_requests == 30

    def test_from_config(self):
        config = PipelineConfig(requests_per_minute=7, requests_per_day=70, tenant_daily_commands=9)

        policy = RateLimitPolicy.from_config(config)

        assert (policy.requests_per_minute, policy.requests_per_day, policy.tenant_daily_commands) == (7, 70, 9)


class TestRateLimiter:
    """Tests for RateLimiter."""

    def test_minute_window(self, clock):
        limiter = RateLimiter(RateLimitPolicy(requests_per_minute=2), clock=clock)

        assert limiter.try_consume("acme", "remote-asr", "transcription").allowed
        clock.advance(10)
        assert limiter.try_consume("acme", "remote-asr", "transcription").allowed

        denied = limiter.try_consume("acme", "remote-asr", "transcription")

        assert not denied.allowed
        assert denied.scope == LimitScope.PROVIDER
        assert denied.window_seconds == MINUTE_SECONDS
        assert denied.retry_after == pytest.approx(50.0)

    def test_window_slides(self, clock):
        limiter = RateLimiter(RateLimitPolicy(requests_per_minute=1), clock=clock)
        limiter.try_consume("acme", "remote-asr", "transcription")

        clock.advance(MINUTE_SECONDS)

        assert limiter.try_consume("acme", "remote-asr", "transcription").allowed

    def test_day_window(self, clock):
        limiter = RateLimiter(RateLimitPolicy(requests_per_minute=100, requests_per_day=2), clock=clock)
        limiter.try_consume("acme", "remote-asr", "transcription")
        clock.advance(120)
        limiter.try_consume("acme", "remote-asr", "transcription")
        clock.advance(120)

        denied = limiter.try_consume("acme", "remote-asr", "transcription")

        assert denied.window_seconds == DAY_SECONDS
        assert denied.retry_after == pytest.approx(DAY_SECONDS - 240)

    def test_denial_records_nothing(self, clock):
        limiter = RateLimiter(RateLimitPolicy(requests_per_minute=100, requests_per_day=1), clock=clock)
        limiter.try_consume("acme", "remote-asr", "transcription")

        limiter.try_consume("acme", "remote-asr", "transcription")

        assert limiter.remaining("acme", "remote-asr", "transcription")[MINUTE_SECONDS] == 99

    def test_budgets_are_per_tenant_and_service(self, clock):
        limiter = RateLimiter(RateLimitPolicy(requests_per_minute=1), clock=clock)
        limiter.try_consume("acme", "remote-asr", "transcription")

        assert limiter.try_consume("globex", "remote-asr", "transcription").allowed
        assert limiter.try_consume("acme", "remote-nlu", "intent").allowed
        assert not limiter.try_consume("acme", "remote-asr", "transcription").allowed

    def test_tenant_ceiling(self, clock):
        limiter = RateLimiter(RateLimitPolicy(tenant_daily_commands=2), clock=clock)

        assert limiter.try_admit("acme").allowed
        assert limiter.try_admit("acme").allowed
        denied = limiter.try_admit("acme")

        assert not denied.allowed
        assert denied.scope == LimitScope.TENANT
        assert limiter.try_admit("globex").allowed

    def test_concurrent_consumers_never_exceed_cap(self):
        limiter = RateLimiter(RateLimitPolicy(requests_per_minute=25))
        allowed = []
        lock = threading.Lock()

        def worker():
            for _ in range(10):
                decision = limiter.try_consume("acme", "remote-asr", "transcription")
                with lock:
                    allowed.append(decision.allowed)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sum(allowed) == 25
        assert len(allowed) == 80

    def test_quota_tracker(self, clock):
        limiter = RateLimiter(clock=clock)

        limiter.record_call("acme", "remote-asr", "transcription", 120.0, success=True)
        limiter.record_call("acme", "remote-asr", "transcription", 80.0, success=False)
        limiter.record_call("acme", "whisper", "transcription", 900.0, success=True, remote=False)

        calls = limiter.usage("acme")["calls"]
        assert calls["remote-asr/transcription"] == {
            "remote_calls": 2,
            "local_calls": 0,
            "failures": 1,
            "mean_latency_ms": 100.0,
        }
        assert calls["whisper/transcription"]["local_calls"] == 1

    def test_usage_budgets(self, clock):
        limiter = RateLimiter(clock=clock)
        limiter.try_consume("acme", "remote-asr", "transcription")

        budgets = limiter.usage("acme")["budgets"]

        assert budgets["remote-asr/transcription/60s"] == 1
        assert budgets["remote-asr/transcription/86400s"] == 1

    def test_reset_one_tenant(self, clock):
        limiter = RateLimiter(RateLimitPolicy(requests_per_minute=1), clock=clock)
        limiter.try_consume("acme", "remote-asr", "transcription")
        limiter.try_consume("globex", "remote-asr", "transcription")

        limiter.reset("acme")

        assert limiter.try_consume("acme", "remote-asr", "transcription").allowed
        assert not limiter.try_consume("globex", "remote-asr", "transcription").allowed

    def test_expire_drops_empty_windows(self, clock):
        limiter = RateLimiter(clock=clock)
        limiter.try_consume("acme", "remote-asr", "transcription")

        clock.advance(MINUTE_SECONDS + 1)

        assert limiter.expire() == 1
