"""Unit tests for core/ratelimit.py -- fixed-window limiter with cooldown.

Covers:
- exactly max_per_window hits per window are allowed; the next one is blocked
- blocked hits report the remaining cooldown, rounded up
- the bucket reopens once the cooldown has fully elapsed
- a window older than window_seconds resets the count
- keys are independent
- sweep() evicts expired blocks and stale windows, keeps live buckets
- enforce() raises RateLimitError with retry_after_seconds
"""

import pytest

from core.errors import RateLimitError
from core.ratelimit import FixedWindowRateLimiter


@pytest.fixture
def limiter():
    return FixedWindowRateLimiter(max_per_window=45, window_seconds=60, cooldown_seconds=180)


def test_forty_five_hits_allowed_forty_sixth_blocked(limiter):
    for i in range(45):
        assert limiter.hit("1.2.3.4", now=1000.0 + i * 0.1).allowed

    decision = limiter.hit("1.2.3.4", now=1005.0)
    assert decision.allowed is False
    assert decision.retry_after_seconds == 180


def test_blocked_hit_reports_remaining_cooldown_rounded_up(limiter):
    for _ in range(46):
        limiter.hit("k", now=0.0)

    decision = limiter.hit("k", now=10.5)
    assert decision.allowed is False
    assert decision.retry_after_seconds == 170  # ceil(169.5)


def test_denied_hits_do_not_extend_the_block(limiter):
    for _ in range(46):
        limiter.hit("k", now=0.0)
    for t in range(1, 180, 20):
        limiter.hit("k", now=float(t))

    assert limiter.bucket("k").blocked_until == 180.0


def test_request_after_cooldown_is_allowed_with_fresh_window(limiter):
    for _ in range(46):
        limiter.hit("k", now=0.0)

    decision = limiter.hit("k", now=181.0)
    assert decision.allowed is True
    bucket = limiter.bucket("k")
    assert bucket.count == 1
    assert bucket.window_start == 181.0
    assert bucket.blocked_until is None


def test_cooldown_boundary_is_inclusive(limiter):
    for _ in range(46):
        limiter.hit("k", now=0.0)

    assert limiter.hit("k", now=179.5).allowed is False
    assert limiter.hit("k", now=180.0).allowed is True


def test_window_resets_after_window_seconds(limiter):
    for _ in range(45):
        assert limiter.hit("k", now=0.0).allowed

    # Still inside the window at exactly 60s; a 46th hit here would block.
    assert limiter.bucket("k").count == 45
    assert limiter.hit("k", now=60.5).allowed
    assert limiter.bucket("k").count == 1


def test_fixed_window_allows_burst_across_boundary(limiter):
    for _ in range(45):
        assert limiter.hit("k", now=59.0).allowed
    # Window started at 59.0 -- a fresh window opens after 119.0.
    for _ in range(45):
        assert limiter.hit("k", now=119.5).allowed


def test_keys_are_independent(limiter):
    for _ in range(46):
        limiter.hit("a", now=0.0)

    assert limiter.hit("a", now=1.0).allowed is False
    assert limiter.hit("b", now=1.0).allowed is True


def test_sweep_evicts_expired_blocks_and_stale_windows(limiter):
    for _ in range(46):
        limiter.hit("blocked", now=0.0)
    limiter.hit("stale", now=0.0)
    limiter.hit("live", now=150.0)

    evicted = limiter.sweep(now=200.0)

    assert evicted == 2
    assert limiter.bucket("blocked") is None
    assert limiter.bucket("stale") is None
    assert limiter.bucket("live") is not None
    assert len(limiter) == 1


def test_sweep_keeps_active_block(limiter):
    for _ in range(46):
        limiter.hit("blocked", now=0.0)

    assert limiter.sweep(now=100.0) == 0
    assert limiter.hit("blocked", now=100.0).retry_after_seconds == 80


def test_enforce_raises_rate_limit_error(limiter):
    for _ in range(45):
        limiter.enforce("k", now=0.0)

    with pytest.raises(RateLimitError) as exc_info:
        limiter.enforce("k", now=0.0)
    assert exc_info.value.retry_after_seconds == 180
    assert exc_info.value.status_code == 429
    assert exc_info.value.detail == {"retryAfterSeconds": 180}


def test_default_clock_is_used_when_now_omitted():
    ticks = iter([0.0, 0.0, 30.0])
    limiter = FixedWindowRateLimiter(max_per_window=1, window_seconds=60, cooldown_seconds=20, clock=lambda: next(ticks))

    assert limiter.hit("k").allowed
    assert limiter.hit("k").retry_after_seconds == 20
    assert limiter.hit("k").allowed


def test_rejects_non_positive_quota():
    with pytest.raises(ValueError):
        FixedWindowRateLimiter(max_per_window=0)
