from datetime import datetime, timedelta, timezone

from refresh_guard.core.clock import FixedClock
from refresh_guard.services.rate_limiter import SlidingWindowRateLimiter

START = datetime(2026, 3, 1, tzinfo=timezone.utc)


def test_blocks_after_limit_until_window_slides():
    clock = FixedClock(START)
    limiter = SlidingWindowRateLimiter(clock)
    limits = [(2, 60)]

    assert limiter.allow("refresh:1.2.3.4", limits)
    assert limiter.allow("refresh:1.2.3.4", limits)
    assert not limiter.allow("refresh:1.2.3.4", limits)

    clock.advance(timedelta(seconds=61))
    assert limiter.allow("refresh:1.2.3.4", limits)


def test_keys_are_independent():
    limiter = SlidingWindowRateLimiter(FixedClock(START))
    assert limiter.allow("a", [(1, 60)])
    assert not limiter.allow("a", [(1, 60)])
    assert limiter.allow("b", [(1, 60)])


def test_refused_calls_do_not_consume_other_windows():
    clock = FixedClock(START)
    limiter = SlidingWindowRateLimiter(clock)
    limits = [(1, 60), (3, 3600)]

    assert limiter.allow("k", limits)
    assert not limiter.allow("k", limits)
    assert not limiter.allow("k", limits)

    clock.advance(timedelta(seconds=61))
    assert limiter.allow("k", limits)
    clock.advance(timedelta(seconds=61))
    assert limiter.allow("k", limits)
    clock.advance(timedelta(seconds=61))
    assert not limiter.allow("k", limits)


def test_reset_clears_history():
    limiter = SlidingWindowRateLimiter(FixedClock(START))
    limiter.allow("k", [(1, 60)])
    limiter.reset()
    assert limiter.allow("k", [(1, 60)])
