import pytest

from conftest import FakeClock
from exam_quiz.quota import RateLimiter


def make_limiter(rate=60.0, burst=1):
    clock = FakeClock()
    return RateLimiter(rate_per_minute=rate, burst=burst, clock=clock, sleep=clock.sleep), clock


def test_first_call_is_free_then_calls_are_spaced():
    limiter, clock = make_limiter(rate=20.0)
    assert limiter.acquire() == 0
    assert limiter.acquire() == pytest.approx(3.0)
    assert limiter.acquire() == pytest.approx(3.0)
    assert clock.sleeps == [pytest.approx(3.0), pytest.approx(3.0)]


def test_burst_allows_immediate_calls():
    limiter, clock = make_limiter(rate=60.0, burst=3)
    assert [limiter.acquire() for _ in range(3)] == [0, 0, 0]
    assert limiter.acquire() == pytest.approx(1.0)


def test_idle_time_refills_tokens():
    limiter, clock = make_limiter(rate=60.0)
    limiter.acquire()
    clock.now += 10
    assert limiter.acquire() == 0


def test_429_blocks_until_retry_after():
    limiter, clock = make_limiter(rate=60.0)
    limiter.register_429(retry_after=30, message="429 /q")
    assert limiter.is_cooling_down()

    waited = limiter.acquire()
    assert waited == pytest.approx(30.0)

    status = limiter.get_status()
    assert status["last_429_at"] is not None
    assert status["last_error"] == "429 /q"
    assert status["total_calls"] == 1
    assert not limiter.is_cooling_down()


def test_rejects_non_positive_rate():
    with pytest.raises(ValueError):
        RateLimiter(rate_per_minute=0)


def test_try_acquire_refuses_a_long_cooldown_without_sleeping():
    limiter, clock = make_limiter(rate=20.0)
    limiter.register_429(retry_after=600)

    assert limiter.try_acquire(3.0) is False
    assert clock.sleeps == []
    assert limiter.get_status()["total_calls"] == 0
    assert limiter.cooldown_remaining() == pytest.approx(600.0)


def test_try_acquire_waits_within_the_limit():
    limiter, clock = make_limiter(rate=20.0)
    assert limiter.try_acquire(3.0) is True
    assert limiter.try_acquire(3.0) is True
    assert clock.sleeps == [pytest.approx(3.0)]
    assert limiter.try_acquire(1.0) is False
