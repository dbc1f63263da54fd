from __future__ import annotations

import pytest

from voice_server.backend.utils.rate_limit import KeyedRateLimiter


def test_keyed_rate_limiter_disabled_without_rate() -> None:
    limiter = KeyedRateLimiter(rate_per_sec=0.0, burst=5)

    assert limiter.enabled is False
    assert all(limiter.allow("client") for _ in range(100))
    assert limiter.retry_after("client") == 0.0
    assert len(limiter) == 0


def test_keyed_rate_limiter_burst_then_refill() -> None:
    now = 0.0

    def time_fn() -> float:
        return now

    limiter = KeyedRateLimiter(rate_per_sec=2.0, burst=3.0, time_fn=time_fn)

    assert [limiter.allow("a") for _ in range(4)] == [True, True, True, False]
    assert limiter.allow("b")
    assert limiter.retry_after("a") == pytest.approx(0.5)

    now = 0.5
    assert limiter.allow("a")
    assert not limiter.allow("a")

    now = 100.0
    assert [limiter.allow("a") for _ in range(4)] == [True, True, True, False]


def test_keyed_rate_limiter_burst_defaults_to_rate() -> None:
    now = 0.0

    def time_fn() -> float:
        return now

    limiter = KeyedRateLimiter(rate_per_sec=2.0, time_fn=time_fn)

    assert [limiter.allow("a") for _ in range(3)] == [True, True, False]


def test_keyed_rate_limiter_prunes_idle_keys() -> None:
    now = 0.0

    def time_fn() -> float:
        return now

    limiter = KeyedRateLimiter(
        rate_per_sec=1.0, burst=1.0, time_fn=time_fn, max_keys=2, idle_ttl_sec=1.0
    )

    assert limiter.allow("old")
    now = 0.5
    assert limiter.allow("recent")
    now = 1.2
    assert limiter.allow("new")

    assert len(limiter) == 2
    assert limiter._buckets.keys() == {"recent", "new"}


def test_keyed_rate_limiter_prunes_to_max_keys() -> None:
    now = 0.0

    def time_fn() -> float:
        return now

    limiter = KeyedRateLimiter(
        rate_per_sec=1.0, burst=1.0, time_fn=time_fn, max_keys=2, idle_ttl_sec=0.0
    )

    assert limiter.allow("first")
    now = 1.0
    assert limiter.allow("second")
    now = 2.0
    assert limiter.allow("third")

    assert len(limiter) == 2
    assert "first" not in limiter._buckets
    assert "second" in limiter._buckets
    assert "third" in limiter._buckets
