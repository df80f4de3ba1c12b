from __future__ import annotations

import threading
import time

import pytest

from slack_mirror.services.rate_limiter import RateLimiter
from tests.conftest import FakeClock


def test_first_permit_is_immediate() -> None:
    clock = FakeClock()
    limiter = RateLimiter(1.2, clock=clock, sleep=clock.sleep)

    granted = limiter.acquire()

    assert granted == pytest.approx(1000.0)
    assert clock.sleeps == []


def test_sequential_permits_are_spaced_by_interval() -> None:
    clock = FakeClock()
    limiter = RateLimiter(1.2, clock=clock, sleep=clock.sleep)

    grants = [limiter.acquire() for _ in range(5)]

    gaps = [later - earlier for earlier, later in zip(grants, grants[1:])]
    assert all(gap == pytest.approx(1.2) for gap in gaps)
    assert grants[-1] - grants[0] == pytest.approx(4.8)


def test_idle_limiter_does_not_accumulate_credit() -> None:
    clock = FakeClock()
    limiter = RateLimiter(1.0, clock=clock, sleep=clock.sleep)

    limiter.acquire()
    clock.advance(30.0)
    first_after_idle = limiter.acquire()
    second_after_idle = limiter.acquire()

    assert second_after_idle - first_after_idle == pytest.approx(1.0)


def test_concurrent_callers_share_one_schedule() -> None:
    """Five threads racing for permits still get them 1.2s apart."""
    clock = FakeClock()
    clock_lock = threading.Lock()
    limiter = RateLimiter(1.2, clock=clock, sleep=lambda _seconds: None)
    grants: list[float] = []
    start = threading.Barrier(5)

    def _caller() -> None:
        start.wait()
        granted = limiter.acquire()
        with clock_lock:
            grants.append(granted)

    threads = [threading.Thread(target=_caller) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    grants.sort()
    assert len(grants) == 5
    assert grants[-1] - grants[0] >= 4.8 - 1e-9
    assert len({round(granted, 6) for granted in grants}) == 5


def test_real_clock_spacing() -> None:
    limiter = RateLimiter(0.05)

    started = time.monotonic()
    for _ in range(3):
        limiter.acquire()

    assert time.monotonic() - started >= 0.1 - 0.005


def test_negative_interval_rejected() -> None:
    with pytest.raises(ValueError):
        RateLimiter(-1.0)
