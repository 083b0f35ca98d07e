#!filepath: tests/test_rate_limiter.py
from __future__ import annotations

import threading

from ontario_obits_app.llm.rate_limiter import PoolBudgets, TokenBudgetLimiter
from ontario_obits_app.settings import RateLimiterConfig


def _limiter(conn, db_path, clock, **cfg) -> TokenBudgetLimiter:
    return TokenBudgetLimiter(db_path, RateLimiterConfig(**cfg), clock=clock)


def test_pool_split_and_minimum() -> None:
    assert PoolBudgets.from_config(RateLimiterConfig()) == PoolBudgets(total=5500, cron=4400, chatbot=1100)
    assert PoolBudgets.from_config(RateLimiterConfig(tpm_budget=100)).total == 5500
    assert PoolBudgets.from_config(RateLimiterConfig(tpm_budget=1000)) == PoolBudgets(total=1000, cron=800, chatbot=200)


def test_reservations_share_the_cron_pool(conn, db_path, clock) -> None:
    lim = _limiter(conn, db_path, clock)

    assert lim.may_proceed(2000, "rewriter")
    assert lim.may_proceed(2000, "authenticity")
    assert not lim.may_proceed(401, "rewriter")
    assert lim.may_proceed(400, "Rewriter ")

    stats = lim.get_stats()
    assert stats["cron_used"] == 4400
    assert stats["cron_remaining"] == 0
    assert stats["chatbot_used"] == 0
    assert stats["calls"] == {"rewriter": 2, "authenticity": 1}

    assert lim.may_proceed(1100, "chatbot")
    assert not lim.may_proceed(1, "chatbot")


def test_unknown_consumer_does_not_touch_window(conn, db_path, clock) -> None:
    lim = _limiter(conn, db_path, clock)
    assert not lim.may_proceed(10, "scraper")
    assert lim.current_window() is None
    assert not lim.record_usage(10, "scraper", 5)
    assert not lim.may_proceed(0, "rewriter")
    assert lim.current_window() is None


def test_record_usage_adjusts_by_difference(conn, db_path, clock) -> None:
    lim = _limiter(conn, db_path, clock)
    assert lim.may_proceed(1000, "rewriter")

    assert lim.record_usage(700, "rewriter", 1000)
    assert lim.get_stats()["cron_used"] == 700

    assert lim.record_usage(900, "rewriter", 700)
    assert lim.get_stats()["cron_used"] == 900

    assert lim.release_reservation(5000, "rewriter")
    assert lim.get_stats()["cron_used"] == 0


def test_usage_may_exceed_budget(conn, db_path, clock) -> None:
    lim = _limiter(conn, db_path, clock)
    assert lim.may_proceed(4000, "rewriter")
    assert lim.record_usage(6000, "rewriter", 4000)
    assert lim.get_stats()["cron_used"] == 6000
    assert not lim.may_proceed(1, "authenticity")


def test_window_rolls_over(conn, db_path, clock) -> None:
    lim = _limiter(conn, db_path, clock)
    assert lim.may_proceed(4400, "rewriter")
    assert not lim.may_proceed(1, "rewriter")
    assert 0 < lim.seconds_until_reset() <= 60

    clock.advance(61)
    assert lim.current_window() is None
    assert lim.seconds_until_reset() == 0.0
    assert lim.record_usage(100, "rewriter", 4400)
    assert lim.current_window() is None

    assert lim.may_proceed(4400, "rewriter")
    assert lim.get_stats()["cron_used"] == 4400


def test_late_positive_usage_opens_window(conn, db_path, clock) -> None:
    lim = _limiter(conn, db_path, clock)
    assert lim.record_usage(300, "chatbot", 100)
    assert lim.get_stats()["chatbot_used"] == 200


def test_reset_clears_window(conn, db_path, clock) -> None:
    lim = _limiter(conn, db_path, clock)
    assert lim.may_proceed(100, "rewriter")
    lim.reset()
    assert lim.current_window() is None
    assert lim.get_stats()["version"] == 0


def test_versions_increase(conn, db_path, clock) -> None:
    lim = _limiter(conn, db_path, clock)
    lim.may_proceed(10, "rewriter")
    first = lim.current_window().v
    lim.may_proceed(10, "rewriter")
    assert lim.current_window().v == first + 1


def test_concurrent_reservations_never_overspend(conn, db_path, clock) -> None:
    lim = _limiter(conn, db_path, clock, tpm_budget=1000, cron_fraction=1.0, max_cas_retries=50)
    granted: list[bool] = []
    lock = threading.Lock()

    def worker() -> None:
        for _ in range(5):
            ok = lim.may_proceed(60, "rewriter")
            with lock:
                granted.append(ok)

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    wins = sum(granted)
    assert 0 < wins <= 1000 // 60
    assert lim.get_stats()["cron_used"] == wins * 60
