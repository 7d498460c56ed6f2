"""Tests for the database backed rate limiter."""
import asyncio
from datetime import datetime, timedelta

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from split_service.config import Settings
from split_service.models import RateLimitWindow
from split_service.services import rate_limiter
from split_service.services.rate_limiter import (
    check_rate_limit,
    prune_expired_windows,
    rate_limit_key,
    run_sweeper,
)

NOW = datetime(2026, 2, 1, 12, 0, 0)
KEY = rate_limit_key("203.0.113.7", "visitor-1", "pricing-page")


def _window(db, key=KEY):
    db.expire_all()
    return db.query(RateLimitWindow).filter(RateLimitWindow.cache_key == key).one()


def test_eleventh_request_in_window_is_rejected(db):
    results = [check_rate_limit(db, KEY, 10, 60, NOW + timedelta(seconds=i)) for i in range(11)]

    assert results == [True] * 10 + [False]
    assert _window(db).request_count == 10


def test_window_reset_after_expiry(db):
    for i in range(11):
        check_rate_limit(db, KEY, 10, 60, NOW)

    later = NOW + timedelta(seconds=61)
    assert check_rate_limit(db, KEY, 10, 60, later) is True

    window = _window(db)
    assert window.request_count == 1
    assert window.window_start == later


def test_keys_are_independent(db):
    other = rate_limit_key("203.0.113.8", "visitor-1", "pricing-page")
    for _ in range(10):
        check_rate_limit(db, KEY, 10, 60, NOW)

    assert check_rate_limit(db, KEY, 10, 60, NOW) is False
    assert check_rate_limit(db, other, 10, 60, NOW) is True


def test_first_request_creates_window(db):
    assert check_rate_limit(db, KEY, 3, 60, NOW) is True

    window = _window(db)
    assert window.request_count == 1
    assert window.window_start == NOW


def test_fails_open_when_database_unavailable(db, monkeypatch):
    def broken_execute(*args, **kwargs):
        raise OperationalError("UPDATE", {}, Exception("no such table"))

    monkeypatch.setattr(db, "execute", broken_execute)

    assert check_rate_limit(db, KEY, 1, 60, NOW) is True


def test_concurrent_window_creation_retries(db, monkeypatch):
    """Another process created the window between our UPDATEs and our INSERT"""
    real_try_increment = rate_limiter._try_increment
    calls = []

    def racing_increment(session, key, limit, window_floor):
        calls.append(key)
        if len(calls) == 1:
            other = Session(bind=session.get_bind())
            other.add(RateLimitWindow(cache_key=key, request_count=1, window_start=NOW))
            other.commit()
            other.close()
            return False
        return real_try_increment(session, key, limit, window_floor)

    monkeypatch.setattr(rate_limiter, "_try_increment", racing_increment)

    assert check_rate_limit(db, KEY, 10, 60, NOW) is True
    assert _window(db).request_count == 2


def test_rate_limit_key():
    assert rate_limit_key("1.2.3.4", "abc", "pricing") == "rate_1.2.3.4_abc_pricing"
    assert len(rate_limit_key("1.2.3.4", "v" * 300, "pricing")) == 255


def test_prune_expired_windows(db):
    db.add(RateLimitWindow(cache_key="old", request_count=3, window_start=NOW - timedelta(minutes=10)))
    db.add(RateLimitWindow(cache_key="fresh", request_count=3, window_start=NOW - timedelta(minutes=1)))
    db.commit()

    assert prune_expired_windows(db, 300, NOW) == 1
    assert [w.cache_key for w in db.query(RateLimitWindow).all()] == ["fresh"]


def test_sweeper_prunes_in_background(db, ctx):
    ctx.settings = Settings(rate_limit_sweep_interval=0, rate_limit_retention_seconds=300)
    db.add(RateLimitWindow(cache_key="old", request_count=1, window_start=datetime(2020, 1, 1)))
    db.commit()

    async def run_briefly():
        task = asyncio.create_task(run_sweeper(ctx))
        await asyncio.sleep(0.3)
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    asyncio.run(run_briefly())

    db.expire_all()
    assert db.query(RateLimitWindow).count() == 0
