"""Rate limiter for the tracking endpoint.

Fixed 60 second windows per (client ip, visitor, experiment handle) key,
stored in the database so every API process sees the same counters.

The read-check-write is done with conditional UPDATEs, so two concurrent
requests can't both see "under limit" and both get through:
- increment only if the window is current and count < limit
- reset only if the window has expired
- otherwise insert (first request for the key)
If the database is unavailable the request is allowed (fail open).
"""
import asyncio
from datetime import datetime, timedelta
from typing import Optional

from fastapi.concurrency import run_in_threadpool
from loguru import logger
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from split_service.database import utcnow
from split_service.models import RateLimitWindow

DEFAULT_WINDOW_SECONDS = 60
DEFAULT_RETENTION_SECONDS = 300


def rate_limit_key(ip: str, visitor_id: str, handle: str) -> str:
    # cache_key column is 255 chars
    return f"rate_{ip}_{visitor_id}_{handle}"[:255]


def _try_increment(db: Session, key: str, limit: int, window_floor: datetime) -> bool:
    result = db.execute(
        update(RateLimitWindow).where(
            RateLimitWindow.cache_key == key,
            RateLimitWindow.window_start >= window_floor,
            RateLimitWindow.request_count < limit,
        ).values(
            request_count=RateLimitWindow.request_count + 1
        ).execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


def _try_reset(db: Session, key: str, window_floor: datetime, now: datetime) -> bool:
    result = db.execute(
        update(RateLimitWindow).where(
            RateLimitWindow.cache_key == key,
            RateLimitWindow.window_start < window_floor,
        ).values(
            request_count=1,
            window_start=now,
        ).execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


def _decide(db: Session, key: str, limit: int, window_floor: datetime, now: datetime) -> Optional[bool]:
    """One compare-and-swap round. None means the window row already exists."""
    if _try_increment(db, key, limit, window_floor):
        return True
    if _try_reset(db, key, window_floor, now):
        return True

    try:
        with db.begin_nested():
            db.add(RateLimitWindow(cache_key=key, request_count=1, window_start=now))
    except IntegrityError:
        return None
    return True


def check_rate_limit(
    db: Session,
    key: str,
    limit: int,
    window_seconds: int = DEFAULT_WINDOW_SECONDS,
    now: Optional[datetime] = None,
) -> bool:
    """True if the request is allowed (and counted), False if rate limited"""
    now = now or utcnow()
    window_floor = now - timedelta(seconds=window_seconds)

    try:
        allowed = _decide(db, key, limit, window_floor, now)
        if allowed is None:
            # either a current window at the limit, or another request created
            # it after our UPDATEs - one more round against the stored row
            allowed = _decide(db, key, limit, window_floor, now)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Rate limit check failed, allowing request", error=str(exc))
        return True

    return allowed is True


def prune_expired_windows(
    db: Session,
    max_age_seconds: int = DEFAULT_RETENTION_SECONDS,
    now: Optional[datetime] = None,
) -> int:
    """Delete windows that started more than max_age_seconds ago"""
    cutoff = (now or utcnow()) - timedelta(seconds=max_age_seconds)
    try:
        deleted = db.query(RateLimitWindow).filter(
            RateLimitWindow.window_start < cutoff
        ).delete(synchronize_session=False)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning("Rate limit cleanup failed", error=str(exc))
        return 0

    if deleted:
        logger.debug("Pruned rate limit windows", count=deleted)
    return deleted


def _sweep_once(ctx) -> int:
    db = ctx.session_factory()
    try:
        return prune_expired_windows(db, ctx.settings.rate_limit_retention_seconds)
    finally:
        db.close()


async def run_sweeper(ctx) -> None:
    """Background task: prune old windows every rate_limit_sweep_interval seconds until cancelled"""
    interval = ctx.settings.rate_limit_sweep_interval
    logger.info("Rate limit sweeper started", interval=interval)
    while True:
        await asyncio.sleep(interval)
        await run_in_threadpool(_sweep_once, ctx)
