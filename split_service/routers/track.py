"""Conversion tracking endpoint.

Called anonymously by the client-side tracker. Bad input and rate limiting
are reported as {"success": false, "error": ...} with a 200, never as an
HTTP error, so the tracker can fire and forget.
"""
import re
from typing import Any, Optional
from fastapi import APIRouter, Depends, HTTPException, Request
from loguru import logger
from sqlalchemy.orm import Session
from split_service.database import get_db
from split_service.context import ServiceContext, get_context
from split_service.models import GOAL_TYPES
from split_service.schemas import HANDLE_PATTERN, TrackRequest, TrackResponse
from split_service.services.assignment_service import resolve_visitor_id
from split_service.services.rate_limiter import check_rate_limit, rate_limit_key
from split_service.services.rendering_service import verify_tracking_token
from split_service.services.tracking_service import record_conversion_by_handle

router = APIRouter(prefix="/track", tags=["tracking"])

_handle_re = re.compile(HANDLE_PATTERN)

# sentinel for a goalId that is present but not a positive integer
_INVALID = -1


def _parse_goal_id(raw: Any) -> Optional[int]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, bool):
        return _INVALID
    if isinstance(raw, int):
        return raw if raw >= 1 else _INVALID
    if isinstance(raw, str) and raw.isdigit() and int(raw) >= 1:
        return int(raw)
    return _INVALID


def client_ip(request: Request) -> str:
    """Cloudflare puts the real client address in CF-Connecting-IP"""
    cf_ip = request.headers.get("CF-Connecting-IP")
    if cf_ip:
        return cf_ip
    return request.client.host if request.client else "unknown"


@router.post("/convert", response_model=TrackResponse, response_model_exclude_none=True)
def track_conversion_endpoint(
    body: TrackRequest,
    request: Request,
    db: Session = Depends(get_db),
    ctx: ServiceContext = Depends(get_context)
):
    handle = body.test_handle
    conversion_type = body.conversion_type

    if not handle or not conversion_type:
        return TrackResponse(success=False, error="Missing parameters")

    if not _handle_re.match(handle):
        return TrackResponse(success=False, error="Invalid test handle format")

    if conversion_type not in GOAL_TYPES:
        return TrackResponse(success=False, error="Invalid conversion type")

    goal_id = _parse_goal_id(body.goal_id)
    if goal_id == _INVALID:
        return TrackResponse(success=False, error="Invalid goal ID")

    logger.debug("Conversion request", handle=handle, conversion_type=conversion_type)

    visitor_id, _ = resolve_visitor_id(request.cookies)

    if not body.token or not verify_tracking_token(ctx.settings.secret_key, handle, visitor_id, body.token):
        logger.warning("Invalid tracking token", handle=handle)
        return TrackResponse(success=False, error="Invalid token")

    ip = client_ip(request)
    key = rate_limit_key(ip, visitor_id, handle)
    if not check_rate_limit(db, key, ctx.settings.conversion_rate_limit, ctx.settings.rate_limit_window_seconds):
        logger.warning("Rate limit exceeded", ip=ip, handle=handle)
        return TrackResponse(success=False, error="Rate limited")

    try:
        success = record_conversion_by_handle(db, ctx, handle, visitor_id, conversion_type, goal_id)
    except HTTPException as exc:
        return TrackResponse(success=False, error=exc.detail)

    return TrackResponse(success=success)
