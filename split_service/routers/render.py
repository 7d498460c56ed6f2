"""Render decision endpoint.

For hosts that render out of process: ask which node to render for this
visitor before rendering it. Anonymous; sets the visitor/arm cookies.
"""
from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.orm import Session
from split_service.database import get_db
from split_service.context import ServiceContext, get_context
from split_service.schemas import RenderResponse, TrackingPayload
from split_service.services.rendering_service import prepare_render, tracking_payload

router = APIRouter(prefix="/render", tags=["render"])


@router.get("/{node_id}", response_model=RenderResponse)
def render_node_endpoint(
    node_id: int,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    ctx: ServiceContext = Depends(get_context)
):
    decision = prepare_render(db, ctx, node_id, request.cookies)

    max_age = ctx.settings.cookie_duration_days * 24 * 60 * 60
    for name, value in decision.cookies.items():
        response.set_cookie(name, value, max_age=max_age, httponly=True, samesite="lax")

    out = RenderResponse(
        node_id=decision.node_id,
        render_node_id=decision.render_node_id,
        cascaded=decision.cascaded,
        parent_id=decision.parent_id,
        children_ids=decision.children_ids,
    )
    if decision.experiment is not None:
        out.experiment_handle = decision.experiment.handle
        out.variant = decision.arm
        out.tracking = TrackingPayload(
            **tracking_payload(db, ctx, decision.experiment, decision.arm, decision.visitor_id)
        )
    return out
