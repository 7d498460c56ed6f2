"""Rendering integration.

The host's rendering pipeline calls prepare_render() before it renders a
node. The decision says which node to actually render, what the parent and
children should be for navigation, and which cookies to set. After
rendering, tracking_payload() gives what the client-side tracker needs.
"""
import hashlib
import hmac
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from sqlalchemy.orm import Session

from split_service.errors import NotFoundError
from split_service.models import ARM_VARIANT, Experiment
from split_service.services import assignment_service, cascade_service, experiment_service, tracking_service
from split_service.utils.assignment import VISITOR_ID_COOKIE


@dataclass
class RenderDecision:
    node_id: int
    render_node_id: int
    visitor_id: str
    experiment: Optional[Experiment] = None
    arm: Optional[str] = None
    cascaded: bool = False
    parent_id: Optional[int] = None
    children_ids: List[int] = field(default_factory=list)
    cookies: Dict[str, str] = field(default_factory=dict)


def prepare_render(
    db: Session,
    ctx,
    node_id: int,
    cookies: Optional[Mapping[str, str]] = None,
) -> RenderDecision:
    """
    Decide how to render a node for this visitor.

    A running experiment whose control is this node wins (direct test);
    otherwise the cascade mappings are checked. Records one impression
    whenever an experiment applies.
    """
    cookies = cookies or {}
    node = ctx.content.get_node(node_id)
    if node is None:
        raise NotFoundError(f"Node {node_id} not found")

    visitor_id, is_new = assignment_service.resolve_visitor_id(cookies)
    decision = RenderDecision(node_id=node_id, render_node_id=node_id, visitor_id=visitor_id)
    if is_new:
        decision.cookies[VISITOR_ID_COOKIE] = visitor_id

    experiment = experiment_service.get_running_experiment_for_control(db, node_id)
    resolution = None
    if experiment is None:
        resolution = cascade_service.resolve(db, node_id)
        if resolution is not None:
            experiment = db.get(Experiment, resolution.experiment_id)

    if experiment is None:
        decision.parent_id = node.parent_id
        decision.children_ids = [child.id for child in cascade_service.effective_children(db, ctx, node_id)]
        return decision

    assignment = assignment_service.assign(db, experiment, visitor_id, cookies)
    decision.experiment = experiment
    decision.arm = assignment.arm
    decision.cookies.update(assignment.cookies)

    if resolution is not None:
        # descendant of a tested node: same page, variant-side navigation
        decision.cascaded = True
        parent = cascade_service.effective_parent(ctx, node_id, resolution, assignment.arm)
        decision.parent_id = parent.id if parent else None
        decision.children_ids = [child.id for child in ctx.content.children_of(node_id)]
    elif assignment.arm == ARM_VARIANT:
        variant = ctx.content.get_node(experiment.variant_node_id)
        decision.render_node_id = variant.id if variant else node_id
        decision.parent_id = variant.parent_id if variant else node.parent_id
        decision.children_ids = [
            child.id for child in cascade_service.effective_children(db, ctx, decision.render_node_id)
        ]
    else:
        decision.parent_id = node.parent_id
        decision.children_ids = [child.id for child in ctx.content.children_of(node_id)]

    tracking_service.record_impression(db, experiment, assignment.arm)
    return decision


def tracking_token(secret_key: str, handle: str, visitor_id: str) -> str:
    """Request token bound to the visitor and experiment (HMAC-SHA256, hex)"""
    message = f"{handle}:{visitor_id}".encode()
    return hmac.new(secret_key.encode(), message, hashlib.sha256).hexdigest()


def verify_tracking_token(secret_key: str, handle: str, visitor_id: str, token: str) -> bool:
    return hmac.compare_digest(tracking_token(secret_key, handle, visitor_id), token or "")


def tracking_payload(db: Session, ctx, experiment: Experiment, arm: str, visitor_id: str) -> dict:
    """What the client-side tracker gets injected into the page"""
    goals = experiment_service.get_enabled_goals(db, experiment.id)
    return {
        "test_handle": experiment.handle,
        "variant": arm,
        "goals": experiment_service.goals_js_config(goals),
        "endpoint": ctx.settings.tracking_endpoint,
        "token": tracking_token(ctx.settings.secret_key, experiment.handle, visitor_id),
    }
