"""Service for experiment management (create, goals, lifecycle)"""
import json
import re
from typing import List, Optional

from loguru import logger
from sqlalchemy.orm import Session

from split_service.context import ServiceContext
from split_service.errors import NotFoundError, ValidationError
from split_service.models import (
    ARMS,
    STATUS_COMPLETED,
    STATUS_DRAFT,
    STATUS_PAUSED,
    STATUS_RUNNING,
    DailyAggregate,
    Experiment,
    Goal,
    VisitorAssignment,
    VisitorConversion,
)
from split_service.schemas import HANDLE_PATTERN, ExperimentCreate, GoalCreate
from split_service.services import cascade_service
from split_service.utils.cache import invalidate_stats
from split_service.database import utcnow

_handle_re = re.compile(HANDLE_PATTERN)


def generate_handle(name: str) -> str:
    """Kebab-case handle from a display name ("Pricing Page v2" -> "pricing-page-v2")"""
    handle = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    if not handle or not handle[0].isalpha():
        handle = f"test-{handle}".rstrip("-")
    return handle


def validate_handle(handle: str) -> str:
    if not isinstance(handle, str) or not _handle_re.match(handle):
        raise ValidationError(
            "Handle must be lowercase, start with a letter, and contain only letters, numbers, and hyphens"
        )
    return handle


def _validate_nodes(ctx: ServiceContext, control_node_id: int, variant_node_id: int):
    if control_node_id == variant_node_id:
        raise ValidationError("Control and variant nodes must be different")

    if ctx.content.get_node(control_node_id) is None:
        raise NotFoundError(f"Control node {control_node_id} not found")
    if ctx.content.get_node(variant_node_id) is None:
        raise NotFoundError(f"Variant node {variant_node_id} not found")

    # A variant inside the control subtree would cascade into itself
    if ctx.content.is_descendant_of(control_node_id, variant_node_id):
        raise ValidationError(
            "The variant node cannot be a descendant of the control node"
        )


def create_experiment(db: Session, ctx: ServiceContext, experiment_data: ExperimentCreate) -> Experiment:
    """
    Create a new experiment (status draft) with its goals.
    Validates the handle and the control/variant pair, then builds the cascade mappings.
    """
    handle = experiment_data.handle or generate_handle(experiment_data.name)
    validate_handle(handle)

    _validate_nodes(ctx, experiment_data.control_node_id, experiment_data.variant_node_id)

    existing = db.query(Experiment).filter(Experiment.handle == handle).first()
    if existing:
        raise ValidationError(f"Experiment with handle '{handle}' already exists")

    experiment = Experiment(
        name=experiment_data.name,
        handle=handle,
        hypothesis=experiment_data.hypothesis,
        control_node_id=experiment_data.control_node_id,
        variant_node_id=experiment_data.variant_node_id,
        traffic_split=experiment_data.traffic_split,
        status=STATUS_DRAFT,
    )
    db.add(experiment)
    db.flush()  # Get the experiment ID

    for goal_data in experiment_data.goals:
        db.add(_goal_from_schema(experiment.id, goal_data))

    db.commit()
    db.refresh(experiment)

    logger.info("Created experiment", handle=experiment.handle, experiment_id=experiment.id)

    cascade_service.rebuild(db, ctx, experiment)
    return experiment


def get_experiment_by_id(db: Session, experiment_id: int) -> Experiment:
    experiment = db.get(Experiment, experiment_id)
    if not experiment:
        raise NotFoundError("Experiment not found")
    return experiment


def get_experiment_by_handle(db: Session, handle: str) -> Experiment:
    experiment = db.query(Experiment).filter(Experiment.handle == handle).first()
    if not experiment:
        raise NotFoundError(f"Experiment '{handle}' not found")
    return experiment


def get_running_experiments(db: Session) -> List[Experiment]:
    return db.query(Experiment).filter(Experiment.status == STATUS_RUNNING).all()


def get_running_experiment_for_control(db: Session, node_id: int) -> Optional[Experiment]:
    """Running experiment that tests this node directly (node is the control)"""
    return db.query(Experiment).filter(
        Experiment.control_node_id == node_id,
        Experiment.status == STATUS_RUNNING,
    ).order_by(Experiment.id).first()


def _goal_from_schema(experiment_id: int, goal_data: GoalCreate) -> Goal:
    return Goal(
        experiment_id=experiment_id,
        goal_type=goal_data.goal_type,
        config=json.dumps(goal_data.config) if goal_data.config else None,
        is_enabled=goal_data.is_enabled,
        sort_order=goal_data.sort_order,
    )


def add_goal(db: Session, experiment: Experiment, goal_data: GoalCreate) -> Goal:
    if experiment.is_completed():
        raise ValidationError("Goals of a completed experiment cannot change")
    goal = _goal_from_schema(experiment.id, goal_data)
    db.add(goal)
    db.commit()
    db.refresh(goal)
    return goal


def get_enabled_goals(db: Session, experiment_id: int) -> List[Goal]:
    return db.query(Goal).filter(
        Goal.experiment_id == experiment_id,
        Goal.is_enabled.is_(True),
    ).order_by(Goal.sort_order, Goal.id).all()


def goals_js_config(goals: List[Goal]) -> List[dict]:
    """Goal configuration as handed to the client-side tracker"""
    out = []
    for goal in goals:
        config = json.loads(goal.config) if goal.config else {}
        # custom events may list several comma separated names
        if goal.goal_type == "custom" and config.get("eventName"):
            config["eventNames"] = [n.strip() for n in config["eventName"].split(",") if n.strip()]
        out.append({
            "id": goal.id,
            "type": goal.goal_type,
            "enabled": goal.is_enabled,
            "config": config,
        })
    return out


def start_experiment(db: Session, ctx: ServiceContext, experiment: Experiment) -> Experiment:
    """Move draft/paused -> running. Needs at least one enabled goal."""
    if experiment.status not in (STATUS_DRAFT, STATUS_PAUSED):
        raise ValidationError(
            f"Experiment cannot be started from its current status ({experiment.status})"
        )
    if not get_enabled_goals(db, experiment.id):
        raise ValidationError(
            "At least one conversion goal must be enabled before starting the experiment"
        )

    experiment.status = STATUS_RUNNING
    if experiment.started_at is None:
        experiment.started_at = utcnow()
    db.commit()
    db.refresh(experiment)

    logger.info("Experiment started", handle=experiment.handle)

    cascade_service.rebuild(db, ctx, experiment)
    return experiment


def pause_experiment(db: Session, experiment: Experiment) -> Experiment:
    if experiment.status != STATUS_RUNNING:
        raise ValidationError("Only a running experiment can be paused")
    experiment.status = STATUS_PAUSED
    db.commit()
    db.refresh(experiment)
    logger.info("Experiment paused", handle=experiment.handle)
    return experiment


def complete_experiment(db: Session, experiment: Experiment, winner: Optional[str] = None) -> Experiment:
    """Terminal transition. Winner and results are frozen afterwards."""
    if experiment.is_completed():
        raise ValidationError("Experiment is already completed")
    if winner is not None and winner not in ARMS:
        raise ValidationError("winner must be 'control', 'variant' or empty")

    experiment.status = STATUS_COMPLETED
    experiment.ended_at = utcnow()
    experiment.winner = winner
    db.commit()
    db.refresh(experiment)

    logger.info("Experiment completed", handle=experiment.handle, winner=winner or "none")
    return experiment


def delete_experiment(db: Session, experiment: Experiment) -> None:
    """Hard delete, including every derived and tracking row"""
    experiment_id = experiment.id
    handle = experiment.handle

    cascade_service.clear_mappings(db, experiment_id, commit=False)
    db.query(VisitorAssignment).filter(VisitorAssignment.experiment_id == experiment_id).delete()
    db.query(VisitorConversion).filter(VisitorConversion.experiment_id == experiment_id).delete()
    db.query(DailyAggregate).filter(DailyAggregate.experiment_id == experiment_id).delete()
    db.delete(experiment)
    db.commit()

    invalidate_stats(experiment_id)
    cascade_service.forget_lock(experiment_id)
    logger.info("Experiment deleted", handle=handle, experiment_id=experiment_id)
