"""Service for visitor assignment - sticky, race safe bucketing into control/variant.

Lookup order:
1. arm cookie for this experiment (fast path, no I/O)
2. persisted VisitorAssignment row (system of record, cookie gets reissued)
3. fresh random draw, persisted; on a duplicate key the stored row wins
"""
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple

from loguru import logger
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from split_service.models import Experiment, VisitorAssignment
from split_service.utils.assignment import (
    VISITOR_ID_COOKIE,
    arm_cookie_name,
    arm_for_draw,
    clean_arm,
    clean_visitor_id,
    draw_bucket,
    new_visitor_id,
)


@dataclass
class AssignmentDecision:
    arm: str
    # False when the arm could not be persisted (visitor may be redrawn later)
    durable: bool = True
    # cookie name -> value the caller should set on the response
    cookies: Dict[str, str] = field(default_factory=dict)


def resolve_visitor_id(cookies: Mapping[str, str]) -> Tuple[str, bool]:
    """
    Visitor id from the cookie, or a fresh one.
    Returns (visitor_id, is_new). Forged / malformed ids are replaced.
    """
    raw = cookies.get(VISITOR_ID_COOKIE)
    visitor_id = clean_visitor_id(raw)
    if visitor_id:
        return visitor_id, False
    if raw:
        logger.warning("Invalid visitor id cookie format detected")
    return new_visitor_id(), True


def cookie_arm(experiment: Experiment, cookies: Mapping[str, str]) -> Optional[str]:
    """Arm from the experiment cookie, only if it is exactly a known arm"""
    raw = cookies.get(arm_cookie_name(experiment.handle))
    arm = clean_arm(raw)
    if raw is not None and arm is None:
        logger.warning("Invalid variant cookie value detected", handle=experiment.handle)
    return arm


def find_assignment(db: Session, experiment_id: int, visitor_id: str) -> Optional[VisitorAssignment]:
    return db.query(VisitorAssignment).filter(
        VisitorAssignment.experiment_id == experiment_id,
        VisitorAssignment.visitor_id == visitor_id
    ).first()


def assign(
    db: Session,
    experiment: Experiment,
    visitor_id: str,
    cookies: Optional[Mapping[str, str]] = None,
) -> AssignmentDecision:
    """
    Get or assign the arm for a visitor.

    Calling this repeatedly for the same (experiment, visitor) always returns
    the same arm once an assignment has been persisted.
    """
    cookies = cookies or {}
    cookie_name = arm_cookie_name(experiment.handle)

    arm = cookie_arm(experiment, cookies)
    if arm is not None:
        return AssignmentDecision(arm=arm)

    existing = find_assignment(db, experiment.id, visitor_id)
    if existing:
        return AssignmentDecision(arm=existing.arm, cookies={cookie_name: existing.arm})

    draw = draw_bucket()
    arm = arm_for_draw(draw, experiment.traffic_split)

    record = VisitorAssignment(
        experiment_id=experiment.id,
        visitor_id=visitor_id,
        arm=arm,
    )
    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        # Someone else assigned this visitor first - their row is authoritative
        db.rollback()
        winner = find_assignment(db, experiment.id, visitor_id)
        if winner is None:
            raise
        logger.warning(
            "Detected race when assigning visitor",
            handle=experiment.handle,
            local_arm=arm,
            stored_arm=winner.arm,
        )
        return AssignmentDecision(arm=winner.arm, cookies={cookie_name: winner.arm})
    except SQLAlchemyError as exc:
        db.rollback()
        # Serve the experience anyway; the visitor gets redrawn next visit
        logger.error(
            "Failed to save visitor assignment, not persisted",
            handle=experiment.handle,
            error=str(exc),
        )
        return AssignmentDecision(arm=arm, durable=False)

    return AssignmentDecision(arm=arm, cookies={cookie_name: arm})


def get_assignment_arm(db: Session, experiment: Experiment, visitor_id: str) -> Optional[str]:
    """Stored arm for a visitor, without assigning one"""
    record = find_assignment(db, experiment.id, visitor_id)
    return record.arm if record else None
