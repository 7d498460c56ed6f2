"""Service for impressions and conversions.

Counters live in daily_aggregates and are only touched through
UPDATE ... SET x = x + n, so concurrent requests never lose an increment.
"""
from datetime import date
from typing import Dict, List, Optional

from loguru import logger
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from split_service.config import COUNTING_FIRST_ONLY, COUNTING_PER_GOAL_TYPE
from split_service.database import utcnow
from split_service.errors import NotFoundError
from split_service.models import (
    ARM_CONTROL,
    ARM_VARIANT,
    OVERALL,
    DailyAggregate,
    Experiment,
    Goal,
    VisitorAssignment,
    VisitorConversion,
)
from split_service.services.assignment_service import find_assignment


def _empty_arms() -> Dict[str, int]:
    return {ARM_CONTROL: 0, ARM_VARIANT: 0}


def increment_counters(
    db: Session,
    experiment_id: int,
    day: date,
    arm: str,
    goal_type: str = OVERALL,
    impressions: int = 0,
    conversions: int = 0,
) -> None:
    """Atomic increment of one daily aggregate row (created on first use). Caller commits."""
    stmt = update(DailyAggregate).where(
        DailyAggregate.experiment_id == experiment_id,
        DailyAggregate.day == day,
        DailyAggregate.arm == arm,
        DailyAggregate.goal_type == goal_type,
    ).values(
        impressions=DailyAggregate.impressions + impressions,
        conversions=DailyAggregate.conversions + conversions,
    ).execution_options(synchronize_session=False)

    if db.execute(stmt).rowcount:
        return

    try:
        with db.begin_nested():
            db.add(DailyAggregate(
                experiment_id=experiment_id,
                day=day,
                arm=arm,
                goal_type=goal_type,
                impressions=impressions,
                conversions=conversions,
            ))
    except IntegrityError:
        # another request created the row between our UPDATE and INSERT
        db.execute(stmt)


def record_impression(db: Session, experiment: Experiment, arm: str, day: Optional[date] = None) -> bool:
    """Record an impression for an experiment arm"""
    day = day or utcnow().date()
    try:
        increment_counters(db, experiment.id, day, arm, impressions=1)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Failed to save impression", handle=experiment.handle, error=str(exc))
        return False
    return True


def _has_enabled_goal(db: Session, experiment_id: int, goal_type: str) -> bool:
    return db.query(Goal.id).filter(
        Goal.experiment_id == experiment_id,
        Goal.goal_type == goal_type,
        Goal.is_enabled.is_(True),
    ).first() is not None


def _dedupe_key(mode: str, conversion_type: str) -> Optional[str]:
    if mode == COUNTING_FIRST_ONLY:
        return "first"
    if mode == COUNTING_PER_GOAL_TYPE:
        return conversion_type
    # unlimited: NULL never collides in a unique index
    return None


def record_conversion(
    db: Session,
    ctx,
    experiment: Experiment,
    visitor_id: str,
    conversion_type: str,
    goal_id: Optional[int] = None,
    day: Optional[date] = None,
) -> bool:
    """
    Record a conversion for the visitor's arm.

    Duplicates (per the counting mode) are accepted but not counted again.
    Only enabled goals count. Returns False when the visitor has no
    assignment, the goal is disabled or missing, or storage failed.
    """
    assignment = find_assignment(db, experiment.id, visitor_id)
    if not assignment:
        logger.warning("Cannot record conversion - visitor not assigned", handle=experiment.handle)
        return False

    if goal_id is not None:
        goal = db.get(Goal, goal_id)
        if goal is None or goal.experiment_id != experiment.id:
            raise NotFoundError("Goal not found")
        if not goal.is_enabled:
            logger.warning("Conversion for disabled goal ignored", handle=experiment.handle, goal_id=goal_id)
            return False
    elif not _has_enabled_goal(db, experiment.id, conversion_type):
        logger.warning(
            "Conversion type has no enabled goal",
            handle=experiment.handle,
            conversion_type=conversion_type,
        )
        return False

    mode = ctx.settings.conversion_counting_mode
    now = utcnow()
    day = day or now.date()

    db.add(VisitorConversion(
        experiment_id=experiment.id,
        visitor_id=visitor_id,
        arm=assignment.arm,
        conversion_type=conversion_type,
        goal_id=goal_id,
        dedupe_key=_dedupe_key(mode, conversion_type),
        converted_at=now,
    ))
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        logger.debug("Conversion already counted", handle=experiment.handle, mode=mode)
        return True

    try:
        increment_counters(db, experiment.id, day, assignment.arm, OVERALL, conversions=1)
        increment_counters(db, experiment.id, day, assignment.arm, conversion_type, conversions=1)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Failed to record conversion", handle=experiment.handle, error=str(exc))
        return False

    # outside the transaction; the conversion is already stored
    from split_service.services.notification_service import check_and_notify_significance
    try:
        check_and_notify_significance(db, ctx, experiment)
    except Exception as exc:
        logger.error("Significance check failed", handle=experiment.handle, error=str(exc))

    return True


def record_conversion_by_handle(
    db: Session,
    ctx,
    handle: str,
    visitor_id: str,
    conversion_type: str,
    goal_id: Optional[int] = None,
) -> bool:
    """Entry point of the tracking endpoint - only running experiments count"""
    experiment = db.query(Experiment).filter(Experiment.handle == handle).first()
    if not experiment or not experiment.is_running():
        return False
    return record_conversion(db, ctx, experiment, visitor_id, conversion_type, goal_id)


def get_total_impressions(db: Session, experiment_id: int) -> Dict[str, int]:
    rows = db.query(DailyAggregate.arm, func.sum(DailyAggregate.impressions)).filter(
        DailyAggregate.experiment_id == experiment_id
    ).group_by(DailyAggregate.arm).all()

    result = _empty_arms()
    for arm, total in rows:
        result[arm] = int(total or 0)
    return result


def get_total_conversions(db: Session, experiment_id: int) -> Dict[str, int]:
    """Overall conversions (goal-specific rows are a breakdown of these)"""
    rows = db.query(DailyAggregate.arm, func.sum(DailyAggregate.conversions)).filter(
        DailyAggregate.experiment_id == experiment_id,
        DailyAggregate.goal_type == OVERALL,
    ).group_by(DailyAggregate.arm).all()

    result = _empty_arms()
    for arm, total in rows:
        result[arm] = int(total or 0)
    return result


def get_unique_visitors(db: Session, experiment_id: int) -> Dict[str, int]:
    rows = db.query(VisitorAssignment.arm, func.count(VisitorAssignment.id)).filter(
        VisitorAssignment.experiment_id == experiment_id
    ).group_by(VisitorAssignment.arm).all()

    result = _empty_arms()
    for arm, total in rows:
        result[arm] = int(total)
    return result


def get_daily_stats(db: Session, experiment_id: int) -> List[dict]:
    """Overall rows per day, for charting"""
    rows = db.query(DailyAggregate).filter(
        DailyAggregate.experiment_id == experiment_id,
        DailyAggregate.goal_type == OVERALL,
    ).order_by(DailyAggregate.day).all()

    by_day: Dict[date, dict] = {}
    for row in rows:
        entry = by_day.setdefault(row.day, {
            "date": row.day.isoformat(),
            ARM_CONTROL: {"impressions": 0, "conversions": 0, "rate": 0.0},
            ARM_VARIANT: {"impressions": 0, "conversions": 0, "rate": 0.0},
        })
        entry[row.arm] = {
            "impressions": row.impressions,
            "conversions": row.conversions,
            "rate": round(row.conversions / row.impressions * 100, 2) if row.impressions else 0.0,
        }
    return list(by_day.values())


def get_goal_stats(db: Session, experiment_id: int) -> Dict[str, Dict[str, int]]:
    """Conversions per goal type and arm"""
    rows = db.query(
        DailyAggregate.goal_type, DailyAggregate.arm, func.sum(DailyAggregate.conversions)
    ).filter(
        DailyAggregate.experiment_id == experiment_id,
        DailyAggregate.goal_type != OVERALL,
    ).group_by(DailyAggregate.goal_type, DailyAggregate.arm).all()

    result: Dict[str, Dict[str, int]] = {}
    for goal_type, arm, total in rows:
        result.setdefault(goal_type, _empty_arms())[arm] = int(total or 0)
    return result
