"""Cascade service - lets descendants of a tested node follow the variant.

When an experiment runs on a control node that has children, every
descendant of the control node gets a mapping row pointing at the variant
node. While the experiment is running, the rendering side asks this module
for the effective parent / children so navigation keeps working under the
variant, without every child page needing its own experiment.

Mappings are derived data: they are rebuilt in full (clear, then insert)
whenever the experiment is saved or the content tree changes around it.
"""
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional

from loguru import logger
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from split_service.content import ContentNode, StructureListener
from split_service.errors import PersistenceUnavailable
from split_service.jobs import RebuildCascadeJob
from split_service.models import (
    ARM_VARIANT,
    STATUS_RUNNING,
    CascadeMapping,
    Experiment,
)

REBUILT_SYNC = "sync"
REBUILT_QUEUED = "queued"
REBUILD_SKIPPED = "skipped"

# One lock per experiment so two rebuilds in this process never interleave.
# Across processes the clear+insert runs in a single transaction.
_locks_guard = threading.Lock()
_rebuild_locks: Dict[int, threading.Lock] = {}


def _lock_for(experiment_id: int) -> threading.Lock:
    with _locks_guard:
        return _rebuild_locks.setdefault(experiment_id, threading.Lock())


def forget_lock(experiment_id: int) -> None:
    """Drop the rebuild lock of a deleted experiment"""
    with _locks_guard:
        _rebuild_locks.pop(experiment_id, None)


@dataclass
class CascadeResolution:
    experiment_id: int
    handle: str
    control_node_id: int
    descendant_node_id: int
    variant_ancestor_id: int
    depth: int


def calculate_depth(ancestor_level: Optional[int], descendant_level: Optional[int]) -> int:
    """Tree level distance, never less than 1"""
    return max(1, (descendant_level or 1) - (ancestor_level or 1))


def rebuild(db: Session, ctx, experiment: Experiment) -> str:
    """
    Rebuild all descendant mappings for an experiment.

    Big subtrees (more than settings.cascade_async_threshold descendants) are
    handed to the job queue so the request does not have to wait for them.
    Returns REBUILT_SYNC, REBUILT_QUEUED or REBUILD_SKIPPED.
    """
    if not experiment.id or not experiment.control_node_id or not experiment.variant_node_id:
        return REBUILD_SKIPPED

    if ctx.content.get_node(experiment.control_node_id) is None:
        logger.warning(
            "Control node missing, cascade not rebuilt",
            handle=experiment.handle,
            node_id=experiment.control_node_id,
        )
        return REBUILD_SKIPPED

    descendant_count = len(ctx.content.descendants_of(experiment.control_node_id))
    if descendant_count > ctx.settings.cascade_async_threshold:
        ctx.jobs.push(RebuildCascadeJob(experiment_id=experiment.id, ctx=ctx))
        logger.info(
            "Cascade rebuild queued",
            handle=experiment.handle,
            descendants=descendant_count,
        )
        return REBUILT_QUEUED

    if not do_rebuild(db, ctx, experiment):
        return REBUILD_SKIPPED
    return REBUILT_SYNC


def do_rebuild(db: Session, ctx, experiment: Experiment) -> bool:
    """Actually rebuild the mappings (inline or from the job). Idempotent."""
    control = ctx.content.get_node(experiment.control_node_id)
    variant = ctx.content.get_node(experiment.variant_node_id)
    if control is None or variant is None:
        return False

    with _lock_for(experiment.id):
        descendants = ctx.content.descendants_of(control.id)

        db.query(CascadeMapping).filter(
            CascadeMapping.experiment_id == experiment.id
        ).delete(synchronize_session=False)

        count = 0
        for descendant in descendants:
            try:
                with db.begin_nested():
                    db.add(CascadeMapping(
                        experiment_id=experiment.id,
                        control_node_id=control.id,
                        descendant_node_id=descendant.id,
                        variant_ancestor_id=variant.id,
                        depth=calculate_depth(control.level, descendant.level),
                    ))
                count += 1
            except SQLAlchemyError as exc:
                # a missing row only means "not cascaded" for that node
                logger.warning(
                    "Failed to save cascade mapping",
                    handle=experiment.handle,
                    node_id=descendant.id,
                    error=str(exc),
                )

        try:
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to commit cascade mappings", handle=experiment.handle, error=str(exc))
            raise PersistenceUnavailable("Cascade mappings could not be saved") from exc

    logger.info("Rebuilt cascade mappings", handle=experiment.handle, count=count)
    return True


def clear_mappings(db: Session, experiment_id: int, commit: bool = True) -> int:
    deleted = db.query(CascadeMapping).filter(
        CascadeMapping.experiment_id == experiment_id
    ).delete(synchronize_session=False)
    if commit:
        db.commit()
    return deleted


def get_mappings(db: Session, experiment_id: int) -> List[CascadeMapping]:
    return db.query(CascadeMapping).filter(
        CascadeMapping.experiment_id == experiment_id
    ).order_by(CascadeMapping.descendant_node_id).all()


def resolve(db: Session, node_id: int) -> Optional[CascadeResolution]:
    """
    Is this node a cascaded descendant of a running experiment?

    With nested experiments the nearest one (smallest depth) wins.
    """
    row = db.query(CascadeMapping, Experiment.handle).join(
        Experiment, Experiment.id == CascadeMapping.experiment_id
    ).filter(
        CascadeMapping.descendant_node_id == node_id,
        Experiment.status == STATUS_RUNNING,
    ).order_by(CascadeMapping.depth, CascadeMapping.experiment_id).first()

    if row is None:
        return None

    mapping, handle = row
    return CascadeResolution(
        experiment_id=mapping.experiment_id,
        handle=handle,
        control_node_id=mapping.control_node_id,
        descendant_node_id=mapping.descendant_node_id,
        variant_ancestor_id=mapping.variant_ancestor_id,
        depth=mapping.depth,
    )


def effective_parent(
    ctx,
    node_id: int,
    resolution: Optional[CascadeResolution],
    arm: Optional[str],
) -> Optional[ContentNode]:
    """Variant analogue for variant visitors, the real parent otherwise"""
    if resolution is not None and arm == ARM_VARIANT:
        analogue = ctx.content.get_node(resolution.variant_ancestor_id)
        if analogue is not None:
            return analogue

    node = ctx.content.get_node(node_id)
    if node is None or node.parent_id is None:
        return None
    return ctx.content.get_node(node.parent_id)


def variant_root_experiment(db: Session, node_id: int) -> Optional[Experiment]:
    """Running experiment whose variant node is this node, if any"""
    return db.query(Experiment).filter(
        Experiment.variant_node_id == node_id,
        Experiment.status == STATUS_RUNNING,
    ).order_by(Experiment.id).first()


def effective_children(db: Session, ctx, node_id: int) -> List[ContentNode]:
    """A running variant root borrows the control node's children"""
    experiment = variant_root_experiment(db, node_id)
    if experiment is not None:
        return ctx.content.children_of(experiment.control_node_id)
    return ctx.content.children_of(node_id)


def handle_node_moved(db: Session, ctx, node_id: int) -> List[int]:
    """
    A node was moved or inserted: rebuild every experiment whose descendant
    set may have changed. Returns the rebuilt experiment ids.
    """
    mapped_ids = {
        experiment_id for (experiment_id,) in db.query(CascadeMapping.experiment_id).filter(
            CascadeMapping.descendant_node_id == node_id
        ).distinct()
    }
    affected = set(mapped_ids)

    running = db.query(Experiment).filter(Experiment.status == STATUS_RUNNING).all()
    for experiment in running:
        is_now = ctx.content.is_descendant_of(experiment.control_node_id, node_id)
        was = experiment.id in mapped_ids
        if is_now != was:
            affected.add(experiment.id)

    rebuilt = []
    for experiment_id in sorted(affected):
        experiment = db.get(Experiment, experiment_id)
        if experiment is not None:
            rebuild(db, ctx, experiment)
            rebuilt.append(experiment_id)
    return rebuilt


def handle_node_deleted(db: Session, node_id: int) -> int:
    """Drop every mapping that mentions the node in any role"""
    deleted = db.query(CascadeMapping).filter(or_(
        CascadeMapping.descendant_node_id == node_id,
        CascadeMapping.control_node_id == node_id,
        CascadeMapping.variant_ancestor_id == node_id,
    )).delete(synchronize_session=False)
    db.commit()
    return deleted


class CascadeListener(StructureListener):
    """Subscribes the cascade mappings to content tree changes"""

    def __init__(self, ctx):
        self.ctx = ctx

    def on_moved(self, node_id: int) -> None:
        db = self.ctx.session_factory()
        try:
            handle_node_moved(db, self.ctx, node_id)
        finally:
            db.close()

    def on_inserted(self, node_id: int) -> None:
        self.on_moved(node_id)

    def on_deleted(self, node_id: int) -> None:
        db = self.ctx.session_factory()
        try:
            handle_node_deleted(db, node_id)
        finally:
            db.close()
