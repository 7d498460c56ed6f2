"""SQLAlchemy models for experiments, goals, assignments, counters and cascade mappings.

These map to the tables in SQLite (or whatever DATABASE_URL points at).
"""
from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship
from split_service.database import Base, utcnow

STATUS_DRAFT = "draft"
STATUS_RUNNING = "running"
STATUS_PAUSED = "paused"
STATUS_COMPLETED = "completed"
STATUSES = (STATUS_DRAFT, STATUS_RUNNING, STATUS_PAUSED, STATUS_COMPLETED)

ARM_CONTROL = "control"
ARM_VARIANT = "variant"
ARMS = (ARM_CONTROL, ARM_VARIANT)

GOAL_TYPES = ("form", "phone", "email", "download", "page", "custom")

# goal_type value of the overall (any goal) daily aggregate row
OVERALL = ""


class Experiment(Base):
    """Experiment model - one two-arm split test between a control and a variant node"""
    __tablename__ = "experiments"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    handle = Column(String, unique=True, nullable=False, index=True)
    hypothesis = Column(Text, nullable=True)
    # status values: draft, running, paused, completed
    status = Column(String, default=STATUS_DRAFT, nullable=False)
    control_node_id = Column(Integer, nullable=False)
    variant_node_id = Column(Integer, nullable=False)
    traffic_split = Column(Integer, default=50, nullable=False)  # % routed to variant
    started_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)
    winner = Column(String, nullable=True)
    significance_notified_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    goals = relationship(
        "Goal",
        back_populates="experiment",
        cascade="all, delete-orphan",
        order_by="[Goal.sort_order, Goal.id]",
    )

    __table_args__ = (
        Index('idx_experiments_status', 'status'),
        Index('idx_experiments_control_node', 'control_node_id'),
        Index('idx_experiments_variant_node', 'variant_node_id'),
    )

    def is_running(self) -> bool:
        return self.status == STATUS_RUNNING

    def is_completed(self) -> bool:
        return self.status == STATUS_COMPLETED


class Goal(Base):
    """Goal model - a conversion criterion owned by an experiment"""
    __tablename__ = "goals"

    id = Column(Integer, primary_key=True, index=True)
    experiment_id = Column(Integer, ForeignKey("experiments.id"), nullable=False)
    goal_type = Column(String, nullable=False)
    config = Column(Text, nullable=True)  # JSON string, shape depends on goal_type
    is_enabled = Column(Boolean, default=True, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)

    experiment = relationship("Experiment", back_populates="goals")

    __table_args__ = (
        Index('idx_goals_experiment_id', 'experiment_id'),
    )


class VisitorAssignment(Base):
    """Sticky arm for one visitor in one experiment. Written once, never updated."""
    __tablename__ = "visitor_assignments"

    id = Column(Integer, primary_key=True, index=True)
    experiment_id = Column(Integer, ForeignKey("experiments.id"), nullable=False)
    visitor_id = Column(String, nullable=False)
    arm = Column(String, nullable=False)
    assigned_at = Column(DateTime, default=utcnow, nullable=False)

    # Unique constraint is what makes concurrent first visits converge
    __table_args__ = (
        Index('idx_assignments_experiment_visitor', 'experiment_id', 'visitor_id', unique=True),
        Index('idx_assignments_visitor_id', 'visitor_id'),
    )


class VisitorConversion(Base):
    """One counted conversion.

    dedupe_key enforces the counting mode: "first" (one per visitor),
    the conversion type (one per goal type) or NULL (unlimited).
    """
    __tablename__ = "visitor_conversions"

    id = Column(Integer, primary_key=True, index=True)
    experiment_id = Column(Integer, ForeignKey("experiments.id"), nullable=False)
    visitor_id = Column(String, nullable=False)
    arm = Column(String, nullable=False)
    conversion_type = Column(String, nullable=False)
    goal_id = Column(Integer, nullable=True)
    dedupe_key = Column(String, nullable=True)
    converted_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index('idx_conversions_dedupe', 'experiment_id', 'visitor_id', 'dedupe_key', unique=True),
    )


class DailyAggregate(Base):
    """Per day / arm / goal type counters. Only ever changed by atomic increments."""
    __tablename__ = "daily_aggregates"

    id = Column(Integer, primary_key=True, index=True)
    experiment_id = Column(Integer, ForeignKey("experiments.id"), nullable=False)
    day = Column(Date, nullable=False)
    arm = Column(String, nullable=False)
    goal_type = Column(String, nullable=False, default=OVERALL)
    impressions = Column(Integer, nullable=False, default=0)
    conversions = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index('idx_daily_unique', 'experiment_id', 'day', 'arm', 'goal_type', unique=True),
    )


class CascadeMapping(Base):
    """Derived index: descendant of a control node -> variant analogue"""
    __tablename__ = "cascade_mappings"

    id = Column(Integer, primary_key=True, index=True)
    experiment_id = Column(Integer, ForeignKey("experiments.id"), nullable=False)
    control_node_id = Column(Integer, nullable=False)
    descendant_node_id = Column(Integer, nullable=False)
    variant_ancestor_id = Column(Integer, nullable=False)
    depth = Column(Integer, nullable=False)

    __table_args__ = (
        Index('idx_cascade_experiment_descendant', 'experiment_id', 'descendant_node_id', unique=True),
        Index('idx_cascade_descendant', 'descendant_node_id'),
    )


class RateLimitWindow(Base):
    """Shared rate limit window, one row per client key"""
    __tablename__ = "rate_limit_windows"

    id = Column(Integer, primary_key=True, index=True)
    cache_key = Column(String(255), unique=True, nullable=False)
    request_count = Column(Integer, nullable=False, default=1)
    window_start = Column(DateTime, nullable=False, index=True)
