from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any, Literal
from datetime import datetime

HANDLE_PATTERN = r"^[a-z][a-z0-9]*(-[a-z0-9]+)*$"

GoalType = Literal["form", "phone", "email", "download", "page", "custom"]
Arm = Literal["control", "variant"]


class GoalCreate(BaseModel):
    goal_type: GoalType
    config: Optional[Dict[str, Any]] = None
    is_enabled: bool = True
    sort_order: int = 0


class GoalResponse(BaseModel):
    id: int
    goal_type: str
    config: Optional[str] = None
    is_enabled: bool
    sort_order: int

    class Config:
        from_attributes = True


class ExperimentCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    # generated from the name when left out
    handle: Optional[str] = Field(None, max_length=255)
    hypothesis: Optional[str] = None
    control_node_id: int
    variant_node_id: int
    traffic_split: int = Field(50, ge=0, le=100)
    goals: List[GoalCreate] = []


class ExperimentResponse(BaseModel):
    id: int
    name: str
    handle: str
    hypothesis: Optional[str]
    status: str
    control_node_id: int
    variant_node_id: int
    traffic_split: int
    started_at: Optional[datetime]
    ended_at: Optional[datetime]
    winner: Optional[str]
    created_at: datetime
    updated_at: datetime
    goals: List[GoalResponse]

    class Config:
        from_attributes = True


class CompleteRequest(BaseModel):
    winner: Optional[Arm] = None


class TrackResponse(BaseModel):
    success: bool
    error: Optional[str] = None


class ExperimentStats(BaseModel):
    experiment_id: int
    impressions: Dict[str, int]
    conversions: Dict[str, int]
    visitors: Dict[str, int]
    conversion_rates: Dict[str, float]
    confidence: float
    chi_squared: float
    is_significant: bool
    improvement: Optional[float] = None
    winner: Optional[str] = None
    confidence_intervals: Dict[str, Dict[str, float]]
    sample_size_needed: int
    total_visitors: int
    progress_percent: int
    sessions_per_visitor: Dict[str, float]
    daily_stats: List[Dict[str, Any]]
    goal_stats: Dict[str, Dict[str, int]]


class TimeEstimate(BaseModel):
    reached: bool
    days_remaining: int
    impressions_needed: Optional[int] = None
    current_impressions: Optional[int] = None
    daily_rate: Optional[int] = None


class TrackingPayload(BaseModel):
    test_handle: str
    variant: str
    goals: List[Dict[str, Any]]
    endpoint: str
    token: str


class RenderResponse(BaseModel):
    node_id: int
    render_node_id: int
    experiment_handle: Optional[str] = None
    variant: Optional[str] = None
    cascaded: bool = False
    parent_id: Optional[int] = None
    children_ids: List[int] = []
    tracking: Optional[TrackingPayload] = None


class TrackRequest(BaseModel):
    """Body of POST /track/convert (field names as sent by the tracker script)"""
    test_handle: Optional[str] = Field(None, alias="testHandle")
    conversion_type: Optional[str] = Field(None, alias="conversionType")
    goal_id: Optional[Any] = Field(None, alias="goalId")
    token: Optional[str] = None
