"""Experiment endpoints (create, goals, lifecycle)."""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from split_service.database import get_db
from split_service.auth import verify_token
from split_service.context import ServiceContext, get_context
from split_service.schemas import CompleteRequest, ExperimentCreate, ExperimentResponse, GoalCreate, GoalResponse
from split_service.services import experiment_service

# NOTE: prefix means all routes in here start with /experiments
router = APIRouter(prefix="/experiments", tags=["experiments"])


@router.post("", response_model=ExperimentResponse, status_code=201)
def create_experiment_endpoint(
    experiment_data: ExperimentCreate,
    db: Session = Depends(get_db),
    ctx: ServiceContext = Depends(get_context),
    token: str = Depends(verify_token)
):
    """
    Create a new experiment (draft).

    The service validates the handle and the control/variant pair and
    builds the cascade mappings for the control node's descendants.
    """
    return experiment_service.create_experiment(db, ctx, experiment_data)


@router.get("/{experiment_id}", response_model=ExperimentResponse)
def get_experiment_endpoint(
    experiment_id: int,
    db: Session = Depends(get_db),
    token: str = Depends(verify_token)
):
    """Get experiment by id."""
    return experiment_service.get_experiment_by_id(db, experiment_id)


@router.post("/{experiment_id}/goals", response_model=GoalResponse, status_code=201)
def add_goal_endpoint(
    experiment_id: int,
    goal_data: GoalCreate,
    db: Session = Depends(get_db),
    token: str = Depends(verify_token)
):
    experiment = experiment_service.get_experiment_by_id(db, experiment_id)
    return experiment_service.add_goal(db, experiment, goal_data)


@router.post("/{experiment_id}/start", response_model=ExperimentResponse)
def start_experiment_endpoint(
    experiment_id: int,
    db: Session = Depends(get_db),
    ctx: ServiceContext = Depends(get_context),
    token: str = Depends(verify_token)
):
    experiment = experiment_service.get_experiment_by_id(db, experiment_id)
    return experiment_service.start_experiment(db, ctx, experiment)


@router.post("/{experiment_id}/pause", response_model=ExperimentResponse)
def pause_experiment_endpoint(
    experiment_id: int,
    db: Session = Depends(get_db),
    token: str = Depends(verify_token)
):
    experiment = experiment_service.get_experiment_by_id(db, experiment_id)
    return experiment_service.pause_experiment(db, experiment)


@router.post("/{experiment_id}/complete", response_model=ExperimentResponse)
def complete_experiment_endpoint(
    experiment_id: int,
    body: CompleteRequest,
    db: Session = Depends(get_db),
    token: str = Depends(verify_token)
):
    """Mark the experiment completed, optionally declaring a winner"""
    experiment = experiment_service.get_experiment_by_id(db, experiment_id)
    return experiment_service.complete_experiment(db, experiment, body.winner)


@router.delete("/{experiment_id}", status_code=204)
def delete_experiment_endpoint(
    experiment_id: int,
    db: Session = Depends(get_db),
    token: str = Depends(verify_token)
):
    experiment = experiment_service.get_experiment_by_id(db, experiment_id)
    experiment_service.delete_experiment(db, experiment)
