"""Results/analytics endpoints.

Returns the significance stats for an experiment.
"""
from typing import Optional
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from split_service.database import get_db
from split_service.auth import verify_token
from split_service.context import ServiceContext, get_context
from split_service.schemas import ExperimentStats, TimeEstimate
from split_service.services.experiment_service import get_experiment_by_id
from split_service.services.stats_service import get_experiment_stats, get_time_estimate

router = APIRouter(prefix="/experiments", tags=["results"])


@router.get("/{experiment_id}/results", response_model=ExperimentStats)
def get_results_endpoint(
    experiment_id: int,
    db: Session = Depends(get_db),
    ctx: ServiceContext = Depends(get_context),
    token: str = Depends(verify_token)
):
    """
    Get experiment performance results.

    Returns metrics including:
    - Impressions, conversions and unique visitors per arm
    - Conversion rates with 95% confidence intervals
    - Chi-squared confidence, winner and relative improvement
    - Sample size needed and progress towards it
    - Daily series and per goal breakdown
    """
    experiment = get_experiment_by_id(db, experiment_id)
    return get_experiment_stats(db, ctx, experiment)


@router.get("/{experiment_id}/time-estimate", response_model=Optional[TimeEstimate])
def get_time_estimate_endpoint(
    experiment_id: int,
    db: Session = Depends(get_db),
    ctx: ServiceContext = Depends(get_context),
    token: str = Depends(verify_token)
):
    """Projected days to significance (null when traffic is too low to tell)"""
    experiment = get_experiment_by_id(db, experiment_id)
    return get_time_estimate(db, ctx, experiment)
