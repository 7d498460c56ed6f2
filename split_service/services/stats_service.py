"""Stats service - experiment results and statistical significance.

The math functions at the top are pure (plain ints/floats in, values out)
so they can be tested without a database. Degenerate input never raises,
it shows up as confidence 0.0 / improvement None instead.

Conversion rates are in percent, e.g. 5.25 means 5.25%.
"""
import math
from datetime import datetime
from typing import Dict, Optional, Tuple

from sqlalchemy.orm import Session

from split_service.database import utcnow
from split_service.models import ARM_CONTROL, ARM_VARIANT, Experiment
from split_service.services import tracking_service
from split_service.utils.cache import get_completed_stats, set_completed_stats

MIN_IMPRESSIONS = 10
DEFAULT_SAMPLE_SIZE = 1000

Z_95 = 1.96  # 95% confidence, two-tailed
Z_POWER = 0.84  # 80% power

# (confidence, critical value) for chi-squared with 1 degree of freedom
CRITICAL_VALUES = [
    (0.50, 0.455),
    (0.75, 1.323),
    (0.80, 1.642),
    (0.85, 2.072),
    (0.90, 2.706),
    (0.95, 3.841),  # the usual threshold
    (0.975, 5.024),
    (0.99, 6.635),
    (0.995, 7.879),
    (0.999, 10.828),
]
MAX_CONFIDENCE = 0.999


def conversion_rate(impressions: int, conversions: int) -> float:
    if impressions == 0:
        return 0.0
    return round(conversions / impressions * 100, 2)


def calculate_significance(
    control_impressions: int,
    control_conversions: int,
    variant_impressions: int,
    variant_conversions: int,
) -> Tuple[float, float]:
    """
    Pearson's chi-squared test on the 2x2 table

                 | converted | not converted
        control  |     a     |       b
        variant  |     c     |       d

    Returns (confidence, chi_squared), both rounded to 4 places.
    Either arm below MIN_IMPRESSIONS means not enough data: (0.0, 0.0).
    """
    if control_impressions < MIN_IMPRESSIONS or variant_impressions < MIN_IMPRESSIONS:
        return 0.0, 0.0

    control_misses = control_impressions - control_conversions
    variant_misses = variant_impressions - variant_conversions
    total_conversions = control_conversions + variant_conversions
    total_misses = control_misses + variant_misses
    grand_total = control_impressions + variant_impressions

    observed_expected = [
        (control_conversions, control_impressions * total_conversions / grand_total),
        (control_misses, control_impressions * total_misses / grand_total),
        (variant_conversions, variant_impressions * total_conversions / grand_total),
        (variant_misses, variant_impressions * total_misses / grand_total),
    ]
    if any(expected == 0 for _, expected in observed_expected):
        return 0.0, 0.0

    chi_squared = sum((observed - expected) ** 2 / expected for observed, expected in observed_expected)
    confidence = chi_squared_to_confidence(chi_squared)

    return round(confidence, 4), round(chi_squared, 4)


def chi_squared_to_confidence(chi_squared: float) -> float:
    """
    Confidence level for a chi-squared statistic (1 df), interpolated
    linearly between the CRITICAL_VALUES points. Capped at 0.999.
    """
    last_confidence = 0.0
    last_critical = 0.0

    for confidence, critical in CRITICAL_VALUES:
        if chi_squared < critical:
            if last_confidence == 0.0:
                return confidence * (chi_squared / critical)
            fraction = (chi_squared - last_critical) / (critical - last_critical)
            return last_confidence + (confidence - last_confidence) * fraction
        last_confidence = confidence
        last_critical = critical

    return MAX_CONFIDENCE


def confidence_interval(rate: float, n: int) -> Dict[str, float]:
    """
    95% Wald interval for a rate given as a proportion (0.05 = 5%).
    Bounds and margin come back in percent, rounded to 1 place.
    """
    if n == 0:
        return {"lower": 0, "upper": 0, "margin": 0}

    # several goal types per visitor can push conversions past impressions
    rate = min(max(rate, 0.0), 1.0)
    margin = Z_95 * math.sqrt(rate * (1 - rate) / n)
    return {
        "lower": round(max(0.0, rate - margin) * 100, 1),
        "upper": round(min(1.0, rate + margin) * 100, 1),
        "margin": round(margin * 100, 1),
    }


def improvement(control_rate: float, variant_rate: float) -> Optional[float]:
    """Relative lift in percent. None for a zero baseline."""
    if control_rate == 0:
        return None
    return round((variant_rate - control_rate) / control_rate * 100, 2)


def determine_winner(control_rate: float, variant_rate: float, is_significant: bool) -> Optional[str]:
    if not is_significant:
        return None
    if variant_rate > control_rate:
        return ARM_VARIANT
    if control_rate > variant_rate:
        return ARM_CONTROL
    return None


def required_sample_size(baseline_rate: float, mde: float) -> int:
    """
    Visitors needed per arm to detect a relative change of `mde` at
    95% confidence / 80% power. baseline_rate is a proportion.
    """
    if baseline_rate <= 0:
        return DEFAULT_SAMPLE_SIZE
    baseline_rate = min(baseline_rate, 1.0)

    delta = baseline_rate * mde
    pooled_variance = 2 * baseline_rate * (1 - baseline_rate)
    n = (Z_95 + Z_POWER) ** 2 * pooled_variance / delta ** 2
    return int(math.ceil(n))


def time_to_significance(
    is_significant: bool,
    total_impressions: int,
    sample_size_per_arm: int,
    started_at: Optional[datetime],
    now: Optional[datetime] = None,
) -> Optional[dict]:
    """
    Projected days until the required sample is reached.
    None when there is not enough traffic to say anything.
    """
    if is_significant:
        return {"reached": True, "days_remaining": 0}

    if total_impressions < MIN_IMPRESSIONS:
        return None

    days_running = 1
    if started_at is not None:
        days_running = max(1, ((now or utcnow()) - started_at).days)

    daily_rate = total_impressions / days_running
    if daily_rate < 1:
        return None

    needed = sample_size_per_arm * 2
    remaining = max(0, needed - total_impressions)

    return {
        "reached": False,
        "days_remaining": int(math.ceil(remaining / daily_rate)),
        "impressions_needed": needed,
        "current_impressions": total_impressions,
        "daily_rate": int(round(daily_rate)),
    }


def get_experiment_stats(db: Session, ctx, experiment: Experiment) -> dict:
    """
    Full results for an experiment.
    Completed experiments can't change, so their stats are cached for good.
    """
    if experiment.is_completed():
        cached = get_completed_stats(experiment.id)
        if cached is not None:
            return cached

    impressions = tracking_service.get_total_impressions(db, experiment.id)
    conversions = tracking_service.get_total_conversions(db, experiment.id)
    visitors = tracking_service.get_unique_visitors(db, experiment.id)

    rates = {
        arm: conversion_rate(impressions[arm], conversions[arm])
        for arm in (ARM_CONTROL, ARM_VARIANT)
    }

    confidence, chi_squared = calculate_significance(
        impressions[ARM_CONTROL],
        conversions[ARM_CONTROL],
        impressions[ARM_VARIANT],
        conversions[ARM_VARIANT],
    )
    is_significant = confidence >= ctx.settings.significance_threshold

    # engagement: how often a visitor came back
    sessions_per_visitor = {
        arm: round(impressions[arm] / visitors[arm], 1) if visitors[arm] > 0 else 0
        for arm in (ARM_CONTROL, ARM_VARIANT)
    }

    intervals = {
        arm: confidence_interval(rates[arm] / 100, visitors[arm])
        for arm in (ARM_CONTROL, ARM_VARIANT)
    }

    total_visitors = visitors[ARM_CONTROL] + visitors[ARM_VARIANT]
    sample_size = required_sample_size(rates[ARM_CONTROL] / 100, ctx.settings.minimum_detectable_effect)
    progress = min(100, round(total_visitors / (sample_size * 2) * 100)) if sample_size > 0 else 0

    result = {
        "experiment_id": experiment.id,
        "impressions": impressions,
        "conversions": conversions,
        "visitors": visitors,
        "conversion_rates": rates,
        "confidence": confidence,
        "chi_squared": chi_squared,
        "is_significant": is_significant,
        "improvement": improvement(rates[ARM_CONTROL], rates[ARM_VARIANT]),
        "winner": determine_winner(rates[ARM_CONTROL], rates[ARM_VARIANT], is_significant),
        "confidence_intervals": intervals,
        "sample_size_needed": sample_size,
        "total_visitors": total_visitors,
        "progress_percent": progress,
        "sessions_per_visitor": sessions_per_visitor,
        "daily_stats": tracking_service.get_daily_stats(db, experiment.id),
        "goal_stats": tracking_service.get_goal_stats(db, experiment.id),
    }

    if experiment.is_completed():
        set_completed_stats(experiment.id, result)

    return result


def get_time_estimate(
    db: Session, ctx, experiment: Experiment, now: Optional[datetime] = None
) -> Optional[dict]:
    stats = get_experiment_stats(db, ctx, experiment)
    total = stats["impressions"][ARM_CONTROL] + stats["impressions"][ARM_VARIANT]
    return time_to_significance(
        stats["is_significant"],
        total,
        stats["sample_size_needed"],
        experiment.started_at,
        now,
    )
