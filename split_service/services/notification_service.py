"""Notification service - tells people when an experiment reaches significance.

Mail transport is the host's business; we hand each message to
ctx.notifier(recipient, subject, body). The default notifier just logs.
"""
from datetime import datetime, timedelta
from typing import Optional

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from split_service.database import utcnow
from split_service.models import ARM_CONTROL, ARM_VARIANT, Experiment
from split_service.services.stats_service import get_experiment_stats

# Minimum time between two significance notifications for one experiment
NOTIFICATION_COOLDOWN_SECONDS = 3600


def log_notifier(recipient: str, subject: str, body: str) -> None:
    logger.info("Significance notification", recipient=recipient, subject=subject)


def can_send_notification(experiment: Experiment, now: Optional[datetime] = None) -> bool:
    if not experiment.id:
        return False
    if experiment.significance_notified_at is None:
        return True
    cooldown_end = experiment.significance_notified_at + timedelta(seconds=NOTIFICATION_COOLDOWN_SECONDS)
    return (now or utcnow()) > cooldown_end


def _signed(value: float, places: int) -> str:
    return f"{'+' if value >= 0 else ''}{value:.{places}f}"


def build_significance_body(experiment: Experiment, stats: dict, winner: str) -> str:
    rates = stats["conversion_rates"]
    control_rate = float(rates[ARM_CONTROL])
    variant_rate = float(rates[ARM_VARIANT])

    relative_lift = (variant_rate - control_rate) / control_rate * 100 if control_rate > 0 else 0
    absolute_lift = variant_rate - control_rate

    lines = [
        f"Your split test '{experiment.name}' has reached statistical significance!",
        "",
        f"WINNER: {winner}",
        f"Confidence: {stats['confidence'] * 100:.1f}%",
        "",
        "PERFORMANCE",
        f"Relative lift: {_signed(relative_lift, 1)}%",
        f"Absolute lift: {_signed(absolute_lift, 2)} pp",
        "",
        "CONVERSION RATES",
        f"Control: {rates[ARM_CONTROL]}% "
        f"({stats['conversions'][ARM_CONTROL]}/{stats['impressions'][ARM_CONTROL]})",
        f"Variant: {rates[ARM_VARIANT]}% "
        f"({stats['conversions'][ARM_VARIANT]}/{stats['impressions'][ARM_VARIANT]})",
        "",
        f"View full results: /experiments/{experiment.id}/results",
    ]
    return "\n".join(lines)


def send_significance_notification(db: Session, ctx, experiment: Experiment, stats: dict) -> int:
    """Send to every configured address. Returns how many went out."""
    settings = ctx.settings
    if not settings.send_significance_notifications or not settings.notification_emails:
        return 0

    winner = {ARM_VARIANT: "Variant", ARM_CONTROL: "Control"}.get(stats["winner"], "None (tie)")
    subject = f"Split Test '{experiment.name}' has reached statistical significance"
    body = build_significance_body(experiment, stats, winner)

    sent = 0
    for email in settings.notification_emails:
        try:
            ctx.notifier(email, subject, body)
            sent += 1
        except Exception as exc:
            logger.error("Failed to send significance notification", recipient=email, error=str(exc))

    if sent:
        logger.info("Significance notification sent", handle=experiment.handle, recipients=sent)
        try:
            experiment.significance_notified_at = utcnow()
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(
                "Failed to update significance notification timestamp",
                handle=experiment.handle,
                error=str(exc),
            )
    return sent


def check_and_notify_significance(db: Session, ctx, experiment: Experiment) -> int:
    """Called after each counted conversion"""
    # cooldown first, stats are the expensive part
    if not can_send_notification(experiment):
        return 0

    stats = get_experiment_stats(db, ctx, experiment)
    if not stats["is_significant"]:
        return 0
    return send_significance_notification(db, ctx, experiment, stats)
