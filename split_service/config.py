"""Configuration management.

Reads settings from env vars (a .env file is picked up too).
Keyword overrides are accepted so tests can build their own Settings.
"""
import os
import re
from typing import List
from dotenv import load_dotenv

from split_service.errors import ValidationError

load_dotenv()

COUNTING_FIRST_ONLY = "first_only"
COUNTING_PER_GOAL_TYPE = "per_goal_type"
COUNTING_UNLIMITED = "unlimited"
COUNTING_MODES = (COUNTING_FIRST_ONLY, COUNTING_PER_GOAL_TYPE, COUNTING_UNLIMITED)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _env_list(name: str, default: str = "") -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


def _env_bool(name: str, default: str = "true") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """App settings loaded from environment variables"""

    # API tokens - comma separated list
    api_tokens: List[str] = os.getenv(
        "API_TOKEN",
        "default-dev-token"
    ).split(",")

    # Database
    database_url: str = os.getenv(
        "DATABASE_URL",
        "sqlite:///./split_service.db"
    )

    # Visitor cookies
    cookie_duration_days: int = int(os.getenv("COOKIE_DURATION_DAYS", "30"))

    # Statistics
    significance_threshold: float = float(os.getenv("SIGNIFICANCE_THRESHOLD", "0.95"))
    minimum_detectable_effect: float = float(os.getenv("MINIMUM_DETECTABLE_EFFECT", "0.10"))

    # Conversion tracking
    conversion_rate_limit: int = int(os.getenv("CONVERSION_RATE_LIMIT", "10"))
    conversion_counting_mode: str = os.getenv("CONVERSION_COUNTING_MODE", COUNTING_PER_GOAL_TYPE)
    rate_limit_window_seconds: int = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))
    rate_limit_retention_seconds: int = int(os.getenv("RATE_LIMIT_RETENTION_SECONDS", "300"))
    rate_limit_sweep_interval: int = int(os.getenv("RATE_LIMIT_SWEEP_INTERVAL", "60"))
    tracking_endpoint: str = os.getenv("TRACKING_ENDPOINT", "/track/convert")
    secret_key: str = os.getenv("SECRET_KEY", "dev-secret-change-me")

    # Cascade
    cascade_async_threshold: int = int(os.getenv("CASCADE_ASYNC_THRESHOLD", "50"))

    # Notifications
    send_significance_notifications: bool = _env_bool("SEND_SIGNIFICANCE_NOTIFICATIONS")
    notification_emails: List[str] = _env_list("NOTIFICATION_EMAILS")

    # Cache settings
    cache_max_size: int = int(os.getenv("CACHE_MAX_SIZE", "10000"))

    def __init__(self, **overrides):
        for key, value in overrides.items():
            if not hasattr(type(self), key):
                raise ValidationError(f"Unknown setting '{key}'")
            setattr(self, key, value)
        self.validate()

    def validate(self):
        """Range checks for the options the admin can change"""
        if not 1 <= self.cookie_duration_days <= 365:
            raise ValidationError("cookie_duration_days must be between 1 and 365")
        if not 0.80 <= self.significance_threshold <= 0.99:
            raise ValidationError("significance_threshold must be between 0.80 and 0.99")
        if not 0.05 <= self.minimum_detectable_effect <= 0.30:
            raise ValidationError("minimum_detectable_effect must be between 0.05 and 0.30")
        if not 1 <= self.conversion_rate_limit <= 100:
            raise ValidationError("conversion_rate_limit must be between 1 and 100")
        if self.conversion_counting_mode not in COUNTING_MODES:
            raise ValidationError(
                f"conversion_counting_mode must be one of: {', '.join(COUNTING_MODES)}"
            )
        for email in self.notification_emails:
            if not EMAIL_RE.match(email):
                raise ValidationError(f"Invalid email address: {email}")


settings = Settings()
