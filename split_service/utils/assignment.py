"""Helper functions for bucketing visitors and validating visitor cookies.

Arms are drawn at random (not hashed) and then made sticky by the cookie and
the persisted assignment row.
"""
import random
import re
import uuid
from typing import Optional

from split_service.models import ARM_CONTROL, ARM_VARIANT, ARMS

VISITOR_COOKIE_PREFIX = "_splittest_"
VISITOR_ID_COOKIE = "_splittest_vid"

UUID_RE = re.compile(r"^[a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12}$", re.IGNORECASE)

_rng = random.SystemRandom()


def draw_bucket() -> int:
    """Uniform integer in [1, 100]"""
    return _rng.randint(1, 100)


def arm_for_draw(draw: int, traffic_split: int) -> str:
    """
    Map a draw to an arm.

    traffic_split is the percentage routed to the variant, so a split of 0
    never yields variant and a split of 100 always does.
    """
    return ARM_VARIANT if draw <= traffic_split else ARM_CONTROL


def arm_cookie_name(handle: str) -> str:
    return f"{VISITOR_COOKIE_PREFIX}{handle}"


def clean_arm(value: Optional[str]) -> Optional[str]:
    """Return value only if it is exactly one of the known arms"""
    if value is not None and value in ARMS:
        return value
    return None


def clean_visitor_id(value: Optional[str]) -> Optional[str]:
    if value and UUID_RE.match(value):
        return value
    return None


def new_visitor_id() -> str:
    return str(uuid.uuid4())
