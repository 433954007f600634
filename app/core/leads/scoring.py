"""
Lead scoring.

Pure functions: the score is a weighted sum of tracked actions plus a
recency bonus, and tags are derived from the score. All weights and
thresholds come from the tenant's LeadScoringPolicy.
"""

from datetime import datetime, timedelta
from typing import Iterable, Optional

from app.core.tenant import LeadScoringPolicy

TAG_WARM = "warm"
TAG_HIGH_VALUE = "high-value"
TAG_CUSTOMER = "customer"
TAG_LOYAL = "loyal"

# Tags recomputed on every scoring pass; any other tag is left alone
MANAGED_TAGS = {TAG_WARM, TAG_HIGH_VALUE, TAG_CUSTOMER, TAG_LOYAL}

LOYAL_ORDER_COUNT = 3


def score_lead(
    counts: dict[str, int],
    last_interaction: Optional[datetime],
    now: datetime,
    policy: LeadScoringPolicy,
) -> int:
    """Compute a lead's score.

    Args:
        counts: Action name -> number of times performed
        last_interaction: Most recent interaction time
        now: Current time
        policy: Tenant scoring policy

    Returns:
        Integer score
    """
    score = sum(
        policy.action_points.get(action, 0) * count
        for action, count in counts.items()
    )

    if last_interaction is not None:
        if now - last_interaction < timedelta(days=policy.recency_window_days):
            score += policy.recency_bonus

    return score


def lead_tags(
    score: int,
    counts: dict[str, int],
    policy: LeadScoringPolicy,
    existing: Iterable[str] = (),
) -> list[str]:
    """Derive tags from score and activity, keeping unmanaged tags."""
    tags = [tag for tag in existing if tag not in MANAGED_TAGS]

    orders = counts.get("order_placed", 0)
    if orders > 0:
        tags.append(TAG_CUSTOMER)
    if orders > LOYAL_ORDER_COUNT:
        tags.append(TAG_LOYAL)

    if score > policy.high_value_threshold:
        tags.append(TAG_HIGH_VALUE)
    elif score > policy.warm_threshold:
        tags.append(TAG_WARM)

    return tags
