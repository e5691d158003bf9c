"""
Database models for the local billing projections.
"""

from planguard.models.subscription import (
    PlanTier,
    SubscriptionStatus,
    OrgSubscription,
    LegacySubscription,
    RECONCILABLE_STATUSES,
)

__all__ = [
    "PlanTier",
    "SubscriptionStatus",
    "OrgSubscription",
    "LegacySubscription",
    "RECONCILABLE_STATUSES",
]
