"""
Entitlement value objects.

- CanonicalSubscription: merged view of an organization's billing state
- Entitlements: derived feature/limit decision (never persisted)
- Feature: gated feature keys

Limits use None for "unlimited".
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from planguard.models.subscription import PlanTier, SubscriptionStatus


class Feature(str, Enum):
    """Feature keys checked by the enforcement helpers."""
    PERMIT_PACKS = "permit_packs"
    VERSION_HISTORY = "version_history"
    EVIDENCE_VERIFICATION = "evidence_verification"
    JOB_ASSIGNMENT = "job_assignment"


class ProjectionSource(str, Enum):
    """Local projection a canonical field was taken from."""
    CURRENT_PLAN = "current_plan"
    LEGACY = "legacy"
    DEFAULT = "default"


@dataclass(frozen=True)
class CanonicalSubscription:
    """
    Single merged view of an organization's billing state.

    Built only by SubscriptionResolver. tier_source / status_source record
    which projection won; status_self_healed is True when a paid tier had
    no status and "active" was assumed.
    """
    organization_id: str
    tier: PlanTier
    status: SubscriptionStatus
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    external_subscription_id: Optional[str] = None
    external_customer_id: Optional[str] = None
    tier_source: ProjectionSource = ProjectionSource.DEFAULT
    status_source: ProjectionSource = ProjectionSource.DEFAULT
    status_self_healed: bool = False


@dataclass(frozen=True)
class Entitlements:
    """
    Feature and limit decision for one organization at one instant.

    tier, status and period_end are the values read from storage, before
    any normalization done while deciding.
    """
    permit_packs: bool
    version_history: bool
    evidence_verification: bool
    job_assignment: bool
    jobs_monthly_limit: Optional[int]
    seats_limit: Optional[int]
    tier: PlanTier
    status: SubscriptionStatus
    period_end: Optional[datetime]
    has_access: bool

    def get_limit(self, limit_name: str) -> Optional[int]:
        if limit_name == "jobs_monthly_limit":
            return self.jobs_monthly_limit
        if limit_name == "seats_limit":
            return self.seats_limit
        raise ValueError(f"Unknown limit: {limit_name}")

    def is_limit_exceeded(self, limit_name: str, current_usage: int) -> bool:
        """True when current_usage has reached the limit. Unlimited never is."""
        limit = self.get_limit(limit_name)
        if limit is None:
            return False
        return current_usage >= limit

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["tier"] = self.tier.value
        data["status"] = self.status.value
        data["period_end"] = self.period_end.isoformat() if self.period_end else None
        return data
