"""
Response schemas for the entitlements API.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from planguard.entitlements import Entitlements


class EntitlementsResponse(BaseModel):
    """Feature and limit decision for the calling organization."""
    tier: str
    status: str
    period_end: Optional[datetime] = None
    has_access: bool
    permit_packs: bool
    version_history: bool
    evidence_verification: bool
    job_assignment: bool
    # None = unlimited
    jobs_monthly_limit: Optional[int] = None
    seats_limit: Optional[int] = None

    @classmethod
    def from_entitlements(cls, entitlements: Entitlements) -> "EntitlementsResponse":
        return cls(
            tier=entitlements.tier.value,
            status=entitlements.status.value,
            period_end=entitlements.period_end,
            has_access=entitlements.has_access,
            permit_packs=entitlements.permit_packs,
            version_history=entitlements.version_history,
            evidence_verification=entitlements.evidence_verification,
            job_assignment=entitlements.job_assignment,
            jobs_monthly_limit=entitlements.jobs_monthly_limit,
            seats_limit=entitlements.seats_limit,
        )
