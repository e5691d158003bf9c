"""
Entitlement derivation.

derive_entitlements() maps a canonical subscription and the current time to
an Entitlements decision. It is pure: no I/O, no logging, never raises for a
well-formed CanonicalSubscription.

Rules:
- no subscription           -> starter defaults
- active / trialing         -> access
- canceled                  -> access until period_end, then none
- past_due                  -> no access, whatever the tier or period (hard block)
- no access                 -> every limit is 0
"""

from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from planguard.models.base import ensure_utc
from planguard.models.subscription import PlanTier, SubscriptionStatus
from planguard.entitlements.models import CanonicalSubscription, Entitlements

# (jobs_monthly_limit, seats_limit); None = unlimited
TIER_LIMITS: Dict[PlanTier, Tuple[Optional[int], Optional[int]]] = {
    PlanTier.STARTER: (10, 1),
    PlanTier.PRO: (None, 5),
    PlanTier.BUSINESS: (None, None),
}

LOCKED_OUT_LIMITS: Tuple[int, int] = (0, 0)

ACCESS_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


def starter_defaults() -> Entitlements:
    """Entitlements for an organization with no billing relationship."""
    jobs_limit, seats_limit = TIER_LIMITS[PlanTier.STARTER]
    return Entitlements(
        permit_packs=False,
        version_history=False,
        evidence_verification=True,
        job_assignment=True,
        jobs_monthly_limit=jobs_limit,
        seats_limit=seats_limit,
        tier=PlanTier.STARTER,
        status=SubscriptionStatus.NONE,
        period_end=None,
        has_access=True,
    )


def effective_status(tier: PlanTier, status: SubscriptionStatus) -> SubscriptionStatus:
    """
    Status used for the access decision.

    A paid tier with no status is treated as active. This mirrors the
    resolver so a raw record is handled the same way.
    """
    if status == SubscriptionStatus.NONE and tier != PlanTier.STARTER:
        return SubscriptionStatus.ACTIVE
    return status


def derive_entitlements(
    subscription: Optional[CanonicalSubscription],
    now: Optional[datetime] = None,
) -> Entitlements:
    """
    Derive entitlements for a subscription at time `now` (default: utcnow).

    The returned tier/status/period_end are the subscription's own values,
    not the normalized ones.
    """
    if subscription is None:
        return starter_defaults()

    now = ensure_utc(now) if now is not None else datetime.now(timezone.utc)
    period_end = ensure_utc(subscription.period_end)
    status = effective_status(subscription.tier, subscription.status)

    is_active = status in ACCESS_STATUSES
    is_grace = (
        status == SubscriptionStatus.CANCELED
        and period_end is not None
        and period_end > now
    )

    has_access = is_active or is_grace
    # Checked after the OR so a stale grace window can never re-open access.
    if status == SubscriptionStatus.PAST_DUE:
        has_access = False

    is_business = subscription.tier == PlanTier.BUSINESS

    if has_access:
        jobs_limit, seats_limit = TIER_LIMITS[subscription.tier]
    else:
        jobs_limit, seats_limit = LOCKED_OUT_LIMITS

    return Entitlements(
        permit_packs=has_access and is_business,
        version_history=has_access and is_business,
        evidence_verification=True,
        job_assignment=True,
        jobs_monthly_limit=jobs_limit,
        seats_limit=seats_limit,
        tier=subscription.tier,
        status=subscription.status,
        period_end=subscription.period_end,
        has_access=has_access,
    )
