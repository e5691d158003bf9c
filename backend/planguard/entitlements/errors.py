"""
Structured error for entitlement enforcement.
"""

from typing import Optional

from planguard.models.subscription import PlanTier, SubscriptionStatus

# Lowest tier that grants each plan-gated feature
FEATURE_REQUIRED_TIER = {
    "permit_packs": PlanTier.BUSINESS,
    "version_history": PlanTier.BUSINESS,
}


class EntitlementError(Exception):
    """
    Raised when a feature is about to execute without entitlement.

    Carries enough context to render upgrade messaging without another
    lookup. Only raised at the enforcement boundary, never while deriving.
    """

    def __init__(
        self,
        feature: str,
        tier: PlanTier,
        status: SubscriptionStatus,
        message: Optional[str] = None,
    ):
        self.feature = feature
        self.tier = tier
        self.status = status
        self.required_tier = FEATURE_REQUIRED_TIER.get(feature)
        super().__init__(
            message
            or f"Feature '{feature}' is not available on {tier.value} plan (status: {status.value})"
        )

    @property
    def reason_code(self) -> str:
        """Machine-readable reason code."""
        if self.status == SubscriptionStatus.PAST_DUE:
            return "payment_past_due"
        if self.status == SubscriptionStatus.CANCELED:
            return "subscription_canceled"
        if self.required_tier is not None and self.tier < self.required_tier:
            return "plan_upgrade_required"
        return "feature_not_entitled"

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "error": "entitlement_denied",
            "feature": self.feature,
            "tier": self.tier.value,
            "status": self.status.value,
            "required_tier": self.required_tier.value if self.required_tier else None,
            "reason_code": self.reason_code,
            "message": str(self),
        }
