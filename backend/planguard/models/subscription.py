"""
Subscription projections mirrored from the billing provider.

Two tables hold an organization's plan state:
- org_subscriptions: current plan table, one row per organization.
- subscriptions: legacy subscription table, possibly several rows per
  organization (newest by created_at is the live one).

Both are written by the webhook handler and by reconciliation through
SubscriptionRepository.upsert_plan. Readers must go through
SubscriptionResolver, which applies the precedence between the two.

Tier and status are stored as plain strings so drifted values can be
observed; use PlanTier.parse and status_mapping.parse_stored_status when
reading.
"""

from enum import Enum
from typing import Optional

from sqlalchemy import (
    Column, String, DateTime, Index, UniqueConstraint
)

from planguard.db_base import Base
from planguard.models.base import TimestampMixin, OrganizationScopedMixin, generate_uuid


class PlanTier(str, Enum):
    """Plan tiers, ordered by entitlement breadth."""
    STARTER = "starter"
    PRO = "pro"
    BUSINESS = "business"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]

    def __lt__(self, other):
        if not isinstance(other, PlanTier):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, PlanTier):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, PlanTier):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, PlanTier):
            return NotImplemented
        return self.rank >= other.rank

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["PlanTier"]:
        """Parse a stored or external plan code. Unknown values return None."""
        if not value:
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


_TIER_RANK = {
    PlanTier.STARTER: 0,
    PlanTier.PRO: 1,
    PlanTier.BUSINESS: 2,
}


class SubscriptionStatus(str, Enum):
    """Normalized subscription lifecycle status."""
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    NONE = "none"


# Statuses worth re-checking against the billing provider
RECONCILABLE_STATUSES = (
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.TRIALING.value,
    SubscriptionStatus.PAST_DUE.value,
)


class OrgSubscription(Base, TimestampMixin, OrganizationScopedMixin):
    """
    Current plan table.

    Authoritative for the plan tier; one row per organization. A new
    external subscription supersedes the row in place.
    """

    __tablename__ = "org_subscriptions"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    plan_code = Column(
        String(20),
        nullable=True,
        comment="Plan tier (starter, pro, business)"
    )
    status = Column(
        String(20),
        nullable=True,
        index=True,
        comment="Normalized subscription status"
    )

    external_subscription_id = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Billing provider subscription id"
    )
    external_customer_id = Column(
        String(255),
        nullable=True,
        comment="Billing provider customer id"
    )

    current_period_start = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Start of current billing period"
    )
    current_period_end = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="End of current billing period"
    )

    __table_args__ = (
        UniqueConstraint("organization_id", name="uq_org_subscriptions_organization"),
    )

    def __repr__(self) -> str:
        return (
            f"<OrgSubscription(organization_id={self.organization_id}, "
            f"plan_code={self.plan_code}, status={self.status})>"
        )


class LegacySubscription(Base, TimestampMixin, OrganizationScopedMixin):
    """
    Legacy subscription table.

    Authoritative for status, billing period dates and external ids. Rows
    are retained after cancellation; a later external subscription adds a
    new row for the same organization.
    """

    __tablename__ = "subscriptions"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    tier = Column(
        String(20),
        nullable=True,
        comment="Plan tier (starter, pro, business)"
    )
    status = Column(
        String(20),
        nullable=True,
        index=True,
        comment="Normalized subscription status"
    )

    external_subscription_id = Column(
        String(255),
        nullable=True,
        comment="Billing provider subscription id"
    )
    external_customer_id = Column(
        String(255),
        nullable=True,
        comment="Billing provider customer id"
    )

    current_period_start = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Start of current billing period"
    )
    current_period_end = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="End of current billing period"
    )

    __table_args__ = (
        UniqueConstraint(
            "organization_id",
            "external_subscription_id",
            name="uq_subscriptions_org_external",
        ),
        Index("ix_subscriptions_org_created", "organization_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<LegacySubscription(organization_id={self.organization_id}, "
            f"tier={self.tier}, status={self.status})>"
        )
