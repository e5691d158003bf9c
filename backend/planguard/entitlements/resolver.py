"""
Subscription resolver.

Merges the two local projections of an organization's plan into one
CanonicalSubscription. This is the only place the precedence is applied;
nothing else should read the projection tables to make access decisions.

Precedence (first projection with a usable value wins):
    tier:                 current plan -> legacy -> starter
    status:               legacy -> current plan -> none
    period dates, ids:    legacy -> current plan -> absent

Stored statuses go through the provider status map, so "cancelled" reads
as canceled and "unpaid" as past_due. Only NULL, empty or "none" count as
missing; any other unmapped value resolves to past_due (no access).

A paid tier with no status is resolved as active. That default can grant
access without a confirmed payment state and is logged every time it is
applied.

Read errors other than "no row" are logged and the projection is treated
as absent, so storage failures fall back to starter defaults.
"""

import logging
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from planguard.models.base import ensure_utc
from planguard.models.subscription import PlanTier, SubscriptionStatus
from planguard.entitlements.models import CanonicalSubscription, ProjectionSource
from planguard.repositories.subscription_repository import SubscriptionRepository
from planguard.services.status_mapping import is_known_status, parse_stored_status

logger = logging.getLogger(__name__)

TIER_PRECEDENCE: Tuple[ProjectionSource, ...] = (
    ProjectionSource.CURRENT_PLAN,
    ProjectionSource.LEGACY,
)
STATUS_PRECEDENCE: Tuple[ProjectionSource, ...] = (
    ProjectionSource.LEGACY,
    ProjectionSource.CURRENT_PLAN,
)
BILLING_FIELD_PRECEDENCE: Tuple[ProjectionSource, ...] = (
    ProjectionSource.LEGACY,
    ProjectionSource.CURRENT_PLAN,
)

BILLING_FIELDS = (
    "current_period_start",
    "current_period_end",
    "external_subscription_id",
    "external_customer_id",
)


def _tier_of(source: ProjectionSource, row) -> Optional[PlanTier]:
    if source == ProjectionSource.CURRENT_PLAN:
        return PlanTier.parse(row.plan_code)
    return PlanTier.parse(row.tier)


def _status_of(source: ProjectionSource, row) -> Optional[SubscriptionStatus]:
    return parse_stored_status(row.status)


def _first(
    precedence: Tuple[ProjectionSource, ...],
    rows: Dict[ProjectionSource, object],
    getter: Callable,
):
    """Return (value, source) from the first projection that has a value."""
    for source in precedence:
        row = rows.get(source)
        if row is None:
            continue
        value = getter(source, row)
        if value is not None:
            return value, source
    return None, ProjectionSource.DEFAULT


class SubscriptionResolver:
    """Resolves an organization's canonical subscription from local projections."""

    def __init__(self, db_session: Session):
        self.repository = SubscriptionRepository(db_session)

    def _read(self, source: ProjectionSource, organization_id: str):
        try:
            if source == ProjectionSource.CURRENT_PLAN:
                return self.repository.get_current_plan(organization_id)
            return self.repository.get_latest_legacy(organization_id)
        except SQLAlchemyError:
            logger.error("Failed to read subscription projection", extra={
                "organization_id": organization_id,
                "projection": source.value,
            }, exc_info=True)
            return None

    def resolve(self, organization_id: str) -> Optional[CanonicalSubscription]:
        """
        Resolve the canonical subscription for an organization.

        Returns:
            CanonicalSubscription, or None if neither projection has a row
        """
        rows = {
            ProjectionSource.CURRENT_PLAN: self._read(ProjectionSource.CURRENT_PLAN, organization_id),
            ProjectionSource.LEGACY: self._read(ProjectionSource.LEGACY, organization_id),
        }
        if all(row is None for row in rows.values()):
            return None

        tier, tier_source = _first(TIER_PRECEDENCE, rows, _tier_of)
        if tier is None:
            tier = PlanTier.STARTER

        status, status_source = _first(STATUS_PRECEDENCE, rows, _status_of)
        if status is None:
            status = SubscriptionStatus.NONE
        elif not is_known_status(rows[status_source].status):
            logger.error("Unrecognized stored subscription status, denying access", extra={
                "organization_id": organization_id,
                "stored_status": rows[status_source].status,
                "status_source": status_source.value,
            })

        self_healed = False
        if tier != PlanTier.STARTER and status == SubscriptionStatus.NONE:
            logger.warning("Paid plan without subscription status, assuming active", extra={
                "organization_id": organization_id,
                "tier": tier.value,
                "tier_source": tier_source.value,
            })
            status = SubscriptionStatus.ACTIVE
            self_healed = True

        billing = {
            field: _first(
                BILLING_FIELD_PRECEDENCE,
                rows,
                lambda source, row, field=field: getattr(row, field),
            )[0]
            for field in BILLING_FIELDS
        }

        return CanonicalSubscription(
            organization_id=organization_id,
            tier=tier,
            status=status,
            period_start=ensure_utc(billing["current_period_start"]),
            period_end=ensure_utc(billing["current_period_end"]),
            external_subscription_id=billing["external_subscription_id"],
            external_customer_id=billing["external_customer_id"],
            tier_source=tier_source,
            status_source=status_source,
            status_self_healed=self_healed,
        )
