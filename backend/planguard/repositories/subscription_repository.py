"""
Subscription repository for the two local billing projections.

Encapsulates all database operations on org_subscriptions (current plan
table) and subscriptions (legacy table):
- Projection reads used by SubscriptionResolver
- Reconciliation candidate selection
- upsert_plan: the single idempotent write path for plan state
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, List, Tuple

from sqlalchemy import select, union
from sqlalchemy.orm import Session

from planguard.models.base import ensure_utc
from planguard.models.subscription import (
    OrgSubscription,
    LegacySubscription,
    PlanTier,
    SubscriptionStatus,
    RECONCILABLE_STATUSES,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubscriptionUpsert:
    """Plan state to write for one (organization, external subscription)."""
    organization_id: str
    external_subscription_id: str
    tier: PlanTier
    status: SubscriptionStatus
    external_customer_id: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None


def _apply(row, values: dict) -> bool:
    """Set attributes that differ; return True if anything changed."""
    changed = False
    for key, value in values.items():
        current = getattr(row, key)
        if isinstance(current, datetime) or isinstance(value, datetime):
            if ensure_utc(current) == ensure_utc(value):
                continue
        elif current == value:
            continue
        setattr(row, key, value)
        changed = True
    return changed


class SubscriptionRepository:
    """
    Repository for billing projection data access.

    All lookups are keyed by organization_id.
    """

    def __init__(self, db_session: Session):
        """
        Initialize repository with database session.

        Args:
            db_session: SQLAlchemy database session
        """
        self.db = db_session

    # ------------------------------------------------------------------
    # Projection reads
    # ------------------------------------------------------------------

    def get_current_plan(self, organization_id: str) -> Optional[OrgSubscription]:
        """Get the current plan row for an organization."""
        return self.db.execute(
            select(OrgSubscription).where(
                OrgSubscription.organization_id == organization_id
            )
        ).scalars().first()

    def get_latest_legacy(self, organization_id: str) -> Optional[LegacySubscription]:
        """Get the newest legacy subscription row for an organization."""
        return self.db.execute(
            select(LegacySubscription)
            .where(LegacySubscription.organization_id == organization_id)
            .order_by(LegacySubscription.created_at.desc())
            .limit(1)
        ).scalars().first()

    def get_legacy_for_external(
        self,
        organization_id: str,
        external_subscription_id: str,
    ) -> Optional[LegacySubscription]:
        return self.db.execute(
            select(LegacySubscription).where(
                LegacySubscription.organization_id == organization_id,
                LegacySubscription.external_subscription_id == external_subscription_id,
            )
        ).scalars().first()

    def list_reconcilable(self) -> List[Tuple[str, str]]:
        """
        Get (organization_id, external_subscription_id) pairs worth reconciling.

        A pair qualifies when either projection has a non-null external id
        and a status in active / trialing / past_due.
        """
        current = select(
            OrgSubscription.organization_id,
            OrgSubscription.external_subscription_id,
        ).where(
            OrgSubscription.external_subscription_id.isnot(None),
            OrgSubscription.status.in_(RECONCILABLE_STATUSES),
        )
        legacy = select(
            LegacySubscription.organization_id,
            LegacySubscription.external_subscription_id,
        ).where(
            LegacySubscription.external_subscription_id.isnot(None),
            LegacySubscription.status.in_(RECONCILABLE_STATUSES),
        )
        combined = union(current, legacy).subquery()
        rows = self.db.execute(
            select(combined.c.organization_id, combined.c.external_subscription_id)
            .order_by(combined.c.organization_id, combined.c.external_subscription_id)
        ).all()
        return [(row[0], row[1]) for row in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert_plan(self, plan: SubscriptionUpsert, supersede: bool = True) -> bool:
        """
        Write plan state to both projections.

        Keyed by (organization_id, external_subscription_id). Applying the
        same state twice changes nothing the second time.

        Args:
            plan: State to write
            supersede: If False, a current plan row that belongs to a
                different external subscription is left untouched.

        Returns:
            True if any row was inserted or modified
        """
        values = {
            "status": plan.status.value,
            "external_subscription_id": plan.external_subscription_id,
            "external_customer_id": plan.external_customer_id,
            "current_period_start": plan.period_start,
            "current_period_end": plan.period_end,
        }
        changed = False

        current = self.get_current_plan(plan.organization_id)
        if current is None:
            self.db.add(OrgSubscription(
                organization_id=plan.organization_id,
                plan_code=plan.tier.value,
                **values,
            ))
            changed = True
        elif (
            supersede
            or current.external_subscription_id is None
            or current.external_subscription_id == plan.external_subscription_id
        ):
            changed |= _apply(current, {"plan_code": plan.tier.value, **values})
        else:
            logger.info("Current plan owned by another subscription, not superseding", extra={
                "organization_id": plan.organization_id,
                "external_subscription_id": plan.external_subscription_id,
                "current_external_subscription_id": current.external_subscription_id,
            })

        legacy = self.get_legacy_for_external(
            plan.organization_id, plan.external_subscription_id
        )
        if legacy is None:
            self.db.add(LegacySubscription(
                organization_id=plan.organization_id,
                tier=plan.tier.value,
                # newest row wins on read; server clocks may only have second precision
                created_at=datetime.now(timezone.utc),
                **values,
            ))
            changed = True
        else:
            changed |= _apply(legacy, {"tier": plan.tier.value, **values})

        if changed:
            self.db.flush()
            logger.info("Subscription plan upserted", extra={
                "organization_id": plan.organization_id,
                "external_subscription_id": plan.external_subscription_id,
                "tier": plan.tier.value,
                "status": plan.status.value,
            })

        return changed

    def commit(self) -> None:
        """Commit current transaction."""
        self.db.commit()

    def rollback(self) -> None:
        """Rollback current transaction."""
        self.db.rollback()
