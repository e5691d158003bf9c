"""
Entitlement lookup for request-handling code.

Usage:
    from planguard.entitlements.service import get_org_entitlements

    entitlements = get_org_entitlements(db, organization_id)
    assert_entitled(entitlements, Feature.PERMIT_PACKS)
"""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from planguard.entitlements.models import Entitlements
from planguard.entitlements.resolver import SubscriptionResolver
from planguard.entitlements.rules import derive_entitlements


def get_org_entitlements(
    db_session: Session,
    organization_id: str,
    now: Optional[datetime] = None,
) -> Entitlements:
    """Resolve the organization's subscription and derive its entitlements."""
    subscription = SubscriptionResolver(db_session).resolve(organization_id)
    return derive_entitlements(subscription, now=now)
