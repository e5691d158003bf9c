"""
Entitlement check dependencies.

Reusable FastAPI dependencies that derive an organization's entitlements
and gate routes on a feature. The organization id is set on
request.state.organization_id by the authentication layer.
"""

import logging
from typing import Callable, Union

from fastapi import Request, HTTPException, status, Depends
from sqlalchemy.orm import Session

from planguard.database.session import get_db_session
from planguard.entitlements import (
    Entitlements,
    EntitlementError,
    Feature,
    assert_entitled,
    get_org_entitlements,
)

logger = logging.getLogger(__name__)


def get_organization_id(request: Request) -> str:
    """Organization id of the authenticated caller (401 if missing)."""
    organization_id = getattr(request.state, "organization_id", None)
    if not organization_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Organization context required",
        )
    return organization_id


def get_current_entitlements(
    organization_id: str = Depends(get_organization_id),
    db_session: Session = Depends(get_db_session),
) -> Entitlements:
    """Entitlements for the calling organization, derived per request."""
    return get_org_entitlements(db_session, organization_id)


def create_entitlement_check(feature: Union[Feature, str]) -> Callable:
    """
    Factory function to create a feature gate dependency.

    Args:
        feature: Feature the route requires

    Returns:
        A FastAPI dependency that returns the caller's Entitlements, or
        raises 402 Payment Required with the denial details
    """
    feature = Feature(feature)

    def check_entitlement(
        organization_id: str = Depends(get_organization_id),
        entitlements: Entitlements = Depends(get_current_entitlements),
    ) -> Entitlements:
        try:
            assert_entitled(entitlements, feature)
        except EntitlementError as e:
            logger.warning("Feature access denied - not entitled", extra={
                "organization_id": organization_id,
                "feature": feature.value,
                "tier": e.tier.value,
                "status": e.status.value,
                "reason_code": e.reason_code,
            })
            raise HTTPException(
                status_code=status.HTTP_402_PAYMENT_REQUIRED,
                detail=e.to_dict(),
            )
        return entitlements

    return check_entitlement


require_permit_packs = create_entitlement_check(Feature.PERMIT_PACKS)
require_version_history = create_entitlement_check(Feature.VERSION_HISTORY)
