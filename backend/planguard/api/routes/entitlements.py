"""
Entitlements API routes.

GET /api/entitlements - current plan features and limits for the caller
"""

from fastapi import APIRouter, Depends

from planguard.api.dependencies.entitlements import get_current_entitlements
from planguard.api.schemas.entitlements import EntitlementsResponse
from planguard.entitlements import Entitlements

router = APIRouter(prefix="/api/entitlements", tags=["entitlements"])


@router.get("", response_model=EntitlementsResponse)
def read_entitlements(
    entitlements: Entitlements = Depends(get_current_entitlements),
) -> EntitlementsResponse:
    """Return the calling organization's entitlements."""
    return EntitlementsResponse.from_entitlements(entitlements)
