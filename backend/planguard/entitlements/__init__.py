"""
Plan-based entitlements.

This module provides:
- SubscriptionResolver: merges local projections into a CanonicalSubscription
- derive_entitlements: pure (subscription, now) -> Entitlements
- has_entitlement / assert_entitled: call-site enforcement helpers
- get_org_entitlements: resolver + deriver in one call
- EntitlementError: raised by assert_entitled

Entitlements are never stored; recompute them whenever they are needed.
"""

from planguard.entitlements.models import (
    CanonicalSubscription,
    Entitlements,
    Feature,
    ProjectionSource,
)
from planguard.entitlements.errors import EntitlementError
from planguard.entitlements.rules import derive_entitlements, starter_defaults
from planguard.entitlements.resolver import SubscriptionResolver
from planguard.entitlements.enforcement import has_entitlement, assert_entitled
from planguard.entitlements.service import get_org_entitlements

__all__ = [
    "CanonicalSubscription",
    "Entitlements",
    "Feature",
    "ProjectionSource",
    "EntitlementError",
    "derive_entitlements",
    "starter_defaults",
    "SubscriptionResolver",
    "has_entitlement",
    "assert_entitled",
    "get_org_entitlements",
]
