"""
Call-site helpers for feature gating.

has_entitlement() is a pure lookup, safe for UI checks.
assert_entitled() is for the point where a gated feature is about to run.
"""

from typing import Union

from planguard.entitlements.errors import EntitlementError
from planguard.entitlements.models import Entitlements, Feature


def has_entitlement(entitlements: Entitlements, feature: Union[Feature, str]) -> bool:
    """
    Check whether a feature is granted.

    Raises:
        ValueError: If feature is not a known Feature key
    """
    feature = Feature(feature)
    return getattr(entitlements, feature.value) is True


def assert_entitled(entitlements: Entitlements, feature: Union[Feature, str]) -> None:
    """
    Require a feature before executing it.

    Raises:
        EntitlementError: If the feature is not granted
    """
    if not has_entitlement(entitlements, feature):
        raise EntitlementError(
            feature=Feature(feature).value,
            tier=entitlements.tier,
            status=entitlements.status,
        )
