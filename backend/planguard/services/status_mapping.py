"""
Mapping of billing provider statuses into the normalized status set.

Every provider status must be listed here. An unlisted status raises
UnrecognizedStatusError so reconciliation reports it instead of guessing.
"""

from typing import Dict, Optional

from planguard.models.subscription import SubscriptionStatus


class UnrecognizedStatusError(ValueError):
    """Raised for a provider status with no normalized equivalent."""

    def __init__(self, provider_status: Optional[str]):
        self.provider_status = provider_status
        super().__init__(f"Unrecognized provider subscription status: {provider_status!r}")


PROVIDER_STATUS_MAP: Dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "incomplete_expired": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "cancelled": SubscriptionStatus.CANCELED,
}


def normalize_provider_status(provider_status: Optional[str]) -> SubscriptionStatus:
    """
    Map a provider-native status to active / trialing / past_due / canceled.

    Raises:
        UnrecognizedStatusError: If the status is missing or not mapped
    """
    key = (provider_status or "").strip().lower()
    try:
        return PROVIDER_STATUS_MAP[key]
    except KeyError:
        raise UnrecognizedStatusError(provider_status)


def parse_stored_status(stored_status: Optional[str]) -> Optional[SubscriptionStatus]:
    """
    Normalize a status read from a projection column.

    NULL, empty and "none" count as no status. Provider spellings
    ("cancelled", "unpaid", ...) go through PROVIDER_STATUS_MAP. Any other
    value resolves to past_due so an unreadable status never grants access.
    """
    key = (stored_status or "").strip().lower()
    if not key or key == SubscriptionStatus.NONE.value:
        return None
    return PROVIDER_STATUS_MAP.get(key, SubscriptionStatus.PAST_DUE)


def is_known_status(stored_status: Optional[str]) -> bool:
    """True if a stored status is absent or has a normalized equivalent."""
    key = (stored_status or "").strip().lower()
    return not key or key == SubscriptionStatus.NONE.value or key in PROVIDER_STATUS_MAP
