"""
Stripe billing provider integration.
"""

from planguard.integrations.stripe.billing_client import (
    StripeBillingClient,
    ExternalSubscription,
    RetryConfig,
    AsyncRateLimiter,
    BillingClientError,
    StripeAPIError,
    StripeTimeoutError,
    get_billing_client,
)

__all__ = [
    "StripeBillingClient",
    "ExternalSubscription",
    "RetryConfig",
    "AsyncRateLimiter",
    "BillingClientError",
    "StripeAPIError",
    "StripeTimeoutError",
    "get_billing_client",
]
