"""
Runtime settings for subscription reconciliation and the billing client.

All values come from environment variables:
- STRIPE_SECRET_KEY: billing provider API key (required by the client)
- STRIPE_API_BASE: billing provider API base URL
- RECONCILE_FETCH_TIMEOUT_SECONDS: timeout for one subscription fetch (default: 10)
- RECONCILE_MAX_CONCURRENCY: organizations reconciled in parallel (default: 4)
- RECONCILE_REQUESTS_PER_SECOND: outbound request rate (default: 20)
- RECONCILE_DEADLINE_SECONDS: time limit for a whole run (default: unset, no deadline)

Concurrency and request rate are clamped to the provider's documented read
rate limit. That limit is a ceiling, not a target.
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_STRIPE_API_BASE = "https://api.stripe.com"

# Stripe read limit in test mode (live mode allows 100/s); the stricter
# value applies to every environment.
STRIPE_READ_RATE_LIMIT = 25

DEFAULT_FETCH_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_CONCURRENCY = 4
DEFAULT_REQUESTS_PER_SECOND = 20.0


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < 1:
        raise ValueError(f"{name} must be at least 1, got {raw!r}")
    return value


@dataclass(frozen=True)
class ReconciliationSettings:
    """Limits applied to one reconciliation run."""

    fetch_timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    requests_per_second: float = DEFAULT_REQUESTS_PER_SECOND
    deadline_seconds: Optional[float] = None

    def __post_init__(self):
        if self.fetch_timeout_seconds <= 0:
            raise ValueError("fetch_timeout_seconds must be positive")
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if self.requests_per_second <= 0:
            raise ValueError("requests_per_second must be positive")
        if self.max_concurrency > STRIPE_READ_RATE_LIMIT:
            raise ValueError(
                f"max_concurrency cannot exceed the billing API rate limit "
                f"({STRIPE_READ_RATE_LIMIT})"
            )
        if self.requests_per_second > STRIPE_READ_RATE_LIMIT:
            raise ValueError(
                f"requests_per_second cannot exceed the billing API rate limit "
                f"({STRIPE_READ_RATE_LIMIT})"
            )

    @classmethod
    def from_env(cls) -> "ReconciliationSettings":
        """Build settings from environment variables, clamping to the rate limit."""
        max_concurrency = _env_int("RECONCILE_MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY)
        requests_per_second = _env_float(
            "RECONCILE_REQUESTS_PER_SECOND", DEFAULT_REQUESTS_PER_SECOND
        )

        if max_concurrency > STRIPE_READ_RATE_LIMIT:
            logger.warning("Reconcile concurrency clamped to billing API rate limit", extra={
                "requested": max_concurrency,
                "limit": STRIPE_READ_RATE_LIMIT,
            })
            max_concurrency = STRIPE_READ_RATE_LIMIT

        if requests_per_second > STRIPE_READ_RATE_LIMIT:
            logger.warning("Reconcile request rate clamped to billing API rate limit", extra={
                "requested": requests_per_second,
                "limit": STRIPE_READ_RATE_LIMIT,
            })
            requests_per_second = float(STRIPE_READ_RATE_LIMIT)

        return cls(
            fetch_timeout_seconds=_env_float(
                "RECONCILE_FETCH_TIMEOUT_SECONDS", DEFAULT_FETCH_TIMEOUT_SECONDS
            ),
            max_concurrency=max_concurrency,
            requests_per_second=requests_per_second,
            deadline_seconds=_env_float("RECONCILE_DEADLINE_SECONDS", None),
        )


def get_stripe_api_key() -> str:
    """Return the billing provider API key or raise if it is not configured."""
    api_key = os.getenv("STRIPE_SECRET_KEY")
    if not api_key:
        raise ValueError("STRIPE_SECRET_KEY environment variable is not set")
    return api_key


def get_stripe_api_base() -> str:
    return os.getenv("STRIPE_API_BASE", DEFAULT_STRIPE_API_BASE).rstrip("/")
