"""
Stripe Billing API client for subscription reconciliation.

Read-only: fetches the provider's record of a subscription so local
projections can be checked against it. Payment capture, refunds and
webhook delivery are handled elsewhere.

Documentation: https://docs.stripe.com/api/subscriptions/retrieve
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Optional

import httpx

from planguard.config.settings import (
    DEFAULT_FETCH_TIMEOUT_SECONDS,
    get_stripe_api_base,
    get_stripe_api_key,
)

logger = logging.getLogger(__name__)

# Fallback wait when a 429 carries no usable Retry-After header
DEFAULT_RETRY_AFTER_SECONDS = 2.0


@dataclass
class RetryConfig:
    """Exponential backoff settings for transient API failures."""
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    retryable_status_codes: FrozenSet[int] = field(
        default_factory=lambda: frozenset({429, 500, 502, 503, 504})
    )

    def delay_for(self, attempt: int) -> float:
        """Backoff delay before retry number `attempt` (0-based)."""
        delay = self.initial_delay * (self.backoff_multiplier ** attempt)
        return min(delay, self.max_delay)


@dataclass
class ExternalSubscription:
    """The billing provider's view of one subscription."""
    id: str
    status: str
    customer_id: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def plan_code(self) -> Optional[str]:
        """Plan code from subscription metadata, if set."""
        return self.metadata.get("plan_code") or self.metadata.get("plan") or None


class BillingClientError(Exception):
    """Base exception for billing provider errors."""
    pass


class StripeAPIError(BillingClientError):
    """Error communicating with the Stripe API."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        response: Optional[dict] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.response = response
        self.retry_after = retry_after


class StripeTimeoutError(StripeAPIError):
    """Request to the Stripe API timed out."""

    def __init__(self, message: str):
        super().__init__(message, code="timeout")


class AsyncRateLimiter:
    """
    Spaces request starts so at most `requests_per_second` begin per second.

    Shared by every coroutine using the same client.
    """

    def __init__(self, requests_per_second: float):
        if requests_per_second <= 0:
            raise ValueError("requests_per_second must be positive")
        self._interval = 1.0 / requests_per_second
        self._next_slot = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            now = time.monotonic()
            wait = self._next_slot - now
            self._next_slot = max(now, self._next_slot) + self._interval
        if wait > 0:
            await asyncio.sleep(wait)


def _from_unix(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _parse_retry_after(value: Optional[str]) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return DEFAULT_RETRY_AFTER_SECONDS


def parse_subscription(payload: Dict[str, Any]) -> ExternalSubscription:
    """
    Build an ExternalSubscription from a Stripe subscription object.

    Billing period fields are read from the subscription, or from its first
    item on API versions that moved them there. The customer may be an id or
    an expanded customer object.
    """
    period_start = payload.get("current_period_start")
    period_end = payload.get("current_period_end")
    if period_start is None or period_end is None:
        items = (payload.get("items") or {}).get("data") or []
        if items:
            period_start = period_start or items[0].get("current_period_start")
            period_end = period_end or items[0].get("current_period_end")

    customer = payload.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")

    return ExternalSubscription(
        id=payload["id"],
        status=payload.get("status") or "",
        customer_id=customer,
        period_start=_from_unix(period_start),
        period_end=_from_unix(period_end),
        metadata=dict(payload.get("metadata") or {}),
    )


class StripeBillingClient:
    """
    Client for Stripe subscription reads.

    Handles:
    - Fixed per-request timeout (timeouts are not retried)
    - Exponential backoff on 429 / 5xx, honouring Retry-After
    - Optional shared rate limiter
    """

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
        retry_config: Optional[RetryConfig] = None,
        rate_limiter: Optional[AsyncRateLimiter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize billing client.

        Args:
            api_key: Stripe secret key
            base_url: API base URL (default: STRIPE_API_BASE or https://api.stripe.com)
            timeout_seconds: Timeout applied to every request
            retry_config: Backoff settings
            rate_limiter: Limiter shared with other clients of the same account
            transport: httpx transport override (tests)
        """
        if not api_key:
            raise ValueError("api_key is required")

        self.api_key = api_key
        self.base_url = (base_url or get_stripe_api_base()).rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.retry_config = retry_config or RetryConfig()
        self.rate_limiter = rate_limiter

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_seconds),
            headers={"Authorization": f"Bearer {api_key}"},
            transport=transport,
        )

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _request_once(self, path: str) -> dict:
        """
        Perform one GET request.

        Raises:
            StripeTimeoutError: If the request timed out
            StripeAPIError: For any other failure
        """
        if self.rate_limiter is not None:
            await self.rate_limiter.acquire()

        try:
            response = await self._client.get(path)
        except httpx.TimeoutException as e:
            logger.error("Stripe API timeout", extra={"path": path, "error": str(e)})
            raise StripeTimeoutError(f"Request timeout: {e}")
        except httpx.RequestError as e:
            logger.error("Stripe API request error", extra={"path": path, "error": str(e)})
            raise StripeAPIError(f"Request error: {e}", code="request_error")

        if response.status_code == 401:
            raise StripeAPIError(
                "Authentication failed - API key may be invalid",
                status_code=401,
                code="authentication_error",
            )

        if response.status_code == 429:
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            logger.warning("Stripe API rate limited", extra={
                "path": path,
                "retry_after": retry_after,
            })
            raise StripeAPIError(
                "Rate limited - please retry after a delay",
                status_code=429,
                code="rate_limited",
                retry_after=retry_after,
            )

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = None
            error = (body or {}).get("error") or {}
            raise StripeAPIError(
                error.get("message") or f"Stripe API error: {response.status_code}",
                status_code=response.status_code,
                code=error.get("code"),
                response=body,
            )

        return response.json()

    async def _request(self, path: str) -> dict:
        """GET with retries for transient failures."""
        attempt = 0
        while True:
            try:
                return await self._request_once(path)
            except StripeTimeoutError:
                raise
            except StripeAPIError as e:
                transient = (
                    e.status_code in self.retry_config.retryable_status_codes
                    or e.code == "request_error"
                )
                if not transient or attempt >= self.retry_config.max_retries:
                    raise
                delay = e.retry_after or self.retry_config.delay_for(attempt)
                delay = min(delay, self.retry_config.max_delay)
                logger.info("Retrying Stripe API request", extra={
                    "path": path,
                    "attempt": attempt + 1,
                    "status_code": e.status_code,
                    "delay_seconds": delay,
                })
                await asyncio.sleep(delay)
                attempt += 1

    async def fetch_subscription(self, subscription_id: str) -> ExternalSubscription:
        """
        Fetch a subscription by id.

        Args:
            subscription_id: Stripe subscription id (sub_...)

        Returns:
            ExternalSubscription with the provider-native status

        Raises:
            StripeAPIError: If the subscription cannot be fetched (404 included)
        """
        if not subscription_id:
            raise ValueError("subscription_id is required")

        payload = await self._request(f"/v1/subscriptions/{subscription_id}")
        return parse_subscription(payload)


def get_billing_client(
    timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
    requests_per_second: Optional[float] = None,
) -> StripeBillingClient:
    """
    Factory function to create a StripeBillingClient from environment.

    Raises:
        ValueError: If STRIPE_SECRET_KEY is not set
    """
    rate_limiter = AsyncRateLimiter(requests_per_second) if requests_per_second else None
    return StripeBillingClient(
        api_key=get_stripe_api_key(),
        timeout_seconds=timeout_seconds,
        rate_limiter=rate_limiter,
    )
