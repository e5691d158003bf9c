"""
Subscription reconciliation against the billing provider.

The local projections can drift from the provider when webhooks are missed,
delayed or arrive out of order. Reconciliation is the periodic backstop:

    fetch provider record -> compare (tier, status) -> idempotent repair

Per-organization failures are caught, logged and counted; they never abort
a batch. Nothing is written unless the provider explicitly reports a known
plan code and a mapped status.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from planguard.config.settings import ReconciliationSettings
from planguard.integrations.stripe.billing_client import StripeTimeoutError
from planguard.models.subscription import PlanTier, SubscriptionStatus
from planguard.repositories.subscription_repository import (
    SubscriptionRepository,
    SubscriptionUpsert,
)
from planguard.services.status_mapping import (
    UnrecognizedStatusError,
    normalize_provider_status,
    parse_stored_status,
)

logger = logging.getLogger(__name__)

# Statuses that may only be written over an existing local record
NON_INITIAL_STATUSES = frozenset({SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELED})

# Local statuses a non-initial status may follow
LIVE_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.PAST_DUE,
})


@dataclass
class ReconcileResult:
    """Outcome of reconciling one organization's subscription."""
    matched: bool
    repaired: bool
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "matched": self.matched,
            "repaired": self.repaired,
            "details": dict(self.details),
        }


@dataclass
class ReconciliationSummary:
    """Aggregate counts for one batch run."""
    total: int = 0
    matched: int = 0
    repaired: int = 0
    errors: int = 0
    skipped: int = 0
    duration_seconds: float = 0.0

    def record(self, result: Optional[ReconcileResult]) -> None:
        if result is None:
            self.skipped += 1
        elif result.matched:
            self.matched += 1
        elif result.repaired:
            self.repaired += 1
        else:
            self.errors += 1

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "matched": self.matched,
            "repaired": self.repaired,
            "errors": self.errors,
            "skipped": self.skipped,
            "duration_seconds": round(self.duration_seconds, 2),
        }


class SubscriptionReconciler:
    """
    Compares local projections with the billing provider and repairs drift.

    Args:
        db_session: Session used for projection reads and repair writes
        billing_client: Object with `async fetch_subscription(id)`
        settings: Timeout, concurrency and deadline limits
    """

    def __init__(
        self,
        db_session: Session,
        billing_client,
        settings: Optional[ReconciliationSettings] = None,
    ):
        self.db = db_session
        self.repository = SubscriptionRepository(db_session)
        self.billing_client = billing_client
        self.settings = settings or ReconciliationSettings()

    def _local_rows(self, organization_id: str, external_subscription_id: str) -> List[Tuple[str, Any]]:
        """
        Local rows describing this external subscription as (tier, row) pairs.

        A current plan row owned by a different external subscription is not
        part of this subscription's state.
        """
        rows = []
        legacy = self.repository.get_legacy_for_external(organization_id, external_subscription_id)
        if legacy is not None:
            rows.append((legacy.tier, legacy))

        current = self.repository.get_current_plan(organization_id)
        if current is not None and current.external_subscription_id in (None, external_subscription_id):
            rows.append((current.plan_code, current))
        return rows

    @staticmethod
    def _has_prior_live_record(local_rows: List[Tuple[str, Any]], external_subscription_id: str) -> bool:
        """
        True if a row carrying this external id was active, trialing or past_due.

        An unowned current plan row says nothing about this subscription.
        """
        return any(
            row.external_subscription_id == external_subscription_id
            and parse_stored_status(row.status) in LIVE_STATUSES
            for _, row in local_rows
        )

    async def reconcile_one(
        self,
        organization_id: str,
        external_subscription_id: str,
    ) -> ReconcileResult:
        """
        Reconcile one organization's subscription.

        Returns:
            matched=True when local state already agrees (no write),
            repaired=True when a repair was written,
            neither when the subscription could not be reconciled
        """
        details: Dict[str, Any] = {
            "organization_id": organization_id,
            "external_subscription_id": external_subscription_id,
        }

        try:
            external = await asyncio.wait_for(
                self.billing_client.fetch_subscription(external_subscription_id),
                timeout=self.settings.fetch_timeout_seconds,
            )
            details["provider_status"] = external.status

            local_rows = self._local_rows(organization_id, external_subscription_id)
            if local_rows:
                details["db_tier"] = local_rows[0][0]
                details["db_status"] = local_rows[0][1].status

            tier = PlanTier.parse(external.plan_code)
            if tier is None:
                details["reason"] = "unrecognized_plan_code"
                details["plan_code"] = external.plan_code
                logger.warning("Cannot reconcile subscription: unrecognized plan code", extra=details)
                return ReconcileResult(matched=False, repaired=False, details=details)

            try:
                status = normalize_provider_status(external.status)
            except UnrecognizedStatusError:
                details["reason"] = "unrecognized_status"
                logger.warning("Cannot reconcile subscription: unrecognized status", extra=details)
                return ReconcileResult(matched=False, repaired=False, details=details)

            details["provider_tier"] = tier.value
            details["normalized_status"] = status.value

            if local_rows and all(
                row_tier == tier.value and row.status == status.value
                for row_tier, row in local_rows
            ):
                return ReconcileResult(matched=True, repaired=False, details=details)

            if status in NON_INITIAL_STATUSES and not self._has_prior_live_record(
                local_rows, external_subscription_id
            ):
                details["reason"] = "no_prior_active_record"
                logger.warning("Cannot reconcile subscription: no local record to transition", extra=details)
                return ReconcileResult(matched=False, repaired=False, details=details)

            logger.warning("Subscription mismatch detected, repairing", extra=details)

            self.repository.upsert_plan(
                SubscriptionUpsert(
                    organization_id=organization_id,
                    external_subscription_id=external_subscription_id,
                    tier=tier,
                    status=status,
                    external_customer_id=external.customer_id,
                    period_start=external.period_start,
                    period_end=external.period_end,
                ),
                supersede=False,
            )
            self.repository.commit()

            return ReconcileResult(matched=False, repaired=True, details=details)

        except (asyncio.TimeoutError, StripeTimeoutError):
            details["reason"] = "timeout"
            logger.error("Timed out fetching subscription from billing provider", extra=details)
            return ReconcileResult(matched=False, repaired=False, details=details)
        except Exception as e:
            details["reason"] = "error"
            details["error"] = str(e)
            logger.error("Failed to reconcile subscription", extra=details, exc_info=True)
            try:
                self.repository.rollback()
            except SQLAlchemyError:
                logger.error("Rollback failed after reconciliation error", extra={
                    "organization_id": organization_id,
                }, exc_info=True)
            return ReconcileResult(matched=False, repaired=False, details=details)

    async def reconcile_all(self) -> ReconciliationSummary:
        """
        Reconcile every organization with a live subscription.

        Organizations run concurrently up to settings.max_concurrency. Once
        settings.deadline_seconds has elapsed no new organization is started;
        those are counted as skipped. Work already started is not cancelled.
        """
        summary = ReconciliationSummary()
        started = time.monotonic()

        try:
            pairs = self.repository.list_reconcilable()
        except SQLAlchemyError:
            logger.error("Failed to fetch subscriptions for reconciliation", exc_info=True)
            summary.errors = 1
            summary.duration_seconds = time.monotonic() - started
            return summary

        summary.total = len(pairs)
        logger.info("Found subscriptions to reconcile", extra={
            "subscription_count": summary.total,
            "max_concurrency": self.settings.max_concurrency,
        })

        deadline = None
        if self.settings.deadline_seconds is not None:
            deadline = started + self.settings.deadline_seconds

        semaphore = asyncio.Semaphore(self.settings.max_concurrency)

        async def run(organization_id: str, external_subscription_id: str) -> Optional[ReconcileResult]:
            async with semaphore:
                if deadline is not None and time.monotonic() >= deadline:
                    return None
                try:
                    return await self.reconcile_one(organization_id, external_subscription_id)
                except Exception:
                    logger.error("Error reconciling subscription", extra={
                        "organization_id": organization_id,
                        "external_subscription_id": external_subscription_id,
                    }, exc_info=True)
                    return ReconcileResult(matched=False, repaired=False)

        results = await asyncio.gather(*(run(org_id, ext_id) for org_id, ext_id in pairs))
        for result in results:
            summary.record(result)

        summary.duration_seconds = time.monotonic() - started
        if summary.skipped:
            logger.warning("Reconciliation deadline reached, organizations skipped", extra={
                "skipped": summary.skipped,
                "deadline_seconds": self.settings.deadline_seconds,
            })
        logger.info("Reconciliation complete", extra=summary.to_dict())
        return summary
