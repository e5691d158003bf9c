"""
Subscription reconciliation job.

Syncs local subscription projections with the Stripe Billing API.
Ensures plan state is accurate even if webhooks are missed, delayed or
delivered out of order.

Usage:
    python -m planguard.jobs.reconcile_subscriptions

Configuration: see planguard.config.settings (RECONCILE_* variables,
STRIPE_SECRET_KEY, DATABASE_URL).
"""

import sys
import asyncio
import logging
from typing import Optional

from planguard.config.settings import ReconciliationSettings
from planguard.database.session import get_db_session_sync
from planguard.integrations.stripe.billing_client import get_billing_client
from planguard.services.subscription_reconciliation import SubscriptionReconciler

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def run_reconciliation(settings: Optional[ReconciliationSettings] = None) -> dict:
    """
    Run the subscription reconciliation job.

    Returns:
        Summary dictionary with job results
    """
    settings = settings or ReconciliationSettings.from_env()
    logger.info("Starting subscription reconciliation job", extra={
        "max_concurrency": settings.max_concurrency,
        "requests_per_second": settings.requests_per_second,
        "deadline_seconds": settings.deadline_seconds,
    })

    db_gen = get_db_session_sync()
    session = next(db_gen)

    try:
        client = get_billing_client(
            timeout_seconds=settings.fetch_timeout_seconds,
            requests_per_second=settings.requests_per_second,
        )
        async with client:
            reconciler = SubscriptionReconciler(session, client, settings)
            summary = await reconciler.reconcile_all()
        return summary.to_dict()
    finally:
        db_gen.close()


def main():
    """Entry point for running reconciliation job from command line."""
    try:
        result = asyncio.run(run_reconciliation())
        print(f"Reconciliation completed: {result}")
        sys.exit(0)
    except Exception as e:
        logger.error("Reconciliation job failed", exc_info=True)
        print(f"Reconciliation failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
