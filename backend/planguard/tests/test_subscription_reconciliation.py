"""
Tests for SubscriptionReconciler.

Tests cover:
- Matching state is a read-only no-op
- Drift repair and idempotence
- Write-then-read consistency through the resolver
- "Cannot reconcile" results (unknown plan code, unknown status, no prior record)
- Timeouts and failures counted as errors without aborting the batch
- Bounded concurrency and the overall deadline
"""

import logging
import pytest
from datetime import datetime, timezone
from unittest.mock import patch

from sqlalchemy import select, func
from sqlalchemy.exc import OperationalError

from planguard.config.settings import ReconciliationSettings
from planguard.entitlements.resolver import SubscriptionResolver
from planguard.entitlements.service import get_org_entitlements
from planguard.integrations.stripe.billing_client import StripeAPIError, StripeTimeoutError
from planguard.models.subscription import (
    LegacySubscription,
    OrgSubscription,
    PlanTier,
    SubscriptionStatus,
)
from planguard.repositories.subscription_repository import SubscriptionRepository
from planguard.services.subscription_reconciliation import (
    ReconcileResult,
    ReconciliationSummary,
    SubscriptionReconciler,
)


def count(db_session, model) -> int:
    return db_session.execute(select(func.count()).select_from(model)).scalar_one()


@pytest.fixture
def settings():
    return ReconciliationSettings(fetch_timeout_seconds=0.2, max_concurrency=4)


@pytest.fixture
def reconciler(db_session, mock_billing_client, settings):
    return SubscriptionReconciler(db_session, mock_billing_client, settings)


@pytest.fixture
def seed_org(make_current_plan, make_legacy_subscription):
    """Seed both projections for one organization and external subscription."""

    def _seed(organization_id, external_id, tier="pro", status="active"):
        make_current_plan(
            organization_id,
            plan_code=tier,
            status=status,
            external_subscription_id=external_id,
        )
        make_legacy_subscription(
            organization_id,
            tier=tier,
            status=status,
            external_subscription_id=external_id,
        )

    return _seed


class TestReconcileOne:

    @pytest.mark.asyncio
    async def test_matching_state_is_not_written(self, reconciler, seed_org, mock_billing_client):
        seed_org("org_a", "sub_a", tier="pro", status="active")
        mock_billing_client.add_subscription("sub_a", status="active", plan_code="pro")

        with patch.object(SubscriptionRepository, "upsert_plan") as mock_upsert:
            result = await reconciler.reconcile_one("org_a", "sub_a")

        assert result.matched is True
        assert result.repaired is False
        assert result.details["provider_status"] == "active"
        assert result.details["db_tier"] == "pro"
        assert result.details["db_status"] == "active"
        mock_upsert.assert_not_called()

    @pytest.mark.asyncio
    async def test_provider_sub_state_is_normalized_before_compare(
        self, reconciler, seed_org, mock_billing_client
    ):
        seed_org("org_a", "sub_a", tier="pro", status="past_due")
        mock_billing_client.add_subscription("sub_a", status="unpaid", plan_code="pro")

        result = await reconciler.reconcile_one("org_a", "sub_a")

        assert result.matched is True
        assert result.details["normalized_status"] == "past_due"

    @pytest.mark.asyncio
    async def test_drift_is_repaired(self, reconciler, seed_org, mock_billing_client, db_session):
        seed_org("org_a", "sub_a", tier="pro", status="active")
        mock_billing_client.add_subscription(
            "sub_a", status="past_due", plan_code="business", customer_id="cus_new"
        )

        result = await reconciler.reconcile_one("org_a", "sub_a")

        assert result.matched is False
        assert result.repaired is True
        repo = SubscriptionRepository(db_session)
        current = repo.get_current_plan("org_a")
        legacy = repo.get_legacy_for_external("org_a", "sub_a")
        assert (current.plan_code, current.status) == ("business", "past_due")
        assert (legacy.tier, legacy.status) == ("business", "past_due")
        assert legacy.external_customer_id == "cus_new"

    @pytest.mark.asyncio
    async def test_drift_is_logged_with_both_sides(
        self, reconciler, seed_org, mock_billing_client, caplog
    ):
        seed_org("org_a", "sub_a", tier="pro", status="active")
        mock_billing_client.add_subscription("sub_a", status="active", plan_code="business")

        with caplog.at_level(logging.WARNING, logger="planguard.services.subscription_reconciliation"):
            await reconciler.reconcile_one("org_a", "sub_a")

        [record] = [r for r in caplog.records if r.getMessage() == "Subscription mismatch detected, repairing"]
        assert record.organization_id == "org_a"
        assert record.external_subscription_id == "sub_a"
        assert (record.db_tier, record.db_status) == ("pro", "active")
        assert (record.provider_tier, record.normalized_status) == ("business", "active")

    @pytest.mark.asyncio
    async def test_second_call_matches(self, reconciler, seed_org, mock_billing_client, db_session):
        seed_org("org_a", "sub_a", tier="pro", status="active")
        mock_billing_client.add_subscription("sub_a", status="canceled", plan_code="pro")

        first = await reconciler.reconcile_one("org_a", "sub_a")
        second = await reconciler.reconcile_one("org_a", "sub_a")

        assert (first.matched, first.repaired) == (False, True)
        assert (second.matched, second.repaired) == (True, False)
        assert count(db_session, OrgSubscription) == 1
        assert count(db_session, LegacySubscription) == 1

    @pytest.mark.asyncio
    async def test_repair_is_visible_to_resolver(self, reconciler, seed_org, mock_billing_client, db_session):
        seed_org("org_a", "sub_a", tier="starter", status="past_due")
        period_end = datetime(2026, 4, 20, tzinfo=timezone.utc)
        mock_billing_client.add_subscription(
            "sub_a", status="active", plan_code="pro", period_end=period_end
        )

        result = await reconciler.reconcile_one("org_a", "sub_a")
        subscription = SubscriptionResolver(db_session).resolve("org_a")

        assert result.repaired is True
        assert subscription.tier == PlanTier.PRO
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.period_end == period_end
        assert subscription.status_self_healed is False

    @pytest.mark.asyncio
    async def test_repair_updates_derived_entitlements(
        self, reconciler, seed_org, mock_billing_client, db_session, now
    ):
        seed_org("org_a", "sub_a", tier="business", status="active")
        mock_billing_client.add_subscription("sub_a", status="past_due", plan_code="business")

        assert get_org_entitlements(db_session, "org_a", now=now).permit_packs is True

        await reconciler.reconcile_one("org_a", "sub_a")
        entitlements = get_org_entitlements(db_session, "org_a", now=now)

        assert entitlements.has_access is False
        assert entitlements.permit_packs is False
        assert entitlements.jobs_monthly_limit == 0

    @pytest.mark.asyncio
    async def test_matching_legacy_row_alone_is_a_match(
        self, reconciler, make_legacy_subscription, mock_billing_client, db_session
    ):
        make_legacy_subscription("org_a", tier="pro", status="active", external_subscription_id="sub_a")
        mock_billing_client.add_subscription("sub_a", status="active", plan_code="pro")

        result = await reconciler.reconcile_one("org_a", "sub_a")

        assert result.matched is True
        assert SubscriptionRepository(db_session).get_current_plan("org_a") is None

    @pytest.mark.asyncio
    async def test_drifted_legacy_row_fills_in_current_plan(
        self, reconciler, make_legacy_subscription, mock_billing_client, db_session
    ):
        make_legacy_subscription("org_a", tier="pro", status="trialing", external_subscription_id="sub_a")
        mock_billing_client.add_subscription("sub_a", status="active", plan_code="pro")

        result = await reconciler.reconcile_one("org_a", "sub_a")

        current = SubscriptionRepository(db_session).get_current_plan("org_a")
        assert result.repaired is True
        assert (current.plan_code, current.status) == ("pro", "active")
        assert current.external_subscription_id == "sub_a"

    @pytest.mark.asyncio
    async def test_newer_subscription_on_current_plan_is_kept(
        self, reconciler, make_current_plan, make_legacy_subscription, mock_billing_client, db_session
    ):
        make_legacy_subscription("org_a", tier="pro", status="active", external_subscription_id="sub_old")
        make_current_plan("org_a", plan_code="business", status="active", external_subscription_id="sub_new")
        mock_billing_client.add_subscription("sub_old", status="canceled", plan_code="pro")

        first = await reconciler.reconcile_one("org_a", "sub_old")
        second = await reconciler.reconcile_one("org_a", "sub_old")

        current = SubscriptionRepository(db_session).get_current_plan("org_a")
        assert first.repaired is True
        assert second.matched is True
        assert current.external_subscription_id == "sub_new"
        assert current.plan_code == "business"

    @pytest.mark.asyncio
    async def test_active_subscription_without_local_row_is_written(
        self, reconciler, mock_billing_client, db_session
    ):
        mock_billing_client.add_subscription("sub_new", status="trialing", plan_code="business")

        result = await reconciler.reconcile_one("org_new", "sub_new")

        assert result.repaired is True
        subscription = SubscriptionResolver(db_session).resolve("org_new")
        assert subscription.status == SubscriptionStatus.TRIALING


class TestCannotReconcile:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("plan_code", [None, "enterprise"])
    async def test_unrecognized_plan_code(
        self, reconciler, seed_org, mock_billing_client, db_session, plan_code
    ):
        seed_org("org_a", "sub_a", tier="pro", status="active")
        mock_billing_client.add_subscription("sub_a", status="canceled", plan_code=plan_code)

        result = await reconciler.reconcile_one("org_a", "sub_a")

        assert (result.matched, result.repaired) == (False, False)
        assert result.details["reason"] == "unrecognized_plan_code"
        assert SubscriptionRepository(db_session).get_current_plan("org_a").status == "active"

    @pytest.mark.asyncio
    async def test_unrecognized_status(self, reconciler, seed_org, mock_billing_client, db_session):
        seed_org("org_a", "sub_a", tier="pro", status="active")
        mock_billing_client.add_subscription("sub_a", status="on_hold", plan_code="pro")

        result = await reconciler.reconcile_one("org_a", "sub_a")

        assert (result.matched, result.repaired) == (False, False)
        assert result.details["reason"] == "unrecognized_status"
        assert result.details["provider_status"] == "on_hold"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("provider_status", ["past_due", "unpaid", "canceled"])
    async def test_no_status_fabricated_without_prior_record(
        self, reconciler, mock_billing_client, db_session, provider_status
    ):
        mock_billing_client.add_subscription("sub_x", status=provider_status, plan_code="pro")

        result = await reconciler.reconcile_one("org_x", "sub_x")

        assert (result.matched, result.repaired) == (False, False)
        assert result.details["reason"] == "no_prior_active_record"
        assert count(db_session, OrgSubscription) == 0
        assert count(db_session, LegacySubscription) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("provider_status", ["past_due", "canceled"])
    async def test_unowned_current_plan_is_not_a_prior_record(
        self, reconciler, make_current_plan, mock_billing_client, db_session, now, provider_status
    ):
        make_current_plan("org_r", plan_code="starter", status=None)
        mock_billing_client.add_subscription(
            "sub_foreign",
            status=provider_status,
            plan_code="business",
            period_end=datetime(2026, 4, 30, tzinfo=timezone.utc),
        )

        result = await reconciler.reconcile_one("org_r", "sub_foreign")

        current = SubscriptionRepository(db_session).get_current_plan("org_r")
        assert (result.matched, result.repaired) == (False, False)
        assert result.details["reason"] == "no_prior_active_record"
        assert (current.plan_code, current.status) == ("starter", None)
        assert current.external_subscription_id is None
        assert count(db_session, LegacySubscription) == 0
        assert get_org_entitlements(db_session, "org_r", now=now).permit_packs is False

    @pytest.mark.asyncio
    async def test_canceled_local_record_is_not_reopened_as_past_due(
        self, reconciler, seed_org, mock_billing_client, db_session
    ):
        seed_org("org_a", "sub_a", tier="pro", status="canceled")
        mock_billing_client.add_subscription("sub_a", status="past_due", plan_code="pro")

        result = await reconciler.reconcile_one("org_a", "sub_a")

        assert (result.matched, result.repaired) == (False, False)
        assert result.details["reason"] == "no_prior_active_record"
        assert SubscriptionRepository(db_session).get_current_plan("org_a").status == "canceled"

    @pytest.mark.asyncio
    async def test_active_over_unowned_current_plan_is_written(
        self, reconciler, make_current_plan, mock_billing_client, db_session
    ):
        make_current_plan("org_r", plan_code="starter", status=None)
        mock_billing_client.add_subscription("sub_new", status="active", plan_code="pro")

        result = await reconciler.reconcile_one("org_r", "sub_new")

        current = SubscriptionRepository(db_session).get_current_plan("org_r")
        assert result.repaired is True
        assert (current.plan_code, current.status) == ("pro", "active")
        assert current.external_subscription_id == "sub_new"


class TestReconcileFailures:

    @pytest.mark.asyncio
    async def test_fetch_error_is_reported(self, reconciler, seed_org, mock_billing_client):
        seed_org("org_a", "sub_a")
        mock_billing_client.configure_failure("sub_a", StripeAPIError("boom", status_code=500))

        result = await reconciler.reconcile_one("org_a", "sub_a")

        assert (result.matched, result.repaired) == (False, False)
        assert result.details["reason"] == "error"
        assert result.details["error"] == "boom"

    @pytest.mark.asyncio
    async def test_slow_fetch_times_out(self, reconciler, seed_org, mock_billing_client):
        seed_org("org_a", "sub_a")
        mock_billing_client.add_subscription("sub_a")
        mock_billing_client.configure_delay("sub_a", 5)

        result = await reconciler.reconcile_one("org_a", "sub_a")

        assert (result.matched, result.repaired) == (False, False)
        assert result.details["reason"] == "timeout"

    @pytest.mark.asyncio
    async def test_client_timeout_is_reported(self, reconciler, seed_org, mock_billing_client):
        seed_org("org_a", "sub_a")
        mock_billing_client.configure_failure("sub_a", StripeTimeoutError("Request timeout"))

        result = await reconciler.reconcile_one("org_a", "sub_a")

        assert result.details["reason"] == "timeout"

    @pytest.mark.asyncio
    async def test_write_failure_rolls_back(
        self, reconciler, seed_org, mock_billing_client, db_session, caplog
    ):
        seed_org("org_a", "sub_a", tier="pro", status="active")
        mock_billing_client.add_subscription("sub_a", status="past_due", plan_code="pro")

        with patch.object(
            SubscriptionRepository,
            "commit",
            side_effect=OperationalError("COMMIT", {}, Exception("disk I/O error")),
        ):
            with caplog.at_level(logging.ERROR):
                result = await reconciler.reconcile_one("org_a", "sub_a")

        assert (result.matched, result.repaired) == (False, False)
        assert result.details["reason"] == "error"
        assert "Failed to reconcile subscription" in caplog.text
        assert SubscriptionRepository(db_session).get_current_plan("org_a").status == "active"


class TestReconcileAll:

    @pytest.mark.asyncio
    async def test_empty_batch(self, reconciler):
        summary = await reconciler.reconcile_all()

        assert summary.total == 0
        assert summary.errors == 0

    @pytest.mark.asyncio
    async def test_counts(self, reconciler, seed_org, mock_billing_client):
        seed_org("org_match", "sub_match", tier="pro", status="active")
        seed_org("org_drift", "sub_drift", tier="pro", status="active")
        seed_org("org_unknown", "sub_unknown", tier="pro", status="trialing")
        mock_billing_client.add_subscription("sub_match", status="active", plan_code="pro")
        mock_billing_client.add_subscription("sub_drift", status="active", plan_code="business")
        mock_billing_client.add_subscription("sub_unknown", status="active", plan_code=None)

        summary = await reconciler.reconcile_all()

        assert summary.total == 3
        assert summary.matched == 1
        assert summary.repaired == 1
        assert summary.errors == 1
        assert summary.skipped == 0

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_batch(self, reconciler, seed_org, mock_billing_client):
        for org in ("org_a", "org_b", "org_c"):
            seed_org(org, f"sub_{org}", tier="pro", status="active")
            mock_billing_client.add_subscription(f"sub_{org}", status="active", plan_code="pro")
        mock_billing_client.configure_failure("sub_org_a")

        summary = await reconciler.reconcile_all()

        assert summary.total == 3
        assert summary.errors == 1
        assert summary.matched == 2
        assert sorted(mock_billing_client.fetch_calls) == ["sub_org_a", "sub_org_b", "sub_org_c"]

    @pytest.mark.asyncio
    async def test_timeout_counts_as_error(self, reconciler, seed_org, mock_billing_client):
        seed_org("org_slow", "sub_slow")
        seed_org("org_fast", "sub_fast")
        mock_billing_client.add_subscription("sub_slow")
        mock_billing_client.add_subscription("sub_fast")
        mock_billing_client.configure_delay("sub_slow", 5)

        summary = await reconciler.reconcile_all()

        assert summary.errors == 1
        assert summary.matched == 1
        assert summary.repaired == 0

    @pytest.mark.asyncio
    async def test_second_run_only_matches(self, reconciler, seed_org, mock_billing_client):
        seed_org("org_a", "sub_a", tier="pro", status="active")
        seed_org("org_b", "sub_b", tier="pro", status="trialing")
        mock_billing_client.add_subscription("sub_a", status="active", plan_code="business")
        mock_billing_client.add_subscription("sub_b", status="active", plan_code="pro")

        first = await reconciler.reconcile_all()
        second = await reconciler.reconcile_all()

        assert first.repaired == 2
        assert second.repaired == 0
        assert second.matched == 2

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, db_session, seed_org, mock_billing_client):
        for i in range(6):
            seed_org(f"org_{i}", f"sub_{i}")
            mock_billing_client.add_subscription(f"sub_{i}")
            mock_billing_client.configure_delay(f"sub_{i}", 0.02)
        reconciler = SubscriptionReconciler(
            db_session,
            mock_billing_client,
            ReconciliationSettings(fetch_timeout_seconds=1.0, max_concurrency=2),
        )

        summary = await reconciler.reconcile_all()

        assert summary.matched == 6
        assert mock_billing_client.max_in_flight == 2

    @pytest.mark.asyncio
    async def test_deadline_stops_new_work(self, db_session, seed_org, mock_billing_client):
        for i in range(3):
            seed_org(f"org_{i}", f"sub_{i}")
            mock_billing_client.add_subscription(f"sub_{i}")
        mock_billing_client.configure_delay("sub_0", 0.5)
        reconciler = SubscriptionReconciler(
            db_session,
            mock_billing_client,
            ReconciliationSettings(fetch_timeout_seconds=2.0, max_concurrency=1, deadline_seconds=0.2),
        )

        summary = await reconciler.reconcile_all()

        assert summary.total == 3
        assert summary.matched == 1
        assert summary.skipped == 2
        assert mock_billing_client.fetch_calls == ["sub_0"]

    @pytest.mark.asyncio
    async def test_selection_failure_is_an_error(self, reconciler):
        with patch.object(
            SubscriptionRepository,
            "list_reconcilable",
            side_effect=OperationalError("SELECT", {}, Exception("no such table")),
        ):
            summary = await reconciler.reconcile_all()

        assert summary.total == 0
        assert summary.errors == 1

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_contained(self, reconciler, seed_org, mock_billing_client):
        seed_org("org_a", "sub_a")
        seed_org("org_b", "sub_b")
        mock_billing_client.add_subscription("sub_a")
        mock_billing_client.add_subscription("sub_b")

        original = reconciler.reconcile_one

        async def flaky(organization_id, external_subscription_id):
            if organization_id == "org_a":
                raise RuntimeError("unexpected")
            return await original(organization_id, external_subscription_id)

        reconciler.reconcile_one = flaky

        summary = await reconciler.reconcile_all()

        assert summary.errors == 1
        assert summary.matched == 1


class TestSummary:

    def test_record(self):
        summary = ReconciliationSummary(total=4)
        summary.record(ReconcileResult(matched=True, repaired=False))
        summary.record(ReconcileResult(matched=False, repaired=True))
        summary.record(ReconcileResult(matched=False, repaired=False))
        summary.record(None)

        assert (summary.matched, summary.repaired, summary.errors, summary.skipped) == (1, 1, 1, 1)

    def test_to_dict(self):
        summary = ReconciliationSummary(total=2, matched=2, duration_seconds=1.23456)

        assert summary.to_dict() == {
            "total": 2,
            "matched": 2,
            "repaired": 0,
            "errors": 0,
            "skipped": 0,
            "duration_seconds": 1.23,
        }

    def test_result_to_dict_copies_details(self):
        result = ReconcileResult(matched=True, repaired=False, details={"organization_id": "org_a"})

        data = result.to_dict()
        data["details"]["organization_id"] = "changed"

        assert result.details["organization_id"] == "org_a"
