"""Unit tests for the subscription service operations."""

from datetime import timedelta
from decimal import Decimal

import pytest

from subsync.errors import (
    ConflictError,
    NoActiveSubscription,
    TransientGatewayError,
    TrialAlreadyUsed,
    ValidationError,
)
from subsync.models.billing import (
    AccessReason,
    BillingAccount,
    BillingFrequency,
    DateSource,
    Invoice,
    SubscriptionKind,
    SubscriptionStatus,
)
from subsync.services.cache import CacheView


class TestSubscribeFree:
    async def test_first_free_subscription_succeeds(self, engine):
        now = engine.clock.now()

        record = await engine.service.subscribe_free("account-1", "free")

        assert record.kind == SubscriptionKind.FREE
        assert record.status == SubscriptionStatus.ACTIVE
        assert record.remote_id is None
        assert record.grace_ends_at == now + timedelta(days=30)
        decision = await engine.service.get_access_decision("account-1")
        assert decision.reason == AccessReason.FREE_PLAN
        assert decision.days_remaining == 30

    async def test_second_free_subscription_is_rejected_without_new_row(self, engine):
        await engine.service.subscribe_free("account-1", "free")

        with pytest.raises(TrialAlreadyUsed):
            await engine.service.subscribe_free("account-1", "free")

        assert len(await engine.store.list_for_account("account-1")) == 1

    async def test_limit_holds_after_free_plan_ends(self, engine):
        await engine.service.subscribe_free("account-1", "free")
        engine.clock.advance(timedelta(days=45))

        with pytest.raises(TrialAlreadyUsed):
            await engine.service.subscribe_free("account-1", "free")

    async def test_yearly_validity(self, engine):
        now = engine.clock.now()

        record = await engine.service.subscribe_free("account-1", "free", BillingFrequency.YEARLY)

        assert record.grace_ends_at == now + timedelta(days=365)

    async def test_paid_plan_is_not_free(self, engine):
        with pytest.raises(ValidationError, match="not a free plan"):
            await engine.service.subscribe_free("account-1", "pro")

    async def test_unknown_plan(self, engine):
        with pytest.raises(ValidationError, match="Unknown plan"):
            await engine.service.subscribe_free("account-1", "enterprise")

    async def test_active_paid_subscription_conflicts(self, engine):
        await engine.reconciler.merge(engine.snapshot())

        with pytest.raises(ConflictError):
            await engine.service.subscribe_free("account-1", "free")

        assert not await engine.store.has_ever_had_free_trial("account-1")


class TestPaidCheckout:
    async def test_new_customer_gets_checkout_session(self, engine):
        handle = await engine.service.request_paid_checkout(
            "account-1", "pro", BillingFrequency.MONTHLY
        )

        assert handle.swapped is False
        assert handle.url == "https://checkout.test/cs_1"
        account = await engine.accounts.get_account("account-1")
        assert account.remote_customer_id == "cus_account-1"
        assert ("create_checkout_session", "account-1", "cus_account-1", "price_pro_month") in (
            engine.gateway.calls
        )

    async def test_existing_customer_is_reused(self, engine):
        await engine.accounts.upsert_account(
            BillingAccount(account_id="account-1", remote_customer_id="cus_1")
        )

        await engine.service.request_paid_checkout("account-1", "pro", BillingFrequency.YEARLY)

        assert engine.gateway.fetch_count("create_customer") == 0
        assert ("create_checkout_session", "account-1", "cus_1", "price_pro_year") in (
            engine.gateway.calls
        )

    async def test_subscriber_with_payment_method_swaps_plan(self, engine):
        await engine.reconciler.merge(engine.snapshot())
        await engine.accounts.upsert_account(
            BillingAccount(
                account_id="account-1",
                remote_customer_id="cus_1",
                payment_method_brand="visa",
                payment_method_last4="4242",
            )
        )

        handle = await engine.service.request_paid_checkout(
            "account-1", "pro", BillingFrequency.YEARLY
        )

        assert handle.swapped is True
        assert handle.url is None
        record = await engine.store.get_by_remote_id("sub_1")
        assert record.price_reference == "price_pro_year"
        assert engine.gateway.fetch_count("create_checkout_session") == 0

    async def test_subscriber_without_payment_method_goes_to_checkout(self, engine):
        await engine.reconciler.merge(engine.snapshot())

        handle = await engine.service.request_paid_checkout(
            "account-1", "pro", BillingFrequency.YEARLY
        )

        assert handle.swapped is False
        assert engine.gateway.fetch_count("swap_plan") == 0

    async def test_free_plan_is_rejected(self, engine):
        with pytest.raises(ValidationError, match="Free plans"):
            await engine.service.request_paid_checkout(
                "account-1", "free", BillingFrequency.MONTHLY
            )

    async def test_plan_without_remote_price_is_rejected(self, engine):
        pro = await engine.plans.get_plan("pro")
        await engine.plans.save_plan(pro.model_copy(update={"remote_yearly_price_id": None}))

        with pytest.raises(ValidationError, match="no yearly price"):
            await engine.service.request_paid_checkout(
                "account-1", "pro", BillingFrequency.YEARLY
            )


class TestCancelResume:
    async def test_cancel_local_subscription_is_immediate(self, engine):
        await engine.service.subscribe_free("account-1", "free")
        now = engine.clock.now()

        record = await engine.service.cancel("account-1")

        assert record.status == SubscriptionStatus.CANCELED
        assert record.grace_ends_at == now
        decision = await engine.service.get_access_decision("account-1")
        assert decision.can_access is False

    async def test_cancel_remote_subscription_goes_through_provider(self, engine):
        await engine.reconciler.merge(engine.snapshot())

        record = await engine.service.cancel("account-1")

        assert ("cancel_at_period_end", "sub_1") in engine.gateway.calls
        assert record.status == SubscriptionStatus.ACTIVE
        assert record.grace_ends_at is None

    async def test_cancel_then_provider_event_marks_cancelling(self, engine):
        await engine.reconciler.merge(engine.snapshot())
        await engine.service.cancel("account-1")
        period_end = engine.clock.now() + timedelta(days=30)

        await engine.reconciler.merge(engine.snapshot(grace_ends_at=period_end))

        decision = await engine.service.get_access_decision("account-1")
        assert decision.reason == AccessReason.CANCELLING
        assert decision.authoritative_expiry == period_end

    async def test_cancel_without_subscription(self, engine):
        with pytest.raises(NoActiveSubscription):
            await engine.service.cancel("account-1")

    async def test_resume_remote_within_grace(self, engine):
        await engine.reconciler.merge(
            engine.snapshot(grace_ends_at=engine.clock.now() + timedelta(days=10))
        )

        await engine.service.resume("account-1")

        assert ("resume", "sub_1") in engine.gateway.calls

    async def test_resume_after_grace_is_rejected(self, engine):
        await engine.reconciler.merge(
            engine.snapshot(grace_ends_at=engine.clock.now() + timedelta(days=1))
        )
        engine.clock.advance(timedelta(days=2))

        with pytest.raises(NoActiveSubscription):
            await engine.service.resume("account-1")

    async def test_resume_without_pending_cancellation(self, engine):
        await engine.service.subscribe_free("account-1", "free")

        with pytest.raises(NoActiveSubscription):
            await engine.service.resume("account-1")

    async def test_canceled_free_plan_cannot_be_resumed(self, engine):
        record = await engine.service.subscribe_free("account-1", "free")
        plan_expiry = record.grace_ends_at
        record.status = SubscriptionStatus.CANCELED
        await engine.reconciler.update_local(record)

        with pytest.raises(NoActiveSubscription):
            await engine.service.resume("account-1")

        stored = await engine.store.get(record.id)
        assert stored.status == SubscriptionStatus.CANCELED
        assert stored.grace_ends_at == plan_expiry
        assert engine.gateway.fetch_count("resume") == 0


class TestReadViews:
    async def test_access_decision_days_follow_the_clock(self, engine):
        await engine.reconciler.merge(engine.snapshot())
        first = await engine.service.get_access_decision("account-1")

        engine.clock.advance(timedelta(days=1, minutes=1))
        second = await engine.service.get_access_decision("account-1")

        assert first.days_remaining == 30
        assert second.days_remaining == 28

    async def test_access_decision_for_unknown_account(self, engine):
        decision = await engine.service.get_access_decision("nobody")

        assert decision.reason == AccessReason.NO_SUBSCRIPTION

    async def test_summary_uses_plan_name(self, engine):
        await engine.reconciler.merge(engine.snapshot())
        await engine.cache.invalidate("account-1")

        summary = await engine.service.get_summary("account-1")

        assert summary.plan_name == "Pro"
        assert summary.can_access is True

    async def test_membership_history_newest_first(self, engine):
        await engine.service.subscribe_free("account-1", "free")
        engine.clock.advance(timedelta(days=1))
        await engine.reconciler.merge(engine.snapshot())

        history = await engine.service.get_membership_history("account-1")

        assert [r.kind for r in history] == [SubscriptionKind.PAID, SubscriptionKind.FREE]
        assert history[1].status == SubscriptionStatus.CANCELED

    async def test_invoices_are_cached(self, engine):
        await engine.accounts.upsert_account(
            BillingAccount(account_id="account-1", remote_customer_id="cus_1")
        )
        engine.gateway.invoices["cus_1"] = [Invoice(id="in_1", amount=Decimal("10.00"))]

        first = await engine.service.get_invoices("account-1")
        second = await engine.service.get_invoices("account-1")
        fresh = await engine.service.get_invoices("account-1", fresh=True)

        assert [i.id for i in first] == ["in_1"]
        assert second == first
        assert fresh == first
        assert engine.gateway.fetch_count("fetch_invoices") == 2

    async def test_invoice_failure_returns_empty_and_is_not_cached(self, engine):
        await engine.accounts.upsert_account(
            BillingAccount(account_id="account-1", remote_customer_id="cus_1")
        )
        engine.gateway.invoice_error = TransientGatewayError("down")

        assert await engine.service.get_invoices("account-1") == []
        assert await engine.cache.get("account-1", CacheView.INVOICES) is None

    async def test_invoices_without_customer(self, engine):
        assert await engine.service.get_invoices("account-1") == []
        assert engine.gateway.fetch_count("fetch_invoices") == 0


class TestSyncMissingPeriods:
    async def test_estimated_periods_are_confirmed(self, engine):
        await engine.reconciler.merge(engine.snapshot(current_period_end=None))
        confirmed = engine.clock.now() + timedelta(days=27)
        engine.snapshot(current_period_end=confirmed)

        result = await engine.service.sync_missing_periods()

        record = await engine.store.get_by_remote_id("sub_1")
        assert result == {"checked": 1, "synced": 1, "failed": 0}
        assert record.current_period_end == confirmed
        assert record.period_end_source == DateSource.CONFIRMED

    async def test_provider_errors_are_counted(self, engine):
        await engine.reconciler.merge(engine.snapshot(current_period_end=None))
        engine.gateway.fetch_errors.append(TransientGatewayError("down"))

        result = await engine.service.sync_missing_periods()

        assert result == {"checked": 1, "synced": 0, "failed": 1}

    async def test_confirmed_records_are_skipped(self, engine):
        await engine.reconciler.merge(engine.snapshot())

        result = await engine.service.sync_missing_periods()

        assert result["checked"] == 0
